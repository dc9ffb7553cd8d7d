"""Ingestion of settlement PDFs and transaction CSV exports."""

from .csv_parser import CsvParseResult, parse_csv
from .pdf_parser import (
    DroppedLine,
    PdfParseResult,
    extract_declared_total,
    extract_liquidation_date,
    extract_liquidation_number,
    parse_pdf_text,
)
from .pdf_reader import read_pdf_text

__all__ = [
    "CsvParseResult",
    "parse_csv",
    "DroppedLine",
    "PdfParseResult",
    "extract_declared_total",
    "extract_liquidation_date",
    "extract_liquidation_number",
    "parse_pdf_text",
    "read_pdf_text",
]
