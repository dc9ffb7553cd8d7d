"""
Text-layer extraction for settlement PDFs using PyMuPDF.
The processor reports are digital, so no OCR is attempted.
"""

from pathlib import Path
from typing import Union

import fitz  # PyMuPDF
import structlog

from ..errors import PdfReadError

logger = structlog.get_logger()


def read_pdf_text(data: Union[bytes, Path, str]) -> str:
    """
    Extract the text of every page, pages separated by newlines.

    Raises:
        PdfReadError: the document cannot be opened.
    """
    try:
        if isinstance(data, (bytes, bytearray)):
            doc = fitz.open(stream=bytes(data), filetype="pdf")
        else:
            doc = fitz.open(str(data))
    except Exception as e:
        logger.error("Could not open settlement PDF", error=str(e))
        raise PdfReadError(f"Could not open PDF: {e}") from e

    try:
        pages = [page.get_text("text") for page in doc]
    finally:
        doc.close()

    text = "\n".join(pages)
    if not text.strip():
        logger.warning("Settlement PDF has no text layer", pages=len(pages))
    else:
        logger.debug("Extracted PDF text", pages=len(pages), chars=len(text))
    return text
