"""
Merchant transaction CSV parser.

Column names vary between exports (accents, mojibake, "#" suffixes, combined
"Terminal/Lote/Cupon" columns), so every field is resolved against a list of
candidate headers: exact name first, then a normalized comparison, then a
substring match in either direction.
"""

import csv
import io
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Union

import structlog

from ..models import Transaction
from .normalizer import (
    extract_last4,
    normalize_currency,
    normalize_date,
    parse_amount,
    parse_datetime,
)

logger = structlog.get_logger()


CANDIDATE_HEADERS: Dict[str, Sequence[str]] = {
    "order_id": ["Pedido #", "Pedido", "Order #", "Order", "OrderId", "Order ID"],
    "date": ["Fecha", "Fecha operacion", "Fecha de operacion", "Fecha de venta"],
    "transaction_id": [
        "Identificacion de Transaccion",
        "Identificación de Transacción",
        "Identificacion",
        "Identificación",
        "Transaction ID",
        "ID Transaccion",
    ],
    "card_number": [
        "Numero de tarjeta / cuenta",
        "Número de tarjeta / cuenta",
        "Numero de tarjeta / linea",
        "Número de tarjeta / línea",
        "Numero de tarjeta",
        "Número de tarjeta",
        "Numero de cuenta",
        "Número de cuenta",
        "Identificacion Numero de",
        "Identificación Número de",
        "Tarjeta",
    ],
    "approval": [
        "Aprobacion",
        "Aprobación",
        "Autorizacion",
        "Autorización",
        "Autorizacion del Pagador",
        "Autorización del Pagador",
        "Authorization",
        "Auth",
    ],
    "terminal_lote_coupon": [
        "Terminal/Lote/Cupon",
        "Terminal/Lote/Cupón",
        "Term/Lote/Cupon",
        "Term/Lote/Cupón",
        "Term Lote Cupon",
    ],
    "terminal": ["Terminal", "Terminal #", "Terminal ID", "ID Terminal"],
    "lote": ["Lote", "Lote #", "Batch", "Batch #"],
    "coupon": ["Cupon", "Cupón", "Cupon #", "Cupón #", "Coupon", "Coupon #"],
    "amount": ["Importe", "Monto", "Amount", "Total"],
    "currency": ["Moneda", "Currency", "Divisa"],
}

_MOJIBAKE_FIXES = [
    ("Ã¡", "a"), ("Ã©", "e"), ("Ã­", "i"), ("Ã³", "o"), ("Ãº", "u"),
    ("Ã±", "n"), ("Ã¼", "u"), ("Ã\u0081", "a"), ("Ã‰", "e"), ("Ã\u008d", "i"),
    ("Ã“", "o"), ("Ãš", "u"), ("Ã‘", "n"),
]
_ORDINAL_MARKS_RE = re.compile(r"[ºª]")
_MOJIBAKE_RE = re.compile("Ã.|�")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_DIGIT_RUN_RE = re.compile(r"\d+")

ENCODING_HINT_TOKENS = ["pedido", "fecha", "importe", "moneda", "aprob", "autoriz", "tarjeta"]


@dataclass
class CsvParseResult:
    """Result of parsing a transaction CSV."""
    transactions: List[Transaction]
    currency_issues: List[str] = field(default_factory=list)
    skipped_rows: int = 0
    encoding: str = "utf-8"


def fix_mojibake(value: str) -> str:
    """Undo the usual UTF-8-read-as-Latin-1 damage in header names."""
    for broken, fixed in _MOJIBAKE_FIXES:
        value = value.replace(broken, fixed)
    return _ORDINAL_MARKS_RE.sub("", value)


def normalize_header_key(value: str) -> str:
    lowered = fix_mojibake(value).lower()
    decomposed = unicodedata.normalize("NFD", lowered)
    stripped = "".join(c for c in decomposed if unicodedata.category(c) != "Mn")
    return _NON_ALNUM_RE.sub(" ", stripped).strip()


def decode_csv_bytes(raw: bytes) -> tuple:
    """
    Pick between UTF-8 and Latin-1 for an export of unknown encoding.

    Returns ``(text, encoding)``. Latin-1 wins when UTF-8 shows mojibake and
    Latin-1 does not, or when Latin-1 recognizes more of the expected header words.
    """
    utf8 = raw.decode("utf-8", errors="replace")
    latin1 = raw.decode("latin-1")

    if _MOJIBAKE_RE.search(utf8) and not _MOJIBAKE_RE.search(latin1):
        return latin1, "latin-1"

    def score(text: str) -> int:
        lowered = text.lower()
        return sum(1 for token in ENCODING_HINT_TOKENS if token in lowered)

    if score(latin1) > score(utf8):
        return latin1, "latin-1"
    return utf8, "utf-8"


def resolve_header(
    headers: Sequence[str],
    candidates: Sequence[str],
    exclude: Sequence[str] = (),
) -> Optional[str]:
    """
    Find the actual column name for a field.

    Order: exact candidate name, then normalized equality, then substring
    containment either way. Columns in ``exclude`` are never returned.
    """
    available = [h for h in headers if h and h not in exclude]
    lookup: Dict[str, str] = {}
    for header in available:
        lookup.setdefault(normalize_header_key(header), header)

    for candidate in candidates:
        if candidate in available:
            return candidate
        original = lookup.get(normalize_header_key(candidate))
        if original:
            return original

    for candidate in candidates:
        normalized = normalize_header_key(candidate)
        for header_key, original in lookup.items():
            if not header_key:
                continue
            if normalized in header_key or header_key in normalized:
                return original

    return None


def split_terminal_lote_coupon_field(value: str) -> tuple:
    """'77428/2/14' -> ('77428', '2', '14'); missing parts come back empty."""
    digits = _DIGIT_RUN_RE.findall(value or "")
    digits += [""] * (3 - len(digits))
    return digits[0], digits[1], digits[2]


def parse_csv(raw: Union[bytes, str], import_id: str) -> CsvParseResult:
    """
    Parse the merchant transaction export into Transaction records.

    Rows without a resolvable order id are skipped. Non-ARS currencies are
    kept on the transaction and reported in ``currency_issues``.
    """
    if isinstance(raw, bytes):
        text, encoding = decode_csv_bytes(raw)
    else:
        text, encoding = raw, "text"
    text = text.lstrip("﻿")

    if not text.strip():
        logger.warning("Empty transaction CSV", import_id=import_id)
        return CsvParseResult(transactions=[], encoding=encoding)

    reader = csv.DictReader(io.StringIO(text), dialect=_sniff_dialect(text))
    headers = [h.strip() for h in (reader.fieldnames or []) if h is not None]
    reader.fieldnames = headers

    columns: Dict[str, Optional[str]] = {}
    combined = resolve_header(headers, CANDIDATE_HEADERS["terminal_lote_coupon"])
    columns["terminal_lote_coupon"] = combined
    taken = [combined] if combined else []
    for name, candidates in CANDIDATE_HEADERS.items():
        if name == "terminal_lote_coupon":
            continue
        excluded = taken if name in ("terminal", "lote", "coupon") else ()
        columns[name] = resolve_header(headers, candidates, exclude=excluded)

    logger.debug("Resolved CSV columns", columns=columns, encoding=encoding)

    transactions: List[Transaction] = []
    currency_issues: List[str] = []
    skipped = 0

    for row in reader:
        if not any((v or "").strip() for k, v in row.items() if k is not None and isinstance(v, str)):
            continue

        def value(name: str) -> str:
            column = columns.get(name)
            if not column:
                return ""
            cell = row.get(column)
            return cell.strip() if isinstance(cell, str) else ""

        order_id = value("order_id")
        if not order_id:
            skipped += 1
            continue

        terminal, lote, coupon = value("terminal"), value("lote"), value("coupon")
        combined_raw = value("terminal_lote_coupon")
        if combined_raw and not (terminal and lote and coupon):
            split_terminal, split_lote, split_coupon = split_terminal_lote_coupon_field(combined_raw)
            terminal = terminal or split_terminal
            lote = lote or split_lote
            coupon = coupon or split_coupon

        currency = normalize_currency(value("currency"))
        if currency and currency != "ARS" and currency not in currency_issues:
            currency_issues.append(currency)

        date_text = value("date")
        card_masked = value("card_number")

        transactions.append(Transaction(
            import_id=import_id,
            order_id=order_id,
            transaction_id=value("transaction_id"),
            last4=extract_last4(card_masked),
            amount_cents=parse_amount(value("amount")),
            op_date=normalize_date(date_text),
            currency=currency or "ARS",
            approval=value("approval"),
            op_datetime=parse_datetime(date_text),
            terminal=terminal,
            lote=lote,
            coupon=coupon,
            card_masked=card_masked,
            raw={k: v for k, v in row.items() if k is not None and isinstance(v, str)},
        ))

    if currency_issues:
        logger.warning("Non-ARS currency in transaction CSV", currencies=currency_issues)

    logger.info(
        "Parsed transaction CSV",
        import_id=import_id,
        transactions=len(transactions),
        skipped_rows=skipped,
        encoding=encoding,
    )
    return CsvParseResult(
        transactions=transactions,
        currency_issues=currency_issues,
        skipped_rows=skipped,
        encoding=encoding,
    )


def _sniff_dialect(text: str):
    lines = text.splitlines()
    sample = "\n".join(lines[:5])
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t")
    except csv.Error:
        return csv.excel
    if dialect.delimiter not in lines[0]:
        return csv.excel
    return dialect
