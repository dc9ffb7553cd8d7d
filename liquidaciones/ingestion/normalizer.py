"""
Locale-aware normalization primitives shared by the CSV and PDF parsers.

Amounts follow the Latin-American convention when a comma is present
("1.234,56"); otherwise the text is read as a plain decimal ("1234.56").
All decimal-separator heuristics live here.
"""

import re
import unicodedata
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

_NON_NUMERIC_RE = re.compile(r"[^0-9,.\-]")
_THOUSANDS_DOT_RE = re.compile(r"\.(?=\d{3}(?:\D|$))")
_NUMERIC_DATE_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")
_TEXT_DATE_RE = re.compile(r"(\d{1,2})[-\s]([A-Za-z]{3,})[-\s](\d{4})")
_TIME_RE = re.compile(r"(\d{1,2}):(\d{2})(?::(\d{2}))?")
_DATETIME_DATE_RE = re.compile(
    r"(\d{1,2}[/\-][A-Za-z]{3,}[/\-]\d{4}|\d{1,2}[/\-]\d{1,2}[/\-]\d{4})"
)
_WS_RE = re.compile(r"\s+")

MONTHS = {
    "ene": 1, "feb": 2, "mar": 3, "abr": 4, "may": 5, "jun": 6,
    "jul": 7, "ago": 8, "sep": 9, "oct": 10, "nov": 11, "dic": 12,
}

ARS_SPELLINGS = {"ARS", "$", "AR$", "AR$S", "PESOS", "PESO ARGENTINO"}

_CENTS = Decimal("0.01")


def normalize_whitespace(value: str) -> str:
    return _WS_RE.sub(" ", value or "").strip()


def parse_amount(text: str) -> int:
    """
    Parse a money string into integer cents.

    "1.234,56" -> 123456, "1234.56" -> 123456, "10" -> 1000.
    Unparseable input yields 0; callers must check that a decimal token was
    actually present before trusting a zero.
    """
    cleaned = _NON_NUMERIC_RE.sub("", text or "")
    cleaned = _THOUSANDS_DOT_RE.sub("", cleaned)
    if not cleaned:
        return 0

    if "," in cleaned:
        cleaned = cleaned.replace(".", "").replace(",", ".")

    try:
        value = Decimal(cleaned)
    except InvalidOperation:
        return 0
    if not value.is_finite():
        return 0

    return int((value.quantize(_CENTS, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def cents_to_decimal(cents: Optional[int]) -> Optional[Decimal]:
    """Presentation boundary: integer cents -> Decimal with two places."""
    if cents is None:
        return None
    return (Decimal(cents) / 100).quantize(_CENTS)


def format_cents(cents: int) -> str:
    return f"{cents_to_decimal(cents):.2f}"


def normalize_date(text: str) -> str:
    """
    Normalize "dd/mm/yyyy" or "dd-<mes>-yyyy" (Spanish month) to ISO "yyyy-mm-dd".
    Returns "" when no usable date is found.
    """
    value = text or ""
    match = _NUMERIC_DATE_RE.search(value)
    if match:
        day, month, year = (int(g) for g in match.groups())
        return _iso_or_empty(year, month, day)

    match = _TEXT_DATE_RE.search(value)
    if match:
        day_str, month_str, year_str = match.groups()
        month = MONTHS.get(_strip_accents(month_str).lower()[:3])
        if month:
            return _iso_or_empty(int(year_str), month, int(day_str))

    return ""


def has_date(text: str) -> bool:
    value = text or ""
    return bool(_NUMERIC_DATE_RE.search(value) or _TEXT_DATE_RE.search(value))


def parse_datetime(text: str) -> Optional[str]:
    """
    Parse a CSV date column ("02/01/2026 14:35:10") into an ISO-8601 UTC timestamp.
    Missing time components default to midnight.
    """
    value = text or ""
    match = _DATETIME_DATE_RE.search(value)
    if not match:
        return None
    token = match.group(0)
    iso_date = normalize_date(token) or normalize_date(token.replace("-", "/"))
    if not iso_date:
        return None

    year, month, day = (int(p) for p in iso_date.split("-"))
    hours = minutes = seconds = 0
    time_match = _TIME_RE.search(value[match.end():]) or _TIME_RE.search(value)
    if time_match:
        hours = int(time_match.group(1))
        minutes = int(time_match.group(2))
        seconds = int(time_match.group(3) or 0)

    try:
        moment = datetime(year, month, day, hours, minutes, seconds, tzinfo=timezone.utc)
    except ValueError:
        return None
    return moment.isoformat().replace("+00:00", "Z")


def extract_last4(text: str) -> str:
    """
    Trailing four digits of the card number text.
    With fewer than four digits the trimmed raw text is returned unchanged.
    """
    digits = re.sub(r"\D", "", text or "")
    if len(digits) >= 4:
        return digits[-4:]
    return (text or "").strip()


def normalize_currency(text: str) -> str:
    """Map known ARS spellings to "ARS"; anything else passes through upper-cased."""
    value = (text or "").strip().upper()
    if not value:
        return ""
    if value in ARS_SPELLINGS:
        return "ARS"
    return value


def _strip_accents(value: str) -> str:
    decomposed = unicodedata.normalize("NFD", value)
    return "".join(c for c in decomposed if unicodedata.category(c) != "Mn")


def _iso_or_empty(year: int, month: int, day: int) -> str:
    try:
        return datetime(year, month, day).date().isoformat()
    except ValueError:
        return ""
