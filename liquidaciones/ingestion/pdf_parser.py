"""
Settlement PDF text parser.

Works on the text layer of the processor report (see ``pdf_reader``). Each
data row is either a cash sale ("VENTA CTDO") or an installment-plan row
("PLAN CUOTA" or an N/M cuota token). Columns frequently come out glued
together, so field extraction runs a chain of positional readings and falls
back to the scored splitters in ``token_split``.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

import structlog

from ..models import LineType, SettlementLine
from . import token_split
from .normalizer import extract_last4, has_date, normalize_date, normalize_whitespace, parse_amount

logger = structlog.get_logger()


AMOUNT_RE = re.compile(r"-?\d{1,3}(?:[.,]\d{3})*(?:[.,]\d{2})")
DECIMAL_TOKEN_RE = token_split.DECIMAL_SUFFIX_RE
CASH_SALE_RE = re.compile(r"venta\s+ctdo", re.IGNORECASE)
PLAN_RE = re.compile(r"plan\s*cuota", re.IGNORECASE)
MARKER_RE = re.compile(r"venta\s+ctdo|plan\s*cuota", re.IGNORECASE)
CUOTA_TOKEN_RE = re.compile(r"\b\d{1,2}/\d{1,2}\b(?!/\d{4})")
CUOTA_EXACT_RE = re.compile(r"^\d{1,2}/\d{1,2}$")
DATE_TOKEN_RE = re.compile(r"\d{2}/\d{2}/\d{4}")
GLUED_DATE_RE = re.compile(r"(\d{2}/\d{2}/\d{4})(\d+)")
TERM_LOTE_COUPON_TOKEN_RE = re.compile(r"^\d+[/-]\d+[/-]\d+$")
DIGIT_RUN_RE = re.compile(r"\d+")

DECLARED_TOTAL_RE = re.compile(
    r"total\s+(?:ventas?|de\s+ventas?|liquidaci[oó]n)\s*[:\-]?\s*([\d.,-]+)",
    re.IGNORECASE,
)
PAYMENT_DATE_RE = re.compile(r"Fecha\s+de\s+Pago[:\s]*(\d{2}/\d{2}/\d{4})", re.IGNORECASE)
LIQUIDATION_NUMBER_RES = [
    re.compile(r"Nro\.?\s+Liquidaci[oó]n[:\s]*(\d+)", re.IGNORECASE),
    re.compile(r"Nro\.?\s+Liq[:\s]*(\d+)", re.IGNORECASE),
]

_TERMINAL_RE = re.compile(r"^\d{4,6}$")
_LOTE_RE = re.compile(r"^\d{1,3}$")
_COUPON_RE = re.compile(r"^\d{1,6}$")
_LAST4_RE = re.compile(r"^\d{4}$")


def is_valid_terminal(value: str) -> bool:
    return bool(_TERMINAL_RE.match(value or ""))


def is_valid_lote(value: str) -> bool:
    return bool(_LOTE_RE.match(value or ""))


def is_valid_coupon(value: str) -> bool:
    return bool(_COUPON_RE.match(value or ""))


def is_valid_last4(value: str) -> bool:
    return bool(_LAST4_RE.match(value or ""))


@dataclass
class DroppedLine:
    """A classified row that could not be turned into a settlement line."""
    line_index: int
    text: str
    reason: str


@dataclass
class PdfParseResult:
    """Result of parsing settlement PDF text."""
    lines: List[SettlementLine]
    declared_total_cents: Optional[int] = None
    dropped: List[DroppedLine] = field(default_factory=list)


@dataclass
class _LineDraft:
    """Mutable working state while the field readings run."""
    line: str
    op_date: str
    date_token: str
    amount_text: str
    amount_matches: List[str]
    is_plan: bool
    cuota_match: Optional[str]
    tokens: List[str]
    amount_cents: int = 0
    terminal: str = ""
    lote: str = ""
    coupon: str = ""
    last4: str = ""
    plan_fraction: str = ""
    installment_number: Optional[int] = None
    installment_total: Optional[int] = None

    @property
    def remaining_tokens(self) -> List[str]:
        return self.tokens[2:]

    def set_fraction(self, fraction: str) -> None:
        self.plan_fraction = fraction
        number, _, total = fraction.partition("/")
        if number.isdigit():
            self.installment_number = int(number)
        if total.isdigit():
            self.installment_total = int(total)


def split_on_marker(line: str, marker: re.Pattern) -> List[str]:
    """Split a physical line holding several rows at each occurrence of ``marker``."""
    if len(marker.findall(line)) <= 1:
        return [line]
    parts = re.split(f"(?={marker.pattern})", line, flags=re.IGNORECASE)
    return [part.strip() for part in parts if part.strip()]


def expand_lines(text: str) -> List[str]:
    raw_lines = [normalize_whitespace(l) for l in re.split(r"\r?\n", text or "")]
    expanded = []
    for raw in raw_lines:
        if not raw:
            continue
        for part in split_on_marker(raw, PLAN_RE):
            expanded.extend(split_on_marker(part, CASH_SALE_RE))
    return expanded


def is_candidate_row(line: str) -> bool:
    """Marker rows, or a cuota token together with a date and an amount."""
    if CASH_SALE_RE.search(line) or PLAN_RE.search(line):
        return True
    return bool(CUOTA_TOKEN_RE.search(line) and AMOUNT_RE.search(line) and has_date(line))


def parse_settlement_line(
    raw_line: str,
    import_id: str,
    line_index: int = 0,
) -> Tuple[Optional[SettlementLine], str]:
    """
    Parse one candidate row.

    Returns ``(line, "")`` on success or ``(None, reason)`` when the row is not
    a data row or lacks a usable date or amount.
    """
    line = GLUED_DATE_RE.sub(r"\1 \2", normalize_whitespace(raw_line), count=1)

    is_cash = bool(CASH_SALE_RE.search(line))
    cuota_match = CUOTA_TOKEN_RE.search(line)
    is_plan = bool(PLAN_RE.search(line) or cuota_match)
    if not is_cash and not is_plan:
        return None, "unclassified"

    date_match = DATE_TOKEN_RE.search(line)
    amount_matches = AMOUNT_RE.findall(line)
    if not date_match:
        return None, "missing date"
    if not amount_matches:
        return None, "missing amount"

    op_date = normalize_date(date_match.group(0))
    if not op_date:
        return None, "invalid date"

    rest = MARKER_RE.sub("", line, count=1).strip()
    rest_after_date = DATE_TOKEN_RE.sub("", rest).strip()

    draft = _LineDraft(
        line=line,
        op_date=op_date,
        date_token=date_match.group(0),
        amount_text=amount_matches[-1],
        amount_matches=amount_matches,
        is_plan=is_plan,
        cuota_match=cuota_match.group(0) if cuota_match else None,
        tokens=rest_after_date.split(),
    )

    _read_positional_columns(draft)
    _read_trailing_columns(draft)
    remaining = _read_numeric_runs(draft)
    _settle_amount(draft)
    _recover_last4(draft)
    _assign_remaining(draft, remaining)
    _validate_fields(draft)
    _fallback_scan(draft)

    if not draft.amount_cents:
        return None, "missing amount"

    return SettlementLine(
        import_id=import_id,
        op_date=draft.op_date,
        last4=draft.last4,
        amount_cents=draft.amount_cents,
        raw_line=line,
        line_type=LineType.INSTALLMENT_PLAN if draft.is_plan else LineType.CASH_SALE,
        terminal=draft.terminal,
        lote=draft.lote,
        coupon=draft.coupon,
        plan_fraction=draft.plan_fraction,
        installment_number=draft.installment_number,
        installment_total=draft.installment_total,
        line_index=line_index,
    ), ""


def _read_positional_columns(draft: _LineDraft) -> None:
    """Terminal and lote lead the row; coupon, last-4 and the fraction follow."""
    tokens = draft.tokens
    if len(tokens) >= 2:
        draft.terminal, draft.lote = tokens[0], tokens[1]

    remaining = draft.remaining_tokens
    if draft.is_plan and len(remaining) >= 4:
        if remaining[0].isdigit():
            draft.coupon = remaining[0]
        if is_valid_last4(remaining[1]):
            draft.last4 = remaining[1]
        if CUOTA_EXACT_RE.match(remaining[2]):
            draft.set_fraction(remaining[2])

    if draft.is_plan and not draft.plan_fraction:
        token = next((t for t in remaining + tokens if CUOTA_TOKEN_RE.search(t)), None)
        if token:
            draft.set_fraction(token)
        elif draft.cuota_match:
            draft.set_fraction(draft.cuota_match)

    if not draft.is_plan and len(tokens) >= 4:
        if tokens[2].isdigit():
            draft.coupon = tokens[2]
        if is_valid_last4(tokens[3]):
            draft.last4 = tokens[3]


def _read_trailing_columns(draft: _LineDraft) -> None:
    """Read coupon, last-4 and amount backwards from the end of the row."""
    remaining = draft.remaining_tokens

    if len(remaining) >= 3:
        amount_token = remaining[-1]
        if DECIMAL_TOKEN_RE.search(amount_token):
            draft.amount_text = amount_token
            draft.amount_cents = parse_amount(amount_token)
        if is_valid_last4(remaining[-2]):
            draft.last4 = remaining[-2]
        if remaining[-3].isdigit():
            draft.coupon = remaining[-3]

    elif len(remaining) == 2:
        amount_token = remaining[1]
        if DECIMAL_TOKEN_RE.search(amount_token):
            draft.amount_text = amount_token
            draft.amount_cents = parse_amount(amount_token)
        combined = remaining[0]
        if is_valid_last4(combined):
            draft.last4 = combined
        elif combined.isdigit() and len(combined) > 4:
            draft.last4 = combined[-4:]
            draft.coupon = combined[:-4]

    elif len(remaining) == 1:
        combined = remaining[0]
        if DECIMAL_TOKEN_RE.search(combined):
            split = token_split.best(token_split.split_coupon_last4_amount(combined))
            if split:
                draft.last4 = split.last4
                draft.coupon = split.coupon
                draft.amount_cents = split.amount_cents
                draft.amount_text = split.amount_text
            else:
                draft.amount_text = combined
                draft.amount_cents = parse_amount(combined)


def _line_before_amount(draft: _LineDraft) -> str:
    index = draft.line.rfind(draft.amount_text)
    return draft.line[:index] if index >= 0 else draft.line


def _read_numeric_runs(draft: _LineDraft) -> List[str]:
    """
    Digit runs between the date and the amount, minus the ones already used.
    Also picks up a missing last-4 from them.
    """
    before_amount = _line_before_amount(draft)
    date_index = before_amount.find(draft.date_token)
    after_date = before_amount[date_index + len(draft.date_token):] if date_index >= 0 else before_amount
    remaining = DIGIT_RUN_RE.findall(after_date)

    for value in (draft.last4, draft.coupon):
        if value and value in remaining:
            remaining.remove(value)

    if not draft.last4:
        for i in range(len(remaining) - 1, -1, -1):
            if len(remaining[i]) == 4:
                draft.last4 = remaining.pop(i)
                break

    if not draft.last4:
        for i, run in enumerate(remaining):
            if len(run) > 4:
                draft.last4 = run[-4:]
                if not draft.coupon:
                    draft.coupon = run[:-4]
                remaining.pop(i)
                break

    return remaining


def _settle_amount(draft: _LineDraft) -> None:
    """Installment rows carry several amounts; the plan amount is the largest."""
    if draft.is_plan and draft.amount_matches:
        best_cents, best_text = 0, draft.amount_text
        for candidate in draft.amount_matches:
            cents = parse_amount(candidate)
            if cents > best_cents:
                best_cents, best_text = cents, candidate
        draft.amount_cents = best_cents
        draft.amount_text = best_text
    elif not draft.amount_cents and draft.amount_text:
        draft.amount_cents = parse_amount(draft.amount_text)


def _recover_last4(draft: _LineDraft) -> None:
    if draft.last4:
        return

    # coupon (2) + last-4 (4) + amount glued into one long number
    digits = re.sub(r"\D", "", draft.amount_text)
    if len(digits) > 8:
        integer_part, decimals = digits[:-2], digits[-2:]
        if len(integer_part) > 6:
            draft.last4 = integer_part[2:6]
            if not draft.coupon:
                draft.coupon = integer_part[:2]
            embedded = parse_amount(f"{integer_part[6:] or '0'}.{decimals}")
            if embedded > 0:
                draft.amount_cents = embedded
            return

    digits_before = re.sub(r"\D", "", _line_before_amount(draft))
    if len(digits_before) >= 4:
        draft.last4 = digits_before[-4:]
        return

    draft.last4 = extract_last4(draft.line)


def _assign_remaining(draft: _LineDraft, remaining: Sequence[str]) -> None:
    if len(remaining) >= 3:
        terminal, lote, coupon = remaining[-3], remaining[-2], remaining[-1]
        if not draft.terminal and is_valid_terminal(terminal):
            draft.terminal = terminal
        if not draft.lote and is_valid_lote(lote):
            draft.lote = lote
        if not draft.coupon and not draft.is_plan and is_valid_coupon(coupon):
            draft.coupon = coupon
    elif len(remaining) == 2:
        if not draft.terminal and is_valid_terminal(remaining[0]):
            draft.terminal = remaining[0]
        if not draft.lote and is_valid_lote(remaining[1]):
            draft.lote = remaining[1]
    elif len(remaining) == 1:
        if not draft.terminal and is_valid_terminal(remaining[0]):
            draft.terminal = remaining[0]


def _validate_fields(draft: _LineDraft) -> None:
    if not is_valid_terminal(draft.terminal):
        draft.terminal = ""
    if not is_valid_lote(draft.lote):
        draft.lote = ""
    if not is_valid_coupon(draft.coupon):
        draft.coupon = ""
    if not is_valid_last4(draft.last4):
        draft.last4 = ""


def _fallback_numeric_tokens(tokens: Iterable[str]) -> List[str]:
    result = []
    for token in tokens:
        if token.isdigit():
            result.append(token)
        elif TERM_LOTE_COUPON_TOKEN_RE.match(token):
            result.extend(DIGIT_RUN_RE.findall(token))
    return result


def _fallback_scan(draft: _LineDraft) -> None:
    """Recover whatever is still missing from plain or combined digit tokens."""
    numeric = _fallback_numeric_tokens(draft.tokens)

    if not draft.last4:
        draft.last4 = next((t for t in reversed(numeric) if len(t) == 4), "")

    if not (draft.terminal and draft.lote and draft.coupon):
        for i in range(len(numeric) - 2):
            terminal, lote, coupon = numeric[i:i + 3]
            if is_valid_terminal(terminal) and is_valid_lote(lote) and is_valid_coupon(coupon):
                draft.terminal = draft.terminal or terminal
                draft.lote = draft.lote or lote
                draft.coupon = draft.coupon or coupon
                break

    if draft.terminal and draft.lote and draft.coupon and draft.last4:
        return

    for token in (t for t in draft.tokens if t.isdigit() and len(t) >= token_split.MIN_COMBINED_DIGITS):
        if not draft.last4:
            split = token_split.best(token_split.split_terminal_lote_coupon_last4(token))
            if split:
                draft.terminal = draft.terminal or split.terminal
                draft.lote = draft.lote or split.lote
                draft.coupon = draft.coupon or split.coupon
                draft.last4 = split.last4
                if draft.terminal and draft.lote and draft.coupon:
                    break
        if not (draft.terminal and draft.lote and draft.coupon):
            split = token_split.best(token_split.split_terminal_lote_coupon(token))
            if split:
                draft.terminal = draft.terminal or split.terminal
                draft.lote = draft.lote or split.lote
                draft.coupon = draft.coupon or split.coupon
        if draft.terminal and draft.lote and draft.coupon and draft.last4:
            break


def extract_declared_total(text: str) -> Optional[int]:
    """Declared total in cents; the last "Total ventas/liquidación" occurrence wins."""
    matches = DECLARED_TOTAL_RE.findall(text or "")
    if not matches:
        return None
    return parse_amount(matches[-1])


def extract_liquidation_date(text: str, lines: Sequence[SettlementLine] = ()) -> Optional[str]:
    """"Fecha de Pago" from the header, else the earliest operation date."""
    match = PAYMENT_DATE_RE.search(text or "")
    if match:
        normalized = normalize_date(match.group(1))
        if normalized:
            return normalized

    dates = sorted({line.op_date for line in lines if line.op_date})
    return dates[0] if dates else None


def extract_liquidation_number(text: str) -> Optional[str]:
    for pattern in LIQUIDATION_NUMBER_RES:
        match = pattern.search(text or "")
        if match:
            return match.group(1)
    return None


def parse_pdf_text(text: str, import_id: str) -> PdfParseResult:
    """
    Parse the text layer of a settlement PDF.

    Unclassified rows (headers, footers) are skipped. Classified rows still
    lacking a date or amount after joining the next physical line are left
    out of ``lines`` and reported in ``dropped``.
    """
    expanded = expand_lines(text)
    lines: List[SettlementLine] = []
    dropped: List[DroppedLine] = []

    for index, current in enumerate(expanded):
        if not is_candidate_row(current):
            continue

        candidate = current
        if not has_date(candidate) or not AMOUNT_RE.search(candidate):
            if index + 1 < len(expanded):
                candidate = f"{candidate} {expanded[index + 1]}"

        parsed, reason = parse_settlement_line(candidate, import_id, index)
        if parsed is None:
            dropped.append(DroppedLine(line_index=index, text=candidate, reason=reason))
            logger.warning("Dropped settlement row", line_index=index, reason=reason, text=candidate)
            continue

        logger.debug(
            "Parsed settlement row",
            line_index=index,
            line_type=parsed.line_type.value,
            last4=parsed.last4,
            amount_cents=parsed.amount_cents,
        )
        lines.append(parsed)

    declared_total = extract_declared_total(text)
    logger.info(
        "Parsed settlement PDF",
        import_id=import_id,
        lines=len(lines),
        dropped=len(dropped),
        declared_total_cents=declared_total,
    )
    return PdfParseResult(lines=lines, declared_total_cents=declared_total, dropped=dropped)
