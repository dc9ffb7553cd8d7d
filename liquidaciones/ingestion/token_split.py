"""
Scored splitting of glued digit runs in settlement PDF rows.

The processor report sometimes prints adjacent columns without a separator,
e.g. coupon + card last-4 + amount as "14598210,00", or terminal + lote +
coupon as "77428221". Each splitter enumerates every plausible split,
scores it, and returns the candidates ranked best-first (lowest score).
The scoring rules live here so they can be audited and tested on their own.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from .normalizer import parse_amount

DECIMAL_SUFFIX_RE = re.compile(r"[.,]\d{2}$")
_GROUPED_AMOUNT_RE = re.compile(r"^\d{1,3}(?:[.,]\d{3})*$")
_HAS_GROUP_RE = re.compile(r"[.,]\d{3}")
_SEPARATOR_RE = re.compile(r"[.,]")

TERMINAL_DIGITS = 5
MAX_LOTE_DIGITS = 3
MAX_AMOUNT_LEAD_DIGITS = 5
MIN_COMBINED_DIGITS = 7
MIN_COMBINED_WITH_LAST4_DIGITS = 11


@dataclass(frozen=True)
class CouponAmountSplit:
    """One reading of a glued coupon + last-4 + amount token."""
    coupon: str
    last4: str
    amount_text: str
    amount_cents: int
    score: int


@dataclass(frozen=True)
class TerminalLoteCouponSplit:
    """One reading of a glued terminal + lote + coupon (+ last-4) digit run."""
    terminal: str
    lote: str
    coupon: str
    last4: str = ""
    score: int = 0


def coupon_length_score(coupon: str) -> int:
    """Two-digit coupons are the norm, then three, then one; longer is unlikely."""
    return {2: 0, 3: 1, 1: 2}.get(len(coupon), 3)


def lote_length_score(lote: str) -> int:
    return {1: 0, 2: 1}.get(len(lote), 2)


def score_coupon_amount_split(coupon: str, amount_digits: str, source_rank: int) -> int:
    """
    Lower is better. Splits anchored on a grouped amount ("1.000") outrank
    brute-force ones; amount leads with a spurious leading zero are penalized.
    """
    leading_zero_penalty = 1 if len(amount_digits) > 1 and amount_digits.startswith("0") else 0
    return source_rank * 10 + coupon_length_score(coupon) * 2 + leading_zero_penalty


def score_terminal_lote_coupon_split(lote: str, coupon: str) -> int:
    return coupon_length_score(coupon) * 2 + lote_length_score(lote)


def split_coupon_last4_amount(token: str) -> List[CouponAmountSplit]:
    """
    Rank readings of a single token holding coupon, last-4 and amount.

    The token must end with a two-digit decimal part and carry at least six
    integer digits. Returns an empty list when no reading is plausible.
    """
    decimal_match = DECIMAL_SUFFIX_RE.search(token)
    if not decimal_match:
        return []

    decimals = decimal_match.group(0)
    integer_part = token[: -len(decimals)]
    integer_digits = re.sub(r"\D", "", integer_part)
    if len(integer_digits) < 6:
        return []

    candidates: List[CouponAmountSplit] = []

    def try_candidate(amount_digits: str, source_rank: int, amount_token: Optional[str] = None):
        prefix_len = len(integer_digits) - len(amount_digits)
        if prefix_len <= 4:
            return
        last4 = integer_digits[prefix_len - 4:prefix_len]
        coupon = integer_digits[: prefix_len - 4]
        if not coupon:
            return
        amount_text = f"{amount_token or amount_digits}{decimals}"
        amount_cents = parse_amount(amount_text)
        if not amount_cents:
            return
        candidates.append(CouponAmountSplit(
            coupon=coupon,
            last4=last4,
            amount_text=amount_text,
            amount_cents=amount_cents,
            score=score_coupon_amount_split(coupon, amount_digits, source_rank),
        ))

    # A thousands separator inside the integer part pins where the amount starts.
    if _SEPARATOR_RE.search(integer_part):
        for start in range(len(integer_part) - 1, -1, -1):
            suffix = integer_part[start:]
            if not _GROUPED_AMOUNT_RE.match(suffix) or not _HAS_GROUP_RE.search(suffix):
                continue
            amount_digits = re.sub(r"\D", "", suffix)
            if amount_digits:
                try_candidate(amount_digits, 0, suffix)
            break

    if not candidates:
        for amount_len in range(1, MAX_AMOUNT_LEAD_DIGITS + 1):
            if len(integer_digits) <= amount_len + 4:
                continue
            try_candidate(integer_digits[-amount_len:], 1)

    return sorted(candidates, key=lambda c: c.score)


def split_terminal_lote_coupon(digits: str) -> List[TerminalLoteCouponSplit]:
    """
    Rank readings of a glued terminal + lote + coupon run.
    The terminal is the leading five digits; lote takes one to three digits.
    """
    if not digits.isdigit() or len(digits) < MIN_COMBINED_DIGITS:
        return []

    terminal = digits[:TERMINAL_DIGITS]
    tail = digits[TERMINAL_DIGITS:]
    candidates = []
    for lote_len in range(1, min(MAX_LOTE_DIGITS, len(tail) - 1) + 1):
        lote = tail[:lote_len]
        coupon = tail[lote_len:]
        if not coupon:
            continue
        candidates.append(TerminalLoteCouponSplit(
            terminal=terminal,
            lote=lote,
            coupon=coupon,
            score=score_terminal_lote_coupon_split(lote, coupon),
        ))
    return sorted(candidates, key=lambda c: c.score)


def split_terminal_lote_coupon_last4(digits: str) -> List[TerminalLoteCouponSplit]:
    """Same as ``split_terminal_lote_coupon`` with the card last-4 glued at the end."""
    if not digits.isdigit() or len(digits) < MIN_COMBINED_WITH_LAST4_DIGITS:
        return []
    last4 = digits[-4:]
    return [
        TerminalLoteCouponSplit(
            terminal=c.terminal, lote=c.lote, coupon=c.coupon, last4=last4, score=c.score
        )
        for c in split_terminal_lote_coupon(digits[:-4])
    ]


def best(candidates: list):
    """First (lowest-scoring) candidate or None."""
    return candidates[0] if candidates else None
