"""
Installment grouper.

A plan paid in N cuotas shows up as several PDF rows but as a single
full-amount transaction in the CSV. Rows of the same plan are bucketed by
(date, last4, coupon, terminal, lote, declared total); the member with the
lowest installment number leads the bucket and carries the summed amount.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from ..models import InstallmentGroup, SettlementLine

logger = structlog.get_logger()

FRACTION_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})\b(?!/\d{4})")
PLAN_RE = re.compile(r"plan\s*cuota", re.IGNORECASE)

DEFAULT_MAX_TOTAL = 60
UNKNOWN_NUMBER = 99


@dataclass(frozen=True)
class InstallmentInfo:
    number: Optional[int] = None
    total: Optional[int] = None


@dataclass
class InstallmentGrouping:
    """Buckets of one line set; ``by_line`` only holds multi-member groups."""
    groups: Dict[str, InstallmentGroup] = field(default_factory=dict)
    by_line: Dict[str, InstallmentGroup] = field(default_factory=dict)
    info: Dict[str, InstallmentInfo] = field(default_factory=dict)

    def group_for(self, line: SettlementLine) -> Optional[InstallmentGroup]:
        return self.by_line.get(line.id)

    def info_for(self, line: SettlementLine) -> InstallmentInfo:
        return self.info.get(line.id, InstallmentInfo())


def extract_installment_info(line: SettlementLine, max_total: int = DEFAULT_MAX_TOTAL) -> InstallmentInfo:
    """
    Installment number and declared total of a line.

    The parsed fraction is trusted when its total is above one. Otherwise the
    raw text is rescanned for N/M tokens with 1 < M <= max_total and
    0 <= N <= M; the largest total wins, then the number closest to 1.
    """
    if line.installment_total and line.installment_total > 1:
        return InstallmentInfo(line.installment_number, line.installment_total)

    best: Optional[Tuple[int, int, int]] = None
    for match in FRACTION_RE.finditer(line.raw_line or ""):
        number, total = int(match.group(1)), int(match.group(2))
        if total <= 1 or total > max_total:
            continue
        if number < 0 or number > total:
            continue
        score = total * 100 + (max_total - abs(number - 1))
        if best is None or score > best[0]:
            best = (score, number, total)

    if best is None:
        return InstallmentInfo()
    return InstallmentInfo(best[1], best[2])


def is_installment_line(line: SettlementLine, info: InstallmentInfo) -> bool:
    return line.is_installment or bool(PLAN_RE.search(line.raw_line or "")) or bool(info.total)


def installment_group_key(line: SettlementLine, info: InstallmentInfo) -> str:
    return "|".join([
        line.op_date,
        line.last4,
        line.coupon,
        line.terminal,
        line.lote,
        str(info.total) if info.total else "",
    ])


def inferred_total_cents(line: SettlementLine, info: InstallmentInfo) -> Optional[int]:
    """Full plan amount for a lone installment row, or None when not applicable."""
    if not info.total or info.total <= 1:
        return None
    total = line.amount_cents * info.total
    if total <= 0 or total == line.amount_cents:
        return None
    return total


def group_installments(
    lines: Sequence[SettlementLine],
    max_total: int = DEFAULT_MAX_TOTAL,
) -> InstallmentGrouping:
    """Bucket installment-type lines; ties on installment number keep the first seen."""
    grouping = InstallmentGrouping()
    lead_numbers: Dict[str, int] = {}

    for line in lines:
        info = extract_installment_info(line, max_total)
        grouping.info[line.id] = info
        if not is_installment_line(line, info):
            continue

        key = installment_group_key(line, info)
        number = info.number if info.number is not None else UNKNOWN_NUMBER
        group = grouping.groups.get(key)
        if group is None:
            group = InstallmentGroup(key=key, lead_line_id=line.id, installment_total=info.total)
            grouping.groups[key] = group
            lead_numbers[key] = number
        elif number < lead_numbers[key]:
            group.lead_line_id = line.id
            lead_numbers[key] = number

        group.member_line_ids.append(line.id)
        group.total_cents += line.amount_cents

    for group in grouping.groups.values():
        if group.size > 1:
            for line_id in group.member_line_ids:
                grouping.by_line[line_id] = group
            logger.debug(
                "Grouped installment lines",
                key=group.key,
                members=group.size,
                total_cents=group.total_cents,
            )

    return grouping


def multi_member_groups(grouping: InstallmentGrouping) -> List[InstallmentGroup]:
    """Multi-member groups only, in first-seen order."""
    return [g for g in grouping.groups.values() if g.size > 1]
