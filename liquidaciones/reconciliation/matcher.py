"""
Matching engine: one Reconciliation per settlement line.

Matching runs in two phases. Phase one walks the lines in input order and
fixes every decision (candidate transaction, ambiguity, duplicate) against
an explicit per-run accumulator of consumed transactions. Phase two resolves
organizers for the accepted matches with bounded concurrency and assembles
the records back in line order, so lookup completion order can never change
a status, reason or amount.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Set

import structlog

from ..config import get_settings
from ..models import (
    AuditAction,
    AuditRecord,
    MatchType,
    OrderInfo,
    ReasonCode,
    Reconciliation,
    ReconciliationStatus,
    SettlementLine,
    Transaction,
)
from ..utils.audit_logger import AuditLogger
from .installments import (
    InstallmentGrouping,
    group_installments,
    inferred_total_cents,
    is_installment_line,
    multi_member_groups,
)

logger = structlog.get_logger()


def primary_key(op_date: str, last4: str, amount_cents: int) -> str:
    return f"{op_date}|{last4}|{amount_cents}"


def coupon_key(op_date: str, last4: str, amount_cents: int, coupon: str) -> str:
    return f"{primary_key(op_date, last4, amount_cents)}|{coupon}"


def coupon_only_key(op_date: str, last4: str, coupon: str) -> str:
    return f"{op_date}|{last4}|{coupon}"


def line_key(line: SettlementLine, amount_cents: int) -> str:
    if line.coupon:
        return coupon_key(line.op_date, line.last4, amount_cents, line.coupon)
    return primary_key(line.op_date, line.last4, amount_cents)


def derived_coupon(txn: Transaction, digits: int = 2) -> str:
    """Explicit coupon, else the trailing digits of the transaction id."""
    if txn.coupon:
        return txn.coupon
    id_digits = "".join(c for c in txn.transaction_id if c.isdigit())
    if len(id_digits) < digits:
        return ""
    return id_digits[-digits:]


class TransactionIndex:
    """Lookup tables over the transactions of one settlement."""

    def __init__(self, transactions: Sequence[Transaction], coupon_digits: int = 2):
        self.by_primary: Dict[str, List[Transaction]] = {}
        self.by_coupon: Dict[str, List[Transaction]] = {}
        self.by_coupon_only: Dict[str, List[Transaction]] = {}

        for txn in transactions:
            self.by_primary.setdefault(
                primary_key(txn.op_date, txn.last4, txn.amount_cents), []
            ).append(txn)

            coupon = derived_coupon(txn, coupon_digits)
            if coupon:
                self.by_coupon.setdefault(
                    coupon_key(txn.op_date, txn.last4, txn.amount_cents, coupon), []
                ).append(txn)
                self.by_coupon_only.setdefault(
                    coupon_only_key(txn.op_date, txn.last4, coupon), []
                ).append(txn)

    def lookup(self, line: SettlementLine, amount_cents: int) -> List[Transaction]:
        """Coupon-augmented key when the line has a coupon, else the primary key."""
        if line.coupon:
            return list(self.by_coupon.get(coupon_key(line.op_date, line.last4, amount_cents, line.coupon), []))
        return list(self.by_primary.get(primary_key(line.op_date, line.last4, amount_cents), []))

    def lookup_coupon_only(self, line: SettlementLine) -> List[Transaction]:
        if not line.coupon:
            return []
        return list(self.by_coupon_only.get(coupon_only_key(line.op_date, line.last4, line.coupon), []))


@dataclass
class MatchContext:
    """Per-run accumulator. Never shared between runs."""
    settlement_id: str
    operator_id: str
    index: TransactionIndex
    grouping: InstallmentGrouping
    matched_at: datetime = field(default_factory=datetime.utcnow)
    used_transactions: Set[str] = field(default_factory=set)


@dataclass
class LineDecision:
    """Phase-one outcome for one line, before organizer resolution."""
    line: SettlementLine
    status: ReconciliationStatus
    match_type: MatchType
    match_key: str
    amount_cents: int
    reason: Optional[ReasonCode] = None
    reason_detail: str = ""
    transaction: Optional[Transaction] = None
    csv_key: Optional[str] = None
    group_lead_line_id: Optional[str] = None

    @property
    def awaits_organizer(self) -> bool:
        return self.status == ReconciliationStatus.RECONCILED and self.transaction is not None


class MatchingEngine:
    """
    Reconciles settlement lines against transactions.

    The order resolver is any object with ``async resolve(order_id)``
    returning ``OrderInfo`` or ``None``.
    """

    def __init__(self, order_resolver, concurrency: Optional[int] = None, audit: Optional[AuditLogger] = None):
        self.settings = get_settings()
        self.order_resolver = order_resolver
        self.concurrency = max(1, concurrency or self.settings.resolver_concurrency)
        self.audit = audit

    async def reconcile(
        self,
        settlement_id: str,
        lines: Sequence[SettlementLine],
        transactions: Sequence[Transaction],
        operator_id: str = "system",
    ) -> List[Reconciliation]:
        """
        Produce exactly one Reconciliation per input line, in input order.

        Args:
            settlement_id: settlement the lines belong to
            lines: parsed settlement lines
            transactions: transactions pre-scoped to this settlement
            operator_id: recorded in each record's audit evidence

        Returns:
            List of Reconciliation, same length and order as ``lines``
        """
        audit = self.audit or AuditLogger(settlement_id)
        context = MatchContext(
            settlement_id=settlement_id,
            operator_id=operator_id,
            index=TransactionIndex(transactions, self.settings.derived_coupon_digits),
            grouping=group_installments(lines, self.settings.installment_max_total),
        )

        for group in multi_member_groups(context.grouping):
            audit.record(
                AuditAction.INSTALLMENT_GROUPED,
                f"Grouped {group.size} installment lines",
                line_ids=group.member_line_ids,
                lead_line_id=group.lead_line_id,
                total_cents=group.total_cents,
            )

        decisions = [self._decide(line, context) for line in lines]

        organizers = await self._resolve_organizers(decisions)
        reconciliations = [self._build(decision, organizers, context, audit) for decision in decisions]

        counts: Dict[str, int] = {}
        for rec in reconciliations:
            counts[rec.status.value] = counts.get(rec.status.value, 0) + 1
        logger.info(
            "Reconciliation run complete",
            settlement_id=settlement_id,
            lines=len(lines),
            transactions=len(transactions),
            **counts,
        )
        return reconciliations

    # Phase one

    def _decide(self, line: SettlementLine, context: MatchContext) -> LineDecision:
        grouping = context.grouping
        info = grouping.info_for(line)
        group = grouping.group_for(line)
        match_type = MatchType.EXACT_COUPON if line.coupon else MatchType.EXACT_KEY

        amounts = [line.amount_cents]
        lead_reason: Optional[ReasonCode] = None
        group_lead_id: Optional[str] = None

        if group is not None:
            if group.lead_line_id != line.id:
                return LineDecision(
                    line=line,
                    status=ReconciliationStatus.EXCLUDED,
                    match_type=match_type,
                    match_key=line_key(line, line.amount_cents),
                    amount_cents=line.amount_cents,
                    reason=ReasonCode.GROUPED_INSTALLMENT,
                    reason_detail="installment folded into its plan's lead line",
                    group_lead_line_id=group.lead_line_id,
                )
            amounts = [group.total_cents]
            lead_reason = ReasonCode.INSTALLMENT_GROUP_LEAD
            group_lead_id = line.id
        elif is_installment_line(line, info):
            inferred = inferred_total_cents(line, info)
            if inferred:
                amounts = [inferred, line.amount_cents]

        hits: List[Transaction] = []
        amount_cents = amounts[0]
        for index, candidate_amount in enumerate(amounts):
            hits = context.index.lookup(line, candidate_amount)
            if hits:
                amount_cents = candidate_amount
                if lead_reason is None and index == 0 and len(amounts) > 1:
                    lead_reason = ReasonCode.INSTALLMENT_INFERRED
                break
        key = line_key(line, amount_cents)

        if len(hits) > 1:
            return LineDecision(
                line=line,
                status=ReconciliationStatus.NEEDS_REVIEW,
                match_type=match_type,
                match_key=key,
                amount_cents=amount_cents,
                reason=ReasonCode.AMBIGUOUS,
                reason_detail="multiple transactions share this key",
                group_lead_line_id=group_lead_id,
            )

        if hits:
            return self._accept(
                line, hits[0], key, amount_cents, match_type, lead_reason, group_lead_id, context
            )

        coupon_hits = context.index.lookup_coupon_only(line)
        if group is not None:
            # a plan lead only settles against the full plan amount
            coupon_hits = [t for t in coupon_hits if t.amount_cents == group.total_cents]
        if len(coupon_hits) == 1:
            txn = coupon_hits[0]
            return self._accept(
                line,
                txn,
                coupon_only_key(line.op_date, line.last4, line.coupon),
                txn.amount_cents,
                MatchType.EXACT_COUPON,
                lead_reason or ReasonCode.COUPON_MATCH,
                group_lead_id,
                context,
            )
        if len(coupon_hits) > 1:
            return LineDecision(
                line=line,
                status=ReconciliationStatus.NEEDS_REVIEW,
                match_type=MatchType.EXACT_COUPON,
                match_key=coupon_only_key(line.op_date, line.last4, line.coupon),
                amount_cents=amount_cents,
                reason=ReasonCode.AMBIGUOUS,
                reason_detail="ambiguous by coupon",
                group_lead_line_id=group_lead_id,
            )

        return LineDecision(
            line=line,
            status=ReconciliationStatus.NEEDS_REVIEW,
            match_type=match_type,
            match_key=key,
            amount_cents=amount_cents,
            reason=ReasonCode.NO_MATCH,
            reason_detail="no transaction matches this line",
            group_lead_line_id=group_lead_id,
        )

    def _accept(
        self,
        line: SettlementLine,
        txn: Transaction,
        key: str,
        amount_cents: int,
        match_type: MatchType,
        reason: Optional[ReasonCode],
        group_lead_id: Optional[str],
        context: MatchContext,
    ) -> LineDecision:
        if line.coupon:
            csv_key = coupon_key(txn.op_date, txn.last4, txn.amount_cents, line.coupon)
        else:
            csv_key = primary_key(txn.op_date, txn.last4, txn.amount_cents)

        if txn.id in context.used_transactions:
            return LineDecision(
                line=line,
                status=ReconciliationStatus.NEEDS_REVIEW,
                match_type=match_type,
                match_key=key,
                amount_cents=amount_cents,
                reason=ReasonCode.DUPLICATE,
                reason_detail="transaction already matched by another line",
                transaction=txn,
                csv_key=csv_key,
                group_lead_line_id=group_lead_id,
            )

        context.used_transactions.add(txn.id)
        return LineDecision(
            line=line,
            status=ReconciliationStatus.RECONCILED,
            match_type=match_type,
            match_key=key,
            amount_cents=txn.amount_cents,
            reason=reason,
            transaction=txn,
            csv_key=csv_key,
            group_lead_line_id=group_lead_id,
        )

    # Phase two

    async def _resolve_organizers(self, decisions: Sequence[LineDecision]) -> Dict[str, Optional[OrderInfo]]:
        order_ids: List[str] = []
        for decision in decisions:
            if decision.awaits_organizer and decision.transaction.order_id not in order_ids:
                order_ids.append(decision.transaction.order_id)

        if not order_ids:
            return {}

        semaphore = asyncio.Semaphore(self.concurrency)

        async def resolve_one(order_id: str) -> Optional[OrderInfo]:
            async with semaphore:
                try:
                    return await self.order_resolver.resolve(order_id)
                except Exception as e:
                    # treated as a miss
                    logger.warning("Order resolver raised", order_id=order_id, error=str(e))
                    return None

        results = await asyncio.gather(*(resolve_one(order_id) for order_id in order_ids))
        return dict(zip(order_ids, results))

    def _build(
        self,
        decision: LineDecision,
        organizers: Dict[str, Optional[OrderInfo]],
        context: MatchContext,
        audit: AuditLogger,
    ) -> Reconciliation:
        line = decision.line
        txn = decision.transaction
        status = decision.status
        reason = decision.reason
        reason_detail = decision.reason_detail
        info: Optional[OrderInfo] = None

        if decision.awaits_organizer:
            info = organizers.get(txn.order_id)
            if info is None or not (info.organizer_id and info.organizer_name):
                info = None
                status = ReconciliationStatus.NEEDS_REVIEW
                reason = ReasonCode.NO_ORGANIZER
                reason_detail = "no organizer found for order"

        record = Reconciliation(
            settlement_id=context.settlement_id,
            settlement_line_id=line.id,
            status=status,
            match_type=decision.match_type,
            match_key=decision.match_key,
            amount_cents=decision.amount_cents,
            op_date=line.op_date,
            last4=line.last4,
            coupon=line.coupon,
            reason=reason,
            reason_detail=reason_detail,
            audit=AuditRecord(
                matched_at=context.matched_at,
                matched_by=context.operator_id,
                pdf_key=decision.match_key,
                csv_key=decision.csv_key,
            ),
            transaction_ref=txn.id if txn else None,
            order_id=txn.order_id if txn else None,
            transaction_id=txn.transaction_id if txn else None,
            organizer_id=info.organizer_id if info else None,
            organizer_name=info.organizer_name if info else None,
            event_id=info.event_id if info else None,
            group_lead_line_id=decision.group_lead_line_id,
        )
        self._audit(record, audit)
        return record

    def _audit(self, record: Reconciliation, audit: AuditLogger) -> None:
        line_ids = [record.settlement_line_id]
        txn_ids = [record.transaction_ref] if record.transaction_ref else []

        if record.status == ReconciliationStatus.RECONCILED:
            audit.record(
                AuditAction.LINE_MATCHED,
                "Line reconciled",
                line_ids=line_ids,
                transaction_ids=txn_ids,
                match_key=record.match_key,
                organizer_id=record.organizer_id,
                amount_cents=record.amount_cents,
            )
        elif record.reason == ReasonCode.DUPLICATE:
            audit.record(
                AuditAction.DUPLICATE_MATCH,
                "Transaction already matched by another line",
                line_ids=line_ids,
                transaction_ids=txn_ids,
                success=False,
                match_key=record.match_key,
            )
        elif record.reason == ReasonCode.AMBIGUOUS:
            audit.record(
                AuditAction.AMBIGUOUS_MATCH,
                "Several transactions share the line key",
                line_ids=line_ids,
                success=False,
                match_key=record.match_key,
            )
        elif record.reason == ReasonCode.NO_ORGANIZER:
            audit.record(
                AuditAction.ORGANIZER_MISSING,
                "No organizer for matched order",
                line_ids=line_ids,
                transaction_ids=txn_ids,
                success=False,
                order_id=record.order_id,
            )
        elif record.reason == ReasonCode.NO_MATCH:
            audit.record(
                AuditAction.LINE_UNMATCHED,
                "No transaction matches line",
                line_ids=line_ids,
                success=False,
                match_key=record.match_key,
            )


async def reconcile(
    settlement_id: str,
    lines: Sequence[SettlementLine],
    transactions: Sequence[Transaction],
    operator_id: str,
    order_resolver,
    concurrency: Optional[int] = None,
) -> List[Reconciliation]:
    """Convenience wrapper around ``MatchingEngine.reconcile``."""
    engine = MatchingEngine(order_resolver, concurrency=concurrency)
    return await engine.reconcile(settlement_id, lines, transactions, operator_id)
