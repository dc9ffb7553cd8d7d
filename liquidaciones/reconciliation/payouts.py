"""
Payout batches, payout CSV export and the payout event.

Applying a payout is the only way a reconciliation reaches ``paid``.
"""

import csv
import io
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

import structlog

from ..errors import PayoutNotAllowedError
from ..ingestion.normalizer import format_cents
from ..models import (
    PayoutBatch,
    Reconciliation,
    ReconciliationStatus,
    ReconciliationSummary,
    SettlementStatus,
)

logger = structlog.get_logger()

PAYOUT_CSV_HEADER = ["organizerId", "organizerName", "total", "orderIds", "transactionIds"]


def _ensure_payable(summary: ReconciliationSummary) -> None:
    if not summary.can_generate_payments:
        raise PayoutNotAllowedError(
            f"Settlement has {summary.totals.needs_review} reconciliations in review "
            f"out of {summary.totals.settlement_lines}"
        )


def build_payout_batches(
    summary: ReconciliationSummary,
    reconciliations: Sequence[Reconciliation],
) -> List[PayoutBatch]:
    """
    One batch per organizer over the reconciled records.

    Raises:
        PayoutNotAllowedError: the summary does not allow payments.
    """
    _ensure_payable(summary)

    batches: Dict[str, PayoutBatch] = {}
    for rec in reconciliations:
        if rec.status != ReconciliationStatus.RECONCILED or not rec.organizer_id:
            continue
        batch = batches.get(rec.organizer_id)
        if batch is None:
            batch = PayoutBatch(
                organizer_id=rec.organizer_id,
                organizer_name=rec.organizer_name or "",
                total_cents=0,
            )
            batches[rec.organizer_id] = batch
        batch.total_cents += rec.amount_cents
        batch.reconciliation_ids.append(rec.id)
        if rec.settlement_id not in batch.settlement_ids:
            batch.settlement_ids.append(rec.settlement_id)

    logger.info("Built payout batches", batches=len(batches))
    return list(batches.values())


def payouts_to_csv(summary: ReconciliationSummary) -> str:
    """
    Payout file, one row per organizer; id lists joined with "|".

    Raises:
        PayoutNotAllowedError: the summary does not allow payments.
    """
    _ensure_payable(summary)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(PAYOUT_CSV_HEADER)
    for organizer in summary.by_organizer:
        writer.writerow([
            organizer.organizer_id,
            organizer.organizer_name,
            format_cents(organizer.total_cents),
            "|".join(organizer.order_ids),
            "|".join(organizer.transaction_ids),
        ])
    return buffer.getvalue()


def apply_payout(
    reconciliations: Sequence[Reconciliation],
    batch: PayoutBatch,
    paid_by: str,
    bank_reference: str,
    paid_at: Optional[datetime] = None,
) -> List[Reconciliation]:
    """
    Record an external payout: the batch's records move to ``paid``.

    Every record in the batch must exist, belong to the batch organizer and
    still be ``reconciled``. Returns the full list with those records replaced.

    Raises:
        PayoutNotAllowedError: missing bank reference or a record not payable.
    """
    if not bank_reference:
        raise PayoutNotAllowedError("A bank reference is required to register a payout")

    wanted = set(batch.reconciliation_ids)
    payable = {
        rec.id
        for rec in reconciliations
        if rec.id in wanted
        and rec.status == ReconciliationStatus.RECONCILED
        and rec.organizer_id == batch.organizer_id
    }
    if payable != wanted:
        raise PayoutNotAllowedError(
            f"{len(wanted - payable)} reconciliations are not reconciled for "
            f"organizer {batch.organizer_id} or were already paid"
        )

    paid_at = paid_at or datetime.utcnow()
    updated = [
        replace(rec, status=ReconciliationStatus.PAID, payout_reference=bank_reference, paid_at=paid_at)
        if rec.id in wanted
        else rec
        for rec in reconciliations
    ]

    batch.total_cents = sum(rec.amount_cents for rec in updated if rec.id in wanted)
    batch.bank_reference = bank_reference
    batch.paid_by = paid_by
    batch.paid_at = paid_at

    logger.info(
        "Payout applied",
        organizer_id=batch.organizer_id,
        records=len(wanted),
        total_cents=batch.total_cents,
        bank_reference=bank_reference,
    )
    return updated


def settlement_status_after_payout(reconciliations: Sequence[Reconciliation]) -> Optional[SettlementStatus]:
    """``paid`` when every payable record is paid, ``partial`` when some are, else None."""
    payable = [r for r in reconciliations if r.status != ReconciliationStatus.EXCLUDED]
    paid = sum(1 for r in payable if r.status == ReconciliationStatus.PAID)
    if paid == 0:
        return None
    return SettlementStatus.PAID if paid == len(payable) else SettlementStatus.PARTIAL
