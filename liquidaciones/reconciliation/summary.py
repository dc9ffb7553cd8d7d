"""
Summary builder: counts, totals cross-check and per-organizer rollup.
"""

from dataclasses import asdict
from typing import Any, Dict, Optional, Sequence

import structlog

from ..config import Settings, get_settings
from ..ingestion.normalizer import cents_to_decimal
from ..models import (
    OrganizerSummary,
    ReasonCode,
    Reconciliation,
    ReconciliationStatus,
    ReconciliationSummary,
    SummaryTotals,
    SummaryValidations,
    Transaction,
)

logger = structlog.get_logger()


def currency_homogeneous(transactions: Sequence[Transaction]) -> bool:
    """True when every transaction is in ARS."""
    return all(txn.currency == "ARS" for txn in transactions)


def build_summary(
    reconciliations: Sequence[Reconciliation],
    declared_total_cents: Optional[int] = None,
    currency_ars: bool = True,
    settings: Optional[Settings] = None,
) -> ReconciliationSummary:
    """
    Aggregate one reconciliation set.

    The reconciled total counts settled records (reconciled or already paid)
    and is compared with the PDF-declared total under the configured
    tolerance. The organizer rollup covers reconciled records still awaiting
    payout. Payouts are allowed only for a non-empty set with nothing in review.
    """
    settings = settings or get_settings()
    totals = SummaryTotals(settlement_lines=len(reconciliations))
    reconciled_total = 0
    by_organizer: Dict[str, OrganizerSummary] = {}

    for rec in reconciliations:
        if rec.status == ReconciliationStatus.RECONCILED:
            totals.reconciled += 1
        elif rec.status == ReconciliationStatus.NEEDS_REVIEW:
            totals.needs_review += 1
        elif rec.status == ReconciliationStatus.EXCLUDED:
            totals.excluded += 1
        elif rec.status == ReconciliationStatus.PAID:
            totals.paid += 1

        if rec.status == ReconciliationStatus.NEEDS_REVIEW:
            if rec.reason == ReasonCode.NO_MATCH:
                totals.no_match += 1
            elif rec.reason == ReasonCode.AMBIGUOUS:
                totals.ambiguous += 1
            elif rec.reason == ReasonCode.DUPLICATE:
                totals.duplicate += 1
            elif rec.reason == ReasonCode.NO_ORGANIZER:
                totals.no_organizer += 1

        if rec.is_settled:
            reconciled_total += rec.amount_cents

        if rec.status != ReconciliationStatus.RECONCILED or not rec.organizer_id:
            continue

        entry = by_organizer.get(rec.organizer_id)
        if entry is None:
            entry = OrganizerSummary(
                organizer_id=rec.organizer_id,
                organizer_name=rec.organizer_name or "",
            )
            by_organizer[rec.organizer_id] = entry
        entry.total_cents += rec.amount_cents
        entry.reconciled_count += 1
        if rec.order_id and rec.order_id not in entry.order_ids:
            entry.order_ids.append(rec.order_id)
        if rec.transaction_id and rec.transaction_id not in entry.transaction_ids:
            entry.transaction_ids.append(rec.transaction_id)

    pdf_total_matches = None
    if declared_total_cents is not None:
        pdf_total_matches = settings.totals_match(declared_total_cents, reconciled_total)

    summary = ReconciliationSummary(
        totals=totals,
        validations=SummaryValidations(
            currency_ars=currency_ars,
            reconciled_total_cents=reconciled_total,
            pdf_total_cents=declared_total_cents,
            pdf_total_matches=pdf_total_matches,
        ),
        by_organizer=list(by_organizer.values()),
        can_generate_payments=len(reconciliations) > 0 and totals.needs_review == 0,
    )

    logger.info(
        "Built reconciliation summary",
        lines=totals.settlement_lines,
        reconciled=totals.reconciled,
        needs_review=totals.needs_review,
        reconciled_total_cents=reconciled_total,
        pdf_total_matches=pdf_total_matches,
    )
    return summary


def summary_to_dict(summary: ReconciliationSummary) -> Dict[str, Any]:
    """JSON-ready view with amounts as two-decimal strings."""
    data = asdict(summary)
    validations = data["validations"]
    validations["reconciled_total"] = str(cents_to_decimal(validations["reconciled_total_cents"]))
    pdf_total = cents_to_decimal(validations["pdf_total_cents"])
    validations["pdf_total"] = str(pdf_total) if pdf_total is not None else None
    for organizer in data["by_organizer"]:
        organizer["total"] = str(cents_to_decimal(organizer["total_cents"]))
    return data
