"""Enumerations for the settlement reconciliation system."""

from enum import Enum


class LineType(str, Enum):
    """
    Kind of settlement row in the processor report.

    CASH_SALE: single-payment sale ("VENTA CTDO")
    INSTALLMENT_PLAN: one installment of a plan ("PLAN CUOTA" or an N/M fraction)
    """
    CASH_SALE = "venta_ctdo"
    INSTALLMENT_PLAN = "plan_cuota"


class ReconciliationStatus(str, Enum):
    """
    Outcome of one settlement line.

    RECONCILED: matched to exactly one transaction with a known organizer
    NEEDS_REVIEW: parseable but not safely matchable, see reason
    EXCLUDED: installment member folded into its group's lead line
    PAID: reconciled and settled by an external payout event
    """
    RECONCILED = "reconciled"
    NEEDS_REVIEW = "needs_review"
    EXCLUDED = "excluded"
    PAID = "paid"


class MatchType(str, Enum):
    """Which key family produced (or was tried for) the match."""
    EXACT_KEY = "exact_key"        # date + last4 + amount
    EXACT_COUPON = "exact_coupon"  # coupon-augmented or coupon-only


class ReasonCode(str, Enum):
    """Reason attached to a reconciliation outcome."""
    NO_MATCH = "no_match"
    AMBIGUOUS = "ambiguous"
    DUPLICATE = "duplicate"
    NO_ORGANIZER = "no_organizer"
    GROUPED_INSTALLMENT = "grouped_installment"
    INSTALLMENT_GROUP_LEAD = "installment_group_lead"
    INSTALLMENT_INFERRED = "installment_inferred"
    COUPON_MATCH = "coupon_match"


class SettlementStatus(str, Enum):
    """Lifecycle of an imported settlement (PDF + CSV pair)."""
    IMPORTED = "imported"
    NEEDS_REVIEW = "needs_review"
    READY_TO_PAY = "ready_to_pay"
    PARTIAL = "partial"
    PAID = "paid"


class AuditAction(str, Enum):
    """Type of audit action."""
    LINES_PARSED = "lines_parsed"
    TRANSACTIONS_PARSED = "transactions_parsed"
    DUPLICATE_IMPORT_SKIPPED = "duplicate_import_skipped"
    INSTALLMENT_GROUPED = "installment_grouped"
    LINE_MATCHED = "line_matched"
    LINE_UNMATCHED = "line_unmatched"
    AMBIGUOUS_MATCH = "ambiguous_match"
    DUPLICATE_MATCH = "duplicate_match"
    ORGANIZER_MISSING = "organizer_missing"
    PAYOUT_APPLIED = "payout_applied"
