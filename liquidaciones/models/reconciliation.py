"""Reconciliation result models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from .enums import AuditAction, MatchType, ReasonCode, ReconciliationStatus


@dataclass(frozen=True)
class AuditRecord:
    """Who matched a line, when, and with which keys as evidence."""
    matched_at: datetime
    matched_by: str
    pdf_key: str
    csv_key: Optional[str] = None


@dataclass(frozen=True)
class Reconciliation:
    """
    Outcome for exactly one settlement line.
    Rebuilt on every reconcile run; only a payout event moves it to PAID.
    """
    settlement_id: str
    settlement_line_id: str
    status: ReconciliationStatus
    match_type: MatchType
    match_key: str
    amount_cents: int
    op_date: str
    last4: str
    audit: AuditRecord
    coupon: str = ""
    reason: Optional[ReasonCode] = None
    reason_detail: str = ""

    # Matched transaction (None when unmatched)
    transaction_ref: Optional[str] = None
    order_id: Optional[str] = None
    transaction_id: Optional[str] = None

    # Resolved organizer
    organizer_id: Optional[str] = None
    organizer_name: Optional[str] = None
    event_id: Optional[str] = None

    # Installment grouping
    group_lead_line_id: Optional[str] = None

    # Payout
    payout_reference: Optional[str] = None
    paid_at: Optional[datetime] = None

    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_settled(self) -> bool:
        """Reconciled or already paid: the transaction is consumed."""
        return self.status in (ReconciliationStatus.RECONCILED, ReconciliationStatus.PAID)


@dataclass
class InstallmentGroup:
    """Installment lines of one plan collapsed into a single matchable amount."""
    key: str
    lead_line_id: str
    member_line_ids: List[str] = field(default_factory=list)
    total_cents: int = 0
    installment_total: Optional[int] = None

    @property
    def size(self) -> int:
        return len(self.member_line_ids)


@dataclass
class OrganizerSummary:
    """Payable rollup for one organizer."""
    organizer_id: str
    organizer_name: str
    total_cents: int = 0
    order_ids: List[str] = field(default_factory=list)
    transaction_ids: List[str] = field(default_factory=list)
    reconciled_count: int = 0


@dataclass
class SummaryTotals:
    """Record counts by status and reason."""
    settlement_lines: int = 0
    reconciled: int = 0
    needs_review: int = 0
    excluded: int = 0
    paid: int = 0
    no_match: int = 0
    ambiguous: int = 0
    duplicate: int = 0
    no_organizer: int = 0


@dataclass
class SummaryValidations:
    """Cross-checks gating payout issuance."""
    currency_ars: bool = True
    reconciled_total_cents: int = 0
    pdf_total_cents: Optional[int] = None
    pdf_total_matches: Optional[bool] = None


@dataclass
class ReconciliationSummary:
    """Aggregate view over one reconciliation set."""
    totals: SummaryTotals = field(default_factory=SummaryTotals)
    validations: SummaryValidations = field(default_factory=SummaryValidations)
    by_organizer: List[OrganizerSummary] = field(default_factory=list)
    can_generate_payments: bool = False


@dataclass
class PayoutBatch:
    """Funds owed to one organizer out of a payable reconciliation set."""
    organizer_id: str
    organizer_name: str
    total_cents: int
    reconciliation_ids: List[str] = field(default_factory=list)
    settlement_ids: List[str] = field(default_factory=list)
    currency: str = "ARS"
    bank_reference: Optional[str] = None
    paid_by: Optional[str] = None
    paid_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: str(uuid4()))


@dataclass
class AuditEntry:
    """An entry in the audit log."""
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=datetime.utcnow)

    action: AuditAction = AuditAction.LINE_MATCHED

    # Context
    settlement_id: Optional[str] = None
    line_ids: List[str] = field(default_factory=list)
    transaction_ids: List[str] = field(default_factory=list)

    # Details
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    success: bool = True
