"""Data models for the settlement reconciliation system."""

from .enums import (
    AuditAction,
    LineType,
    MatchType,
    ReasonCode,
    ReconciliationStatus,
    SettlementStatus,
)
from .settlement import (
    OrderInfo,
    Settlement,
    SettlementLine,
    Transaction,
    line_content_key,
    transaction_content_key,
)
from .reconciliation import (
    AuditEntry,
    AuditRecord,
    InstallmentGroup,
    OrganizerSummary,
    PayoutBatch,
    Reconciliation,
    ReconciliationSummary,
    SummaryTotals,
    SummaryValidations,
)

__all__ = [
    # Enums
    "AuditAction",
    "LineType",
    "MatchType",
    "ReasonCode",
    "ReconciliationStatus",
    "SettlementStatus",
    # Inputs
    "OrderInfo",
    "Settlement",
    "SettlementLine",
    "Transaction",
    "line_content_key",
    "transaction_content_key",
    # Reconciliation
    "AuditEntry",
    "AuditRecord",
    "InstallmentGroup",
    "OrganizerSummary",
    "PayoutBatch",
    "Reconciliation",
    "ReconciliationSummary",
    "SummaryTotals",
    "SummaryValidations",
]
