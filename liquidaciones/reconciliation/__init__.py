"""Reconciliation engine: installment grouping, matching, summary and payouts."""

from .installments import InstallmentGrouping, extract_installment_info, group_installments
from .matcher import MatchingEngine, TransactionIndex, reconcile
from .payouts import apply_payout, build_payout_batches, payouts_to_csv
from .service import ImportResult, SettlementService, SettlementStore
from .summary import build_summary, currency_homogeneous, summary_to_dict

__all__ = [
    "InstallmentGrouping",
    "extract_installment_info",
    "group_installments",
    "MatchingEngine",
    "TransactionIndex",
    "reconcile",
    "apply_payout",
    "build_payout_batches",
    "payouts_to_csv",
    "ImportResult",
    "SettlementService",
    "SettlementStore",
    "build_summary",
    "currency_homogeneous",
    "summary_to_dict",
]
