"""Parsed input records: settlement lines (PDF) and transactions (CSV)."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional
from uuid import uuid4

from ..utils.hashing import sha256_text
from .enums import LineType, SettlementStatus


def line_content_key(line: "SettlementLine", prefix: str = "") -> str:
    """Identity key of a settlement line, independent of its import."""
    parts = [
        line.op_date,
        line.last4,
        str(line.amount_cents),
        line.coupon,
        line.terminal,
        line.lote,
        line.line_type.value,
        line.plan_fraction,
    ]
    if prefix:
        parts.insert(0, prefix)
    return "|".join(parts)


def transaction_content_key(txn: "Transaction", prefix: str = "") -> str:
    """Identity key of a CSV transaction, independent of its import."""
    parts = [
        txn.op_date,
        txn.last4,
        str(txn.amount_cents),
        txn.transaction_id,
        txn.order_id,
        txn.coupon,
    ]
    if prefix:
        parts.insert(0, prefix)
    return "|".join(parts)


@dataclass(frozen=True)
class SettlementLine:
    """
    One row of the processor settlement PDF.
    Amount is stored in CENTS. Immutable once parsed.
    """
    import_id: str
    op_date: str  # ISO yyyy-mm-dd
    last4: str
    amount_cents: int
    raw_line: str
    line_type: LineType = LineType.CASH_SALE
    terminal: str = ""
    lote: str = ""
    coupon: str = ""
    plan_fraction: str = ""  # e.g. "01/03"
    installment_number: Optional[int] = None
    installment_total: Optional[int] = None
    line_index: int = 0
    id: str = field(default_factory=lambda: str(uuid4()))
    content_hash: str = ""

    def __post_init__(self):
        if not self.content_hash:
            object.__setattr__(self, "content_hash", sha256_text(line_content_key(self)))

    @property
    def is_installment(self) -> bool:
        return self.line_type == LineType.INSTALLMENT_PLAN


@dataclass(frozen=True)
class Transaction:
    """
    One processed order transaction from the merchant CSV export.
    Amount is stored in CENTS. Immutable once parsed.
    """
    import_id: str
    order_id: str
    transaction_id: str
    last4: str
    amount_cents: int
    op_date: str  # ISO yyyy-mm-dd, "" when the CSV date is unusable
    currency: str = "ARS"
    approval: str = ""
    op_datetime: Optional[str] = None
    terminal: str = ""
    lote: str = ""
    coupon: str = ""
    card_masked: str = ""
    raw: Dict[str, str] = field(default_factory=dict, compare=False, hash=False)
    id: str = field(default_factory=lambda: str(uuid4()))
    content_hash: str = ""

    def __post_init__(self):
        if not self.content_hash:
            object.__setattr__(
                self, "content_hash", sha256_text(transaction_content_key(self))
            )


@dataclass(frozen=True)
class OrderInfo:
    """Organizer identity resolved for an order id."""
    order_id: str
    organizer_id: str
    organizer_name: str
    event_id: Optional[str] = None


@dataclass
class Settlement:
    """One imported processor report paired with its transaction export."""
    card_brand: str
    hash_pdf: str
    hash_csv: str
    id: str = field(default_factory=lambda: str(uuid4()))
    provider: str = "fiserv"
    source_pdf_filename: str = ""
    source_csv_filename: str = ""
    liquidation_date: Optional[str] = None
    liquidation_number: Optional[str] = None
    declared_total_cents: Optional[int] = None
    currency_homogeneous: bool = True
    status: SettlementStatus = SettlementStatus.IMPORTED
    created_by: str = "unknown"
    created_at: datetime = field(default_factory=datetime.utcnow)
