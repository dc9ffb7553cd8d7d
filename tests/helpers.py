"""Factories and fixture loaders shared by the test modules."""

from datetime import datetime
from pathlib import Path
from typing import Optional

from liquidaciones.integrations.order_resolver import StaticOrderResolver
from liquidaciones.models import (
    AuditRecord,
    LineType,
    MatchType,
    ReasonCode,
    Reconciliation,
    ReconciliationStatus,
    SettlementLine,
    Transaction,
)

FIXTURES_DIR = Path(__file__).parent / "fixtures"


def load_fixture(name: str) -> str:
    return (FIXTURES_DIR / name).read_text(encoding="utf-8")


def load_fixture_bytes(name: str) -> bytes:
    return (FIXTURES_DIR / name).read_bytes()


def make_line(
    amount_cents: int,
    last4: str = "1234",
    op_date: str = "2026-01-02",
    coupon: str = "",
    line_type: LineType = LineType.CASH_SALE,
    **kwargs,
) -> SettlementLine:
    kwargs.setdefault("raw_line", f"VENTA CTDO {op_date} {last4} {amount_cents}")
    return SettlementLine(
        import_id="pdf",
        op_date=op_date,
        last4=last4,
        amount_cents=amount_cents,
        coupon=coupon,
        line_type=line_type,
        **kwargs,
    )


def make_txn(
    order_id: str,
    amount_cents: int,
    last4: str = "1234",
    op_date: str = "2026-01-02",
    transaction_id: str = "",
    **kwargs,
) -> Transaction:
    return Transaction(
        import_id="csv",
        order_id=order_id,
        transaction_id=transaction_id or f"TX-{order_id}",
        last4=last4,
        amount_cents=amount_cents,
        op_date=op_date,
        **kwargs,
    )


class CountingResolver(StaticOrderResolver):
    """Static resolver that records every lookup."""

    def __init__(self, orders):
        super().__init__(orders)
        self.calls = []

    async def resolve(self, order_id):
        self.calls.append(order_id)
        return await super().resolve(order_id)




def make_rec(
    amount_cents: int,
    status: ReconciliationStatus = ReconciliationStatus.RECONCILED,
    reason: Optional[ReasonCode] = None,
    organizer_id: str = "org-1",
    organizer_name: str = "Productora Sur",
    order_id: str = "O1",
    transaction_id: str = "TX-1",
) -> Reconciliation:
    has_organizer = status != ReconciliationStatus.NEEDS_REVIEW
    return Reconciliation(
        settlement_id="s1",
        settlement_line_id=f"line-{amount_cents}",
        status=status,
        match_type=MatchType.EXACT_KEY,
        match_key=f"2026-01-02|1234|{amount_cents}",
        amount_cents=amount_cents,
        op_date="2026-01-02",
        last4="1234",
        audit=AuditRecord(matched_at=datetime(2026, 1, 6), matched_by="test", pdf_key="k"),
        reason=reason,
        order_id=order_id,
        transaction_id=transaction_id,
        organizer_id=organizer_id if has_organizer else None,
        organizer_name=organizer_name if has_organizer else None,
    )
