"""
Tests for the matching engine.
"""

import asyncio

import pytest

from helpers import make_line, make_txn
from liquidaciones.models import (
    AuditAction,
    LineType,
    MatchType,
    OrderInfo,
    ReasonCode,
    ReconciliationStatus,
)
from liquidaciones.reconciliation.matcher import (
    MatchingEngine,
    TransactionIndex,
    derived_coupon,
    reconcile,
)
from liquidaciones.utils.audit_logger import AuditLogger


def plan_line(amount_cents, number, total=3, coupon="21"):
    fraction = f"{number}/{total}"
    return make_line(
        amount_cents,
        last4="9600",
        coupon=coupon,
        line_type=LineType.INSTALLMENT_PLAN,
        terminal="77428",
        lote="2",
        plan_fraction=fraction,
        installment_number=number,
        installment_total=total,
        raw_line=f"PLAN CUOTA 02/01/2026 77428 2 {coupon} 9600 {fraction}",
    )


def outcome(records):
    return [(r.status, r.reason, r.amount_cents, r.transaction_id) for r in records]


class SlowResolver:
    """Tracks in-flight lookups; later orders answer first."""

    def __init__(self, orders):
        self.orders = orders
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = []

    async def resolve(self, order_id):
        self.calls.append(order_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0.01 * (len(self.orders) - len(self.calls)))
            return self.orders.get(order_id)
        finally:
            self.in_flight -= 1


class FailingResolver:
    async def resolve(self, order_id):
        raise RuntimeError("lookup service down")


class TestKeys:
    def test_derived_coupon_from_transaction_id(self):
        assert derived_coupon(make_txn("O1", 100, transaction_id="900000114")) == "14"

    def test_explicit_coupon_wins(self):
        assert derived_coupon(make_txn("O1", 100, transaction_id="900000114", coupon="7")) == "7"

    def test_short_transaction_id_has_no_coupon(self):
        assert derived_coupon(make_txn("O1", 100, transaction_id="TX-1")) == ""

    def test_coupon_line_ignores_primary_key(self):
        index = TransactionIndex([make_txn("O1", 1000, transaction_id="ABC")])
        line = make_line(1000, coupon="14")
        assert index.lookup(line, 1000) == []

    def test_coupon_line_skips_other_coupon(self):
        index = TransactionIndex([make_txn("O1", 1000, coupon="99")])
        line = make_line(1000, coupon="14")
        assert index.lookup(line, 1000) == []


@pytest.mark.asyncio
class TestBasicMatching:
    async def test_single_exact_match(self, resolver):
        line = make_line(123456)
        txn = make_txn("O1", 123456)

        records = await reconcile("s1", [line], [txn], "operator", resolver)

        assert len(records) == 1
        rec = records[0]
        assert rec.status == ReconciliationStatus.RECONCILED
        assert rec.amount_cents == 123456
        assert rec.reason is None
        assert rec.match_type == MatchType.EXACT_KEY
        assert rec.match_key == "2026-01-02|1234|123456"
        assert rec.settlement_line_id == line.id
        assert rec.transaction_ref == txn.id
        assert rec.order_id == "O1"
        assert rec.organizer_id == "org-1"
        assert rec.organizer_name == "Productora Sur"
        assert rec.audit.matched_by == "operator"
        assert rec.audit.csv_key == "2026-01-02|1234|123456"

    async def test_second_identical_line_is_duplicate(self, resolver):
        lines = [make_line(123456), make_line(123456)]
        txn = make_txn("O1", 123456)

        records = await reconcile("s1", lines, [txn], "operator", resolver)

        assert records[0].status == ReconciliationStatus.RECONCILED
        assert records[1].status == ReconciliationStatus.NEEDS_REVIEW
        assert records[1].reason == ReasonCode.DUPLICATE
        assert records[1].transaction_ref == txn.id

    async def test_one_record_per_line_in_order(self, resolver):
        lines = [make_line(100), make_line(200, last4="5678"), make_line(300), make_line(100)]
        txns = [make_txn("O1", 100), make_txn("O2", 300)]

        records = await reconcile("s1", lines, txns, "operator", resolver)

        assert [r.settlement_line_id for r in records] == [line.id for line in lines]

    async def test_ambiguous_key(self, resolver):
        line = make_line(5000)
        txns = [make_txn("O1", 5000), make_txn("O2", 5000)]

        rec = (await reconcile("s1", [line], txns, "operator", resolver))[0]

        assert rec.status == ReconciliationStatus.NEEDS_REVIEW
        assert rec.reason == ReasonCode.AMBIGUOUS
        assert rec.transaction_ref is None
        assert resolver.calls == []

    async def test_no_match(self, resolver):
        rec = (await reconcile("s1", [make_line(5000)], [make_txn("O1", 4999)], "operator", resolver))[0]

        assert rec.status == ReconciliationStatus.NEEDS_REVIEW
        assert rec.reason == ReasonCode.NO_MATCH

    async def test_empty_inputs(self, resolver):
        assert await reconcile("s1", [], [make_txn("O1", 100)], "operator", resolver) == []
        records = await reconcile("s1", [make_line(100)], [], "operator", resolver)
        assert records[0].reason == ReasonCode.NO_MATCH

    async def test_missing_organizer(self, resolver):
        rec = (await reconcile("s1", [make_line(700)], [make_txn("UNKNOWN", 700)], "operator", resolver))[0]

        assert rec.status == ReconciliationStatus.NEEDS_REVIEW
        assert rec.reason == ReasonCode.NO_ORGANIZER
        assert rec.order_id == "UNKNOWN"
        assert rec.organizer_id is None

    async def test_resolver_failure_is_missing_organizer(self):
        rec = (await reconcile("s1", [make_line(700)], [make_txn("O1", 700)], "operator", FailingResolver()))[0]

        assert rec.status == ReconciliationStatus.NEEDS_REVIEW
        assert rec.reason == ReasonCode.NO_ORGANIZER


@pytest.mark.asyncio
class TestCouponMatching:
    async def test_coupon_augmented_key(self, resolver):
        line = make_line(123456, coupon="14")
        txn = make_txn("O1", 123456, transaction_id="900000114")

        rec = (await reconcile("s1", [line], [txn], "operator", resolver))[0]

        assert rec.status == ReconciliationStatus.RECONCILED
        assert rec.match_type == MatchType.EXACT_COUPON
        assert rec.match_key == "2026-01-02|1234|123456|14"

    async def test_coupon_line_without_coupon_transaction_is_no_match(self, resolver):
        line = make_line(123456, coupon="14")
        txn = make_txn("O1", 123456, transaction_id="ABC")

        rec = (await reconcile("s1", [line], [txn], "operator", resolver))[0]

        assert rec.status == ReconciliationStatus.NEEDS_REVIEW
        assert rec.reason == ReasonCode.NO_MATCH
        assert rec.transaction_ref is None
        assert resolver.calls == []

    async def test_coupon_separates_same_primary_key(self, resolver):
        lines = [make_line(5000, coupon="14"), make_line(5000, coupon="15")]
        txns = [
            make_txn("O1", 5000, transaction_id="900000115"),
            make_txn("O2", 5000, transaction_id="900000114"),
        ]

        records = await reconcile("s1", lines, txns, "operator", resolver)

        assert [r.order_id for r in records] == ["O2", "O1"]
        assert all(r.status == ReconciliationStatus.RECONCILED for r in records)

    async def test_coupon_only_fallback(self, resolver):
        line = make_line(100000, coupon="14")
        txn = make_txn("O1", 123456, transaction_id="900000114")

        rec = (await reconcile("s1", [line], [txn], "operator", resolver))[0]

        assert rec.status == ReconciliationStatus.RECONCILED
        assert rec.reason == ReasonCode.COUPON_MATCH
        assert rec.amount_cents == 123456
        assert rec.match_key == "2026-01-02|1234|14"

    async def test_ambiguous_by_coupon(self, resolver):
        line = make_line(100000, coupon="14")
        txns = [
            make_txn("O1", 123456, transaction_id="100014"),
            make_txn("O2", 654321, transaction_id="200014"),
        ]

        rec = (await reconcile("s1", [line], txns, "operator", resolver))[0]

        assert rec.status == ReconciliationStatus.NEEDS_REVIEW
        assert rec.reason == ReasonCode.AMBIGUOUS
        assert rec.reason_detail == "ambiguous by coupon"


@pytest.mark.asyncio
class TestInstallments:
    async def test_group_lead_matches_full_amount(self, resolver):
        lines = [plan_line(35000, 2), plan_line(35000, 1), plan_line(35000, 3)]
        txn = make_txn("O2", 105000, last4="9600", transaction_id="900000121")

        records = await reconcile("s1", lines, [txn], "operator", resolver)

        lead = records[1]
        assert lead.status == ReconciliationStatus.RECONCILED
        assert lead.reason == ReasonCode.INSTALLMENT_GROUP_LEAD
        assert lead.amount_cents == 105000
        assert lead.group_lead_line_id == lines[1].id

        for rec in (records[0], records[2]):
            assert rec.status == ReconciliationStatus.EXCLUDED
            assert rec.reason == ReasonCode.GROUPED_INSTALLMENT
            assert rec.group_lead_line_id == lines[1].id

    async def test_reconciled_amount_never_exceeds_transaction(self, resolver):
        lines = [plan_line(35000, 1), plan_line(35000, 2), plan_line(35000, 3)]
        txn = make_txn("O2", 105000, last4="9600", transaction_id="900000121")

        records = await reconcile("s1", lines, [txn], "operator", resolver)

        matched = sum(r.amount_cents for r in records if r.transaction_ref == txn.id and r.is_settled)
        assert matched == txn.amount_cents

    async def test_group_lead_ignores_partial_amount_by_coupon(self, resolver):
        lines = [plan_line(35000, 1), plan_line(35000, 2)]
        txn = make_txn("O2", 35000, last4="9600", transaction_id="900000121")

        records = await reconcile("s1", lines, [txn], "operator", resolver)

        assert records[0].reason == ReasonCode.NO_MATCH
        assert records[1].status == ReconciliationStatus.EXCLUDED

    async def test_single_installment_uses_inferred_total(self, resolver):
        line = plan_line(35000, 1)
        txn = make_txn("O2", 105000, last4="9600", transaction_id="900000121")

        rec = (await reconcile("s1", [line], [txn], "operator", resolver))[0]

        assert rec.status == ReconciliationStatus.RECONCILED
        assert rec.reason == ReasonCode.INSTALLMENT_INFERRED
        assert rec.amount_cents == 105000

    async def test_single_installment_falls_back_to_own_amount(self, resolver):
        line = plan_line(35000, 1)
        txn = make_txn("O2", 35000, last4="9600", transaction_id="900000121")

        rec = (await reconcile("s1", [line], [txn], "operator", resolver))[0]

        assert rec.status == ReconciliationStatus.RECONCILED
        assert rec.reason is None
        assert rec.amount_cents == 35000


@pytest.mark.asyncio
class TestRunInvariants:
    @pytest.fixture
    def mixed_inputs(self):
        lines = [
            make_line(1000),
            make_line(1000),
            make_line(2000, last4="5678", coupon="15"),
            make_line(3000),
            make_line(4000),
            plan_line(35000, 1),
            plan_line(35000, 2),
        ]
        txns = [
            make_txn("O1", 1000),
            make_txn("O2", 2000, last4="5678", transaction_id="900000215"),
            make_txn("O3", 4000),
            make_txn("O4", 4000, transaction_id="TX-O4-B"),
            make_txn("O1", 70000, last4="9600", transaction_id="900000321"),
        ]
        return lines, txns

    async def test_no_transaction_reconciled_twice(self, resolver, mixed_inputs):
        lines, txns = mixed_inputs

        records = await reconcile("s1", lines, txns, "operator", resolver)

        used = [r.transaction_ref for r in records if r.status == ReconciliationStatus.RECONCILED]
        assert len(used) == len(set(used)) == 3

    async def test_rerun_gives_same_outcome(self, resolver, mixed_inputs):
        lines, txns = mixed_inputs

        first = await reconcile("s1", lines, txns, "operator", resolver)
        second = await reconcile("s1", lines, txns, "operator", resolver)

        assert outcome(first) == outcome(second)

    async def test_one_lookup_per_order(self, resolver, mixed_inputs):
        lines, txns = mixed_inputs

        await reconcile("s1", lines, txns, "operator", resolver)

        assert sorted(resolver.calls) == ["O1", "O2"]

    async def test_bounded_concurrency_keeps_line_order(self, organizer_orders):
        order_ids = ["O1", "O2", "O3", "O4", "65a1b2c3d4e5f67890123457"]
        lines = [make_line(1000 + i) for i in range(len(order_ids))]
        txns = [make_txn(order_id, 1000 + i) for i, order_id in enumerate(order_ids)]
        slow = SlowResolver(organizer_orders)

        records = await MatchingEngine(slow, concurrency=2).reconcile("s1", lines, txns)

        assert slow.max_in_flight <= 2
        assert [r.order_id for r in records] == order_ids
        assert records[-1].organizer_id == "org-2"
        assert records[-1].event_id == "ev-9"

    async def test_audit_trail(self, resolver):
        audit = AuditLogger("s1")
        lines = [make_line(1000), make_line(1000), make_line(9999)]
        engine = MatchingEngine(resolver, audit=audit)

        await engine.reconcile("s1", lines, [make_txn("O1", 1000)], "operator")

        assert len(audit.get_entries(AuditAction.LINE_MATCHED)) == 1
        assert len(audit.get_entries(AuditAction.DUPLICATE_MATCH)) == 1
        assert len(audit.get_entries(AuditAction.LINE_UNMATCHED)) == 1
        assert audit.summary()["error_count"] == 2
