"""
Tests for the settlement PDF text parser.
"""

import pytest

from helpers import load_fixture
from liquidaciones.ingestion.pdf_parser import (
    expand_lines,
    extract_declared_total,
    extract_liquidation_date,
    extract_liquidation_number,
    parse_pdf_text,
    parse_settlement_line,
)
from liquidaciones.models import LineType


class TestBasicReport:
    @pytest.fixture
    def result(self):
        return parse_pdf_text(load_fixture("fiserv-sample.txt"), "pdf-1")

    def test_lines(self, result):
        assert len(result.lines) == 2
        first = result.lines[0]
        assert first.op_date == "2026-01-02"
        assert first.last4 == "1234"
        assert first.amount_cents == 123456
        assert first.line_type == LineType.CASH_SALE
        assert (first.terminal, first.lote, first.coupon) == ("77428", "2", "14")
        assert first.import_id == "pdf-1"
        assert "1.234,56" in first.raw_line

    def test_declared_total(self, result):
        assert result.declared_total_cents == 323456

    def test_nothing_dropped(self, result):
        assert result.dropped == []

    def test_metadata(self):
        text = load_fixture("fiserv-sample.txt")
        assert extract_liquidation_number(text) == "000451"
        assert extract_liquidation_date(text) == "2026-01-06"


class TestGluedColumns:
    def test_coupon_last4_amount_glued(self):
        result = parse_pdf_text(load_fixture("fiserv-glued.txt"), "pdf")

        assert len(result.lines) == 2
        first, second = result.lines
        assert (first.terminal, first.lote, first.coupon) == ("77428", "2", "14")
        assert first.last4 == "5982"
        assert first.amount_cents == 1000
        assert second.coupon == "15"
        assert second.last4 == "8844"
        assert second.amount_cents == 100000

    def test_date_glued_to_terminal(self):
        line, reason = parse_settlement_line("VENTA CTDO 02/01/202677428 2 14 1234 1.234,56", "pdf")

        assert reason == ""
        assert line.op_date == "2026-01-02"
        assert line.terminal == "77428"
        assert line.last4 == "1234"


class TestInstallmentPlan:
    @pytest.fixture
    def lines(self):
        return parse_pdf_text(load_fixture("fiserv-plan-cuota.txt"), "pdf").lines

    def test_plan_line(self, lines):
        assert len(lines) == 2
        first = lines[0]
        assert first.line_type == LineType.INSTALLMENT_PLAN
        assert (first.terminal, first.lote, first.coupon) == ("77428", "2", "21")
        assert first.last4 == "9600"
        assert first.plan_fraction == "01/03"
        assert (first.installment_number, first.installment_total) == (1, 3)
        assert first.amount_cents == 105000

    def test_combined_terminal_token(self, lines):
        second = lines[1]
        assert (second.terminal, second.lote, second.coupon) == ("77428", "2", "21")
        assert second.last4 == "9600"
        assert second.plan_fraction == "1/3"
        assert (second.installment_number, second.installment_total) == (1, 3)
        assert second.amount_cents == 70000


class TestLineSplittingAndRecovery:
    def test_two_rows_on_one_physical_line(self):
        text = (
            "VENTA CTDO 02/01/2026 77428 2 14 1234 1.234,56 "
            "VENTA CTDO 02/01/2026 77428 2 15 5678 2.000,00"
        )
        assert len(expand_lines(text)) == 2
        assert len(parse_pdf_text(text, "pdf").lines) == 2

    def test_wrapped_row_joins_next_line(self):
        text = "VENTA CTDO 02/01/2026 77428 2 14 1234\n1.234,56\n"
        lines = parse_pdf_text(text, "pdf").lines

        assert len(lines) == 1
        assert lines[0].amount_cents == 123456
        assert lines[0].last4 == "1234"

    def test_classified_row_without_amount_is_reported(self):
        result = parse_pdf_text("VENTA CTDO 02/01/2026 77428 2 14 1234", "pdf")

        assert result.lines == []
        assert len(result.dropped) == 1
        assert result.dropped[0].reason == "missing amount"

    def test_unclassified_rows_ignored(self):
        result = parse_pdf_text("Comisiones 02/01/2026 1.234,56\nIVA 21% 10,00", "pdf")

        assert result.lines == []
        assert result.dropped == []

    def test_garbage_yields_empty_result(self):
        result = parse_pdf_text("%%%\n\n???", "pdf")

        assert result.lines == []
        assert result.declared_total_cents is None


class TestDeclaredTotal:
    def test_last_total_wins(self):
        text = "Total ventas: 1.000,00\nTotal liquidación 2.500,50"
        assert extract_declared_total(text) == 250050

    def test_missing(self):
        assert extract_declared_total("sin totales") is None

    def test_liquidation_date_falls_back_to_earliest_line(self):
        lines = parse_pdf_text(
            "VENTA CTDO 03/01/2026 77428 2 14 1234 10,00\n"
            "VENTA CTDO 02/01/2026 77428 2 15 5678 20,00",
            "pdf",
        ).lines
        assert extract_liquidation_date("", lines) == "2026-01-02"
