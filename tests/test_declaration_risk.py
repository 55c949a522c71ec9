# WORKFLOW: Tests for declared unit price risk.
# Used by: CI/CD pipelines, development testing
# Test scenarios:
# 1. Stats: pass rate, passed-price percentiles, suggested minimum, pending exclusion
# 2. Risk check: below lowest passed price, below 10th percentile, well below average, low pass rate
# 3. In-memory and SQL declaration history: record, outcome update, canonical code lookup
# 4. Line item unit price

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from core.models import DeclarationRecord, DeclarationResult, LineItem, RiskLevel
from services.declaration_risk import (
    InMemoryDeclarationHistory,
    SqlDeclarationHistory,
    check_declaration_risk,
    declaration_stats,
    line_unit_price,
)

DECLARED_ON = date(2024, 1, 15)


def declaration(price, result=DeclarationResult.PASSED, hs_code="61091000", origin="CN", batch_id=None):
    return DeclarationRecord(
        hs_code=hs_code,
        origin_country_code=origin,
        unit_price=Decimal(str(price)),
        result=result,
        declared_on=DECLARED_ON,
        batch_id=batch_id,
    )


def shirt_declarations():
    passed = [declaration(price) for price in range(10, 30, 2)]
    return passed + [declaration(5, DeclarationResult.REJECTED)]


class TestDeclarationStats:
    def test_passed_price_distribution(self):
        stats = declaration_stats(shirt_declarations(), "61091000", "cn")
        assert stats.hs_code == "610910"
        assert stats.origin_country_code == "CN"
        assert stats.total_count == 11
        assert stats.pass_count == 10
        assert stats.rejected_count == 1
        assert stats.pass_rate == 91
        assert stats.min_pass_price == Decimal("10.00")
        assert stats.max_pass_price == Decimal("28.00")
        assert stats.avg_pass_price == Decimal("19.00")
        assert stats.p10_pass_price == Decimal("11.80")
        assert stats.p25_pass_price == Decimal("14.50")
        assert stats.min_problem_price == Decimal("5.00")
        assert stats.suggested_min_price == Decimal("11.21")
        assert stats.risk_level == RiskLevel.LOW

    def test_pending_declarations_do_not_count(self):
        records = shirt_declarations() + [declaration(1, DeclarationResult.PENDING)]
        stats = declaration_stats(records, "61091000", "CN")
        assert stats.total_count == 11
        assert declaration_stats([declaration(1, DeclarationResult.PENDING)], "61091000", "CN") is None

    def test_no_declarations(self):
        assert declaration_stats([], "61091000", "CN") is None

    def test_nothing_passed(self):
        records = [declaration(8, DeclarationResult.REJECTED), declaration(9, DeclarationResult.QUESTIONED)]
        stats = declaration_stats(records, "61091000", "CN")
        assert stats.pass_rate == 0
        assert stats.questioned_count == 1
        assert stats.min_pass_price == Decimal("0.00")
        assert stats.risk_level == RiskLevel.HIGH


class TestCheckDeclarationRisk:
    def setup_method(self):
        self.stats = declaration_stats(shirt_declarations(), "61091000", "CN")

    def check(self, price, stats=None):
        return check_declaration_risk(stats or self.stats, "61091000", "CN", Decimal(price))

    def test_below_lowest_passed_price(self):
        risk = self.check("8")
        assert risk.risk_level == RiskLevel.HIGH
        assert risk.is_risky is True
        assert risk.suggested_min_price == Decimal("11.21")
        assert risk.suggestions == ["Declare at least 11.21"]

    def test_below_tenth_percentile(self):
        risk = self.check("11")
        assert risk.risk_level == RiskLevel.MEDIUM
        assert "90%" in risk.warnings[0]

    def test_well_below_average(self):
        risk = self.check("12")
        assert risk.risk_level == RiskLevel.MEDIUM
        assert "average" in risk.warnings[0]

    def test_usual_price_is_low_risk(self):
        risk = self.check("15")
        assert risk.risk_level == RiskLevel.LOW
        assert risk.is_risky is False
        assert risk.warnings == []

    def test_low_pass_rate_raises_risk(self):
        records = [declaration(p) for p in (10, 12, 14)] + [declaration(5, DeclarationResult.REJECTED)] * 2
        stats = declaration_stats(records, "61091000", "CN")
        assert stats.pass_rate == 60
        risk = self.check("12", stats)
        assert risk.risk_level == RiskLevel.MEDIUM
        assert risk.warnings == ["Only 60% of declarations for this code and origin passed"]

    def test_unknown_without_history(self):
        risk = check_declaration_risk(None, "6109.10.00", "cn", Decimal("3"))
        assert risk.risk_level == RiskLevel.UNKNOWN
        assert risk.is_risky is False
        assert risk.hs_code == "610910"
        assert risk.stats is None


class TestInMemoryDeclarationHistory:
    def setup_method(self):
        self.history = InMemoryDeclarationHistory(shirt_declarations())

    def test_lookup_uses_canonical_code(self):
        assert len(self.history.records_for("6109100000", "cn")) == 11
        assert self.history.records_for("61099020", "CN") == []
        assert self.history.check("610910", "CN", Decimal("8")).risk_level == RiskLevel.HIGH

    def test_outcome_applies_to_pending_records_once(self):
        self.history.record([declaration(3, DeclarationResult.PENDING, batch_id="B1")] * 2)
        assert self.history.stats("61091000", "CN").total_count == 11
        assert self.history.update_result("B1", DeclarationResult.PASSED) == 2
        assert self.history.update_result("B1", DeclarationResult.REJECTED) == 0
        stats = self.history.stats("61091000", "CN")
        assert stats.total_count == 13
        assert stats.min_pass_price == Decimal("3.00")

    def test_pending_is_not_an_outcome(self):
        with pytest.raises(ValueError):
            self.history.update_result("B1", DeclarationResult.PENDING)


class TestSqlDeclarationHistory:
    @pytest.fixture(autouse=True)
    def _history(self, sqlite_engine):
        self.history = SqlDeclarationHistory(sessionmaker(bind=sqlite_engine, autoflush=False))

    def test_record_and_stats(self):
        assert self.history.record(shirt_declarations()) == 11
        records = self.history.records_for("61091000", "CN")
        assert len(records) == 11
        assert {r.hs_code for r in records} == {"610910"}
        stats = self.history.stats("61091000", "CN")
        assert stats.pass_rate == 91
        assert stats.p10_pass_price == Decimal("11.80")

    def test_outcome_update(self):
        self.history.record([
            declaration(20, DeclarationResult.PENDING, batch_id="B1"),
            declaration(22, DeclarationResult.PENDING, batch_id="B1"),
            declaration(24, DeclarationResult.PENDING, batch_id="B2"),
        ])
        assert self.history.stats("61091000", "CN") is None
        assert self.history.update_result("B1", DeclarationResult.QUESTIONED) == 2
        assert self.history.update_result("B1", DeclarationResult.PASSED) == 0
        stats = self.history.stats("61091000", "CN")
        assert stats.questioned_count == 2
        assert stats.pass_rate == 0


def test_line_unit_price():
    item = LineItem(item_id="x", product_description="Cotton T-shirt", origin_country_code="CN",
                    customs_value=Decimal("1000"), quantity=Decimal("3"))
    assert line_unit_price(item) == Decimal("333.3333")
    item.quantity = None
    assert line_unit_price(item) is None
    item.quantity = Decimal("0")
    assert line_unit_price(item) is None
