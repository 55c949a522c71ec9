# WORKFLOW: Tests for trade measures and preferential agreements.
# Used by: CI/CD pipelines, development testing
# Test scenarios:
# 1. Anti-dumping and countervailing selection (origin, date, longest prefix, ambiguity)
# 2. Preferential rates (direct scope, country groups, HS prefix, strictly lower only)
# 3. Restrictions and excluded areas
# 4. Measure condition variants

from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from conftest import AS_OF, START, make_snapshot, sample_measures, sample_rules
from core.errors import AmbiguousMeasure
from core.models import MeasureType, QuotaConditions, TradeAgreement, TradeMeasure
from services.measure_overlay import MeasureOverlay
from services.tariff_registry import TariffRegistry


def _overlay(measures=(), agreements=(), rules=None, groups=None):
    registry = TariffRegistry(rules if rules is not None else sample_rules())
    return MeasureOverlay(measures, agreements, registry, groups)


class TestMonetaryMeasures:
    def setup_method(self):
        self.overlay = make_snapshot().overlay

    def test_anti_dumping_and_countervailing_for_origin(self):
        result = self.overlay.resolve_measures("73181500", "CN", AS_OF)
        assert result.anti_dumping == Decimal("85")
        assert result.anti_dumping_measure_id == "AD-7318-CN"
        assert result.countervailing == Decimal("5.5")
        assert result.countervailing_measure_id == "CVD-731815-CN"
        assert result.preferential_duty is None

    def test_other_origin_unaffected(self):
        result = self.overlay.resolve_measures("73181500", "US", AS_OF)
        assert result.anti_dumping == 0
        assert result.countervailing == 0
        assert result.restrictions == frozenset()

    def test_measure_not_yet_in_force(self):
        result = self.overlay.resolve_measures("73181500", "CN", date(2020, 6, 1))
        assert result.anti_dumping == 0

    def test_longest_prefix_wins(self):
        measures = sample_measures() + [
            TradeMeasure(measure_id="AD-731815-CN", measure_type="AntiDumping", hs_code_prefix="731815",
                         geographical_area=["CN"], duty_expression="20%", valid_from=START),
        ]
        result = _overlay(measures).resolve_measures("73181500", "CN", AS_OF)
        assert result.anti_dumping == Decimal("20")
        assert result.anti_dumping_measure_id == "AD-731815-CN"

    def test_equally_specific_measures_are_ambiguous(self):
        measures = sample_measures() + [
            TradeMeasure(measure_id="AD-7318-CN-2", measure_type="AntiDumping", hs_code_prefix="7318",
                         geographical_area=["CN", "VN"], duty_expression="60%", valid_from=START),
        ]
        with pytest.raises(AmbiguousMeasure) as exc_info:
            _overlay(measures).resolve_measures("73181500", "CN", AS_OF)
        assert exc_info.value.context["measure_ids"] == ["AD-7318-CN", "AD-7318-CN-2"]

    def test_monetary_measure_needs_duty_expression(self):
        with pytest.raises(ValidationError):
            TradeMeasure(measure_id="AD-X", measure_type="AntiDumping", hs_code_prefix="7318",
                         geographical_area=["CN"], valid_from=START)

    def test_compound_expression_rejected(self):
        with pytest.raises(ValidationError):
            TradeMeasure(measure_id="AD-X", measure_type="AntiDumping", hs_code_prefix="7318",
                         geographical_area=["CN"], duty_expression="10% + EUR 2.00/100kg", valid_from=START)


class TestAgreements:
    def setup_method(self):
        self.overlay = make_snapshot().overlay

    def test_direct_scope(self):
        result = self.overlay.resolve_measures("61091000", "VN", AS_OF)
        assert result.preferential_duty == Decimal("0")
        assert result.agreement_code == "EU-VN"
        assert result.proof_document == "EUR.1"

    def test_agreement_not_yet_in_force(self):
        result = self.overlay.resolve_measures("61091000", "VN", date(2020, 7, 31))
        assert result.preferential_duty is None

    def test_country_group_scope(self):
        result = self.overlay.resolve_measures("61091000", "BD", AS_OF)
        assert result.preferential_duty == Decimal("9.6")
        assert result.agreement_code == "GSP"

    def test_hs_prefix_limits_agreement(self):
        result = self.overlay.resolve_measures("73181500", "BD", AS_OF)
        assert result.preferential_duty is None

    def test_rate_must_be_strictly_lower(self):
        agreements = [TradeAgreement(agreement_code="EQ", country_scope=["MX"],
                                     preferential_rate=Decimal("12"), valid_from=START)]
        result = _overlay(agreements=agreements).resolve_measures("61091000", "MX", AS_OF)
        assert result.preferential_duty is None

    def test_lowest_rate_wins(self):
        agreements = [
            TradeAgreement(agreement_code="A", country_scope=["MX"], preferential_rate=Decimal("6"), valid_from=START),
            TradeAgreement(agreement_code="B", country_scope=["MX"], preferential_rate=Decimal("4"), valid_from=START),
        ]
        result = _overlay(agreements=agreements).resolve_measures("61091000", "MX", AS_OF)
        assert result.preferential_duty == Decimal("4")
        assert result.agreement_code == "B"

    def test_per_unit_base_duty_keeps_no_preference(self):
        agreements = [TradeAgreement(agreement_code="W", country_scope=["CL"],
                                     preferential_rate=Decimal("0"), valid_from=START)]
        result = _overlay(agreements=agreements).resolve_measures("22042100", "CL", AS_OF)
        assert result.preferential_duty is None


class TestRestrictions:
    def setup_method(self):
        self.overlay = make_snapshot().overlay

    def test_quota_and_sps_surface_as_restrictions(self):
        result = self.overlay.resolve_measures("08051000", "ES", AS_OF)
        by_id = {restriction.measure_id: restriction for restriction in result.restrictions}
        assert set(by_id) == {"Q-0805", "SPS-0805"}
        assert by_id["Q-0805"].measure_type == MeasureType.QUOTA
        assert isinstance(by_id["Q-0805"].conditions, QuotaConditions)
        assert by_id["Q-0805"].conditions.order_number == "09.1234"
        assert result.anti_dumping == 0

    def test_excluded_area(self):
        result = self.overlay.resolve_measures("08051000", "MA", AS_OF)
        assert {restriction.measure_id for restriction in result.restrictions} == {"SPS-0805"}

    def test_group_exclusion(self):
        measures = [
            TradeMeasure(measure_id="L-61", measure_type="LicenseRequired", hs_code_prefix="61",
                         geographical_area=["ERGA OMNES"], excluded_areas=["GSP"], valid_from=START),
        ]
        overlay = _overlay(measures, groups={"GSP": frozenset({"BD"})})
        assert overlay.resolve_measures("61091000", "BD", AS_OF).restrictions == frozenset()
        assert len(overlay.resolve_measures("61091000", "US", AS_OF).restrictions) == 1

    def test_conditions_variant_must_match_type(self):
        with pytest.raises(ValidationError):
            TradeMeasure(measure_id="Q-X", measure_type="Quota", hs_code_prefix="0805",
                         geographical_area=["ERGA OMNES"], valid_from=START,
                         conditions={"kind": "SpsRequired"})
