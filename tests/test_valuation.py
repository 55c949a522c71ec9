# WORKFLOW: Tests for Incoterm customs valuation and cost apportionment.
# Used by: CI/CD pipelines, development testing
# Test scenarios:
# 1. CIF value per Incoterm group
# 2. Insurance estimate vs explicit insurance
# 3. DDP back-calculation and its required rates
# 4. Allocation by value and weight with exact cent totals

from decimal import Decimal
from types import SimpleNamespace

import pytest

from core.errors import ValuationError
from services.valuation import allocate_amount, allocate_freight_and_insurance, calculate_customs_value


class TestCalculateCustomsValue:
    def test_cif_as_invoiced(self):
        result = calculate_customs_value("CIF", Decimal("1000"), international_freight=Decimal("100"))
        assert result.customs_value == Decimal("1000.00")

    def test_fob_estimates_insurance(self):
        result = calculate_customs_value("fob", Decimal("1000"), international_freight=Decimal("100"))
        assert result.incoterm == "FOB"
        assert result.insurance_estimated is True
        assert result.insurance_component == Decimal("3.00")
        assert result.customs_value == Decimal("1103.00")

    def test_explicit_zero_insurance_is_honoured(self):
        result = calculate_customs_value("FOB", Decimal("1000"), international_freight=Decimal("100"),
                                         insurance_cost=Decimal("0"))
        assert result.insurance_estimated is False
        assert result.customs_value == Decimal("1100.00")

    def test_cfr_adds_insurance_only(self):
        result = calculate_customs_value("CFR", Decimal("1000"), international_freight=Decimal("100"),
                                         insurance_cost=Decimal("5"))
        assert result.customs_value == Decimal("1005.00")

    def test_exw_adds_export_inland_freight(self):
        result = calculate_customs_value("EXW", Decimal("1000"), international_freight=Decimal("100"),
                                         domestic_freight_export=Decimal("50"), insurance_cost=Decimal("10"))
        assert result.customs_value == Decimal("1160.00")
        assert result.freight_component == Decimal("150.00")

    def test_dap_deducts_import_inland_freight(self):
        result = calculate_customs_value("DAP", Decimal("1200"), domestic_freight_import=Decimal("80"))
        assert result.customs_value == Decimal("1120.00")

    def test_dpu_deducts_unloading(self):
        result = calculate_customs_value("DPU", Decimal("1200"), domestic_freight_import=Decimal("80"),
                                         unloading_cost=Decimal("20"))
        assert result.customs_value == Decimal("1100.00")

    def test_ddp_back_calculation(self):
        result = calculate_customs_value("DDP", Decimal("1331"), duty_rate=Decimal("10"), vat_rate=Decimal("21"))
        assert result.customs_value == Decimal("1000.00")

    def test_ddp_requires_rates(self):
        with pytest.raises(ValuationError):
            calculate_customs_value("DDP", Decimal("1331"), vat_rate=Decimal("21"))

    def test_unknown_incoterm_valued_as_fob(self):
        result = calculate_customs_value("XYZ", Decimal("1000"), international_freight=Decimal("100"),
                                         insurance_cost=Decimal("0"))
        assert result.incoterm == "FOB"
        assert result.customs_value == Decimal("1100.00")

    def test_never_negative(self):
        result = calculate_customs_value("DAP", Decimal("50"), domestic_freight_import=Decimal("80"))
        assert result.customs_value == Decimal("0.00")


class TestAllocation:
    def test_remainder_goes_to_last_share(self):
        shares = allocate_amount(Decimal("100"), [Decimal("1"), Decimal("1"), Decimal("1")])
        assert shares == [Decimal("33.33"), Decimal("33.33"), Decimal("33.34")]
        assert sum(shares) == Decimal("100.00")

    def test_proportional(self):
        assert allocate_amount(Decimal("400"), [Decimal("1000"), Decimal("3000")]) == [Decimal("100.00"), Decimal("300.00")]

    def test_zero_bases_split_equally(self):
        assert allocate_amount(Decimal("10"), [Decimal("0"), Decimal("0")]) == [Decimal("5.00"), Decimal("5.00")]

    def test_no_bases(self):
        assert allocate_amount(Decimal("10"), []) == []

    def test_freight_and_insurance_by_weight(self):
        items = [
            SimpleNamespace(weight=Decimal("10"), invoice_value=Decimal("900"), customs_value=Decimal("900")),
            SimpleNamespace(weight=Decimal("30"), invoice_value=Decimal("100"), customs_value=Decimal("100")),
        ]
        shares = allocate_freight_and_insurance(items, Decimal("200"), Decimal("20"), method="weight")
        assert shares == [(Decimal("50.00"), Decimal("5.00")), (Decimal("150.00"), Decimal("15.00"))]

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            allocate_freight_and_insurance([], Decimal("1"), Decimal("1"), method="volume")
