# WORKFLOW: Pure tax computation for one resolved line item.
# Used by: services/batch_reconciliation.py, api/routers/tax.py
# Functions:
# 1. compute_tax() - Duty, anti-dumping, countervailing, VAT and total
# 2. round2() - Round half up to cents
#
# Order of operations (each step rounded to cents before the next):
# 1. effective rate = preferential duty if present, else base rule rate
# 2. duty = value * rate / 100 (ad valorem) or quantity * amount / unit quantity (per unit)
# 3. anti-dumping = value * AD% / 100
# 4. countervailing = value * CVD% / 100
# 5. VAT base = value + duty + anti-dumping + countervailing
# 6. VAT = VAT base * VAT% / 100
# 7. total = duty + anti-dumping + countervailing + VAT

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from core.errors import MissingVatRate
from core.models import DutyKind, MeasureOverlayResult, TariffRule, TaxBreakdown

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def _dec(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def round2(value: Decimal) -> Decimal:
    return _dec(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_tax(
    rule: TariffRule,
    overlay: Optional[MeasureOverlayResult],
    destination_vat_rate: Optional[Decimal],
    customs_value: Decimal,
    quantity: Optional[Decimal] = None,
) -> TaxBreakdown:
    """
    Compute the tax breakdown of one line item.

    Args:
        rule: Resolved base tariff rule
        overlay: Resolved measures (None means no measures)
        destination_vat_rate: VAT percent of the destination member state
        customs_value: Customs value in EUR, >= 0
        quantity: Quantity in the rule's unit (kg for EUR/100kg), required for per-unit duties

    Returns:
        TaxBreakdown with every amount rounded half up to cents

    Raises:
        MissingVatRate: destination_vat_rate is None
        ValueError: negative customs value, or a per-unit duty without quantity
    """
    if destination_vat_rate is None:
        raise MissingVatRate(None, None)
    customs_value = _dec(customs_value)
    if customs_value < 0:
        raise ValueError(f"Customs value must not be negative: {customs_value}")
    overlay = overlay or MeasureOverlayResult()

    preferential = overlay.preferential_duty is not None
    effective_rate = overlay.preferential_duty if preferential else rule.duty_rate

    if rule.duty_kind == DutyKind.AD_VALOREM:
        duty_amount = round2(customs_value * effective_rate / HUNDRED)
    else:
        if quantity is None:
            raise ValueError(f"Per-unit duty for {rule.hs_code} requires a quantity")
        duty_amount = round2(_dec(quantity) * rule.fixed_amount / rule.unit_quantity)

    anti_dumping_amount = round2(customs_value * overlay.anti_dumping / HUNDRED)
    countervailing_amount = round2(customs_value * overlay.countervailing / HUNDRED)
    vat_base = round2(customs_value + duty_amount + anti_dumping_amount + countervailing_amount)
    vat_amount = round2(vat_base * _dec(destination_vat_rate) / HUNDRED)
    total_tax = duty_amount + anti_dumping_amount + countervailing_amount + vat_amount

    return TaxBreakdown(
        customs_value=round2(customs_value),
        effective_duty_rate=effective_rate,
        preferential_applied=preferential,
        duty_amount=duty_amount,
        anti_dumping_amount=anti_dumping_amount,
        countervailing_amount=countervailing_amount,
        vat_base=vat_base,
        vat_rate=_dec(destination_vat_rate),
        vat_amount=vat_amount,
        total_tax=total_tax,
    )
