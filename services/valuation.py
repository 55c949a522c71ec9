# WORKFLOW: Customs valuation (Incoterms 2020) and apportionment of shipment costs.
# Used by: services/batch_reconciliation.py (apply_trade_terms), api/routers/batches.py
# Functions:
# 1. calculate_customs_value() - Invoice value -> CIF customs value for an Incoterm
# 2. allocate_amount() - Split an amount over weights, cents preserved
# 3. allocate_freight_and_insurance() - Per-item freight/insurance shares by value or weight
#
# Incoterm adjustments to reach CIF:
# - CIF/CIP: as invoiced
# - CFR/CPT: + insurance
# - FOB/FCA/FAS (and unknown terms): + international freight + insurance
# - EXW: + export inland freight + international freight + insurance
# - DAP/DDU: - import inland freight
# - DPU: - import inland freight - unloading
# - DDP: (value - import inland freight) / ((1 + duty) * (1 + VAT))

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Sequence, Tuple

from core.errors import ValuationError
from services.tax_engine import round2

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

INCOTERMS = {"CIF", "CIP", "CFR", "CPT", "FOB", "FCA", "FAS", "EXW", "DAP", "DDU", "DPU", "DDP"}


def _dec(value) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


@dataclass(frozen=True)
class CustomsValuation:
    incoterm: str
    declared_value: Decimal
    customs_value: Decimal
    freight_component: Decimal
    insurance_component: Decimal
    unloading_cost: Decimal
    insurance_estimated: bool
    calculation: str


def calculate_customs_value(
    incoterm: str,
    declared_value,
    international_freight=ZERO,
    domestic_freight_export=ZERO,
    domestic_freight_import=ZERO,
    unloading_cost=ZERO,
    insurance_cost=None,
    duty_rate=None,
    vat_rate=None,
    default_insurance_rate: Decimal = Decimal("0.003"),
) -> CustomsValuation:
    """
    Convert an invoice value to a CIF customs value.

    Args:
        incoterm: Incoterms 2020 code; unknown codes are valued as FOB
        declared_value: Invoice value
        international_freight: Main carriage cost
        domestic_freight_export: Inland freight in the export country (EXW)
        domestic_freight_import: Inland freight after the EU border (D-terms)
        unloading_cost: Unloading at destination (DPU)
        insurance_cost: Insurance; None means estimate from default_insurance_rate
        duty_rate: Ad valorem duty percent, required for DDP
        vat_rate: VAT percent, required for DDP

    Returns:
        CustomsValuation, amounts rounded half up to cents, never negative

    Raises:
        ValuationError: DDP without a duty rate or VAT rate
    """
    term = (incoterm or "FOB").strip().upper()
    value = _dec(declared_value)
    freight = _dec(international_freight)
    export_inland = _dec(domestic_freight_export)
    import_inland = _dec(domestic_freight_import)
    unloading = _dec(unloading_cost)

    estimated = insurance_cost is None
    insurance = value * default_insurance_rate if estimated else _dec(insurance_cost)

    if term not in INCOTERMS:
        logger.warning(f"Unknown incoterm {incoterm!r}, valuing as FOB")
        term = "FOB"

    if term in ("CIF", "CIP"):
        customs_value, freight_part, insurance_part = value, ZERO, ZERO
        calculation = f"{round2(value)}"
    elif term in ("CFR", "CPT"):
        customs_value, freight_part, insurance_part = value + insurance, ZERO, insurance
        calculation = f"{round2(value)} + {round2(insurance)}"
    elif term in ("FOB", "FCA", "FAS"):
        customs_value, freight_part, insurance_part = value + freight + insurance, freight, insurance
        calculation = f"{round2(value)} + {round2(freight)} + {round2(insurance)}"
    elif term == "EXW":
        customs_value = value + export_inland + freight + insurance
        freight_part, insurance_part = export_inland + freight, insurance
        calculation = f"{round2(value)} + {round2(export_inland)} + {round2(freight)} + {round2(insurance)}"
    elif term in ("DAP", "DDU"):
        customs_value, freight_part, insurance_part = value - import_inland, -import_inland, ZERO
        calculation = f"{round2(value)} - {round2(import_inland)}"
    elif term == "DPU":
        customs_value = value - import_inland - unloading
        freight_part, insurance_part = -(import_inland + unloading), ZERO
        calculation = f"{round2(value)} - {round2(import_inland)} - {round2(unloading)}"
    else:
        if duty_rate is None or vat_rate is None:
            raise ValuationError(
                "DDP valuation needs the duty and VAT rates",
                {"incoterm": term, "duty_rate": duty_rate, "vat_rate": vat_rate},
            )
        divisor = (1 + _dec(duty_rate) / HUNDRED) * (1 + _dec(vat_rate) / HUNDRED)
        customs_value = (value - import_inland) / divisor
        freight_part, insurance_part = -import_inland, ZERO
        calculation = f"({round2(value)} - {round2(import_inland)}) / ((1 + {duty_rate}%) x (1 + {vat_rate}%))"

    if customs_value < 0:
        logger.info(f"Customs value for {term} {value} below zero, clamped")
        customs_value = ZERO

    return CustomsValuation(
        incoterm=term,
        declared_value=round2(value),
        customs_value=round2(customs_value),
        freight_component=round2(freight_part),
        insurance_component=round2(insurance_part),
        unloading_cost=round2(unloading),
        insurance_estimated=estimated,
        calculation=calculation,
    )


def allocate_amount(total, bases: Sequence[Decimal]) -> List[Decimal]:
    """Split total over bases in proportion; the last share absorbs the rounding remainder."""
    if not bases:
        return []
    total = round2(_dec(total))
    base_sum = sum((_dec(base) for base in bases), ZERO)
    if base_sum == 0:
        shares = [round2(total / len(bases)) for _ in bases]
    else:
        shares = [round2(total * _dec(base) / base_sum) for base in bases]
    shares[-1] = total - sum(shares[:-1], ZERO)
    return shares


def allocation_base(item, method: str = "value") -> Decimal:
    if method == "weight":
        return _dec(item.weight)
    invoice_value = item.invoice_value if item.invoice_value is not None else item.customs_value
    return _dec(invoice_value)


def allocate_freight_and_insurance(items, total_freight, total_insurance, method: str = "value") -> List[Tuple[Decimal, Decimal]]:
    """(freight, insurance) share per item, by invoice value (default) or weight."""
    if method not in ("value", "weight"):
        raise ValueError(f"Unknown allocation method: {method}")
    bases = [allocation_base(item, method) for item in items]
    freight = allocate_amount(total_freight, bases)
    insurance = allocate_amount(total_insurance, bases)
    return list(zip(freight, insurance))
