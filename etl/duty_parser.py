# WORKFLOW: Duty expression parser for tariff rules and trade measures.
# Used by: core/models.py (TradeMeasure.duty_expression), etl/loader.py (TariffRule rows)
# Functions:
# 1. parse_ad_valorem() - Parse percentage-based duties
# 2. parse_specific() - Parse specific duties (EUR/100kg, EUR/unit)
# 3. parse_duty_components() - Split an expression into structured components
# 4. parse_duty_rate() - Ad valorem percent of a measure expression
# 5. duty_from_components() - (kind, rate, unit, unit quantity) of a base tariff rule
#
# Parsing flow: Duty string -> Component extraction -> Decimal rate
# Compound expressions (ad valorem + specific, MIN/MAX) are parsed into components
# but cannot be applied as a single rate; callers receive a ValueError for them.

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

_AD_VALOREM = re.compile(r"^(\d+(?:[.,]\d+)?)\s*%$")
_SPECIFIC = re.compile(r"^([A-Z]{3})\s*(\d+(?:[.,]\d+)?)\s*/\s*(\d+)?\s*([A-Za-z]+)$")
_MIN_MAX = re.compile(r"^(MIN|MAX)\s+(.+)$", re.IGNORECASE)


def _to_decimal(raw: str) -> Decimal:
    try:
        return Decimal(raw.replace(",", "."))
    except InvalidOperation as e:
        raise ValueError(f"Invalid number in duty expression: {raw}") from e


def parse_ad_valorem(duty_str: str) -> Dict[str, Any]:
    """
    Parse ad valorem duty.

    Args:
        duty_str: Duty string (e.g., "12%", "26.5 %")

    Returns:
        Component dictionary with a Decimal percent value
    """
    match = _AD_VALOREM.match(duty_str.strip())
    if not match:
        raise ValueError(f"Invalid ad valorem format: {duty_str}")
    return {"type": "ad_valorem", "value": _to_decimal(match.group(1)), "unit": "percent"}


def parse_specific(duty_str: str) -> Dict[str, Any]:
    """
    Parse specific duty.

    Args:
        duty_str: Duty string (e.g., "EUR 2.50/100kg", "EUR 5.00/unit")

    Returns:
        Component dictionary with currency, Decimal value, the quantity it applies to ("per")
        and the unit of measure
    """
    match = _SPECIFIC.match(duty_str.strip())
    if not match:
        raise ValueError(f"Invalid specific duty format: {duty_str}")
    per = int(match.group(3)) if match.group(3) else 1
    unit = match.group(4).lower()
    return {
        "type": "specific",
        "value": _to_decimal(match.group(2)),
        "currency": match.group(1),
        "per": per,
        "unit": unit,
    }


def _parse_component(part: str) -> Dict[str, Any]:
    bound = _MIN_MAX.match(part)
    if bound:
        component = _parse_component(bound.group(2).strip())
        component["bound"] = bound.group(1).lower()
        return component
    if "%" in part:
        return parse_ad_valorem(part)
    return parse_specific(part)


def parse_duty_components(duty_str: Optional[str]) -> List[Dict[str, Any]]:
    """
    Parse a duty expression into structured components.

    "12% + EUR 2.50/100kg MIN EUR 1.00/unit" style expressions yield one
    component per term. An empty expression yields no components.
    """
    if not duty_str or not duty_str.strip():
        return []
    text = re.sub(r"\s+", " ", duty_str.strip())
    # MIN/MAX terms are separate terms even without a leading "+"
    text = re.sub(r"\s+(?=(?:MIN|MAX)\s)", " + ", text, flags=re.IGNORECASE)
    components = [_parse_component(part.strip()) for part in text.split("+") if part.strip()]
    logger.debug(f"Parsed duty expression '{duty_str}' into {len(components)} component(s)")
    return components


def parse_duty_rate(duty_str: str) -> Decimal:
    """Return the ad valorem percent of a single-term expression such as "26.5%"."""
    components = parse_duty_components(duty_str)
    if len(components) != 1 or components[0]["type"] != "ad_valorem" or "bound" in components[0]:
        raise ValueError(f"Duty expression is not a single ad valorem rate: {duty_str}")
    return components[0]["value"]


def duty_from_components(components: List[Dict[str, Any]]) -> Tuple[str, Decimal, Optional[str], int]:
    """
    Reduce base-duty components to (duty_kind, rate, unit, unit_quantity).

    "EUR 2.50/100kg" reduces to ("FixedPerUnit", 2.50, "kg", 100): the amount
    applies to every 100 kg.

    Accepts the parsed component dictionaries (or the JSON stored in
    tariff_rules.duty_components). An empty list is a 0% duty ("free").
    """
    if not components:
        return "AdValorem", Decimal("0"), None, 1
    if len(components) > 1 or "bound" in components[0]:
        raise ValueError(f"Compound duty cannot be applied as a single rate: {components}")
    component = components[0]
    value = component["value"]
    value = value if isinstance(value, Decimal) else _to_decimal(str(value))
    if component["type"] == "ad_valorem":
        return "AdValorem", value, None, 1
    if component["type"] == "specific":
        return "FixedPerUnit", value, component.get("unit"), int(component.get("per") or 1)
    raise ValueError(f"Unknown duty component type: {component['type']}")
