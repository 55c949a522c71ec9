# WORKFLOW: Reference-data feed adapter: database tables -> validated records -> snapshot.
# Used by: api/dependencies.py (startup load), api/routers/sync.py (per-category sync)
# Functions:
# 1. read_table() - Table to DataFrame
# 2. tariff_rules_from_frame() / trade_measures_from_frame() / trade_agreements_from_frame()
#    / nomenclature_from_frame() / country_groups_from_frame() - Rows to domain records
# 3. load_category() - One sync_type from the database (SyncCoordinator loader)
# 4. load_snapshot() - Every category into a ReferenceSnapshot
#
# Load flow: SELECT -> DataFrame -> frame validation -> domain records -> snapshot integrity checks
# Invalid frames raise ReferenceDataIntegrityError; nothing partial is ever returned.

import logging
from collections import defaultdict
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, FrozenSet, List, Tuple

import pandas as pd
from sqlalchemy import select
from sqlalchemy.engine import Engine

from core.errors import ReferenceDataIntegrityError
from core.models import NomenclatureEntry, TariffRule, TradeAgreement, TradeMeasure
from db.models import CountryGroupMembers, GoodsNomenclature, TariffRules, TradeAgreements, TradeMeasures
from etl.duty_parser import duty_from_components
from etl.validators import (
    validate_tariff_rules_frame,
    validate_trade_agreements_frame,
    validate_trade_measures_frame,
)

logger = logging.getLogger(__name__)


def _clean(value: Any) -> Any:
    """None for NULL/NaN/NaT, plain dates for timestamps."""
    if value is None or isinstance(value, (list, dict)):
        return value
    if pd.isna(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, datetime):
        return value.date()
    return value


def _rows(df: pd.DataFrame) -> List[Dict[str, Any]]:
    return [{key: _clean(value) for key, value in row.items()} for row in df.to_dict("records")]


def _decimal(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _check(name: str, result: Tuple[bool, List[str]]) -> None:
    is_valid, errors = result
    if not is_valid:
        logger.error(f"{name} failed validation: {errors}")
        raise ReferenceDataIntegrityError([f"{name}: {error}" for error in errors])


def read_table(engine: Engine, model) -> pd.DataFrame:
    with engine.connect() as conn:
        return pd.read_sql(select(model.__table__), conn, coerce_float=False)


def tariff_rules_from_frame(df: pd.DataFrame) -> List[TariffRule]:
    _check("tariff_rules", validate_tariff_rules_frame(df))
    rules = []
    for row in _rows(df):
        kind, rate, unit, unit_quantity = duty_from_components(row["duty_components"] or [])
        rules.append(TariffRule(
            hs_code=row["goods_code"],
            origin_country_code=row["origin_group"],
            duty_rate=rate,
            duty_kind=kind,
            unit=unit,
            unit_quantity=unit_quantity,
            valid_from=row["valid_from"],
            valid_to=row.get("valid_to"),
            legal_base=row.get("legal_base_id") or "",
            data_source=row.get("data_source") or "",
            is_active=bool(row.get("is_active", True)),
            description=row.get("description"),
        ))
    return rules


def trade_measures_from_frame(df: pd.DataFrame) -> List[TradeMeasure]:
    _check("trade_measures", validate_trade_measures_frame(df))
    return [
        TradeMeasure(
            measure_id=row["measure_id"],
            measure_type=row["measure_type"],
            hs_code_prefix=row["goods_code_prefix"],
            geographical_area=row["geographical_area"],
            excluded_areas=row.get("excluded_areas") or [],
            duty_expression=row.get("duty_expression"),
            conditions=row.get("conditions"),
            valid_from=row["valid_from"],
            valid_to=row.get("valid_to"),
        )
        for row in _rows(df)
    ]


def trade_agreements_from_frame(df: pd.DataFrame) -> List[TradeAgreement]:
    """Agreement rows are stored per country; rows sharing terms form one agreement scope."""
    _check("trade_agreements", validate_trade_agreements_frame(df))
    scopes: Dict[tuple, set] = defaultdict(set)
    for row in _rows(df):
        key = (
            row["agreement_code"],
            _decimal(row["preferential_rate"]),
            row.get("goods_code_prefix"),
            row.get("document_code"),
            row["valid_from"],
            row.get("valid_to"),
            bool(row.get("is_active", True)),
        )
        scopes[key].add(row["country_code"])
    return [
        TradeAgreement(
            agreement_code=code,
            country_scope=countries,
            preferential_rate=rate,
            hs_code_prefix=prefix,
            proof_document=document,
            valid_from=valid_from,
            valid_to=valid_to,
            is_active=is_active,
        )
        for (code, rate, prefix, document, valid_from, valid_to, is_active), countries in scopes.items()
    ]


def nomenclature_from_frame(df: pd.DataFrame, as_of: date = None) -> List[NomenclatureEntry]:
    """Nomenclature lines in force on as_of (today by default)."""
    as_of = as_of or date.today()
    entries = []
    for row in _rows(df):
        if row["valid_from"] > as_of or (row.get("valid_to") is not None and row["valid_to"] < as_of):
            continue
        entries.append(NomenclatureEntry(
            hs_code=row["goods_code"],
            description=row["description"],
            is_leaf=bool(row.get("is_leaf")),
        ))
    return entries


def country_groups_from_frame(df: pd.DataFrame) -> Dict[str, FrozenSet[str]]:
    groups: Dict[str, set] = defaultdict(set)
    for row in _rows(df):
        groups[row["group_code"]].add(row["country_code"])
    return {group: frozenset(members) for group, members in groups.items()}


_CATEGORIES: Dict[str, Tuple[Any, Callable[[pd.DataFrame], Any]]] = {
    "tariff_rules": (TariffRules, tariff_rules_from_frame),
    "trade_measures": (TradeMeasures, trade_measures_from_frame),
    "trade_agreements": (TradeAgreements, trade_agreements_from_frame),
    "nomenclature": (GoodsNomenclature, nomenclature_from_frame),
    "country_groups": (CountryGroupMembers, country_groups_from_frame),
}


def load_category(engine: Engine, sync_type: str):
    if sync_type not in _CATEGORIES:
        raise ValueError(f"Unknown sync type: {sync_type}")
    model, convert = _CATEGORIES[sync_type]
    records = convert(read_table(engine, model))
    logger.info(f"Loaded {len(records)} {sync_type} records")
    return records


def load_snapshot(engine: Engine, version: str = None, erga_omnes_fallback: bool = True):
    """Build a full ReferenceSnapshot from the database."""
    from services.reference_data import ReferenceSnapshot

    categories = {sync_type: load_category(engine, sync_type) for sync_type in _CATEGORIES}
    return ReferenceSnapshot(
        rules=categories["tariff_rules"],
        measures=categories["trade_measures"],
        agreements=categories["trade_agreements"],
        nomenclature=categories["nomenclature"],
        country_groups=categories["country_groups"],
        version=version or f"db-{datetime.utcnow():%Y%m%d%H%M%S}",
        erga_omnes_fallback=erga_omnes_fallback,
    )
