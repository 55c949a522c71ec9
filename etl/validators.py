# WORKFLOW: Reference-data validation before a snapshot is swapped in.
# Used by: etl/loader.py (frame checks), services/reference_data.py (snapshot integrity)
# Functions:
# 1. validate_hs_code() / validate_area_code() - Single value format checks
# 2. validate_tariff_rules_frame() - Tariff rule rows
# 3. validate_trade_measures_frame() - Measure rows
# 4. validate_trade_agreements_frame() - Agreement rows
# 5. check_snapshot_integrity() - Overlapping rule windows (error), overlapping measures (warning)
#
# Validation flow: Table rows -> frame checks -> records -> integrity checks -> snapshot
# Frame checks return (is_valid, errors); integrity errors raise ReferenceDataIntegrityError.

"""
Data validation for reference-data loads and snapshot builds.
"""

import logging
import re
from collections import defaultdict
from typing import Iterable, List, Sequence, Tuple

import pandas as pd

from core.errors import ReferenceDataIntegrityError

logger = logging.getLogger(__name__)

_MEASURE_TYPES = {"AntiDumping", "Countervailing", "Quota", "LicenseRequired", "SpsRequired"}


def validate_hs_code(hs_code: str) -> bool:
    """HS codes and prefixes are 2-10 digits once dots and spaces are removed."""
    if not hs_code or not isinstance(hs_code, str):
        return False
    return bool(re.match(r'^\d{2,10}$', re.sub(r'[.\s]', '', hs_code)))


def validate_area_code(area_code: str) -> bool:
    """
    Validate a geographical area code.

    ISO countries (CN), numeric TARIC areas (1011) and named groups
    (ERGA OMNES, GSP) are all accepted.
    """
    if not area_code or not isinstance(area_code, str):
        return False
    return bool(re.match(r'^[A-Z0-9][A-Z0-9 _-]{1,49}$', area_code.strip().upper()))


def _missing_columns(df: pd.DataFrame, required: Sequence[str]) -> List[str]:
    missing = [col for col in required if col not in df.columns]
    return [f"Missing required columns: {missing}"] if missing else []


def _window_errors(df: pd.DataFrame) -> List[str]:
    if 'valid_from' not in df.columns:
        return []
    valid_from = pd.to_datetime(df['valid_from'], errors='coerce')
    errors = []
    if valid_from.isna().any():
        errors.append(f"Missing or invalid valid_from in {int(valid_from.isna().sum())} rows")
    if 'valid_to' in df.columns:
        valid_to = pd.to_datetime(df['valid_to'], errors='coerce')
        inverted = df[valid_to.notna() & (valid_to < valid_from)]
        if not inverted.empty:
            errors.append(f"valid_to before valid_from in {len(inverted)} rows")
    return errors


def _invalid_values(df: pd.DataFrame, column: str, check) -> List[str]:
    return [f"Row {idx}: {value}" for idx, value in df[column].items() if not check(str(value))]


def validate_tariff_rules_frame(df: pd.DataFrame) -> Tuple[bool, List[str]]:
    errors = _missing_columns(df, ['goods_code', 'origin_group', 'duty_components', 'valid_from'])

    if 'goods_code' in df.columns:
        invalid = _invalid_values(df, 'goods_code', validate_hs_code)
        if invalid:
            errors.append(f"Invalid HS codes: {invalid[:10]}")

    if 'origin_group' in df.columns:
        invalid = _invalid_values(df, 'origin_group', validate_area_code)
        if invalid:
            errors.append(f"Invalid origins: {invalid[:10]}")

    errors += _window_errors(df)
    logger.info(f"Tariff rules validation: {len(errors)} errors found")
    return len(errors) == 0, errors


def validate_trade_measures_frame(df: pd.DataFrame) -> Tuple[bool, List[str]]:
    errors = _missing_columns(df, ['measure_id', 'measure_type', 'goods_code_prefix', 'geographical_area', 'valid_from'])

    if 'measure_id' in df.columns:
        duplicates = df[df['measure_id'].duplicated()]
        if not duplicates.empty:
            errors.append(f"Duplicate measure ids: {duplicates['measure_id'].tolist()[:10]}")

    if 'measure_type' in df.columns:
        unknown = df[~df['measure_type'].isin(_MEASURE_TYPES)]
        if not unknown.empty:
            errors.append(f"Unknown measure types: {sorted(set(unknown['measure_type'].astype(str)))}")

    if 'goods_code_prefix' in df.columns:
        invalid = _invalid_values(df, 'goods_code_prefix', validate_hs_code)
        if invalid:
            errors.append(f"Invalid HS prefixes: {invalid[:10]}")

    errors += _window_errors(df)
    logger.info(f"Trade measures validation: {len(errors)} errors found")
    return len(errors) == 0, errors


def validate_trade_agreements_frame(df: pd.DataFrame) -> Tuple[bool, List[str]]:
    errors = _missing_columns(df, ['agreement_code', 'country_code', 'preferential_rate', 'valid_from'])

    if 'preferential_rate' in df.columns:
        rates = pd.to_numeric(df['preferential_rate'], errors='coerce')
        invalid = df[rates.isna() | (rates < 0) | (rates > 100)]
        if not invalid.empty:
            errors.append(f"Invalid preferential rates found in {len(invalid)} rows")

    if 'country_code' in df.columns:
        invalid = _invalid_values(df, 'country_code', validate_area_code)
        if invalid:
            errors.append(f"Invalid country codes: {invalid[:10]}")

    errors += _window_errors(df)
    logger.info(f"Trade agreements validation: {len(errors)} errors found")
    return len(errors) == 0, errors


def _windows_overlap(a, b) -> bool:
    a_end_before_b = a.valid_to is not None and a.valid_to < b.valid_from
    b_end_before_a = b.valid_to is not None and b.valid_to < a.valid_from
    return not (a_end_before_b or b_end_before_a)


def _areas_overlap(a: frozenset, b: frozenset) -> bool:
    return bool(a & b) or "ERGA OMNES" in a or "ERGA OMNES" in b


def check_snapshot_integrity(rules: Iterable, measures: Iterable, agreements: Iterable = ()) -> List[str]:
    """
    Check reference records before they become a snapshot.

    Args:
        rules: TariffRule records
        measures: TradeMeasure records
        agreements: TradeAgreement records

    Returns:
        Warnings (overlapping monetary measures, surfaced as AmbiguousMeasure only if queried)

    Raises:
        ReferenceDataIntegrityError: inverted windows or overlapping active tariff rules
    """
    problems: List[str] = []
    warnings: List[str] = []

    for record in [*rules, *measures, *agreements]:
        if record.valid_to is not None and record.valid_to < record.valid_from:
            key = getattr(record, "measure_id", None) or getattr(record, "agreement_code", None) or record.hs_code
            problems.append(f"{type(record).__name__} {key}: valid_to {record.valid_to} before valid_from {record.valid_from}")

    by_key = defaultdict(list)
    for rule in rules:
        if rule.is_active:
            by_key[(rule.canonical_code, rule.origin_country_code)].append(rule)
    for (code, origin), group in by_key.items():
        group.sort(key=lambda rule: rule.valid_from)
        for earlier, later in zip(group, group[1:]):
            if _windows_overlap(earlier, later):
                problems.append(
                    f"Overlapping tariff rules for {code}/{origin}: "
                    f"{earlier.valid_from}..{earlier.valid_to} and {later.valid_from}..{later.valid_to}"
                )

    by_prefix = defaultdict(list)
    for measure in measures:
        if measure.measure_type.value in ("AntiDumping", "Countervailing"):
            by_prefix[(measure.measure_type.value, measure.canonical_prefix)].append(measure)
    for (measure_type, prefix), group in by_prefix.items():
        for i, first in enumerate(group):
            for second in group[i + 1:]:
                if _windows_overlap(first, second) and _areas_overlap(first.geographical_area, second.geographical_area):
                    warnings.append(
                        f"Overlapping {measure_type} measures {first.measure_id} and {second.measure_id} on {prefix}"
                    )

    if problems:
        for problem in problems:
            logger.error(problem)
        raise ReferenceDataIntegrityError(problems)
    for warning in warnings:
        logger.warning(warning)
    return warnings
