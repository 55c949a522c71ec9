# WORKFLOW: Declared-value risk against earlier declarations of the same HS code and origin.
# Used by: services/batch_reconciliation.py (flags risky lines, records confirmed ones),
#          services/engine.py, api/routers/tariff.py
# Functions:
# 1. declaration_stats() - Pass rate and passed unit-price distribution (pandas)
# 2. check_declaration_risk() - Low/medium/high risk of a unit price with warnings and a safe minimum
# 3. line_unit_price() - Unit price of a line item (customs value / quantity)
#
# Stores:
# - InMemoryDeclarationHistory: per-process list guarded by a lock
# - SqlDeclarationHistory: declaration_value_records table
#
# Risk flow: (code, origin) -> decided declarations -> stats -> compare unit price
# -> risk level. Pending declarations (no customs outcome yet) never count.

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

import pandas as pd
from sqlalchemy import select, update

from core.models import (
    DeclarationRecord,
    DeclarationResult,
    DeclarationRisk,
    DeclarationStats,
    LineItem,
    RiskLevel,
    canonical_hs_code,
)
from db.models import DeclarationValueRecords
from services.tax_engine import round2

logger = logging.getLogger(__name__)

SAFE_PRICE_FACTOR = Decimal("0.95")
LOW_AVERAGE_FACTOR = Decimal("0.7")
UNIT_PRICE = Decimal("0.0001")


def line_unit_price(item: LineItem) -> Optional[Decimal]:
    if not item.quantity or item.quantity <= 0:
        return None
    return (item.customs_value / item.quantity).quantize(UNIT_PRICE, rounding=ROUND_HALF_UP)


def _price(value) -> Decimal:
    return round2(Decimal(str(value)))


def _risk_from_pass_rate(pass_rate: int) -> RiskLevel:
    if pass_rate >= 90:
        return RiskLevel.LOW
    if pass_rate >= 70:
        return RiskLevel.MEDIUM
    return RiskLevel.HIGH


def declaration_stats(
    records: Iterable[DeclarationRecord],
    hs_code: str,
    origin_country_code: str,
) -> Optional[DeclarationStats]:
    """
    Summarise the decided declarations of one (code, origin).

    Percentiles interpolate linearly between passed prices. The suggested
    minimum is the higher of the lowest passed price and 95% of the 10th
    percentile.

    Returns:
        DeclarationStats, or None when no declaration has an outcome yet
    """
    df = pd.DataFrame(
        [{"unit_price": float(r.unit_price), "result": r.result.value} for r in records if r.unit_price > 0],
        columns=["unit_price", "result"],
    )
    decided = df[df["result"] != DeclarationResult.PENDING.value]
    if decided.empty:
        return None

    passed = decided.loc[decided["result"] == DeclarationResult.PASSED.value, "unit_price"]
    problems = decided.loc[
        decided["result"].isin([DeclarationResult.QUESTIONED.value, DeclarationResult.REJECTED.value]),
        "unit_price",
    ]
    total = len(decided)
    pass_rate = int((Decimal(len(passed) * 100) / total).quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    if passed.empty:
        min_pass = max_pass = avg_pass = p10 = p25 = Decimal("0.00")
    else:
        min_pass = _price(passed.min())
        max_pass = _price(passed.max())
        avg_pass = _price(passed.mean())
        p10 = _price(passed.quantile(0.10))
        p25 = _price(passed.quantile(0.25))

    return DeclarationStats(
        hs_code=canonical_hs_code(hs_code),
        origin_country_code=origin_country_code.upper(),
        total_count=total,
        pass_count=len(passed),
        questioned_count=int((decided["result"] == DeclarationResult.QUESTIONED.value).sum()),
        rejected_count=int((decided["result"] == DeclarationResult.REJECTED.value).sum()),
        pass_rate=pass_rate,
        min_pass_price=min_pass,
        max_pass_price=max_pass,
        avg_pass_price=avg_pass,
        p10_pass_price=p10,
        p25_pass_price=p25,
        min_problem_price=_price(problems.min()) if not problems.empty else None,
        suggested_min_price=max(min_pass, round2(p10 * SAFE_PRICE_FACTOR)),
        risk_level=_risk_from_pass_rate(pass_rate),
    )


def check_declaration_risk(
    stats: Optional[DeclarationStats],
    hs_code: str,
    origin_country_code: str,
    unit_price: Decimal,
) -> DeclarationRisk:
    """Compare a unit price with the passed-price distribution of its code and origin."""
    if stats is None:
        return DeclarationRisk(
            hs_code=canonical_hs_code(hs_code),
            origin_country_code=origin_country_code.upper(),
            unit_price=unit_price,
            risk_level=RiskLevel.UNKNOWN,
            suggestions=["No earlier declarations for this code and origin; declare at market price"],
        )

    risk_level = RiskLevel.LOW
    warnings: List[str] = []
    suggestions: List[str] = []

    if stats.min_pass_price > 0 and unit_price < stats.min_pass_price:
        risk_level = RiskLevel.HIGH
        warnings.append(f"Unit price {unit_price} is below the lowest passed price {stats.min_pass_price}")
        suggestions.append(f"Declare at least {stats.suggested_min_price}")
    elif stats.p10_pass_price > 0 and unit_price < stats.p10_pass_price:
        risk_level = RiskLevel.MEDIUM
        warnings.append(f"Unit price {unit_price} is lower than 90% of passed declarations")
        suggestions.append(f"Compare with the average passed price {stats.avg_pass_price}")
    elif stats.avg_pass_price > 0 and unit_price < stats.avg_pass_price * LOW_AVERAGE_FACTOR:
        risk_level = RiskLevel.MEDIUM
        warnings.append(f"Unit price {unit_price} is well below the average passed price {stats.avg_pass_price}")

    if stats.pass_rate < 70:
        if risk_level == RiskLevel.LOW:
            risk_level = RiskLevel.MEDIUM
        warnings.append(f"Only {stats.pass_rate}% of declarations for this code and origin passed")

    return DeclarationRisk(
        hs_code=stats.hs_code,
        origin_country_code=stats.origin_country_code,
        unit_price=unit_price,
        risk_level=risk_level,
        stats=stats,
        suggested_min_price=stats.suggested_min_price,
        warnings=warnings,
        suggestions=suggestions,
    )


class DeclarationHistory(ABC):
    """Declared unit prices and their customs outcome."""

    @abstractmethod
    def records_for(self, hs_code: str, origin_country_code: str) -> List[DeclarationRecord]:
        ...

    @abstractmethod
    def record(self, records: Iterable[DeclarationRecord]) -> int:
        ...

    @abstractmethod
    def update_result(self, batch_id: str, result: DeclarationResult) -> int:
        """Set the outcome of a batch's pending declarations; returns how many changed."""
        ...

    def stats(self, hs_code: str, origin_country_code: str) -> Optional[DeclarationStats]:
        code, origin = canonical_hs_code(hs_code), origin_country_code.upper()
        return declaration_stats(self.records_for(code, origin), code, origin)

    def check(self, hs_code: str, origin_country_code: str, unit_price: Decimal) -> DeclarationRisk:
        risk = check_declaration_risk(
            self.stats(hs_code, origin_country_code), hs_code, origin_country_code, unit_price
        )
        if risk.is_risky:
            logger.info(f"Declared unit price {unit_price} for {hs_code} from {origin_country_code}: "
                        f"{risk.risk_level.value} risk")
        return risk


def _decided(result: DeclarationResult) -> DeclarationResult:
    result = DeclarationResult(result)
    if result == DeclarationResult.PENDING:
        raise ValueError("A declaration outcome must be passed, questioned or rejected")
    return result


class InMemoryDeclarationHistory(DeclarationHistory):
    def __init__(self, records: Iterable[DeclarationRecord] = ()):
        self._lock = threading.Lock()
        self._records: List[DeclarationRecord] = list(records)

    def records_for(self, hs_code: str, origin_country_code: str) -> List[DeclarationRecord]:
        code, origin = canonical_hs_code(hs_code), origin_country_code.upper()
        with self._lock:
            return [r for r in self._records if r.hs_code == code and r.origin_country_code == origin]

    def record(self, records: Iterable[DeclarationRecord]) -> int:
        records = list(records)
        with self._lock:
            self._records.extend(records)
        return len(records)

    def update_result(self, batch_id: str, result: DeclarationResult) -> int:
        result = _decided(result)
        updated = 0
        with self._lock:
            for i, record in enumerate(self._records):
                if record.batch_id == batch_id and record.result == DeclarationResult.PENDING:
                    self._records[i] = record.model_copy(update={"result": result})
                    updated += 1
        return updated


class SqlDeclarationHistory(DeclarationHistory):
    """Declaration history backed by the declaration_value_records table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)

    def records_for(self, hs_code: str, origin_country_code: str) -> List[DeclarationRecord]:
        stmt = (
            select(DeclarationValueRecords)
            .where(DeclarationValueRecords.hs_code == canonical_hs_code(hs_code))
            .where(DeclarationValueRecords.origin_country_code == origin_country_code.upper())
        )
        with self.session_factory() as session:
            rows = session.execute(stmt).scalars().all()
            return [
                DeclarationRecord(
                    hs_code=row.hs_code,
                    origin_country_code=row.origin_country_code,
                    unit_price=Decimal(str(row.unit_price)),
                    result=row.result,
                    declared_on=row.declared_on,
                    batch_id=row.batch_id,
                    item_id=row.item_id,
                )
                for row in rows
            ]

    def record(self, records: Iterable[DeclarationRecord]) -> int:
        now = self._now()
        rows = [
            DeclarationValueRecords(
                hs_code=r.hs_code,
                origin_country_code=r.origin_country_code,
                unit_price=r.unit_price,
                result=r.result.value,
                declared_on=r.declared_on,
                batch_id=r.batch_id,
                item_id=r.item_id,
                created_at=now,
                updated_at=now,
            )
            for r in records
        ]
        with self.session_factory() as session:
            session.add_all(rows)
            session.commit()
        return len(rows)

    def update_result(self, batch_id: str, result: DeclarationResult) -> int:
        result = _decided(result)
        with self.session_factory() as session:
            updated = session.execute(
                update(DeclarationValueRecords)
                .where(DeclarationValueRecords.batch_id == batch_id)
                .where(DeclarationValueRecords.result == DeclarationResult.PENDING.value)
                .values(result=result.value, updated_at=self._now())
            )
            session.commit()
            return updated.rowcount
