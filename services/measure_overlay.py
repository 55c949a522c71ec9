# WORKFLOW: Trade measures and preferential agreements layered over the base duty.
# Used by: services/batch_reconciliation.py, services/engine.py, api/routers/tariff.py
# Functions:
# 1. resolve_measures() - Preferential duty, anti-dumping, countervailing and restrictions
# 2. applicable_agreements() - Agreements in force for (code, origin, date)
# 3. area_includes() - Geographical scope test with country-group expansion
#
# Resolution order:
# 1. Lowest applicable agreement rate replaces the base duty when strictly lower
# 2. One AntiDumping and one Countervailing measure by longest prefix (ties are ambiguous)
# 3. Quota/License/SPS measures surfaced as restrictions

import logging
from collections import defaultdict
from datetime import date
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from core.errors import AmbiguousMeasure
from core.models import (
    ERGA_OMNES,
    DutyKind,
    MeasureOverlayResult,
    MeasureType,
    Restriction,
    TariffRule,
    TradeAgreement,
    TradeMeasure,
    canonical_hs_code,
    normalize_area,
)
from services.tariff_registry import TariffRegistry

logger = logging.getLogger(__name__)


class MeasureOverlay:
    """Read-only view over the measures and agreements of one reference snapshot."""

    def __init__(
        self,
        measures: Iterable[TradeMeasure],
        agreements: Iterable[TradeAgreement],
        registry: TariffRegistry,
        country_groups: Optional[Mapping[str, FrozenSet[str]]] = None,
    ):
        self.registry = registry
        self.country_groups = dict(country_groups or {})
        self._measures: Dict[str, List[TradeMeasure]] = defaultdict(list)
        for measure in measures:
            self._measures[measure.canonical_prefix].append(measure)
        self._agreements = [agreement for agreement in agreements if agreement.is_active]

    def area_includes(self, areas: FrozenSet[str], origin: str) -> bool:
        if origin in areas or ERGA_OMNES in areas:
            return True
        return any(origin in self.country_groups.get(area, ()) for area in areas)

    def _origin_in_scope(self, measure: TradeMeasure, origin: str) -> bool:
        if not self.area_includes(measure.geographical_area, origin):
            return False
        excluded = measure.excluded_areas
        if origin in excluded:
            return False
        return not any(origin in self.country_groups.get(area, ()) for area in excluded)

    def _measures_in_force(self, code: str, origin: str, as_of: date) -> List[TradeMeasure]:
        found = []
        for length in range(len(code), 1, -1):
            for measure in self._measures.get(code[:length], ()):
                if measure.is_in_force(as_of) and self._origin_in_scope(measure, origin):
                    found.append(measure)
        return found

    def applicable_agreements(self, hs_code: str, origin_country_code: str, as_of: date) -> List[TradeAgreement]:
        code = canonical_hs_code(hs_code)
        origin = normalize_area(origin_country_code)
        return [
            agreement
            for agreement in self._agreements
            if agreement.is_in_force(as_of)
            and self.area_includes(agreement.country_scope, origin)
            and (agreement.hs_code_prefix is None or code.startswith(canonical_hs_code(agreement.hs_code_prefix)))
        ]

    def _pick_monetary(self, measure_type: MeasureType, measures: List[TradeMeasure],
                       hs_code: str, origin: str, as_of: date) -> Optional[TradeMeasure]:
        of_type = [measure for measure in measures if measure.measure_type == measure_type]
        if not of_type:
            return None
        longest = max(len(measure.canonical_prefix) for measure in of_type)
        winners = [measure for measure in of_type if len(measure.canonical_prefix) == longest]
        if len(winners) > 1:
            logger.error(
                f"Ambiguous {measure_type.value} measures for {hs_code}/{origin} on {as_of}: "
                f"{[measure.measure_id for measure in winners]}"
            )
            raise AmbiguousMeasure(measure_type.value, hs_code, origin, as_of,
                                   [measure.measure_id for measure in winners])
        return winners[0]

    def resolve_measures(
        self,
        hs_code: str,
        origin_country_code: str,
        as_of: date,
        base_rule: Optional[TariffRule] = None,
    ) -> MeasureOverlayResult:
        """
        Resolve everything that modifies or accompanies the base duty.

        Args:
            hs_code: Commodity code of the line item
            origin_country_code: ISO origin country
            as_of: Import date
            base_rule: Already resolved base rule; looked up in the registry when omitted

        Returns:
            MeasureOverlayResult

        Raises:
            AmbiguousMeasure: two equally specific measures of one monetary type are in force
        """
        code = canonical_hs_code(hs_code)
        origin = normalize_area(origin_country_code)
        if base_rule is None:
            base_rule = self.registry.find_base_duty(hs_code, origin, as_of)

        result: Dict[str, object] = {}

        agreements = self.applicable_agreements(hs_code, origin, as_of)
        if agreements:
            best = min(agreements, key=lambda agreement: (agreement.preferential_rate, agreement.agreement_code))
            if base_rule is None:
                logger.info(f"Agreement {best.agreement_code} ignored for {hs_code}/{origin}: no base duty to compare")
            elif base_rule.duty_kind != DutyKind.AD_VALOREM:
                logger.info(f"Agreement {best.agreement_code} ignored for {hs_code}/{origin}: base duty is per unit")
            elif best.preferential_rate < base_rule.duty_rate:
                result.update(
                    preferential_duty=best.preferential_rate,
                    agreement_code=best.agreement_code,
                    proof_document=best.proof_document,
                )

        measures = self._measures_in_force(code, origin, as_of)

        anti_dumping = self._pick_monetary(MeasureType.ANTI_DUMPING, measures, hs_code, origin, as_of)
        if anti_dumping is not None:
            result.update(anti_dumping=anti_dumping.duty_expression, anti_dumping_measure_id=anti_dumping.measure_id)

        countervailing = self._pick_monetary(MeasureType.COUNTERVAILING, measures, hs_code, origin, as_of)
        if countervailing is not None:
            result.update(countervailing=countervailing.duty_expression,
                          countervailing_measure_id=countervailing.measure_id)

        restrictions = set()
        for measure in measures:
            if measure.measure_type in (MeasureType.ANTI_DUMPING, MeasureType.COUNTERVAILING):
                continue
            if measure.measure_type in (MeasureType.QUOTA, MeasureType.LICENSE_REQUIRED, MeasureType.SPS_REQUIRED):
                restrictions.add(Restriction(
                    measure_id=measure.measure_id,
                    measure_type=measure.measure_type,
                    hs_code_prefix=measure.hs_code_prefix,
                    conditions=measure.conditions,
                ))
            else:
                raise ValueError(f"Unhandled measure type {measure.measure_type}")
        result["restrictions"] = frozenset(restrictions)

        overlay = MeasureOverlayResult(**result)
        logger.debug(f"Measure overlay for {hs_code}/{origin} on {as_of}: {overlay}")
        return overlay
