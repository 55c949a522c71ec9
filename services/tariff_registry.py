# WORKFLOW: Effective-dated base duty lookup per (HS code, origin country).
# Used by: services/classifier.py (candidate validation), services/measure_overlay.py,
#          services/batch_reconciliation.py, api/routers/tariff.py
# Functions:
# 1. find_base_duty() - Longest-prefix, latest-valid_from rule or None
# 2. resolve_base_duty() - Same, raising TariffNotFound (never defaulted)
#
# Resolution flow: canonical query code -> prefixes longest first -> rules in force on
# the date -> latest valid_from. Exact origin first, then ERGA OMNES when enabled.

import logging
from collections import defaultdict
from datetime import date
from typing import Dict, Iterable, List, Optional

from core.errors import ReferenceDataIntegrityError, TariffNotFound
from core.models import ERGA_OMNES, TariffRule, canonical_hs_code, normalize_area

logger = logging.getLogger(__name__)


class TariffRegistry:
    """Read-only view over the base duty rules of one reference snapshot."""

    def __init__(self, rules: Iterable[TariffRule], erga_omnes_fallback: bool = True):
        self.erga_omnes_fallback = erga_omnes_fallback
        self._index: Dict[str, Dict[str, List[TariffRule]]] = defaultdict(lambda: defaultdict(list))
        count = 0
        for rule in rules:
            if not rule.is_active:
                continue
            self._index[rule.origin_country_code][rule.canonical_code].append(rule)
            count += 1
        logger.info(f"Tariff registry indexed {count} active rules over {len(self._index)} origins")

    def _resolve_for_origin(self, code: str, origin: str, as_of: date) -> Optional[TariffRule]:
        by_code = self._index.get(origin)
        if not by_code:
            return None
        for length in range(len(code), 1, -1):
            candidates = [rule for rule in by_code.get(code[:length], ()) if rule.is_in_force(as_of)]
            if not candidates:
                continue
            candidates.sort(key=lambda rule: rule.valid_from, reverse=True)
            if len(candidates) > 1 and candidates[0].valid_from == candidates[1].valid_from:
                raise ReferenceDataIntegrityError([
                    f"Overlapping tariff rules for {code[:length]} / {origin} on {as_of.isoformat()}"
                ])
            return candidates[0]
        return None

    def find_base_duty(self, hs_code: str, origin_country_code: str, as_of: date) -> Optional[TariffRule]:
        code = canonical_hs_code(hs_code)
        origin = normalize_area(origin_country_code)
        rule = self._resolve_for_origin(code, origin, as_of)
        if rule is None and self.erga_omnes_fallback and origin != ERGA_OMNES:
            rule = self._resolve_for_origin(code, ERGA_OMNES, as_of)
        return rule

    def resolve_base_duty(self, hs_code: str, origin_country_code: str, as_of: date) -> TariffRule:
        """
        Resolve the base duty rule in force.

        Args:
            hs_code: 6 to 10 digit commodity code (dots and spaces are ignored)
            origin_country_code: ISO origin country
            as_of: Import date

        Returns:
            The single qualifying TariffRule

        Raises:
            TariffNotFound: no rule qualifies for the triple
        """
        rule = self.find_base_duty(hs_code, origin_country_code, as_of)
        if rule is None:
            logger.warning(f"No tariff rule for HS {hs_code} from {origin_country_code} on {as_of}")
            raise TariffNotFound(hs_code, origin_country_code, as_of)
        logger.debug(
            f"Base duty for {hs_code}/{origin_country_code} on {as_of}: rule {rule.hs_code}/"
            f"{rule.origin_country_code} {rule.duty_rate} ({rule.duty_kind.value})"
        )
        return rule
