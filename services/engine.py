# WORKFLOW: Engine facade wiring the reference snapshot, matcher, VAT table and histories.
# Used by: services/batch_reconciliation.py, api/dependencies.py, api/routers/*
# Functions:
# 1. classify() - Classification Matcher over the current snapshot
# 2. resolve_base_duty() / resolve_measures() - Audit views ("why this rate")
# 3. compute_line_tax() - Resolve rule, measures and VAT, then compute_tax()
# 4. classifier_for() - Matcher bound to a given snapshot (batch processing pins one)
# 5. check_declaration_risk() - Declared unit price against earlier declarations
#
# Every call reads the snapshot once, so a concurrent sync never mixes two versions
# inside one resolution.

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from core.config import Settings, settings as default_settings
from core.models import DeclarationRisk, MatchResult, MeasureOverlayResult, TariffRule, TaxBreakdown
from services.classifier import Classifier, MatchStrategy, default_strategies
from services.declaration_risk import DeclarationHistory, InMemoryDeclarationHistory
from services.match_history import InMemoryMatchHistory, MatchHistoryStore
from services.reference_data import ReferenceDataStore, ReferenceSnapshot
from services.tax_engine import compute_tax
from services.vat_rates import InMemoryVatRates, VatRateProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineTaxResult:
    rule: TariffRule
    overlay: MeasureOverlayResult
    tax: TaxBreakdown
    snapshot_version: str


class TariffEngine:
    def __init__(
        self,
        store: Optional[ReferenceDataStore] = None,
        history: Optional[MatchHistoryStore] = None,
        vat_rates: Optional[VatRateProvider] = None,
        config: Optional[Settings] = None,
        strategies: Optional[List[MatchStrategy]] = None,
        declarations: Optional[DeclarationHistory] = None,
    ):
        self.config = config or default_settings
        self.store = store or ReferenceDataStore()
        self.history = history or InMemoryMatchHistory()
        self.vat_rates = vat_rates or InMemoryVatRates()
        self.declarations = declarations or InMemoryDeclarationHistory()
        self.strategies = strategies or default_strategies(
            keyword_min_overlap=self.config.keyword_min_overlap,
            fuzzy_min_similarity=self.config.fuzzy_min_similarity,
        )

    @property
    def snapshot(self) -> ReferenceSnapshot:
        return self.store.current()

    def classifier_for(self, snapshot: ReferenceSnapshot) -> Classifier:
        return Classifier(
            registry=snapshot.registry,
            index=snapshot.index,
            history=self.history,
            strategies=self.strategies,
            review_threshold=self.config.review_threshold,
        )

    def classify(
        self,
        product_description: str,
        material: Optional[str],
        origin_country_code: str,
        as_of: Optional[date] = None,
        declared_hs_code: Optional[str] = None,
        excluded_codes: Iterable[str] = (),
    ) -> MatchResult:
        return self.classifier_for(self.snapshot).classify(
            product_description,
            material,
            origin_country_code,
            as_of=as_of,
            declared_hs_code=declared_hs_code,
            excluded_codes=excluded_codes,
        )

    def resolve_base_duty(self, hs_code: str, origin_country_code: str, as_of: date) -> TariffRule:
        return self.snapshot.registry.resolve_base_duty(hs_code, origin_country_code, as_of)

    def resolve_measures(self, hs_code: str, origin_country_code: str, as_of: date) -> MeasureOverlayResult:
        return self.snapshot.overlay.resolve_measures(hs_code, origin_country_code, as_of)

    def resolve_line(
        self,
        snapshot: ReferenceSnapshot,
        hs_code: str,
        origin_country_code: str,
        as_of: date,
    ):
        """(rule, overlay) for one code on one snapshot; raises TariffNotFound / AmbiguousMeasure."""
        rule = snapshot.registry.resolve_base_duty(hs_code, origin_country_code, as_of)
        overlay = snapshot.overlay.resolve_measures(hs_code, origin_country_code, as_of, base_rule=rule)
        return rule, overlay

    def compute_line_tax(
        self,
        hs_code: str,
        origin_country_code: str,
        destination_country_code: str,
        as_of: date,
        customs_value: Decimal,
        quantity: Optional[Decimal] = None,
        snapshot: Optional[ReferenceSnapshot] = None,
    ) -> LineTaxResult:
        """
        Resolve and compute the taxes of one classified line.

        Raises:
            TariffNotFound, AmbiguousMeasure, MissingVatRate: fatal for the line
        """
        snapshot = snapshot or self.snapshot
        rule, overlay = self.resolve_line(snapshot, hs_code, origin_country_code, as_of)
        vat_rate = self.vat_rates.get_rate(destination_country_code, as_of)
        tax = compute_tax(rule, overlay, vat_rate, customs_value, quantity)
        return LineTaxResult(rule=rule, overlay=overlay, tax=tax, snapshot_version=snapshot.version)

    def check_declaration_risk(
        self,
        hs_code: str,
        origin_country_code: str,
        unit_price: Decimal,
    ) -> DeclarationRisk:
        return self.declarations.check(hs_code, origin_country_code, unit_price)
