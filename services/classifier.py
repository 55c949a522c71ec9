# WORKFLOW: Tiered HS classification of free-text product descriptions.
# Used by: services/batch_reconciliation.py, services/engine.py, api/routers/classification.py
# Functions:
# 1. classify() - First successful strategy wins, else Unclassified
# 2. check_confidence() - LowConfidence below the review threshold
# 3. acceptable() - Candidate validation against the registry and the exclusion set
#
# Strategy chain (ordered list of MatchStrategy):
# 1. DeclaredCodeStrategy - declared code exact (100), 8-digit (90), 6-digit (80)
# 2. HistoryStrategy - learned matches, min(100, 60 + 5*log2(count+1)), never below
#    the confidence the later tiers give the same code
# 3. ExactStrategy - normalised description equals an indexed description (95)
# 4. KeywordStrategy - token overlap with code + heading keywords (70-90)
# 5. FuzzyStrategy - token/trigram Jaccard against the corpus (0-69)
#
# Classification is read-only: history is only written when a match is accepted.

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from typing import FrozenSet, Iterable, List, Optional

from core.errors import LowConfidence, Unclassified
from core.models import MatchResult, MatchSource, canonical_hs_code, normalize_hs_code
from services.description_index import DescriptionIndex
from services.match_history import MatchHistoryStore
from services.tariff_registry import TariffRegistry
from services.text_normalizer import jaccard, normalize_text, product_key, tokenize, trigrams

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationRequest:
    product_description: str
    material: Optional[str]
    origin_country_code: str
    as_of: date
    declared_hs_code: Optional[str] = None
    excluded_codes: FrozenSet[str] = frozenset()

    @property
    def tokens(self) -> List[str]:
        return tokenize(self.product_description, self.material)


def history_confidence(match_count: int) -> float:
    return round(min(100.0, 60.0 + 5.0 * math.log2(match_count + 1)), 2)


class MatchStrategy(ABC):
    """One classification tier."""

    name = "strategy"

    @abstractmethod
    def match(self, request: ClassificationRequest, classifier: "Classifier") -> Optional[MatchResult]:
        ...


class DeclaredCodeStrategy(MatchStrategy):
    name = "declared_code"

    def match(self, request, classifier):
        if not request.declared_hs_code:
            return None
        try:
            declared = normalize_hs_code(request.declared_hs_code)
        except ValueError:
            logger.info(f"Ignoring malformed declared HS code {request.declared_hs_code!r}")
            return None

        canonical = canonical_hs_code(declared)
        for code in classifier.index.codes_under(declared[:6]):
            if canonical_hs_code(code) == canonical and classifier.acceptable(code, request):
                return MatchResult(hs_code=code, confidence=100, source=MatchSource.EXACT)

        for digits, confidence in ((8, 90), (6, 80)):
            if len(declared) < digits:
                continue
            candidates = [
                code for code in classifier.index.codes_under(declared[:digits])
                if classifier.acceptable(code, request)
            ]
            if candidates:
                best = classifier.rank_by_keywords(candidates, request.tokens)
                return MatchResult(hs_code=best, confidence=confidence, source=MatchSource.PREFIX)
        return None


class HistoryStrategy(MatchStrategy):
    name = "history"

    def match(self, request, classifier):
        record = classifier.history.get(product_key(request.product_description, request.material))
        if record is None or not classifier.acceptable(record.matched_hs_code, request):
            return None
        # an accepted match never scores below what the description tiers give the same code
        confidence = max(
            history_confidence(record.match_count),
            classifier.corroborating_confidence(request, record.matched_hs_code, after=self),
        )
        return MatchResult(hs_code=record.matched_hs_code, confidence=confidence, source=MatchSource.HISTORY)


class ExactStrategy(MatchStrategy):
    name = "exact"
    confidence = 95

    def match(self, request, classifier):
        description = normalize_text(request.product_description)
        material = normalize_text(request.material)
        variants = [description]
        if material:
            variants += [f"{description} {material}", f"{material} {description}"]
        for variant in variants:
            codes = sorted(code for code in classifier.index.lookup_exact(variant) if classifier.acceptable(code, request))
            if len(codes) == 1:
                return MatchResult(hs_code=codes[0], confidence=self.confidence, source=MatchSource.EXACT)
            if len(codes) > 1:
                logger.info(f"Exact description '{variant}' maps to several codes {codes}; deferring to keywords")
                return None
        return None


class KeywordStrategy(MatchStrategy):
    name = "keyword"

    def __init__(self, min_overlap: float = 0.5):
        self.min_overlap = min_overlap

    def match(self, request, classifier):
        tokens = request.tokens
        if not tokens:
            return None
        query = set(tokens)
        scored = []
        for code, hits in classifier.index.keyword_overlap(tokens).items():
            ratio = hits / len(query)
            if ratio < self.min_overlap:
                continue
            specificity = jaccard(query, classifier.index.get(code).tokens)
            scored.append((-ratio, -specificity, code))
        for neg_ratio, _, code in sorted(scored):
            if classifier.acceptable(code, request):
                confidence = round(70 + 20 * -neg_ratio, 2)
                return MatchResult(hs_code=code, confidence=confidence, source=MatchSource.PREFIX)
        return None


class FuzzyStrategy(MatchStrategy):
    name = "fuzzy"

    def __init__(self, min_similarity: float = 0.25):
        self.min_similarity = min_similarity

    def match(self, request, classifier):
        query_tokens = set(request.tokens)
        query_trigrams = trigrams(f"{request.product_description} {request.material or ''}")
        if not query_tokens and not query_trigrams:
            return None
        scored = []
        for entry in classifier.index.entries():
            if not entry.normalized and not entry.tokens:
                continue
            similarity = max(jaccard(query_tokens, entry.tokens), jaccard(query_trigrams, entry.trigrams))
            if similarity >= self.min_similarity:
                scored.append((-similarity, entry.hs_code))
        for neg_similarity, code in sorted(scored):
            if classifier.acceptable(code, request):
                return MatchResult(hs_code=code, confidence=round(-neg_similarity * 69, 2), source=MatchSource.FUZZY)
        return None


def default_strategies(keyword_min_overlap: float = 0.5, fuzzy_min_similarity: float = 0.25) -> List[MatchStrategy]:
    return [
        DeclaredCodeStrategy(),
        HistoryStrategy(),
        ExactStrategy(),
        KeywordStrategy(keyword_min_overlap),
        FuzzyStrategy(fuzzy_min_similarity),
    ]


class Classifier:
    """Runs the strategy chain over one reference snapshot and the shared history."""

    def __init__(
        self,
        registry: TariffRegistry,
        index: DescriptionIndex,
        history: MatchHistoryStore,
        strategies: Optional[List[MatchStrategy]] = None,
        review_threshold: float = 70.0,
    ):
        self.registry = registry
        self.index = index
        self.history = history
        self.strategies = strategies if strategies is not None else default_strategies()
        self.review_threshold = review_threshold

    def acceptable(self, hs_code: str, request: ClassificationRequest) -> bool:
        if hs_code in request.excluded_codes:
            return False
        return self.registry.find_base_duty(hs_code, request.origin_country_code, request.as_of) is not None

    def corroborating_confidence(self, request: ClassificationRequest, hs_code: str, after: MatchStrategy) -> float:
        """Confidence of the first later tier that yields a candidate, 0 unless it is hs_code."""
        position = next((i for i, strategy in enumerate(self.strategies) if strategy is after), len(self.strategies))
        for strategy in self.strategies[position + 1:]:
            result = strategy.match(request, self)
            if result is not None:
                return result.confidence if result.hs_code == hs_code else 0.0
        return 0.0

    def rank_by_keywords(self, codes: List[str], tokens: Iterable[str]) -> str:
        query = set(tokens)
        return min(codes, key=lambda code: (-jaccard(query, self.index.get(code).tokens), code))

    def classify(
        self,
        product_description: str,
        material: Optional[str],
        origin_country_code: str,
        as_of: Optional[date] = None,
        declared_hs_code: Optional[str] = None,
        excluded_codes: Iterable[str] = (),
    ) -> MatchResult:
        """
        Classify a product to an HS code.

        Args:
            product_description: Free-text product description
            material: Main material, if known
            origin_country_code: ISO origin country (candidates must have a duty for it)
            as_of: Import date, defaults to today
            declared_hs_code: Code declared by the supplier, if any
            excluded_codes: Codes rejected earlier for this item

        Returns:
            MatchResult of the first tier that yields a candidate

        Raises:
            Unclassified: no tier yields a candidate
        """
        request = ClassificationRequest(
            product_description=product_description,
            material=material,
            origin_country_code=origin_country_code,
            as_of=as_of or date.today(),
            declared_hs_code=declared_hs_code,
            excluded_codes=frozenset(excluded_codes),
        )
        for strategy in self.strategies:
            result = strategy.match(request, self)
            if result is not None:
                logger.info(
                    f"Classified '{product_description}' ({material}) -> {result.hs_code} "
                    f"via {strategy.name} at {result.confidence}"
                )
                return result
        logger.info(f"Could not classify '{product_description}' ({material}) from {origin_country_code}")
        raise Unclassified(product_description, material, origin_country_code)

    def check_confidence(self, result: MatchResult) -> MatchResult:
        if result.confidence < self.review_threshold:
            raise LowConfidence(result.hs_code, result.confidence, self.review_threshold)
        return result
