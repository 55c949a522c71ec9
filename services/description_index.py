# WORKFLOW: Canonical description index over the goods nomenclature and tariff rule texts.
# Used by: services/reference_data.py (built once per snapshot), services/classifier.py
# Functions:
# 1. lookup_exact() - Codes whose normalised description equals the query
# 2. keyword_overlap() - Inverted-index overlap counts per code
# 3. codes_under() - Indexed codes below an HS prefix (declared-code tier)
# 4. entries() - Full corpus for the fuzzy tier
#
# Index flow: Nomenclature + rule descriptions -> normalise -> exact map / token postings
# A code's keyword set also carries the tokens of its ancestor headings, so
# "cotton t-shirt" reaches 61091000 even if the leaf text is only "Of cotton".

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Set

from core.models import NomenclatureEntry, TariffRule
from services.text_normalizer import normalize_text, token_set, trigrams

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexedCode:
    hs_code: str
    description: str
    normalized: str
    tokens: FrozenSet[str]
    trigrams: FrozenSet[str]


class DescriptionIndex:
    """Immutable once built; rebuilt with every reference snapshot."""

    def __init__(self, nomenclature: Iterable[NomenclatureEntry], rules: Iterable[TariffRule]):
        descriptions: Dict[str, str] = {}
        leaves: Set[str] = set()
        for entry in nomenclature:
            descriptions[entry.hs_code] = entry.description
            if entry.is_leaf:
                leaves.add(entry.hs_code)
        for rule in rules:
            leaves.add(rule.hs_code)
            if rule.description and rule.hs_code not in descriptions:
                descriptions[rule.hs_code] = rule.description

        self._codes: Dict[str, IndexedCode] = {}
        self._exact: Dict[str, Set[str]] = defaultdict(set)
        self._postings: Dict[str, Set[str]] = defaultdict(set)

        for code in sorted(leaves):
            description = descriptions.get(code, "")
            ancestors = [descriptions[code[:n]] for n in range(2, len(code)) if code[:n] in descriptions]
            indexed = IndexedCode(
                hs_code=code,
                description=description,
                normalized=normalize_text(description),
                tokens=token_set(description, *ancestors),
                trigrams=trigrams(" ".join([*ancestors, description])),
            )
            self._codes[code] = indexed
            if indexed.normalized:
                self._exact[indexed.normalized].add(code)
            for token in indexed.tokens:
                self._postings[token].add(code)

        logger.info(f"Description index built: {len(self._codes)} codes, {len(self._postings)} tokens")

    def __len__(self) -> int:
        return len(self._codes)

    def get(self, hs_code: str) -> IndexedCode:
        return self._codes[hs_code]

    def entries(self) -> List[IndexedCode]:
        return list(self._codes.values())

    def lookup_exact(self, text: str) -> Set[str]:
        return set(self._exact.get(normalize_text(text), ()))

    def keyword_overlap(self, tokens: Iterable[str]) -> Dict[str, int]:
        """Number of query tokens found in each code's keyword set."""
        counts: Dict[str, int] = defaultdict(int)
        for token in set(tokens):
            for code in self._postings.get(token, ()):
                counts[code] += 1
        return dict(counts)

    def codes_under(self, prefix: str) -> List[str]:
        return sorted(code for code in self._codes if code.startswith(prefix))
