# WORKFLOW: Text normalisation shared by the description index, matcher and match history.
# Used by: services/description_index.py, services/classifier.py, services/match_history.py
# Functions:
# 1. normalize_text() - NFKC + casefold + collapse punctuation/whitespace
# 2. tokenize() - Informative tokens (stopwords dropped, simple plurals folded)
# 3. product_key() - Stable history key for (description, material)
# 4. trigrams() - Character trigrams for fuzzy similarity
# 5. jaccard() - Set similarity
#
# The same normalisation must be used for indexing and lookup, otherwise
# exact and history matches silently stop hitting.

import re
import unicodedata
from typing import FrozenSet, Iterable, List, Optional, Set

_TOKEN_RE = re.compile(r"[^\W_]+")

STOPWORDS: Set[str] = {
    "a", "an", "the", "of", "for", "and", "or", "in", "to", "with", "without",
    "at", "by", "from", "as", "is", "are", "be", "on", "its", "their",
    "other", "others", "whether", "not", "nor", "elsewhere", "specified", "included",
    "thereof", "such", "any", "all", "kind", "kinds", "type", "types", "used",
}


def normalize_text(text: Optional[str]) -> str:
    if not text:
        return ""
    folded = unicodedata.normalize("NFKC", text).casefold()
    return " ".join(_TOKEN_RE.findall(folded))


def _singular(token: str) -> str:
    if len(token) > 4 and token.endswith("ies"):
        return token[:-3] + "y"
    if len(token) > 4 and token.endswith(("ches", "shes", "sses", "xes")):
        return token[:-2]
    if len(token) > 3 and token.endswith("s") and not token.endswith(("ss", "us", "is")):
        return token[:-1]
    return token


def tokenize(*texts: Optional[str]) -> List[str]:
    """Informative tokens of the given texts, in order, without duplicates."""
    seen: List[str] = []
    for text in texts:
        for token in normalize_text(text).split():
            if token in STOPWORDS or token.isdigit():
                continue
            token = _singular(token)
            if token not in seen:
                seen.append(token)
    return seen


def token_set(*texts: Optional[str]) -> FrozenSet[str]:
    return frozenset(tokenize(*texts))


def product_key(product_description: str, material: Optional[str]) -> str:
    """History key: normalised description and material joined by '|'."""
    return f"{normalize_text(product_description)}|{normalize_text(material)}"


def trigrams(text: str) -> FrozenSet[str]:
    normalized = normalize_text(text)
    if not normalized:
        return frozenset()
    padded = f"  {normalized} "
    return frozenset(padded[i:i + 3] for i in range(len(padded) - 2))


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    set_a, set_b = set(a), set(b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)
