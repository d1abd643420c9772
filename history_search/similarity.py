"""String similarity primitives.

All functions are pure and return a value in [0, 1]. Identical strings score
1.0, two empty strings score 1.0, and an empty string against a non-empty one
scores 0.0. Callers lowercase their input; only ``token_overlap_score``
normalizes case itself.

Edit distance and Jaro/Jaro-Winkler come from rapidfuzz.
"""
from typing import List

from rapidfuzz.distance import Jaro, JaroWinkler, Levenshtein

WINKLER_PREFIX_SCALE = 0.1
TOKEN_MATCH_THRESHOLD = 0.5


def levenshtein_distance(s1: str, s2: str) -> int:
    """Minimum number of unit-cost insertions, deletions and substitutions."""
    return Levenshtein.distance(s1, s2)


def levenshtein_similarity(s1: str, s2: str) -> float:
    """Edit distance normalized to ``1 - distance / max(len1, len2)``."""
    if s1 == s2:
        return 1.0
    return Levenshtein.normalized_similarity(s1, s2)


def jaro_similarity(s1: str, s2: str) -> float:
    """Jaro similarity: matched characters within a bounded window, less transpositions."""
    if not s1 and not s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    return Jaro.similarity(s1, s2)


def jaro_winkler_similarity(s1: str, s2: str) -> float:
    """Jaro similarity with a common-prefix bonus for already-similar pairs.

    The bonus (0.1 per shared leading character, at most 4) is only added
    when the Jaro score clears 0.7; boosting weak pairs on a shared prefix
    alone produces false positives.
    """
    if s1 == s2:
        return 1.0
    if not s1 or not s2:
        return 0.0
    return JaroWinkler.similarity(s1, s2, prefix_weight=WINKLER_PREFIX_SCALE)


def substring_score(query: str, text: str) -> float:
    """Score a literal substring hit by coverage and position.

    Matches at the start of the text are weighted 1.5x, matches starting in
    the first third 1.2x. The result is capped at 1.0.
    """
    if not query and not text:
        return 1.0
    if not query or not text:
        return 0.0

    index = text.find(query)
    if index == -1:
        return 0.0

    base_score = len(query) / len(text)
    if index == 0:
        position_weight = 1.5
    elif index < len(text) // 3:
        position_weight = 1.2
    else:
        position_weight = 1.0

    return min(base_score * position_weight, 1.0)


def _tokenize(text: str) -> List[str]:
    return text.lower().split()


def token_overlap_score(query: str, text: str) -> float:
    """Phrase match: average best per-token similarity, scaled by the share of matched query tokens."""
    query_tokens = _tokenize(query)
    text_tokens = _tokenize(text)

    if not query_tokens and not text_tokens:
        return 1.0
    if not query_tokens or not text_tokens:
        return 0.0

    total_score = 0.0
    matched_tokens = 0
    for query_token in query_tokens:
        best = max(jaro_winkler_similarity(query_token, t) for t in text_tokens)
        if best >= TOKEN_MATCH_THRESHOLD:
            total_score += best
            matched_tokens += 1

    if matched_tokens == 0:
        return 0.0

    average = total_score / matched_tokens
    return average * (matched_tokens / len(query_tokens))
