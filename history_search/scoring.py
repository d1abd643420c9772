"""Composite ranking of history records against a query."""
import math
from dataclasses import replace
from datetime import datetime, timezone
from typing import List, Optional

from history_search.config import SimilarityConfig
from history_search.models import HistoryRecord, MatchCandidate, MatchedField, utc_now
from history_search.similarity import jaro_winkler_similarity, substring_score

SECONDS_PER_DAY = 86400.0
VISIT_SCORE_CEILING = 1000  # Visit counts at or above this score 1.0

# Post-ranking boosts. They stack multiplicatively.
SUBSTRING_BOOST = 1.2
DOMAIN_BOOST = 1.15
SHORT_URL_BOOST = 1.05
SHORT_URL_LENGTH = 50


def extract_domain(url: str) -> str:
    """Return the host part of a URL without scheme, path or port."""
    domain = url
    for scheme in ("http://", "https://"):
        if domain.startswith(scheme):
            domain = domain[len(scheme):]
            break

    slash = domain.find("/")
    if slash != -1:
        domain = domain[:slash]

    colon = domain.find(":")
    if colon != -1:
        domain = domain[:colon]

    return domain.lower()


def is_domain_match(query: str, url: str) -> bool:
    """Check whether the query names the URL's domain or one of its labels.

    "github" matches github.com and www.github.com; "hub" does not.
    """
    query = query.strip().lower()
    if not query:
        return False

    domain = extract_domain(url)
    if domain == query:
        return True
    if domain.endswith("." + query) or domain.startswith(query + "."):
        return True
    return query in domain.split(".")


class Scorer:
    """Scores records against a query with the weights of a SimilarityConfig."""

    def __init__(self, config: Optional[SimilarityConfig] = None):
        self.config = config or SimilarityConfig()

    def field_score(self, query: str, text: str) -> float:
        """Best of Jaro-Winkler and positional substring similarity."""
        if not text:
            return 0.0
        return max(jaro_winkler_similarity(query, text), substring_score(query, text))

    def recency_score(self, last_visited: Optional[datetime], now: Optional[datetime] = None) -> float:
        """Exponential decay over days since the last visit; 0 when never visited."""
        if last_visited is None:
            return 0.0
        if now is None:
            now = utc_now()
        if last_visited.tzinfo is None:
            last_visited = last_visited.replace(tzinfo=timezone.utc)
        days_since = max(0.0, (now - last_visited).total_seconds() / SECONDS_PER_DAY)
        return math.exp(-days_since / self.config.recency_half_life_days)

    @staticmethod
    def visit_score(visit_count: Optional[int]) -> float:
        """Log-scaled popularity so a handful of heavily visited pages cannot dominate."""
        if not visit_count or visit_count <= 0:
            return 0.0
        return min(1.0, math.log1p(visit_count) / math.log1p(VISIT_SCORE_CEILING))

    def combine(self, url_score: float, title_score: float, recency_score: float, visit_score: float) -> float:
        cfg = self.config
        return (
            cfg.url_weight * url_score
            + cfg.title_weight * title_score
            + cfg.recency_weight * recency_score
            + cfg.visit_weight * visit_score
        )

    def score(self, query: str, record: HistoryRecord, now: Optional[datetime] = None) -> MatchCandidate:
        """Score one record.

        Args:
            query: Search text; lowercased and stripped here
            record: History record to score
            now: Reference time for the recency score (defaults to current UTC time)

        Returns:
            MatchCandidate with the four component scores and their weighted sum
        """
        query = query.strip().lower()

        url_score = self.field_score(query, record.url.lower())
        title_score = self.field_score(query, record.title.lower()) if record.title else 0.0
        recency = self.recency_score(record.last_visited, now)
        visits = self.visit_score(record.visit_count)

        if url_score > 0 and title_score > 0:
            matched_field = MatchedField.BOTH
        elif url_score > 0:
            matched_field = MatchedField.URL
        else:
            # Title is the label when nothing matched
            matched_field = MatchedField.TITLE

        return MatchCandidate(
            record=record,
            score=self.combine(url_score, title_score, recency, visits),
            url_score=url_score,
            title_score=title_score,
            recency_score=recency,
            visit_score=visits,
            matched_field=matched_field,
        )

    def rank(self, matches: List[MatchCandidate], query: str) -> List[MatchCandidate]:
        """Apply the post-ranking boosts and sort by score, highest first."""
        query = query.strip().lower()
        ranked = []
        for match in matches:
            url = match.record.url
            factor = 1.0
            if query and query in url.lower():
                factor *= SUBSTRING_BOOST
            if is_domain_match(query, url):
                factor *= DOMAIN_BOOST
            if len(url) < SHORT_URL_LENGTH:
                factor *= SHORT_URL_BOOST
            ranked.append(replace(match, score=match.score * factor) if factor != 1.0 else match)

        ranked.sort(key=lambda m: m.score, reverse=True)
        return ranked
