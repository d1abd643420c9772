"""Search orchestration over the history store and the candidate index."""
import logging
import math
import time
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence, Tuple

from history_search.cache_manager import CacheManager
from history_search.config import SimilarityConfig
from history_search.errors import ConfigError, RetrievalError
from history_search.history_store import HistoryProvider
from history_search.index import CacheSnapshot
from history_search.models import (
    CacheStats,
    HistoryRecord,
    MatchCandidate,
    MatchedField,
    SearchOptions,
    SearchResult,
    utc_now,
)
from history_search.scoring import Scorer, extract_domain

logger = logging.getLogger(__name__)


class SearchEngine(Protocol):
    """Protocol for history search engines to allow extensibility."""

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> SearchResult:
        """Search history based on query.

        Args:
            query: Search query string
            options: Per-call limit, threshold and pass selection

        Returns:
            SearchResult with matches sorted by relevance
        """
        ...


class HistorySearchEngine:
    """Hybrid search: a literal pass against the store plus a fuzzy pass over the index."""

    def __init__(
        self,
        provider: HistoryProvider,
        cache_manager: CacheManager,
        config: Optional[SimilarityConfig] = None,
    ):
        self.provider = provider
        self.cache_manager = cache_manager
        self.scorer = Scorer(config)

    @property
    def config(self) -> SimilarityConfig:
        return self.scorer.config

    def update_config(self, config: SimilarityConfig) -> None:
        """Swap scoring weights and thresholds. In-flight searches keep the old ones.

        Raises:
            ConfigError: If the new config is invalid
        """
        config.validate()
        self.scorer = Scorer(config)
        logger.info("Updated similarity config: %s", config)

    def _resolve(self, options: Optional[SearchOptions]) -> Tuple[SearchOptions, int, float]:
        options = options or SearchOptions()
        limit = self.config.max_results if options.limit is None else options.limit
        threshold = self.config.min_similarity_threshold if options.threshold is None else options.threshold

        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ConfigError(f"Search limit must be a positive integer, got {limit!r}")
        if math.isnan(threshold) or not 0.0 <= threshold <= 1.0:
            raise ConfigError(f"Search threshold must be in [0, 1], got {threshold!r}")
        return options, limit, threshold

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> SearchResult:
        """Search history for a partial URL or title.

        Args:
            query: Text typed by the user
            options: Per-call overrides of limit, threshold and passes

        Returns:
            SearchResult whose ``matches`` are sorted by score, highest first

        Raises:
            ConfigError: If the options are out of range
            RetrievalError: If no index exists yet and the store cannot be read
        """
        started = time.perf_counter()
        options, limit, threshold = self._resolve(options)
        scorer = self.scorer

        self.cache_manager.maybe_refresh()

        text = query.strip()
        if not text:
            return SearchResult(query=query, elapsed=time.perf_counter() - started)

        exact: List[MatchCandidate] = []
        if options.include_exact:
            exact = await self._exact_matches(scorer, text, limit)

        fuzzy: List[MatchCandidate] = []
        if options.include_fuzzy:
            snapshot = await self.cache_manager.get_snapshot()
            total_entries = snapshot.entry_count
            exact_urls = {match.url for match in exact}
            fuzzy = [
                match for match in self._fuzzy_matches(scorer, text, snapshot, limit, threshold)
                if match.url not in exact_urls
            ]
        else:
            snapshot = self.cache_manager.current_snapshot()
            total_entries = snapshot.entry_count if snapshot else 0

        matches = scorer.rank(exact + fuzzy, text)[:limit]

        elapsed = time.perf_counter() - started
        logger.debug("Search %r: %d exact, %d fuzzy in %.1fms", text, len(exact), len(fuzzy), elapsed * 1000)
        return SearchResult(
            query=query,
            total_entries=total_entries,
            match_count=len(matches),
            matches=matches,
            exact_matches=exact,
            fuzzy_matches=fuzzy,
            elapsed=elapsed,
        )

    async def _exact_matches(self, scorer: Scorer, text: str, limit: int) -> List[MatchCandidate]:
        try:
            records = await self.provider.search_exact(text, limit)
        except Exception:
            logger.warning("Exact match lookup failed for %r; continuing with fuzzy results", text, exc_info=True)
            return []

        now = utc_now()
        return [
            MatchCandidate(
                record=record,
                score=1.0,
                url_score=1.0,
                title_score=1.0,
                recency_score=scorer.recency_score(record.last_visited, now),
                visit_score=scorer.visit_score(record.visit_count),
                matched_field=MatchedField.EXACT,
            )
            for record in records
        ]

    def _fuzzy_matches(
        self,
        scorer: Scorer,
        text: str,
        snapshot: CacheSnapshot,
        limit: int,
        threshold: float,
    ) -> List[MatchCandidate]:
        candidates = snapshot.candidates(text, self.cache_manager.config.max_candidates)
        matches = self._score_all(scorer, text, candidates, threshold)
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:limit]

    @staticmethod
    def _score_all(
        scorer: Scorer, text: str, records: Sequence[HistoryRecord], threshold: float
    ) -> List[MatchCandidate]:
        now = utc_now()
        matches = []
        for record in records:
            match = scorer.score(text, record, now)
            if match.score >= threshold:
                matches.append(match)
        return matches

    async def get_best_match(self, query: str) -> Optional[MatchCandidate]:
        """Return the single best match for a query, or None."""
        result = await self.search(query, SearchOptions(limit=1))
        return result.matches[0] if result.matches else None

    async def search_by_domain(self, domain: str, options: Optional[SearchOptions] = None) -> SearchResult:
        """Search records whose host contains ``domain``, ranked by similarity to it."""
        started = time.perf_counter()
        _, limit, threshold = self._resolve(options)
        scorer = self.scorer

        domain = domain.strip().lower()
        if not domain:
            return SearchResult(query=domain, elapsed=time.perf_counter() - started)

        snapshot = await self.cache_manager.get_snapshot()
        records = [record for record in snapshot.records if domain in extract_domain(record.url)]
        matches = scorer.rank(self._score_all(scorer, domain, records, threshold), domain)[:limit]

        return SearchResult(
            query=domain,
            total_entries=snapshot.entry_count,
            match_count=len(matches),
            matches=matches,
            fuzzy_matches=list(matches),
            elapsed=time.perf_counter() - started,
        )

    async def search_by_time_range(
        self,
        query: str,
        start: datetime,
        end: datetime,
        options: Optional[SearchOptions] = None,
    ) -> SearchResult:
        """Fuzzy search only records last visited strictly between ``start`` and ``end``.

        Naive datetimes are taken as UTC. Records never visited are skipped.
        ``total_entries`` counts the records inside the range.
        """
        started = time.perf_counter()
        _, limit, threshold = self._resolve(options)
        scorer = self.scorer

        text = query.strip()
        if not text:
            return SearchResult(query=query, elapsed=time.perf_counter() - started)

        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)

        snapshot = await self.cache_manager.get_snapshot()
        records = [
            record for record in snapshot.records
            if record.last_visited is not None and start < record.last_visited < end
        ]
        matches = scorer.rank(self._score_all(scorer, text, records, threshold), text)[:limit]

        return SearchResult(
            query=query,
            total_entries=len(records),
            match_count=len(matches),
            matches=matches,
            fuzzy_matches=list(matches),
            elapsed=time.perf_counter() - started,
        )

    async def get_recent(self, limit: int, filter_query: str = "") -> List[MatchCandidate]:
        """Most recently visited records, optionally fuzzy-filtered.

        Args:
            limit: Maximum results
            filter_query: When set, only records scoring above the threshold are kept

        Raises:
            RetrievalError: If the store cannot be read
        """
        scorer = self.scorer
        try:
            # Over-fetch so filtering still leaves enough results
            records = await self.provider.get_recent(limit * 2)
        except Exception as e:
            raise RetrievalError(f"Failed to retrieve recent history: {e}") from e

        text = filter_query.strip()
        if text:
            matches = self._score_all(scorer, text, records, self.config.min_similarity_threshold)
            matches.sort(key=lambda m: m.score, reverse=True)
            return matches[:limit]

        now = utc_now()
        return [
            MatchCandidate(
                record=record,
                score=1.0,
                recency_score=scorer.recency_score(record.last_visited, now),
                visit_score=scorer.visit_score(record.visit_count),
                matched_field=MatchedField.RECENT,
            )
            for record in records[:limit]
        ]

    async def get_top_visited(self, limit: int, filter_query: str = "") -> List[MatchCandidate]:
        """Most visited records, optionally fuzzy-filtered, ordered by visit count."""
        scorer = self.scorer
        snapshot = await self.cache_manager.get_snapshot()

        text = filter_query.strip()
        if text:
            matches = self._score_all(scorer, text, snapshot.records, self.config.min_similarity_threshold)
        else:
            now = utc_now()
            matches = []
            for record in snapshot.records:
                visits = scorer.visit_score(record.visit_count)
                matches.append(MatchCandidate(
                    record=record,
                    score=visits,
                    recency_score=scorer.recency_score(record.last_visited, now),
                    visit_score=visits,
                    matched_field=MatchedField.VISIT_COUNT,
                ))

        matches.sort(key=lambda m: m.record.visit_count, reverse=True)
        return matches[:limit]

    def invalidate_and_refresh(self) -> None:
        """Discard the persisted index and rebuild it in the background."""
        self.cache_manager.invalidate_and_refresh()

    def stats(self) -> CacheStats:
        return self.cache_manager.stats()
