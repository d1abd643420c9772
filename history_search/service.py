"""Wires the history store, cache manager, write aggregator and search engine together."""
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from history_search.cache_manager import CacheManager
from history_search.config import Config, SimilarityConfig
from history_search.history_store import HistoryStore
from history_search.models import CacheStats, SearchOptions, SearchResult
from history_search.search import HistorySearchEngine
from history_search.write_aggregator import WriteAggregator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShutdownReport:
    drained: bool  # Every queued visit reached the store
    persisted: bool  # The index snapshot was saved to disk


class HistorySearchService:
    """Owns every component of the history search engine and their lifecycle.

    Usage::

        async with HistorySearchService(config) as service:
            await service.record_visit("https://github.com", "GitHub")
            result = await service.search("githb")
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        store: Optional[HistoryStore] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """Create the service.

        Args:
            config: Configuration (defaults to values from the environment)
            store: History store to use. A store passed in is neither
                initialized nor closed by the service.
            clock: Monotonic clock for the refresh policy
        """
        self.config = config or Config.from_env()
        self._owns_store = store is None
        self.store = store if store is not None else HistoryStore(self.config.db_path)

        self.cache_manager = CacheManager(self.store, self.config.cache, self.config.refresh, clock=clock)
        self.engine = HistorySearchEngine(self.store, self.cache_manager, self.config.similarity)
        self.aggregator = WriteAggregator(
            self.store, self.config.aggregator, on_flush=self.cache_manager.record_writes
        )
        self._started = False

    async def start(self) -> None:
        """Open the store, restore or build the index, and start batching writes."""
        if self._started:
            return
        started = time.perf_counter()
        if self._owns_store:
            await self.store.initialize()
        await self.cache_manager.load()
        await self.aggregator.start()
        self._started = True
        logger.info("History search ready in %.1fms (%s)", (time.perf_counter() - started) * 1000, self.stats())

    async def record_visit(self, url: str, title: Optional[str] = None, visited_at: Optional[datetime] = None) -> None:
        await self.aggregator.record_visit(url, title, visited_at)

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> SearchResult:
        return await self.engine.search(query, options)

    def update_config(self, config: SimilarityConfig) -> None:
        self.engine.update_config(config)

    def invalidate_and_refresh(self) -> None:
        self.engine.invalidate_and_refresh()

    def stats(self) -> CacheStats:
        return self.engine.stats()

    async def shutdown(self, timeout: Optional[float] = None) -> ShutdownReport:
        """Drain pending writes, then persist the index, then close the store.

        A drain that does not finish within ``timeout`` is reported, not raised;
        persistence still runs.

        Args:
            timeout: Seconds allowed for the drain and any in-flight rebuild
                together (defaults to the configured value)

        Returns:
            ShutdownReport of both phases
        """
        if timeout is None:
            timeout = self.config.aggregator.shutdown_timeout_seconds

        deadline = time.monotonic() + timeout
        drained = await self.aggregator.shutdown(timeout)
        remaining = max(0.0, deadline - time.monotonic())
        if not await self.cache_manager.wait_for_refresh(remaining):
            logger.warning("Index rebuild still running at shutdown; persisting previous snapshot")
        persisted = await self.cache_manager.persist()

        if self._owns_store:
            await self.store.close()
        self._started = False

        report = ShutdownReport(drained=drained, persisted=persisted)
        logger.info("History search shut down: %s", report)
        return report

    async def __aenter__(self) -> "HistorySearchService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
