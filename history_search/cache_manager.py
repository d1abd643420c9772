"""Lifecycle of the candidate index: build, serve, refresh, persist."""
import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from history_search.config import CacheConfig, RefreshConfig
from history_search.errors import PersistenceError, RetrievalError
from history_search.history_store import HistoryProvider
from history_search.index import CacheSnapshot
from history_search.models import CacheState, CacheStats, HistoryRecord, format_timestamp
from history_search.snapshot_io import is_valid_snapshot_file, load_snapshot, read_header, save_snapshot

logger = logging.getLogger(__name__)


@dataclass
class RefreshState:
    """Write pressure and age of the current snapshot."""
    writes_since_rebuild: int = 0
    last_rebuild: float = 0.0  # Manager clock, not wall time

    def reset(self, now: float, consumed: int) -> None:
        """Mark a rebuild that covered the first ``consumed`` counted writes.

        Writes counted after the rebuild read the store stay pending.
        """
        self.writes_since_rebuild = max(0, self.writes_since_rebuild - consumed)
        self.last_rebuild = now


def compute_fingerprint(records: Sequence[HistoryRecord]) -> str:
    """Hash the most recent records so a persisted snapshot can be checked against the store.

    Args:
        records: Most recently visited records, newest first

    Returns:
        16-character hex digest
    """
    hasher = hashlib.sha256()
    for record in records:
        hasher.update(record.url.encode())
        hasher.update(b"\0%d\0" % record.visit_count)
        hasher.update((format_timestamp(record.last_visited) or "").encode())
        hasher.update(b"\n")
    return hasher.hexdigest()[:16]


class CacheManager:
    """Owns the current CacheSnapshot and decides when to replace it.

    Searches read ``current_snapshot()`` / ``get_snapshot()`` and never wait
    on a background rebuild. A rebuild is scheduled only when both the write
    threshold and the minimum interval of the RefreshConfig are met, and at
    most one rebuild runs at a time. A failed rebuild keeps the previous
    snapshot.
    """

    def __init__(
        self,
        provider: HistoryProvider,
        config: Optional[CacheConfig] = None,
        refresh: Optional[RefreshConfig] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.provider = provider
        self.config = config or CacheConfig()
        self.refresh_config = refresh or RefreshConfig()
        self._clock = clock or time.monotonic

        self._snapshot: Optional[CacheSnapshot] = None
        self._state = CacheState.EMPTY
        self._refresh_state = RefreshState(last_rebuild=self._clock())
        self._build_lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> CacheState:
        return self._state

    @property
    def refresh_state(self) -> RefreshState:
        return RefreshState(self._refresh_state.writes_since_rebuild, self._refresh_state.last_rebuild)

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def current_snapshot(self) -> Optional[CacheSnapshot]:
        """Latest built snapshot, or None before the first build. Never blocks."""
        return self._snapshot

    async def get_snapshot(self) -> CacheSnapshot:
        """Return the latest snapshot, building it first if none exists.

        Concurrent first callers wait on the same build.

        Raises:
            RetrievalError: If no snapshot exists and the store cannot be read
        """
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot

        async with self._build_lock:
            if self._snapshot is not None:
                return self._snapshot
            return await self._locked_build()

    async def build(self) -> CacheSnapshot:
        """Rebuild from the store now and wait for the result.

        Raises:
            RetrievalError: If the store cannot be read
        """
        async with self._build_lock:
            return await self._locked_build()

    async def load(self) -> CacheSnapshot:
        """Startup: restore the persisted snapshot if it is still valid, else build.

        Raises:
            RetrievalError: If nothing could be restored and the store cannot be read
        """
        async with self._build_lock:
            started = time.perf_counter()
            consumed = self._refresh_state.writes_since_rebuild
            restored = await self._restore()
            if restored is not None:
                self._swap(restored, consumed)
                logger.info(
                    "Restored history index with %d entries in %.1fms",
                    restored.entry_count, (time.perf_counter() - started) * 1000,
                )
                return restored
            return await self._locked_build()

    async def _locked_build(self) -> CacheSnapshot:
        previous_state = self._state
        self._state = CacheState.REFRESHING if self._snapshot is not None else CacheState.BUILDING
        try:
            return await self._rebuild()
        except Exception:
            self._state = previous_state if self._snapshot is not None else CacheState.EMPTY
            raise

    async def _fetch_records(self) -> Tuple[List[HistoryRecord], str]:
        try:
            records = await self.provider.get_all(limit=self.config.max_entries)
        except Exception as e:
            raise RetrievalError(f"Failed to load history: {e}") from e
        return records, compute_fingerprint(records[:self.config.fingerprint_sample])

    async def _rebuild(self) -> CacheSnapshot:
        started = time.perf_counter()
        consumed = self._refresh_state.writes_since_rebuild
        records, fingerprint = await self._fetch_records()
        snapshot = await asyncio.to_thread(CacheSnapshot.build, records, None, fingerprint)
        self._swap(snapshot, consumed)
        logger.info(
            "Built history index in %.1fms with %d entries and %d trigrams",
            (time.perf_counter() - started) * 1000, snapshot.entry_count, snapshot.aux_structure_size,
        )
        return snapshot

    def _swap(self, snapshot: CacheSnapshot, consumed: int) -> None:
        self._snapshot = snapshot
        self._state = CacheState.READY
        self._refresh_state.reset(self._clock(), consumed)

    async def _restore(self) -> Optional[CacheSnapshot]:
        path = self.config.snapshot_path
        if not path.exists():
            return None

        if not is_valid_snapshot_file(path):
            logger.info("Ignoring invalid snapshot file %s", path)
            return None

        try:
            header = read_header(path)
        except PersistenceError as e:
            logger.info("Ignoring unreadable snapshot: %s", e)
            return None

        if header.entry_count > self.config.max_entries:
            logger.info("Ignoring snapshot with %d entries (max %d)", header.entry_count, self.config.max_entries)
            return None

        age = time.time() - header.built_at
        if age > self.config.snapshot_max_age_seconds:
            logger.info("Ignoring snapshot built %.0fs ago", age)
            return None

        try:
            recent = await self.provider.get_recent(self.config.fingerprint_sample)
        except Exception:
            # Without the store a persisted snapshot is the best we have
            logger.warning("History store unavailable; restoring snapshot without freshness check", exc_info=True)
        else:
            if compute_fingerprint(recent) != header.fingerprint:
                logger.info("History changed since snapshot was saved; rebuilding")
                return None

        try:
            return await asyncio.to_thread(load_snapshot, path)
        except PersistenceError as e:
            logger.warning("Failed to load snapshot, rebuilding: %s", e)
            return None

    def should_refresh(self, now: Optional[float] = None) -> bool:
        """Both enough new writes and enough elapsed time since the last rebuild."""
        if now is None:
            now = self._clock()
        state = self._refresh_state
        return (
            state.writes_since_rebuild >= self.refresh_config.write_threshold
            and now - state.last_rebuild >= self.refresh_config.min_interval_seconds
        )

    def record_writes(self, count: int) -> Optional[asyncio.Task]:
        """Count flushed history writes, then check the refresh policy.

        Called with 0 on idle ticks so time alone can complete the policy.
        """
        if count > 0:
            self._refresh_state.writes_since_rebuild += count
        return self.maybe_refresh()

    def maybe_refresh(self) -> Optional[asyncio.Task]:
        """Schedule a background rebuild if the policy holds and none is running."""
        if self.is_refreshing or not self.should_refresh():
            return None
        logger.debug(
            "Refresh policy met (%d writes); scheduling rebuild", self._refresh_state.writes_since_rebuild
        )
        return self._schedule_refresh()

    def invalidate_and_refresh(self) -> Optional[asyncio.Task]:
        """Drop the persisted snapshot and rebuild in the background regardless of policy.

        The current snapshot keeps serving until the rebuild completes.
        Returns None if a rebuild is already running.
        """
        path = self.config.snapshot_path
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to remove snapshot file %s: %s", path, e)

        if self.is_refreshing:
            return None
        return self._schedule_refresh()

    def _schedule_refresh(self) -> asyncio.Task:
        self._refresh_task = asyncio.get_running_loop().create_task(self._background_refresh())
        return self._refresh_task

    async def _background_refresh(self) -> None:
        async with self._build_lock:
            try:
                await self._locked_build()
            except Exception:
                logger.warning("Background rebuild failed; serving previous snapshot", exc_info=True)
                self._refresh_state.last_rebuild = self._clock()
                return

        if self.config.persist_on_rebuild:
            await self.persist()

    async def wait_for_refresh(self, timeout: Optional[float] = None) -> bool:
        """Wait for an in-flight background rebuild, if any.

        Returns:
            False if the rebuild was still running when the timeout expired
        """
        task = self._refresh_task
        if task is None or task.done():
            return True
        done, _ = await asyncio.wait([task], timeout=timeout)
        return bool(done)

    async def persist(self) -> bool:
        """Best-effort save of the current snapshot. Never raises.

        Returns:
            True if the snapshot was written
        """
        snapshot = self._snapshot
        if snapshot is None:
            return False

        path = self.config.snapshot_path
        try:
            size = await asyncio.to_thread(save_snapshot, snapshot, path)
        except PersistenceError as e:
            logger.warning("Failed to persist history index: %s", e)
            return False

        logger.info("Persisted history index (%d entries, %d bytes) to %s", snapshot.entry_count, size, path)
        return True

    def stats(self) -> CacheStats:
        snapshot = self._snapshot
        try:
            file_size: Optional[int] = self.config.snapshot_path.stat().st_size
        except OSError:
            file_size = None

        return CacheStats(
            entry_count=snapshot.entry_count if snapshot else 0,
            aux_structure_size=snapshot.aux_structure_size if snapshot else 0,
            prefix_count=snapshot.prefix_count if snapshot else 0,
            built_at=snapshot.built_at if snapshot else None,
            file_size=file_size,
            state=self._state,
            writes_since_rebuild=self._refresh_state.writes_since_rebuild,
        )
