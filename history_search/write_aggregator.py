"""Batches visit events into few history store writes."""
import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from history_search.config import AggregatorConfig
from history_search.errors import QueueOverflowError
from history_search.history_store import HistorySink
from history_search.models import VisitEvent, utc_now

logger = logging.getLogger(__name__)

FlushCallback = Callable[[int], object]


class WriteAggregator:
    """Queues visit events and flushes them to a HistorySink in batches.

    A batch is flushed when ``batch_size`` events are collected or the flush
    interval elapses, whichever comes first. Every flush, including an idle
    tick with nothing to write, reports its count to ``on_flush``. When the
    queue is full the event is written directly instead of being dropped.
    """

    def __init__(
        self,
        sink: HistorySink,
        config: Optional[AggregatorConfig] = None,
        on_flush: Optional[FlushCallback] = None,
    ):
        self.sink = sink
        self.config = config or AggregatorConfig()
        self.on_flush = on_flush

        self._queue: "asyncio.Queue[VisitEvent]" = asyncio.Queue(maxsize=self.config.max_queue_size)
        self._batch: List[VisitEvent] = []  # Taken off the queue, not yet written
        self._flush_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._idle = False

        self.overflow_writes = 0
        self.flushed_writes = 0

    @property
    def pending(self) -> int:
        return self._queue.qsize() + len(self._batch)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background flush loop."""
        if self._closing:
            raise RuntimeError("WriteAggregator has been shut down")
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def record_visit(self, url: str, title: Optional[str] = None, visited_at: Optional[datetime] = None) -> None:
        """Queue a visit without waiting for the store.

        Args:
            url: Visited URL
            title: Page title, if known
            visited_at: Visit time (defaults to now)

        Raises:
            RuntimeError: If shutdown has begun
        """
        if self._closing:
            raise RuntimeError("WriteAggregator is shutting down; visit not recorded")

        event = VisitEvent(url=url, title=title, visited_at=visited_at or utc_now())
        try:
            self._enqueue(event)
        except QueueOverflowError as e:
            self.overflow_writes += 1
            logger.warning("%s; writing visit to %s directly", e, url)
            await self.sink.add_or_update(event.url, event.title, event.visited_at)
            self._report(1)

    def _enqueue(self, event: VisitEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            raise QueueOverflowError(f"Write queue full ({self.config.max_queue_size} events)") from None

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._closing:
            deadline = loop.time() + self.config.flush_interval_seconds
            collected = 0
            while collected < self.config.batch_size:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                self._idle = True
                try:
                    event = await asyncio.wait_for(self._queue.get(), remaining)
                except asyncio.TimeoutError:
                    break
                finally:
                    self._idle = False
                self._batch.append(event)
                collected += 1
            await self._flush_batch()

    def _drain_queue(self) -> None:
        while True:
            try:
                self._batch.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return

    async def flush(self) -> int:
        """Write everything queued so far.

        Returns:
            Number of events written (0 if the write failed)
        """
        self._drain_queue()
        return await self._flush_batch()

    async def _flush_batch(self) -> int:
        async with self._flush_lock:
            batch, self._batch = self._batch, []
            if batch:
                try:
                    await self.sink.add_or_update_many(batch)
                except asyncio.CancelledError:
                    self._retain(batch)
                    raise
                except Exception:
                    logger.error("Failed to flush %d visits; retrying on next flush", len(batch), exc_info=True)
                    self._retain(batch)
                    return 0
                self.flushed_writes += len(batch)
                logger.debug("Flushed %d visits", len(batch))

            self._report(len(batch))
            return len(batch)

    def _retain(self, batch: List[VisitEvent]) -> None:
        retained = batch + self._batch
        overflow = len(retained) - self.config.max_queue_size
        if overflow > 0:
            logger.warning("Dropping %d oldest unflushed visits", overflow)
            retained = retained[overflow:]
        self._batch = retained

    def _report(self, count: int) -> None:
        if self.on_flush is None:
            return
        try:
            self.on_flush(count)
        except Exception:
            # The flush loop must survive a failing listener
            logger.exception("on_flush callback failed")

    async def shutdown(self, timeout: Optional[float] = None) -> bool:
        """Stop accepting visits and write out everything still queued.

        Args:
            timeout: Seconds to wait for the drain (defaults to the configured value)

        Returns:
            True if every queued visit was written within the timeout
        """
        if timeout is None:
            timeout = self.config.shutdown_timeout_seconds
        self._closing = True

        try:
            drained = await asyncio.wait_for(self._drain(), timeout)
        except asyncio.TimeoutError:
            logger.error("Write aggregator drain timed out after %.1fs; %d visits not written", timeout, self.pending)
            if self._task is not None:
                self._task.cancel()
            return False

        if not drained:
            logger.error("Write aggregator shut down with %d visits not written", self.pending)
        return drained

    async def _drain(self) -> bool:
        task = self._task
        if task is not None:
            if self._idle:
                task.cancel()
            # Lets an in-progress flush finish; the loop exits once it sees _closing
            await asyncio.wait([task])
            self._task = None

        await self.flush()
        return self.pending == 0
