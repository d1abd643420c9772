"""Shared fixtures for tests."""
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from history_search.config import CacheConfig, RefreshConfig
from history_search.models import HistoryRecord, VisitEvent, utc_now


NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def make_record(id, url, title=None, visit_count=0, days_ago=None, now=None):
    last_visited = None
    if days_ago is not None:
        last_visited = (now or utc_now()) - timedelta(days=days_ago)
    return HistoryRecord(id=id, url=url, title=title, visit_count=visit_count, last_visited=last_visited)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHistory:
    """In-memory HistoryProvider and HistorySink."""

    def __init__(self, records: Optional[List[HistoryRecord]] = None):
        self.records: List[HistoryRecord] = list(records or [])
        self.fail_reads = False
        self.fail_exact = False
        self.fail_writes = False
        self.get_all_calls = 0
        self.batches: List[List[VisitEvent]] = []
        self.direct_writes: List[str] = []

    def _sorted(self) -> List[HistoryRecord]:
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        by_id = sorted(self.records, key=lambda r: r.id, reverse=True)
        return sorted(by_id, key=lambda r: (r.last_visited is not None, r.last_visited or epoch), reverse=True)

    async def get_all(self, limit=None):
        self.get_all_calls += 1
        if self.fail_reads:
            raise ConnectionError("store offline")
        records = self._sorted()
        return records if limit is None else records[:limit]

    async def get_recent(self, limit):
        if self.fail_reads:
            raise ConnectionError("store offline")
        return self._sorted()[:limit]

    async def search_exact(self, pattern, limit):
        if self.fail_exact:
            raise ConnectionError("store offline")
        pattern = pattern.lower()
        hits = [
            r for r in self.records
            if pattern in r.url.lower() or (r.title and pattern in r.title.lower())
        ]
        hits.sort(key=lambda r: r.visit_count, reverse=True)
        return hits[:limit]

    async def get_by_url(self, url):
        for record in self.records:
            if record.url == url:
                return record
        return None

    def _apply(self, url, title, visited_at):
        for i, record in enumerate(self.records):
            if record.url == url:
                self.records[i] = HistoryRecord(
                    id=record.id,
                    url=url,
                    title=title or record.title,
                    visit_count=record.visit_count + 1,
                    last_visited=visited_at,
                )
                return
        next_id = max((r.id for r in self.records), default=0) + 1
        self.records.append(HistoryRecord(id=next_id, url=url, title=title, visit_count=1, last_visited=visited_at))

    async def add_or_update(self, url, title=None, visited_at=None):
        if self.fail_writes:
            raise ConnectionError("store offline")
        self.direct_writes.append(url)
        self._apply(url, title, visited_at or utc_now())

    async def add_or_update_many(self, events):
        if self.fail_writes:
            raise ConnectionError("store offline")
        self.batches.append(list(events))
        for event in events:
            self._apply(event.url, event.title, event.visited_at)


@pytest.fixture
def sample_records():
    """GitHub and Go records used by the search scenarios."""
    return [
        make_record(1, "https://github.com", "GitHub", visit_count=50, days_ago=1),
        make_record(2, "https://golang.org", "The Go Programming Language", visit_count=10, days_ago=5),
    ]


@pytest.fixture
def fake_history(sample_records):
    return FakeHistory(sample_records)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def cache_path(tmp_path):
    """Return path for a temporary snapshot file."""
    return tmp_path / "fuzzy_cache.bin"


@pytest.fixture
def cache_config(cache_path):
    return CacheConfig(cache_file=cache_path, persist_on_rebuild=False)


@pytest.fixture
def refresh_config():
    return RefreshConfig(write_threshold=10, min_interval_seconds=300.0)


@pytest.fixture
def history_db_path(tmp_path):
    """Return path for a temporary history database."""
    return tmp_path / "test_history.db"
