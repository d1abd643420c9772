"""SQLite history store and the read/write interfaces the engine consumes."""
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

import aiosqlite

from history_search.config import DEFAULT_DB_PATH
from history_search.models import HistoryRecord, VisitEvent, format_timestamp, parse_timestamp, utc_now


class HistoryProvider(Protocol):
    """Read access to the durable history store."""

    async def get_all(self, limit: Optional[int] = None) -> List[HistoryRecord]:
        """Return history records, most recently visited first."""
        ...

    async def get_recent(self, limit: int) -> List[HistoryRecord]:
        ...

    async def search_exact(self, pattern: str, limit: int) -> List[HistoryRecord]:
        """Return records whose URL or title contains ``pattern`` literally."""
        ...

    async def get_by_url(self, url: str) -> Optional[HistoryRecord]:
        ...


class HistorySink(Protocol):
    """Write access used by the write aggregator's flush path."""

    async def add_or_update(self, url: str, title: Optional[str] = None, visited_at: Optional[datetime] = None) -> None:
        ...

    async def add_or_update_many(self, events: Sequence[VisitEvent]) -> None:
        ...


def _escape_like(pattern: str) -> str:
    return pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class HistoryStore:
    """Async SQLite store of visited pages (one row per URL)."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize the history store.

        Args:
            db_path: Path to SQLite database. Defaults to ~/.history-search/history.db
        """
        self.db_path = db_path or DEFAULT_DB_PATH
        self._connection: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._connection.execute("""
            CREATE TABLE IF NOT EXISTS history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                url TEXT NOT NULL UNIQUE,
                title TEXT,
                visit_count INTEGER NOT NULL DEFAULT 0,
                last_visited TEXT,
                created_at TEXT NOT NULL
            )
        """)

        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_history_last_visited
            ON history(last_visited DESC)
        """)
        await self._connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_history_visit_count
            ON history(visit_count DESC)
        """)

        await self._connection.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    def _require_connection(self) -> aiosqlite.Connection:
        if not self._connection:
            raise RuntimeError("HistoryStore not initialized. Call initialize() first.")
        return self._connection

    async def get_all(self, limit: Optional[int] = None) -> List[HistoryRecord]:
        """Get history records, most recently visited first.

        Args:
            limit: Maximum records to return (None = all)

        Returns:
            List of HistoryRecord
        """
        conn = self._require_connection()
        sql = "SELECT * FROM history ORDER BY last_visited IS NULL, last_visited DESC, id DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)

        cursor = await conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def get_recent(self, limit: int) -> List[HistoryRecord]:
        """Get the most recently visited records."""
        return await self.get_all(limit=limit)

    async def search_exact(self, pattern: str, limit: int) -> List[HistoryRecord]:
        """Find records whose URL or title contains the pattern (case-insensitive).

        Args:
            pattern: Literal text; SQL wildcards are escaped
            limit: Maximum results to return

        Returns:
            Matching records, most visited first
        """
        conn = self._require_connection()
        if not pattern:
            return []

        like = f"%{_escape_like(pattern)}%"
        cursor = await conn.execute(
            """
            SELECT * FROM history
            WHERE url LIKE ? ESCAPE '\\' OR title LIKE ? ESCAPE '\\'
            ORDER BY visit_count DESC, last_visited DESC
            LIMIT ?
            """,
            (like, like, limit),
        )
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def get_by_url(self, url: str) -> Optional[HistoryRecord]:
        """Get the record for an exact URL, or None if never visited."""
        conn = self._require_connection()
        cursor = await conn.execute("SELECT * FROM history WHERE url = ?", (url,))
        row = await cursor.fetchone()

        if row is None:
            return None

        return self._row_to_record(row)

    async def _upsert(self, conn: aiosqlite.Connection, url: str, title: Optional[str], visited_at: datetime) -> None:
        visited = format_timestamp(visited_at)
        await conn.execute("""
            INSERT INTO history (url, title, visit_count, last_visited, created_at)
            VALUES (?, ?, 1, ?, ?)
            ON CONFLICT(url) DO UPDATE SET
                title = COALESCE(excluded.title, title),
                visit_count = visit_count + 1,
                last_visited = excluded.last_visited
        """, (url, title, visited, visited))

    async def add_or_update(self, url: str, title: Optional[str] = None, visited_at: Optional[datetime] = None) -> None:
        """Record one visit: insert the URL or bump its visit count.

        Args:
            url: Visited URL (unique key)
            title: Page title; a missing title keeps the stored one
            visited_at: Visit time (defaults to now)
        """
        conn = self._require_connection()
        await self._upsert(conn, url, title, visited_at or utc_now())
        await conn.commit()

    async def add_or_update_many(self, events: Sequence[VisitEvent]) -> None:
        """Record a batch of visits in arrival order within one transaction."""
        conn = self._require_connection()
        if not events:
            return

        try:
            for event in events:
                await self._upsert(conn, event.url, event.title, event.visited_at)
        except Exception:
            await conn.rollback()
            raise
        await conn.commit()

    async def delete(self, url: str) -> bool:
        """Delete the record for a URL.

        Returns:
            True if deleted, False if not found
        """
        conn = self._require_connection()
        cursor = await conn.execute("DELETE FROM history WHERE url = ?", (url,))
        await conn.commit()

        return cursor.rowcount > 0

    async def count(self) -> int:
        conn = self._require_connection()
        cursor = await conn.execute("SELECT COUNT(*) FROM history")
        row = await cursor.fetchone()
        return int(row[0])

    def _row_to_record(self, row: aiosqlite.Row) -> HistoryRecord:
        """Convert a database row to a HistoryRecord."""
        return HistoryRecord(
            id=row["id"],
            url=row["url"],
            title=row["title"],
            visit_count=row["visit_count"] or 0,
            last_visited=parse_timestamp(row["last_visited"]),
            created_at=parse_timestamp(row["created_at"]),
        )
