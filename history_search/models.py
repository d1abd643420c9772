"""Data model shared by the scorer, index, cache and orchestrator."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Render as UTC ISO-8601 so stored strings sort chronologically."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc).isoformat()
    return value.astimezone(timezone.utc).isoformat()


@dataclass(frozen=True)
class HistoryRecord:
    """Read-only copy of one visited page, owned by the durable store."""
    id: int
    url: str
    title: Optional[str] = None
    visit_count: int = 0
    last_visited: Optional[datetime] = None  # None = no visit time recorded
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "visit_count": self.visit_count,
            "last_visited": format_timestamp(self.last_visited),
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "HistoryRecord":
        return cls(
            id=int(data["id"]),
            url=str(data["url"]),
            title=data.get("title"),
            visit_count=int(data.get("visit_count") or 0),
            last_visited=parse_timestamp(data.get("last_visited")),
            created_at=parse_timestamp(data.get("created_at")),
        )


class MatchedField(str, Enum):
    """Which field of a record produced the match."""
    URL = "url"
    TITLE = "title"
    BOTH = "both"
    EXACT = "exact"
    RECENT = "recent"
    VISIT_COUNT = "visit_count"


@dataclass(frozen=True)
class MatchCandidate:
    """A scored record, produced fresh for every query."""
    record: HistoryRecord
    score: float
    url_score: float = 0.0
    title_score: float = 0.0
    recency_score: float = 0.0
    visit_score: float = 0.0
    matched_field: MatchedField = MatchedField.TITLE

    @property
    def url(self) -> str:
        return self.record.url


@dataclass(frozen=True)
class VisitEvent:
    """A page visit waiting to be written to the history store."""
    url: str
    title: Optional[str] = None
    visited_at: datetime = field(default_factory=utc_now)


@dataclass
class SearchOptions:
    """Per-call overrides. ``None`` falls back to the SimilarityConfig."""
    limit: Optional[int] = None
    threshold: Optional[float] = None
    include_exact: bool = True
    include_fuzzy: bool = True


@dataclass
class SearchResult:
    query: str
    total_entries: int = 0
    match_count: int = 0
    matches: List[MatchCandidate] = field(default_factory=list)
    exact_matches: List[MatchCandidate] = field(default_factory=list)
    fuzzy_matches: List[MatchCandidate] = field(default_factory=list)
    elapsed: float = 0.0  # Seconds


class CacheState(str, Enum):
    EMPTY = "empty"
    BUILDING = "building"
    READY = "ready"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class CacheStats:
    entry_count: int
    aux_structure_size: int  # Distinct trigrams in the index
    prefix_count: int
    built_at: Optional[float]
    file_size: Optional[int]
    state: CacheState
    writes_since_rebuild: int

    def __str__(self) -> str:
        return (
            f"Entries: {self.entry_count}, Trigrams: {self.aux_structure_size}, "
            f"File: {self.file_size or 0} bytes, State: {self.state.value}"
        )
