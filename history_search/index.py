"""In-memory candidate index over a set of history records.

A ``CacheSnapshot`` is built once and never mutated; the cache manager
replaces it wholesale when the history store has moved on.
"""
import re
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from history_search.models import HistoryRecord

_NON_ALNUM = re.compile(r"[^\w]|_", re.UNICODE)
_URL_PREFIXES = ("https://", "http://", "www.")
MIN_PREFIX_LENGTH = 2

Postings = Mapping[str, Tuple[int, ...]]


def normalize_text(text: str) -> str:
    """Lowercase, drop URL scheme and www prefixes, and keep only alphanumeric words."""
    text = text.lower()
    for prefix in _URL_PREFIXES:
        if text.startswith(prefix):
            text = text[len(prefix):]
    return " ".join(_NON_ALNUM.sub(" ", text).split())


def extract_trigrams(text: str) -> List[str]:
    if len(text) < 3:
        return []
    return [text[i:i + 3] for i in range(len(text) - 2)]


def _word_prefixes(text: str) -> Set[str]:
    prefixes = set()
    for word in text.split():
        for end in range(MIN_PREFIX_LENGTH, len(word) + 1):
            prefixes.add(word[:end])
    return prefixes


def freeze_postings(postings: Dict[str, List[int]]) -> Postings:
    return MappingProxyType({key: tuple(ids) for key, ids in postings.items()})


@dataclass(frozen=True)
class CacheSnapshot:
    """Records plus trigram and word-prefix postings for cheap candidate retrieval."""
    records: Tuple[HistoryRecord, ...]
    trigrams: Postings = field(default_factory=lambda: MappingProxyType({}))
    prefixes: Postings = field(default_factory=lambda: MappingProxyType({}))
    built_at: float = 0.0  # Wall-clock as-of marker
    fingerprint: str = ""  # Store fingerprint the snapshot was built against

    @classmethod
    def empty(cls) -> "CacheSnapshot":
        return cls(records=(), built_at=time.time())

    @classmethod
    def build(
        cls,
        records: Iterable[HistoryRecord],
        built_at: Optional[float] = None,
        fingerprint: str = "",
    ) -> "CacheSnapshot":
        """Index URL and title text of every record.

        Args:
            records: Records in the order the store returned them
            built_at: As-of marker (defaults to now)
            fingerprint: Store fingerprint to persist alongside the snapshot

        Returns:
            A new immutable snapshot
        """
        records = tuple(records)
        trigrams: Dict[str, List[int]] = {}
        prefixes: Dict[str, List[int]] = {}

        for position, record in enumerate(records):
            url_text = normalize_text(record.url)
            title_text = normalize_text(record.title or "")

            for trigram in set(extract_trigrams(f"{url_text} {title_text}".strip())):
                trigrams.setdefault(trigram, []).append(position)

            for prefix in _word_prefixes(url_text) | _word_prefixes(title_text):
                prefixes.setdefault(prefix, []).append(position)

        return cls(
            records=records,
            trigrams=freeze_postings(trigrams),
            prefixes=freeze_postings(prefixes),
            built_at=time.time() if built_at is None else built_at,
            fingerprint=fingerprint,
        )

    @property
    def entry_count(self) -> int:
        return len(self.records)

    @property
    def aux_structure_size(self) -> int:
        return len(self.trigrams)

    @property
    def prefix_count(self) -> int:
        return len(self.prefixes)

    @property
    def is_empty(self) -> bool:
        return not self.records

    def _trigram_candidates(self, text: str) -> Set[int]:
        candidates: Optional[Set[int]] = None
        for trigram in extract_trigrams(text):
            ids = self.trigrams.get(trigram)
            if not ids:
                # Typos produce trigrams nobody has; skip rather than empty the set
                continue
            candidates = set(ids) if candidates is None else candidates & set(ids)
            if not candidates:
                break
        return candidates or set()

    def _prefix_candidates(self, text: str) -> Set[int]:
        candidates: Set[int] = set()
        for word in text.split():
            if len(word) >= MIN_PREFIX_LENGTH:
                candidates.update(self.prefixes.get(word, ()))
        return candidates

    def candidate_positions(self, query: str) -> List[int]:
        text = normalize_text(query)
        if not text:
            return []
        return sorted(self._trigram_candidates(text) | self._prefix_candidates(text))

    def candidates(self, query: str, limit: int = 1000) -> Sequence[HistoryRecord]:
        """Narrow the snapshot to records likely to match the query.

        Falls back to every record when the index has nothing for the query,
        so fuzzy similarity still gets a chance. At most ``limit`` records are
        returned.

        Trigram postings are intersected, so a transposed letter can leave
        only an unrelated record's trigrams: "gihtub" keeps just "tub" and may
        narrow to a youtube page while the github record is never scored.
        """
        positions = self.candidate_positions(query)
        if not positions:
            return self.records[:limit]
        return [self.records[p] for p in positions[:limit]]
