"""Configuration for the history search engine."""
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from history_search.errors import ConfigError


# Default state directory
DEFAULT_STATE_DIR = Path.home() / ".history-search"
DEFAULT_DB_PATH = DEFAULT_STATE_DIR / "history.db"
DEFAULT_CACHE_FILE = DEFAULT_STATE_DIR / "fuzzy_cache.bin"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        raise ConfigError(f"Invalid config: {name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        raise ConfigError(f"Invalid config: {name} must be an integer, got {raw!r}") from None


def _env_path(name: str, default: Path) -> Path:
    raw = os.environ.get(name)
    return Path(raw).expanduser() if raw else default


def _non_negative(value: float) -> bool:
    return not math.isnan(value) and value >= 0.0


@dataclass(frozen=True)
class SimilarityConfig:
    """Scoring weights and thresholds for fuzzy matching.

    Weights need not sum to 1; the combined score is not renormalized.
    """
    min_similarity_threshold: float = 0.3  # Minimum combined score for a match (0.0-1.0)
    max_results: int = 10

    url_weight: float = 0.4
    title_weight: float = 0.3
    recency_weight: float = 0.2
    visit_weight: float = 0.1

    recency_half_life_days: float = 30.0  # Decay constant for the recency score

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check every invariant.

        Raises:
            ConfigError: If any field is out of range
        """
        problems: List[str] = []

        threshold = self.min_similarity_threshold
        if math.isnan(threshold) or not 0.0 <= threshold <= 1.0:
            problems.append(f"min_similarity_threshold must be in [0, 1], got {threshold}")
        if isinstance(self.max_results, bool) or not isinstance(self.max_results, int) or self.max_results <= 0:
            problems.append(f"max_results must be a positive integer, got {self.max_results}")
        for name in ("url_weight", "title_weight", "recency_weight", "visit_weight"):
            value = getattr(self, name)
            if not _non_negative(value):
                problems.append(f"{name} must be >= 0, got {value}")
        half_life = self.recency_half_life_days
        if math.isnan(half_life) or half_life <= 0:
            problems.append(f"recency_half_life_days must be > 0, got {half_life}")

        if problems:
            raise ConfigError("Invalid similarity config: " + "; ".join(problems))

    @classmethod
    def from_env(cls) -> "SimilarityConfig":
        """Create config from environment variables."""
        return cls(
            min_similarity_threshold=_env_float("HISTORY_SEARCH_THRESHOLD", 0.3),
            max_results=_env_int("HISTORY_SEARCH_MAX_RESULTS", 10),
            url_weight=_env_float("HISTORY_SEARCH_URL_WEIGHT", 0.4),
            title_weight=_env_float("HISTORY_SEARCH_TITLE_WEIGHT", 0.3),
            recency_weight=_env_float("HISTORY_SEARCH_RECENCY_WEIGHT", 0.2),
            visit_weight=_env_float("HISTORY_SEARCH_VISIT_WEIGHT", 0.1),
            recency_half_life_days=_env_float("HISTORY_SEARCH_HALF_LIFE_DAYS", 30.0),
        )


@dataclass
class CacheConfig:
    """Configuration for the candidate index and its on-disk snapshot."""
    cache_file: Optional[Path] = None  # None = use default
    max_entries: int = 10000  # Records loaded into the index
    max_candidates: int = 1000  # Records scored per query
    snapshot_max_age_seconds: float = 86400.0  # Persisted snapshots older than this are rebuilt
    fingerprint_sample: int = 20  # Recent records hashed to detect store changes
    persist_on_rebuild: bool = True  # Save the snapshot after each background rebuild

    def __post_init__(self) -> None:
        if self.max_entries <= 0:
            raise ConfigError(f"Invalid cache config: max_entries must be > 0, got {self.max_entries}")
        if self.max_candidates <= 0:
            raise ConfigError(f"Invalid cache config: max_candidates must be > 0, got {self.max_candidates}")
        if self.fingerprint_sample <= 0:
            raise ConfigError(f"Invalid cache config: fingerprint_sample must be > 0, got {self.fingerprint_sample}")

    @property
    def snapshot_path(self) -> Path:
        return self.cache_file or DEFAULT_CACHE_FILE

    @classmethod
    def from_env(cls) -> "CacheConfig":
        """Create config from environment variables."""
        return cls(
            cache_file=_env_path("HISTORY_SEARCH_CACHE_FILE", DEFAULT_CACHE_FILE),
            max_entries=_env_int("HISTORY_SEARCH_MAX_ENTRIES", 10000),
            max_candidates=_env_int("HISTORY_SEARCH_MAX_CANDIDATES", 1000),
            snapshot_max_age_seconds=_env_float("HISTORY_SEARCH_SNAPSHOT_MAX_AGE", 86400.0),
        )


@dataclass
class RefreshConfig:
    """Smart refresh policy: both conditions must hold before a rebuild."""
    write_threshold: int = 10  # New writes since the last rebuild
    min_interval_seconds: float = 300.0  # Time since the last rebuild

    def __post_init__(self) -> None:
        if self.write_threshold <= 0:
            raise ConfigError(f"Invalid refresh config: write_threshold must be > 0, got {self.write_threshold}")
        if self.min_interval_seconds < 0:
            raise ConfigError(
                f"Invalid refresh config: min_interval_seconds must be >= 0, got {self.min_interval_seconds}"
            )

    @classmethod
    def from_env(cls) -> "RefreshConfig":
        """Create config from environment variables."""
        return cls(
            write_threshold=_env_int("HISTORY_SEARCH_REFRESH_WRITES", 10),
            min_interval_seconds=_env_float("HISTORY_SEARCH_REFRESH_INTERVAL", 300.0),
        )


@dataclass
class AggregatorConfig:
    """Configuration for batching visit writes."""
    max_queue_size: int = 1000
    batch_size: int = 50  # Flush as soon as this many events are queued
    flush_interval_seconds: float = 5.0  # ...or on this tick, whichever comes first
    shutdown_timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.max_queue_size <= 0:
            raise ConfigError(f"Invalid aggregator config: max_queue_size must be > 0, got {self.max_queue_size}")
        if self.batch_size <= 0:
            raise ConfigError(f"Invalid aggregator config: batch_size must be > 0, got {self.batch_size}")
        if self.flush_interval_seconds <= 0:
            raise ConfigError(
                f"Invalid aggregator config: flush_interval_seconds must be > 0, got {self.flush_interval_seconds}"
            )
        if self.shutdown_timeout_seconds <= 0:
            raise ConfigError(
                "Invalid aggregator config: shutdown_timeout_seconds must be > 0, "
                f"got {self.shutdown_timeout_seconds}"
            )

    @classmethod
    def from_env(cls) -> "AggregatorConfig":
        """Create config from environment variables."""
        return cls(
            max_queue_size=_env_int("HISTORY_SEARCH_QUEUE_SIZE", 1000),
            batch_size=_env_int("HISTORY_SEARCH_BATCH_SIZE", 50),
            flush_interval_seconds=_env_float("HISTORY_SEARCH_FLUSH_INTERVAL", 5.0),
            shutdown_timeout_seconds=_env_float("HISTORY_SEARCH_SHUTDOWN_TIMEOUT", 10.0),
        )


@dataclass
class Config:
    """Main configuration for the history search engine."""
    similarity: SimilarityConfig = field(default_factory=SimilarityConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    history_db_path: Optional[Path] = None  # None = use default

    @property
    def db_path(self) -> Path:
        return self.history_db_path or DEFAULT_DB_PATH

    @classmethod
    def from_env(cls) -> "Config":
        """Create config from environment variables.

        Raises:
            ConfigError: If a variable is malformed or out of range
        """
        return cls(
            similarity=SimilarityConfig.from_env(),
            cache=CacheConfig.from_env(),
            refresh=RefreshConfig.from_env(),
            aggregator=AggregatorConfig.from_env(),
            history_db_path=_env_path("HISTORY_SEARCH_DB", DEFAULT_DB_PATH),
        )
