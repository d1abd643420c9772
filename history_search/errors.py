"""Error taxonomy for the history search engine."""


class HistorySearchError(Exception):
    """Base class for all history search errors."""


class ConfigError(HistorySearchError, ValueError):
    """Invalid configuration. Raised at configuration time, never clamped."""


class RetrievalError(HistorySearchError):
    """The durable history store could not be read."""


class PersistenceError(HistorySearchError):
    """A snapshot could not be saved to or loaded from disk."""


class QueueOverflowError(HistorySearchError):
    """The write queue is full.

    Only used internally by the write aggregator to switch to a direct
    write; it is never raised to the caller of ``record_visit``.
    """
