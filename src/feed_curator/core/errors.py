"""Error taxonomy for the ingestion and curation pipeline."""

from typing import Optional


class FeedCuratorError(Exception):
    """Base class for all pipeline errors."""


class TransientError(FeedCuratorError):
    """Failure worth retrying: network error, timeout, 429 or 5xx."""

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class SourceError(FeedCuratorError):
    """Content source rejected a request or returned an unusable payload."""


class TransientSourceError(SourceError, TransientError):
    """Transient failure talking to the content source."""


class FetchError(FeedCuratorError):
    """A page could not be fetched after all retry attempts."""

    def __init__(self, message: str, calls_consumed: int = 0) -> None:
        super().__init__(message)
        self.calls_consumed = calls_consumed


class QuotaExhausted(FeedCuratorError):
    """No budget slot was granted for an external call.

    Raised only inside the fetch attempt loop; the fetcher turns it into a
    ``budget_exhausted`` result, so callers never see it.
    """


class OracleError(FeedCuratorError):
    """Scoring oracle failed or returned an unparseable judgment."""


class TransientOracleError(OracleError, TransientError):
    """Transient failure talking to the scoring oracle."""


class PersistenceError(FeedCuratorError):
    """The durable store failed to read or write."""


class SyncConflictError(FeedCuratorError):
    """Another run already holds the job."""


class MalformedItemError(FeedCuratorError):
    """A raw record is missing required fields."""
