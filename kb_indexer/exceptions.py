"""
Error taxonomy for the indexing pipeline.

Every task-level error carries a ``retryable`` flag that the worker loop uses
to decide between requeueing a task and failing it outright.
"""
from typing import Optional


class IndexingError(Exception):
    """Base class for errors raised while indexing a knowledge source."""
    retryable: bool = True

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class FetchError(IndexingError):
    """Network or HTTP failure while fetching a URL."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


class UnsafeUrlError(FetchError):
    """The URL points at a non-public address and was never requested."""
    retryable = False


class EmptyContentError(IndexingError):
    """The fetched page had no extractable text. Content may change, so this is retried."""


class QuotaExceededError(IndexingError):
    """The tenant's knowledge base would exceed its tier limit."""
    retryable = False

    def __init__(self, delta_mb: float, current_size_mb: float, limit_mb: float, tier: str):
        super().__init__(
            f"Storage limit exceeded: {tier} tier allows {limit_mb:g}MB, "
            f"currently using {current_size_mb:.2f}MB"
        )
        self.delta_mb = delta_mb
        self.current_size_mb = current_size_mb
        self.limit_mb = limit_mb
        self.tier = tier


class EmbeddingError(IndexingError):
    """Embedding generation failed. Recovered per chunk, never fails a task."""


class DimensionMismatchError(ValueError):
    """Two vectors of different lengths were compared."""


class PersistenceError(IndexingError):
    """The job/task store could not complete an operation."""


class JobCancelledError(IndexingError):
    """Cooperative halt of a cancelled job. Not a failure."""
    retryable = False


class JobNotFoundError(LookupError):
    """No indexing job exists with the requested id."""


class InvalidJobStateError(Exception):
    """A control operation is not allowed in the job's current status."""
