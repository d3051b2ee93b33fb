import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from redlock import Redlock

logger = logging.getLogger(__name__)

class JobLease(ABC):
    """Short-lived exclusive right to process one job across worker processes."""

    @abstractmethod
    def acquire(self, job_id: str) -> Optional[Any]:
        """Returns a lease token, or None if another worker holds the job."""

    @abstractmethod
    def release(self, token: Any) -> None:
        pass


class NullJobLease(JobLease):
    """Always grants. Enough for a single worker process, where the store's claim CAS suffices."""

    def acquire(self, job_id: str) -> Optional[Any]:
        return job_id

    def release(self, token: Any) -> None:
        return None


class RedlockJobLease(JobLease):
    def __init__(self, redis_clients: List[Any], ttl_ms: int):
        self.ttl_ms = ttl_ms
        self._redlock = Redlock(redis_clients)

    def _resource(self, job_id: str) -> str:
        return f"indexing_job_lock:{job_id}"

    def acquire(self, job_id: str) -> Optional[Any]:
        lock = self._redlock.lock(self._resource(job_id), self.ttl_ms)
        if not lock:
            logger.info(f"Job {job_id}: lease held by another worker, skipping.")
            return None
        return lock

    def release(self, token: Any) -> None:
        try:
            self._redlock.unlock(token)
        except Exception as e:
            # The lease expires on its own after ttl_ms.
            logger.warning(f"Failed to release job lease {getattr(token, 'resource', token)}: {e}")
