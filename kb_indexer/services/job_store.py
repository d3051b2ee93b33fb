"""
Contract of the durable job/task store the worker loop drives.

Two implementations exist: ``InMemoryJobStore`` for single-process runs and
tests, and ``RedisJobStore`` for deployments. Both apply status timestamps the
same way through ``apply_job_status`` and ``apply_task_status``.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from kb_indexer.models.document import KnowledgeChunk, UrlCrawlMetadata
from kb_indexer.models.job import IndexingJob, IndexingTask, TaskSpec, ChatbotIndexingState
from kb_indexer.models.tenant import QuotaDecision


def apply_job_status(job: IndexingJob, status: str, error: Optional[str] = None) -> IndexingJob:
    now = datetime.utcnow()
    job.status = status
    if status == "processing" and job.started_at is None:
        job.started_at = now
    elif status in ("completed", "failed", "partial"):
        job.completed_at = now
    elif status == "cancelled":
        job.cancelled_at = now
    if error is not None:
        job.error_message = error
    job.last_heartbeat = now
    return job


def apply_task_status(
    task: IndexingTask,
    status: str,
    error: Optional[str] = None,
    chunks_created: Optional[int] = None,
) -> IndexingTask:
    now = datetime.utcnow()
    task.status = status
    if status == "processing":
        task.started_at = now
    elif status == "completed":
        task.completed_at = now
        task.error_message = None
    elif status == "failed":
        task.completed_at = now
    elif status == "cancelled":
        task.cancelled_at = now
    if error is not None:
        task.error_message = error
    if chunks_created is not None:
        task.chunks_created = chunks_created
    return task


class JobStore(ABC):
    """
    Persistence for indexing jobs, their tasks, produced knowledge chunks,
    crawl fingerprints and per-tenant knowledge base size.

    Status-changing methods named ``transition_*`` (and ``claim_*``) are
    compare-and-swap operations: they only apply when the record's current
    status is one of ``from_statuses`` and report whether they did.
    """

    # --- Jobs ---

    @abstractmethod
    def create_job(self, chatbot_id: str, tasks: Iterable[TaskSpec], retry_of_job_id: Optional[str] = None) -> IndexingJob:
        pass

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[IndexingJob]:
        pass

    @abstractmethod
    def update_job_status(self, job_id: str, status: str, error: Optional[str] = None) -> IndexingJob:
        pass

    @abstractmethod
    def transition_job(self, job_id: str, from_statuses: Iterable[str], to_status: str, error: Optional[str] = None) -> bool:
        pass

    def claim_job(self, job_id: str) -> bool:
        """Moves a job from pending to processing. False if another worker got there first."""
        return self.transition_job(job_id, ["pending"], "processing")

    @abstractmethod
    def update_job_progress(self, job_id: str, completed: int, failed: int, cancelled: int) -> None:
        pass

    @abstractmethod
    def touch_job(self, job_id: str) -> None:
        pass

    @abstractmethod
    def list_pending_jobs(self, limit: int) -> List[IndexingJob]:
        """Oldest pending jobs first."""

    @abstractmethod
    def list_jobs_by_status(self, status: str) -> List[IndexingJob]:
        pass

    # --- Tasks ---

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[IndexingTask]:
        pass

    @abstractmethod
    def get_tasks_for_job(self, job_id: str) -> List[IndexingTask]:
        """Tasks in creation order."""

    @abstractmethod
    def update_task_status(
        self,
        task_id: str,
        status: str,
        error: Optional[str] = None,
        chunks_created: Optional[int] = None,
    ) -> IndexingTask:
        pass

    @abstractmethod
    def transition_task(
        self,
        task_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        error: Optional[str] = None,
        chunks_created: Optional[int] = None,
    ) -> bool:
        pass

    def claim_task(self, task_id: str) -> bool:
        """Moves a task from pending to processing. False if it was cancelled or claimed meanwhile."""
        return self.transition_task(task_id, ["pending"], "processing")

    def cancel_pending_tasks(self, job_id: str) -> int:
        """Cancels every task of the job that has not started. Returns how many were cancelled."""
        cancelled = 0
        for task in self.get_tasks_for_job(job_id):
            if task.status == "pending" and self.transition_task(task.task_id, ["pending"], "cancelled"):
                cancelled += 1
        return cancelled

    @abstractmethod
    def increment_task_retry_count(self, task_id: str) -> int:
        pass

    # --- Knowledge chunks ---

    @abstractmethod
    def create_knowledge_chunks(self, chunks: List[KnowledgeChunk]) -> None:
        pass

    @abstractmethod
    def get_knowledge_chunks(self, chatbot_id: str) -> List[KnowledgeChunk]:
        pass

    # --- Quota ---

    @abstractmethod
    def atomic_check_and_update_knowledge_base_size(self, tenant_id: str, delta_mb: float, limit_mb: float) -> QuotaDecision:
        """
        Adds ``delta_mb`` to the tenant's size only if the result stays within
        ``limit_mb``. ``current_size_mb`` is the size after the update when
        approved, and the unchanged size when rejected. A negative delta releases
        a reservation; it is always applied and the size never drops below zero.
        """

    @abstractmethod
    def get_knowledge_base_size(self, tenant_id: str) -> float:
        pass

    # --- Change detection ---

    @abstractmethod
    def upsert_crawl_metadata(self, record: UrlCrawlMetadata) -> None:
        pass

    @abstractmethod
    def get_crawl_metadata(self, chatbot_id: str, url: str) -> Optional[UrlCrawlMetadata]:
        pass

    # --- Chatbot mirror ---

    @abstractmethod
    def update_chatbot_indexing_status(self, chatbot_id: str, status: str, job_id: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def get_chatbot_indexing_status(self, chatbot_id: str) -> Optional[ChatbotIndexingState]:
        pass
