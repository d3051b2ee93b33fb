import uuid
import logging
from collections import defaultdict
from datetime import datetime
from threading import RLock
from typing import Dict, Iterable, List, Optional, Tuple

from kb_indexer.exceptions import JobNotFoundError
from kb_indexer.models.document import KnowledgeChunk, UrlCrawlMetadata
from kb_indexer.models.job import IndexingJob, IndexingTask, TaskSpec, ChatbotIndexingState
from kb_indexer.models.tenant import QuotaDecision
from kb_indexer.services.job_store import JobStore, apply_job_status, apply_task_status

logger = logging.getLogger(__name__)

class InMemoryJobStore(JobStore):
    """
    Process-local job store guarded by a single re-entrant lock.
    Records are copied on the way in and out so callers never share state with the store.
    """
    def __init__(self):
        self._lock = RLock()
        self._jobs: Dict[str, IndexingJob] = {}
        self._tasks: Dict[str, IndexingTask] = {}
        self._job_tasks: Dict[str, List[str]] = defaultdict(list)
        self._chunks: Dict[str, List[KnowledgeChunk]] = defaultdict(list)
        self._kb_sizes: Dict[str, float] = defaultdict(float)
        self._crawl_metadata: Dict[Tuple[str, str], UrlCrawlMetadata] = {}
        self._chatbot_status: Dict[str, ChatbotIndexingState] = {}

    # --- Jobs ---

    def create_job(self, chatbot_id: str, tasks: Iterable[TaskSpec], retry_of_job_id: Optional[str] = None) -> IndexingJob:
        tasks = list(tasks)
        with self._lock:
            job = IndexingJob(
                job_id=str(uuid.uuid4()),
                chatbot_id=chatbot_id,
                total_tasks=len(tasks),
                retry_of_job_id=retry_of_job_id,
            )
            self._jobs[job.job_id] = job
            for spec in tasks:
                task = IndexingTask(
                    task_id=str(uuid.uuid4()),
                    job_id=job.job_id,
                    chatbot_id=chatbot_id,
                    **spec.model_dump(),
                )
                self._tasks[task.task_id] = task
                self._job_tasks[job.job_id].append(task.task_id)
            logger.info(f"Job {job.job_id} created with {len(tasks)} tasks for chatbot {chatbot_id}.")
            return job.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[IndexingJob]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def _require_job(self, job_id: str) -> IndexingJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job with ID '{job_id}' not found.")
        return job

    def update_job_status(self, job_id: str, status: str, error: Optional[str] = None) -> IndexingJob:
        with self._lock:
            job = apply_job_status(self._require_job(job_id), status, error)
            return job.model_copy(deep=True)

    def transition_job(self, job_id: str, from_statuses: Iterable[str], to_status: str, error: Optional[str] = None) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in set(from_statuses):
                return False
            apply_job_status(job, to_status, error)
            return True

    def update_job_progress(self, job_id: str, completed: int, failed: int, cancelled: int) -> None:
        with self._lock:
            job = self._require_job(job_id)
            job.completed_tasks = completed
            job.failed_tasks = failed
            job.cancelled_tasks = cancelled
            job.last_heartbeat = datetime.utcnow()

    def touch_job(self, job_id: str) -> None:
        with self._lock:
            self._require_job(job_id).last_heartbeat = datetime.utcnow()

    def list_pending_jobs(self, limit: int) -> List[IndexingJob]:
        with self._lock:
            pending = sorted(
                (job for job in self._jobs.values() if job.status == "pending"),
                key=lambda job: job.created_at,
            )
            return [job.model_copy(deep=True) for job in pending[:limit]]

    def list_jobs_by_status(self, status: str) -> List[IndexingJob]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values() if job.status == status]

    # --- Tasks ---

    def get_task(self, task_id: str) -> Optional[IndexingTask]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def get_tasks_for_job(self, job_id: str) -> List[IndexingTask]:
        with self._lock:
            return [self._tasks[task_id].model_copy(deep=True) for task_id in self._job_tasks.get(job_id, [])]

    def _require_task(self, task_id: str) -> IndexingTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise LookupError(f"Task with ID '{task_id}' not found.")
        return task

    def update_task_status(
        self,
        task_id: str,
        status: str,
        error: Optional[str] = None,
        chunks_created: Optional[int] = None,
    ) -> IndexingTask:
        with self._lock:
            task = apply_task_status(self._require_task(task_id), status, error, chunks_created)
            return task.model_copy(deep=True)

    def transition_task(
        self,
        task_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        error: Optional[str] = None,
        chunks_created: Optional[int] = None,
    ) -> bool:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status not in set(from_statuses):
                return False
            apply_task_status(task, to_status, error, chunks_created)
            return True

    def increment_task_retry_count(self, task_id: str) -> int:
        with self._lock:
            task = self._require_task(task_id)
            task.retry_count += 1
            return task.retry_count

    # --- Knowledge chunks ---

    def create_knowledge_chunks(self, chunks: List[KnowledgeChunk]) -> None:
        with self._lock:
            for chunk in chunks:
                self._chunks[chunk.chatbot_id].append(chunk.model_copy(deep=True))

    def get_knowledge_chunks(self, chatbot_id: str) -> List[KnowledgeChunk]:
        with self._lock:
            return [chunk.model_copy(deep=True) for chunk in self._chunks.get(chatbot_id, [])]

    # --- Quota ---

    def atomic_check_and_update_knowledge_base_size(self, tenant_id: str, delta_mb: float, limit_mb: float) -> QuotaDecision:
        with self._lock:
            current = self._kb_sizes[tenant_id]
            if delta_mb > 0 and current + delta_mb > limit_mb:
                return QuotaDecision(approved=False, current_size_mb=current)
            self._kb_sizes[tenant_id] = max(current + delta_mb, 0.0)
            return QuotaDecision(approved=True, current_size_mb=self._kb_sizes[tenant_id])

    def get_knowledge_base_size(self, tenant_id: str) -> float:
        with self._lock:
            return self._kb_sizes.get(tenant_id, 0.0)

    def set_knowledge_base_size(self, tenant_id: str, size_mb: float) -> None:
        """Seeds a tenant's current usage, e.g. from existing chunks."""
        with self._lock:
            self._kb_sizes[tenant_id] = size_mb

    # --- Change detection ---

    def upsert_crawl_metadata(self, record: UrlCrawlMetadata) -> None:
        with self._lock:
            self._crawl_metadata[(record.chatbot_id, record.url)] = record.model_copy(deep=True)

    def get_crawl_metadata(self, chatbot_id: str, url: str) -> Optional[UrlCrawlMetadata]:
        with self._lock:
            record = self._crawl_metadata.get((chatbot_id, url))
            return record.model_copy(deep=True) if record else None

    # --- Chatbot mirror ---

    def update_chatbot_indexing_status(self, chatbot_id: str, status: str, job_id: Optional[str] = None) -> None:
        with self._lock:
            previous = self._chatbot_status.get(chatbot_id)
            if job_id is None and previous is not None:
                job_id = previous.job_id
            self._chatbot_status[chatbot_id] = ChatbotIndexingState(chatbot_id=chatbot_id, status=status, job_id=job_id)

    def get_chatbot_indexing_status(self, chatbot_id: str) -> Optional[ChatbotIndexingState]:
        with self._lock:
            state = self._chatbot_status.get(chatbot_id)
            return state.model_copy(deep=True) if state else None
