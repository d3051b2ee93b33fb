import logging
from typing import List, Optional

from kb_indexer.exceptions import InvalidJobStateError, JobNotFoundError
from kb_indexer.models.job import IndexingJob, IndexingTask, TaskSpec, ChatbotIndexingState, count_task_outcomes
from kb_indexer.services.job_store import JobStore

logger = logging.getLogger(__name__)

class IndexingJobService:
    """
    Application-facing operations on indexing jobs: enqueue, inspect, cancel and retry.
    Processing itself happens in the worker loop.
    """
    def __init__(self, store: JobStore):
        self.store = store

    def create_job(self, chatbot_id: str, sources: List[TaskSpec]) -> IndexingJob:
        job = self.store.create_job(chatbot_id, sources)
        self.store.update_chatbot_indexing_status(chatbot_id, "pending", job.job_id)
        logger.info(f"Job {job.job_id} enqueued for chatbot {chatbot_id} with {job.total_tasks} sources.")
        return job

    def _require_job(self, job_id: str) -> IndexingJob:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job with ID '{job_id}' not found.")
        return job

    def get_job_status(self, job_id: str) -> tuple:
        """Returns ``(job, tasks)``. Raises JobNotFoundError for unknown ids."""
        job = self._require_job(job_id)
        return job, self.store.get_tasks_for_job(job_id)

    def cancel_job(self, job_id: str) -> IndexingJob:
        """
        Cancels a job that has not reached a terminal state. A task already running
        finishes; every task still pending is cancelled.

        Raises:
            JobNotFoundError: no such job.
            InvalidJobStateError: the job already finished.
        """
        job = self._require_job(job_id)
        if not self.store.transition_job(job_id, ["pending", "processing"], "cancelled"):
            current = self._require_job(job_id)
            raise InvalidJobStateError(f"Job {job_id} cannot be cancelled in status '{current.status}'.")

        cancelled = self.store.cancel_pending_tasks(job_id)
        completed, failed, cancelled_total = count_task_outcomes(self.store.get_tasks_for_job(job_id))
        self.store.update_job_progress(job_id, completed, failed, cancelled_total)
        self.store.update_chatbot_indexing_status(job.chatbot_id, "cancelled", job_id)
        logger.info(f"Job {job_id} cancelled, {cancelled} pending tasks cancelled.")
        return self._require_job(job_id)

    def retry_job(self, job_id: str) -> IndexingJob:
        """
        Creates a new job for the failed and cancelled tasks of a finished job.

        Raises:
            JobNotFoundError: no such job.
            InvalidJobStateError: the job is still running or has nothing to retry.
        """
        job = self._require_job(job_id)
        if not job.is_terminal:
            raise InvalidJobStateError(f"Job {job_id} is still '{job.status}' and cannot be retried.")

        retryable: List[IndexingTask] = [
            task for task in self.store.get_tasks_for_job(job_id) if task.status in ("failed", "cancelled")
        ]
        if not retryable:
            raise InvalidJobStateError(f"Job {job_id} has no failed or cancelled tasks to retry.")

        specs = [
            TaskSpec(
                source_type=task.source_type,
                source_url=task.source_url,
                title=task.title,
                document_text=task.document_text,
            )
            for task in retryable
        ]
        new_job = self.store.create_job(job.chatbot_id, specs, retry_of_job_id=job_id)
        self.store.update_chatbot_indexing_status(job.chatbot_id, "pending", new_job.job_id)
        logger.info(f"Job {new_job.job_id} created to retry {len(specs)} tasks of Job {job_id}.")
        return new_job

    def get_chatbot_status(self, chatbot_id: str) -> Optional[ChatbotIndexingState]:
        return self.store.get_chatbot_indexing_status(chatbot_id)
