import uuid
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from kb_indexer.core.change_detector import ChangeDetector
from kb_indexer.core.chunker import Chunker
from kb_indexer.core.embedder import EmbeddingService
from kb_indexer.core.fetcher import ContentFetcher, build_fetcher
from kb_indexer.core.quota import QuotaGuard
from kb_indexer.exceptions import (
    FetchError,
    IndexingError,
    JobCancelledError,
    JobNotFoundError,
)
from kb_indexer.models.document import KnowledgeChunk
from kb_indexer.models.job import IndexingJob, IndexingTask, count_task_outcomes
from kb_indexer.services.job_lease import JobLease, NullJobLease
from kb_indexer.services.job_store import JobStore
from kb_indexer.services.tenant_service import TenantDirectory

logger = logging.getLogger(__name__)

MAX_RETRY_COUNT = 3


class IndexingWorker:
    """
    Polls the store for pending indexing jobs and drives each one to a terminal state.

    Tasks of a job run one at a time. Each task is claimed with a compare-and-swap
    before it starts, so a task cancelled while pending never begins. Cancellation
    is observed between tasks. Failures are contained at the task boundary; errors
    outside task handling fail the job, never the loop.
    """
    def __init__(
        self,
        store: JobStore,
        fetcher_factory: Callable[[], ContentFetcher],
        chunker: Chunker,
        embedder: EmbeddingService,
        quota_guard: QuotaGuard,
        change_detector: ChangeDetector,
        job_lease: Optional[JobLease] = None,
        max_retry_count: int = MAX_RETRY_COUNT,
        retry_backoff_seconds: float = 1.0,
        retry_client_errors: bool = True,
        batch_size: int = 5,
        poll_interval_seconds: float = 3.0,
    ):
        self.store = store
        self.fetcher_factory = fetcher_factory
        self.chunker = chunker
        self.embedder = embedder
        self.quota_guard = quota_guard
        self.change_detector = change_detector
        self.job_lease = job_lease or NullJobLease()
        self.max_retry_count = max_retry_count
        self.retry_backoff_seconds = retry_backoff_seconds
        self.retry_client_errors = retry_client_errors
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_event = asyncio.Event()

    # --- Task level ---

    async def process_task(self, task: IndexingTask, fetcher: Optional[ContentFetcher] = None) -> Optional[IndexingTask]:
        """
        Runs one task end to end. Returns the updated task, or None when the task
        could not be claimed because it is no longer pending.
        """
        if not self.store.claim_task(task.task_id):
            logger.info(f"Task {task.task_id}: no longer pending, skipping.")
            return None

        logger.info(f"Task {task.task_id}: indexing {task.source_type} {task.source_url} (attempt {task.retry_count + 1}).")
        try:
            if fetcher is None:
                async with self.fetcher_factory() as own_fetcher:
                    chunks_created = await self._index_source(task, own_fetcher)
            else:
                chunks_created = await self._index_source(task, fetcher)
        except Exception as e:
            return self._handle_task_failure(task, e)

        logger.info(f"Task {task.task_id}: completed with {chunks_created} chunks.")
        return self._finish_task(task.task_id, "completed", chunks_created=chunks_created)

    async def _index_source(self, task: IndexingTask, fetcher: ContentFetcher) -> int:
        if task.source_type == "website":
            result = await fetcher.fetch(task.source_url)
            content = result.content
            title = task.title or result.title or None
            self.quota_guard.reserve_for_chatbot(task.chatbot_id, content)
            try:
                chunks_created = await self._store_chunks(task, content, title)
            except Exception:
                self._release_quota(task, content)
                raise
            try:
                self.change_detector.record(
                    task.chatbot_id, task.source_url, content,
                    etag=result.etag, last_modified=result.last_modified,
                )
            except Exception as e:
                logger.warning(f"Task {task.task_id}: failed to record crawl fingerprint for {task.source_url}: {e}")
            return chunks_created

        content = task.document_text or ""
        if not content.strip():
            logger.info(f"Task {task.task_id}: document has no extracted text, nothing to index.")
            return 0
        return await self._store_chunks(task, content, task.title)

    def _release_quota(self, task: IndexingTask, content: str) -> None:
        try:
            self.quota_guard.release_for_chatbot(task.chatbot_id, content)
        except Exception as e:
            logger.error(f"Task {task.task_id}: could not release quota reservation: {e}")

    async def _store_chunks(self, task: IndexingTask, content: str, title: Optional[str]) -> int:
        chunks = self.chunker.chunk(content, title=title)
        if not chunks:
            logger.info(f"Task {task.task_id}: no chunks survived chunking.")
            return 0

        embeddings = await self.embedder.embed_many([chunk.text for chunk in chunks])
        missing = sum(1 for embedding in embeddings if embedding is None)
        if missing:
            logger.warning(f"Task {task.task_id}: {missing} of {len(chunks)} chunks stored without embeddings.")

        knowledge_chunks = [
            KnowledgeChunk(
                chunk_id=str(uuid.uuid4()),
                chatbot_id=task.chatbot_id,
                source_type=task.source_type,
                source_url=task.source_url,
                source_title=title,
                chunk_text=chunk.text,
                chunk_index=chunk.index,
                content_hash=chunk.content_hash,
                embedding=embedding,
                metadata=chunk.metadata,
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]
        self.store.create_knowledge_chunks(knowledge_chunks)
        return len(knowledge_chunks)

    def is_retryable(self, error: Exception) -> bool:
        if isinstance(error, IndexingError):
            if not error.retryable:
                return False
            if isinstance(error, FetchError) and error.is_client_error and not self.retry_client_errors:
                return False
        return True

    def _finish_task(
        self,
        task_id: str,
        status: str,
        error: Optional[str] = None,
        chunks_created: Optional[int] = None,
    ) -> Optional[IndexingTask]:
        # Only the attempt that holds the task in processing may record its outcome.
        if not self.store.transition_task(task_id, ["processing"], status, error, chunks_created=chunks_created):
            current = self.store.get_task(task_id)
            logger.warning(
                f"Task {task_id}: finished as {status} but is now {current.status if current else 'missing'}, keeping that."
            )
            return current
        return self.store.get_task(task_id)

    def _handle_task_failure(self, task: IndexingTask, error: Exception) -> Optional[IndexingTask]:
        message = str(error) or error.__class__.__name__

        if not self.is_retryable(error):
            logger.error(f"Task {task.task_id}: failed permanently: {message}")
            return self._finish_task(task.task_id, "failed", error=message)

        if task.retry_count < self.max_retry_count:
            requeued = self._finish_task(task.task_id, "pending", error=message)
            if requeued is None or requeued.status != "pending":
                return requeued
            retry_count = self.store.increment_task_retry_count(task.task_id)
            logger.warning(
                f"Task {task.task_id}: attempt failed, requeued (retry {retry_count}/{self.max_retry_count}): {message}"
            )
            return self.store.get_task(task.task_id)

        logger.error(f"Task {task.task_id}: failed after {task.retry_count} retries: {message}")
        return self._finish_task(task.task_id, "failed", error=message)

    def retry_delay(self, retry_count: int) -> float:
        if retry_count <= 0 or self.retry_backoff_seconds <= 0:
            return 0.0
        return self.retry_backoff_seconds * 2 ** (retry_count - 1)

    # --- Job level ---

    async def process_job(self, job_id: str) -> Optional[IndexingJob]:
        """
        Claims a pending job and processes its tasks until none remain pending.
        Returns the job in its final state, or None if it could not be processed.
        """
        job = self.store.get_job(job_id)
        if job is None:
            logger.error(f"Job {job_id} not found in store.")
            return None

        if not self.store.claim_job(job_id):
            logger.info(f"Job {job_id}: already claimed or no longer pending, skipping.")
            return None

        logger.info(f"Starting indexing for Job {job_id} ({job.total_tasks} tasks, chatbot {job.chatbot_id}).")
        try:
            self.store.update_chatbot_indexing_status(job.chatbot_id, "processing", job_id)
            async with self.fetcher_factory() as fetcher:
                await self._run_pending_tasks(job_id, fetcher)
            return self._finalize_job(job_id, job.chatbot_id)
        except JobCancelledError as e:
            logger.info(f"Job {job_id}: {e}")
            self._record_progress(job_id)
            self.store.update_chatbot_indexing_status(job.chatbot_id, "cancelled", job_id)
            return self.store.get_job(job_id)
        except Exception as e:
            logger.error(f"Job {job_id} FAILED due to exception: {e}", exc_info=True)
            self._mark_job_failed(job_id, job.chatbot_id, f"Indexing failed: {e}")
            return None

    async def _run_pending_tasks(self, job_id: str, fetcher: ContentFetcher) -> None:
        # Requeued tasks go back to pending, so keep making passes until none are left.
        while True:
            pending = [task for task in self.store.get_tasks_for_job(job_id) if task.status == "pending"]
            if not pending:
                return
            for task in pending:
                delay = self.retry_delay(task.retry_count)
                if delay:
                    logger.debug(f"Task {task.task_id}: waiting {delay:.1f}s before retry {task.retry_count}.")
                    self.store.touch_job(job_id)
                    await asyncio.sleep(delay)
                self._ensure_not_cancelled(job_id)
                await self.process_task(task, fetcher)
                self._record_progress(job_id)

    def _ensure_not_cancelled(self, job_id: str) -> None:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} disappeared while processing.")
        if job.status == "cancelled":
            cancelled = self.store.cancel_pending_tasks(job_id)
            raise JobCancelledError(f"cancelled, {cancelled} pending tasks will not run.")

    def _record_progress(self, job_id: str) -> None:
        completed, failed, cancelled = count_task_outcomes(self.store.get_tasks_for_job(job_id))
        self.store.update_job_progress(job_id, completed, failed, cancelled)

    def _finalize_job(self, job_id: str, chatbot_id: str) -> Optional[IndexingJob]:
        tasks = self.store.get_tasks_for_job(job_id)
        completed, failed, cancelled = count_task_outcomes(tasks)
        self.store.update_job_progress(job_id, completed, failed, cancelled)

        if completed == len(tasks):
            final_status, error = "completed", None
        else:
            final_status = "partial"
            error = f"{failed} of {len(tasks)} tasks failed" + (f", {cancelled} cancelled" if cancelled else "")

        if not self.store.transition_job(job_id, ["processing"], final_status, error):
            # Cancelled (or failed by the watchdog) after the last task finished.
            job = self.store.get_job(job_id)
            final_status = job.status if job else "failed"

        self.store.update_chatbot_indexing_status(chatbot_id, final_status, job_id)
        logger.info(
            f"Job {job_id} finished as '{final_status}': "
            f"{completed} completed, {failed} failed, {cancelled} cancelled."
        )
        return self.store.get_job(job_id)

    def _mark_job_failed(self, job_id: str, chatbot_id: str, message: str) -> None:
        try:
            if self.store.transition_job(job_id, ["pending", "processing"], "failed", message):
                self.store.update_chatbot_indexing_status(chatbot_id, "failed", job_id)
        except Exception as e:
            logger.critical(f"Job {job_id}: CRITICAL ERROR updating final job status: {e}", exc_info=True)

    # --- Scheduling ---

    async def tick(self) -> int:
        """Processes up to ``batch_size`` pending jobs, oldest first. Returns how many were processed."""
        processed = 0
        for job in self.store.list_pending_jobs(self.batch_size):
            token = self.job_lease.acquire(job.job_id)
            if token is None:
                continue
            try:
                if await self.process_job(job.job_id) is not None:
                    processed += 1
            finally:
                self.job_lease.release(token)
        return processed

    async def run_forever(self) -> None:
        logger.info(f"Indexing worker started, polling every {self.poll_interval_seconds}s.")
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Indexing worker tick failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Indexing worker stopped.")

    def stop(self) -> None:
        self._stop_event.set()

    # --- Watchdog ---

    def fail_stuck_jobs(self, threshold_seconds: int) -> List[str]:
        """
        Marks processing jobs whose heartbeat is older than ``threshold_seconds`` as failed,
        together with their unfinished tasks. Returns the ids of the jobs it failed.
        """
        now = datetime.utcnow()
        inactivity_threshold = timedelta(seconds=threshold_seconds)
        failed_job_ids = []

        for job in self.store.list_jobs_by_status("processing"):
            if now - job.last_heartbeat <= inactivity_threshold:
                continue
            message = f"Marked failed by watchdog due to inactivity exceeding {threshold_seconds} seconds."
            if not self.store.transition_job(job.job_id, ["processing"], "failed", message):
                continue
            logger.warning(
                f"Watchdog marked job {job.job_id} as 'failed' due to inactivity. "
                f"Last heartbeat: {job.last_heartbeat}"
            )
            for task in self.store.get_tasks_for_job(job.job_id):
                if not task.is_terminal:
                    self.store.transition_task(task.task_id, ["pending", "processing"], "failed", message)
            self._record_progress(job.job_id)
            self.store.update_chatbot_indexing_status(job.chatbot_id, "failed", job.job_id)
            failed_job_ids.append(job.job_id)

        return failed_job_ids


def build_worker(
    settings,
    store: JobStore,
    tenants: TenantDirectory,
    embedder: EmbeddingService,
    job_lease: Optional[JobLease] = None,
) -> IndexingWorker:
    return IndexingWorker(
        store=store,
        fetcher_factory=lambda: build_fetcher(settings),
        chunker=Chunker(settings.CHUNK_MAX_SIZE, settings.CHUNK_MIN_SIZE, settings.CHUNK_OVERLAP),
        embedder=embedder,
        quota_guard=QuotaGuard(store, tenants),
        change_detector=ChangeDetector(store),
        job_lease=job_lease,
        max_retry_count=settings.MAX_RETRY_COUNT,
        retry_backoff_seconds=settings.RETRY_BACKOFF_SECONDS,
        retry_client_errors=settings.RETRY_CLIENT_ERRORS,
        batch_size=settings.WORKER_BATCH_SIZE,
        poll_interval_seconds=settings.WORKER_POLL_INTERVAL_SECONDS,
    )
