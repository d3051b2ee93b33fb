import uuid
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Type

import redis
from pydantic import BaseModel

from kb_indexer.exceptions import JobNotFoundError, PersistenceError
from kb_indexer.models.document import KnowledgeChunk, UrlCrawlMetadata
from kb_indexer.models.job import IndexingJob, IndexingTask, TaskSpec, ChatbotIndexingState
from kb_indexer.models.tenant import QuotaDecision
from kb_indexer.services.job_store import JobStore, apply_job_status, apply_task_status

logger = logging.getLogger(__name__)

# Adds ARGV[1] to the size stored at KEYS[1] unless the result would exceed ARGV[2].
# Returns {approved, size} with the size as a string so Redis keeps the fraction.
KB_SIZE_RESERVE_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local delta = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])

if delta > 0 and current + delta > limit then
    return {0, tostring(current)}
end

local updated = math.max(current + delta, 0)
redis.call('SET', KEYS[1], tostring(updated))
return {1, tostring(updated)}
"""


@contextmanager
def _redis_errors(operation: str):
    try:
        yield
    except redis.exceptions.RedisError as e:
        logger.error(f"Redis error during {operation}: {e}")
        raise PersistenceError(f"Store operation '{operation}' failed: {e}") from e


class RedisJobStore(JobStore):
    """
    Persists jobs, tasks and chunks in Redis.
    Each job and task is stored as a JSON string; status changes that must not race
    run inside WATCH/MULTI transactions.
    """
    def __init__(self, redis_client: redis.Redis):
        self._redis_client = redis_client
        self._reserve_script = self._redis_client.register_script(KB_SIZE_RESERVE_SCRIPT)

    @classmethod
    def from_url(cls, redis_url: str) -> "RedisJobStore":
        try:
            client = redis.from_url(redis_url, decode_responses=True)
            client.ping()
            logger.info("Connected to Redis successfully for RedisJobStore.")
        except redis.exceptions.ConnectionError as e:
            logger.error(f"Could not connect to Redis for RedisJobStore: {e}")
            raise PersistenceError("Failed to connect to Redis") from e
        return cls(client)

    # --- Keys ---

    def _get_job_key(self, job_id: str) -> str:
        return f"indexing_job:{job_id}"

    def _get_task_key(self, task_id: str) -> str:
        return f"indexing_task:{task_id}"

    def _get_job_tasks_key(self, job_id: str) -> str:
        return f"indexing_job_tasks:{job_id}"

    def _get_status_index_key(self, status: str) -> str:
        return f"indexing_jobs:status:{status}"

    def _get_chunks_key(self, chatbot_id: str) -> str:
        return f"knowledge_chunks:{chatbot_id}"

    def _get_kb_size_key(self, tenant_id: str) -> str:
        return f"kb_size:{tenant_id}"

    def _get_crawl_metadata_key(self, chatbot_id: str) -> str:
        return f"url_crawl_metadata:{chatbot_id}"

    def _get_chatbot_status_key(self, chatbot_id: str) -> str:
        return f"chatbot_indexing_status:{chatbot_id}"

    # --- Helpers ---

    def _load(self, key: str, model: Type[BaseModel]):
        raw = self._redis_client.get(key)
        return model.model_validate_json(raw) if raw else None

    def _mutate(self, key: str, model: Type[BaseModel], mutate: Callable, allowed_statuses=None):
        """
        Reads the record at ``key``, applies ``mutate`` and writes it back atomically.
        Returns ``(previous_status, record)``, or ``None`` when the record is missing or
        its status is not in ``allowed_statuses``.
        """
        def txn(pipe):
            raw = pipe.get(key)
            if not raw:
                return None
            record = model.model_validate_json(raw)
            if allowed_statuses is not None and record.status not in allowed_statuses:
                return None
            previous = getattr(record, "status", None)
            mutate(record)
            pipe.multi()
            pipe.set(key, record.model_dump_json())
            if isinstance(record, IndexingJob) and previous != record.status:
                pipe.zrem(self._get_status_index_key(previous), record.job_id)
                pipe.zadd(self._get_status_index_key(record.status), {record.job_id: record.created_at.timestamp()})
            return previous, record

        return self._redis_client.transaction(txn, key, value_from_callable=True)

    # --- Jobs ---

    def create_job(self, chatbot_id: str, tasks: Iterable[TaskSpec], retry_of_job_id: Optional[str] = None) -> IndexingJob:
        tasks = list(tasks)
        job = IndexingJob(
            job_id=str(uuid.uuid4()),
            chatbot_id=chatbot_id,
            total_tasks=len(tasks),
            retry_of_job_id=retry_of_job_id,
        )
        with _redis_errors("create_job"):
            pipe = self._redis_client.pipeline(transaction=True)
            for spec in tasks:
                task = IndexingTask(
                    task_id=str(uuid.uuid4()),
                    job_id=job.job_id,
                    chatbot_id=chatbot_id,
                    **spec.model_dump(),
                )
                pipe.set(self._get_task_key(task.task_id), task.model_dump_json())
                pipe.rpush(self._get_job_tasks_key(job.job_id), task.task_id)
            pipe.set(self._get_job_key(job.job_id), job.model_dump_json())
            pipe.zadd(self._get_status_index_key(job.status), {job.job_id: job.created_at.timestamp()})
            pipe.execute()
        logger.info(f"Job {job.job_id} created with {len(tasks)} tasks for chatbot {chatbot_id}.")
        return job

    def get_job(self, job_id: str) -> Optional[IndexingJob]:
        with _redis_errors("get_job"):
            return self._load(self._get_job_key(job_id), IndexingJob)

    def update_job_status(self, job_id: str, status: str, error: Optional[str] = None) -> IndexingJob:
        with _redis_errors("update_job_status"):
            result = self._mutate(
                self._get_job_key(job_id), IndexingJob, lambda job: apply_job_status(job, status, error)
            )
        if result is None:
            raise JobNotFoundError(f"Job with ID '{job_id}' not found.")
        logger.debug(f"Job {job_id} updated in Redis to status: {status}")
        return result[1]

    def transition_job(self, job_id: str, from_statuses: Iterable[str], to_status: str, error: Optional[str] = None) -> bool:
        with _redis_errors("transition_job"):
            result = self._mutate(
                self._get_job_key(job_id),
                IndexingJob,
                lambda job: apply_job_status(job, to_status, error),
                allowed_statuses=set(from_statuses),
            )
        return result is not None

    def update_job_progress(self, job_id: str, completed: int, failed: int, cancelled: int) -> None:
        def mutate(job: IndexingJob):
            job.completed_tasks = completed
            job.failed_tasks = failed
            job.cancelled_tasks = cancelled
            job.last_heartbeat = datetime.utcnow()

        with _redis_errors("update_job_progress"):
            result = self._mutate(self._get_job_key(job_id), IndexingJob, mutate)
        if result is None:
            raise JobNotFoundError(f"Job with ID '{job_id}' not found.")

    def touch_job(self, job_id: str) -> None:
        def mutate(job: IndexingJob):
            job.last_heartbeat = datetime.utcnow()

        with _redis_errors("touch_job"):
            result = self._mutate(self._get_job_key(job_id), IndexingJob, mutate)
        if result is None:
            raise JobNotFoundError(f"Job with ID '{job_id}' not found.")

    def _jobs_from_index(self, status: str, limit: int = -1) -> List[IndexingJob]:
        end = -1 if limit < 0 else limit - 1
        job_ids = self._redis_client.zrange(self._get_status_index_key(status), 0, end)
        jobs = []
        for job_id in job_ids:
            job = self._load(self._get_job_key(job_id), IndexingJob)
            if job and job.status == status:
                jobs.append(job)
        return jobs

    def list_pending_jobs(self, limit: int) -> List[IndexingJob]:
        if limit <= 0:
            return []
        with _redis_errors("list_pending_jobs"):
            return self._jobs_from_index("pending", limit)

    def list_jobs_by_status(self, status: str) -> List[IndexingJob]:
        with _redis_errors("list_jobs_by_status"):
            return self._jobs_from_index(status)

    # --- Tasks ---

    def get_task(self, task_id: str) -> Optional[IndexingTask]:
        with _redis_errors("get_task"):
            return self._load(self._get_task_key(task_id), IndexingTask)

    def get_tasks_for_job(self, job_id: str) -> List[IndexingTask]:
        with _redis_errors("get_tasks_for_job"):
            task_ids = self._redis_client.lrange(self._get_job_tasks_key(job_id), 0, -1)
            if not task_ids:
                return []
            raw_tasks = self._redis_client.mget([self._get_task_key(task_id) for task_id in task_ids])
        return [IndexingTask.model_validate_json(raw) for raw in raw_tasks if raw]

    def update_task_status(
        self,
        task_id: str,
        status: str,
        error: Optional[str] = None,
        chunks_created: Optional[int] = None,
    ) -> IndexingTask:
        with _redis_errors("update_task_status"):
            result = self._mutate(
                self._get_task_key(task_id),
                IndexingTask,
                lambda task: apply_task_status(task, status, error, chunks_created),
            )
        if result is None:
            raise LookupError(f"Task with ID '{task_id}' not found.")
        return result[1]

    def transition_task(
        self,
        task_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        error: Optional[str] = None,
        chunks_created: Optional[int] = None,
    ) -> bool:
        with _redis_errors("transition_task"):
            result = self._mutate(
                self._get_task_key(task_id),
                IndexingTask,
                lambda task: apply_task_status(task, to_status, error, chunks_created),
                allowed_statuses=set(from_statuses),
            )
        return result is not None

    def increment_task_retry_count(self, task_id: str) -> int:
        def mutate(task: IndexingTask):
            task.retry_count += 1

        with _redis_errors("increment_task_retry_count"):
            result = self._mutate(self._get_task_key(task_id), IndexingTask, mutate)
        if result is None:
            raise LookupError(f"Task with ID '{task_id}' not found.")
        return result[1].retry_count

    # --- Knowledge chunks ---

    def create_knowledge_chunks(self, chunks: List[KnowledgeChunk]) -> None:
        if not chunks:
            return
        with _redis_errors("create_knowledge_chunks"):
            pipe = self._redis_client.pipeline(transaction=True)
            for chunk in chunks:
                pipe.rpush(self._get_chunks_key(chunk.chatbot_id), chunk.model_dump_json())
            pipe.execute()

    def get_knowledge_chunks(self, chatbot_id: str) -> List[KnowledgeChunk]:
        with _redis_errors("get_knowledge_chunks"):
            raw_chunks = self._redis_client.lrange(self._get_chunks_key(chatbot_id), 0, -1)
        return [KnowledgeChunk.model_validate_json(raw) for raw in raw_chunks]

    # --- Quota ---

    def atomic_check_and_update_knowledge_base_size(self, tenant_id: str, delta_mb: float, limit_mb: float) -> QuotaDecision:
        with _redis_errors("atomic_check_and_update_knowledge_base_size"):
            approved, size = self._reserve_script(
                keys=[self._get_kb_size_key(tenant_id)],
                args=[repr(float(delta_mb)), repr(float(limit_mb))],
            )
        return QuotaDecision(approved=bool(int(approved)), current_size_mb=float(size))

    def get_knowledge_base_size(self, tenant_id: str) -> float:
        with _redis_errors("get_knowledge_base_size"):
            raw = self._redis_client.get(self._get_kb_size_key(tenant_id))
        return float(raw) if raw else 0.0

    # --- Change detection ---

    def upsert_crawl_metadata(self, record: UrlCrawlMetadata) -> None:
        with _redis_errors("upsert_crawl_metadata"):
            self._redis_client.hset(self._get_crawl_metadata_key(record.chatbot_id), record.url, record.model_dump_json())

    def get_crawl_metadata(self, chatbot_id: str, url: str) -> Optional[UrlCrawlMetadata]:
        with _redis_errors("get_crawl_metadata"):
            raw = self._redis_client.hget(self._get_crawl_metadata_key(chatbot_id), url)
        return UrlCrawlMetadata.model_validate_json(raw) if raw else None

    # --- Chatbot mirror ---

    def update_chatbot_indexing_status(self, chatbot_id: str, status: str, job_id: Optional[str] = None) -> None:
        key = self._get_chatbot_status_key(chatbot_id)
        with _redis_errors("update_chatbot_indexing_status"):
            if job_id is None:
                previous = self._load(key, ChatbotIndexingState)
                job_id = previous.job_id if previous else None
            state = ChatbotIndexingState(chatbot_id=chatbot_id, status=status, job_id=job_id)
            self._redis_client.set(key, state.model_dump_json())

    def get_chatbot_indexing_status(self, chatbot_id: str) -> Optional[ChatbotIndexingState]:
        with _redis_errors("get_chatbot_indexing_status"):
            return self._load(self._get_chatbot_status_key(chatbot_id), ChatbotIndexingState)

    def delete_all(self) -> None:
        """Deletes every key owned by this store. Primarily for testing."""
        patterns = [
            "indexing_job:*", "indexing_task:*", "indexing_job_tasks:*", "indexing_jobs:status:*",
            "knowledge_chunks:*", "kb_size:*", "url_crawl_metadata:*", "chatbot_indexing_status:*",
        ]
        with _redis_errors("delete_all"):
            keys = [key for pattern in patterns for key in self._redis_client.scan_iter(pattern)]
            if keys:
                self._redis_client.delete(*keys)
        logger.info(f"Deleted {len(keys)} keys from Redis.")
