"""
Dependencies for FastAPI endpoints and the background runners.

Every shared component is built lazily and memoized per process, so importing
the application never connects to Redis or loads an embedding model.
"""
from functools import lru_cache
from typing import Callable

import redis
from fastapi import Depends, Request

from kb_indexer.config import settings
from kb_indexer.core.embedder import EmbeddingService, build_embedding_service
from kb_indexer.core.fetcher import ContentFetcher, build_fetcher
from kb_indexer.core.worker import IndexingWorker, build_worker
from kb_indexer.services.indexing_service import IndexingJobService
from kb_indexer.services.job_lease import JobLease, NullJobLease, RedlockJobLease
from kb_indexer.services.job_store import JobStore
from kb_indexer.services.memory_job_store import InMemoryJobStore
from kb_indexer.services.redis_job_store import RedisJobStore
from kb_indexer.services.tenant_service import TenantDirectory, InMemoryTenantDirectory, RedisTenantDirectory


def _uses_redis() -> bool:
    return settings.JOB_STORE_BACKEND.lower() == "redis"


@lru_cache()
def get_redis_client() -> redis.Redis:
    return redis.from_url(settings.REDIS_URL, decode_responses=True)


@lru_cache()
def get_job_store() -> JobStore:
    if _uses_redis():
        return RedisJobStore(get_redis_client())
    return InMemoryJobStore()


@lru_cache()
def get_tenant_directory() -> TenantDirectory:
    if _uses_redis():
        return RedisTenantDirectory(get_redis_client(), settings.TIER_KNOWLEDGE_BASE_LIMITS_MB)
    return InMemoryTenantDirectory(settings.TIER_KNOWLEDGE_BASE_LIMITS_MB)


@lru_cache()
def get_embedding_service() -> EmbeddingService:
    return build_embedding_service(settings)


@lru_cache()
def get_job_lease() -> JobLease:
    if _uses_redis():
        return RedlockJobLease([get_redis_client()], settings.JOB_LEASE_TTL_MS)
    return NullJobLease()


def build_indexing_worker() -> IndexingWorker:
    return build_worker(
        settings,
        store=get_job_store(),
        tenants=get_tenant_directory(),
        embedder=get_embedding_service(),
        job_lease=get_job_lease(),
    )


def get_indexing_service(store: JobStore = Depends(get_job_store)) -> IndexingJobService:
    return IndexingJobService(store)


def get_fetcher_factory() -> Callable[[], ContentFetcher]:
    """Fetchers for site discovery at enqueue time. Each one owns its HTTP client."""
    return lambda: build_fetcher(settings)


async def get_request_context(request: Request):
    """Get request context for logging"""
    return {
        "client_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
        "path": request.url.path,
        "method": request.method,
    }
