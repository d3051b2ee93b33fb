"""
Service layer components
"""
from .job_store import JobStore
from .memory_job_store import InMemoryJobStore
from .redis_job_store import RedisJobStore
from .indexing_service import IndexingJobService

__all__ = ["JobStore", "InMemoryJobStore", "RedisJobStore", "IndexingJobService"]
