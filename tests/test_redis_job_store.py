import pytest
import redis
from concurrent.futures import ThreadPoolExecutor
from kb_indexer.config import settings
from kb_indexer.models.document import KnowledgeChunk, UrlCrawlMetadata
from kb_indexer.models.job import TaskSpec
from kb_indexer.services.redis_job_store import RedisJobStore


@pytest.fixture
def store():
    """RedisJobStore against the configured Redis, skipped when none is reachable."""
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        client.ping()
    except redis.exceptions.ConnectionError:
        pytest.skip("Redis is not reachable")
    job_store = RedisJobStore(client)
    job_store.delete_all()
    yield job_store
    job_store.delete_all()

def test_job_and_tasks_round_trip(store):
    job = store.create_job("bot-1", [
        TaskSpec(source_type="website", source_url="https://example.com/a"),
        TaskSpec(source_type="document", source_url="uploads/b.pdf", document_text="Body"),
    ])

    assert store.get_job(job.job_id).total_tasks == 2
    tasks = store.get_tasks_for_job(job.job_id)
    assert [t.source_url for t in tasks] == ["https://example.com/a", "uploads/b.pdf"]
    assert [j.job_id for j in store.list_pending_jobs(10)] == [job.job_id]

def test_claims_are_compare_and_swap(store):
    job = store.create_job("bot-1", [TaskSpec(source_type="website", source_url="https://example.com/a")])
    task = store.get_tasks_for_job(job.job_id)[0]

    assert store.claim_job(job.job_id)
    assert not store.claim_job(job.job_id)
    assert store.list_pending_jobs(10) == []
    assert [j.job_id for j in store.list_jobs_by_status("processing")] == [job.job_id]

    assert store.cancel_pending_tasks(job.job_id) == 1
    assert not store.claim_task(task.task_id)
    assert store.get_task(task.task_id).status == "cancelled"

def test_task_updates(store):
    job = store.create_job("bot-1", [TaskSpec(source_type="website", source_url="https://example.com/a")])
    task = store.get_tasks_for_job(job.job_id)[0]

    assert store.increment_task_retry_count(task.task_id) == 1
    store.claim_task(task.task_id)
    updated = store.update_task_status(task.task_id, "completed", chunks_created=5)

    assert updated.chunks_created == 5
    assert store.get_task(task.task_id).retry_count == 1

def test_quota_script_is_atomic(store):
    with ThreadPoolExecutor(max_workers=8) as pool:
        decisions = list(pool.map(lambda _: store.atomic_check_and_update_knowledge_base_size("acme", 1.5, 10.0), range(20)))

    assert sum(1 for d in decisions if d.approved) == 6
    assert store.get_knowledge_base_size("acme") == pytest.approx(9.0)
    rejected = [d for d in decisions if not d.approved][0]
    assert rejected.current_size_mb == pytest.approx(9.0)

def test_chunks_crawl_metadata_and_chatbot_status(store):
    store.create_knowledge_chunks([KnowledgeChunk(
        chunk_id="c1", chatbot_id="bot-1", source_type="website", source_url="https://example.com",
        chunk_text="Hello", chunk_index=0, content_hash="abc", embedding=[0.5, 0.5],
    )])
    store.upsert_crawl_metadata(UrlCrawlMetadata(chatbot_id="bot-1", url="https://example.com/", content_hash="h1"))
    store.upsert_crawl_metadata(UrlCrawlMetadata(chatbot_id="bot-1", url="https://example.com/", content_hash="h2"))
    store.update_chatbot_indexing_status("bot-1", "processing", "job-1")
    store.update_chatbot_indexing_status("bot-1", "completed")

    assert store.get_knowledge_chunks("bot-1")[0].embedding == [0.5, 0.5]
    assert store.get_crawl_metadata("bot-1", "https://example.com/").content_hash == "h2"
    state = store.get_chatbot_indexing_status("bot-1")
    assert (state.status, state.job_id) == ("completed", "job-1")

def test_quota_script_applies_releases(store):
    store.atomic_check_and_update_knowledge_base_size("acme", 4.0, 5.0)

    released = store.atomic_check_and_update_knowledge_base_size("acme", -1.5, 2.0)
    floored = store.atomic_check_and_update_knowledge_base_size("acme", -10.0, 2.0)

    assert released.approved and released.current_size_mb == pytest.approx(2.5)
    assert floored.approved and floored.current_size_mb == 0.0
