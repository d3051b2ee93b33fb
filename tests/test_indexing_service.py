import pytest
from kb_indexer.exceptions import InvalidJobStateError, JobNotFoundError
from kb_indexer.models.job import TaskSpec
from kb_indexer.services.indexing_service import IndexingJobService
from kb_indexer.services.memory_job_store import InMemoryJobStore

@pytest.fixture
def store():
    return InMemoryJobStore()

@pytest.fixture
def service(store):
    return IndexingJobService(store)

def sources(*urls):
    return [TaskSpec(source_type="website", source_url=url) for url in urls]

def test_create_job_mirrors_chatbot_status(service, store):
    job = service.create_job("bot-1", sources("https://example.com/a", "https://example.com/b"))

    assert job.total_tasks == 2
    state = service.get_chatbot_status("bot-1")
    assert state.status == "pending"
    assert state.job_id == job.job_id

def test_get_job_status_returns_tasks(service):
    job = service.create_job("bot-1", sources("https://example.com/a"))

    fetched, tasks = service.get_job_status(job.job_id)

    assert fetched.job_id == job.job_id
    assert [t.source_url for t in tasks] == ["https://example.com/a"]

def test_get_job_status_unknown_job(service):
    with pytest.raises(JobNotFoundError):
        service.get_job_status("nope")

def test_cancel_pending_job(service, store):
    job = service.create_job("bot-1", sources("https://example.com/a", "https://example.com/b"))

    cancelled = service.cancel_job(job.job_id)

    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_tasks == 2
    assert all(t.status == "cancelled" for t in store.get_tasks_for_job(job.job_id))
    assert service.get_chatbot_status("bot-1").status == "cancelled"

def test_cancel_terminal_job_is_rejected(service, store):
    job = service.create_job("bot-1", sources("https://example.com/a"))
    store.claim_job(job.job_id)
    store.update_job_status(job.job_id, "completed")

    with pytest.raises(InvalidJobStateError):
        service.cancel_job(job.job_id)

def test_cancel_unknown_job(service):
    with pytest.raises(JobNotFoundError):
        service.cancel_job("nope")

def test_retry_creates_job_for_failed_and_cancelled_tasks(service, store):
    job = service.create_job("bot-1", sources("https://example.com/ok", "https://example.com/bad", "https://example.com/later"))
    ok, bad, later = store.get_tasks_for_job(job.job_id)
    store.claim_job(job.job_id)
    store.claim_task(ok.task_id)
    store.update_task_status(ok.task_id, "completed", chunks_created=3)
    store.claim_task(bad.task_id)
    store.update_task_status(bad.task_id, "failed", error="HTTP 500: Internal Server Error")
    service.cancel_job(job.job_id)

    retry = service.retry_job(job.job_id)

    assert retry.job_id != job.job_id
    assert retry.retry_of_job_id == job.job_id
    assert retry.status == "pending"
    assert [t.source_url for t in store.get_tasks_for_job(retry.job_id)] == [
        "https://example.com/bad", "https://example.com/later",
    ]
    assert service.get_chatbot_status("bot-1").job_id == retry.job_id

def test_retry_running_job_is_rejected(service, store):
    job = service.create_job("bot-1", sources("https://example.com/a"))
    store.claim_job(job.job_id)

    with pytest.raises(InvalidJobStateError):
        service.retry_job(job.job_id)

def test_retry_without_failures_is_rejected(service, store):
    job = service.create_job("bot-1", sources("https://example.com/a"))
    task = store.get_tasks_for_job(job.job_id)[0]
    store.claim_job(job.job_id)
    store.claim_task(task.task_id)
    store.update_task_status(task.task_id, "completed")
    store.update_job_status(job.job_id, "completed")

    with pytest.raises(InvalidJobStateError):
        service.retry_job(job.job_id)
