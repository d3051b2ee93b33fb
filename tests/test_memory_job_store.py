import pytest
from kb_indexer.exceptions import JobNotFoundError
from kb_indexer.models.document import KnowledgeChunk
from kb_indexer.models.job import TaskSpec
from kb_indexer.services.memory_job_store import InMemoryJobStore

@pytest.fixture
def store():
    return InMemoryJobStore()

@pytest.fixture
def job(store):
    return store.create_job("bot-1", [
        TaskSpec(source_type="website", source_url="https://example.com/a"),
        TaskSpec(source_type="document", source_url="uploads/b.pdf", document_text="Body", title="B"),
    ])

def test_create_job_creates_pending_tasks(store, job):
    assert job.status == "pending"
    assert job.total_tasks == 2

    tasks = store.get_tasks_for_job(job.job_id)
    assert [t.source_url for t in tasks] == ["https://example.com/a", "uploads/b.pdf"]
    assert all(t.status == "pending" and t.job_id == job.job_id for t in tasks)
    assert tasks[1].document_text == "Body"

def test_returned_records_are_copies(store, job):
    fetched = store.get_job(job.job_id)
    fetched.status = "completed"

    assert store.get_job(job.job_id).status == "pending"

def test_claim_job_is_compare_and_swap(store, job):
    assert store.claim_job(job.job_id)
    assert not store.claim_job(job.job_id)

    claimed = store.get_job(job.job_id)
    assert claimed.status == "processing"
    assert claimed.started_at is not None

def test_claim_task_fails_for_cancelled_task(store, job):
    task = store.get_tasks_for_job(job.job_id)[0]
    assert store.transition_task(task.task_id, ["pending"], "cancelled")

    assert not store.claim_task(task.task_id)
    cancelled = store.get_task(task.task_id)
    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_at is not None

def test_cancel_pending_tasks_skips_started_ones(store, job):
    first, second = store.get_tasks_for_job(job.job_id)
    store.claim_task(first.task_id)

    assert store.cancel_pending_tasks(job.job_id) == 1
    assert store.get_task(first.task_id).status == "processing"
    assert store.get_task(second.task_id).status == "cancelled"

def test_task_status_timestamps(store, job):
    task = store.get_tasks_for_job(job.job_id)[0]
    store.claim_task(task.task_id)

    store.update_task_status(task.task_id, "pending", error="HTTP 503: Service Unavailable")
    assert store.get_task(task.task_id).error_message == "HTTP 503: Service Unavailable"

    store.claim_task(task.task_id)
    completed = store.update_task_status(task.task_id, "completed", chunks_created=4)
    assert completed.completed_at is not None
    assert completed.chunks_created == 4
    assert completed.error_message is None

def test_increment_retry_count(store, job):
    task = store.get_tasks_for_job(job.job_id)[0]

    assert store.increment_task_retry_count(task.task_id) == 1
    assert store.increment_task_retry_count(task.task_id) == 2
    assert store.get_task(task.task_id).retry_count == 2

def test_update_job_progress_and_terminal_status(store, job):
    store.claim_job(job.job_id)
    store.update_job_progress(job.job_id, completed=1, failed=1, cancelled=0)
    finished = store.update_job_status(job.job_id, "partial", error="1 of 2 tasks failed")

    assert finished.completed_tasks == 1
    assert finished.failed_tasks == 1
    assert finished.completed_at is not None
    assert finished.is_terminal

def test_unknown_job_raises(store):
    assert store.get_job("missing") is None
    with pytest.raises(JobNotFoundError):
        store.update_job_status("missing", "failed")
    assert not store.transition_job("missing", ["pending"], "processing")

def test_list_pending_jobs_oldest_first(store):
    jobs = [store.create_job(f"bot-{i}", []) for i in range(4)]
    store.claim_job(jobs[1].job_id)

    pending = store.list_pending_jobs(limit=2)

    assert [j.job_id for j in pending] == [jobs[0].job_id, jobs[2].job_id]
    assert [j.job_id for j in store.list_jobs_by_status("processing")] == [jobs[1].job_id]

def test_knowledge_chunks_are_stored_per_chatbot(store):
    chunk = KnowledgeChunk(
        chunk_id="c1", chatbot_id="bot-1", source_type="website", source_url="https://example.com",
        chunk_text="Hello", chunk_index=0, content_hash="abc",
    )
    store.create_knowledge_chunks([chunk])

    assert [c.chunk_id for c in store.get_knowledge_chunks("bot-1")] == ["c1"]
    assert store.get_knowledge_chunks("bot-2") == []

def test_chatbot_status_keeps_last_job_id(store):
    store.update_chatbot_indexing_status("bot-1", "processing", "job-1")
    store.update_chatbot_indexing_status("bot-1", "completed")

    state = store.get_chatbot_indexing_status("bot-1")
    assert state.status == "completed"
    assert state.job_id == "job-1"
    assert store.get_chatbot_indexing_status("bot-2") is None

def test_task_outcome_only_recorded_from_processing(store, job):
    task = store.get_tasks_for_job(job.job_id)[0]
    store.claim_task(task.task_id)
    assert store.transition_task(task.task_id, ["processing"], "failed", "Marked failed by watchdog")

    assert not store.transition_task(task.task_id, ["processing"], "completed", chunks_created=3)
    assert store.get_task(task.task_id).status == "failed"
    assert store.get_task(task.task_id).chunks_created == 0

    other = store.get_tasks_for_job(job.job_id)[1]
    store.claim_task(other.task_id)
    assert store.transition_task(other.task_id, ["processing"], "completed", chunks_created=3)
    assert store.get_task(other.task_id).chunks_created == 3
