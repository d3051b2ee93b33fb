from unittest.mock import MagicMock, patch
from kb_indexer.services.job_lease import NullJobLease, RedlockJobLease

def test_null_lease_always_grants():
    lease = NullJobLease()

    token = lease.acquire("job-1")

    assert token is not None
    lease.release(token)

@patch("kb_indexer.services.job_lease.Redlock")
def test_redlock_lease_locks_job_resource(MockRedlock):
    client = MagicMock()
    dlm = MockRedlock.return_value
    dlm.lock.return_value = MagicMock(resource="indexing_job_lock:job-1")

    lease = RedlockJobLease([client], ttl_ms=60000)
    token = lease.acquire("job-1")
    lease.release(token)

    MockRedlock.assert_called_once_with([client])
    dlm.lock.assert_called_once_with("indexing_job_lock:job-1", 60000)
    dlm.unlock.assert_called_once_with(token)

@patch("kb_indexer.services.job_lease.Redlock")
def test_redlock_lease_held_elsewhere(MockRedlock):
    MockRedlock.return_value.lock.return_value = False

    assert RedlockJobLease([MagicMock()], ttl_ms=60000).acquire("job-1") is None

@patch("kb_indexer.services.job_lease.Redlock")
def test_redlock_release_failure_is_logged_not_raised(MockRedlock):
    MockRedlock.return_value.unlock.side_effect = ConnectionError("redis gone")

    RedlockJobLease([MagicMock()], ttl_ms=60000).release(MagicMock(resource="indexing_job_lock:job-1"))
