"""Queue leasing, retry backoff, stalled recovery and priority against fakeredis."""

import pytest

from deckflow.config import QueuePolicy
from deckflow.services.job_queue import JobQueue, LeaseLost


@pytest.fixture
def queue(redis_client, clock):
    policy = QueuePolicy(
        family="generation",
        concurrency=2,
        lease_seconds=300,
        lease_renew_seconds=60,
        max_attempts=3,
        backoff_base_ms=1000,
    )
    return JobQueue(
        redis_client,
        "generation",
        policy,
        prefix="test",
        completed_retention_seconds=100,
        failed_retention_seconds=1000,
        clock=clock,
    )


class TestLeasing:
    def test_lease_returns_entry_with_attempt_counted(self, queue):
        queue.enqueue("job-1", {"request": {"x": 1}})

        entry = queue.lease("worker-a")

        assert entry.job_id == "job-1"
        assert entry.payload == {"request": {"x": 1}}
        assert entry.attempts_made == 1
        assert entry.lock_owner == "worker-a"
        assert entry.state == "active"
        assert queue.lease("worker-b") is None

    def test_empty_queue_returns_none(self, queue):
        assert queue.lease("worker-a") is None

    def test_lower_priority_number_is_leased_first(self, queue, clock):
        queue.enqueue("pptx", {}, priority=2)
        clock.advance(1)
        queue.enqueue("pdf", {}, priority=1)

        assert queue.lease("w").job_id == "pdf"
        assert queue.lease("w").job_id == "pptx"

    def test_same_priority_is_fifo(self, queue, clock):
        queue.enqueue("first", {})
        clock.advance(1)
        queue.enqueue("second", {})

        assert queue.lease("w").job_id == "first"

    def test_enqueue_same_job_id_does_not_duplicate(self, queue):
        queue.enqueue("job-1", {"v": 1})
        queue.enqueue("job-1", {"v": 2})

        assert queue.counts()["waiting"] == 1
        assert queue.lease("w").payload == {"v": 2}
        assert queue.lease("w") is None

    def test_enqueue_while_active_keeps_single_delivery(self, queue):
        queue.enqueue("job-1", {})
        queue.lease("w")
        queue.enqueue("job-1", {})

        assert queue.counts() == {"waiting": 0, "delayed": 0, "active": 1, "completed": 0, "failed": 0}


class TestSettlement:
    def test_ack_moves_entry_to_completed(self, queue):
        queue.enqueue("job-1", {})
        entry = queue.lease("w")

        queue.ack(entry)

        assert queue.get_entry("job-1").state == "completed"
        assert queue.counts()["completed"] == 1
        assert queue.counts()["active"] == 0

    def test_ack_by_non_owner_raises_lease_lost(self, queue, clock):
        queue.enqueue("job-1", {})
        entry = queue.lease("worker-a")
        clock.advance(301)
        queue.scan_stalled()
        queue.lease("worker-b")

        with pytest.raises(LeaseLost):
            queue.ack(entry)

    def test_stale_lease_cannot_settle_redelivery_to_same_worker_id(self, queue, clock):
        queue.enqueue("job-1", {})
        stale = queue.lease("proc-1")
        clock.advance(301)
        queue.scan_stalled()
        fresh = queue.lease("proc-1")

        assert fresh.attempts_made == 2
        assert fresh.lock_token != stale.lock_token
        with pytest.raises(LeaseLost):
            queue.renew_lease(stale, "proc-1")
        with pytest.raises(LeaseLost):
            queue.ack(stale)
        with pytest.raises(LeaseLost):
            queue.nack(stale, retriable=True)
        assert queue.get_entry("job-1").state == "active"

        queue.ack(fresh)
        assert queue.get_entry("job-1").state == "completed"

    def test_retriable_nack_delays_with_exponential_backoff(self, queue, clock):
        queue.enqueue("job-1", {})
        entry = queue.lease("w")

        assert queue.nack(entry, retriable=True, error="INFRA_ERROR: timeout") == "retry"
        assert queue.get_entry("job-1").state == "delayed"
        assert queue.get_entry("job-1").last_error == "INFRA_ERROR: timeout"
        clock.advance(0.5)
        assert queue.lease("w") is None

        clock.advance(0.6)
        second = queue.lease("w")
        assert second.attempts_made == 2
        assert queue.nack(second, retriable=True) == "retry"

        clock.advance(1.5)
        assert queue.lease("w") is None
        clock.advance(0.6)
        third = queue.lease("w")
        assert third.attempts_made == 3
        assert queue.nack(third, retriable=True) == "failed"
        assert queue.get_entry("job-1").state == "failed"

    def test_non_retriable_nack_fails_immediately(self, queue):
        queue.enqueue("job-1", {})
        entry = queue.lease("w")

        assert queue.nack(entry, retriable=False, error="INVALID_REQUEST: bad") == "failed"
        assert queue.counts()["failed"] == 1

    def test_backoff_doubles_per_attempt(self, queue):
        assert queue.backoff_seconds(1) == 1.0
        assert queue.backoff_seconds(2) == 2.0
        assert queue.backoff_seconds(3, 2000) == 8.0

    def test_will_exhaust(self, queue):
        queue.enqueue("job-1", {})
        entry = queue.lease("w")

        assert entry.will_exhaust(retriable=False) is True
        assert entry.will_exhaust(retriable=True) is False


class TestStalledRecovery:
    def test_expired_lease_returns_to_waiting(self, queue, clock):
        queue.enqueue("job-1", {})
        queue.lease("worker-a")
        clock.advance(301)

        stalled = queue.scan_stalled()

        assert [(row.job_id, row.terminal) for row in stalled] == [("job-1", False)]
        again = queue.lease("worker-b")
        assert again.job_id == "job-1"
        assert again.attempts_made == 2
        assert again.lock_owner == "worker-b"

    def test_renewed_lease_is_not_stalled(self, queue, clock):
        queue.enqueue("job-1", {})
        entry = queue.lease("worker-a")
        clock.advance(200)
        renewed = queue.renew_lease(entry, "worker-a")
        clock.advance(200)

        assert queue.scan_stalled() == []
        assert renewed.lock_expires_at == pytest.approx(clock.now + 100)

    def test_renew_by_other_worker_raises(self, queue):
        queue.enqueue("job-1", {})
        entry = queue.lease("worker-a")

        with pytest.raises(LeaseLost):
            queue.renew_lease(entry, "worker-b")

    def test_stalled_on_last_attempt_is_terminal(self, queue, clock):
        queue.enqueue("job-1", {})
        for _ in range(3):
            queue.lease("w")
            clock.advance(301)
            stalled = queue.scan_stalled()

        assert stalled[0].terminal is True
        assert stalled[0].attempts_made == 3
        assert queue.get_entry("job-1").state == "failed"
        assert queue.lease("w") is None


def test_purge_drops_entries_past_retention(queue, clock):
    queue.enqueue("done", {})
    queue.ack(queue.lease("w"))
    queue.enqueue("broken", {})
    queue.nack(queue.lease("w"), retriable=False)

    clock.advance(101)
    assert queue.purge_expired() == 1
    assert queue.has_entry("done") is False
    assert queue.has_entry("broken") is True

    clock.advance(1000)
    assert queue.purge_expired() == 1
    assert queue.counts() == {"waiting": 0, "delayed": 0, "active": 0, "completed": 0, "failed": 0}
