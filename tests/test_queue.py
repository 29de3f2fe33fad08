# =============================================================================
# Unit Tests — Job Queue
# =============================================================================
#
# Exercises the full job lifecycle against in-memory SQLite: enqueue,
# claim, progress heartbeats, completion, backoff retries, stall recovery,
# cancel / retry rules, retention cleanup and pause / resume.
# =============================================================================

from __future__ import annotations

from datetime import timedelta

import pytest

from app.errors import UpstreamError
from app.models.jobs import BatchChatPayload, ChatMessagePayload, JobKind, JobStatus
from app.services.queue import STALLED_REASON, JobOptions, JobQueue


def _chat(message: str = "What is Shark Tank?") -> ChatMessagePayload:
    return ChatMessagePayload(message=message)


def _batch(*messages: str) -> BatchChatPayload:
    return BatchChatPayload(messages=[ChatMessagePayload(message=m) for m in messages])


# ---------------------------------------------------------------------------
# Test: Enqueue
# ---------------------------------------------------------------------------


class TestEnqueue:

    def test_new_job_is_waiting_and_dispatched(self, queue, dispatcher):
        job_id = queue.enqueue(_chat())

        info = queue.get_status(job_id)
        assert info.status is JobStatus.WAITING
        assert info.kind is JobKind.SINGLE_CHAT
        assert info.progress == 0
        assert info.attempts_made == 0
        assert info.result is None
        assert info.failed_reason is None
        assert dispatcher.calls == [(job_id, 0.0)]

    def test_chat_jobs_get_three_attempts(self, queue):
        info = queue.get_status(queue.enqueue(_chat()))
        assert info.max_attempts == 3

    def test_batch_jobs_get_two_attempts(self, queue):
        info = queue.get_status(queue.enqueue(_batch("a", "b")))
        assert info.kind is JobKind.BATCH_CHAT
        assert info.max_attempts == 2

    def test_payload_is_stored_camel_case(self, queue):
        payload = ChatMessagePayload(message="Hi", session_id="session_1")
        info = queue.get_status(queue.enqueue(payload))
        assert info.data["message"] == "Hi"
        assert info.data["sessionId"] == "session_1"

    def test_unknown_job_has_no_status(self, queue):
        assert queue.get_status("does-not-exist") is None

    def test_dispatch_failure_leaves_no_orphan(self, session_scope, clock):
        def broken(job_id, countdown):
            raise ConnectionError("broker down")

        queue = JobQueue(session_scope, dispatcher=broken, clock=clock)
        with pytest.raises(UpstreamError):
            queue.enqueue(_chat())
        assert queue.stats().total == 0


# ---------------------------------------------------------------------------
# Test: Claim, Progress, Complete
# ---------------------------------------------------------------------------


class TestProcessing:

    def test_claim_marks_job_active(self, queue, clock):
        job_id = queue.enqueue(_chat())
        claimed = queue.claim(job_id)

        assert claimed is not None
        assert claimed.payload.message == "What is Shark Tank?"
        info = queue.get_status(job_id)
        assert info.status is JobStatus.ACTIVE
        assert info.processed_at == clock.now

    def test_job_cannot_be_claimed_twice(self, queue):
        job_id = queue.enqueue(_chat())
        assert queue.claim(job_id) is not None
        assert queue.claim(job_id) is None

    def test_progress_never_decreases(self, queue):
        job_id = queue.enqueue(_chat())
        claimed = queue.claim(job_id)

        assert queue.update_progress(job_id, claimed.lock_token, 30)
        assert queue.update_progress(job_id, claimed.lock_token, 10)
        assert queue.get_status(job_id).progress == 30

    def test_progress_with_stale_token_is_rejected(self, queue):
        job_id = queue.enqueue(_chat())
        queue.claim(job_id)
        assert not queue.update_progress(job_id, "not-the-token", 50)

    def test_complete_stores_result(self, queue):
        job_id = queue.enqueue(_chat())
        claimed = queue.claim(job_id)
        result = {"response": "Shark Tank is a TV show.", "sessionId": "s1"}

        assert queue.complete(job_id, claimed.lock_token, result)

        info = queue.get_status(job_id)
        assert info.status is JobStatus.COMPLETED
        assert info.progress == 100
        assert info.result == result
        assert queue.get_result(job_id) == result

    def test_completed_status_is_stable(self, queue, clock):
        job_id = queue.enqueue(_chat())
        claimed = queue.claim(job_id)
        queue.complete(job_id, claimed.lock_token, {"response": "ok"})

        first = queue.get_status(job_id)
        clock.advance(600)
        assert queue.get_status(job_id) == first

    def test_complete_with_wrong_token_is_discarded(self, queue):
        job_id = queue.enqueue(_chat())
        queue.claim(job_id)
        assert not queue.complete(job_id, "wrong", {"response": "x"})
        assert queue.get_result(job_id) is None


# ---------------------------------------------------------------------------
# Test: Failed Attempts & Backoff
# ---------------------------------------------------------------------------


class TestBackoff:

    def test_failed_attempt_is_delayed_with_exponential_backoff(self, queue, dispatcher, clock):
        job_id = queue.enqueue(_chat())

        claimed = queue.claim(job_id)
        outcome = queue.fail_attempt(job_id, claimed.lock_token, "boom")
        assert outcome.status is JobStatus.DELAYED
        assert outcome.delay_s == 2.0
        assert queue.get_status(job_id).status is JobStatus.DELAYED

        clock.advance(2)
        claimed = queue.claim(job_id)
        outcome = queue.fail_attempt(job_id, claimed.lock_token, "boom again")
        assert outcome.delay_s == 4.0

        assert dispatcher.for_job(job_id) == [0.0, 2.0, 4.0]

    def test_delayed_job_is_not_claimable_early(self, queue, clock):
        job_id = queue.enqueue(_chat())
        claimed = queue.claim(job_id)
        queue.fail_attempt(job_id, claimed.lock_token, "boom")

        clock.advance(1)
        assert queue.claim(job_id) is None
        clock.advance(1)
        assert queue.claim(job_id) is not None

    def test_exhausted_attempts_fail_the_job(self, queue, clock):
        job_id = queue.enqueue(_chat())
        for _ in range(3):
            claimed = queue.claim(job_id)
            assert claimed is not None
            outcome = queue.fail_attempt(job_id, claimed.lock_token, "upstream down")
            clock.advance(10)

        assert outcome.status is JobStatus.FAILED
        info = queue.get_status(job_id)
        assert info.status is JobStatus.FAILED
        assert info.attempts_made == 3
        assert info.failed_reason == "upstream down"
        assert info.result is None

    def test_batch_backoff_starts_at_three_seconds(self, queue):
        job_id = queue.enqueue(_batch("a"))
        claimed = queue.claim(job_id)
        outcome = queue.fail_attempt(job_id, claimed.lock_token, "boom")
        assert outcome.delay_s == 3.0

    def test_custom_options(self, queue):
        job_id = queue.enqueue(_chat(), JobOptions(attempts=1, backoff_s=0.5))
        claimed = queue.claim(job_id)
        outcome = queue.fail_attempt(job_id, claimed.lock_token, "boom")
        assert outcome.status is JobStatus.FAILED


# ---------------------------------------------------------------------------
# Test: Cancel & Retry
# ---------------------------------------------------------------------------


class TestCancelRetry:

    def _failed_job(self, queue) -> str:
        job_id = queue.enqueue(_chat(), JobOptions(attempts=1, backoff_s=1))
        claimed = queue.claim(job_id)
        queue.fail_attempt(job_id, claimed.lock_token, "boom")
        return job_id

    def test_cancel_waiting_job_removes_it(self, queue):
        job_id = queue.enqueue(_chat("Tell me about Mark Cuban"))
        assert queue.cancel(job_id) is True
        assert queue.get_status(job_id) is None

    def test_cancel_active_job_drops_late_result(self, queue):
        job_id = queue.enqueue(_chat())
        claimed = queue.claim(job_id)
        assert queue.cancel(job_id) is True
        assert not queue.complete(job_id, claimed.lock_token, {"response": "late"})
        assert queue.fail_attempt(job_id, claimed.lock_token, "late") is None

    def test_cancel_delayed_job(self, queue):
        job_id = queue.enqueue(_chat())
        claimed = queue.claim(job_id)
        queue.fail_attempt(job_id, claimed.lock_token, "boom")
        assert queue.cancel(job_id) is True

    def test_cancel_completed_job_is_refused(self, queue):
        job_id = queue.enqueue(_chat())
        claimed = queue.claim(job_id)
        queue.complete(job_id, claimed.lock_token, {"response": "ok"})
        assert queue.cancel(job_id) is False
        assert queue.get_status(job_id) is not None

    def test_cancel_unknown_job(self, queue):
        assert queue.cancel("nope") is False

    def test_retry_failed_job(self, queue, dispatcher):
        job_id = self._failed_job(queue)

        assert queue.retry(job_id) is True

        info = queue.get_status(job_id)
        assert info.status is JobStatus.WAITING
        assert info.attempts_made == 2
        assert info.failed_reason is None
        assert info.finished_at is None
        assert dispatcher.for_job(job_id)[-1] == 0.0
        assert queue.claim(job_id) is not None

    def test_retry_non_failed_job_is_refused(self, queue):
        job_id = queue.enqueue(_chat())
        assert queue.retry(job_id) is False
        assert queue.retry("nope") is False


# ---------------------------------------------------------------------------
# Test: Stall Detection
# ---------------------------------------------------------------------------


class TestStalls:

    def test_expired_lock_reports_stuck(self, queue, clock):
        job_id = queue.enqueue(_chat())
        queue.claim(job_id)
        clock.advance(31)
        assert queue.get_status(job_id).status is JobStatus.STUCK

    def test_heartbeat_keeps_job_active(self, queue, clock):
        job_id = queue.enqueue(_chat())
        claimed = queue.claim(job_id)
        clock.advance(20)
        queue.update_progress(job_id, claimed.lock_token, 30)
        clock.advance(20)

        assert queue.get_status(job_id).status is JobStatus.ACTIVE
        assert queue.sweep().requeued == []

    def test_extend_lock_keeps_job_active_without_progress(self, queue, clock):
        job_id = queue.enqueue(_chat())
        claimed = queue.claim(job_id)
        clock.advance(20)
        assert queue.extend_lock(job_id, claimed.lock_token) is True
        clock.advance(20)

        assert queue.sweep().requeued == []
        info = queue.get_status(job_id)
        assert info.status is JobStatus.ACTIVE
        assert info.progress == 0

    def test_extend_lock_with_stale_token_is_rejected(self, queue):
        job_id = queue.enqueue(_chat())
        queue.claim(job_id)
        assert queue.extend_lock(job_id, "not-the-token") is False
        assert queue.extend_lock("missing", "token") is False

    def test_stalled_job_is_requeued_then_failed(self, queue, clock, dispatcher):
        job_id = queue.enqueue(_chat())

        first = queue.claim(job_id)
        clock.advance(31)
        report = queue.sweep()
        assert report.requeued == [job_id]
        assert queue.get_status(job_id).status is JobStatus.WAITING
        assert dispatcher.for_job(job_id) == [0.0, 0.0]

        # The crashed worker's late result is rejected
        assert not queue.complete(job_id, first.lock_token, {"response": "late"})

        queue.claim(job_id)
        clock.advance(31)
        report = queue.sweep()
        assert report.failed == [job_id]

        info = queue.get_status(job_id)
        assert info.status is JobStatus.FAILED
        assert info.failed_reason == STALLED_REASON

    def test_overdue_delayed_job_is_redispatched(self, queue, clock):
        job_id = queue.enqueue(_chat())
        claimed = queue.claim(job_id)
        queue.fail_attempt(job_id, claimed.lock_token, "boom")

        clock.advance(2 + 31)
        assert queue.sweep().redispatched == [job_id]


# ---------------------------------------------------------------------------
# Test: Stats, Listing, Cleanup
# ---------------------------------------------------------------------------


class TestAdministration:

    def test_stats_count_by_status(self, queue):
        done = queue.enqueue(_chat())
        claimed = queue.claim(done)
        queue.complete(done, claimed.lock_token, {"response": "ok"})
        queue.enqueue(_chat())
        queue.enqueue(_chat())

        stats = queue.stats()
        assert stats.completed == 1
        assert stats.waiting == 2
        assert stats.total == 3

    def test_list_jobs_newest_first(self, queue, clock):
        first = queue.enqueue(_chat("one"))
        clock.advance(1)
        second = queue.enqueue(_chat("two"))

        jobs = queue.list_jobs(limit=10)
        assert [j.id for j in jobs] == [second, first]
        assert len(queue.list_jobs(limit=1)) == 1

    def test_list_jobs_by_status(self, queue):
        done = queue.enqueue(_chat())
        claimed = queue.claim(done)
        queue.complete(done, claimed.lock_token, {"response": "ok"})
        queue.enqueue(_chat())

        completed = queue.list_jobs(status=JobStatus.COMPLETED)
        assert [j.id for j in completed] == [done]

    def test_clean_removes_only_old_finished_jobs(self, queue, clock):
        old = queue.enqueue(_chat())
        claimed = queue.claim(old)
        queue.complete(old, claimed.lock_token, {"response": "ok"})

        clock.advance(3600)
        recent = queue.enqueue(_chat())
        claimed = queue.claim(recent)
        queue.complete(recent, claimed.lock_token, {"response": "ok"})
        waiting = queue.enqueue(_chat())

        removed = queue.clean(timedelta(minutes=30))

        assert removed == 1
        assert queue.get_status(old) is None
        assert queue.get_status(recent) is not None
        assert queue.get_status(waiting) is not None

    def test_pause_and_resume(self, queue, dispatcher):
        parked = queue.enqueue(_chat())
        assert queue.pause() == 1
        assert queue.is_paused()
        assert queue.get_status(parked).status is JobStatus.PAUSED

        late = queue.enqueue(_chat())
        assert queue.get_status(late).status is JobStatus.PAUSED
        assert dispatcher.for_job(late) == []
        assert queue.claim(parked) is None

        assert queue.resume() == 2
        assert not queue.is_paused()
        assert queue.get_status(late).status is JobStatus.WAITING
        assert dispatcher.for_job(late) == [0.0]
        assert queue.claim(parked) is not None
