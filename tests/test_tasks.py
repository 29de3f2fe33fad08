# =============================================================================
# Unit Tests — Celery Tasks
# =============================================================================
#
# Tasks are called directly (no broker): a Celery task object invoked like
# a function runs its body in-process.
# =============================================================================

from unittest.mock import MagicMock, patch

from app.agents.orchestrator import AgentRunResult
from app.models.jobs import ChatMessagePayload, JobStatus
from app.workers import tasks


class TestDispatch:

    def test_dispatch_job_sends_wake_up(self):
        with patch("app.workers.tasks.process_chat_job") as task:
            tasks.dispatch_job("job-1", 4.0)
        task.apply_async.assert_called_once_with(args=["job-1"], countdown=4.0)

    def test_negative_countdown_clamped(self):
        with patch("app.workers.tasks.process_chat_job") as task:
            tasks.dispatch_job("job-1", -1.0)
        assert task.apply_async.call_args.kwargs["countdown"] == 0.0


class TestTasks:

    def test_process_chat_job_runs_processor(self, queue):
        job_id = queue.enqueue(ChatMessagePayload(message="Hi", session_id="s1"))
        agent = MagicMock()

        async def run(message, history=(), on_progress=None):
            return AgentRunResult(answer="Hello!", tools_used=[])

        agent.run = run

        with patch("app.services.queue.get_job_queue", return_value=queue), \
             patch("app.agents.orchestrator.get_chat_agent", return_value=agent):
            assert tasks.process_chat_job(job_id) is True

        assert queue.get_status(job_id).status is JobStatus.COMPLETED

    def test_sweep_reports_job_ids(self, queue, clock):
        job_id = queue.enqueue(ChatMessagePayload(message="Hi"))
        queue.claim(job_id)
        clock.advance(31)

        with patch("app.services.queue.get_job_queue", return_value=queue):
            report = tasks.sweep_stalled_jobs()

        assert report == {"requeued": [job_id], "failed": [], "redispatched": []}

    def test_clean_uses_retention_window(self, queue):
        with patch("app.services.queue.get_job_queue", return_value=queue):
            assert tasks.clean_old_jobs() == 0
