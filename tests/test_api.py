# =============================================================================
# API Tests — Queue Endpoints & Sync Chat Façade
# =============================================================================
#
# TestClient is used WITHOUT its context manager so the lifespan (which
# creates tables on the configured database) does not run. Dependencies
# are overridden with a gateway and queue built on in-memory SQLite.
# =============================================================================

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.agents.orchestrator import AgentRunResult
from app.api.deps import get_gateway, get_job_queue
from app.config import settings
from app.main import app
from app.models.jobs import ChatMessagePayload
from app.services.gateway import JobGateway
from app.services.queue import JobOptions
from app.services.sessions import InMemorySessionStore
from app.workers.processor import ChatJobProcessor

BASE = settings.public_base_path


class CannedAgent:
    async def run(self, message, history=(), on_progress=None):
        return AgentRunResult(answer=f"Here is what I found about {message}", tools_used=["shark_tank_search"])


@pytest.fixture
def sessions(clock):
    return InMemorySessionStore(timeout_s=600, clock=clock)


@pytest.fixture
def gateway(queue, sessions):
    return JobGateway(queue, sessions)


@pytest.fixture
def client(gateway, queue):
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_job_queue] = lambda: queue
    yield TestClient(app)
    app.dependency_overrides.clear()


def _finish(queue, job_id, result):
    claimed = queue.claim(job_id)
    queue.complete(job_id, claimed.lock_token, result)


def _fail(queue, job_id, reason):
    claimed = queue.claim(job_id)
    queue.fail_attempt(job_id, claimed.lock_token, reason)


# ---------------------------------------------------------------------------
# Test: Submission
# ---------------------------------------------------------------------------


class TestSubmission:

    def test_queue_chat(self, client, queue):
        response = client.post(f"{BASE}/chat", json={
            "message": "Tell me about Scrub Daddy",
            "sessionId": "session_1",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        job_id = body["jobId"]
        assert body["statusUrl"] == f"{BASE}/job/{job_id}"
        assert body["resultUrl"] == f"{BASE}/job/{job_id}/result"
        assert queue.get_status(job_id).data["sessionId"] == "session_1"

    @pytest.mark.parametrize("payload", [{}, {"message": ""}, {"message": "   "}])
    def test_blank_message_is_400(self, client, queue, payload):
        response = client.post(f"{BASE}/chat", json=payload)

        assert response.status_code == 400
        assert "Message is required" in response.json()["detail"]
        assert queue.stats().total == 0

    def test_queue_batch(self, client):
        response = client.post(f"{BASE}/batch", json={
            "messages": [{"message": "first"}, {"message": "second"}],
            "userId": "u1",
        })

        assert response.status_code == 200
        assert response.json()["messageCount"] == 2

    def test_empty_batch_is_400(self, client):
        response = client.post(f"{BASE}/batch", json={"messages": []})
        assert response.status_code == 400


# ---------------------------------------------------------------------------
# Test: Job Inspection & Control
# ---------------------------------------------------------------------------


class TestJobEndpoints:

    def test_status(self, client, queue):
        job_id = queue.enqueue(ChatMessagePayload(message="Hi"))

        response = client.get(f"{BASE}/job/{job_id}")

        assert response.status_code == 200
        job = response.json()["job"]
        assert job["id"] == job_id
        assert job["status"] == "waiting"
        assert job["attemptsMade"] == 0
        assert job["data"]["message"] == "Hi"

    def test_unknown_job_is_404(self, client):
        assert client.get(f"{BASE}/job/missing").status_code == 404
        response = client.get(f"{BASE}/job/missing/result")
        assert response.status_code == 404
        assert response.json()["detail"] == "Job not found"

    def test_result_while_processing(self, client, queue):
        job_id = queue.enqueue(ChatMessagePayload(message="Hi"))

        body = client.get(f"{BASE}/job/{job_id}/result").json()

        assert body["success"] is False
        assert body["message"] == "Job is still processing"
        assert body["status"] == "waiting"
        assert body["progress"] == 0

    def test_result_when_completed(self, client, queue):
        job_id = queue.enqueue(ChatMessagePayload(message="Hi"))
        _finish(queue, job_id, {"response": "Hello!", "sessionId": "s1"})

        body = client.get(f"{BASE}/job/{job_id}/result").json()

        assert body["success"] is True
        assert body["result"] == {"response": "Hello!", "sessionId": "s1"}

    def test_result_when_failed(self, client, queue):
        job_id = queue.enqueue(ChatMessagePayload(message="Hi"), JobOptions(attempts=1, backoff_s=1))
        _fail(queue, job_id, "completion backend down")

        body = client.get(f"{BASE}/job/{job_id}/result").json()

        assert body["success"] is False
        assert body["message"] == "Job failed"
        assert body["error"] == "completion backend down"

    def test_cancel(self, client, queue):
        job_id = queue.enqueue(ChatMessagePayload(message="Hi"))

        response = client.delete(f"{BASE}/job/{job_id}")
        assert response.status_code == 200
        assert response.json()["message"] == "Job cancelled successfully"

        assert client.delete(f"{BASE}/job/{job_id}").status_code == 400

    def test_retry(self, client, queue):
        job_id = queue.enqueue(ChatMessagePayload(message="Hi"), JobOptions(attempts=1, backoff_s=1))
        assert client.post(f"{BASE}/job/{job_id}/retry").status_code == 400

        _fail(queue, job_id, "boom")
        response = client.post(f"{BASE}/job/{job_id}/retry")

        assert response.status_code == 200
        assert queue.get_status(job_id).status.value == "waiting"


# ---------------------------------------------------------------------------
# Test: Queue Administration
# ---------------------------------------------------------------------------


class TestAdministration:

    def test_stats_and_listing(self, client, queue, clock):
        first = queue.enqueue(ChatMessagePayload(message="one"))
        clock.advance(1)
        second = queue.enqueue(ChatMessagePayload(message="two"))

        stats = client.get(f"{BASE}/stats").json()["stats"]
        assert stats["waiting"] == 2
        assert stats["total"] == 2

        body = client.get(f"{BASE}/jobs", params={"limit": 1}).json()
        assert body["count"] == 1
        assert body["jobs"][0]["id"] == second

        body = client.get(f"{BASE}/jobs", params={"status": "waiting"}).json()
        assert {j["id"] for j in body["jobs"]} == {first, second}

    def test_jobs_limit_is_bounded(self, client):
        assert client.get(f"{BASE}/jobs", params={"limit": 0}).status_code == 422
        assert client.get(f"{BASE}/jobs", params={"limit": 101}).status_code == 422

    def test_clean(self, client, queue, clock):
        job_id = queue.enqueue(ChatMessagePayload(message="Hi"))
        _finish(queue, job_id, {"response": "ok"})
        clock.advance(5)

        response = client.post(f"{BASE}/clean", params={"olderThan": 1000})

        assert response.json()["count"] == 1
        assert queue.get_status(job_id) is None

    def test_pause_resume_and_health(self, client, queue):
        queue.enqueue(ChatMessagePayload(message="Hi"))

        assert client.post(f"{BASE}/pause").json()["count"] == 1
        health = client.get(f"{BASE}/health").json()
        assert health["paused"] is True
        assert health["stats"]["paused"] == 1

        assert client.post(f"{BASE}/resume").json()["count"] == 1
        assert client.get(f"{BASE}/health").json()["paused"] is False

    def test_service_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"


# ---------------------------------------------------------------------------
# Test: Sync Chat Façade
# ---------------------------------------------------------------------------


class TestSyncChat:

    def _override(self, queue, sessions, sleep):
        app.dependency_overrides[get_gateway] = lambda: JobGateway(queue, sessions, sleep=sleep)

    def test_answer_within_wait(self, client, queue, sessions, dispatcher):
        processor = ChatJobProcessor(queue, CannedAgent())

        async def work_then_return(_seconds):
            await processor.process(dispatcher.calls[-1][0])

        self._override(queue, sessions, work_then_return)

        response = client.post("/agent/chat", json={"message": "Ring", "sessionId": "s1"})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["response"] == "Here is what I found about Ring"
        assert body["sessionId"] == "s1"
        assert body["toolsUsed"] == ["shark_tank_search"]
        assert [t.content for t in sessions.get_history("s1")] == [
            "Ring", "Here is what I found about Ring",
        ]

    def test_slow_job_returns_202(self, client, queue, sessions):
        async def never_done(_seconds):
            return None

        self._override(queue, sessions, never_done)

        with patch.object(settings, "sync_wait_max_s", 0.0):
            response = client.post("/agent/chat", json={"message": "Ring"})

        assert response.status_code == 202
        body = response.json()
        assert body["success"] is False
        assert body["resultUrl"] == f"{BASE}/job/{body['jobId']}/result"

    def test_failed_job_returns_502(self, client, queue, sessions, dispatcher, clock):
        async def fail_every_attempt(_seconds):
            job_id = dispatcher.calls[0][0]
            while (claimed := queue.claim(job_id)) is not None:
                queue.fail_attempt(job_id, claimed.lock_token, "completion backend down")
                clock.advance(60)

        self._override(queue, sessions, fail_every_attempt)

        response = client.post("/agent/chat", json={"message": "Ring"})

        assert response.status_code == 502
        assert response.json()["detail"]["error"] == "completion backend down"

    def test_blank_message_is_400(self, client):
        assert client.post("/agent/chat", json={"message": " "}).status_code == 400
