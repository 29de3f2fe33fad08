# =============================================================================
# Chat Job Processor — What a Worker Does With One Job
# =============================================================================
#
# Kept free of Celery so it can be driven directly in tests:
#
#   1. claim the job (conditional UPDATE; no claim → nothing to do)
#   2. run the agent for the single message, or for each batch message in
#      order, reporting progress as it goes
#   3. complete the job with its result, or record a failed attempt
#
# PROGRESS MILESTONES (single chat):
#   10  job accepted
#   30  tool decision made          (reported by the agent graph)
#   90  response ready
#   100 result stored               (set by JobQueue.complete)
# Batch jobs report floor(i / n * 100) before message i.
#
# Progress writes double as lock heartbeats, and a background heartbeat
# extends the lock every lock_duration / 2 while the agent waits on its
# tool and completion calls. A progress write that finds the job no longer
# owned (cancelled, or recovered as stalled) stops processing.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from datetime import UTC, datetime
from typing import Any

from app.agents.orchestrator import ChatAgent
from app.config import settings
from app.models.jobs import BatchChatPayload, ChatMessagePayload, ChatResult
from app.services.queue import ClaimedJob, JobQueue

logger = logging.getLogger(__name__)

ACCEPTED_PROGRESS = 10
RESPONSE_READY_PROGRESS = 90


class JobLost(Exception):
    """The worker no longer owns the job it is processing."""


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex[:16]}"


class ChatJobProcessor:
    """Claims and runs chat jobs from a JobQueue."""

    def __init__(
        self,
        queue: JobQueue,
        agent: ChatAgent,
        timeout_s: float | None = None,
        heartbeat_interval_s: float | None = None,
    ) -> None:
        self._queue = queue
        self._agent = agent
        self._timeout_s = timeout_s or settings.job_timeout_s
        self._heartbeat_interval_s = heartbeat_interval_s or queue.lock_duration_s / 2

    async def process(self, job_id: str) -> bool:
        """
        Run one attempt of a job.

        Returns True if the job was completed by this call. Attempt failures
        (including timeouts) are recorded on the queue, never raised.
        """
        claimed = self._queue.claim(job_id)
        if claimed is None:
            return False

        started = time.monotonic()
        heartbeat = asyncio.create_task(self._heartbeat(claimed))
        try:
            result = await asyncio.wait_for(self._run(claimed), timeout=self._timeout_s)
        except JobLost:
            logger.warning("Job %s was cancelled or recovered mid-flight", job_id)
            return False
        except asyncio.TimeoutError:
            self._queue.fail_attempt(
                job_id, claimed.lock_token, f"Job timed out after {self._timeout_s}s",
            )
            return False
        except Exception as exc:
            logger.exception("Error processing job %s: %s", job_id, exc)
            self._queue.fail_attempt(job_id, claimed.lock_token, str(exc) or type(exc).__name__)
            return False
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass

        completed = self._queue.complete(job_id, claimed.lock_token, result)
        if completed:
            logger.info(
                "Job %s completed in %dms",
                job_id, int((time.monotonic() - started) * 1000),
            )
        return completed

    # -- Internal Helpers ----------------------------------------------------

    async def _heartbeat(self, claimed: ClaimedJob) -> None:
        """Keep the lock alive while the tool and completion calls run."""
        while True:
            await asyncio.sleep(self._heartbeat_interval_s)
            try:
                owned = self._queue.extend_lock(claimed.id, claimed.lock_token)
            except Exception as exc:
                logger.exception("Heartbeat for job %s failed: %s", claimed.id, exc)
                continue
            if not owned:
                logger.info("Job %s no longer owned, stopping heartbeat", claimed.id)
                return

    async def _run(self, claimed: ClaimedJob) -> Any:
        self._report(claimed, ACCEPTED_PROGRESS)
        if isinstance(claimed.payload, BatchChatPayload):
            return await self._run_batch(claimed, claimed.payload)
        result = await self._run_single(claimed, claimed.payload, report=True)
        self._report(claimed, RESPONSE_READY_PROGRESS)
        return result.model_dump(mode="json", by_alias=True)

    async def _run_single(
        self,
        claimed: ClaimedJob,
        payload: ChatMessagePayload,
        report: bool,
        started: float | None = None,
    ) -> ChatResult:
        started = time.monotonic() if started is None else started
        logger.info(
            "Processing chat for job %s: %s",
            claimed.id, payload.message[:80],
        )
        run = await self._agent.run(
            payload.message,
            payload.conversation_history,
            on_progress=(lambda p: self._report(claimed, p)) if report else None,
        )
        return ChatResult(
            response=run.answer,
            session_id=payload.session_id or new_session_id(),
            tools_used=run.tools_used,
            processing_time=int((time.monotonic() - started) * 1000),
            timestamp=datetime.now(UTC).isoformat(),
        )

    async def _run_batch(self, claimed: ClaimedJob, batch: BatchChatPayload) -> list[dict]:
        started = time.monotonic()
        total = len(batch.messages)
        results: list[dict] = []

        for i, message in enumerate(batch.messages):
            self._report(claimed, math.floor(i / total * 100))
            result = await self._run_single(claimed, message, report=False, started=started)
            results.append(result.model_dump(mode="json", by_alias=True))

        logger.info("Batch job %s answered %d messages", claimed.id, total)
        return results

    def _report(self, claimed: ClaimedJob, progress: int) -> None:
        if not self._queue.update_progress(claimed.id, claimed.lock_token, progress):
            raise JobLost(claimed.id)
