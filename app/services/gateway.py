# =============================================================================
# Job Gateway — Submission + Polling Façade over the Job Queue
# =============================================================================
#
# Two ways in:
#
#   ASYNC  submit() → jobId, returns immediately. The caller polls
#          get_status() / get_result() on its own schedule.
#
#   SYNC   submit_and_wait() → submit, then poll every `poll_interval`
#          until the job is completed (return its result), failed (raise
#          JobFailedError), or `max_wait` elapses (return a TimedOut marker
#          carrying the jobId so the caller can fall back to polling).
#
# Validation happens here, BEFORE anything touches the queue: blank
# messages and empty batches raise ValidationError.
#
# The queue is synchronous (SQLAlchemy); every call into it is pushed onto
# a worker thread with asyncio.to_thread() so the event loop never blocks.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from app.config import settings
from app.errors import JobFailedError, NotFoundError, ValidationError
from app.models.jobs import (
    BatchChatPayload,
    ChatMessagePayload,
    ConversationTurn,
    JobInfo,
    JobStatus,
)
from app.services.queue import JobQueue
from app.services.sessions import SessionStore

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


# ---------------------------------------------------------------------------
# Result Shapes
# ---------------------------------------------------------------------------


@dataclass
class JobResultView:
    """What get_result() reports for a job that exists."""

    job_id: str
    status: JobStatus
    result: Any = None
    progress: int = 0
    failed_reason: str | None = None

    @property
    def is_completed(self) -> bool:
        return self.status is JobStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status is JobStatus.FAILED


@dataclass
class TimedOut:
    """submit_and_wait() gave up waiting; the job keeps running."""

    job_id: str
    waited_s: float


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class JobGateway:
    """
    Async entry point for chat jobs.

    Args:
        queue: The job queue to submit to and read from.
        sessions: Optional session store for history fill-in and exchange
            recording. Without one, the caller owns all history.
        sleep: Awaitable sleep used between polls (tests inject a fake).
        monotonic: Clock used to bound submit_and_wait().
    """

    def __init__(
        self,
        queue: JobQueue,
        sessions: SessionStore | None = None,
        sleep: Sleep = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._queue = queue
        self._sessions = sessions
        self._sleep = sleep
        self._monotonic = monotonic

    # -- Submission ----------------------------------------------------------

    async def submit(
        self,
        message: str,
        session_id: str | None = None,
        history: Sequence[ConversationTurn | dict] | None = None,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Validate and enqueue one chat message. Returns the job id."""
        if not message or not message.strip():
            raise ValidationError("Message is required and must be a non-empty string")

        if history is None and session_id and self._sessions is not None:
            history = await asyncio.to_thread(self._sessions.get_history, session_id)

        try:
            payload = ChatMessagePayload(
                message=message,
                session_id=session_id,
                conversation_history=list(history or []),
                user_id=user_id,
                metadata=metadata or {},
            )
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid chat message: {exc}") from exc

        job_id = await asyncio.to_thread(self._queue.enqueue, payload)
        logger.info(
            "Submitted chat job %s (session=%s, user=%s, history=%d)",
            job_id, session_id, user_id, len(payload.conversation_history),
        )
        return job_id

    async def submit_batch(
        self,
        messages: Sequence[ChatMessagePayload | dict],
        user_id: str | None = None,
    ) -> str:
        """Validate and enqueue several messages as one batch job."""
        if not messages:
            raise ValidationError("Messages array is required and must not be empty")

        try:
            payload = BatchChatPayload(messages=list(messages), user_id=user_id)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid batch: {exc}") from exc

        job_id = await asyncio.to_thread(self._queue.enqueue, payload)
        logger.info(
            "Submitted batch job %s (%d messages, user=%s)",
            job_id, len(payload.messages), user_id,
        )
        return job_id

    # -- Polling -------------------------------------------------------------

    async def get_status(self, job_id: str) -> JobInfo:
        info = await asyncio.to_thread(self._queue.get_status, job_id)
        if info is None:
            raise NotFoundError(job_id)
        return info

    async def get_result(self, job_id: str) -> JobResultView:
        """
        Report a job's outcome.

        Completed jobs carry their stored result; failed jobs their reason;
        anything else is still processing. Unknown ids raise NotFoundError.
        """
        info = await self.get_status(job_id)
        view = JobResultView(
            job_id=job_id,
            status=info.status,
            result=info.result,
            progress=info.progress,
            failed_reason=info.failed_reason,
        )
        if view.is_completed:
            await self._record_exchange(info)
        return view

    async def submit_and_wait(
        self,
        message: str,
        session_id: str | None = None,
        history: Sequence[ConversationTurn | dict] | None = None,
        user_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        max_wait: float | None = None,
        poll_interval: float | None = None,
    ) -> Any | TimedOut:
        """
        Submit, then block (asynchronously) until the job finishes.

        Returns:
            The job's stored result, or TimedOut if `max_wait` elapsed first.

        Raises:
            ValidationError: The message was rejected before enqueueing.
            JobFailedError: The job ended in the failed state.
        """
        max_wait = settings.sync_wait_max_s if max_wait is None else max_wait
        poll_interval = (
            settings.sync_poll_interval_s if poll_interval is None else poll_interval
        )

        job_id = await self.submit(message, session_id, history, user_id, metadata)
        started = self._monotonic()

        while True:
            view = await self.get_result(job_id)
            if view.is_completed:
                return view.result
            if view.is_failed:
                raise JobFailedError(job_id, view.failed_reason)

            waited = self._monotonic() - started
            if waited >= max_wait:
                logger.warning("Sync wait for job %s timed out after %.1fs", job_id, waited)
                return TimedOut(job_id=job_id, waited_s=waited)

            await self._sleep(min(poll_interval, max(0.0, max_wait - waited)))

    # -- Queue Operations ----------------------------------------------------

    async def cancel(self, job_id: str) -> bool:
        return await asyncio.to_thread(self._queue.cancel, job_id)

    async def retry(self, job_id: str) -> bool:
        return await asyncio.to_thread(self._queue.retry, job_id)

    # -- Internal Helpers ----------------------------------------------------

    async def _record_exchange(self, info: JobInfo) -> None:
        if self._sessions is None or not isinstance(info.result, dict):
            return
        session_id = info.result.get("sessionId")
        user_message = info.data.get("message")
        response = info.result.get("response")
        if not (session_id and user_message and response):
            return
        await asyncio.to_thread(
            self._sessions.record_exchange, session_id, info.id, user_message, response,
        )


_gateway: JobGateway | None = None


def get_job_gateway() -> JobGateway:
    """Lazy singleton wired to the configured queue and session store."""
    global _gateway
    if _gateway is None:
        from app.services.queue import get_job_queue
        from app.services.sessions import get_session_store

        _gateway = JobGateway(get_job_queue(), get_session_store())
    return _gateway
