# =============================================================================
# Job Queue — Durable Chat Jobs over SQLAlchemy + Celery
# =============================================================================
#
# The queue's state lives in the `chat_jobs` table. Celery only carries
# wake-up messages ("job <id> is ready"); a worker that receives one must
# first CLAIM the row before doing any work. Claims, progress heartbeats,
# completion and failure are all conditional UPDATEs keyed on the job's
# current status and lock token, so two workers can never both own a job.
#
# LIFECYCLE:
#   enqueue()        → WAITING (or PAUSED while the queue is paused)
#   claim()          → ACTIVE, lock_token + lock_expires_at set
#   update_progress()→ progress = max(old, new), lock extended (heartbeat)
#   extend_lock()    → lock extended only (periodic worker heartbeat)
#   complete()       → COMPLETED, result stored
#   fail_attempt()   → DELAYED (backoff) while attempts remain, else FAILED
#   sweep()          → ACTIVE with expired lock → WAITING (stalled_count+1)
#                      or FAILED once stalled_count exceeds the limit
#   retry()          → FAILED → WAITING, attempts_made + 1
#   cancel()         → row deleted (only WAITING / ACTIVE / DELAYED)
#   clean()          → COMPLETED / FAILED rows older than a cutoff deleted
#
# BACKOFF:
#   delay(n) = backoff_s * 2 ** (n - 1) after the n-th failed attempt.
#   chat jobs: 3 attempts, 2s base.  batch jobs: 2 attempts, 3s base.
#
# Cancel / retry on a job in the wrong state return False instead of
# raising. Callers decide what that means (the API maps it to HTTP 400).
# =============================================================================

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update

from app.config import settings
from app.db.engine import SessionFactory, get_sync_session
from app.db.models import ChatJobRecord, QueueControl, StoredJobStatus
from app.errors import UpstreamError
from app.models.jobs import (
    BatchChatPayload,
    ChatMessagePayload,
    JobInfo,
    JobKind,
    JobStatus,
    QueueStats,
    job_payload_adapter,
)

logger = logging.getLogger(__name__)

# (job_id, countdown_seconds) → schedules a worker wake-up
Dispatcher = Callable[[str, float], None]
Clock = Callable[[], datetime]

STALLED_REASON = "job stalled more than allowable limit"

_CANCELLABLE = (
    StoredJobStatus.WAITING,
    StoredJobStatus.ACTIVE,
    StoredJobStatus.DELAYED,
)
_FINISHED = (StoredJobStatus.COMPLETED, StoredJobStatus.FAILED)


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(UTC)


def _aware(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobOptions:
    """Retry policy attached to a job at enqueue time."""

    attempts: int
    backoff_s: float


def default_job_options(kind: JobKind) -> JobOptions:
    """Per-kind retry policy from settings."""
    if kind is JobKind.BATCH_CHAT:
        return JobOptions(settings.batch_job_attempts, settings.batch_job_backoff_s)
    return JobOptions(settings.chat_job_attempts, settings.chat_job_backoff_s)


@dataclass
class ClaimedJob:
    """A job a worker currently owns."""

    id: str
    kind: JobKind
    payload: ChatMessagePayload | BatchChatPayload
    lock_token: str
    attempts_made: int


@dataclass
class AttemptOutcome:
    """What happened to a job after a failed attempt."""

    status: JobStatus  # DELAYED or FAILED
    delay_s: float | None = None


@dataclass
class SweepReport:
    """Job ids touched by one stall sweep."""

    requeued: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    redispatched: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Job Queue
# ---------------------------------------------------------------------------


class JobQueue:
    """
    Durable queue of chat jobs.

    Args:
        session_scope: Callable returning a transactional Session context
            manager (see app.db.engine.make_session_scope).
        dispatcher: Schedules a worker wake-up for a job id after a
            countdown. Defaults to the Celery task dispatcher.
        clock: Returns the current aware UTC datetime.
        lock_duration_s: How long a claim stays valid without a heartbeat.
        max_stalled_count: How many stall recoveries a job is allowed.
    """

    def __init__(
        self,
        session_scope: SessionFactory = get_sync_session,
        dispatcher: Dispatcher | None = None,
        clock: Clock = utcnow,
        lock_duration_s: float | None = None,
        max_stalled_count: int | None = None,
    ) -> None:
        self._session_scope = session_scope
        self._dispatcher = dispatcher
        self._clock = clock
        self._lock_duration = timedelta(
            seconds=lock_duration_s
            if lock_duration_s is not None
            else settings.job_lock_duration_s
        )
        self._max_stalled_count = (
            max_stalled_count
            if max_stalled_count is not None
            else settings.job_max_stalled_count
        )

    @property
    def lock_duration_s(self) -> float:
        return self._lock_duration.total_seconds()

    # -- Producer side -------------------------------------------------------

    def enqueue(
        self,
        payload: ChatMessagePayload | BatchChatPayload,
        options: JobOptions | None = None,
    ) -> str:
        """
        Persist a new job and schedule a worker for it.

        Returns:
            The queue-assigned job id.

        Raises:
            UpstreamError: The worker wake-up could not be scheduled. The job
                row is removed again so no orphan is left behind.
        """
        kind = JobKind(payload.kind)
        opts = options or default_job_options(kind)
        job_id = uuid.uuid4().hex
        now = self._clock()

        with self._session_scope() as session:
            paused = self._is_paused(session)
            session.add(ChatJobRecord(
                id=job_id,
                kind=kind,
                status=StoredJobStatus.PAUSED if paused else StoredJobStatus.WAITING,
                payload=payload.model_dump(mode="json", by_alias=True),
                progress=0,
                attempts_made=0,
                max_attempts=max(1, opts.attempts),
                backoff_s=opts.backoff_s,
                stalled_count=0,
                created_at=now,
            ))

        if not paused:
            try:
                self._dispatch(job_id, 0.0)
            except Exception as exc:
                logger.exception("Failed to dispatch job %s: %s", job_id, exc)
                with self._session_scope() as session:
                    session.execute(
                        delete(ChatJobRecord).where(ChatJobRecord.id == job_id)
                    )
                raise UpstreamError(f"Job broker unavailable: {exc}") from exc

        logger.info(
            "Enqueued %s job %s (attempts=%d, backoff=%.1fs, paused=%s)",
            kind.value, job_id, opts.attempts, opts.backoff_s, paused,
        )
        return job_id

    def get_status(self, job_id: str) -> JobInfo | None:
        """Snapshot of a job, or None if no such job exists."""
        with self._session_scope() as session:
            record = session.get(ChatJobRecord, job_id)
            if record is None:
                return None
            return self._to_info(record, self._clock())

    def get_result(self, job_id: str) -> Any | None:
        """The stored result of a completed job, else None."""
        with self._session_scope() as session:
            record = session.get(ChatJobRecord, job_id)
            if record is None or record.status != StoredJobStatus.COMPLETED:
                return None
            return record.result

    def cancel(self, job_id: str) -> bool:
        """
        Remove a job that has not finished yet.

        Cancelling an ACTIVE job is best-effort: the row is removed, but the
        worker is not interrupted. Its later writes find no row and are
        dropped.
        """
        with self._session_scope() as session:
            result = session.execute(
                delete(ChatJobRecord)
                .where(ChatJobRecord.id == job_id)
                .where(ChatJobRecord.status.in_(_CANCELLABLE))
            )
            cancelled = result.rowcount == 1

        if cancelled:
            logger.info("Cancelled job %s", job_id)
        else:
            logger.info("Job %s not found or not cancellable", job_id)
        return cancelled

    def retry(self, job_id: str) -> bool:
        """Move a FAILED job back to WAITING and count the attempt."""
        with self._session_scope() as session:
            record = session.get(ChatJobRecord, job_id, with_for_update=True)
            if record is None or record.status != StoredJobStatus.FAILED:
                logger.info("Job %s not found or not retryable", job_id)
                return False

            paused = self._is_paused(session)
            record.status = (
                StoredJobStatus.PAUSED if paused else StoredJobStatus.WAITING
            )
            record.attempts_made += 1
            record.failure_reason = None
            record.finished_at = None
            record.result = None
            record.stalled_count = 0
            record.delay_until = None

        if not paused:
            self._dispatch(job_id, 0.0)
        logger.info("Retrying job %s", job_id)
        return True

    def stats(self) -> QueueStats:
        """Job counts per stored status."""
        with self._session_scope() as session:
            rows = session.execute(
                select(ChatJobRecord.status, func.count())
                .group_by(ChatJobRecord.status)
            ).all()

        counts = {StoredJobStatus(status).value: count for status, count in rows}
        return QueueStats(**counts, total=sum(counts.values()))

    def list_jobs(
        self,
        limit: int = 10,
        status: JobStatus | None = None,
    ) -> list[JobInfo]:
        """Most recent jobs first, optionally filtered by status."""
        now = self._clock()
        stmt = select(ChatJobRecord).order_by(ChatJobRecord.created_at.desc())

        if status is JobStatus.STUCK:
            stmt = stmt.where(
                ChatJobRecord.status == StoredJobStatus.ACTIVE,
                ChatJobRecord.lock_expires_at < now,
            )
        elif status is not None:
            stmt = stmt.where(ChatJobRecord.status == StoredJobStatus(status.value))

        with self._session_scope() as session:
            records = session.scalars(stmt.limit(max(1, limit))).all()
            return [self._to_info(r, now) for r in records]

    def clean(self, older_than: timedelta | None = None) -> int:
        """Delete COMPLETED / FAILED jobs that finished before the cutoff."""
        age = (
            older_than
            if older_than is not None
            else timedelta(seconds=settings.job_retention_s)
        )
        cutoff = self._clock() - age

        with self._session_scope() as session:
            result = session.execute(
                delete(ChatJobRecord)
                .where(ChatJobRecord.status.in_(_FINISHED))
                .where(ChatJobRecord.finished_at < cutoff)
            )
            removed = result.rowcount or 0

        logger.info("Cleaned %d jobs older than %s", removed, age)
        return removed

    def pause(self) -> int:
        """Stop handing out jobs. WAITING jobs move to PAUSED."""
        with self._session_scope() as session:
            self._set_paused(session, True)
            result = session.execute(
                update(ChatJobRecord)
                .where(ChatJobRecord.status == StoredJobStatus.WAITING)
                .values(status=StoredJobStatus.PAUSED)
            )
            moved = result.rowcount or 0

        logger.info("Queue paused (%d waiting jobs parked)", moved)
        return moved

    def resume(self) -> int:
        """Resume the queue. PAUSED jobs move back to WAITING and are dispatched."""
        with self._session_scope() as session:
            self._set_paused(session, False)
            ids = list(session.scalars(
                select(ChatJobRecord.id)
                .where(ChatJobRecord.status == StoredJobStatus.PAUSED)
            ))
            if ids:
                session.execute(
                    update(ChatJobRecord)
                    .where(ChatJobRecord.id.in_(ids))
                    .values(status=StoredJobStatus.WAITING)
                )
            delayed = list(session.scalars(
                select(ChatJobRecord.id)
                .where(ChatJobRecord.status == StoredJobStatus.DELAYED)
            ))

        for job_id in ids + delayed:
            self._dispatch(job_id, 0.0)

        logger.info("Queue resumed (%d jobs released)", len(ids))
        return len(ids)

    def is_paused(self) -> bool:
        with self._session_scope() as session:
            return self._is_paused(session)

    # -- Worker side ---------------------------------------------------------

    def claim(self, job_id: str) -> ClaimedJob | None:
        """
        Take ownership of a job.

        Succeeds only for WAITING jobs and for DELAYED jobs whose backoff has
        elapsed, and only while the queue is not paused. Returns None when
        the job is gone, owned by someone else, or not yet due.
        """
        now = self._clock()
        token = uuid.uuid4().hex

        with self._session_scope() as session:
            if self._is_paused(session):
                logger.info("Queue paused, not claiming job %s", job_id)
                return None

            result = session.execute(
                update(ChatJobRecord)
                .where(ChatJobRecord.id == job_id)
                .where(or_(
                    ChatJobRecord.status == StoredJobStatus.WAITING,
                    and_(
                        ChatJobRecord.status == StoredJobStatus.DELAYED,
                        or_(
                            ChatJobRecord.delay_until.is_(None),
                            ChatJobRecord.delay_until <= now,
                        ),
                    ),
                ))
                .values(
                    status=StoredJobStatus.ACTIVE,
                    lock_token=token,
                    lock_expires_at=now + self._lock_duration,
                    processed_at=now,
                    delay_until=None,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.info("Job %s not claimable (missing, owned or not due)", job_id)
                return None

            record = session.get(ChatJobRecord, job_id, populate_existing=True)
            claimed = ClaimedJob(
                id=record.id,
                kind=record.kind,
                payload=job_payload_adapter.validate_python(record.payload),
                lock_token=token,
                attempts_made=record.attempts_made,
            )

        logger.info(
            "Claimed job %s (%s, attempt %d)",
            job_id, claimed.kind.value, claimed.attempts_made + 1,
        )
        return claimed

    def extend_lock(self, job_id: str, lock_token: str) -> bool:
        """Heartbeat without progress. False once the job is no longer owned."""
        now = self._clock()
        with self._session_scope() as session:
            outcome = session.execute(
                update(ChatJobRecord)
                .where(ChatJobRecord.id == job_id)
                .where(ChatJobRecord.status == StoredJobStatus.ACTIVE)
                .where(ChatJobRecord.lock_token == lock_token)
                .values(lock_expires_at=now + self._lock_duration)
                .execution_options(synchronize_session=False)
            )
            return outcome.rowcount == 1

    def update_progress(self, job_id: str, lock_token: str, progress: int) -> bool:
        """
        Record progress and extend the worker lock.

        Progress never decreases. Returns False when the caller no longer
        owns the job (cancelled, or recovered as stalled).
        """
        now = self._clock()
        with self._session_scope() as session:
            record = session.get(ChatJobRecord, job_id, with_for_update=True)
            if not self._owns(record, lock_token):
                return False
            record.progress = max(record.progress, min(100, max(0, int(progress))))
            record.lock_expires_at = now + self._lock_duration
            return True

    def complete(self, job_id: str, lock_token: str, result: Any) -> bool:
        """Store the result and mark the job COMPLETED."""
        now = self._clock()
        with self._session_scope() as session:
            outcome = session.execute(
                update(ChatJobRecord)
                .where(ChatJobRecord.id == job_id)
                .where(ChatJobRecord.status == StoredJobStatus.ACTIVE)
                .where(ChatJobRecord.lock_token == lock_token)
                .values(
                    status=StoredJobStatus.COMPLETED,
                    result=result,
                    progress=100,
                    finished_at=now,
                    lock_token=None,
                    lock_expires_at=None,
                    last_error=None,
                )
                .execution_options(synchronize_session=False)
            )
            completed = outcome.rowcount == 1

        if not completed:
            logger.warning("Discarding result for job %s: no longer owned", job_id)
        return completed

    def fail_attempt(
        self,
        job_id: str,
        lock_token: str,
        error: str,
    ) -> AttemptOutcome | None:
        """
        Record a failed attempt.

        Schedules a delayed retry while attempts remain, otherwise marks the
        job FAILED with `error` as the failure reason.
        """
        now = self._clock()
        error = (error or "Unknown error")[:1000]

        with self._session_scope() as session:
            record = session.get(ChatJobRecord, job_id, with_for_update=True)
            if not self._owns(record, lock_token):
                logger.warning("Ignoring failure for job %s: no longer owned", job_id)
                return None

            record.attempts_made += 1
            record.lock_token = None
            record.lock_expires_at = None
            record.last_error = error

            if record.attempts_made < record.max_attempts:
                delay_s = record.backoff_s * 2 ** (record.attempts_made - 1)
                record.status = StoredJobStatus.DELAYED
                record.delay_until = now + timedelta(seconds=delay_s)
                outcome = AttemptOutcome(JobStatus.DELAYED, delay_s)
            else:
                record.status = StoredJobStatus.FAILED
                record.failure_reason = error
                record.finished_at = now
                outcome = AttemptOutcome(JobStatus.FAILED)

            attempts, max_attempts = record.attempts_made, record.max_attempts

        if outcome.status is JobStatus.DELAYED:
            logger.warning(
                "Job %s attempt %d/%d failed (%s); retrying in %.1fs",
                job_id, attempts, max_attempts, error, outcome.delay_s,
            )
            self._dispatch(job_id, outcome.delay_s or 0.0)
        else:
            logger.error(
                "Job %s failed permanently after %d attempts: %s",
                job_id, attempts, error,
            )
        return outcome

    def sweep(self) -> SweepReport:
        """
        Recover jobs from crashed workers.

        ACTIVE jobs whose lock expired are requeued (stalled_count + 1) or,
        past max_stalled_count, failed. DELAYED jobs that are overdue by more
        than one lock duration (their wake-up was lost) are dispatched again.
        """
        now = self._clock()
        report = SweepReport()

        with self._session_scope() as session:
            paused = self._is_paused(session)
            stalled = session.scalars(
                select(ChatJobRecord)
                .where(ChatJobRecord.status == StoredJobStatus.ACTIVE)
                .where(ChatJobRecord.lock_expires_at < now)
                .with_for_update(skip_locked=True)
            ).all()

            for record in stalled:
                record.stalled_count += 1
                record.lock_token = None
                record.lock_expires_at = None
                if record.stalled_count > self._max_stalled_count:
                    record.status = StoredJobStatus.FAILED
                    record.failure_reason = STALLED_REASON
                    record.finished_at = now
                    report.failed.append(record.id)
                else:
                    record.status = (
                        StoredJobStatus.PAUSED if paused else StoredJobStatus.WAITING
                    )
                    if not paused:
                        report.requeued.append(record.id)

            overdue = session.scalars(
                select(ChatJobRecord.id)
                .where(ChatJobRecord.status == StoredJobStatus.DELAYED)
                .where(ChatJobRecord.delay_until < now - self._lock_duration)
            ).all()
            report.redispatched.extend(overdue)

        for job_id in report.requeued + report.redispatched:
            self._dispatch(job_id, 0.0)

        if report.requeued or report.failed or report.redispatched:
            logger.warning(
                "Stall sweep: requeued=%s failed=%s redispatched=%s",
                report.requeued, report.failed, report.redispatched,
            )
        return report

    # -- Internal Helpers ----------------------------------------------------

    def _dispatch(self, job_id: str, countdown: float) -> None:
        dispatcher = self._dispatcher
        if dispatcher is None:
            from app.workers.tasks import dispatch_job
            dispatcher = dispatch_job
        dispatcher(job_id, countdown)

    @staticmethod
    def _owns(record: ChatJobRecord | None, lock_token: str) -> bool:
        return (
            record is not None
            and record.status == StoredJobStatus.ACTIVE
            and record.lock_token == lock_token
        )

    @staticmethod
    def _is_paused(session) -> bool:
        control = session.get(QueueControl, 1)
        return bool(control and control.paused)

    @staticmethod
    def _set_paused(session, paused: bool) -> None:
        control = session.get(QueueControl, 1)
        if control is None:
            session.add(QueueControl(id=1, paused=paused))
        else:
            control.paused = paused

    def _to_info(self, record: ChatJobRecord, now: datetime) -> JobInfo:
        status = JobStatus(StoredJobStatus(record.status).value)
        lock_expires_at = _aware(record.lock_expires_at)
        if (
            status is JobStatus.ACTIVE
            and lock_expires_at is not None
            and lock_expires_at < now
        ):
            status = JobStatus.STUCK

        return JobInfo(
            id=record.id,
            kind=record.kind,
            status=status,
            progress=record.progress,
            data=record.payload,
            result=record.result if status is JobStatus.COMPLETED else None,
            failed_reason=record.failure_reason if status is JobStatus.FAILED else None,
            attempts_made=record.attempts_made,
            max_attempts=record.max_attempts,
            created_at=_aware(record.created_at),
            processed_at=_aware(record.processed_at),
            finished_at=_aware(record.finished_at),
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_queue: JobQueue | None = None


def get_job_queue() -> JobQueue:
    """Lazy singleton bound to the configured job store and Celery."""
    global _queue
    if _queue is None:
        _queue = JobQueue()
    return _queue
