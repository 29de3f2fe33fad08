# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# The job queue's durable backing store. Every job state mutation is a
# conditional UPDATE against the `chat_jobs` row, so the database is the
# single source of truth for which worker holds which job.
#
# SCHEMA OVERVIEW:
#
# ┌────────────────────────────────┐     ┌──────────────────┐
# │  chat_jobs                     │     │  queue_control   │
# ├────────────────────────────────┤     ├──────────────────┤
# │ id (PK, uuid hex)              │     │ id (PK, always 1)│
# │ kind / status                  │     │ paused (bool)    │
# │ payload (json)                 │     └──────────────────┘
# │ progress (0-100)               │
# │ attempts_made / max_attempts   │
# │ backoff_s                      │
# │ result (json) / failure_reason │
# │ last_error                     │
# │ lock_token / lock_expires_at   │
# │ stalled_count                  │
# │ delay_until                    │
# │ created/processed/finished_at  │
# └────────────────────────────────┘
#
# NOTES:
# 1. `result` is written only together with status=completed, and
#    `failure_reason` only together with status=failed. `last_error`
#    keeps the most recent attempt error while a job waits in DELAYED.
# 2. `lock_token` identifies the claim currently allowed to write progress
#    and results. A stalled job that is re-claimed gets a new token, so a
#    late write from the crashed worker is rejected.
# 3. JSON columns use JSONB on PostgreSQL and plain JSON elsewhere.
# =============================================================================

import enum
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.models.jobs import JobKind

_JSON = JSON().with_variant(JSONB(), "postgresql")


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum values ("waiting"), not member names ("WAITING")."""
    return [member.value for member in enum_cls]


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class StoredJobStatus(str, enum.Enum):
    """
    Statuses that can be persisted on a job row.

    Mirrors app.models.jobs.JobStatus minus STUCK, which is derived at
    read time from an expired lock.
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    PAUSED = "paused"


class ChatJobRecord(Base):
    """A durably queued chat job."""

    __tablename__ = "chat_jobs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    kind: Mapped[JobKind] = mapped_column(
        Enum(JobKind, native_enum=False, length=32, values_callable=_enum_values),
        nullable=False,
    )
    status: Mapped[StoredJobStatus] = mapped_column(
        Enum(StoredJobStatus, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=StoredJobStatus.WAITING,
    )

    # Validated JobPayload, camelCase keys
    payload: Mapped[dict] = mapped_column(_JSON, nullable=False)

    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    attempts_made: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    backoff_s: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    result: Mapped[dict | list | None] = mapped_column(_JSON, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    lock_token: Mapped[str | None] = mapped_column(String(32), nullable=True)
    lock_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    stalled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Earliest time a DELAYED job may be claimed again
    delay_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False,
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    finished_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_chat_jobs_status", "status"),
        Index("idx_chat_jobs_created_at", "created_at"),
        Index("idx_chat_jobs_finished_at", "finished_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ChatJobRecord(id={self.id}, kind={self.kind}, "
            f"status={self.status}, attempts={self.attempts_made})>"
        )


class QueueControl(Base):
    """Single-row table holding queue-wide flags."""

    __tablename__ = "queue_control"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
