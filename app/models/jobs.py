# =============================================================================
# Job Domain Models — Pydantic V2 Schemas
# =============================================================================
#
# Typed shapes for everything that flows through the job queue:
#
#   ChatJob payload (tagged union on `kind`)
#   ├── ChatMessagePayload  — kind="single_chat", one user message
#   └── BatchChatPayload    — kind="batch_chat", several messages, one job
#
#   ChatResult   — what a worker stores on a completed single-chat job
#   JobInfo      — the externally visible snapshot of a job
#   QueueStats   — counts by status
#
# Payloads are validated once, at the submission boundary. Workers re-parse
# the stored JSON through the same TypeAdapter, so a job row can never carry
# a payload the processor does not understand.
#
# Wire format is camelCase (sessionId, conversationHistory, processingTime)
# to match the public job API; Python attributes stay snake_case.
# =============================================================================

from __future__ import annotations

import enum
from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class JobKind(str, enum.Enum):
    """The fixed set of job kinds the queue accepts."""

    SINGLE_CHAT = "single_chat"
    BATCH_CHAT = "batch_chat"


class JobStatus(str, enum.Enum):
    """
    Lifecycle state of a queued job.

    State machine:
        WAITING ──▶ ACTIVE ──▶ COMPLETED
           ▲          │
           │          ├──▶ DELAYED ──▶ ACTIVE   (automatic retry w/ backoff)
           │          └──▶ FAILED
           └──────────────── FAILED             (explicit retry)
        WAITING ◀──▶ PAUSED                     (queue pause / resume)

    STUCK is never stored: it is reported for ACTIVE jobs whose worker lock
    has expired but which the stall sweep has not yet recovered.
    """

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    PAUSED = "paused"
    STUCK = "stuck"


class ConversationTurn(_CamelModel):
    """One message of a conversation. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime | None = None


class ChatMessagePayload(_CamelModel):
    """Payload of a single-chat job (also the element type of a batch)."""

    kind: Literal["single_chat"] = "single_chat"
    message: str = Field(..., min_length=1, max_length=4000)
    session_id: str | None = None
    conversation_history: list[ConversationTurn] = Field(default_factory=list)
    user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class BatchChatPayload(_CamelModel):
    """Payload of a batch job: every message is answered sequentially."""

    kind: Literal["batch_chat"] = "batch_chat"
    messages: list[ChatMessagePayload] = Field(..., min_length=1)
    user_id: str | None = None


JobPayload = Annotated[
    Union[ChatMessagePayload, BatchChatPayload],
    Field(discriminator="kind"),
]

job_payload_adapter: TypeAdapter[ChatMessagePayload | BatchChatPayload] = (
    TypeAdapter(JobPayload)
)


class ChatResult(_CamelModel):
    """Result stored on a completed chat job."""

    response: str
    session_id: str
    tools_used: list[str] = Field(default_factory=list)
    processing_time: int  # milliseconds
    timestamp: str  # ISO-8601


class JobInfo(_CamelModel):
    """Externally visible snapshot of a job."""

    id: str
    kind: JobKind
    status: JobStatus
    progress: int = 0
    data: dict[str, Any]
    result: Any | None = None
    failed_reason: str | None = None
    attempts_made: int = 0
    max_attempts: int = 1
    created_at: datetime
    processed_at: datetime | None = None
    finished_at: datetime | None = None


class QueueStats(BaseModel):
    """Job counts per stored status."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: int = 0
    total: int = 0
