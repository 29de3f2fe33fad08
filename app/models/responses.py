# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API.
# Every queue endpoint answers with `success` plus its payload, camelCase
# on the wire.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.jobs import JobInfo, JobStatus, QueueStats


class _CamelResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class JobSubmittedResponse(_CamelResponse):
    """
    Response for POST /agent/queue/chat.

    The answer is NOT in this response. Poll `statusUrl` / `resultUrl`.
    """

    success: bool = True
    job_id: str
    message: str = "Chat job queued successfully"
    status_url: str
    result_url: str
    timestamp: datetime


class BatchSubmittedResponse(_CamelResponse):
    success: bool = True
    job_id: str
    message_count: int
    message: str = "Batch chat job queued successfully"
    status_url: str
    timestamp: datetime


class JobStatusResponse(_CamelResponse):
    success: bool = True
    job: JobInfo


class JobResultResponse(_CamelResponse):
    """
    Response for GET /agent/queue/job/{id}/result.

    Three shapes share this model:
      completed  → success=true, result
      processing → success=false, message, status, progress
      failed     → success=false, message, error
    """

    success: bool
    result: Any | None = None
    message: str | None = None
    status: JobStatus | None = None
    progress: int | None = None
    error: str | None = None


class ActionResponse(_CamelResponse):
    """Cancel / retry / clean / pause / resume acknowledgement."""

    success: bool = True
    message: str
    count: int | None = Field(default=None, description="Jobs affected, where meaningful")


class StatsResponse(_CamelResponse):
    success: bool = True
    stats: QueueStats
    timestamp: datetime


class JobListResponse(_CamelResponse):
    success: bool = True
    count: int
    jobs: list[JobInfo]


class QueueHealthResponse(_CamelResponse):
    success: bool = True
    status: str = "healthy"
    service: str = "Agent Queue"
    paused: bool = False
    stats: QueueStats
    timestamp: datetime


class ChatResponse(_CamelResponse):
    """Response for POST /agent/chat when the job finished in time."""

    success: bool = True
    response: str
    session_id: str
    tools_used: list[str] = Field(default_factory=list)
    processing_time: int
    timestamp: str


class ChatPendingResponse(_CamelResponse):
    """Response for POST /agent/chat (HTTP 202) when the wait timed out."""

    success: bool = False
    message: str = "Response is taking longer than expected. Poll the job for the result."
    job_id: str
    status_url: str
    result_url: str
