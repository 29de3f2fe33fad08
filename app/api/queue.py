# =============================================================================
# Queue API — Asynchronous Chat Jobs
# =============================================================================
#
# Endpoints under /agent/queue:
#
#   POST   /chat                submit one message        → jobId + URLs
#   POST   /batch               submit several messages   → jobId + count
#   GET    /job/{id}            JobInfo snapshot
#   GET    /job/{id}/result     result | processing | failed
#   DELETE /job/{id}            cancel (waiting / active / delayed only)
#   POST   /job/{id}/retry      retry (failed only)
#   GET    /stats               counts by status
#   GET    /jobs                recent jobs, newest first
#   POST   /clean               delete finished jobs older than olderThan ms
#   POST   /pause, /resume      stop / restart handing out jobs
#   GET    /health              queue health + stats
#
# Handlers are thin: validation and state rules live in the JobGateway and
# JobQueue; this layer only maps outcomes to HTTP.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.deps import get_gateway, get_job_queue, raise_http
from app.config import settings
from app.errors import AgentError
from app.models.jobs import JobStatus
from app.models.requests import BatchJobRequest, ChatJobRequest
from app.models.responses import (
    ActionResponse,
    BatchSubmittedResponse,
    JobListResponse,
    JobResultResponse,
    JobStatusResponse,
    JobSubmittedResponse,
    QueueHealthResponse,
    StatsResponse,
)
from app.services.gateway import JobGateway
from app.services.queue import JobQueue

logger = logging.getLogger(__name__)

router = APIRouter(prefix=settings.public_base_path, tags=["Agent Queue"])


def _status_url(job_id: str) -> str:
    return f"{settings.public_base_path}/job/{job_id}"


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


@router.post(
    "/chat",
    response_model=JobSubmittedResponse,
    summary="Queue a chat message",
)
async def queue_chat(
    request: ChatJobRequest,
    gateway: JobGateway = Depends(get_gateway),
) -> JobSubmittedResponse:
    try:
        job_id = await gateway.submit(
            request.message,
            session_id=request.session_id,
            history=request.conversation_history,
            user_id=request.user_id,
            metadata=request.metadata,
        )
    except AgentError as exc:
        raise_http(exc)

    return JobSubmittedResponse(
        job_id=job_id,
        status_url=_status_url(job_id),
        result_url=f"{_status_url(job_id)}/result",
        timestamp=datetime.now(UTC),
    )


@router.post(
    "/batch",
    response_model=BatchSubmittedResponse,
    summary="Queue several chat messages as one job",
)
async def queue_batch(
    request: BatchJobRequest,
    gateway: JobGateway = Depends(get_gateway),
) -> BatchSubmittedResponse:
    try:
        job_id = await gateway.submit_batch(request.messages, user_id=request.user_id)
    except AgentError as exc:
        raise_http(exc)

    return BatchSubmittedResponse(
        job_id=job_id,
        message_count=len(request.messages),
        status_url=_status_url(job_id),
        timestamp=datetime.now(UTC),
    )


# ---------------------------------------------------------------------------
# Job Inspection & Control
# ---------------------------------------------------------------------------


@router.get("/job/{job_id}", response_model=JobStatusResponse)
async def get_job(
    job_id: str,
    gateway: JobGateway = Depends(get_gateway),
) -> JobStatusResponse:
    try:
        info = await gateway.get_status(job_id)
    except AgentError as exc:
        raise_http(exc)
    return JobStatusResponse(job=info)


@router.get("/job/{job_id}/result", response_model=JobResultResponse)
async def get_job_result(
    job_id: str,
    gateway: JobGateway = Depends(get_gateway),
) -> JobResultResponse:
    try:
        view = await gateway.get_result(job_id)
    except AgentError as exc:
        raise_http(exc)

    if view.is_completed:
        return JobResultResponse(success=True, result=view.result)
    if view.is_failed:
        return JobResultResponse(
            success=False,
            message="Job failed",
            error=view.failed_reason,
        )
    return JobResultResponse(
        success=False,
        message="Job is still processing",
        status=view.status,
        progress=view.progress,
    )


@router.delete("/job/{job_id}", response_model=ActionResponse)
async def cancel_job(
    job_id: str,
    gateway: JobGateway = Depends(get_gateway),
) -> ActionResponse:
    if not await gateway.cancel(job_id):
        raise HTTPException(status_code=400, detail="Job not found or cannot be cancelled")
    return ActionResponse(message="Job cancelled successfully")


@router.post("/job/{job_id}/retry", response_model=ActionResponse)
async def retry_job(
    job_id: str,
    gateway: JobGateway = Depends(get_gateway),
) -> ActionResponse:
    if not await gateway.retry(job_id):
        raise HTTPException(status_code=400, detail="Job not found or cannot be retried")
    return ActionResponse(message="Job retry initiated")


# ---------------------------------------------------------------------------
# Queue Administration
# ---------------------------------------------------------------------------


@router.get("/stats", response_model=StatsResponse)
async def queue_stats(queue: JobQueue = Depends(get_job_queue)) -> StatsResponse:
    stats = await asyncio.to_thread(queue.stats)
    return StatsResponse(stats=stats, timestamp=datetime.now(UTC))


@router.get("/jobs", response_model=JobListResponse)
async def recent_jobs(
    limit: int = Query(default=10, ge=1, le=100),
    status: JobStatus | None = Query(default=None),
    queue: JobQueue = Depends(get_job_queue),
) -> JobListResponse:
    jobs = await asyncio.to_thread(queue.list_jobs, limit, status)
    return JobListResponse(count=len(jobs), jobs=jobs)


@router.post("/clean", response_model=ActionResponse)
async def clean_jobs(
    older_than: int = Query(
        default=settings.job_retention_s * 1000,
        alias="olderThan",
        ge=0,
        description="Age cutoff in milliseconds",
    ),
    queue: JobQueue = Depends(get_job_queue),
) -> ActionResponse:
    removed = await asyncio.to_thread(queue.clean, timedelta(milliseconds=older_than))
    return ActionResponse(message=f"Cleaned jobs older than {older_than}ms", count=removed)


@router.post("/pause", response_model=ActionResponse)
async def pause_queue(queue: JobQueue = Depends(get_job_queue)) -> ActionResponse:
    parked = await asyncio.to_thread(queue.pause)
    return ActionResponse(message="Queue paused", count=parked)


@router.post("/resume", response_model=ActionResponse)
async def resume_queue(queue: JobQueue = Depends(get_job_queue)) -> ActionResponse:
    released = await asyncio.to_thread(queue.resume)
    return ActionResponse(message="Queue resumed", count=released)


@router.get("/health", response_model=QueueHealthResponse)
async def queue_health(queue: JobQueue = Depends(get_job_queue)) -> QueueHealthResponse:
    stats = await asyncio.to_thread(queue.stats)
    paused = await asyncio.to_thread(queue.is_paused)
    return QueueHealthResponse(stats=stats, paused=paused, timestamp=datetime.now(UTC))
