# =============================================================================
# API Dependencies — FastAPI Dependency Injection for Queue Access
# =============================================================================
#
#   get_gateway()   — the JobGateway (submission, polling, sync façade)
#   get_job_queue() — the JobQueue (admin operations: stats, clean, pause)
#   raise_http()    — maps domain errors to HTTPException
#
# DESIGN DECISION: FastAPI dependencies over module globals in handlers.
# Tests swap in a gateway built on in-memory SQLite through
# app.dependency_overrides, with no patching.
#
# HTTP MAPPING:
#   ValidationError  → 400
#   NotFoundError    → 404
#   JobFailedError   → 502
#   UpstreamError    → 503 (job broker unreachable at submit time)
# =============================================================================

from __future__ import annotations

import logging
from typing import NoReturn

from fastapi import HTTPException

from app.errors import AgentError, JobFailedError, NotFoundError, UpstreamError, ValidationError
from app.services.gateway import JobGateway, get_job_gateway
from app.services.queue import JobQueue
from app.services.queue import get_job_queue as _get_job_queue

logger = logging.getLogger(__name__)


def get_gateway() -> JobGateway:
    return get_job_gateway()


def get_job_queue() -> JobQueue:
    return _get_job_queue()


def raise_http(exc: AgentError) -> NoReturn:
    """Translate a domain error into the matching HTTPException."""
    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=404, detail="Job not found") from exc
    if isinstance(exc, JobFailedError):
        raise HTTPException(
            status_code=502,
            detail={"success": False, "error": exc.reason, "jobId": exc.job_id},
        ) from exc
    if isinstance(exc, UpstreamError):
        logger.error("Upstream failure: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc)) from exc

    logger.exception("Unhandled agent error: %s", exc)
    raise HTTPException(status_code=500, detail=str(exc)) from exc
