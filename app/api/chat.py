# =============================================================================
# Chat API — Request/Response Façade over the Job Queue
# =============================================================================
#
# POST /agent/chat submits a queued job and waits for it (bounded by
# sync_wait_max_s), so callers that want plain request/response semantics
# still get queue durability and backpressure underneath.
#
#   completed in time → 200 ChatResponse
#   still running     → 202 ChatPendingResponse (jobId + polling URLs)
#   failed            → 502
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.api.deps import get_gateway, raise_http
from app.config import settings
from app.errors import AgentError
from app.models.requests import ChatJobRequest
from app.models.responses import ChatPendingResponse, ChatResponse
from app.services.gateway import JobGateway, TimedOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agent", tags=["Agent Chat"])


@router.post(
    "/chat",
    response_model=ChatResponse,
    responses={202: {"model": ChatPendingResponse}},
    summary="Ask the Shark Tank agent and wait for the answer",
)
async def chat(
    request: ChatJobRequest,
    gateway: JobGateway = Depends(get_gateway),
):
    try:
        outcome = await gateway.submit_and_wait(
            request.message,
            session_id=request.session_id,
            history=request.conversation_history,
            user_id=request.user_id,
            metadata=request.metadata,
        )
    except AgentError as exc:
        raise_http(exc)

    if isinstance(outcome, TimedOut):
        status_url = f"{settings.public_base_path}/job/{outcome.job_id}"
        pending = ChatPendingResponse(
            job_id=outcome.job_id,
            status_url=status_url,
            result_url=f"{status_url}/result",
        )
        return JSONResponse(status_code=202, content=pending.model_dump(by_alias=True))

    return ChatResponse.model_validate(outcome)
