# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API.
# Wire format is camelCase (sessionId, conversationHistory, userId) to
# match the job payloads; Python attributes stay snake_case.
#
# DESIGN DECISION: `message` defaults to "" instead of being required.
# A missing or blank message is a domain ValidationError (HTTP 400) raised
# by the JobGateway, not a FastAPI schema error (HTTP 422). One code path
# rejects it, whichever entry point it came through.
# =============================================================================

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.jobs import ChatMessagePayload, ConversationTurn


class ChatJobRequest(BaseModel):
    """
    Request body for POST /agent/queue/chat and POST /agent/chat.

    Example:
        {
            "message": "What deals did Mark Cuban make in season 5?",
            "sessionId": "session_1a2b3c",
            "conversationHistory": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello! Ask me about Shark Tank."}
            ]
        }
    """

    message: str = Field(
        default="",
        max_length=4000,
        description="The user's question",
        examples=["Tell me about Scrub Daddy"],
    )
    session_id: str | None = Field(
        default=None,
        description="Conversation id. Generated when omitted.",
    )
    conversation_history: list[ConversationTurn] | None = Field(
        default=None,
        description=(
            "Prior turns, oldest first. When omitted and sessionId is known, "
            "the stored session history is used."
        ),
    )
    user_id: str | None = None
    metadata: dict[str, Any] | None = None

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {"message": "What is Shark Tank?"},
                {
                    "message": "What happened to Ring after the show?",
                    "sessionId": "session_demo",
                },
            ]
        },
    )


class BatchJobRequest(BaseModel):
    """
    Request body for POST /agent/queue/batch.

    All messages share one job and are answered sequentially.
    """

    messages: list[ChatMessagePayload] = Field(
        default_factory=list,
        description="Messages to answer, in order",
    )
    user_id: str | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
