# =============================================================================
# Completion Clients — Pluggable LLM Backends
# =============================================================================
#
# The agent talks to its language model through one narrow interface:
#
#   complete(prompt, instructions, history, options) -> text
#
# `prompt` is the fully built question for this turn (tool evidence already
# injected), `instructions` is the system prompt, and `history` is the list
# of prior ConversationTurns. Every client truncates history with the same
# pure function before sending it, so payload size is bounded regardless of
# backend.
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Any class with an async `complete()` of this shape works, which is how the
# tests plug in scripted fakes.
#
# ARCHITECTURE:
#   CompletionClient (Protocol)
#   ├── ProxyCompletionClient          — HTTP completion proxy (httpx)
#   │   └── payload: prompt + instructions + role-tagged history
#   ├── AnthropicCompletionClient      — Claude via native Anthropic SDK
#   │   └── system prompt as top-level kwarg
#   ├── OpenAICompatibleCompletionClient — any OpenAI-compatible API
#   │   └── system prompt as first message
#   └── get_completion_client()        — singleton factory, reads config
#
# ERRORS:
#   BackendUnavailable — nothing configured (no endpoint / no API key)
#   UpstreamError      — transport failure, non-2xx, non-JSON, {error: ...}
# Callers (the agent's synthesize step) turn both into a user-safe apology.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from app.config import settings
from app.errors import BackendUnavailable, UpstreamError
from app.models.jobs import ConversationTurn

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CompletionOptions:
    """Sampling parameters sent with every completion request."""

    model: str
    temperature: float
    top_p: float
    max_tokens: int

    @classmethod
    def from_settings(cls) -> CompletionOptions:
        return cls(
            model=settings.llm_model,
            temperature=settings.llm_temperature,
            top_p=settings.llm_top_p,
            max_tokens=settings.llm_max_tokens,
        )


def truncate_history(
    turns: Sequence[ConversationTurn],
    limit: int,
) -> list[ConversationTurn]:
    """
    Keep the most recent `limit` turns, oldest first, minus blank ones.

    Pure function of (turns, limit): the window is taken first, then turns
    with empty content are dropped, so the result never exceeds `limit`.
    """
    if limit <= 0:
        return []
    window = list(turns)[-limit:]
    return [
        turn for turn in window
        if turn.role in ("user", "assistant") and turn.content and turn.content.strip()
    ]


def _as_messages(turns: Sequence[ConversationTurn]) -> list[dict[str, str]]:
    return [{"role": turn.role, "content": turn.content} for turn in turns]


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class CompletionClient(Protocol):
    """
    Protocol defining the completion backend interface.

    Implementations raise BackendUnavailable when they are not configured
    and UpstreamError for any failure talking to the backend.
    """

    async def complete(
        self,
        prompt: str,
        instructions: str,
        history: Sequence[ConversationTurn],
        options: CompletionOptions | None = None,
    ) -> str:
        ...


# ---------------------------------------------------------------------------
# Implementation 1: HTTP Completion Proxy
# ---------------------------------------------------------------------------


class ProxyCompletionClient:
    """
    Completion proxy reached over plain HTTP.

    Request body:
        {prompt, instructions, top_p, temperature, max_tokens, stream: false,
         model, reset_conversation: false, conversation_history, cookie?}
    Response body:
        {"content": text} or {"response": text}, or {"error": text}.
    """

    def __init__(
        self,
        endpoint: str | None = None,
        cookie: str | None = None,
        timeout: float | None = None,
        max_history: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = endpoint if endpoint is not None else settings.completion_endpoint
        self._cookie = cookie if cookie is not None else settings.completion_cookie
        self._timeout = timeout or settings.completion_timeout_s
        self._max_history = (
            max_history if max_history is not None else settings.max_history_messages
        )
        self._transport = transport

    def build_payload(
        self,
        prompt: str,
        instructions: str,
        history: Sequence[ConversationTurn],
        options: CompletionOptions,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "prompt": prompt,
            "instructions": instructions,
            "top_p": options.top_p,
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
            "stream": False,
            "model": options.model,
            "reset_conversation": False,
            "conversation_history": _as_messages(
                truncate_history(history, self._max_history)
            ),
        }
        if self._cookie:
            payload["cookie"] = self._cookie
        return payload

    async def complete(
        self,
        prompt: str,
        instructions: str,
        history: Sequence[ConversationTurn],
        options: CompletionOptions | None = None,
    ) -> str:
        if not self._endpoint:
            raise BackendUnavailable("Completion endpoint is not configured")

        payload = self.build_payload(
            prompt, instructions, history, options or CompletionOptions.from_settings(),
        )
        logger.info(
            "Completion request: history=%d prompt_len=%d",
            len(payload["conversation_history"]), len(prompt),
        )

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport,
            ) as client:
                response = await client.post(self._endpoint, json=payload)
        except httpx.HTTPError as exc:
            logger.error("Completion proxy unreachable: %s", exc)
            raise UpstreamError(f"Completion proxy unreachable: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            logger.error(
                "Completion proxy returned %d: %s",
                response.status_code, response.text[:500],
            )
            raise UpstreamError(
                f"Completion proxy returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
        except ValueError as exc:
            logger.error("Completion proxy returned non-JSON body: %s", response.text[:500])
            raise UpstreamError(
                "Completion proxy returned a non-JSON body",
                status_code=response.status_code,
                body=response.text,
            ) from exc

        if not isinstance(data, dict):
            raise UpstreamError(
                "Completion proxy returned an unexpected body",
                status_code=response.status_code,
                body=response.text,
            )
        if data.get("error"):
            logger.error("Completion proxy error: %s", data["error"])
            raise UpstreamError(
                f"Completion proxy error: {data['error']}",
                status_code=response.status_code,
                body=response.text,
            )

        text = data.get("content") or data.get("response") or ""
        return str(text).strip()


# ---------------------------------------------------------------------------
# Implementation 2: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicCompletionClient:
    """
    Anthropic Claude backend using the native SDK.

    KEY API DIFFERENCE: Anthropic takes the system prompt as a top-level
    `system=` kwarg, NOT as a message with role "system".
    """

    def __init__(
        self,
        api_key: str | None = None,
        max_history: int | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        self._client = (
            AsyncAnthropic(api_key=resolved_key, timeout=settings.completion_timeout_s)
            if resolved_key else None
        )
        self._max_history = (
            max_history if max_history is not None else settings.max_history_messages
        )
        logger.info("Initialized AnthropicCompletionClient (configured=%s)", bool(resolved_key))

    async def complete(
        self,
        prompt: str,
        instructions: str,
        history: Sequence[ConversationTurn],
        options: CompletionOptions | None = None,
    ) -> str:
        if self._client is None:
            raise BackendUnavailable(
                "No Anthropic API key configured. Set LLM_API_KEY or ANTHROPIC_API_KEY"
            )
        opts = options or CompletionOptions.from_settings()

        messages = _as_messages(truncate_history(history, self._max_history))
        # The Messages API expects the conversation to open with a user turn
        while messages and messages[0]["role"] != "user":
            messages.pop(0)
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self._client.messages.create(
                model=opts.model,
                system=instructions,
                messages=messages,
                max_tokens=opts.max_tokens,
                temperature=opts.temperature,
            )
        except Exception as exc:
            logger.error("Anthropic completion failed: %s", exc)
            raise UpstreamError(
                f"Anthropic completion failed: {exc}",
                status_code=getattr(exc, "status_code", None),
            ) from exc

        for block in response.content:
            if block.type == "text":
                return block.text.strip()
        return ""


# ---------------------------------------------------------------------------
# Implementation 3: OpenAI-Compatible (Mistral, DeepSeek, Qwen, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleCompletionClient:
    """
    Backend for any API that follows the OpenAI chat completions API.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.mistral.ai/v1
        LLM_API_KEY=your-key
        LLM_MODEL=mistral-large-latest
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        max_history: int | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        resolved_base_url = base_url or settings.llm_base_url

        client_kwargs: dict = {
            "api_key": resolved_key,
            "timeout": settings.completion_timeout_s,
        }
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs) if resolved_key else None
        self._max_history = (
            max_history if max_history is not None else settings.max_history_messages
        )
        logger.info(
            "Initialized OpenAICompatibleCompletionClient (base_url=%s, configured=%s)",
            resolved_base_url or "https://api.openai.com/v1",
            bool(resolved_key),
        )

    async def complete(
        self,
        prompt: str,
        instructions: str,
        history: Sequence[ConversationTurn],
        options: CompletionOptions | None = None,
    ) -> str:
        if self._client is None:
            raise BackendUnavailable(
                "No API key configured for OpenAI-compatible backend. Set LLM_API_KEY"
            )
        opts = options or CompletionOptions.from_settings()

        # OpenAI: system prompt goes as the first message
        messages: list[dict[str, str]] = [{"role": "system", "content": instructions}]
        messages.extend(_as_messages(truncate_history(history, self._max_history)))
        messages.append({"role": "user", "content": prompt})

        try:
            response = await self._client.chat.completions.create(
                model=opts.model,
                messages=messages,
                max_tokens=opts.max_tokens,
                temperature=opts.temperature,
                top_p=opts.top_p,
            )
        except Exception as exc:
            logger.error("OpenAI-compatible completion failed: %s", exc)
            raise UpstreamError(
                f"OpenAI-compatible completion failed: {exc}",
                status_code=getattr(exc, "status_code", None),
            ) from exc

        if not response.choices:
            raise UpstreamError("OpenAI-compatible completion returned no choices")
        return (response.choices[0].message.content or "").strip()


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

# Lazy singleton: avoid re-creating clients on every job
_client: CompletionClient | None = None


def get_completion_client() -> CompletionClient:
    """
    Factory that returns the configured completion backend.

    Reads `llm_provider` from settings:
    - "proxy"             → ProxyCompletionClient (default)
    - "anthropic"         → AnthropicCompletionClient
    - "openai_compatible" → OpenAICompatibleCompletionClient
    """
    global _client
    if _client is None:
        if settings.llm_provider == "anthropic":
            _client = AnthropicCompletionClient()
        elif settings.llm_provider == "openai_compatible":
            _client = OpenAICompatibleCompletionClient()
        else:
            _client = ProxyCompletionClient()
    return _client
