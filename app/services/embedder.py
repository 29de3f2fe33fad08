# =============================================================================
# Embedding Service — Query Vectors (Provider-Agnostic)
# =============================================================================
#
# Generates query embeddings for the ChromaDB retrieval backend using any
# OpenAI-compatible embedding API (OpenAI, DashScope, local gateways).
#
# DESIGN DECISION: OpenAI SDK with configurable base_url.
# Most providers expose the OpenAI embeddings endpoint, so switching is a
# config change (EMBEDDING_BASE_URL, EMBEDDING_MODEL).
#
# API key resolution order:
#   1. OPENAI_API_KEY (explicit embedding key)
#   2. LLM_API_KEY (shared key)
# =============================================================================

from __future__ import annotations

import logging

from openai import OpenAI

from app.config import settings
from app.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Lazy singleton: the OpenAI client pools connections and is thread-safe
_client: OpenAI | None = None


def _get_client() -> OpenAI:
    """Lazily initialize and cache the embedding client."""
    global _client
    if _client is None:
        resolved_key = settings.openai_api_key or settings.llm_api_key
        if not resolved_key:
            raise ConfigurationError(
                "No API key configured for embeddings. "
                "Set OPENAI_API_KEY or LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        if settings.embedding_base_url:
            client_kwargs["base_url"] = settings.embedding_base_url

        _client = OpenAI(**client_kwargs)
        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


def embed_query(text: str) -> list[float]:
    """
    Generate an embedding for a single query string.

    Sync: the ChromaDB backend calls it from inside asyncio.to_thread().

    Raises:
        ConfigurationError: If no API key is configured.
        openai.APIError: If the embedding API call fails.
    """
    response = _get_client().embeddings.create(
        model=settings.embedding_model,
        input=[text],
    )
    return response.data[0].embedding
