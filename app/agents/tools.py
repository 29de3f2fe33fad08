# =============================================================================
# Tool Registry — The Agent's Three Capabilities
# =============================================================================
#
#   shark_tank_search  → RetrievalClient (pitch database)
#   internet_search    → DuckDuckGo instant-answer API (httpx)
#   calculator         → restricted arithmetic evaluator
#
# CONTRACT: ToolRegistry.invoke() ALWAYS returns text. Success, zero results
# and every failure (bad arguments, unknown tool, transport error, calculator
# error) come back as a JSON document; nothing is raised past this layer.
# The agent treats "a tool ran" as final for the turn, so a raising tool
# would be the only way to make it loop.
#
# Failure payload shape:
#   {"success": false, "error": "<what went wrong>", "message": "<hint>"}
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from typing import Any, Protocol

import httpx
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from app.agents.calculator import calculate
from app.config import settings
from app.errors import InvalidExpression, NonFiniteResult
from app.models.tools import (
    CALCULATOR,
    INTERNET_SEARCH,
    SHARK_TANK_SEARCH,
    CalculatorArgs,
    InternetSearchArgs,
    SharkTankSearchArgs,
    tool_arguments_adapter,
)
from app.services.retrieval import RetrievalClient, build_search_filter

logger = logging.getLogger(__name__)

NO_RESULTS = "No results found"


def _dumps(payload: Mapping[str, Any]) -> str:
    return json.dumps(payload, indent=2, default=str)


def failure_payload(error: str, message: str) -> str:
    return json.dumps({"success": False, "error": error, "message": message})


class Tool(Protocol):
    name: str
    failure_message: str

    async def run(self, args: Any) -> str:
        ...


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class CalculatorTool:
    name = CALCULATOR
    failure_message = "Failed to evaluate the expression. Please check the syntax."

    async def run(self, args: CalculatorArgs) -> str:
        return _dumps(calculate(args.expression))


class InternetSearchTool:
    """
    DuckDuckGo instant answers: the abstract (if any) plus related topics,
    capped at `max_results` topics.
    """

    name = INTERNET_SEARCH
    failure_message = (
        "Failed to search the internet. The service may be temporarily unavailable."
    )

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url or settings.internet_search_url
        self._timeout = timeout or settings.internet_search_timeout_s
        self._transport = transport

    async def run(self, args: InternetSearchArgs) -> str:
        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport,
        ) as client:
            response = await client.get(self._url, params={
                "q": args.query,
                "format": "json",
                "no_html": 1,
                "skip_disambig": 1,
            })
            response.raise_for_status()
            data = response.json()

        results: list[dict[str, Any]] = []
        if data.get("AbstractText"):
            results.append({
                "type": "instant_answer",
                "title": data.get("Heading") or "Quick Answer",
                "snippet": data["AbstractText"],
                "source": data.get("AbstractSource"),
                "url": data.get("AbstractURL"),
            })

        topics = [
            t for t in data.get("RelatedTopics") or []
            if isinstance(t, dict) and t.get("Text") and t.get("FirstURL")
        ]
        for topic in topics[: args.max_results]:
            results.append({
                "type": "related_topic",
                "title": topic["Text"].split(" - ")[0] or "Related",
                "snippet": topic["Text"],
                "url": topic["FirstURL"],
            })

        if not results:
            return _dumps({
                "success": True,
                "message": "No specific results found. Try rephrasing your search query.",
                "query": args.query,
                "results": [],
            })

        return _dumps({
            "success": True,
            "query": args.query,
            "count": len(results),
            "results": results,
            "note": "This information is from the internet and may need verification.",
        })


class SharkTankSearchTool:
    """Pitch database lookup through the retrieval collaborator."""

    name = SHARK_TANK_SEARCH
    failure_message = (
        "Failed to search Shark Tank database. Please try rephrasing your query."
    )

    def __init__(self, retrieval: RetrievalClient, limit: int | None = None) -> None:
        self._retrieval = retrieval
        self._limit = limit or settings.retrieval_limit

    async def run(self, args: SharkTankSearchArgs) -> str:
        response = await self._retrieval.search(
            args.query,
            filter=build_search_filter(args.filters),
            limit=self._limit,
        )
        intent = response.intent or {}

        if response.count == 0:
            return _dumps({
                "success": True,
                "message": "No pitches found matching the query.",
                "intent": intent,
                "results": [],
                "count": 0,
            })

        return _dumps({
            "success": True,
            "query_type": intent.get("type"),
            "filters_applied": intent.get("filters"),
            "search_term": intent.get("search_term", args.query),
            "count": response.count,
            "results": [format_pitch(hit.payload) for hit in response.hits],
        })


def format_pitch(row: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize a raw retrieval row into the pitch result shape."""
    return {
        "company": row.get("company"),
        "entrepreneur": row.get("entrepreneur"),
        "season": row.get("season"),
        "episode": row.get("episode"),
        "financial": {
            "ask_amount": row.get("ask_amount"),
            "valuation": row.get("valuation"),
            "equity_offered": row.get("equity_offered"),
        },
        "deal": {
            "made": row.get("deal_made"),
            "investor": row.get("investor_name"),
        },
        "industry": row.get("industry"),
        "summary": row.get("parent_summary"),
        "key_moment": row.get("chunk_text"),
        "video_url": row.get("video_url"),
    }


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Resolves tool names to tools and runs them, always yielding text."""

    def __init__(self, tools: Iterable[Tool]) -> None:
        self._tools: dict[str, Tool] = {tool.name: tool for tool in tools}

    @classmethod
    def default(cls, retrieval: RetrievalClient) -> ToolRegistry:
        return cls([
            SharkTankSearchTool(retrieval),
            InternetSearchTool(),
            CalculatorTool(),
        ])

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    async def invoke(
        self,
        tool_name: str,
        arguments: Mapping[str, Any] | BaseModel | None = None,
    ) -> str:
        tool = self._tools.get(tool_name)
        if tool is None:
            logger.warning("Unknown tool requested: %s", tool_name)
            return failure_payload(
                f"Unknown tool: {tool_name}",
                f"Available tools: {', '.join(self._tools)}",
            )

        if isinstance(arguments, BaseModel):
            raw = arguments.model_dump()
        else:
            raw = dict(arguments or {})
        raw["tool"] = tool_name

        try:
            args = tool_arguments_adapter.validate_python(raw)
        except PydanticValidationError as exc:
            logger.warning("Invalid arguments for %s: %s", tool_name, exc)
            return failure_payload("Invalid arguments", str(exc))

        logger.info("Executing tool %s", tool_name)
        try:
            result = await tool.run(args)
        except InvalidExpression as exc:
            return failure_payload("Invalid expression", str(exc))
        except NonFiniteResult as exc:
            return failure_payload("Invalid result", str(exc))
        except Exception as exc:
            logger.exception("Tool %s failed: %s", tool_name, exc)
            return failure_payload(str(exc) or type(exc).__name__, tool.failure_message)

        logger.info("Tool %s returned %d chars", tool_name, len(result or ""))
        return result or NO_RESULTS
