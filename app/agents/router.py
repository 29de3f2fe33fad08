# =============================================================================
# Tool Router — Deterministic Tool Selection
# =============================================================================
#
# Decides which single tool answers a user message. Rules are evaluated in
# a fixed priority order, first match wins:
#
#   1. calculator          a number AND a calculation cue (the words
#                          "calculate" / "compute", or "what is" next to an
#                          arithmetic expression)
#   2. internet_search     a recency substring (current, now, today, recent,
#                          latest, what happened to, where are they now,
#                          still in business, update)
#   3. shark_tank_search   everything else
#
# Every first turn routes to SOME tool: domain answers must be grounded in
# retrieved data, so there is no "answer without a tool" branch.
# =============================================================================

from __future__ import annotations

import logging
import re

from app.config import settings
from app.models.tools import (
    CalculatorArgs,
    InternetSearchArgs,
    SharkTankSearchArgs,
    ToolDecision,
)

logger = logging.getLogger(__name__)

_HAS_NUMBER = re.compile(r"\d")
# Whole-word cue: "computer" or "computed" is not a request to calculate
_CALC_WORDS = re.compile(r"\b(?:calculate|compute)\b")

# Numbers, operators, parentheses and function names, starting at a digit,
# an opening parenthesis or a function name.
_FUNC = r"(?:sqrt|log|sin|cos|tan)"
_EXPRESSION = re.compile(
    rf"(?:{_FUNC}\s*\(|[\d.(])(?:{_FUNC}|[\d\s+\-*/().%^])*",
    re.IGNORECASE,
)
# Two operands joined by an operator, or a function call
_ARITHMETIC = re.compile(
    rf"\d\s*[+\-*/%^]\s*[\d(]|\)\s*[+\-*/%^]|{_FUNC}\s*\(\s*[\d(]",
    re.IGNORECASE,
)

# Plain substring cues: "currently", "updates" and "know" all count.
_RECENCY = (
    "current",
    "now",
    "today",
    "recent",
    "latest",
    "what happened to",
    "where are they now",
    "still in business",
    "update",
)


def extract_expression(message: str) -> str | None:
    """First arithmetic-looking substring that contains a digit."""
    for match in _EXPRESSION.finditer(message):
        candidate = match.group(0).strip().rstrip(".").strip()
        if _HAS_NUMBER.search(candidate):
            return candidate
    return None


class ToolRouter:
    """Maps a user message to exactly one ToolDecision."""

    def __init__(self, max_search_results: int | None = None) -> None:
        self._max_results = max_search_results or settings.internet_search_max_results

    def decide(self, message: str) -> ToolDecision:
        lowered = message.lower()

        if self._wants_calculation(message, lowered):
            expression = extract_expression(message)
            if expression:
                logger.info("Routing to calculator: %r", expression)
                return ToolDecision(
                    use_tool=True,
                    arguments=CalculatorArgs(expression=expression),
                )

        if any(cue in lowered for cue in _RECENCY):
            logger.info("Routing to internet_search")
            return ToolDecision(
                use_tool=True,
                arguments=InternetSearchArgs(query=message, max_results=self._max_results),
            )

        logger.info("Routing to shark_tank_search")
        return ToolDecision(
            use_tool=True,
            arguments=SharkTankSearchArgs(query=message),
        )

    @staticmethod
    def _wants_calculation(message: str, lowered: str) -> bool:
        if not _HAS_NUMBER.search(message):
            return False
        if _CALC_WORDS.search(lowered):
            return True
        return "what is" in lowered and bool(_ARITHMETIC.search(message))
