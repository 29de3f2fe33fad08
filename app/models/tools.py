# =============================================================================
# Tool Argument Models — Tagged Union per Tool
# =============================================================================
#
# Each invocable tool has exactly one argument shape, discriminated by the
# `tool` field:
#
#   ToolArguments
#   ├── CalculatorArgs         tool="calculator"         expression
#   ├── InternetSearchArgs     tool="internet_search"    query, max_results
#   └── SharkTankSearchArgs    tool="shark_tank_search"  query, filters
#
# The router produces these, the registry validates whatever it is handed
# through the same TypeAdapter before dispatching.
# =============================================================================

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

CALCULATOR = "calculator"
INTERNET_SEARCH = "internet_search"
SHARK_TANK_SEARCH = "shark_tank_search"

TOOL_NAMES = (SHARK_TANK_SEARCH, INTERNET_SEARCH, CALCULATOR)


class CalculatorArgs(BaseModel):
    tool: Literal["calculator"] = "calculator"
    expression: str = Field(..., min_length=1)


class InternetSearchArgs(BaseModel):
    tool: Literal["internet_search"] = "internet_search"
    query: str = Field(..., min_length=1)
    max_results: int = Field(default=5, ge=1, le=20)


class SharkTankSearchArgs(BaseModel):
    tool: Literal["shark_tank_search"] = "shark_tank_search"
    query: str = Field(..., min_length=1)
    # Raw intent filters (investor_name, industry, deal_made, valuation_gt, ...)
    filters: dict[str, Any] = Field(default_factory=dict)


ToolArguments = Annotated[
    Union[CalculatorArgs, InternetSearchArgs, SharkTankSearchArgs],
    Field(discriminator="tool"),
]

tool_arguments_adapter: TypeAdapter[
    CalculatorArgs | InternetSearchArgs | SharkTankSearchArgs
] = TypeAdapter(ToolArguments)


class ToolDecision(BaseModel):
    """Outcome of routing one user message."""

    use_tool: bool
    arguments: ToolArguments | None = None

    @property
    def tool_name(self) -> str | None:
        return self.arguments.tool if self.arguments is not None else None
