# =============================================================================
# LangGraph Orchestrator — One-Tool Agent State Machine
# =============================================================================
#
# Turns one user message (plus caller-supplied history) into one answer,
# using AT MOST ONE tool call:
#
#   START ──▶ decide_tool ──┬──▶ execute_tool ──▶ synthesize ──▶ finalize ──▶ END
#                           └────────────────────▶ synthesize
#
#   decide_tool   DecidingTool: ToolRouter picks a tool, unless this run
#                 already carries a tool result
#   execute_tool  AwaitingToolResult: ToolRegistry runs the call, always
#                 yields text, sets tool_executed = True
#   synthesize    Synthesizing: one completion call with the tool result
#                 injected as evidence; backend failures become apologies
#   finalize      Done: last non-empty assistant message without a pending
#                 tool call, else a fixed fallback
#
# There is no edge back into decide_tool. `tool_executed` is the guard
# that keeps decide_tool from routing again even if the graph were rewired.
#
# DESIGN DECISION: Plain TypedDict state with reducer-annotated lists.
# `messages` and `phases` accumulate across nodes; every other key is
# overwritten by the node that sets it.
#
# DESIGN DECISION: Graph compiled once per ChatAgent.
# The collaborators (router, registry, completion client) are closed over
# by the node functions, so a test can build an agent around fakes without
# patching module globals.
# =============================================================================

from __future__ import annotations

import logging
import operator
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Annotated, Literal

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from app.agents.router import ToolRouter
from app.agents.tools import ToolRegistry
from app.errors import AgentError, ConfigurationError
from app.models.jobs import ConversationTurn
from app.models.tools import ToolArguments
from app.services.llm import CompletionClient, CompletionOptions

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a Shark Tank expert and business analyst. Your primary role is to answer questions using the Shark Tank pitch database.

Key responsibilities:
- Base every answer about Shark Tank on the search results you are given
- Analyze pitch strategies and deal outcomes using real data
- Explain business valuations and financial terms with examples
- Provide insights on investor behavior with specific cases
- Track company success stories with database information

When search results are provided, cite companies, sharks and numbers from them. When a calculation result is provided, explain it in plain terms. Be conversational and educational."""

NOT_CONFIGURED_REPLY = (
    "I apologize, but the AI service is not configured. Please contact support."
)
ERROR_REPLY = (
    "I apologize, but I encountered an error processing your request. Please try again."
)
FALLBACK_REPLY = "I could not generate a response"

# Milestone reported once the tool decision is made
DECIDED_PROGRESS = 30

ProgressCallback = Callable[[int], None]


# ---------------------------------------------------------------------------
# Agent State Schema
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AgentMessage:
    """One entry of the per-run message log."""

    role: Literal["user", "assistant", "tool"]
    content: str
    tool_call: ToolArguments | None = None


class AgentState(TypedDict, total=False):
    """
    State that flows through the graph for one run. Never persisted.

    Uses total=False so nodes only return the keys they update.
    """

    # --- Input (set by caller) ---
    message: str
    history: list[ConversationTurn]
    # NOTE: Not JSON-serialisable. Safe as long as no checkpointer is
    # configured on the graph.
    on_progress: ProgressCallback | None

    # --- Accumulated (reducer: list concatenation) ---
    messages: Annotated[list[AgentMessage], operator.add]
    phases: Annotated[list[str], operator.add]
    tools_used: Annotated[list[str], operator.add]

    # --- Intermediate (set by nodes) ---
    pending_tool_call: ToolArguments | None
    tool_result: str | None
    tool_executed: bool

    # --- Output (set by finalize) ---
    answer: str


@dataclass
class AgentRunResult:
    answer: str
    tools_used: list[str] = field(default_factory=list)
    phases: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Prompt Construction
# ---------------------------------------------------------------------------


def build_prompt(message: str, tool_result: str | None, tool_executed: bool) -> str:
    """
    The per-turn prompt: the question, with tool evidence injected when a
    tool ran. An empty tool result turns into an explicit no-results notice.
    """
    if not tool_executed:
        return message
    if tool_result and tool_result.strip():
        return (
            f"Based on these search results:\n\n{tool_result}\n\n"
            f"Answer the user's question: {message}"
        )
    return (
        "The search returned no results. Please answer the user's question "
        f"using your general knowledge: {message}"
    )


def final_answer(messages: Sequence[AgentMessage]) -> str:
    """Last non-empty assistant message that is not a tool call."""
    for msg in reversed(messages):
        if msg.role == "assistant" and msg.tool_call is None and msg.content.strip():
            return msg.content
    return FALLBACK_REPLY


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------


def build_agent_graph(
    router: ToolRouter,
    registry: ToolRegistry,
    completion: CompletionClient,
    instructions: str = SYSTEM_PROMPT,
    options: CompletionOptions | None = None,
):
    """Compile the one-tool agent graph around the given collaborators."""

    async def decide_tool(state: AgentState) -> dict:
        # A run that already carries a tool result never routes again
        if state.get("tool_executed") or state.get("tool_result") is not None:
            logger.info("Tool already executed this turn, skipping router")
            return {"pending_tool_call": None, "phases": ["deciding_tool"]}

        decision = router.decide(state["message"])
        progress = state.get("on_progress")
        if progress is not None:
            progress(DECIDED_PROGRESS)

        if not decision.use_tool or decision.arguments is None:
            return {"pending_tool_call": None, "phases": ["deciding_tool"]}

        return {
            "pending_tool_call": decision.arguments,
            "messages": [AgentMessage("assistant", "", tool_call=decision.arguments)],
            "phases": ["deciding_tool"],
        }

    def route_after_decision(state: AgentState) -> str:
        if state.get("pending_tool_call") is not None and not state.get("tool_executed"):
            return "execute_tool"
        return "synthesize"

    async def execute_tool(state: AgentState) -> dict:
        call = state["pending_tool_call"]
        result = await registry.invoke(call.tool, call)
        return {
            "pending_tool_call": None,
            "tool_result": result,
            "tool_executed": True,
            "tools_used": [call.tool],
            "messages": [AgentMessage("tool", result)],
            "phases": ["awaiting_tool_result"],
        }

    async def synthesize(state: AgentState) -> dict:
        prompt = build_prompt(
            state["message"],
            state.get("tool_result"),
            bool(state.get("tool_executed")),
        )
        try:
            text = await completion.complete(
                prompt, instructions, state.get("history") or [], options,
            )
        except ConfigurationError as exc:
            logger.error("Completion backend not configured: %s", exc)
            text = NOT_CONFIGURED_REPLY
        except AgentError as exc:
            logger.error("Completion failed: %s", exc)
            text = ERROR_REPLY

        return {
            "messages": [AgentMessage("assistant", text or "")],
            "phases": ["synthesizing"],
        }

    async def finalize(state: AgentState) -> dict:
        return {
            "answer": final_answer(state.get("messages") or []),
            "phases": ["done"],
        }

    builder = StateGraph(AgentState)
    builder.add_node("decide_tool", decide_tool)
    builder.add_node("execute_tool", execute_tool)
    builder.add_node("synthesize", synthesize)
    builder.add_node("finalize", finalize)

    builder.add_edge(START, "decide_tool")
    builder.add_conditional_edges(
        "decide_tool",
        route_after_decision,
        {"execute_tool": "execute_tool", "synthesize": "synthesize"},
    )
    builder.add_edge("execute_tool", "synthesize")
    builder.add_edge("synthesize", "finalize")
    builder.add_edge("finalize", END)

    return builder.compile()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class ChatAgent:
    """Runs the compiled agent graph for one user turn at a time."""

    def __init__(
        self,
        router: ToolRouter,
        registry: ToolRegistry,
        completion: CompletionClient,
        instructions: str = SYSTEM_PROMPT,
        options: CompletionOptions | None = None,
    ) -> None:
        self._graph = build_agent_graph(router, registry, completion, instructions, options)

    async def run(
        self,
        message: str,
        history: Sequence[ConversationTurn] = (),
        on_progress: ProgressCallback | None = None,
    ) -> AgentRunResult:
        """
        Answer one message.

        Args:
            message: The user's question for this turn.
            history: Prior turns, oldest first. Truncated by the completion
                client before transmission.
            on_progress: Called with DECIDED_PROGRESS once a tool is chosen.
        """
        initial_state: AgentState = {
            "message": message,
            "history": list(history),
            "on_progress": on_progress,
            "messages": [AgentMessage("user", message)],
            "phases": ["start"],
            "tools_used": [],
            "tool_executed": False,
            "tool_result": None,
            "pending_tool_call": None,
        }

        logger.info(
            "Invoking agent graph: message='%s', history=%d",
            message[:80], len(initial_state["history"]),
        )
        result = await self._graph.ainvoke(initial_state)

        logger.info(
            "Agent graph complete: tools=%s, answer_len=%d",
            result.get("tools_used"), len(result.get("answer", "")),
        )
        return AgentRunResult(
            answer=result.get("answer") or FALLBACK_REPLY,
            tools_used=list(result.get("tools_used") or []),
            phases=list(result.get("phases") or []),
        )


_agent: ChatAgent | None = None


def get_chat_agent() -> ChatAgent:
    """Lazy singleton wired to the configured backends."""
    global _agent
    if _agent is None:
        from app.services.llm import get_completion_client
        from app.services.retrieval import get_retrieval_client

        _agent = ChatAgent(
            router=ToolRouter(),
            registry=ToolRegistry.default(get_retrieval_client()),
            completion=get_completion_client(),
        )
    return _agent
