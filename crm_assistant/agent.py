"""LangGraph-based conversation orchestrator for the CRM assistant.

Architecture:
  One request runs a LangGraph ``StateGraph`` with four nodes:

    1. **build_request**   — system prompt (with business context), prior
                             history and the new user message
    2. **await_provider**  — one round-trip through the ProviderAdapter;
                             increments the turn counter and enforces the
                             guardrail before calling out
    3. **execute_tools**   — runs every tool call of the reply, in order,
                             and appends one result per call
    4. **fail**            — fixed fallback message for provider errors,
                             guardrail trips and a passed deadline

  Routing:
    build_request → await_provider → (tool calls?) → execute_tools → await_provider (loop)
                                   → (text?)       → END  (DONE)
                                   → (error/bound/deadline) → fail → END  (FAILED)

  The graph is compiled once and holds no conversation memory: every
  ``run`` starts from a fresh state and the caller owns durability
  (see ``services/history.py``).  Neither a provider error nor a tool
  failure escapes ``run``; both end in a :class:`ConversationOutcome`.
"""

from __future__ import annotations

import logging
import operator
import time
from dataclasses import replace
from typing import Annotated, Any

from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from crm_assistant.config import MAX_TOOL_TURNS
from crm_assistant.models import (
    BusinessContext,
    ConversationOutcome,
    Message,
    Role,
    ToolCall,
    ToolResult,
    TurnStatus,
)
from crm_assistant.prompts import get_system_prompt
from crm_assistant.providers.base import ProviderAdapter, ProviderError
from crm_assistant.services.metrics import metrics
from crm_assistant.services.store import BusinessDataStore
from crm_assistant.tools.executor import ToolExecutor
from crm_assistant.tools.registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

PROVIDER_FAILURE_MESSAGE = (
    "I'm having trouble reaching the assistant service right now. "
    "Please try again in a moment."
)
GUARDRAIL_MESSAGE = (
    "I tried multiple times but couldn't complete your request. Please try rephrasing."
)
EMPTY_REPLY_MESSAGE = "I processed your request but couldn't generate a response."

FAILURE_PROVIDER = "provider_error"
FAILURE_GUARDRAIL = "guardrail"
FAILURE_TIMEOUT = "timeout"

TIMEOUT_MESSAGE = "The assistant took too long to respond. Please try again."


class LoopGuardrailExceeded(Exception):
    """The provider kept requesting tools past the turn bound."""

    def __init__(self, turn_count: int, max_turns: int):
        super().__init__(
            f"Tool-calling loop stopped after {turn_count} provider turns (limit {max_turns})"
        )
        self.turn_count = turn_count
        self.max_turns = max_turns


# ── State schema ─────────────────────────────────────────────────────


class ConversationState(TypedDict):
    """The state that flows through the graph.

    ``messages`` and ``tool_results`` use an append reducer so each node
    returns only what it adds; order is exactly the order of appends.
    ``user_message``, ``history`` and ``context`` are the request inputs.
    """

    messages: Annotated[list[Message], operator.add]
    tool_results: Annotated[list[ToolResult], operator.add]
    pending_tool_calls: list[ToolCall]
    turn_count: int
    status: TurnStatus
    response: str
    failure_reason: str | None
    error: str | None
    user_message: str
    history: list[Message]
    context: BusinessContext | None
    deadline: float | None


def _past(deadline: float | None) -> bool:
    return deadline is not None and time.monotonic() >= deadline


def _unique_call_ids(calls: tuple[ToolCall, ...], taken: set[str]) -> tuple[ToolCall, ...]:
    """Give every call an id not used earlier in this run."""
    unique = []
    for index, call in enumerate(calls):
        base = call.id or f"call_{index}"
        call_id, n = base, 1
        while call_id in taken:
            n += 1
            call_id = f"{base}_{n}"
        taken.add(call_id)
        unique.append(call if call_id == call.id else replace(call, id=call_id))
    return tuple(unique)


def _ids_in(messages: list[Message]) -> set[str]:
    return {c.id for m in messages if m.role is Role.ASSISTANT for c in m.tool_calls}


# ── Orchestrator ─────────────────────────────────────────────────────


class ConversationOrchestrator:
    """Drives one user message to a final answer through the tool-calling loop.

    Collaborators are injected; nothing is reached through module globals.
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        executor: ToolExecutor,
        registry: ToolRegistry | None = None,
        *,
        max_turns: int = MAX_TOOL_TURNS,
        store: BusinessDataStore | None = None,
        notifier: Any = None,
    ) -> None:
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self.provider = provider
        self.executor = executor
        self.registry = registry or executor.registry
        self.max_turns = max_turns
        self.store = store
        self.notifier = notifier
        self._graph = self._build_graph()

    # ── Nodes ────────────────────────────────────────────────────────

    def _build_request(self, state: ConversationState) -> dict:
        messages = [
            Message.system(get_system_prompt(state.get("context"))),
            *state.get("history", []),
            Message.user(state["user_message"]),
        ]
        return {"messages": messages, "status": TurnStatus.AWAITING_PROVIDER}

    def _await_provider(self, state: ConversationState) -> dict:
        turn = state["turn_count"] + 1
        if turn > self.max_turns:
            return {"status": TurnStatus.FAILED, "failure_reason": FAILURE_GUARDRAIL}
        if _past(state.get("deadline")):
            return {"status": TurnStatus.FAILED, "failure_reason": FAILURE_TIMEOUT}

        logger.debug("Provider turn %d/%d (%s)", turn, self.max_turns, self.provider.name)
        try:
            reply = self.provider.send(state["messages"], self.registry.definitions())
        except ProviderError as exc:
            return {
                "turn_count": turn,
                "status": TurnStatus.FAILED,
                "failure_reason": FAILURE_PROVIDER,
                "error": str(exc),
            }
        if _past(state.get("deadline")):
            logger.warning("Provider reply on turn %d arrived past the deadline; discarding it", turn)
            return {"turn_count": turn, "status": TurnStatus.FAILED, "failure_reason": FAILURE_TIMEOUT}

        if reply.has_tool_calls:
            calls = _unique_call_ids(reply.tool_calls, _ids_in(state["messages"]))
            logger.debug("Turn %d requested tools: %s", turn, [c.name for c in calls])
            return {
                "turn_count": turn,
                "messages": [Message.assistant(reply.text, calls)],
                "pending_tool_calls": list(calls),
                "status": TurnStatus.EXECUTING_TOOLS,
            }

        text = reply.text or EMPTY_REPLY_MESSAGE
        return {
            "turn_count": turn,
            "messages": [Message.assistant(text)],
            "response": text,
            "status": TurnStatus.DONE,
        }

    def _execute_tools(self, state: ConversationState, config: RunnableConfig) -> dict:
        ctx: ToolContext = config["configurable"]["tool_context"]
        calls = state["pending_tool_calls"]
        results = self.executor.execute_batch(calls, ctx)
        return {
            "messages": [Message.tool_result(r) for r in results],
            "tool_results": results,
            "pending_tool_calls": [],
            "status": TurnStatus.AWAITING_PROVIDER,
        }

    def _fail(self, state: ConversationState) -> dict:
        if state.get("failure_reason") == FAILURE_GUARDRAIL:
            exc = LoopGuardrailExceeded(state["turn_count"], self.max_turns)
            logger.warning("Guardrail tripped: %s", exc)
            metrics.record_guardrail_trip(state["turn_count"])
            return {"response": GUARDRAIL_MESSAGE}
        if state.get("failure_reason") == FAILURE_TIMEOUT:
            logger.warning("Run stopped at the deadline after %d turn(s)", state["turn_count"])
            return {"response": TIMEOUT_MESSAGE}

        logger.error(
            "Provider %s failed on turn %d: %s",
            self.provider.name, state["turn_count"], state.get("error"),
        )
        return {"response": PROVIDER_FAILURE_MESSAGE}

    # ── Conditional edges ────────────────────────────────────────────

    @staticmethod
    def _after_provider(state: ConversationState) -> str:
        status = state["status"]
        if status is TurnStatus.EXECUTING_TOOLS:
            return "execute_tools"
        if status is TurnStatus.FAILED:
            return "fail"
        return END

    # ── Graph assembly ───────────────────────────────────────────────

    def _build_graph(self):
        graph = StateGraph(ConversationState)

        graph.add_node("build_request", self._build_request)
        graph.add_node("await_provider", self._await_provider)
        graph.add_node("execute_tools", self._execute_tools)
        graph.add_node("fail", self._fail)

        graph.set_entry_point("build_request")
        graph.add_edge("build_request", "await_provider")
        graph.add_conditional_edges(
            "await_provider",
            self._after_provider,
            {"execute_tools": "execute_tools", "fail": "fail", END: END},
        )
        graph.add_edge("execute_tools", "await_provider")
        graph.add_edge("fail", END)

        return graph.compile()

    # ── Public API ───────────────────────────────────────────────────

    def run(
        self,
        user_id: str,
        message: str,
        *,
        context: BusinessContext | None = None,
        history: list[Message] | tuple[Message, ...] = (),
        tool_context: ToolContext | None = None,
        deadline: float | None = None,
    ) -> ConversationOutcome:
        """Run the loop for one user message and return its outcome.

        *deadline* is a ``time.monotonic()`` value; once it has passed no
        further provider round-trip starts, a late reply is discarded and the
        run ends FAILED with reason ``timeout``.
        """
        if tool_context is None:
            if self.store is None:
                raise ValueError("tool_context is required when no store was injected")
            tool_context = ToolContext(
                user_id=user_id, store=self.store, notifier=self.notifier, provider=self.provider,
            )

        initial: ConversationState = {
            "messages": [],
            "tool_results": [],
            "pending_tool_calls": [],
            "turn_count": 0,
            "status": TurnStatus.BUILDING_REQUEST,
            "response": "",
            "failure_reason": None,
            "error": None,
            "user_message": message,
            "history": list(history),
            "context": context,
            "deadline": deadline,
        }
        final = self._graph.invoke(
            initial,
            config={
                "configurable": {"tool_context": tool_context},
                # Each loop is two graph steps; the explicit guardrail always fires first.
                "recursion_limit": self.max_turns * 2 + 5,
            },
        )

        outcome = ConversationOutcome(
            status=final["status"],
            response=final["response"],
            turn_count=final["turn_count"],
            messages=list(final["messages"]),
            tool_results=list(final["tool_results"]),
            failure_reason=final.get("failure_reason"),
        )
        logger.info(
            "Conversation for %s ended %s after %d turn(s), %d tool call(s)",
            user_id, outcome.status.value, outcome.turn_count, len(outcome.tool_results),
        )
        return outcome
