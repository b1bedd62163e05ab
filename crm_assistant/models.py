"""Provider-neutral data model shared by the orchestrator, tools and adapters.

Provider adapters translate these types to and from each backend's wire
format; nothing outside ``crm_assistant.providers`` knows what a backend
message looks like.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


# ── Tool calling ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolDefinition:
    """Name, description and JSON-schema parameter contract of one tool.

    ``parameters`` follows the JSON-schema subset every supported provider
    understands: ``{"type": "object", "properties": {...}, "required": [...]}``.
    """

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []},
    )

    @property
    def required(self) -> tuple[str, ...]:
        return tuple(self.parameters.get("required", ()))

    def to_json_schema(self) -> dict[str, Any]:
        """Return a deep copy of the parameter schema (callers may mutate it)."""
        return copy.deepcopy(self.parameters)


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one ToolCall.  ``payload`` is data on success, error text on failure."""

    call_id: str
    name: str
    success: bool
    payload: Any

    def to_content(self) -> str:
        """Serialise the result the way the model receives it."""
        return json.dumps(
            {"success": self.success, "payload": self.payload}, default=str,
        )


# ── Messages ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Message:
    """One entry of a conversation.

    Assistant messages that requested tools carry them in ``tool_calls``;
    tool messages carry the ``tool_call_id`` and ``name`` of the call they
    answer.
    """

    role: Role
    content: str
    timestamp: datetime = field(default_factory=_utcnow)
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: tuple[ToolCall, ...] = ()) -> Message:
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool_result(cls, result: ToolResult) -> Message:
        return cls(
            role=Role.TOOL,
            content=result.to_content(),
            tool_call_id=result.call_id,
            name=result.name,
        )


# ── Business context ─────────────────────────────────────────────────


@dataclass(frozen=True)
class BusinessContext:
    """Read-only snapshot of a user's business data, rebuilt every turn."""

    pending_deadlines: tuple[dict[str, Any], ...] = ()
    active_transactions: tuple[dict[str, Any], ...] = ()
    recent_clients: tuple[dict[str, Any], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.pending_deadlines or self.active_transactions or self.recent_clients)


# ── Conversation outcome ─────────────────────────────────────────────


class TurnStatus(str, Enum):
    BUILDING_REQUEST = "building_request"
    AWAITING_PROVIDER = "awaiting_provider"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ConversationOutcome:
    """What a single orchestrator run produced."""

    status: TurnStatus
    response: str
    turn_count: int
    messages: list[Message] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    failure_reason: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is TurnStatus.DONE
