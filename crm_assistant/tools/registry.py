"""Tool declaration and the static tool catalog.

A tool is a plain function ``handler(ctx, arguments) -> dict`` decorated
with :func:`tool_definition`, which attaches the name, description and
JSON-schema parameter contract the provider sees::

    @tool_definition(
        "delete_client",
        "Deletes a client from the CRM",
        properties={"client_name": {"type": "string", "description": "..."}},
        required=["client_name"],
    )
    def delete_client(ctx: ToolContext, arguments: dict) -> dict:
        ...

The registry only checks that required arguments are present; handlers
validate types and values themselves.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import TYPE_CHECKING, Any

from crm_assistant.models import ToolDefinition
from crm_assistant.services.store import BusinessDataStore

if TYPE_CHECKING:
    from crm_assistant.providers.base import ProviderAdapter
    from crm_assistant.services.notifications import NotificationSender

logger = logging.getLogger(__name__)

ToolHandler = Callable[["ToolContext", dict[str, Any]], Any]


@dataclass
class ToolContext:
    """Per-request collaborators handed to every handler."""

    user_id: str
    store: BusinessDataStore
    notifier: NotificationSender | None = None
    provider: ProviderAdapter | None = None
    today: date = field(default_factory=lambda: datetime.now(UTC).date())


def tool_definition(
    name: str,
    description: str,
    *,
    properties: dict[str, Any] | None = None,
    required: Iterable[str] = (),
) -> Callable[[ToolHandler], ToolHandler]:
    """Attach a :class:`ToolDefinition` to a handler function."""
    definition = ToolDefinition(
        name=name,
        description=description,
        parameters={
            "type": "object",
            "properties": dict(properties or {}),
            "required": list(required),
        },
    )
    unknown = set(definition.required) - set(definition.parameters["properties"])
    if unknown:
        raise ValueError(f"Tool {name!r} requires undeclared parameters: {sorted(unknown)}")

    def decorator(handler: ToolHandler) -> ToolHandler:
        handler.definition = definition  # type: ignore[attr-defined]
        return handler

    return decorator


@dataclass(frozen=True)
class RegisteredTool:
    definition: ToolDefinition
    handler: ToolHandler


class ToolRegistry:
    """Name → (definition, handler).  Read-only once frozen."""

    def __init__(self, handlers: Iterable[ToolHandler] = ()) -> None:
        self._tools: dict[str, RegisteredTool] = {}
        self._frozen = False
        for handler in handlers:
            self.register(handler)

    def register(self, handler: ToolHandler) -> None:
        if self._frozen:
            raise RuntimeError("Tool registry is frozen")
        definition = getattr(handler, "definition", None)
        if not isinstance(definition, ToolDefinition):
            raise ValueError(f"{handler!r} is not decorated with @tool_definition")
        if definition.name in self._tools:
            raise ValueError(f"Duplicate tool name: {definition.name}")
        self._tools[definition.name] = RegisteredTool(definition, handler)

    def freeze(self) -> ToolRegistry:
        self._frozen = True
        return self

    def get(self, name: str) -> RegisteredTool | None:
        return self._tools.get(name)

    def definitions(self) -> list[ToolDefinition]:
        return [tool.definition for tool in self._tools.values()]

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)
