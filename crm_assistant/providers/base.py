"""
Base LLM provider adapter.

An adapter owns everything backend-specific about one LLM API:

* mapping the neutral :class:`~crm_assistant.models.Role` set onto the
  backend's roles (declared once in ``ROLE_MAP``),
* serialising the tool catalog into the backend's function-calling schema,
* parsing the response into a :class:`ProviderReply`.

Transport failures, error statuses and malformed payloads all surface as
:class:`ProviderError`.  Adapters never retry; one ``send`` is one
round-trip.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar

from crm_assistant.models import Message, Role, ToolCall, ToolDefinition
from crm_assistant.services.metrics import metrics

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """The LLM backend was unreachable or answered with an error/malformed payload."""

    def __init__(self, message: str, *, provider: str, status_code: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


@dataclass(frozen=True)
class ProviderReply:
    """Neutral shape of one provider response: final text or tool calls."""

    text: str = ""
    tool_calls: tuple[ToolCall, ...] = field(default_factory=tuple)

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class ProviderAdapter(ABC):
    """Translate neutral messages/tools to one backend and back."""

    name: ClassVar[str] = "base"
    ROLE_MAP: ClassVar[dict[Role, Any]] = {}

    def send(self, messages: list[Message], tools: list[ToolDefinition]) -> ProviderReply:
        """Perform one round-trip.  Raises :class:`ProviderError` on any failure."""
        t0 = time.perf_counter()
        try:
            reply = self._complete(messages, tools)
        except ProviderError as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_provider_call(
                self.name, success=False, latency_ms=elapsed,
                error_type=f"http_{exc.status_code}" if exc.status_code else "provider_error",
            )
            raise
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            status = getattr(exc, "status_code", None)
            status = status if isinstance(status, int) else None
            metrics.record_provider_call(
                self.name, success=False, latency_ms=elapsed,
                error_type=f"http_{status}" if status else type(exc).__name__,
            )
            raise ProviderError(
                f"{self.name} request failed: {type(exc).__name__}: {exc}",
                provider=self.name,
                status_code=status,
            ) from exc

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_provider_call(self.name, success=True, latency_ms=elapsed)
        logger.debug(
            "%s replied in %.0fms (%d tool calls)", self.name, elapsed, len(reply.tool_calls),
        )
        return reply

    @abstractmethod
    def _complete(self, messages: list[Message], tools: list[ToolDefinition]) -> ProviderReply:
        """Backend-specific request/response.  Must be implemented by subclasses."""

    # ── Shared helpers ───────────────────────────────────────────────

    def _role(self, role: Role) -> Any:
        try:
            return self.ROLE_MAP[role]
        except KeyError:
            raise ProviderError(
                f"{self.name} has no mapping for role {role.value!r}", provider=self.name,
            ) from None

    @staticmethod
    def _format_tools_openai(tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """OpenAI function-calling format (also accepted by LangChain ``bind_tools``)."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.to_json_schema(),
                },
            }
            for tool in tools
        ]

    def _parse_arguments(self, raw: Any) -> dict[str, Any]:
        """Decode a tool-call argument payload (dict or JSON string)."""
        if raw is None or raw == "":
            return {}
        if isinstance(raw, dict):
            return raw
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ProviderError(
                f"{self.name} returned malformed tool arguments: {raw!r}", provider=self.name,
            ) from exc
        if not isinstance(parsed, dict):
            raise ProviderError(
                f"{self.name} returned non-object tool arguments: {raw!r}", provider=self.name,
            )
        return parsed
