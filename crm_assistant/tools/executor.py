"""
Tool executor.

Runs one tool call inside an isolation boundary: whatever the handler
does, the caller gets exactly one :class:`ToolResult` back and nothing
propagates.  Every execution is written to the ``crm_assistant.audit``
logger (who, when, what, outcome) since tool handlers are the only code
paths that mutate business data or send notifications.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime

from crm_assistant.models import ToolCall, ToolResult
from crm_assistant.services.metrics import metrics
from crm_assistant.tools.registry import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("crm_assistant.audit")


class ToolExecutionError(Exception):
    """Raised by a handler to report a business failure to the model."""


class ToolExecutor:
    """Executes tool calls against a :class:`ToolRegistry`.

    Usage:
        executor = ToolExecutor(registry)
        result = executor.execute(call, ctx)

    A failed call (unknown tool, missing argument, handler error or
    unexpected exception) becomes ``ToolResult(success=False, payload=<error text>)``.
    """

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    def execute(self, call: ToolCall, ctx: ToolContext) -> ToolResult:
        t0 = time.perf_counter()
        result = self._run(call, ctx)
        elapsed = (time.perf_counter() - t0) * 1000

        metrics.record_tool_execution(call.name, success=result.success, latency_ms=elapsed)
        audit_logger.info(
            "user=%s tool=%s call_id=%s outcome=%s at=%s",
            ctx.user_id,
            call.name,
            call.id,
            "success" if result.success else "failure",
            datetime.now(UTC).isoformat(),
        )
        return result

    def execute_batch(self, calls: list[ToolCall], ctx: ToolContext) -> list[ToolResult]:
        """Execute *calls* one after another, in order.  One result per call."""
        return [self.execute(call, ctx) for call in calls]

    def _run(self, call: ToolCall, ctx: ToolContext) -> ToolResult:
        tool = self.registry.get(call.name)
        if tool is None:
            logger.warning("Model requested unknown tool %r", call.name)
            return self._failed(call, f"unknown tool: {call.name}")

        arguments = call.arguments if isinstance(call.arguments, dict) else {}
        missing = [
            name for name in tool.definition.required
            if arguments.get(name) is None or arguments.get(name) == ""
        ]
        if missing:
            return self._failed(call, f"missing required argument(s): {', '.join(missing)}")

        logger.info("Executing tool: %s", call.name)
        try:
            payload = tool.handler(ctx, arguments)
        except ToolExecutionError as exc:
            logger.info("Tool %s reported failure: %s", call.name, exc)
            return self._failed(call, str(exc))
        except Exception as exc:
            logger.exception("Tool %s raised", call.name)
            return self._failed(call, f"{type(exc).__name__}: {exc}")

        return ToolResult(call_id=call.id, name=call.name, success=True, payload=payload)

    @staticmethod
    def _failed(call: ToolCall, message: str) -> ToolResult:
        return ToolResult(call_id=call.id, name=call.name, success=False, payload=message)
