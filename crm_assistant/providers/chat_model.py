"""Shared adapter for LangChain chat models (``ChatAnthropic``, ``ChatOpenAI``).

Subclasses only say how to build their model; message conversion, tool
binding and response parsing are the same for every LangChain backend.
"""

from __future__ import annotations

import logging
from typing import Any

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from crm_assistant.models import Message, Role, ToolCall, ToolDefinition
from crm_assistant.providers.base import ProviderAdapter, ProviderError, ProviderReply

logger = logging.getLogger(__name__)


def _text_of(content: Any) -> str:
    """Join the text blocks of an AIMessage content (str or list of blocks)."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class ChatModelAdapter(ProviderAdapter):
    """Drive any LangChain ``BaseChatModel`` through ``bind_tools``/``invoke``."""

    ROLE_MAP = {
        Role.SYSTEM: SystemMessage,
        Role.USER: HumanMessage,
        Role.ASSISTANT: AIMessage,
        Role.TOOL: ToolMessage,
    }

    def __init__(self, llm: Any | None = None) -> None:
        self._llm = llm

    def _build_llm(self) -> Any:
        raise NotImplementedError

    @property
    def llm(self) -> Any:
        if self._llm is None:
            self._llm = self._build_llm()
        return self._llm

    def _to_langchain(self, messages: list[Message]) -> list[BaseMessage]:
        converted: list[BaseMessage] = []
        for msg in messages:
            cls = self._role(msg.role)
            if msg.role is Role.ASSISTANT and msg.tool_calls:
                converted.append(
                    cls(
                        content=msg.content,
                        tool_calls=[
                            {"name": c.name, "args": c.arguments, "id": c.id}
                            for c in msg.tool_calls
                        ],
                    )
                )
            elif msg.role is Role.TOOL:
                converted.append(cls(content=msg.content, tool_call_id=msg.tool_call_id or ""))
            else:
                converted.append(cls(content=msg.content))
        return converted

    def _complete(self, messages: list[Message], tools: list[ToolDefinition]) -> ProviderReply:
        llm = self.llm.bind_tools(self._format_tools_openai(tools)) if tools else self.llm
        response = llm.invoke(self._to_langchain(messages))
        if not isinstance(response, AIMessage):
            raise ProviderError(
                f"{self.name} returned {type(response).__name__}, expected AIMessage",
                provider=self.name,
            )
        if getattr(response, "invalid_tool_calls", None):
            bad = response.invalid_tool_calls[0]
            raise ProviderError(
                f"{self.name} returned a malformed tool call {bad.get('name')!r}: {bad.get('error')}",
                provider=self.name,
            )

        calls = tuple(
            ToolCall(
                id=call.get("id") or "",
                name=call["name"],
                arguments=self._parse_arguments(call.get("args")),
            )
            for call in response.tool_calls or []
        )
        return ProviderReply(text=_text_of(response.content).strip(), tool_calls=calls)
