"""Google Gemini ``generateContent`` adapter over httpx.

API docs: https://ai.google.dev/api/generate-content

Gemini differs from the chat-completions family in three ways the adapter
absorbs:

* system text travels in ``systemInstruction``, not in ``contents``;
* tool results are ``functionResponse`` parts under the ``function`` role,
  and consecutive entries with the same role must be merged into one;
* function calls carry no id, so one is generated per call.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

import httpx

from crm_assistant.config import (
    GEMINI_BASE_URL,
    GEMINI_MODEL_NAME,
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LLM_TIMEOUT_SECONDS,
    require_secret,
)
from crm_assistant.models import Message, Role, ToolCall, ToolDefinition
from crm_assistant.providers.base import ProviderAdapter, ProviderError, ProviderReply

logger = logging.getLogger(__name__)

# JSON-schema keywords the Gemini OpenAPI subset rejects.
_UNSUPPORTED_SCHEMA_KEYS = frozenset({"additionalProperties", "default", "$schema"})


def _gemini_schema(schema: Any) -> Any:
    if isinstance(schema, dict):
        return {
            key: _gemini_schema(value)
            for key, value in schema.items()
            if key not in _UNSUPPORTED_SCHEMA_KEYS and not (key == "required" and not value)
        }
    if isinstance(schema, list):
        return [_gemini_schema(value) for value in schema]
    return schema


def _function_response(content: str) -> dict[str, Any]:
    try:
        parsed = json.loads(content)
    except ValueError:
        return {"content": content}
    return parsed if isinstance(parsed, dict) else {"content": parsed}


class GeminiAdapter(ProviderAdapter):
    name = "gemini"
    ROLE_MAP = {
        Role.SYSTEM: "systemInstruction",
        Role.USER: "user",
        Role.ASSISTANT: "model",
        Role.TOOL: "function",
    }

    def __init__(
        self,
        *,
        model: str = GEMINI_MODEL_NAME,
        client: httpx.Client | None = None,
    ) -> None:
        self.model = model
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=GEMINI_BASE_URL,
                headers={
                    "x-goog-api-key": require_secret("GEMINI_API_KEY"),
                    "Content-Type": "application/json",
                },
                timeout=LLM_TIMEOUT_SECONDS,
            )
        return self._client

    # ── Request formatting ───────────────────────────────────────────

    def _parts(self, msg: Message) -> list[dict[str, Any]]:
        if msg.role is Role.TOOL:
            return [
                {
                    "functionResponse": {
                        "name": msg.name or "",
                        "response": _function_response(msg.content),
                    }
                }
            ]
        parts: list[dict[str, Any]] = [{"text": msg.content}] if msg.content else []
        for call in msg.tool_calls:
            parts.append({"functionCall": {"name": call.name, "args": call.arguments}})
        return parts

    def _format_messages_for_api(
        self, messages: list[Message],
    ) -> tuple[list[dict[str, Any]], dict[str, Any] | None]:
        """Return ``(contents, systemInstruction)``."""
        system_texts: list[str] = []
        contents: list[dict[str, Any]] = []
        for msg in messages:
            role = self._role(msg.role)
            if role == "systemInstruction":
                system_texts.append(msg.content)
                continue
            parts = self._parts(msg)
            if not parts:
                continue
            if contents and contents[-1]["role"] == role:
                contents[-1]["parts"].extend(parts)
            else:
                contents.append({"role": role, "parts": parts})
        instruction = {"parts": [{"text": "\n\n".join(system_texts)}]} if system_texts else None
        return contents, instruction

    def _format_tools_for_api(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        return [
            {
                "functionDeclarations": [
                    {
                        "name": tool.name,
                        "description": tool.description,
                        "parameters": _gemini_schema(tool.to_json_schema()),
                    }
                    for tool in tools
                ]
            }
        ]

    # ── Round-trip ───────────────────────────────────────────────────

    def _complete(self, messages: list[Message], tools: list[ToolDefinition]) -> ProviderReply:
        contents, instruction = self._format_messages_for_api(messages)
        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": LLM_TEMPERATURE,
                "maxOutputTokens": LLM_MAX_TOKENS,
            },
        }
        if instruction:
            payload["systemInstruction"] = instruction
        if tools:
            payload["tools"] = self._format_tools_for_api(tools)

        try:
            response = self.client.post(f"/models/{self.model}:generateContent", json=payload)
        except httpx.HTTPError as exc:
            raise ProviderError(
                f"gemini request failed: {type(exc).__name__}", provider=self.name,
            ) from exc
        if response.status_code >= 400:
            raise ProviderError(
                f"gemini returned {response.status_code}: {response.text[:500]}",
                provider=self.name,
                status_code=response.status_code,
            )

        data = response.json()
        candidates = data.get("candidates") or []
        if not candidates:
            reason = (data.get("promptFeedback") or {}).get("blockReason", "no candidates")
            raise ProviderError(f"gemini returned no candidates ({reason})", provider=self.name)
        parts = (candidates[0].get("content") or {}).get("parts") or []

        texts: list[str] = []
        calls: list[ToolCall] = []
        for part in parts:
            if "functionCall" in part:
                fn = part["functionCall"] or {}
                if not fn.get("name"):
                    raise ProviderError(
                        f"gemini function call without a name: {part!r}", provider=self.name,
                    )
                calls.append(
                    ToolCall(
                        id=f"call_{uuid.uuid4().hex[:12]}",
                        name=fn["name"],
                        arguments=self._parse_arguments(fn.get("args")),
                    )
                )
            elif "text" in part:
                texts.append(part["text"])
        return ProviderReply(text="".join(texts).strip(), tool_calls=tuple(calls))
