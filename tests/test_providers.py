"""Tests for the LLM provider adapters.

Each adapter is exercised with a mocked transport: the LangChain model for
OpenAI, the httpx client for Gemini.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from crm_assistant.models import Message, ToolCall, ToolDefinition, ToolResult
from crm_assistant.providers.anthropic import AnthropicAdapter
from crm_assistant.providers.base import ProviderError
from crm_assistant.providers.factory import create_provider
from crm_assistant.providers.gemini import GeminiAdapter
from crm_assistant.providers.openai import OpenAIAdapter

# ── Helpers ──────────────────────────────────────────────────────────

ADD_CLIENT = ToolDefinition(
    name="add_client",
    description="Adds a new client to the CRM",
    parameters={
        "type": "object",
        "properties": {"name": {"type": "string"}, "status": {"type": "string"}},
        "required": ["name", "status"],
    },
)


def _mock_response(data: dict, status_code: int = 200) -> MagicMock:
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = data
    mock.text = str(data)
    return mock


def _conversation() -> list[Message]:
    call = ToolCall(id="c1", name="add_client", arguments={"name": "Jane Doe", "status": "hot"})
    result = ToolResult(call_id="c1", name="add_client", success=True, payload={"client_id": "x"})
    return [
        Message.system("You are a CRM assistant."),
        Message.user("Add Jane Doe as a hot lead"),
        Message.assistant("", (call,)),
        Message.tool_result(result),
    ]


# ── Anthropic (LangChain) ────────────────────────────────────────────


class TestAnthropicAdapter:
    def _adapter(self, response):
        llm = MagicMock()
        llm.bind_tools.return_value.invoke.return_value = response
        llm.invoke.return_value = response
        return AnthropicAdapter(llm=llm), llm

    def test_text_reply(self):
        adapter, llm = self._adapter(AIMessage(content="All set."))
        reply = adapter.send([Message.user("hi")], [])
        assert reply.text == "All set."
        assert not reply.has_tool_calls
        llm.bind_tools.assert_not_called()

    def test_tool_call_reply(self):
        ai = AIMessage(
            content=[{"type": "text", "text": "Adding now."}],
            tool_calls=[{"name": "add_client", "args": {"name": "Jane Doe"}, "id": "toolu_1"}],
        )
        adapter, llm = self._adapter(ai)
        reply = adapter.send([Message.user("add Jane")], [ADD_CLIENT])

        assert reply.text == "Adding now."
        assert reply.tool_calls == (
            ToolCall(id="toolu_1", name="add_client", arguments={"name": "Jane Doe"}),
        )
        tools = llm.bind_tools.call_args[0][0]
        assert tools[0]["function"]["name"] == "add_client"

    def test_messages_are_converted_with_roles(self):
        adapter, llm = self._adapter(AIMessage(content="ok"))
        adapter.send(_conversation(), [ADD_CLIENT])

        sent = llm.bind_tools.return_value.invoke.call_args[0][0]
        assert [type(m) for m in sent] == [SystemMessage, HumanMessage, AIMessage, ToolMessage]
        assert sent[2].tool_calls[0]["id"] == "c1"
        assert sent[3].tool_call_id == "c1"

    def test_llm_exception_becomes_provider_error(self):
        llm = MagicMock()
        llm.invoke.side_effect = RuntimeError("overloaded")
        with pytest.raises(ProviderError, match="overloaded"):
            AnthropicAdapter(llm=llm).send([Message.user("hi")], [])


# ── OpenAI (LangChain) ───────────────────────────────────────────────


class _RateLimited(Exception):
    status_code = 429


class TestOpenAIAdapter:
    def _adapter(self, response):
        llm = MagicMock()
        llm.bind_tools.return_value.invoke.return_value = response
        llm.invoke.return_value = response
        return OpenAIAdapter(llm=llm), llm

    def test_text_reply(self):
        adapter, llm = self._adapter(AIMessage(content="Done!"))
        reply = adapter.send([Message.user("hi")], [])
        assert reply.text == "Done!"
        llm.bind_tools.assert_not_called()

    def test_tools_bound_and_messages_converted(self):
        adapter, llm = self._adapter(AIMessage(content="ok"))
        adapter.send(_conversation(), [ADD_CLIENT])

        tools = llm.bind_tools.call_args[0][0]
        assert tools[0]["function"]["parameters"]["required"] == ["name", "status"]
        sent = llm.bind_tools.return_value.invoke.call_args[0][0]
        assert [type(m) for m in sent] == [SystemMessage, HumanMessage, AIMessage, ToolMessage]
        assert sent[2].tool_calls[0]["args"] == {"name": "Jane Doe", "status": "hot"}
        assert sent[3].tool_call_id == "c1"

    def test_tool_calls_parsed(self):
        ai = AIMessage(
            content="",
            tool_calls=[{"name": "add_client", "args": {"name": "Bob"}, "id": "call_a"}],
        )
        adapter, _ = self._adapter(ai)
        reply = adapter.send([Message.user("add Bob")], [ADD_CLIENT])
        assert reply.text == ""
        assert reply.tool_calls[0] == ToolCall(id="call_a", name="add_client", arguments={"name": "Bob"})

    def test_malformed_arguments(self):
        ai = AIMessage(
            content="",
            invalid_tool_calls=[
                {"name": "add_client", "args": "{oops", "id": "x", "error": "bad json"},
            ],
        )
        adapter, _ = self._adapter(ai)
        with pytest.raises(ProviderError, match="malformed"):
            adapter.send([Message.user("x")], [ADD_CLIENT])

    def test_api_status_is_kept(self):
        llm = MagicMock()
        llm.invoke.side_effect = _RateLimited("rate limited")
        with pytest.raises(ProviderError) as excinfo:
            OpenAIAdapter(llm=llm).send([Message.user("x")], [])
        assert excinfo.value.status_code == 429
        assert excinfo.value.provider == "openai"

    def test_model_is_configurable(self):
        assert OpenAIAdapter(model="gpt-test").model == "gpt-test"


# ── Gemini ───────────────────────────────────────────────────────────


class TestGeminiAdapter:
    def test_request_format(self):
        adapter = GeminiAdapter(model="gemini-test", client=MagicMock())
        adapter.client.post.return_value = _mock_response(
            {"candidates": [{"content": {"parts": [{"text": "Done!"}]}}]},
        )

        reply = adapter.send(_conversation(), [ADD_CLIENT])

        assert reply.text == "Done!"
        path = adapter.client.post.call_args[0][0]
        payload = adapter.client.post.call_args[1]["json"]
        assert path == "/models/gemini-test:generateContent"
        assert payload["systemInstruction"] == {"parts": [{"text": "You are a CRM assistant."}]}
        assert [c["role"] for c in payload["contents"]] == ["user", "model", "function"]
        assert payload["contents"][1]["parts"][0]["functionCall"]["name"] == "add_client"
        response = payload["contents"][2]["parts"][0]["functionResponse"]
        assert response["name"] == "add_client"
        assert response["response"] == {"success": True, "payload": {"client_id": "x"}}
        declaration = payload["tools"][0]["functionDeclarations"][0]
        assert declaration["name"] == "add_client"

    def test_consecutive_same_role_entries_merge(self):
        adapter = GeminiAdapter(client=MagicMock())
        results = [
            ToolResult(call_id=f"c{i}", name="add_client", success=True, payload={}) for i in range(2)
        ]
        contents, _ = adapter._format_messages_for_api(
            [Message.user("go"), *[Message.tool_result(r) for r in results]],
        )
        assert [c["role"] for c in contents] == ["user", "function"]
        assert len(contents[1]["parts"]) == 2

    def test_empty_required_list_is_dropped(self):
        adapter = GeminiAdapter(client=MagicMock())
        bare = ToolDefinition(name="send_sms_briefing", description="Sends an SMS")
        declaration = adapter._format_tools_for_api([bare])[0]["functionDeclarations"][0]
        assert "required" not in declaration["parameters"]

    def test_function_calls_get_generated_ids(self):
        adapter = GeminiAdapter(client=MagicMock())
        adapter.client.post.return_value = _mock_response(
            {
                "candidates": [
                    {
                        "content": {
                            "parts": [
                                {"functionCall": {"name": "add_client", "args": {"name": "A"}}},
                                {"functionCall": {"name": "add_client", "args": {"name": "B"}}},
                            ]
                        }
                    }
                ]
            },
        )
        reply = adapter.send([Message.user("add A and B")], [ADD_CLIENT])
        ids = [c.id for c in reply.tool_calls]
        assert all(i.startswith("call_") for i in ids)
        assert len(set(ids)) == 2
        assert [c.arguments["name"] for c in reply.tool_calls] == ["A", "B"]

    def test_blocked_prompt(self):
        adapter = GeminiAdapter(client=MagicMock())
        adapter.client.post.return_value = _mock_response(
            {"promptFeedback": {"blockReason": "SAFETY"}},
        )
        with pytest.raises(ProviderError, match="SAFETY"):
            adapter.send([Message.user("x")], [])


# ── Factory & metrics ────────────────────────────────────────────────


class TestFactory:
    @pytest.mark.parametrize(
        ("name", "cls"),
        [("anthropic", AnthropicAdapter), ("OpenAI", OpenAIAdapter), ("gemini", GeminiAdapter)],
    )
    def test_builds_named_adapter(self, name, cls):
        assert isinstance(create_provider(name), cls)

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown LLM_PROVIDER"):
            create_provider("llama")


class TestProviderMetrics:
    @patch("crm_assistant.providers.base.metrics")
    def test_success_is_recorded(self, mock_metrics):
        llm = MagicMock()
        llm.invoke.return_value = AIMessage(content="hi")
        OpenAIAdapter(llm=llm).send([Message.user("x")], [])
        kwargs = mock_metrics.record_provider_call.call_args[1]
        assert mock_metrics.record_provider_call.call_args[0] == ("openai",)
        assert kwargs["success"] is True

    @patch("crm_assistant.providers.base.metrics")
    def test_failure_records_status(self, mock_metrics):
        adapter = GeminiAdapter(client=MagicMock())
        adapter.client.post.return_value = _mock_response({}, 503)
        with pytest.raises(ProviderError):
            adapter.send([Message.user("x")], [])
        kwargs = mock_metrics.record_provider_call.call_args[1]
        assert kwargs["success"] is False
        assert kwargs["error_type"] == "http_503"

    @patch("crm_assistant.providers.base.metrics")
    def test_sdk_status_error_is_recorded_as_http(self, mock_metrics):
        llm = MagicMock()
        llm.invoke.side_effect = _RateLimited("slow down")
        with pytest.raises(ProviderError):
            OpenAIAdapter(llm=llm).send([Message.user("x")], [])
        assert mock_metrics.record_provider_call.call_args[1]["error_type"] == "http_429"
