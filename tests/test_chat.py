"""End-to-end tests for the per-request chat pipeline."""

from __future__ import annotations

import time
from unittest.mock import MagicMock, patch

import pytest

from crm_assistant.agent import FAILURE_TIMEOUT, ConversationOrchestrator
from crm_assistant.chat import ChatService, ChatValidationError, create_chat_service
from crm_assistant.models import Role, ToolCall, TurnStatus
from crm_assistant.prompts import CONTEXT_NOT_LOADED
from crm_assistant.providers.base import ProviderError, ProviderReply
from crm_assistant.services.context import ContextAssembler
from crm_assistant.services.history import HistoryStore
from crm_assistant.services.store import InMemoryBusinessDataStore, PersistenceError
from crm_assistant.tools.catalog import build_tool_registry
from crm_assistant.tools.executor import ToolExecutor


def _service(provider, *, store, context_store=None, notifier=None) -> ChatService:
    registry = build_tool_registry()
    return ChatService(
        store=store,
        orchestrator=ConversationOrchestrator(provider, ToolExecutor(registry), registry),
        history=HistoryStore(store, scope="session"),
        context=ContextAssembler(context_store or store),
        notifier=notifier,
    )


class TestHandle:
    def test_add_client_round_trip(self, scripted_provider, store, notifier):
        provider = scripted_provider(
            ProviderReply(
                tool_calls=(
                    ToolCall(id="t1", name="add_client", arguments={"name": "Jane Doe", "status": "hot"}),
                ),
            ),
            ProviderReply(text="Added **Jane Doe** as a hot lead."),
        )
        service = create_chat_service(store=store, provider=provider, notifier=notifier)

        outcome = service.handle("user-1", "Add Jane Doe as a hot lead", "s1")

        assert outcome.status is TurnStatus.DONE
        assert outcome.response == "Added **Jane Doe** as a hot lead."
        client = store.get_client_by_name("user-1", "Jane Doe")
        assert client is not None
        assert client["status"] == "hot"

    def test_history_gets_user_and_assistant_on_success(self, scripted_provider, store):
        provider = scripted_provider(ProviderReply(text="Here is your pipeline."))
        service = _service(provider, store=store)

        service.handle("user-1", "How is my pipeline?", "s1")

        messages = service.history.recent("session:s1")
        assert [(m.role, m.content) for m in messages] == [
            (Role.USER, "How is my pipeline?"),
            (Role.ASSISTANT, "Here is your pipeline."),
        ]

    def test_prior_history_is_sent_but_not_duplicated(self, scripted_provider, store):
        provider = scripted_provider(ProviderReply(text="first"), ProviderReply(text="second"))
        service = _service(provider, store=store)

        service.handle("user-1", "one", "s1")
        service.handle("user-1", "two", "s1")

        second = provider.requests[1]
        assert [m.content for m in second[1:]] == ["one", "first", "two"]

    def test_failed_run_keeps_only_user_message(self, scripted_provider, store):
        provider = scripted_provider(ProviderError("down", provider="scripted"))
        service = _service(provider, store=store)

        outcome = service.handle("user-1", "Add a client", "s1")

        assert outcome.status is TurnStatus.FAILED
        messages = service.history.recent("session:s1")
        assert [m.role for m in messages] == [Role.USER]

    def test_passed_deadline_stores_no_assistant_reply(self, scripted_provider, store):
        provider = scripted_provider(ProviderReply(text="late"))
        service = _service(provider, store=store)

        outcome = service.handle("user-1", "Add a client", "s1", deadline=time.monotonic() - 1)

        assert outcome.failure_reason == FAILURE_TIMEOUT
        assert provider.call_count == 0
        assert [m.role for m in service.history.recent("session:s1")] == [Role.USER]

    def test_sessions_are_isolated(self, scripted_provider, store):
        provider = scripted_provider(ProviderReply(text="a"), ProviderReply(text="b"))
        service = _service(provider, store=store)

        service.handle("user-1", "in session one", "s1")
        service.handle("user-1", "in session two", "s2")

        assert [m.content for m in provider.requests[1][1:]] == ["in session two"]

    def test_missing_session_uses_user_key(self, scripted_provider, store):
        provider = scripted_provider(ProviderReply(text="ok"))
        service = _service(provider, store=store)
        service.handle("user-1", "hello there friend, list my deals", None)
        assert len(service.history.recent("user:user-1")) == 2


class TestContext:
    def test_greeting_skips_business_store(self, scripted_provider):
        context_store = MagicMock()
        provider = scripted_provider(ProviderReply(text="Hi! How can I help?"))
        service = _service(
            provider, store=InMemoryBusinessDataStore(), context_store=context_store,
        )

        outcome = service.handle("user-1", "hi", "s1")

        assert outcome.succeeded
        assert context_store.method_calls == []
        assert CONTEXT_NOT_LOADED in provider.requests[0][0].content

    def test_business_data_reaches_prompt(self, scripted_provider, store):
        store.create_client("user-1", "Jane Doe", status="hot")
        provider = scripted_provider(ProviderReply(text="ok"))
        service = _service(provider, store=store)

        service.handle("user-1", "Review my clients please", "s1")

        assert "- Jane Doe (hot)" in provider.requests[0][0].content

    @patch("crm_assistant.chat.metrics")
    def test_context_failure_does_not_fail_turn(self, mock_metrics, scripted_provider, store):
        context_store = MagicMock()
        context_store.pending_deadlines.side_effect = PersistenceError("timeout")
        provider = scripted_provider(ProviderReply(text="ok"))
        service = _service(provider, store=store, context_store=context_store)

        outcome = service.handle("user-1", "What is due this week?", "s1")

        assert outcome.succeeded
        assert CONTEXT_NOT_LOADED in provider.requests[0][0].content
        mock_metrics.record_persistence_failure.assert_called_once_with("context_read")


class TestValidation:
    @pytest.mark.parametrize(
        ("user_id", "message"),
        [(None, "hi"), ("", "hi"), ("user-1", None), ("user-1", "   "), ("  ", "hi")],
    )
    def test_missing_fields(self, scripted_provider, store, user_id, message):
        provider = scripted_provider()
        service = _service(provider, store=store)
        with pytest.raises(ChatValidationError, match="Missing userId or message"):
            service.handle(user_id, message)
        assert provider.call_count == 0

    def test_message_too_long(self, scripted_provider, store):
        service = _service(scripted_provider(), store=store)
        with pytest.raises(ChatValidationError, match="longer than"):
            service.handle("user-1", "x" * 4001)

    def test_message_is_trimmed(self, scripted_provider, store):
        provider = scripted_provider(ProviderReply(text="ok"))
        _service(provider, store=store).handle("user-1", "  show my deals  ", "s1")
        assert provider.requests[0][-1].content == "show my deals"
