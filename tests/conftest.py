"""Shared test fixtures for the CRM assistant test suite."""

from __future__ import annotations

import os
from datetime import date
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py picks up test values on load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("OPENAI_API_KEY", "test-openai-key-456")
    os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key-789")
    os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-supabase-key")
    os.environ.setdefault("RESEND_API_KEY", "test-resend-key")
    os.environ.setdefault("TWILIO_AUTH_TOKEN", "test-twilio-token")
    os.environ["STORE_BACKEND"] = "memory"
    os.environ["METRICS_ENABLED"] = "false"


TODAY = date(2025, 1, 1)


def _scripted_provider_class():
    from crm_assistant.providers.base import ProviderAdapter

    class ScriptedProvider(ProviderAdapter):
        """Provider stand-in that replays queued replies and records every request.

        Each queued item is a ``ProviderReply`` or an exception to raise.  With
        ``repeat_last=True`` the final item is returned forever.
        """

        name = "scripted"

        def __init__(self, *replies, repeat_last: bool = False):
            self.replies = list(replies)
            self.repeat_last = repeat_last
            self.requests: list[list] = []
            self.tool_names: list[list[str]] = []

        def _complete(self, messages, tools):
            self.requests.append(list(messages))
            self.tool_names.append([t.name for t in tools])
            if not self.replies:
                raise AssertionError("ScriptedProvider ran out of replies")
            if self.repeat_last and len(self.replies) == 1:
                item = self.replies[0]
            else:
                item = self.replies.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        @property
        def call_count(self) -> int:
            return len(self.requests)

    return ScriptedProvider


@pytest.fixture
def scripted_provider():
    """Factory: ``scripted_provider(reply1, reply2, ..., repeat_last=False)``."""
    return _scripted_provider_class()


@pytest.fixture
def store():
    from crm_assistant.services.store import InMemoryBusinessDataStore

    return InMemoryBusinessDataStore()


@pytest.fixture
def notifier():
    sender = MagicMock()
    sender.send_email.return_value = {"id": "email-123"}
    sender.send_sms.return_value = {"sid": "SM123", "status": "queued"}
    return sender


@pytest.fixture
def tool_ctx(store, notifier):
    from crm_assistant.tools.registry import ToolContext

    return ToolContext(user_id="user-1", store=store, notifier=notifier, today=TODAY)


@pytest.fixture
def mock_http_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        mock.content = b"" if data is None else str(data).encode()
        return mock

    return _make
