"""Tests for the Supabase (PostgREST) business data store."""

from __future__ import annotations

from datetime import date
from unittest.mock import MagicMock, patch

import httpx
import pytest

from crm_assistant.chat import create_chat_service
from crm_assistant.models import TurnStatus
from crm_assistant.providers.base import ProviderReply
from crm_assistant.services.store import DuplicateRecordError, RecordNotFoundError
from crm_assistant.services.supabase_store import (
    INITIAL_BACKOFF_SECONDS,
    MAX_RETRIES,
    SupabaseAPIError,
    SupabaseBusinessDataStore,
)

# ── Helpers ──────────────────────────────────────────────────────────


def _mock_response(data, status_code: int = 200) -> MagicMock:
    mock = MagicMock()
    mock.status_code = status_code
    mock.json.return_value = data
    mock.text = str(data)
    mock.content = b"" if data is None else b"x"
    return mock


def _store() -> SupabaseBusinessDataStore:
    return SupabaseBusinessDataStore(url="https://db.example.supabase.co/", service_key="test-key")


# ── Tests: construction ──────────────────────────────────────────────


class TestConstruction:
    def test_requires_url(self):
        with patch("crm_assistant.services.supabase_store.SUPABASE_URL", ""):
            with pytest.raises(OSError, match="SUPABASE_URL"):
                SupabaseBusinessDataStore(service_key="k")

    def test_sends_service_key_headers(self):
        store = _store()
        assert store._client.headers["apikey"] == "test-key"
        assert store._client.headers["Authorization"] == "Bearer test-key"


# ── Tests: clients ───────────────────────────────────────────────────


class TestClients:
    def test_get_client_by_name_filters_on_normalized_key(self):
        store = _store()
        row = {"id": "c1", "name": "Jane Doe"}
        with patch.object(store._client, "request", return_value=_mock_response([row])) as req:
            assert store.get_client_by_name("u1", "  JANE  doe ") == row

        method, path = req.call_args[0]
        params = req.call_args[1]["params"]
        assert (method, path) == ("GET", "/rest/v1/clients")
        assert params["user_id"] == "eq.u1"
        assert params["name_key"] == "eq.jane doe"

    def test_get_client_by_name_missing(self):
        store = _store()
        with patch.object(store._client, "request", return_value=_mock_response([])):
            assert store.get_client_by_name("u1", "Nobody") is None

    def test_search_strips_wildcards(self):
        store = _store()
        with patch.object(store._client, "request", return_value=_mock_response([])) as req:
            store.search_clients("u1", "Do%e*", limit=5)
        params = req.call_args[1]["params"]
        assert params["name"] == "ilike.*Doe*"
        assert params["limit"] == 5

    def test_create_client_conflict_is_duplicate(self):
        store = _store()
        with patch.object(
            store._client, "request", return_value=_mock_response({"code": "23505"}, 409),
        ):
            with pytest.raises(DuplicateRecordError):
                store.create_client("u1", "Jane Doe", status="hot")

    def test_get_or_create_inserts_new_client(self):
        store = _store()
        row = {"id": "c1", "name": "Jane Doe"}
        with patch.object(store._client, "request", return_value=_mock_response([row])) as req:
            client, created = store.get_or_create_client("u1", "Jane Doe")

        assert (client, created) == (row, True)
        kwargs = req.call_args[1]
        assert kwargs["params"] == {"on_conflict": "user_id,name_key"}
        assert "resolution=ignore-duplicates" in kwargs["headers"]["Prefer"]
        assert kwargs["json"]["name_key"] == "jane doe"

    def test_get_or_create_returns_existing_when_ignored(self):
        store = _store()
        existing = {"id": "c1", "name": "Jane Doe"}
        with patch.object(
            store._client,
            "request",
            side_effect=[_mock_response([]), _mock_response([existing])],
        ):
            client, created = store.get_or_create_client("u1", "jane doe")
        assert (client, created) == (existing, False)

    def test_update_missing_client(self):
        store = _store()
        with patch.object(store._client, "request", return_value=_mock_response([])):
            with pytest.raises(RecordNotFoundError):
                store.update_client("c404", status="cold")

    def test_delete_missing_client(self):
        store = _store()
        with patch.object(store._client, "request", return_value=_mock_response([])):
            with pytest.raises(RecordNotFoundError):
                store.delete_client("c404")


# ── Tests: joined reads ──────────────────────────────────────────────


class TestJoinedReads:
    def test_pending_deadlines_are_flattened(self):
        store = _store()
        rows = [
            {
                "id": "t1",
                "title": "Appraisal",
                "due_date": "2025-01-15",
                "transactions": {
                    "property_address": "1 Main St",
                    "user_id": "u1",
                    "clients": {"name": "Jane Doe"},
                },
            }
        ]
        with patch.object(store._client, "request", return_value=_mock_response(rows)) as req:
            items = store.pending_deadlines("u1", from_date=date(2025, 1, 1), limit=10)

        assert items == [
            {
                "id": "t1",
                "title": "Appraisal",
                "due_date": "2025-01-15",
                "user_id": "u1",
                "property_address": "1 Main St",
                "client_name": "Jane Doe",
            }
        ]
        params = req.call_args[1]["params"]
        assert params["transactions.user_id"] == "eq.u1"
        assert params["due_date"] == "gte.2025-01-01"
        assert params["completed"] == "eq.false"

    def test_active_transactions_flatten_client_name(self):
        store = _store()
        rows = [{"id": "x1", "property_address": "1 Main St", "clients": None}]
        with patch.object(store._client, "request", return_value=_mock_response(rows)):
            txns = store.active_transactions("u1", 5)
        assert txns == [{"id": "x1", "property_address": "1 Main St", "client_name": "Unknown client"}]

    def test_client_activity_reads_three_tables(self):
        store = _store()
        responses = [
            _mock_response([{"note": "Pre-approved"}]),
            _mock_response([{"id": "m1"}, {"id": "m2"}]),
            _mock_response([{"summary": "toured condos"}]),
        ]
        with patch.object(store._client, "request", side_effect=responses) as req:
            activity = store.client_activity("c1")

        assert activity == {
            "key_notes": ["Pre-approved"], "unread_messages": 2, "last_conversation": "toured condos",
        }
        paths = [c[0][1] for c in req.call_args_list]
        assert paths == [
            "/rest/v1/client_notes", "/rest/v1/client_messages", "/rest/v1/conversation_summaries",
        ]
        assert req.call_args_list[1][1]["params"]["is_read"] == "eq.false"
        assert req.call_args_list[2][1]["params"]["order"] == "conversation_date.desc"


# ── Tests: profiles & history ────────────────────────────────────────


class TestProfilesAndHistory:
    def test_profile_from_auth_admin_api(self):
        store = _store()
        user = {
            "id": "u1",
            "email": "sam@example.com",
            "phone": "",
            "user_metadata": {"full_name": "Sam Agent", "phone": "+15550100"},
        }
        with patch.object(store._client, "request", return_value=_mock_response(user)):
            profile = store.get_user_profile("u1")
        assert profile["email"] == "sam@example.com"
        assert profile["phone"] == "+15550100"
        assert profile["full_name"] == "Sam Agent"
        assert profile["briefing_preferences"] == {}

    def test_unknown_profile_is_none(self):
        store = _store()
        with patch.object(
            store._client, "request", return_value=_mock_response({"msg": "not found"}, 404),
        ):
            assert store.get_user_profile("u404") is None

    def test_briefing_preferences_are_merged(self):
        store = _store()
        user = {
            "id": "u1",
            "user_metadata": {"full_name": "Sam", "briefing_preferences": {"sms_enabled": True}},
        }
        with patch.object(
            store._client,
            "request",
            side_effect=[_mock_response(user), _mock_response(user)],
        ) as req:
            merged = store.update_briefing_preferences("u1", {"email_time": "06:00"})

        assert merged == {"sms_enabled": True, "email_time": "06:00"}
        method, path = req.call_args[0]
        assert (method, path) == ("PUT", "/auth/v1/admin/users/u1")
        metadata = req.call_args[1]["json"]["user_metadata"]
        assert metadata["full_name"] == "Sam"
        assert metadata["briefing_preferences"] == merged

    def test_recent_chat_messages_oldest_first(self):
        store = _store()
        rows = [{"message": "newest"}, {"message": "older"}]
        with patch.object(store._client, "request", return_value=_mock_response(rows)):
            assert [r["message"] for r in store.recent_chat_messages("user:u1", 2)] == [
                "older", "newest",
            ]

    def test_empty_body_returns_none(self):
        store = _store()
        with patch.object(store._client, "request", return_value=_mock_response(None, 204)):
            assert store._request("PATCH", "/rest/v1/clients") is None


# ── Tests: retry logic ───────────────────────────────────────────────


class TestRetryLogic:
    @patch("crm_assistant.services.supabase_store.time.sleep")
    def test_get_retries_on_timeout(self, mock_sleep):
        store = _store()
        with patch.object(
            store._client,
            "request",
            side_effect=[httpx.TimeoutException("timeout"), _mock_response([{"id": "c1"}])],
        ):
            assert store.get_client_by_name("u1", "Jane")["id"] == "c1"
        mock_sleep.assert_called_once_with(INITIAL_BACKOFF_SECONDS)

    @patch("crm_assistant.services.supabase_store.time.sleep")
    def test_get_retries_on_500_then_gives_up(self, mock_sleep):
        store = _store()
        with patch.object(
            store._client, "request", return_value=_mock_response({"error": "boom"}, 503),
        ) as req:
            with pytest.raises(SupabaseAPIError, match="failed after"):
                store.recent_clients("u1", 10)
        assert req.call_count == MAX_RETRIES
        assert mock_sleep.call_count == MAX_RETRIES - 1

    @patch("crm_assistant.services.supabase_store.time.sleep")
    def test_4xx_is_not_retried(self, mock_sleep):
        store = _store()
        with patch.object(
            store._client, "request", return_value=_mock_response({"error": "bad"}, 400),
        ) as req:
            with pytest.raises(SupabaseAPIError) as excinfo:
                store.recent_clients("u1", 10)
        assert excinfo.value.status_code == 400
        assert req.call_count == 1
        mock_sleep.assert_not_called()

    @patch("crm_assistant.services.supabase_store.time.sleep")
    def test_inserts_are_never_retried(self, mock_sleep):
        store = _store()
        with patch.object(
            store._client, "request", side_effect=httpx.ConnectError("refused"),
        ) as req:
            with pytest.raises(SupabaseAPIError):
                store.create_transaction(
                    "u1", "c1",
                    property_address="1 Main St", transaction_type="buyer",
                    contract_date="2025-01-01", closing_date="2025-02-01",
                )
        assert req.call_count == 1
        mock_sleep.assert_not_called()

    @patch("crm_assistant.services.supabase_store.time.sleep")
    def test_get_retries_on_read_error(self, mock_sleep):
        store = _store()
        with patch.object(
            store._client,
            "request",
            side_effect=[httpx.ReadError("connection reset"), _mock_response([{"id": "c1"}])],
        ):
            assert store.get_client_by_name("u1", "Jane")["id"] == "c1"
        mock_sleep.assert_called_once_with(INITIAL_BACKOFF_SECONDS)

    @patch("crm_assistant.services.supabase_store.time.sleep")
    def test_write_transport_error_becomes_api_error(self, mock_sleep):
        store = _store()
        with patch.object(
            store._client, "request", side_effect=httpx.RemoteProtocolError("peer closed"),
        ) as req:
            with pytest.raises(SupabaseAPIError, match="RemoteProtocolError|peer closed"):
                store.append_chat_message(
                    "session:s1", user_id="u1", role="user", content="hi",
                    created_at="2025-01-01T00:00:00+00:00",
                )
        assert req.call_count == 1
        mock_sleep.assert_not_called()

    def test_invalid_json_becomes_api_error(self):
        store = _store()
        response = _mock_response([])
        response.json.side_effect = ValueError("Expecting value")
        with patch.object(store._client, "request", return_value=response):
            with pytest.raises(SupabaseAPIError, match="Invalid JSON"):
                store.recent_clients("u1", 10)


# ── Tests: failures inside a chat turn ───────────────────────────────


class TestChatTurnResilience:
    @patch("crm_assistant.services.supabase_store.time.sleep")
    def test_history_write_failure_does_not_fail_turn(self, mock_sleep, scripted_provider):
        store = _store()
        provider = scripted_provider(ProviderReply(text="hello"))
        service = create_chat_service(store=store, provider=provider, notifier=MagicMock())

        def _request(method, path, **kwargs):
            if method == "POST" and path == "/rest/v1/chat_history":
                raise httpx.ReadError("connection reset")
            return _mock_response([])

        with patch.object(store._client, "request", side_effect=_request):
            outcome = service.handle("u1", "hi", "s1")

        assert outcome.status is TurnStatus.DONE
        assert outcome.response == "hello"
