"""Supabase-backed :class:`BusinessDataStore` over the PostgREST HTTP API.

PostgREST docs: https://postgrest.org/en/stable/references/api.html
All requests authenticate with the service-role key (sent both as
``apikey`` and as a Bearer token), so row-level security is bypassed and
every query must filter on ``user_id`` itself.

Only idempotent reads are retried.  Inserts are never retried: a timeout
after the server committed would otherwise create a second row.

Expected schema (abridged)::

    clients(id, user_id, name, name_key, email, phone, status, notes,
            created_at, brief_content, brief_generated_at, lead_type,
            ai_ranking, property_preferences, contact_preferences,
            avg_response_time)
      unique (user_id, name_key)
    transactions(id, user_id, client_id, property_address, transaction_type,
                 contract_date, closing_date, status, created_at)
    timeline_items(id, transaction_id, title, description, days_offset,
                   item_order, due_date, completed)
    chat_history(id, owner_key, user_id, role, message, created_at)
    client_notes(id, client_id, note, is_key_note)
    client_messages(id, client_id, body, is_read)
    conversation_summaries(id, client_id, summary, conversation_date)

User profiles live in Supabase Auth (``/auth/v1/admin/users/{id}``);
briefing preferences are kept in ``user_metadata.briefing_preferences``.
"""

from __future__ import annotations

import logging
import time
from datetime import date
from typing import Any

import httpx

from crm_assistant.config import SUPABASE_URL, require_secret
from crm_assistant.services.store import (
    DuplicateRecordError,
    PersistenceError,
    RecordNotFoundError,
    normalize_name,
)

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 0.5
REQUEST_TIMEOUT_SECONDS = 10.0

_DEADLINE_SELECT = "*,transactions!inner(property_address,user_id,clients(name))"
_TRANSACTION_SELECT = "*,clients(name,email,phone)"


class SupabaseAPIError(PersistenceError):
    """Raised when a Supabase call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


def _escape_like(value: str) -> str:
    """Escape PostgREST ``ilike`` wildcards and reserved characters in *value*."""
    cleaned = value.replace("%", "").replace("*", "").replace(",", " ")
    return cleaned.replace("(", "").replace(")", "").strip()


def _flatten_deadline(row: dict[str, Any]) -> dict[str, Any]:
    txn = row.pop("transactions", None) or {}
    client = txn.get("clients") or {}
    return {
        **row,
        "user_id": txn.get("user_id"),
        "property_address": txn.get("property_address", ""),
        "client_name": client.get("name", "Unknown client"),
    }


def _flatten_transaction(row: dict[str, Any]) -> dict[str, Any]:
    client = row.pop("clients", None) or {}
    return {**row, "client_name": client.get("name", "Unknown client")}


class SupabaseBusinessDataStore:
    """PostgREST client implementing the business data store contract."""

    def __init__(
        self,
        url: str | None = None,
        service_key: str | None = None,
    ):
        self._base_url = (url or SUPABASE_URL).rstrip("/")
        if not self._base_url:
            raise OSError("Missing required configuration: SUPABASE_URL.")
        key = service_key or require_secret("SUPABASE_SERVICE_ROLE_KEY")
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
        prefer: str | None = None,
    ) -> Any:
        """Execute one HTTP request; GETs are retried with exponential backoff."""
        headers = {"Prefer": prefer} if prefer else None
        attempts = MAX_RETRIES if method == "GET" else 1
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                response = self._client.request(
                    method, path, params=params, json=json_body, headers=headers,
                )
                if response.status_code == 409:
                    raise DuplicateRecordError(f"Conflict on {path}: {response.text}")
                if response.status_code >= 500:
                    raise SupabaseAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise SupabaseAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code == 204 or not response.content:
                    return None
                try:
                    return response.json()
                except ValueError as exc:
                    raise SupabaseAPIError(
                        f"Invalid JSON from {method} {path}: {exc}",
                        status_code=response.status_code,
                    ) from exc

            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "Supabase %s %s attempt %d/%d failed (%s)",
                    method, path, attempt, attempts, type(exc).__name__,
                )
            except SupabaseAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Supabase server error on %s %s attempt %d/%d",
                        method, path, attempt, attempts,
                    )
                else:
                    raise  # 4xx errors are not retried

            if attempt < attempts:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise SupabaseAPIError(
            f"Supabase {method} {path} failed after {attempts} attempt(s): {last_error}"
        )

    def _rows(self, table: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        return self._request("GET", f"/rest/v1/{table}", params=params) or []

    def _insert(self, table: str, rows: Any, **params: Any) -> list[dict[str, Any]]:
        return self._request(
            "POST",
            f"/rest/v1/{table}",
            params=params or None,
            json_body=rows,
            prefer="return=representation",
        ) or []

    def _patch(self, table: str, record_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        rows = self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params={"id": f"eq.{record_id}"},
            json_body=fields,
            prefer="return=representation",
        ) or []
        if not rows:
            raise RecordNotFoundError(f"{table} row {record_id} not found")
        return rows[0]

    # ── Clients ──────────────────────────────────────────────────────

    def get_client_by_name(self, user_id: str, name: str) -> dict[str, Any] | None:
        rows = self._rows(
            "clients",
            {"user_id": f"eq.{user_id}", "name_key": f"eq.{normalize_name(name)}", "limit": 1},
        )
        return rows[0] if rows else None

    def search_clients(self, user_id: str, fragment: str, limit: int = 10) -> list[dict[str, Any]]:
        return self._rows(
            "clients",
            {
                "user_id": f"eq.{user_id}",
                "name": f"ilike.*{_escape_like(fragment)}*",
                "order": "name",
                "limit": limit,
            },
        )

    def create_client(
        self,
        user_id: str,
        name: str,
        *,
        status: str = "warm",
        email: str | None = None,
        phone: str | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        rows = self._insert(
            "clients",
            {
                "user_id": user_id,
                "name": " ".join(name.split()),
                "name_key": normalize_name(name),
                "status": status,
                "email": email,
                "phone": phone,
                "notes": notes,
            },
        )
        if not rows:
            raise SupabaseAPIError("Client insert returned no row")
        return rows[0]

    def get_or_create_client(
        self, user_id: str, name: str, *, status: str = "warm",
    ) -> tuple[dict[str, Any], bool]:
        rows = self._request(
            "POST",
            "/rest/v1/clients",
            params={"on_conflict": "user_id,name_key"},
            json_body={
                "user_id": user_id,
                "name": " ".join(name.split()),
                "name_key": normalize_name(name),
                "status": status,
            },
            prefer="resolution=ignore-duplicates,return=representation",
        ) or []
        if rows:
            return rows[0], True
        # The insert was ignored: the row already exists.
        existing = self.get_client_by_name(user_id, name)
        if existing is None:
            raise SupabaseAPIError(f'Upsert of client "{name}" returned no row')
        return existing, False

    def update_client(self, client_id: str, **fields: Any) -> dict[str, Any]:
        return self._patch("clients", client_id, fields)

    def delete_client(self, client_id: str) -> None:
        rows = self._request(
            "DELETE",
            "/rest/v1/clients",
            params={"id": f"eq.{client_id}"},
            prefer="return=representation",
        )
        if not rows:
            raise RecordNotFoundError(f"Client {client_id} not found")

    def recent_clients(self, user_id: str, limit: int) -> list[dict[str, Any]]:
        return self._rows(
            "clients",
            {
                "select": "id,name,status,email,phone,created_at",
                "user_id": f"eq.{user_id}",
                "order": "created_at.desc",
                "limit": limit,
            },
        )

    def client_activity(self, client_id: str) -> dict[str, Any]:
        notes = self._rows(
            "client_notes",
            {"select": "note", "client_id": f"eq.{client_id}", "is_key_note": "eq.true"},
        )
        unread = self._rows(
            "client_messages",
            {"select": "id", "client_id": f"eq.{client_id}", "is_read": "eq.false"},
        )
        summaries = self._rows(
            "conversation_summaries",
            {
                "select": "summary",
                "client_id": f"eq.{client_id}",
                "order": "conversation_date.desc",
                "limit": 1,
            },
        )
        return {
            "key_notes": [n["note"] for n in notes],
            "unread_messages": len(unread),
            "last_conversation": summaries[0]["summary"] if summaries else None,
        }

    # ── Transactions & timeline ──────────────────────────────────────

    def create_transaction(
        self,
        user_id: str,
        client_id: str,
        *,
        property_address: str,
        transaction_type: str,
        contract_date: str,
        closing_date: str,
    ) -> dict[str, Any]:
        rows = self._insert(
            "transactions",
            {
                "user_id": user_id,
                "client_id": client_id,
                "property_address": property_address,
                "transaction_type": transaction_type,
                "contract_date": contract_date,
                "closing_date": closing_date,
                "status": "active",
            },
        )
        if not rows:
            raise SupabaseAPIError("Transaction insert returned no row")
        return rows[0]

    def active_transactions(
        self, user_id: str, limit: int | None = None, *, client_id: str | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "select": _TRANSACTION_SELECT,
            "user_id": f"eq.{user_id}",
            "status": "eq.active",
            "order": "closing_date",
        }
        if client_id:
            params["client_id"] = f"eq.{client_id}"
        if limit is not None:
            params["limit"] = limit
        return [_flatten_transaction(row) for row in self._rows("transactions", params)]

    def add_timeline_items(
        self, transaction_id: str, items: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        return self._insert(
            "timeline_items",
            [{"transaction_id": transaction_id, **item} for item in items],
        )

    def pending_deadlines(
        self, user_id: str, *, from_date: date, limit: int,
    ) -> list[dict[str, Any]]:
        rows = self._rows(
            "timeline_items",
            {
                "select": _DEADLINE_SELECT,
                "transactions.user_id": f"eq.{user_id}",
                "completed": "eq.false",
                "due_date": f"gte.{from_date.isoformat()}",
                "order": "due_date,item_order",
                "limit": limit,
            },
        )
        return [_flatten_deadline(row) for row in rows]

    def open_deadlines(self, user_id: str) -> list[dict[str, Any]]:
        rows = self._rows(
            "timeline_items",
            {
                "select": _DEADLINE_SELECT,
                "transactions.user_id": f"eq.{user_id}",
                "completed": "eq.false",
                "order": "due_date,item_order",
            },
        )
        return [_flatten_deadline(row) for row in rows]

    def find_deadlines(self, user_id: str, title_fragment: str, limit: int = 1) -> list[dict[str, Any]]:
        rows = self._rows(
            "timeline_items",
            {
                "select": _DEADLINE_SELECT,
                "transactions.user_id": f"eq.{user_id}",
                "title": f"ilike.*{_escape_like(title_fragment)}*",
                "order": "completed,due_date",
                "limit": limit,
            },
        )
        return [_flatten_deadline(row) for row in rows]

    def update_timeline_item(self, item_id: str, **fields: Any) -> dict[str, Any]:
        return self._patch("timeline_items", item_id, fields)

    # ── User profile (Supabase Auth admin API) ───────────────────────

    def get_user_profile(self, user_id: str) -> dict[str, Any] | None:
        try:
            user = self._request("GET", f"/auth/v1/admin/users/{user_id}")
        except SupabaseAPIError as exc:
            if exc.status_code == 404:
                return None
            raise
        if not user:
            return None
        metadata = user.get("user_metadata") or {}
        return {
            "id": user.get("id", user_id),
            "email": user.get("email"),
            "phone": user.get("phone") or metadata.get("phone"),
            "full_name": metadata.get("full_name"),
            "briefing_preferences": metadata.get("briefing_preferences") or {},
            "user_metadata": metadata,
        }

    def update_briefing_preferences(
        self, user_id: str, preferences: dict[str, Any],
    ) -> dict[str, Any]:
        profile = self.get_user_profile(user_id)
        if profile is None:
            raise RecordNotFoundError(f"User {user_id} not found")
        merged = {**profile["briefing_preferences"], **preferences}
        self._request(
            "PUT",
            f"/auth/v1/admin/users/{user_id}",
            json_body={
                "user_metadata": {**profile["user_metadata"], "briefing_preferences": merged},
            },
        )
        return merged

    # ── Chat history ─────────────────────────────────────────────────

    def append_chat_message(
        self, owner_key: str, *, user_id: str, role: str, content: str, created_at: str,
    ) -> dict[str, Any]:
        rows = self._insert(
            "chat_history",
            {
                "owner_key": owner_key,
                "user_id": user_id,
                "role": role,
                "message": content,
                "created_at": created_at,
            },
        )
        return rows[0] if rows else {}

    def recent_chat_messages(self, owner_key: str, limit: int) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        rows = self._rows(
            "chat_history",
            {
                "select": "role,message,created_at",
                "owner_key": f"eq.{owner_key}",
                "order": "created_at.desc",
                "limit": limit,
            },
        )
        # Newest-first from the API; callers get oldest-first.
        return list(reversed(rows))
