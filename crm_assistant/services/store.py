"""Business data store: the read/write contract the assistant needs.

Two backends implement :class:`BusinessDataStore`:

* :class:`InMemoryBusinessDataStore`: thread-safe, process-local, used by
  the CLI, local development and the test-suite.  Every mutation is
  appended to ``audit_log``; the audit trail and the chat rows keep the
  newest ``MEMORY_STORE_MAX_ROWS`` entries each.
* ``SupabaseBusinessDataStore`` (``services/supabase_store.py``): the
  production backend over PostgREST.

Records are plain dicts shaped like the database rows.  Dates travel as
ISO ``YYYY-MM-DD`` strings, timestamps as ISO 8601 strings.  Read helpers
that join related tables flatten the joined columns (``client_name``,
``property_address``) into the row.

Client names are unique per user on their *normalized* form
(case-folded, whitespace collapsed), which is what makes
:meth:`BusinessDataStore.get_or_create_client` an upsert rather than a
read-then-write.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from datetime import UTC, date, datetime
from typing import Any, Protocol

from crm_assistant.config import MEMORY_STORE_MAX_ROWS, STORE_BACKEND

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when a read or write against the business data store fails."""


class DuplicateRecordError(PersistenceError):
    """A unique constraint rejected the write."""


class RecordNotFoundError(PersistenceError):
    """The record addressed by id does not exist."""


def normalize_name(name: str) -> str:
    """Return the unique-key form of a client name."""
    return " ".join(name.split()).casefold()


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class BusinessDataStore(Protocol):
    """Read/write contract consumed by the context assembler, history and tools."""

    # ── Clients ──────────────────────────────────────────────────────
    def get_client_by_name(self, user_id: str, name: str) -> dict[str, Any] | None: ...

    def search_clients(self, user_id: str, fragment: str, limit: int = 10) -> list[dict[str, Any]]: ...

    def create_client(
        self,
        user_id: str,
        name: str,
        *,
        status: str = "warm",
        email: str | None = None,
        phone: str | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]: ...

    def get_or_create_client(
        self, user_id: str, name: str, *, status: str = "warm",
    ) -> tuple[dict[str, Any], bool]: ...

    def update_client(self, client_id: str, **fields: Any) -> dict[str, Any]: ...

    def delete_client(self, client_id: str) -> None: ...

    def recent_clients(self, user_id: str, limit: int) -> list[dict[str, Any]]: ...

    def client_activity(self, client_id: str) -> dict[str, Any]: ...

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
    ) -> dict[str, Any]: ...

    def active_transactions(
        self, user_id: str, limit: int | None = None, *, client_id: str | None = None,
    ) -> list[dict[str, Any]]: ...

    def add_timeline_items(
        self, transaction_id: str, items: list[dict[str, Any]],
    ) -> list[dict[str, Any]]: ...

    def pending_deadlines(
        self, user_id: str, *, from_date: date, limit: int,
    ) -> list[dict[str, Any]]: ...

    def open_deadlines(self, user_id: str) -> list[dict[str, Any]]: ...

    def find_deadlines(self, user_id: str, title_fragment: str, limit: int = 1) -> list[dict[str, Any]]: ...

    def update_timeline_item(self, item_id: str, **fields: Any) -> dict[str, Any]: ...

    # ── User profile ─────────────────────────────────────────────────
    def get_user_profile(self, user_id: str) -> dict[str, Any] | None: ...

    def update_briefing_preferences(
        self, user_id: str, preferences: dict[str, Any],
    ) -> dict[str, Any]: ...

    # ── Chat history ─────────────────────────────────────────────────
    def append_chat_message(
        self, owner_key: str, *, user_id: str, role: str, content: str, created_at: str,
    ) -> dict[str, Any]: ...

    def recent_chat_messages(self, owner_key: str, limit: int) -> list[dict[str, Any]]: ...


class InMemoryBusinessDataStore:
    """Process-local :class:`BusinessDataStore` guarded by a single lock."""

    def __init__(self, max_rows: int = MEMORY_STORE_MAX_ROWS) -> None:
        self._lock = threading.RLock()
        self._clients: dict[str, dict[str, Any]] = {}
        self._transactions: dict[str, dict[str, Any]] = {}
        self._timeline: dict[str, dict[str, Any]] = {}
        self._profiles: dict[str, dict[str, Any]] = {}
        self._notes: dict[str, list[dict[str, Any]]] = {}
        self._client_messages: dict[str, list[dict[str, Any]]] = {}
        self._summaries: dict[str, list[dict[str, Any]]] = {}
        self._chat: deque[dict[str, Any]] = deque(maxlen=max_rows)
        self.audit_log: deque[dict[str, Any]] = deque(maxlen=max_rows)

    # ── Internal ─────────────────────────────────────────────────────

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex

    def _audit(self, table: str, action: str, record_id: str, user_id: str | None) -> None:
        self.audit_log.append(
            {
                "at": _now_iso(),
                "user_id": user_id,
                "table": table,
                "action": action,
                "record_id": record_id,
            }
        )

    def _client_name(self, client_id: str | None) -> str:
        client = self._clients.get(client_id or "")
        return client["name"] if client else "Unknown client"

    def _with_transaction(self, item: dict[str, Any]) -> dict[str, Any]:
        txn = self._transactions.get(item["transaction_id"], {})
        return {
            **item,
            "user_id": txn.get("user_id"),
            "property_address": txn.get("property_address", ""),
            "client_name": self._client_name(txn.get("client_id")),
        }

    def _user_open_items(self, user_id: str) -> list[dict[str, Any]]:
        items = [
            self._with_transaction(item)
            for item in self._timeline.values()
            if not item["completed"]
            and self._transactions.get(item["transaction_id"], {}).get("user_id") == user_id
        ]
        items.sort(key=lambda i: (i["due_date"], i.get("item_order", 0)))
        return items

    # ── Clients ──────────────────────────────────────────────────────

    def get_client_by_name(self, user_id: str, name: str) -> dict[str, Any] | None:
        key = normalize_name(name)
        with self._lock:
            for client in self._clients.values():
                if client["user_id"] == user_id and client["name_key"] == key:
                    return dict(client)
        return None

    def search_clients(self, user_id: str, fragment: str, limit: int = 10) -> list[dict[str, Any]]:
        needle = normalize_name(fragment)
        with self._lock:
            matches = [
                dict(c) for c in self._clients.values()
                if c["user_id"] == user_id and needle in c["name_key"]
            ]
        matches.sort(key=lambda c: c["name_key"])
        return matches[:limit]

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
        with self._lock:
            if self.get_client_by_name(user_id, name) is not None:
                raise DuplicateRecordError(f'A client named "{name}" already exists')
            client = {
                "id": self._new_id(),
                "user_id": user_id,
                "name": " ".join(name.split()),
                "name_key": normalize_name(name),
                "email": email,
                "phone": phone,
                "status": status,
                "notes": notes,
                "created_at": _now_iso(),
                "brief_content": None,
                "brief_generated_at": None,
            }
            self._clients[client["id"]] = client
            self._audit("clients", "insert", client["id"], user_id)
            return dict(client)

    def get_or_create_client(
        self, user_id: str, name: str, *, status: str = "warm",
    ) -> tuple[dict[str, Any], bool]:
        with self._lock:
            existing = self.get_client_by_name(user_id, name)
            if existing is not None:
                return existing, False
            return self.create_client(user_id, name, status=status), True

    def update_client(self, client_id: str, **fields: Any) -> dict[str, Any]:
        with self._lock:
            client = self._clients.get(client_id)
            if client is None:
                raise RecordNotFoundError(f"Client {client_id} not found")
            client.update(fields)
            self._audit("clients", "update", client_id, client["user_id"])
            return dict(client)

    def delete_client(self, client_id: str) -> None:
        with self._lock:
            client = self._clients.pop(client_id, None)
            if client is None:
                raise RecordNotFoundError(f"Client {client_id} not found")
            for table in (self._notes, self._client_messages, self._summaries):
                table.pop(client_id, None)
            self._audit("clients", "delete", client_id, client["user_id"])

    def recent_clients(self, user_id: str, limit: int) -> list[dict[str, Any]]:
        with self._lock:
            clients = [dict(c) for c in self._clients.values() if c["user_id"] == user_id]
        clients.sort(key=lambda c: c["created_at"], reverse=True)
        return clients[:limit]

    # ── Client activity ──────────────────────────────────────────────

    def add_client_note(self, client_id: str, note: str, *, is_key_note: bool = False) -> dict[str, Any]:
        """Seeding helper for notes the agent keeps on a client."""
        row = {"id": self._new_id(), "client_id": client_id, "note": note, "is_key_note": is_key_note}
        with self._lock:
            self._notes.setdefault(client_id, []).append(row)
        return dict(row)

    def add_client_message(self, client_id: str, body: str, *, is_read: bool = False) -> dict[str, Any]:
        """Seeding helper for inbound messages from a client."""
        row = {"id": self._new_id(), "client_id": client_id, "body": body, "is_read": is_read}
        with self._lock:
            self._client_messages.setdefault(client_id, []).append(row)
        return dict(row)

    def add_conversation_summary(
        self, client_id: str, summary: str, conversation_date: str,
    ) -> dict[str, Any]:
        """Seeding helper for summaries of past conversations with a client."""
        row = {
            "id": self._new_id(),
            "client_id": client_id,
            "summary": summary,
            "conversation_date": conversation_date,
        }
        with self._lock:
            self._summaries.setdefault(client_id, []).append(row)
        return dict(row)

    def client_activity(self, client_id: str) -> dict[str, Any]:
        with self._lock:
            notes = [n["note"] for n in self._notes.get(client_id, []) if n["is_key_note"]]
            unread = sum(1 for m in self._client_messages.get(client_id, []) if not m["is_read"])
            summaries = sorted(
                self._summaries.get(client_id, []), key=lambda s: s["conversation_date"],
            )
        return {
            "key_notes": notes,
            "unread_messages": unread,
            "last_conversation": summaries[-1]["summary"] if summaries else None,
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
        with self._lock:
            if client_id not in self._clients:
                raise RecordNotFoundError(f"Client {client_id} not found")
            txn = {
                "id": self._new_id(),
                "user_id": user_id,
                "client_id": client_id,
                "property_address": property_address,
                "transaction_type": transaction_type,
                "contract_date": contract_date,
                "closing_date": closing_date,
                "status": "active",
                "created_at": _now_iso(),
            }
            self._transactions[txn["id"]] = txn
            self._audit("transactions", "insert", txn["id"], user_id)
            return dict(txn)

    def active_transactions(
        self, user_id: str, limit: int | None = None, *, client_id: str | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = [
                {**t, "client_name": self._client_name(t["client_id"])}
                for t in self._transactions.values()
                if t["user_id"] == user_id
                and t["status"] == "active"
                and (client_id is None or t["client_id"] == client_id)
            ]
        rows.sort(key=lambda t: t["closing_date"])
        return rows if limit is None else rows[:limit]

    def add_timeline_items(
        self, transaction_id: str, items: list[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        with self._lock:
            txn = self._transactions.get(transaction_id)
            if txn is None:
                raise RecordNotFoundError(f"Transaction {transaction_id} not found")
            created = []
            for item in items:
                row = {
                    "id": self._new_id(),
                    "transaction_id": transaction_id,
                    "completed": False,
                    **item,
                }
                self._timeline[row["id"]] = row
                created.append(dict(row))
            self._audit("timeline_items", f"insert x{len(created)}", transaction_id, txn["user_id"])
            return created

    def pending_deadlines(
        self, user_id: str, *, from_date: date, limit: int,
    ) -> list[dict[str, Any]]:
        cutoff = from_date.isoformat()
        with self._lock:
            items = [i for i in self._user_open_items(user_id) if i["due_date"] >= cutoff]
        return items[:limit]

    def open_deadlines(self, user_id: str) -> list[dict[str, Any]]:
        with self._lock:
            return self._user_open_items(user_id)

    def find_deadlines(self, user_id: str, title_fragment: str, limit: int = 1) -> list[dict[str, Any]]:
        needle = title_fragment.strip().casefold()
        with self._lock:
            rows = [
                self._with_transaction(item)
                for item in self._timeline.values()
                if needle in item["title"].casefold()
                and self._transactions.get(item["transaction_id"], {}).get("user_id") == user_id
            ]
        rows.sort(key=lambda i: (i["completed"], i["due_date"]))
        return rows[:limit]

    def update_timeline_item(self, item_id: str, **fields: Any) -> dict[str, Any]:
        with self._lock:
            item = self._timeline.get(item_id)
            if item is None:
                raise RecordNotFoundError(f"Timeline item {item_id} not found")
            item.update(fields)
            owner = self._transactions.get(item["transaction_id"], {}).get("user_id")
            self._audit("timeline_items", "update", item_id, owner)
            return dict(item)

    # ── User profile ─────────────────────────────────────────────────

    def upsert_user_profile(self, user_id: str, **fields: Any) -> dict[str, Any]:
        """Create or update a profile (email, phone, full_name).  Seeding helper."""
        with self._lock:
            profile = self._profiles.setdefault(
                user_id, {"id": user_id, "briefing_preferences": {}},
            )
            profile.update(fields)
            return dict(profile)

    def get_user_profile(self, user_id: str) -> dict[str, Any] | None:
        with self._lock:
            profile = self._profiles.get(user_id)
            return dict(profile) if profile else None

    def update_briefing_preferences(
        self, user_id: str, preferences: dict[str, Any],
    ) -> dict[str, Any]:
        with self._lock:
            profile = self._profiles.setdefault(
                user_id, {"id": user_id, "briefing_preferences": {}},
            )
            merged = {**profile.get("briefing_preferences", {}), **preferences}
            profile["briefing_preferences"] = merged
            self._audit("user_profiles", "update", user_id, user_id)
            return dict(merged)

    # ── Chat history ─────────────────────────────────────────────────

    def append_chat_message(
        self, owner_key: str, *, user_id: str, role: str, content: str, created_at: str,
    ) -> dict[str, Any]:
        row = {
            "id": self._new_id(),
            "owner_key": owner_key,
            "user_id": user_id,
            "role": role,
            "message": content,
            "created_at": created_at,
        }
        with self._lock:
            self._chat.append(row)
        return dict(row)

    def recent_chat_messages(self, owner_key: str, limit: int) -> list[dict[str, Any]]:
        if limit <= 0:
            return []
        with self._lock:
            rows = [dict(r) for r in self._chat if r["owner_key"] == owner_key]
        # Rows are kept in append order; that order is authoritative.
        return rows[-limit:]


def create_business_store(backend: str | None = None) -> BusinessDataStore:
    """Build the configured store backend (``memory`` or ``supabase``)."""
    backend = (backend or STORE_BACKEND).lower()
    if backend == "memory":
        logger.info("Using in-memory business data store")
        return InMemoryBusinessDataStore()
    if backend == "supabase":
        from crm_assistant.services.supabase_store import SupabaseBusinessDataStore  # noqa: PLC0415

        logger.info("Using Supabase business data store")
        return SupabaseBusinessDataStore()
    raise ValueError(f"Unknown STORE_BACKEND: {backend!r} (expected 'memory' or 'supabase')")
