"""Conversation history with a configurable scoping strategy.

``session`` scope keys history by the client-supplied session id, so a new
session starts with an empty window.  ``user`` scope keeps one rolling
window per user regardless of session.  A request without a session id
always falls back to the user key.

Writes are best-effort: a failed append is logged (and counted) but the
in-flight turn continues with its own message list.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from enum import Enum

from crm_assistant.config import HISTORY_SCOPE, HISTORY_WINDOW
from crm_assistant.models import Message, Role
from crm_assistant.services.metrics import metrics
from crm_assistant.services.store import BusinessDataStore, PersistenceError

logger = logging.getLogger(__name__)


class HistoryScope(str, Enum):
    SESSION = "session"
    USER = "user"


class HistoryStore:
    """Append-only chat history bounded to a window of recent messages."""

    def __init__(
        self,
        backend: BusinessDataStore,
        *,
        scope: HistoryScope | str = HISTORY_SCOPE,
        window: int = HISTORY_WINDOW,
    ) -> None:
        self._backend = backend
        self.scope = HistoryScope(scope)
        self.window = window

    def owner_key(self, user_id: str, session_id: str | None = None) -> str:
        """Return the key history is stored under for this request."""
        if self.scope is HistoryScope.SESSION and session_id:
            return f"session:{session_id}"
        return f"user:{user_id}"

    def append(self, owner_key: str, role: Role | str, content: str, *, user_id: str = "") -> bool:
        """Persist one message.  Returns ``False`` (after logging) on failure."""
        role = Role(role)
        try:
            self._backend.append_chat_message(
                owner_key,
                user_id=user_id,
                role=role.value,
                content=content,
                created_at=datetime.now(UTC).isoformat(),
            )
            return True
        except PersistenceError:
            logger.exception(
                "History append failed for %s (%s); continuing without durability",
                owner_key, role.value,
            )
            metrics.record_persistence_failure("history_append")
            return False

    def recent(self, owner_key: str, limit: int | None = None) -> list[Message]:
        """Return up to *limit* most recent messages, oldest first."""
        limit = self.window if limit is None else limit
        try:
            rows = self._backend.recent_chat_messages(owner_key, limit)
        except PersistenceError:
            logger.exception("History read failed for %s; using empty history", owner_key)
            metrics.record_persistence_failure("history_read")
            return []

        messages: list[Message] = []
        for row in rows:
            role = Role.USER if row.get("role") == Role.USER.value else Role.ASSISTANT
            created = row.get("created_at")
            timestamp = (
                datetime.fromisoformat(created) if isinstance(created, str) and created
                else datetime.now(UTC)
            )
            messages.append(
                Message(role=role, content=row.get("message") or "", timestamp=timestamp),
            )
        return messages
