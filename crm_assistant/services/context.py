"""Per-turn business context: a bounded slice of the user's data for the prompt.

The snapshot is rebuilt on every turn and never persisted.  Short
greetings skip it entirely so the common "hi" round-trip touches no
business tables.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import UTC, date, datetime

from crm_assistant.config import (
    CONTEXT_CLIENT_LIMIT,
    CONTEXT_DEADLINE_LIMIT,
    CONTEXT_TRANSACTION_LIMIT,
)
from crm_assistant.models import BusinessContext
from crm_assistant.services.store import BusinessDataStore

logger = logging.getLogger(__name__)

# ── Greeting detection ───────────────────────────────────────────────

GREETING_MAX_LENGTH = 20

GREETING_PHRASES = (
    "hi",
    "hello",
    "hey",
    "howdy",
    "yo",
    "good morning",
    "good afternoon",
    "good evening",
    "thanks",
    "thank you",
    "what's up",
    "sup",
)

_GREETING_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(p) for p in GREETING_PHRASES) + r")\b",
)


def is_greeting(message: str) -> bool:
    """Return ``True`` for short pleasantries that need no business data."""
    text = message.strip().lower()
    if not text or len(text) >= GREETING_MAX_LENGTH:
        return False
    return _GREETING_RE.search(text) is not None


# ── Assembly ─────────────────────────────────────────────────────────


class ContextAssembler:
    """Fetch the recency-ordered slice of data the system prompt shows."""

    def __init__(
        self,
        store: BusinessDataStore,
        *,
        deadline_limit: int = CONTEXT_DEADLINE_LIMIT,
        transaction_limit: int = CONTEXT_TRANSACTION_LIMIT,
        client_limit: int = CONTEXT_CLIENT_LIMIT,
        today: Callable[[], date] | None = None,
    ) -> None:
        self._store = store
        self.deadline_limit = deadline_limit
        self.transaction_limit = transaction_limit
        self.client_limit = client_limit
        self._today = today or (lambda: datetime.now(UTC).date())

    def build(self, user_id: str) -> BusinessContext:
        """Return pending deadlines (soonest first), active deals and newest clients.

        Store errors propagate; the caller decides whether a turn can go on
        without context.
        """
        deadlines = self._store.pending_deadlines(
            user_id, from_date=self._today(), limit=self.deadline_limit,
        )
        transactions = self._store.active_transactions(user_id, self.transaction_limit)
        clients = self._store.recent_clients(user_id, self.client_limit)
        logger.debug(
            "Context for %s: %d deadlines, %d transactions, %d clients",
            user_id, len(deadlines), len(transactions), len(clients),
        )
        return BusinessContext(
            pending_deadlines=tuple(deadlines),
            active_transactions=tuple(transactions),
            recent_clients=tuple(clients),
        )


# ── Rendering ────────────────────────────────────────────────────────


def _deadline_line(item: dict) -> str:
    return (
        f"- {item.get('title', 'Untitled')} for {item.get('property_address', '')} "
        f"({item.get('client_name', 'Unknown client')}) - Due: {item.get('due_date', '?')}"
    )


def _transaction_line(txn: dict) -> str:
    return (
        f"- {txn.get('property_address', '')} ({txn.get('client_name', 'Unknown client')}) "
        f"- {txn.get('transaction_type', '')} deal, closes {txn.get('closing_date', '?')}"
    )


def _client_line(client: dict) -> str:
    line = f"- {client.get('name', '')} ({client.get('status', 'unknown')})"
    if client.get("email"):
        line += f" - {client['email']}"
    if client.get("phone"):
        line += f" - {client['phone']}"
    return line


def _section(title: str, rows, render, placeholder: str) -> str:
    lines = [render(row) for row in rows] or [placeholder]
    return f"{title}:\n" + "\n".join(lines)


def render_business_context(context: BusinessContext | None) -> str:
    """Render the snapshot as prompt text.

    Every section is always present; an empty one shows a "none" line so
    the prompt keeps the same shape whatever the data.
    """
    context = context or BusinessContext()
    return "\n\n".join(
        (
            _section(
                "Active Transactions", context.active_transactions,
                _transaction_line, "- No active transactions",
            ),
            _section(
                "Upcoming Deadlines", context.pending_deadlines,
                _deadline_line, "- No upcoming deadlines",
            ),
            _section(
                "Recent Clients", context.recent_clients,
                _client_line, "- No clients yet",
            ),
        )
    )
