"""Per-request chat pipeline and the service composition root.

One call to :meth:`ChatService.handle` is one request cycle::

    validate → history.recent() → history.append(user)
             → context (unless greeting) → orchestrator.run()
             → history.append(assistant)   # only when the run succeeded
"""

from __future__ import annotations

import logging

from crm_assistant.agent import ConversationOrchestrator
from crm_assistant.models import BusinessContext, ConversationOutcome, Role
from crm_assistant.providers.base import ProviderAdapter
from crm_assistant.providers.factory import create_provider
from crm_assistant.services.context import ContextAssembler, is_greeting
from crm_assistant.services.history import HistoryStore
from crm_assistant.services.metrics import metrics
from crm_assistant.services.notifications import NotificationSender
from crm_assistant.services.store import BusinessDataStore, PersistenceError, create_business_store
from crm_assistant.tools.catalog import build_tool_registry
from crm_assistant.tools.executor import ToolExecutor
from crm_assistant.tools.registry import ToolContext

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000


class ChatValidationError(ValueError):
    """The request is missing a user id or message."""


class ChatService:
    """Wire history, context and the orchestrator around one user message."""

    def __init__(
        self,
        *,
        store: BusinessDataStore,
        orchestrator: ConversationOrchestrator,
        history: HistoryStore,
        context: ContextAssembler,
        notifier: NotificationSender | None = None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.history = history
        self.context = context
        self.notifier = notifier

    @staticmethod
    def validate(user_id: str | None, message: str | None) -> tuple[str, str]:
        user_id = (user_id or "").strip()
        message = (message or "").strip()
        if not user_id or not message:
            raise ChatValidationError("Missing userId or message")
        if len(message) > MAX_MESSAGE_LENGTH:
            raise ChatValidationError(f"Message is longer than {MAX_MESSAGE_LENGTH} characters")
        return user_id, message

    def _build_context(self, user_id: str, message: str) -> BusinessContext | None:
        if is_greeting(message):
            logger.debug("Greeting from %s; skipping business context", user_id)
            return None
        try:
            return self.context.build(user_id)
        except PersistenceError:
            logger.exception("Business context unavailable for %s; continuing without it", user_id)
            metrics.record_persistence_failure("context_read")
            return None

    def handle(
        self,
        user_id: str | None,
        message: str | None,
        session_id: str | None = None,
        *,
        deadline: float | None = None,
    ) -> ConversationOutcome:
        """Run one request cycle.  Raises :class:`ChatValidationError` only.

        *deadline* (``time.monotonic()``) is handed to the orchestrator; a run
        stopped by it is FAILED, so no assistant message is stored.
        """
        user_id, message = self.validate(user_id, message)
        owner_key = self.history.owner_key(user_id, (session_id or "").strip() or None)

        prior = self.history.recent(owner_key)
        self.history.append(owner_key, Role.USER, message, user_id=user_id)

        outcome = self.orchestrator.run(
            user_id,
            message,
            context=self._build_context(user_id, message),
            history=prior,
            tool_context=ToolContext(
                user_id=user_id,
                store=self.store,
                notifier=self.notifier,
                provider=self.orchestrator.provider,
            ),
            deadline=deadline,
        )

        if outcome.succeeded:
            self.history.append(owner_key, Role.ASSISTANT, outcome.response, user_id=user_id)
        return outcome


def create_chat_service(
    *,
    store: BusinessDataStore | None = None,
    provider: ProviderAdapter | None = None,
    notifier: NotificationSender | None = None,
) -> ChatService:
    """Build the service from configuration (``STORE_BACKEND``, ``LLM_PROVIDER``, ...)."""
    store = store or create_business_store()
    provider = provider or create_provider()
    notifier = notifier or NotificationSender()
    registry = build_tool_registry()

    orchestrator = ConversationOrchestrator(
        provider, ToolExecutor(registry), registry, store=store, notifier=notifier,
    )
    logger.debug(
        "Chat service ready: provider=%s, tools=%d", provider.name, len(registry),
    )
    return ChatService(
        store=store,
        orchestrator=orchestrator,
        history=HistoryStore(store),
        context=ContextAssembler(store),
        notifier=notifier,
    )
