"""Select the provider adapter named by ``LLM_PROVIDER``."""

from __future__ import annotations

import logging

from crm_assistant.config import LLM_PROVIDER
from crm_assistant.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("anthropic", "openai", "gemini")


def create_provider(name: str | None = None) -> ProviderAdapter:
    """Build the adapter for *name* (defaults to ``LLM_PROVIDER``).

    Credentials are resolved on the first request, not here.
    """
    name = (name or LLM_PROVIDER).lower()
    if name == "anthropic":
        from crm_assistant.providers.anthropic import AnthropicAdapter  # noqa: PLC0415

        adapter: ProviderAdapter = AnthropicAdapter()
    elif name == "openai":
        from crm_assistant.providers.openai import OpenAIAdapter  # noqa: PLC0415

        adapter = OpenAIAdapter()
    elif name == "gemini":
        from crm_assistant.providers.gemini import GeminiAdapter  # noqa: PLC0415

        adapter = GeminiAdapter()
    else:
        raise ValueError(
            f"Unknown LLM_PROVIDER: {name!r} (expected one of {', '.join(SUPPORTED_PROVIDERS)})"
        )
    logger.info("Using %s provider adapter", adapter.name)
    return adapter
