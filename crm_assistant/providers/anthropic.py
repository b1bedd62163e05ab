"""Anthropic Claude adapter built on LangChain's ``ChatAnthropic``."""

from __future__ import annotations

from langchain_anthropic import ChatAnthropic

from crm_assistant.config import (
    ANTHROPIC_MODEL_NAME,
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LLM_TIMEOUT_SECONDS,
    require_secret,
)
from crm_assistant.providers.chat_model import ChatModelAdapter


class AnthropicAdapter(ChatModelAdapter):
    name = "anthropic"

    def _build_llm(self) -> ChatAnthropic:
        """Build the Claude chat model.  Retries are disabled; one send is one call."""
        return ChatAnthropic(
            model=ANTHROPIC_MODEL_NAME,
            api_key=require_secret("ANTHROPIC_API_KEY"),
            temperature=LLM_TEMPERATURE,
            max_tokens=LLM_MAX_TOKENS,
            timeout=LLM_TIMEOUT_SECONDS,
            max_retries=0,
        )
