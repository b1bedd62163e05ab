"""OpenAI adapter built on LangChain's ``ChatOpenAI``.

Any OpenAI-compatible endpoint works by pointing ``OPENAI_BASE_URL`` at it.
"""

from __future__ import annotations

from typing import Any

from langchain_openai import ChatOpenAI

from crm_assistant.config import (
    LLM_MAX_TOKENS,
    LLM_TEMPERATURE,
    LLM_TIMEOUT_SECONDS,
    OPENAI_BASE_URL,
    OPENAI_MODEL_NAME,
    require_secret,
)
from crm_assistant.providers.chat_model import ChatModelAdapter


class OpenAIAdapter(ChatModelAdapter):
    name = "openai"

    def __init__(self, llm: Any | None = None, *, model: str = OPENAI_MODEL_NAME) -> None:
        super().__init__(llm)
        self.model = model

    def _build_llm(self) -> ChatOpenAI:
        return ChatOpenAI(
            model=self.model,
            api_key=require_secret("OPENAI_API_KEY"),
            base_url=OPENAI_BASE_URL,
            temperature=LLM_TEMPERATURE,
            max_tokens=LLM_MAX_TOKENS,
            timeout=LLM_TIMEOUT_SECONDS,
            max_retries=0,
        )
