"""Centralized configuration for the CRM assistant.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/crm-assistant/<VARIABLE_NAME>``.

Secrets are resolved lazily through :func:`require_secret` because which
ones are needed depends on the selected LLM provider and store backend.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/crm-assistant/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def require_secret(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /crm-assistant/{name} (AWS)."
    )


def _int_env(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


# ── LLM ─────────────────────────────────────────────────────────────
LLM_PROVIDER: str = os.getenv("LLM_PROVIDER", "anthropic").lower()
ANTHROPIC_MODEL_NAME: str = os.getenv("ANTHROPIC_MODEL_NAME", "claude-sonnet-4-5")
OPENAI_MODEL_NAME: str = os.getenv("OPENAI_MODEL_NAME", "gpt-4o-mini")
OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
GEMINI_MODEL_NAME: str = os.getenv("GEMINI_MODEL_NAME", "gemini-2.0-flash")
GEMINI_BASE_URL: str = os.getenv(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta",
)
LLM_TEMPERATURE: float = float(os.getenv("LLM_TEMPERATURE", "0.7"))
LLM_MAX_TOKENS: int = _int_env("LLM_MAX_TOKENS", 1500)
LLM_TIMEOUT_SECONDS: float = float(os.getenv("LLM_TIMEOUT_SECONDS", "60"))

# ── Conversation ────────────────────────────────────────────────────
# Upper bound on provider round-trips within one request.
MAX_TOOL_TURNS: int = _int_env("MAX_TOOL_TURNS", 5)
HISTORY_SCOPE: str = os.getenv("HISTORY_SCOPE", "session").lower()
HISTORY_WINDOW: int = _int_env("HISTORY_WINDOW", 10)
CONTEXT_DEADLINE_LIMIT: int = _int_env("CONTEXT_DEADLINE_LIMIT", 10)
CONTEXT_TRANSACTION_LIMIT: int = _int_env("CONTEXT_TRANSACTION_LIMIT", 20)
CONTEXT_CLIENT_LIMIT: int = _int_env("CONTEXT_CLIENT_LIMIT", 10)
CHAT_TIMEOUT_SECONDS: float = float(os.getenv("CHAT_TIMEOUT_SECONDS", "90"))

# ── Business data store ─────────────────────────────────────────────
STORE_BACKEND: str = os.getenv("STORE_BACKEND", "memory").lower()
SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
# Cap on the in-memory store's audit trail and chat rows; oldest entries drop first.
MEMORY_STORE_MAX_ROWS: int = _int_env("MEMORY_STORE_MAX_ROWS", 10000)

# ── Notifications ───────────────────────────────────────────────────
EMAIL_FROM: str = os.getenv("EMAIL_FROM", "CRM Assistant <briefings@example.com>")
RESEND_BASE_URL: str = "https://api.resend.com"
TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_FROM_NUMBER: str = os.getenv("TWILIO_FROM_NUMBER", "")
TWILIO_BASE_URL: str = "https://api.twilio.com/2010-04-01"

# ── Metrics ─────────────────────────────────────────────────────────
METRICS_NAMESPACE: str = os.getenv("METRICS_NAMESPACE", "CrmAssistant")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = _int_env("SERVER_PORT", 8000)
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
