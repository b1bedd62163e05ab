"""FastAPI route definitions for the CRM assistant API."""

from __future__ import annotations

import asyncio
import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from crm_assistant.agent import (
    FAILURE_GUARDRAIL,
    FAILURE_PROVIDER,
    FAILURE_TIMEOUT,
    TIMEOUT_MESSAGE,
)
from crm_assistant.api.schemas import ChatRequest, ChatResponse, ErrorResponse, HealthResponse
from crm_assistant.chat import ChatService, ChatValidationError
from crm_assistant.config import CHAT_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

router = APIRouter()

# FAILED outcome → HTTP status
_FAILURE_STATUS = {FAILURE_PROVIDER: 502, FAILURE_GUARDRAIL: 500, FAILURE_TIMEOUT: 504}


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content=ErrorResponse(error=message).model_dump(),
    )


def _get_chat_service(request: Request) -> ChatService | None:
    """Retrieve the chat service the lifespan stored on app state."""
    return getattr(request.app.state, "chat_service", None)


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    """Health check endpoint."""
    service = _get_chat_service(request)
    return HealthResponse(provider=service.orchestrator.provider.name if service else None)


@router.post(
    "/chat",
    response_model=ChatResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse},
               502: {"model": ErrorResponse}, 503: {"model": ErrorResponse},
               504: {"model": ErrorResponse}},
)
async def chat(request: ChatRequest, http_request: Request):
    """Send a message to the assistant and get its final answer.

    **Implementation note**: one orchestrator run is synchronous and
    blocking (provider round-trips, store writes, notifications).  It is
    offloaded to a thread via ``asyncio.to_thread`` and bounded by
    ``CHAT_TIMEOUT_SECONDS``.  The same bound is passed down as a deadline,
    so a run that outlives the response stops before its next provider
    round-trip and discards a late reply instead of acting on it.
    """
    service = _get_chat_service(http_request)
    if service is None:
        return _error(503, "The assistant is still starting up. Please try again in a moment.")
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        outcome = await asyncio.wait_for(
            asyncio.to_thread(
                service.handle,
                request.user_id,
                request.message,
                request.session_id,
                deadline=time.monotonic() + CHAT_TIMEOUT_SECONDS,
            ),
            timeout=CHAT_TIMEOUT_SECONDS,
        )
    except ChatValidationError as exc:
        return _error(400, str(exc))
    except TimeoutError:
        logger.error("[%s] Chat request timed out after %.0fs", request_id, CHAT_TIMEOUT_SECONDS)
        return _error(504, TIMEOUT_MESSAGE)
    except Exception:
        # Full traceback server-side only; never leaked to the client.
        logger.exception("[%s] Error processing chat request", request_id)
        return _error(500, "An internal error occurred. Please try again.")

    if not outcome.succeeded:
        status_code = _FAILURE_STATUS.get(outcome.failure_reason, 500)
        logger.warning(
            "[%s] Conversation failed (%s) -> %d", request_id, outcome.failure_reason, status_code,
        )
        return _error(status_code, outcome.response)

    return ChatResponse(response=outcome.response)
