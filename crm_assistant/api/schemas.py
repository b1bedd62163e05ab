"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ChatRequest(BaseModel):
    """Incoming chat message from the frontend."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", max_length=100, description="The agent's user id")
    message: str = Field(..., max_length=4000, description="The user's message")
    session_id: str | None = Field(
        None,
        alias="sessionId",
        max_length=100,
        description="Optional session identifier for session-scoped history",
    )


class ChatResponse(BaseModel):
    """Final answer of the assistant."""

    success: bool = True
    response: str = Field(..., description="The assistant's reply")


class ErrorResponse(BaseModel):
    success: bool = False
    error: str


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    service: str = "crm-assistant"
    provider: str | None = None
