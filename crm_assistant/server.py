"""FastAPI server for the CRM assistant.

Run with:
    uvicorn crm_assistant.server:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crm_assistant.api.routes import router
from crm_assistant.chat import create_chat_service
from crm_assistant.config import CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from crm_assistant.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the chat service once and store it in app state.

    A service injected beforehand (tests) is left in place.
    """
    if getattr(application.state, "chat_service", None) is None:
        logger.info("Building chat service…")
        application.state.chat_service = create_chat_service()
        logger.info("Chat service ready.")
    yield
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="CRM Assistant",
    description=(
        "AI assistant for real-estate agents: manages clients, transactions "
        "and deadlines through tool calls, and sends daily briefings."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS (needed for the web frontend) ───────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a unique request ID to every request for log correlation.

    A client-supplied ``X-Request-ID`` is reused; either way it is echoed
    back in the response headers.
    """
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Validation errors → 400 {success: false, error} ──────────────────
@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = sorted(
        {str(err["loc"][-1]) for err in exc.errors() if err.get("loc")},
    )
    message = f"Invalid request: {', '.join(fields)}" if fields else "Invalid request"
    return JSONResponse(status_code=400, content={"success": False, "error": message})


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "CRM Assistant",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting CRM assistant API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "crm_assistant.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
