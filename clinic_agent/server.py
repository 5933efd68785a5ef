"""FastAPI server for the clinic's WhatsApp scheduling agent.

Run with:
    uvicorn clinic_agent.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from clinic_agent.api.routes import router, webhook_router
from clinic_agent.config import CLINIC_NAME, CORS_ORIGINS, SERVER_HOST, SERVER_PORT
from clinic_agent.runtime import build_runtime
from clinic_agent.services.metrics import metrics

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: build the agent, intake gate and scheduler once.

    Shutdown stops the scheduler, cancels pending debounce timers and
    flushes buffered metrics.
    """
    logger.info("Starting clinic agent runtime…")
    runtime = build_runtime()
    application.state.runtime = runtime
    application.state.agent = runtime.agent
    application.state.gate = runtime.gate
    runtime.scheduler.start()
    logger.info("Agent ready.")
    yield
    runtime.close()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Clinic Scheduling Agent",
    description=(
        f"WhatsApp assistant for {CLINIC_NAME}: book, reschedule and "
        "cancel dental appointments and answer FAQs."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

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
    """Attach a unique request ID to every request for log correlation."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")
app.include_router(webhook_router, prefix="/webhook")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Clinic Scheduling Agent",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
        "webhook": "/webhook/whatsapp",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting clinic agent API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run("clinic_agent.server:app", host=SERVER_HOST, port=SERVER_PORT)
