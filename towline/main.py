"""Towline Dispatch -- Main Application Entry Point

Creates the FastAPI application that hosts the dispatch engine's
long-running pieces: the Socket.IO server used for real-time fan-out and
the broadcast expiry sweeper.  The dispatch operations themselves are
called by the request layer; no REST routes are registered here.

Run with::

    uvicorn towline.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from towline.core.config import settings
from towline.core.redis import close_redis
from towline.jobs.broadcastExpirySweeper import start_expiry_sweeper, stop_expiry_sweeper


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# ---------------------------------------------------------------------------
# Lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Startup:
      - Configure logging.
      - Import realtime handlers to register Socket.IO event listeners.
      - Start the broadcast expiry sweeper.

    Shutdown:
      - Stop the sweeper and close the shared Redis client.
    """
    configure_logging()

    # Importing handlers is sufficient to register all Socket.IO events
    from towline.realtime import handlers  # noqa: F401

    await start_expiry_sweeper()

    yield

    await stop_expiry_sweeper()
    await close_redis()


# ---------------------------------------------------------------------------
# Application instance
# ---------------------------------------------------------------------------

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# CORS middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health():
    """Lightweight health check for load balancers and readiness probes."""
    return {"status": "ok", "version": settings.app_version}


# ---------------------------------------------------------------------------
# Mount Socket.IO ASGI application
# ---------------------------------------------------------------------------

from towline.realtime.socketServer import socket_app  # noqa: E402

app.mount("/ws", socket_app)
