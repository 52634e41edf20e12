"""
Broadcast Expiry Sweeper -- periodic background job.

Persists expiry for broadcasts whose window has passed without a
technician being selected.  Reads already treat such broadcasts as
EXPIRED; the sweep makes the stored state, the pending offers and the
job catch up, and notifies the job room.

Every tick takes a short Redis lock (``SET NX EX``) so that only one
replica sweeps at a time.  The sweep itself is idempotent, so a lost or
expired lock only costs duplicate work, never a wrong state.

Usage (integrated into the FastAPI app lifespan)::

    from towline.jobs.broadcastExpirySweeper import start_expiry_sweeper, stop_expiry_sweeper

Usage with a simple cron runner::

    python -m towline.jobs.broadcastExpirySweeper
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
from datetime import datetime
from typing import Final

from redis.exceptions import RedisError

from towline.core.config import settings
from towline.core.database import async_session_factory
from towline.core.errors import TransientStoreError
from towline.core.redis import get_redis
from towline.services.broadcastManager import sweep_expired_broadcasts

logger = logging.getLogger(__name__)

_LOCK_KEY: Final[str] = "towline:sweep:broadcast_expiry"

# Internal state
_sweeper_task: asyncio.Task | None = None
_running: bool = False


def _lock_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


# ---------------------------------------------------------------------------
# Core logic
# ---------------------------------------------------------------------------

async def run_sweep_once(*, now: datetime | None = None, use_lock: bool = True) -> int:
    """Run one sweep and return the number of broadcasts expired.

    Returns 0 without touching the store when another replica holds the
    sweep lock.
    """
    if use_lock:
        redis = await get_redis()
        acquired = await redis.set(
            _LOCK_KEY, _lock_owner(), nx=True, ex=settings.sweep_lock_ttl_seconds
        )
        if not acquired:
            logger.debug("Expiry sweep skipped; lock held by another worker")
            return 0

    async with async_session_factory() as db:
        expired = await sweep_expired_broadcasts(db, now=now)

    if expired:
        logger.info("Expiry sweep expired %d broadcasts", expired)
    return expired


async def _run_sweeper() -> None:
    """Main loop: sweep every ``settings.sweep_interval_seconds``."""
    logger.info("Expiry sweeper started (interval=%ds)", settings.sweep_interval_seconds)

    while _running:
        try:
            await run_sweep_once()
        except (RedisError, TransientStoreError) as exc:
            logger.warning("Expiry sweep failed, retrying next tick: %s", exc)
        except Exception:
            logger.exception("Unexpected error in expiry sweeper")

        await asyncio.sleep(settings.sweep_interval_seconds)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def start_expiry_sweeper() -> None:
    """Start the background expiry sweeper task."""
    global _sweeper_task, _running

    if _sweeper_task is not None:
        logger.warning("Expiry sweeper is already running")
        return

    _running = True
    _sweeper_task = asyncio.create_task(_run_sweeper())


async def stop_expiry_sweeper() -> None:
    """Stop the background expiry sweeper task."""
    global _sweeper_task, _running

    _running = False

    if _sweeper_task is not None:
        _sweeper_task.cancel()
        try:
            await _sweeper_task
        except asyncio.CancelledError:
            pass
        _sweeper_task = None
        logger.info("Expiry sweeper stopped")


# ---------------------------------------------------------------------------
# CLI entry point (for manual runs / simple cron)
# ---------------------------------------------------------------------------

async def _cli_main() -> None:
    """Run a single sweep without the replica lock."""
    expired = await run_sweep_once(use_lock=False)
    print(f"Expiry sweep completed: {expired} broadcasts expired")  # noqa: T201


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_cli_main())
