"""
Location Tracking Handler
=========================

WebSocket handler for provider location pushes on the ``/location``
namespace.

Flow:
  - Provider emits ``location:update`` with GPS data (and the job id while
    working a job)
  - Updates are throttled to one per ``settings.location_throttle_seconds``
    per provider through a Redis key with a TTL
  - Accepted updates go through ``trackingService.push_location``, which
    stores the sample and fans the recomputed ETA out to the job room

Redis keys:
  - ``towline:loc:throttle:{provider_id}``   Throttle flag (TTL)
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from towline.core.config import settings
from towline.core.database import async_session_factory
from towline.core.errors import DispatchError, TransientStoreError
from towline.core.redis import get_redis
from towline.services.trackingService import push_location

from ..socketServer import get_sid_meta, sio

logger = logging.getLogger(__name__)

_THROTTLE_PREFIX: str = "towline:loc:throttle:"


# ---------------------------------------------------------------------------
# Throttling
# ---------------------------------------------------------------------------

async def _acquire_throttle(provider_id: str) -> bool:
    """Claim the provider's update slot.

    Returns False if the provider already sent an update within the
    throttle interval.
    """
    redis = await get_redis()
    key = f"{_THROTTLE_PREFIX}{provider_id}"
    claimed = await redis.set(key, "1", ex=settings.location_throttle_seconds, nx=True)
    return bool(claimed)


def _payload(data: dict[str, Any]) -> dict[str, Any]:
    """Accept the short ``lat``/``lng`` keys mobile clients send."""
    payload = dict(data)
    if "latitude" not in payload and "lat" in payload:
        payload["latitude"] = payload.pop("lat")
    if "longitude" not in payload and "lng" in payload:
        payload["longitude"] = payload.pop("lng")
    if "recorded_at" not in payload and "timestamp" in payload:
        payload["recorded_at"] = payload.pop("timestamp")
    return payload


# ---------------------------------------------------------------------------
# Inbound event handler
# ---------------------------------------------------------------------------

@sio.on("location:update", namespace="/location")
async def handle_location_update(sid: str, data: dict[str, Any]) -> dict[str, Any]:
    """Process a location update from a provider.

    Payload: {
        "lat": <float>,
        "lng": <float>,
        "heading": <float | null>,
        "speed": <float | null>,
        "accuracy": <float | null>,     # meters
        "job_id": "<uuid> | null",
        "timestamp": "<iso string>"     # client-side timestamp
    }

    Returns an ack dict: ``{"ok": True, "eta_minutes": ...}`` on success,
    ``{"ok": False, "error": ..., "kind": ...}`` otherwise.
    """
    meta = get_sid_meta(sid)
    if not meta:
        return {"ok": False, "error": "Not authenticated"}

    provider_id: str = meta.get("user_id", "")
    if meta.get("role") != "provider":
        return {"ok": False, "error": "Only providers can send location updates"}
    try:
        provider_uuid = uuid.UUID(provider_id)
    except (TypeError, ValueError):
        logger.warning("Location update from sid=%s with malformed user id %r", sid, provider_id)
        return {"ok": False, "error": "Not authenticated"}

    if not isinstance(data, dict):
        return {"ok": False, "error": "Payload must be an object"}

    if not await _acquire_throttle(provider_id):
        return {
            "ok": False,
            "error": "Rate limited",
            "retry_after_seconds": settings.location_throttle_seconds,
        }

    try:
        async with async_session_factory() as db:
            result = await push_location(db, provider_uuid, _payload(data))
    except DispatchError as exc:
        logger.info("Location update rejected for provider=%s: %s", provider_id, exc.message)
        return {"ok": False, "error": exc.message, "kind": exc.kind.value}
    except TransientStoreError:
        logger.warning("Location update for provider=%s hit a store error", provider_id)
        return {"ok": False, "error": "Temporarily unavailable", "kind": "UNAVAILABLE"}

    return {
        "ok": True,
        "eta_minutes": result.eta.duration_minutes if result.eta else None,
        "distance_km": result.eta.distance_km if result.eta else None,
    }
