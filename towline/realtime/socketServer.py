"""
WebSocket Server
================

Socket.IO server for the dispatch engine.  Carries:

  - Broadcast, offer and job status events (``/jobs`` namespace)
  - Provider location pushes and ETA updates (``/location`` namespace)

Architecture:
  - python-socketio AsyncServer mounted as ASGI app on FastAPI
  - Redis client manager so every replica can emit to every room
  - JWT authentication on connect, extracting user_id and role
  - Room-based routing: job_{job_id}, provider_{user_id}, customer_{user_id}

Connection lifecycle:
  1. Client connects with ``auth: { token: "<jwt>" }``
  2. Server validates JWT, extracts user_id and role
  3. Server joins the user to their personal room (provider_<id> or customer_<id>)
     on the namespace being connected
  4. Client explicitly joins job rooms via ``join_job`` event
  5. On disconnect, the connection registry entry is dropped

``SocketIOPublisher`` adapts this server to the dispatch services'
fan-out interface.
"""

from __future__ import annotations

import logging
from typing import Any

import jwt
import socketio
from towline.core.config import settings
from towline.events.publisher import job_topic

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# JWT settings
# ---------------------------------------------------------------------------

JWT_SECRET: str = settings.jwt_secret
JWT_ALGORITHM: str = settings.jwt_algorithm


# ---------------------------------------------------------------------------
# Socket.IO server instance
# ---------------------------------------------------------------------------

# Redis adapter URL for pub/sub between multiple server instances
_redis_mgr_url: str = settings.redis_url

# Client manager backed by Redis for horizontal scaling
client_manager = socketio.AsyncRedisManager(
    _redis_mgr_url,
    write_only=False,
)

sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=settings.ws_cors_allowed_origins,
    client_manager=client_manager,
    logger=False,
    engineio_logger=False,
    ping_timeout=settings.ws_ping_timeout,
    ping_interval=settings.ws_ping_interval,
    max_http_buffer_size=1_000_000,  # 1 MB
    namespaces=["/jobs", "/location"],
)


# ---------------------------------------------------------------------------
# Connection registry: maps sid -> user metadata for quick lookup.
# ---------------------------------------------------------------------------

_sid_meta: dict[str, dict[str, Any]] = {}


def get_sid_meta(sid: str) -> dict[str, Any] | None:
    """Return the metadata dict for a given session ID."""
    return _sid_meta.get(sid)


def _register_connection(sid: str, user_id: str, meta: dict[str, Any]) -> None:
    """Track a new connection in the in-process registry."""
    _sid_meta[sid] = {**meta, "user_id": user_id}


def _unregister_connection(sid: str) -> str | None:
    """Remove a connection from the registry. Returns the user_id or None."""
    meta = _sid_meta.pop(sid, None)
    if meta is None:
        return None
    return meta["user_id"]


# ---------------------------------------------------------------------------
# JWT authentication helper
# ---------------------------------------------------------------------------

def _authenticate_token(token: str | None) -> dict[str, Any] | None:
    """Validate a JWT and return the decoded payload, or None on failure.

    Expected payload fields:
      - sub: str  (user_id as UUID string)
      - role: str (customer | provider | admin)
    """
    if not token:
        return None
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALGORITHM],
        )
        # Minimal validation: must contain sub and role
        if "sub" not in payload or "role" not in payload:
            logger.warning("JWT missing required claims (sub, role)")
            return None
        return payload
    except jwt.ExpiredSignatureError:
        logger.warning("JWT token expired")
        return None
    except jwt.InvalidTokenError as exc:
        logger.warning("Invalid JWT token: %s", exc)
        return None


# ---------------------------------------------------------------------------
# Namespace connect / disconnect
# The server only serves /jobs and /location, so each namespace
# authenticates its own connections.
# ---------------------------------------------------------------------------

async def _accept_connection(sid: str, auth: dict[str, Any] | None, namespace: str) -> bool:
    """Authenticate a namespace connection and join the personal room.

    The client must provide ``auth: { token: "<jwt>" }`` on connect.
    Returns ``False`` to reject unauthenticated connections.
    """
    token = (auth or {}).get("token")
    payload = _authenticate_token(token)
    if payload is None:
        logger.info("Rejected %s connect for sid=%s -- authentication failed", namespace, sid)
        return False

    user_id: str = payload["sub"]
    role: str = payload["role"]
    _register_connection(sid, user_id, {"role": role, "namespace": namespace})

    personal_room = f"{role}_{user_id}"
    await sio.enter_room(sid, personal_room, namespace=namespace)
    logger.info(
        "Connected %s: sid=%s user_id=%s role=%s room=%s",
        namespace, sid, user_id, role, personal_room,
    )
    return True


@sio.on("connect", namespace="/jobs")
async def connect_jobs(sid: str, environ: dict[str, Any], auth: dict[str, Any] | None = None) -> bool:
    return await _accept_connection(sid, auth, "/jobs")


@sio.on("connect", namespace="/location")
async def connect_location(sid: str, environ: dict[str, Any], auth: dict[str, Any] | None = None) -> bool:
    return await _accept_connection(sid, auth, "/location")


@sio.on("disconnect", namespace="/jobs")
async def disconnect_jobs(sid: str) -> None:
    user_id = _unregister_connection(sid)
    logger.info("Disconnected /jobs: sid=%s user_id=%s", sid, user_id)


@sio.on("disconnect", namespace="/location")
async def disconnect_location(sid: str) -> None:
    user_id = _unregister_connection(sid)
    logger.info("Disconnected /location: sid=%s user_id=%s", sid, user_id)


# ---------------------------------------------------------------------------
# Room management events (client-initiated)
# ---------------------------------------------------------------------------

@sio.on("join_job", namespace="/jobs")
async def handle_join_job(sid: str, data: dict[str, Any]) -> dict[str, Any]:
    """Client requests to join a job room on the /jobs namespace.

    Payload: { "job_id": "<uuid>" }
    """
    job_id = data.get("job_id")
    if not job_id:
        return {"ok": False, "error": "job_id is required"}
    room = job_topic(job_id)
    await sio.enter_room(sid, room, namespace="/jobs")
    logger.info("sid=%s joined room %s on /jobs", sid, room)
    return {"ok": True, "room": room}


@sio.on("leave_job", namespace="/jobs")
async def handle_leave_job(sid: str, data: dict[str, Any]) -> dict[str, Any]:
    """Client requests to leave a job room."""
    job_id = data.get("job_id")
    if not job_id:
        return {"ok": False, "error": "job_id is required"}
    room = job_topic(job_id)
    await sio.leave_room(sid, room, namespace="/jobs")
    logger.info("sid=%s left room %s on /jobs", sid, room)
    return {"ok": True, "room": room}


@sio.on("join_job", namespace="/location")
async def handle_join_job_location(sid: str, data: dict[str, Any]) -> dict[str, Any]:
    """Client requests to join a job room on the /location namespace."""
    job_id = data.get("job_id")
    if not job_id:
        return {"ok": False, "error": "job_id is required"}
    room = job_topic(job_id)
    await sio.enter_room(sid, room, namespace="/location")
    logger.info("sid=%s joined room %s on /location", sid, room)
    return {"ok": True, "room": room}


@sio.on("leave_job", namespace="/location")
async def handle_leave_job_location(sid: str, data: dict[str, Any]) -> dict[str, Any]:
    """Client requests to leave a job room on the /location namespace."""
    job_id = data.get("job_id")
    if not job_id:
        return {"ok": False, "error": "job_id is required"}
    room = job_topic(job_id)
    await sio.leave_room(sid, room, namespace="/location")
    logger.info("sid=%s left room %s on /location", sid, room)
    return {"ok": True, "room": room}


# ---------------------------------------------------------------------------
# Fan-out adapter for the dispatch services
# ---------------------------------------------------------------------------

class SocketIOPublisher:
    """Publish dispatch events to Socket.IO rooms.

    Topics map 1:1 onto room names.  ``location.*`` events go out on the
    ``/location`` namespace, everything else on ``/jobs``.
    """

    def __init__(self, server: socketio.AsyncServer | None = None) -> None:
        self._sio = server or sio

    @staticmethod
    def namespace_for(event: str) -> str:
        return "/location" if event.startswith("location.") else "/jobs"

    async def publish(self, topic: str, event: str, data: dict[str, Any]) -> None:
        namespace = self.namespace_for(event)
        await self._sio.emit(event, data, room=topic, namespace=namespace)
        logger.debug("Published %s to room=%s ns=%s", event, topic, namespace)


# ---------------------------------------------------------------------------
# ASGI app for mounting onto FastAPI
# ---------------------------------------------------------------------------

socket_app = socketio.ASGIApp(
    socketio_server=sio,
    socketio_path="/ws/socket.io",
)
