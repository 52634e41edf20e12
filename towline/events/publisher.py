"""
Real-time fan-out channel.

Publish-by-topic abstraction over the Socket.IO server.  Topics are room
names: ``job_{job_id}`` for everyone following a job (the customer, the
assigned provider) and ``provider_{user_id}`` for a provider's personal
feed (new broadcasts, offer outcomes).

Services call ``get_publisher()``; tests and tooling swap the transport
with ``set_publisher()``.
"""

from __future__ import annotations

import uuid
from typing import Any, Protocol


class RealtimePublisher(Protocol):
    async def publish(self, topic: str, event: str, data: dict[str, Any]) -> None: ...


def job_topic(job_id: uuid.UUID | str) -> str:
    return f"job_{job_id}"


def provider_topic(provider_id: uuid.UUID | str) -> str:
    return f"provider_{provider_id}"


_publisher: RealtimePublisher | None = None


def get_publisher() -> RealtimePublisher:
    """Return the process-wide publisher, defaulting to Socket.IO."""
    global _publisher
    if _publisher is None:
        from towline.realtime.socketServer import SocketIOPublisher

        _publisher = SocketIOPublisher()
    return _publisher


def set_publisher(publisher: RealtimePublisher | None) -> None:
    global _publisher
    _publisher = publisher
