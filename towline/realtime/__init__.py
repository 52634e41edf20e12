"""
Towline Real-time Module
========================

WebSocket server and event handlers for real-time communication.

Usage in FastAPI app startup::

    from towline.realtime import socket_app
    app.mount("/ws", socket_app)

The ``handlers`` sub-package registers all Socket.IO event handlers
as a side-effect of import, so simply importing it is sufficient to
activate all real-time event processing.
"""

from __future__ import annotations

from .socketServer import SocketIOPublisher, sio, socket_app

# Importing handlers registers the Socket.IO event listeners
from . import handlers  # noqa: F401

__all__ = [
    "sio",
    "socket_app",
    "SocketIOPublisher",
    "handlers",
]
