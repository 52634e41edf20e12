"""
Unit tests for Socket.IO connection handling on the /jobs and /location
namespaces.
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import jwt
import pytest

from towline.core.config import settings
from towline.realtime import socketServer

USER_ID = str(uuid.uuid4())


def _token(**claims) -> str:
    payload = {
        "sub": USER_ID,
        "role": "provider",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
        **claims,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


@pytest.fixture
def enter_room():
    with patch.object(socketServer.sio, "enter_room", new=AsyncMock()) as mock:
        yield mock


class TestNamespaceConnect:

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "handler,namespace",
        [
            (socketServer.connect_jobs, "/jobs"),
            (socketServer.connect_location, "/location"),
        ],
    )
    async def test_valid_token_joins_personal_room(self, enter_room, handler, namespace):
        accepted = await handler("sid-1", {}, {"token": _token()})

        assert accepted is True
        enter_room.assert_awaited_once_with("sid-1", f"provider_{USER_ID}", namespace=namespace)
        assert socketServer.get_sid_meta("sid-1") == {
            "user_id": USER_ID,
            "role": "provider",
            "namespace": namespace,
        }

        await socketServer.disconnect_jobs("sid-1")
        assert socketServer.get_sid_meta("sid-1") is None

    @pytest.mark.asyncio
    async def test_missing_token_is_rejected(self, enter_room):
        assert await socketServer.connect_jobs("sid-2", {}, None) is False
        enter_room.assert_not_awaited()
        assert socketServer.get_sid_meta("sid-2") is None

    @pytest.mark.asyncio
    async def test_expired_token_is_rejected(self, enter_room):
        token = _token(exp=datetime.now(timezone.utc) - timedelta(minutes=1))
        assert await socketServer.connect_location("sid-3", {}, {"token": token}) is False

    @pytest.mark.asyncio
    async def test_token_without_role_is_rejected(self, enter_room):
        token = jwt.encode({"sub": USER_ID}, settings.jwt_secret, algorithm=settings.jwt_algorithm)
        assert await socketServer.connect_jobs("sid-4", {}, {"token": token}) is False


class TestJobRooms:

    @pytest.mark.asyncio
    async def test_join_uses_job_topic(self, enter_room):
        job_id = str(uuid.uuid4())

        ack = await socketServer.handle_join_job("sid-5", {"job_id": job_id})

        assert ack == {"ok": True, "room": f"job_{job_id}"}
        enter_room.assert_awaited_once_with("sid-5", f"job_{job_id}", namespace="/jobs")

    @pytest.mark.asyncio
    async def test_join_requires_job_id(self, enter_room):
        ack = await socketServer.handle_join_job_location("sid-6", {})
        assert ack["ok"] is False
        enter_room.assert_not_awaited()
