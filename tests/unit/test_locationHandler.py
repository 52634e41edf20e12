"""
Unit tests for the ``location:update`` socket handler and the Socket.IO
fan-out adapter.
"""

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from towline.core.errors import ForbiddenError, TransientStoreError
from towline.integrations.maps.distanceCalculator import RouteResult, RoutingMethod
from towline.realtime.handlers import locationHandler
from towline.realtime.socketServer import SocketIOPublisher

MODULE = "towline.realtime.handlers.locationHandler"
PROVIDER_ID = str(uuid.uuid4())
PAYLOAD = {"lat": 24.7136, "lng": 46.6753, "heading": 90.0, "job_id": str(uuid.uuid4())}


def _redis(claimed: bool = True) -> AsyncMock:
    redis = AsyncMock()
    redis.set.return_value = claimed
    return redis


def _push_result(eta: RouteResult | None):
    result = MagicMock()
    result.eta = eta
    return result


@pytest.fixture
def provider_meta():
    with patch(f"{MODULE}.get_sid_meta", return_value={"user_id": PROVIDER_ID, "role": "provider"}):
        yield


@pytest.fixture
def session_factory():
    with patch(f"{MODULE}.async_session_factory") as factory:
        yield factory


class TestHandleLocationUpdate:

    @pytest.mark.asyncio
    async def test_unauthenticated_sid(self):
        with patch(f"{MODULE}.get_sid_meta", return_value=None):
            ack = await locationHandler.handle_location_update("sid-1", PAYLOAD)
        assert ack == {"ok": False, "error": "Not authenticated"}

    @pytest.mark.asyncio
    async def test_customers_cannot_push(self):
        with patch(f"{MODULE}.get_sid_meta", return_value={"user_id": PROVIDER_ID, "role": "customer"}):
            ack = await locationHandler.handle_location_update("sid-1", PAYLOAD)
        assert ack["ok"] is False

    @pytest.mark.asyncio
    async def test_malformed_subject_is_refused(self):
        meta = {"user_id": "not-a-uuid", "role": "provider"}
        with patch(f"{MODULE}.get_sid_meta", return_value=meta), \
             patch(f"{MODULE}.get_redis", new=AsyncMock(return_value=_redis())) as get_redis, \
             patch(f"{MODULE}.push_location", new=AsyncMock()) as push:
            ack = await locationHandler.handle_location_update("sid-1", PAYLOAD)

        assert ack == {"ok": False, "error": "Not authenticated"}
        get_redis.assert_not_awaited()
        push.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_throttled(self, provider_meta):
        with patch(f"{MODULE}.get_redis", new=AsyncMock(return_value=_redis(claimed=False))), \
             patch(f"{MODULE}.push_location", new=AsyncMock()) as push:
            ack = await locationHandler.handle_location_update("sid-1", PAYLOAD)

        assert ack["ok"] is False
        assert ack["error"] == "Rate limited"
        push.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_accepted_update_maps_short_keys(self, provider_meta, session_factory):
        eta = RouteResult(distance_km=3.2, duration_minutes=7, method=RoutingMethod.ESTIMATED, accurate=False)
        redis = _redis()
        with patch(f"{MODULE}.get_redis", new=AsyncMock(return_value=redis)), \
             patch(f"{MODULE}.push_location", new=AsyncMock(return_value=_push_result(eta))) as push:
            ack = await locationHandler.handle_location_update("sid-1", PAYLOAD)

        assert ack == {"ok": True, "eta_minutes": 7, "distance_km": 3.2}
        _, provider_id, payload = push.await_args.args
        assert provider_id == uuid.UUID(PROVIDER_ID)
        assert payload["latitude"] == 24.7136
        assert payload["longitude"] == 46.6753
        assert "lat" not in payload
        redis.set.assert_awaited_once()
        assert redis.set.await_args.kwargs["nx"] is True

    @pytest.mark.asyncio
    async def test_no_eta_without_target(self, provider_meta, session_factory):
        with patch(f"{MODULE}.get_redis", new=AsyncMock(return_value=_redis())), \
             patch(f"{MODULE}.push_location", new=AsyncMock(return_value=_push_result(None))):
            ack = await locationHandler.handle_location_update("sid-1", {"lat": 24.7, "lng": 46.6})

        assert ack == {"ok": True, "eta_minutes": None, "distance_km": None}

    @pytest.mark.asyncio
    async def test_business_error_is_acked(self, provider_meta, session_factory):
        with patch(f"{MODULE}.get_redis", new=AsyncMock(return_value=_redis())), \
             patch(
                 f"{MODULE}.push_location",
                 new=AsyncMock(side_effect=ForbiddenError("Provider is not assigned to this job")),
             ):
            ack = await locationHandler.handle_location_update("sid-1", PAYLOAD)

        assert ack == {
            "ok": False,
            "error": "Provider is not assigned to this job",
            "kind": "FORBIDDEN",
        }

    @pytest.mark.asyncio
    async def test_store_error_is_acked_as_unavailable(self, provider_meta, session_factory):
        with patch(f"{MODULE}.get_redis", new=AsyncMock(return_value=_redis())), \
             patch(
                 f"{MODULE}.push_location",
                 new=AsyncMock(side_effect=TransientStoreError("down", operation="push_location")),
             ):
            ack = await locationHandler.handle_location_update("sid-1", PAYLOAD)

        assert ack["ok"] is False
        assert ack["kind"] == "UNAVAILABLE"


class TestSocketIOPublisher:

    def test_namespace_routing(self):
        assert SocketIOPublisher.namespace_for("location.provider_moved") == "/location"
        assert SocketIOPublisher.namespace_for("offer.accepted") == "/jobs"
        assert SocketIOPublisher.namespace_for("broadcast.created") == "/jobs"

    @pytest.mark.asyncio
    async def test_publish_emits_to_room(self):
        server = MagicMock()
        server.emit = AsyncMock()
        publisher = SocketIOPublisher(server)

        await publisher.publish("job_123", "offer.submitted", {"event_type": "offer.submitted"})

        server.emit.assert_awaited_once_with(
            "offer.submitted",
            {"event_type": "offer.submitted"},
            room="job_123",
            namespace="/jobs",
        )
