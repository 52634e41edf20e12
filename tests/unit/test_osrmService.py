"""
Unit tests for the OSRM routing client.

HTTP is served by ``httpx.MockTransport`` so no network is touched.
"""

import httpx
import pytest

from towline.integrations.maps.osrmService import OSRMError, OSRMRoute, get_route

ORIGIN = (24.7136, 46.6753)
DESTINATION = (24.7742, 46.7386)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestGetRoute:

    @pytest.mark.asyncio
    async def test_parses_first_route(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"code": "Ok", "routes": [{"distance": 12345.6, "duration": 930.0}]},
            )

        async with _client(handler) as client:
            route = await get_route(ORIGIN, DESTINATION, client=client)

        assert route == OSRMRoute(distance_meters=12345.6, duration_seconds=930.0)
        # OSRM takes lng,lat pairs
        assert "/route/v1/driving/46.6753,24.7136;46.7386,24.7742" in str(seen[0].url)

    @pytest.mark.asyncio
    async def test_no_route_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"code": "NoRoute", "routes": []})

        async with _client(handler) as client:
            with pytest.raises(OSRMError) as exc_info:
                await get_route(ORIGIN, DESTINATION, client=client)
        assert exc_info.value.code == "NoRoute"

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, text="bad coordinates")

        async with _client(handler) as client:
            with pytest.raises(OSRMError):
                await get_route(ORIGIN, DESTINATION, client=client)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried_once(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503)
            return httpx.Response(
                200, json={"code": "Ok", "routes": [{"distance": 1000, "duration": 60}]}
            )

        async with _client(handler) as client:
            route = await get_route(ORIGIN, DESTINATION, client=client)

        assert len(calls) == 2
        assert route.distance_meters == 1000.0

    @pytest.mark.asyncio
    async def test_timeout_raises_osrm_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        async with _client(handler) as client:
            with pytest.raises(OSRMError, match="timed out"):
                await get_route(ORIGIN, DESTINATION, client=client)
