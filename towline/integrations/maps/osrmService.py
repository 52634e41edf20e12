"""
OSRM routing client
===================

Async wrapper around the OSRM ``route`` service, returning driving
distance and duration between two points.

All HTTP calls use httpx with a bounded timeout.  Server errors and
connection failures are retried once with a short backoff; timeouts are
not retried since the caller is already waiting on a degraded provider.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from towline.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

_MAX_ATTEMPTS = 2
_BACKOFF_SECONDS = 0.25


# ---------------------------------------------------------------------------
# Custom exception
# ---------------------------------------------------------------------------


class OSRMError(Exception):
    """Raised when an OSRM request fails or returns a non-Ok result."""

    def __init__(
        self, message: str, code: str | None = None, raw: Any = None
    ) -> None:
        super().__init__(message)
        self.code = code
        self.raw = raw


@dataclass(frozen=True)
class OSRMRoute:
    distance_meters: float
    duration_seconds: float


# ---------------------------------------------------------------------------
# Internal HTTP helpers
# ---------------------------------------------------------------------------


async def _get_with_retry(
    client: httpx.AsyncClient,
    url: str,
    params: dict[str, Any],
    timeout: float,
) -> dict[str, Any]:
    last_exception: Exception | None = None

    for attempt in range(1, _MAX_ATTEMPTS + 1):
        try:
            response = await client.get(url, params=params, timeout=timeout)

            if 400 <= response.status_code < 500:
                raise OSRMError(
                    f"OSRM client error: HTTP {response.status_code}",
                    code=str(response.status_code),
                    raw=response.text,
                )

            if response.status_code >= 500:
                last_exception = OSRMError(
                    f"OSRM server error: HTTP {response.status_code}",
                    code=str(response.status_code),
                    raw=response.text,
                )
                logger.warning(
                    "OSRM server error on attempt %d/%d: HTTP %d",
                    attempt,
                    _MAX_ATTEMPTS,
                    response.status_code,
                )
                if attempt < _MAX_ATTEMPTS:
                    await asyncio.sleep(_BACKOFF_SECONDS)
                continue

            return response.json()

        except httpx.TimeoutException as exc:
            raise OSRMError(f"OSRM request timed out after {timeout}s", raw=str(exc)) from exc

        except httpx.TransportError as exc:
            last_exception = exc
            logger.warning(
                "OSRM connection error on attempt %d/%d: %s",
                attempt,
                _MAX_ATTEMPTS,
                exc,
            )
            if attempt < _MAX_ATTEMPTS:
                await asyncio.sleep(_BACKOFF_SECONDS)

    raise OSRMError(
        f"OSRM request failed after {_MAX_ATTEMPTS} attempts",
        raw=str(last_exception),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def get_route(
    origin: tuple[float, float],
    destination: tuple[float, float],
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float | None = None,
) -> OSRMRoute:
    """Fetch the fastest driving route between two (lat, lng) points.

    Raises:
        OSRMError: On transport failure, timeout, or when OSRM answers
            with a code other than ``Ok`` or without any route.
    """
    # OSRM takes lng,lat pairs
    coordinates = f"{origin[1]},{origin[0]};{destination[1]},{destination[0]}"
    url = f"{settings.routing_base_url.rstrip('/')}/route/v1/driving/{coordinates}"
    params = {"overview": "false", "alternatives": "false", "steps": "false"}
    effective_timeout = timeout if timeout is not None else settings.routing_timeout_seconds

    if client is not None:
        data = await _get_with_retry(client, url, params, effective_timeout)
    else:
        async with httpx.AsyncClient() as owned_client:
            data = await _get_with_retry(owned_client, url, params, effective_timeout)

    code = data.get("code")
    routes = data.get("routes") or []
    if code != "Ok" or not routes:
        raise OSRMError(
            f"OSRM returned no usable route (code={code})",
            code=code,
            raw=data.get("message"),
        )

    route = routes[0]
    return OSRMRoute(
        distance_meters=float(route["distance"]),
        duration_seconds=float(route["duration"]),
    )
