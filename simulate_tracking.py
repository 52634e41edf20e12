#!/usr/bin/env python3
"""
Simulate an assigned provider driving toward a job's pickup point.

Usage:
    python3 simulate_tracking.py <job_id>

The script:
  1. Looks up the job and its assigned provider.
  2. Places the provider 3 km south of the pickup and moves them toward it.
  3. Pushes a location sample every 2 seconds through the tracking service
     (20 steps, about 40 s total), printing the ETA each push returns.

A customer subscribed to the job room on the /location namespace sees the
``location.provider_moved`` events as they would in production.
"""

import asyncio
import sys
import uuid

from dotenv import load_dotenv

load_dotenv()

from towline.core.database import async_session_factory  # noqa: E402
from towline.core.errors import DispatchError  # noqa: E402
from towline.models.job import Job  # noqa: E402
from towline.services.geoService import haversine_distance  # noqa: E402
from towline.services.trackingService import push_location  # noqa: E402

# ─── Config ──────────────────────────────────────────────────────────────────

NUM_STEPS = 20
STEP_INTERVAL_S = 2.0
OFFSET_KM = 3.0  # Start 3 km away


# ─── Helpers ─────────────────────────────────────────────────────────────────

def offset_lat(lat: float, km: float) -> float:
    """Shift latitude by ~km (1° ≈ 111 km)."""
    return lat - km / 111.0


def interpolate(start: tuple[float, float], end: tuple[float, float], t: float):
    """Linear interpolation between two (lat, lng) points."""
    return (
        start[0] + (end[0] - start[0]) * t,
        start[1] + (end[1] - start[1]) * t,
    )


# ─── Main ────────────────────────────────────────────────────────────────────

async def main():
    if len(sys.argv) < 2:
        print("Usage: python3 simulate_tracking.py <job_id>")
        sys.exit(1)
    job_id = uuid.UUID(sys.argv[1])

    async with async_session_factory() as db:
        job = await db.get(Job, job_id)
        if job is None:
            print(f"❌ Job {job_id} not found")
            sys.exit(1)
        if job.provider_id is None:
            print(f"❌ Job {job.job_number} has no assigned provider yet")
            sys.exit(1)

        pickup = (float(job.pickup_latitude), float(job.pickup_longitude))
        provider_id = job.provider_id
        print(f"📍 Pickup: ({pickup[0]:.6f}, {pickup[1]:.6f})  job {job.job_number} [{job.status.value}]")

        start = (offset_lat(pickup[0], OFFSET_KM), pickup[1] + 0.005)
        print(f"🚗 Provider start: ({start[0]:.6f}, {start[1]:.6f})")
        print(f"   Moving in {NUM_STEPS} steps, {STEP_INTERVAL_S}s each…\n")

        for i in range(NUM_STEPS + 1):
            t = i / NUM_STEPS
            lat, lng = interpolate(start, pickup, t)

            try:
                result = await push_location(
                    db,
                    provider_id,
                    {"latitude": lat, "longitude": lng, "heading": 0.0, "job_id": str(job_id)},
                )
            except DispatchError as exc:
                print(f"❌ Push rejected ({exc.kind.value}): {exc.message}")
                sys.exit(1)

            remaining_km = haversine_distance(lat, lng, pickup[0], pickup[1])
            eta = f"{result.eta.duration_minutes} min ({result.eta.method.value})" if result.eta else "n/a"
            bar = "█" * int(t * 30) + "░" * (30 - int(t * 30))
            print(
                f"  [{bar}] {t*100:5.1f}%  "
                f"({lat:.6f}, {lng:.6f})  "
                f"{remaining_km:.2f} km left  ETA {eta}"
            )

            if i < NUM_STEPS:
                await asyncio.sleep(STEP_INTERVAL_S)

    print("\n✅ Provider has arrived at the pickup point!")


if __name__ == "__main__":
    asyncio.run(main())
