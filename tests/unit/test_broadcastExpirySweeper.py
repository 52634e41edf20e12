"""
Unit tests for the broadcast expiry sweeper's single-tick logic.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from towline.jobs import broadcastExpirySweeper

MODULE = "towline.jobs.broadcastExpirySweeper"
NOW = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)


class TestRunSweepOnce:

    @pytest.mark.asyncio
    async def test_skips_when_lock_is_held(self):
        redis = AsyncMock()
        redis.set.return_value = None
        with patch(f"{MODULE}.get_redis", new=AsyncMock(return_value=redis)), \
             patch(f"{MODULE}.sweep_expired_broadcasts", new=AsyncMock()) as sweep, \
             patch(f"{MODULE}.async_session_factory"):
            expired = await broadcastExpirySweeper.run_sweep_once(now=NOW)

        assert expired == 0
        sweep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_sweeps_when_lock_acquired(self):
        redis = AsyncMock()
        redis.set.return_value = True
        with patch(f"{MODULE}.get_redis", new=AsyncMock(return_value=redis)), \
             patch(f"{MODULE}.sweep_expired_broadcasts", new=AsyncMock(return_value=3)) as sweep, \
             patch(f"{MODULE}.async_session_factory"):
            expired = await broadcastExpirySweeper.run_sweep_once(now=NOW)

        assert expired == 3
        assert sweep.await_args.kwargs["now"] == NOW
        lock_kwargs = redis.set.await_args.kwargs
        assert lock_kwargs["nx"] is True
        assert lock_kwargs["ex"] > 0

    @pytest.mark.asyncio
    async def test_without_lock_does_not_touch_redis(self):
        with patch(f"{MODULE}.get_redis", new=AsyncMock()) as get_redis, \
             patch(f"{MODULE}.sweep_expired_broadcasts", new=AsyncMock(return_value=0)), \
             patch(f"{MODULE}.async_session_factory"):
            expired = await broadcastExpirySweeper.run_sweep_once(use_lock=False)

        assert expired == 0
        get_redis.assert_not_awaited()


class TestSweeperLifecycle:

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        with patch(f"{MODULE}.run_sweep_once", new=AsyncMock(return_value=0)):
            await broadcastExpirySweeper.start_expiry_sweeper()
            assert broadcastExpirySweeper._sweeper_task is not None
            await broadcastExpirySweeper.stop_expiry_sweeper()

        assert broadcastExpirySweeper._sweeper_task is None
