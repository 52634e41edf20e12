"""
Unit tests for the broadcast guard: lazy expiry, guarded writes,
store-error mapping in ``atomic`` and the in-process broadcast lock.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import DBAPIError

from towline.core.errors import (
    ConcurrentModificationError,
    DuplicateOfferError,
    InvalidStatusError,
    TransientStoreError,
)
from towline.models.broadcast import BroadcastStatus, JobBroadcast
from towline.services.broadcastGuard import (
    atomic,
    broadcast_lock,
    compare_and_set,
    effective_status,
    is_past_window,
    is_write_conflict,
)

NOW = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)


def _broadcast(status: BroadcastStatus, until: datetime) -> JobBroadcast:
    return JobBroadcast(id=uuid.uuid4(), status=status, broadcast_until=until, version=1)


class _Orig(Exception):
    def __init__(self, message: str, sqlstate: str | None = None) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


def _dbapi_error(message: str, sqlstate: str | None = None) -> DBAPIError:
    return DBAPIError("UPDATE job_broadcasts ...", {}, _Orig(message, sqlstate))


# ---------------------------------------------------------------------------
# Lazy expiry
# ---------------------------------------------------------------------------


class TestEffectiveStatus:

    def test_open_and_in_window(self):
        broadcast = _broadcast(BroadcastStatus.BROADCASTING, NOW + timedelta(minutes=5))
        assert effective_status(broadcast, NOW) == BroadcastStatus.BROADCASTING

    def test_open_and_past_window_reads_expired(self):
        broadcast = _broadcast(BroadcastStatus.BROADCASTING, NOW - timedelta(seconds=1))
        assert effective_status(broadcast, NOW) == BroadcastStatus.EXPIRED

    def test_window_end_is_exclusive(self):
        broadcast = _broadcast(BroadcastStatus.BROADCASTING, NOW)
        assert is_past_window(broadcast, NOW) is True

    def test_selected_broadcast_never_expires(self):
        broadcast = _broadcast(BroadcastStatus.TECHNICIAN_SELECTED, NOW - timedelta(hours=1))
        assert effective_status(broadcast, NOW) == BroadcastStatus.TECHNICIAN_SELECTED

    def test_naive_stored_deadline_is_utc(self):
        broadcast = _broadcast(BroadcastStatus.BROADCASTING, datetime(2025, 3, 1, 9, 59))
        assert effective_status(broadcast, NOW) == BroadcastStatus.EXPIRED


# ---------------------------------------------------------------------------
# Store error mapping
# ---------------------------------------------------------------------------


class TestIsWriteConflict:

    @pytest.mark.parametrize("sqlstate", ["40001", "40P01", "55P03"])
    def test_postgres_conflicts(self, sqlstate):
        assert is_write_conflict(_dbapi_error("conflict", sqlstate)) is True

    def test_sqlite_lock(self):
        assert is_write_conflict(_dbapi_error("database is locked")) is True

    def test_other_errors(self):
        assert is_write_conflict(_dbapi_error("connection refused", "08006")) is False


class TestAtomic:

    @pytest.mark.asyncio
    async def test_commits_on_success(self, mock_db):
        async with atomic(mock_db, "op"):
            pass
        mock_db.commit.assert_awaited_once()
        mock_db.rollback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_business_error_rolls_back_and_propagates(self, mock_db):
        with pytest.raises(DuplicateOfferError):
            async with atomic(mock_db, "op"):
                raise DuplicateOfferError("dup")
        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_conflict_maps_to_concurrent_modification(self, mock_db):
        with pytest.raises(ConcurrentModificationError):
            async with atomic(mock_db, "accept_offer"):
                raise _dbapi_error("could not serialize access", "40001")
        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_outage_maps_to_transient_error(self, mock_db):
        with pytest.raises(TransientStoreError) as exc_info:
            async with atomic(mock_db, "submit_offer"):
                raise _dbapi_error("connection refused", "08006")
        assert exc_info.value.operation == "submit_offer"

    @pytest.mark.asyncio
    async def test_commit_failure_is_mapped(self, mock_db):
        mock_db.commit.side_effect = _dbapi_error("database is locked")
        with pytest.raises(ConcurrentModificationError):
            async with atomic(mock_db, "op"):
                pass


# ---------------------------------------------------------------------------
# Broadcast lock
# ---------------------------------------------------------------------------


class TestBroadcastLock:

    @pytest.mark.asyncio
    async def test_serializes_writers_of_one_broadcast(self):
        broadcast_id = uuid.uuid4()
        order: list[str] = []

        async def writer(name: str) -> None:
            async with broadcast_lock(broadcast_id):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(writer("a"), writer("b"))

        assert order in (
            ["a-in", "a-out", "b-in", "b-out"],
            ["b-in", "b-out", "a-in", "a-out"],
        )

    @pytest.mark.asyncio
    async def test_different_broadcasts_do_not_block(self):
        entered = asyncio.Event()

        async def holder() -> None:
            async with broadcast_lock(uuid.uuid4()):
                await asyncio.wait_for(entered.wait(), timeout=1)

        async def other() -> None:
            async with broadcast_lock(uuid.uuid4()):
                entered.set()

        await asyncio.gather(holder(), other())
        assert entered.is_set()


# ---------------------------------------------------------------------------
# Guarded writes
# ---------------------------------------------------------------------------


class TestCompareAndSetTransitions:

    @pytest.mark.asyncio
    async def test_illegal_transition_never_reaches_the_store(self, mock_db):
        broadcast = _broadcast(BroadcastStatus.EXPIRED, NOW - timedelta(minutes=1))

        with pytest.raises(InvalidStatusError) as exc_info:
            await compare_and_set(
                mock_db,
                broadcast,
                BroadcastStatus.TECHNICIAN_SELECTED,
                allowed_from=[BroadcastStatus.EXPIRED],
                now=NOW,
            )

        assert exc_info.value.to_dict()["details"]["requested_status"] == BroadcastStatus.TECHNICIAN_SELECTED.value
        mock_db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_offer_counter_bump_keeps_status(self, mock_db):
        mock_db.execute.return_value = MagicMock(rowcount=1)
        broadcast = _broadcast(BroadcastStatus.BROADCASTING, NOW + timedelta(minutes=5))

        swapped = await compare_and_set(
            mock_db,
            broadcast,
            BroadcastStatus.BROADCASTING,
            allowed_from=[BroadcastStatus.BROADCASTING],
            now=NOW,
            increment_offers=True,
        )

        assert swapped is True
        mock_db.refresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stale_version_matches_no_row(self, mock_db):
        mock_db.execute.return_value = MagicMock(rowcount=0)
        broadcast = _broadcast(BroadcastStatus.BROADCASTING, NOW + timedelta(minutes=5))

        swapped = await compare_and_set(
            mock_db,
            broadcast,
            BroadcastStatus.TECHNICIAN_SELECTED,
            allowed_from=[BroadcastStatus.BROADCASTING],
            now=NOW,
        )

        assert swapped is False
        mock_db.refresh.assert_not_awaited()
