"""Unit tests for the reservation hold manager"""
import asyncio
from datetime import timedelta

import pytest

from staysync.exceptions import (
    AlreadyCommitted,
    BookingConfirmationUnknown,
    HoldExpired,
    NetworkError,
    PermissionDenied,
    ResourceUnavailable,
    ValidationError,
)
from staysync.holds import ReservationHoldManager, format_time_remaining
from staysync.models import HoldState
from staysync.notifications import NoticeLevel

STAY = ("2025-03-01", "2025-03-05")


@pytest.fixture
def manager(store, clock, notifier, test_settings):
    manager = ReservationHoldManager(store, clock, notifier, test_settings)
    yield manager
    manager.close()


class TestCreateHold:
    """Tests for hold creation"""

    @pytest.mark.asyncio
    async def test_concurrent_requests_yield_one_hold(self, store, clock, test_settings):
        """Test two guests racing for the same room: exactly one wins"""
        alice = ReservationHoldManager(store, clock, config=test_settings)
        bob = ReservationHoldManager(store, clock, config=test_settings)

        results = await asyncio.gather(
            alice.create_hold("room-101", STAY, "alice"),
            bob.create_hold("room-101", STAY, "bob"),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, str)]
        losers = [r for r in results if isinstance(r, ResourceUnavailable)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert len(store.active_holds("room-101")) == 1
        alice.close()
        bob.close()

    @pytest.mark.asyncio
    async def test_hold_starts_with_full_ttl(self, manager, notifier):
        """Test a new hold counts down from ten minutes"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")

        assert manager.is_active(hold_id)
        assert manager.time_remaining(hold_id) == 600
        assert manager.formatted_time_remaining(hold_id) == "10:00"
        assert notifier.titles() == ["Room Reserved"]

    @pytest.mark.asyncio
    async def test_missing_owner_is_rejected(self, manager, store, notifier):
        """Test unauthenticated callers cannot hold rooms"""
        with pytest.raises(ValidationError):
            await manager.create_hold("room-101", STAY, "")

        assert "Authentication Required" in notifier.titles()
        assert store.holds == {}

    @pytest.mark.asyncio
    async def test_invalid_period_is_rejected(self, manager):
        """Test end must come after start"""
        with pytest.raises(ValidationError):
            await manager.create_hold("room-101", ("2025-03-05", "2025-03-01"), "alice")

    @pytest.mark.asyncio
    async def test_adjacent_periods_do_not_overlap(self, manager):
        """Test checkout day is free for the next guest"""
        await manager.create_hold("room-101", STAY, "alice")

        second = await manager.create_hold("room-101", ("2025-03-05", "2025-03-07"), "bob")

        assert manager.is_active(second)
        assert await manager.check_availability("room-101", ("2025-03-04", "2025-03-06")) is False
        assert await manager.check_availability("room-101", ("2025-03-07", "2025-03-08")) is True

    @pytest.mark.asyncio
    async def test_unavailable_period_notifies(self, manager, notifier):
        """Test overlap failures reach the user"""
        await manager.create_hold("room-101", STAY, "alice")

        with pytest.raises(ResourceUnavailable) as exc_info:
            await manager.create_hold("room-101", ("2025-03-03", "2025-03-08"), "bob")

        assert exc_info.value.resource_id == "room-101"
        assert notifier.history[-1].title == "Reservation Failed"


class TestCountdown:
    """Tests for hold expiry and the countdown"""

    @pytest.mark.asyncio
    async def test_hold_expires_after_ttl(self, manager, store, clock, notifier):
        """Test an uncommitted hold expires and frees the room"""
        expired = []
        manager.on_expire(expired.append)
        hold_id = await manager.create_hold("room-101", STAY, "alice")

        await clock.advance(599)
        assert manager.is_active(hold_id)
        assert manager.formatted_time_remaining(hold_id) == "0:01"

        await clock.advance(1)

        assert not manager.is_active(hold_id)
        assert manager.get_hold(hold_id).state is HoldState.EXPIRED
        assert [h.id for h in expired] == [hold_id]
        assert notifier.history[-1].title == "Reservation Expired"
        assert clock.pending_count() == 0
        assert await store.check_availability("room-101", manager.get_hold(hold_id).period)

    @pytest.mark.asyncio
    async def test_commit_after_expiry_fails(self, manager, clock):
        """Test an expired hold cannot be committed"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")
        await clock.advance(600)

        with pytest.raises(HoldExpired):
            await manager.commit_hold(hold_id, "pay-1")

    @pytest.mark.asyncio
    async def test_remaining_time_never_increases(self, manager, clock):
        """Test the countdown is monotonic and stops at zero"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")
        readings = [manager.time_remaining(hold_id)]

        for _ in range(620):
            await clock.advance(1)
            readings.append(manager.time_remaining(hold_id))

        assert all(a >= b for a, b in zip(readings, readings[1:]))
        assert readings[-1] == 0

    def test_format_time_remaining(self):
        """Test M:SS rendering"""
        assert format_time_remaining(600) == "10:00"
        assert format_time_remaining(61) == "1:01"
        assert format_time_remaining(9) == "0:09"
        assert format_time_remaining(-5) == "0:00"


class TestReleaseHold:
    """Tests for hold release"""

    @pytest.mark.asyncio
    async def test_release_frees_the_room(self, manager, store):
        """Test releasing lets another guest hold the period"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")

        await manager.release_hold(hold_id)

        assert manager.get_hold(hold_id).state is HoldState.RELEASED
        assert store.holds[hold_id].state is HoldState.RELEASED
        assert await manager.create_hold("room-101", STAY, "bob")

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, manager, store):
        """Test releasing twice is harmless"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")

        await manager.release_hold(hold_id)
        await manager.release_hold(hold_id)
        await manager.release_hold("unknown-hold")

        assert manager.get_hold(hold_id).state is HoldState.RELEASED

    @pytest.mark.asyncio
    async def test_release_failure_leaves_hold_to_ttl(self, manager, store, clock):
        """Test a lost release still frees the room once the TTL passes"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")
        store.fail_next(NetworkError("connection reset"), method="release_hold")

        await manager.release_hold(hold_id)

        assert manager.get_hold(hold_id).state is HoldState.RELEASED
        assert store.holds[hold_id].state is HoldState.ACTIVE
        await clock.advance(600)
        assert await store.check_availability("room-101", store.holds[hold_id].period)


class TestCommitHold:
    """Tests for committing holds into bookings"""

    @pytest.mark.asyncio
    async def test_commit_creates_booking(self, manager, store, clock, notifier):
        """Test a live hold becomes exactly one booking"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")

        booking_id = await manager.commit_hold(hold_id, "pay-1")

        assert store.bookings[booking_id].hold_id == hold_id
        assert store.bookings[booking_id].payment_ref == "pay-1"
        assert manager.get_hold(hold_id).state is HoldState.COMMITTED
        assert manager.get_hold(hold_id).booking_id == booking_id
        assert notifier.history[-1].title == "Booking Confirmed"
        assert clock.pending_count() == 0

    @pytest.mark.asyncio
    async def test_second_commit_is_rejected(self, manager, store):
        """Test a hold commits at most once"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")
        booking_id = await manager.commit_hold(hold_id, "pay-1")

        with pytest.raises(AlreadyCommitted) as exc_info:
            await manager.commit_hold(hold_id, "pay-2")

        assert exc_info.value.booking_id == booking_id
        assert len(store.bookings) == 1

    @pytest.mark.asyncio
    async def test_payment_reference_required(self, manager):
        """Test commit needs a payment reference"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")

        with pytest.raises(ValidationError):
            await manager.commit_hold(hold_id, "")

    @pytest.mark.asyncio
    async def test_lost_commit_reports_partial_success(self, manager, store, notifier):
        """Test an unknown commit outcome surfaces a support reference"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")
        store.fail_next(NetworkError("timeout"), method="atomic_commit")

        with pytest.raises(BookingConfirmationUnknown) as exc_info:
            await manager.commit_hold(hold_id, "pay-1")

        assert exc_info.value.reference_id == f"{hold_id}:pay-1"
        assert exc_info.value.hold_id == hold_id
        notice = notifier.history[-1]
        assert notice.level is NoticeLevel.PARTIAL
        assert notice.reference_id == f"{hold_id}:pay-1"
        assert manager.get_hold(hold_id).state is HoldState.ACTIVE

    @pytest.mark.asyncio
    async def test_commit_of_hold_expired_in_store(self, manager, store, notifier):
        """Test the coordinator's verdict on expiry wins"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")
        store.holds[hold_id].state = HoldState.EXPIRED

        with pytest.raises(HoldExpired):
            await manager.commit_hold(hold_id, "pay-1")

        assert manager.get_hold(hold_id).state is HoldState.EXPIRED
        assert store.bookings == {}

    @pytest.mark.asyncio
    async def test_refused_commit_is_reported(self, manager, store, notifier):
        """Test a fatal commit error reaches the user before propagating"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")
        store.fail_next(PermissionDenied("payment account suspended"), method="atomic_commit")

        with pytest.raises(PermissionDenied):
            await manager.commit_hold(hold_id, "pay-1")

        notice = notifier.history[-1]
        assert notice.title == "Booking Failed"
        assert notice.level is NoticeLevel.ERROR
        assert notice.reference_id == hold_id
        assert manager.get_hold(hold_id).state is HoldState.ACTIVE
        assert store.bookings == {}


class TestResync:
    """Tests for reconnect handling"""

    @pytest.mark.asyncio
    async def test_resync_adopts_authoritative_expiry(self, manager, store, clock):
        """Test local countdown restarts from the coordinator's expiry"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")
        store.holds[hold_id].expires_at = clock.now() + timedelta(seconds=120)

        assert await manager.resync() == 1

        assert manager.time_remaining(hold_id) == 120
        await clock.advance(120)
        assert manager.get_hold(hold_id).state is HoldState.EXPIRED

    @pytest.mark.asyncio
    async def test_resync_picks_up_remote_outcomes(self, manager, store, notifier):
        """Test holds finished elsewhere are closed locally"""
        expired_id = await manager.create_hold("room-101", STAY, "alice")
        committed_id = await manager.create_hold("room-102", STAY, "alice")
        store.holds[expired_id].state = HoldState.EXPIRED
        store.holds[committed_id].state = HoldState.COMMITTED
        store.holds[committed_id].booking_id = "booking-9"

        await manager.resync()

        assert manager.get_hold(expired_id).state is HoldState.EXPIRED
        assert manager.get_hold(committed_id).state is HoldState.COMMITTED
        assert manager.get_hold(committed_id).booking_id == "booking-9"
        assert manager.active_holds() == []

    @pytest.mark.asyncio
    async def test_resync_skips_unreachable_holds(self, manager, store):
        """Test a failed read leaves the hold untouched"""
        hold_id = await manager.create_hold("room-101", STAY, "alice")
        store.fail_next(NetworkError("offline"), method="read_hold")

        assert await manager.resync() == 0
        assert manager.is_active(hold_id)


class TestBlockDates:
    """Tests for maintenance blocks"""

    @pytest.mark.asyncio
    async def test_admin_blocks_dates(self, manager, notifier):
        """Test blocked periods cannot be held"""
        await manager.block_dates("room-101", [STAY], actor_id="admin")

        assert notifier.history[-1].title == "Dates Blocked Successfully"
        with pytest.raises(ResourceUnavailable):
            await manager.create_hold("room-101", ("2025-03-02", "2025-03-03"), "alice")

    @pytest.mark.asyncio
    async def test_non_admin_cannot_block(self, manager, notifier):
        """Test only admins may block dates"""
        with pytest.raises(PermissionDenied):
            await manager.block_dates("room-101", [STAY], actor_id="alice")

        assert notifier.history[-1].title == "Block Failed"

    @pytest.mark.asyncio
    async def test_cannot_block_over_active_hold(self, manager):
        """Test blocks respect existing holds"""
        await manager.create_hold("room-101", STAY, "alice")

        with pytest.raises(ResourceUnavailable):
            await manager.block_dates("room-101", [STAY], actor_id="admin")
