"""Reservation hold manager.

Holds give a guest exclusive use of a resource/period pair while checkout
completes. Exclusivity comes from the coordinator's atomic create; the local
countdown only drives the display and the expiry notice. After a reconnect
``resync`` replaces local expiry with the coordinator's authoritative value.
"""

import logging
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Union

from .clock import Clock, TimerHandle
from .config import Settings, settings as default_settings
from .exceptions import (
    AlreadyCommitted,
    BookingConfirmationUnknown,
    HoldExpired,
    NetworkError,
    ResourceUnavailable,
    StaySyncError,
    ValidationError,
)
from .gateway import TransactionCoordinator
from .models import HoldState, Period, ReservationHold
from .notifications import Notifier

logger = logging.getLogger(__name__)

PeriodLike = Union[Period, Sequence]


def format_time_remaining(seconds: int) -> str:
    """Render seconds as ``M:SS``."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60}:{seconds % 60:02d}"


def _as_period(period: PeriodLike) -> Period:
    if isinstance(period, Period):
        return period
    try:
        start, end = period
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid period: {period!r}")
    return Period.parse(start, end)


class ReservationHoldManager:
    """Creates, tracks, commits and releases reservation holds."""

    SOURCE = "reservation"

    def __init__(
        self,
        coordinator: TransactionCoordinator,
        clock: Clock,
        notifier: Optional[Notifier] = None,
        config: Optional[Settings] = None,
    ):
        self.coordinator = coordinator
        self.clock = clock
        self.notifier = notifier or Notifier()
        self.config = config or default_settings
        self._holds: Dict[str, ReservationHold] = {}
        self._countdowns: Dict[str, TimerHandle] = {}
        self._expiry_listeners: List[Callable[[ReservationHold], None]] = []

    @property
    def ttl_seconds(self) -> float:
        return self.config.hold_ttl_minutes * 60

    def on_expire(self, listener: Callable[[ReservationHold], None]) -> None:
        self._expiry_listeners.append(listener)

    async def create_hold(self, resource_id: str, period: PeriodLike, owner_id: str) -> str:
        """Hold ``resource_id`` for ``period`` on behalf of ``owner_id``.

        Returns the hold id. Raises ``ValidationError`` for bad input and
        ``ResourceUnavailable`` when the period is taken.
        """
        if not owner_id:
            self.notifier.warning(
                "Authentication Required", "Please sign in to make a reservation", self.SOURCE
            )
            raise ValidationError("Caller must be identified to create a hold")
        if not resource_id:
            raise ValidationError("Resource id is required")
        period = _as_period(period)

        try:
            hold = await self.coordinator.create_hold(
                resource_id, period, owner_id, self.ttl_seconds
            )
        except ResourceUnavailable as e:
            self.notifier.warning("Reservation Failed", str(e), self.SOURCE)
            raise

        self._holds[hold.id] = hold
        self._start_countdown(hold)
        logger.info(
            "Reservation hold %s created for %s %s by %s", hold.id, resource_id, period, owner_id
        )
        self.notifier.info(
            "Room Reserved",
            f"You have {self.config.hold_ttl_minutes} minutes to complete your booking",
            self.SOURCE,
            reference_id=hold.id,
        )
        return hold.id

    def get_hold(self, hold_id: str) -> Optional[ReservationHold]:
        hold = self._holds.get(hold_id)
        return replace(hold) if hold else None

    def is_active(self, hold_id: str) -> bool:
        hold = self._holds.get(hold_id)
        return hold is not None and hold.is_active(self.clock.now())

    def time_remaining(self, hold_id: str) -> int:
        """Seconds until the hold expires; 0 for unknown or finished holds."""
        hold = self._holds.get(hold_id)
        return hold.time_remaining(self.clock.now()) if hold else 0

    def formatted_time_remaining(self, hold_id: str) -> str:
        return format_time_remaining(self.time_remaining(hold_id))

    def active_holds(self) -> List[ReservationHold]:
        now = self.clock.now()
        return [replace(h) for h in self._holds.values() if h.is_active(now)]

    async def release_hold(self, hold_id: str) -> None:
        """Release a hold. Releasing a finished or unknown hold is a no-op."""
        hold = self._holds.get(hold_id)
        if hold is not None and hold.state.is_terminal:
            logger.debug("Hold %s already %s, nothing to release", hold_id, hold.state.value)
            return

        self._stop_countdown(hold_id)
        try:
            await self.coordinator.release_hold(hold_id)
        except NetworkError as e:
            # the store's TTL reclaims the hold
            logger.error("Failed to release hold %s, leaving it to expire: %s", hold_id, e)

        if hold is not None:
            hold.state = HoldState.RELEASED
        logger.info("Reservation hold %s released", hold_id)

    async def commit_hold(self, hold_id: str, payment_ref: str) -> str:
        """Turn an active hold into a booking; returns the booking id."""
        if not payment_ref:
            raise ValidationError("Payment reference is required to commit a hold")
        hold = self._holds.get(hold_id)
        if hold is not None and hold.state is HoldState.COMMITTED:
            raise AlreadyCommitted(
                f"Hold '{hold_id}' is already committed", hold_id=hold_id, booking_id=hold.booking_id
            )
        if hold is not None and hold.state.is_terminal:
            raise HoldExpired(f"Hold '{hold_id}' is {hold.state.value}", hold_id=hold_id)

        try:
            booking_id = await self.coordinator.atomic_commit(hold_id, payment_ref)
        except NetworkError as e:
            reference_id = f"{hold_id}:{payment_ref}"
            logger.error("Commit of hold %s lost in transit: %s", hold_id, e)
            self.notifier.partial(
                "Booking Confirmation Pending",
                "Your payment may have been processed but the booking could not be "
                f"confirmed. Please contact support with reference {reference_id}.",
                self.SOURCE,
                reference_id=reference_id,
            )
            raise BookingConfirmationUnknown(
                f"Booking outcome for hold '{hold_id}' is unknown",
                reference_id=reference_id,
                hold_id=hold_id,
            ) from e
        except HoldExpired:
            self._finish(hold_id, HoldState.EXPIRED)
            self.notifier.error(
                "Reservation Expired",
                "Your reservation expired before the booking was confirmed.",
                self.SOURCE,
                reference_id=hold_id,
            )
            raise
        except AlreadyCommitted as e:
            self._finish(hold_id, HoldState.COMMITTED, booking_id=e.booking_id)
            raise
        except StaySyncError as e:
            logger.error("Commit of hold %s failed: %s", hold_id, e)
            self.notifier.error("Booking Failed", str(e), self.SOURCE, reference_id=hold_id)
            raise

        self._finish(hold_id, HoldState.COMMITTED, booking_id=booking_id)
        logger.info("Hold %s committed as booking %s", hold_id, booking_id)
        self.notifier.info(
            "Booking Confirmed", f"Booking {booking_id} confirmed", self.SOURCE, reference_id=booking_id
        )
        return booking_id

    async def resync(self) -> int:
        """Refetch authoritative state for every tracked active hold.

        Called on reconnect or when the page becomes visible again. Local
        elapsed time is discarded: the countdown restarts from the
        coordinator's ``expires_at``. Returns the number of holds refreshed.
        """
        refreshed = 0
        for hold_id, hold in list(self._holds.items()):
            if hold.state.is_terminal:
                continue
            try:
                authoritative = await self.coordinator.read_hold(hold_id)
            except NetworkError as e:
                logger.warning("Could not resync hold %s: %s", hold_id, e)
                continue
            refreshed += 1
            if authoritative is None:
                self._expire(hold_id)
                continue
            hold.expires_at = authoritative.expires_at
            if authoritative.state is HoldState.ACTIVE:
                if hold.is_active(self.clock.now()):
                    self._start_countdown(hold)
                else:
                    self._expire(hold_id)
            elif authoritative.state is HoldState.EXPIRED:
                self._expire(hold_id)
            else:
                self._finish(hold_id, authoritative.state, booking_id=authoritative.booking_id)
        logger.info("Resynced %d reservation hold(s)", refreshed)
        return refreshed

    async def check_availability(self, resource_id: str, period: PeriodLike) -> bool:
        return await self.coordinator.check_availability(resource_id, _as_period(period))

    async def block_dates(
        self, resource_id: str, periods: Sequence[PeriodLike], actor_id: str
    ) -> None:
        """Block periods for maintenance (admin only)."""
        if not actor_id:
            raise ValidationError("Caller must be identified to block dates")
        blocked = [_as_period(p) for p in periods]
        if not blocked:
            raise ValidationError("At least one period is required")
        try:
            await self.coordinator.block_dates(resource_id, blocked, actor_id=actor_id)
        except StaySyncError as e:
            self.notifier.error("Block Failed", str(e), self.SOURCE)
            raise
        self.notifier.info(
            "Dates Blocked Successfully",
            f"{len(blocked)} period(s) blocked for maintenance",
            self.SOURCE,
        )

    def close(self) -> None:
        """Cancel every countdown."""
        for hold_id in list(self._countdowns):
            self._stop_countdown(hold_id)

    # -- countdown -------------------------------------------------------

    def _start_countdown(self, hold: ReservationHold) -> None:
        self._stop_countdown(hold.id)
        self._countdowns[hold.id] = self.clock.call_every(
            self.config.hold_tick_seconds, self._tick, hold.id
        )

    def _stop_countdown(self, hold_id: str) -> None:
        handle = self._countdowns.pop(hold_id, None)
        if handle is not None:
            handle.cancel()

    def _tick(self, hold_id: str) -> None:
        hold = self._holds.get(hold_id)
        if hold is None or hold.state.is_terminal:
            self._stop_countdown(hold_id)
            return
        if hold.time_remaining(self.clock.now()) <= 0:
            self._expire(hold_id)

    def _expire(self, hold_id: str) -> None:
        hold = self._holds.get(hold_id)
        if hold is None or hold.state.is_terminal:
            return
        self._finish(hold_id, HoldState.EXPIRED)
        logger.warning("Reservation hold %s expired", hold_id)
        self.notifier.error(
            "Reservation Expired",
            f"Your {self.config.hold_ttl_minutes}-minute reservation has expired. Please try again.",
            self.SOURCE,
            reference_id=hold_id,
        )
        for listener in list(self._expiry_listeners):
            listener(replace(hold))

    def _finish(self, hold_id: str, state: HoldState, booking_id: Optional[str] = None) -> None:
        self._stop_countdown(hold_id)
        hold = self._holds.get(hold_id)
        if hold is not None:
            hold.state = state
            if booking_id is not None:
                hold.booking_id = booking_id
