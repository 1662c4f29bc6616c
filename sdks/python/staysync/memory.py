"""In-process reference store.

``MemoryStore`` implements both ``StoreGateway`` and ``TransactionCoordinator``
on top of plain dictionaries. Each public coroutine runs to completion
without awaiting, which makes every call atomic on the event loop, the same
guarantee a single-document transaction gives against a real backend. Hold
TTLs are enforced against the injected clock, so a ``VirtualClock`` drives
expiry in tests.
"""

import copy
import logging
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set
from uuid import uuid4

from .clock import Clock
from .exceptions import (
    AlreadyCommitted,
    HoldExpired,
    NetworkError,
    PermissionDenied,
    RecordExists,
    RecordNotFound,
    ResourceUnavailable,
    StaySyncError,
    ValidationError,
    VersionConflict,
)
from .gateway import StoreGateway, Subscription, TransactionCoordinator
from .models import (
    Booking,
    ChangeEvent,
    ChangeType,
    HoldState,
    Period,
    Record,
    ReservationHold,
)

logger = logging.getLogger(__name__)


class MemoryStore(StoreGateway, TransactionCoordinator):
    """Dictionary-backed store with a change feed and fault injection."""

    def __init__(self, clock: Clock, admins: Optional[Iterable[str]] = None):
        self.clock = clock
        self.admins: Optional[Set[str]] = set(admins) if admins is not None else None
        self._records: Dict[str, Dict[str, Record]] = {}
        self._subscriptions: List[Subscription] = []
        self.holds: Dict[str, ReservationHold] = {}
        self.bookings: Dict[str, Booking] = {}
        self.blocks: Dict[str, List[Period]] = {}
        self._offline = False
        self._faults: List[tuple] = []
        self.calls: List[str] = []

    # -- fault injection -------------------------------------------------

    def go_offline(self) -> None:
        self._offline = True

    def go_online(self) -> None:
        self._offline = False

    @property
    def online(self) -> bool:
        return not self._offline

    def fail_next(self, exc: StaySyncError, method: Optional[str] = None, times: int = 1) -> None:
        """Make the next ``times`` calls (optionally of one method) raise ``exc``."""
        for _ in range(times):
            self._faults.append((method, exc))

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        if self._offline:
            raise NetworkError(f"Store unreachable during {method}")
        for index, (target, exc) in enumerate(self._faults):
            if target is None or target == method:
                del self._faults[index]
                raise exc

    # -- records ---------------------------------------------------------

    def _collection(self, collection: str) -> Dict[str, Record]:
        return self._records.setdefault(collection, {})

    def _publish(self, change_type: ChangeType, record: Record) -> None:
        for subscription in list(self._subscriptions):
            if subscription.collection == record.collection:
                subscription.push(ChangeEvent(change_type, copy.deepcopy(record)))

    async def create(
        self, collection: str, key: str, data: Dict[str, Any], origin: Optional[str] = None
    ) -> Record:
        self._enter("create")
        records = self._collection(collection)
        if key in records:
            raise RecordExists(f"Record '{collection}/{key}' already exists")
        record = Record(collection, key, copy.deepcopy(data), 1, self.clock.now(), origin)
        records[key] = record
        self._publish(ChangeType.ADDED, record)
        return copy.deepcopy(record)

    async def read(self, collection: str, key: str) -> Optional[Record]:
        self._enter("read")
        record = self._collection(collection).get(key)
        return copy.deepcopy(record) if record else None

    async def update(
        self,
        collection: str,
        key: str,
        data: Dict[str, Any],
        expected_version: Optional[int] = None,
        origin: Optional[str] = None,
    ) -> Record:
        self._enter("update")
        records = self._collection(collection)
        current = records.get(key)
        if current is None:
            raise RecordNotFound(f"Record '{collection}/{key}' not found")
        if expected_version is not None and current.version != expected_version:
            raise VersionConflict(
                f"Record '{collection}/{key}' is at version {current.version}, "
                f"expected {expected_version}",
                expected=expected_version,
                actual=current.version,
            )
        record = Record(
            collection, key, copy.deepcopy(data), current.version + 1, self.clock.now(), origin
        )
        records[key] = record
        self._publish(ChangeType.MODIFIED, record)
        return copy.deepcopy(record)

    async def delete(
        self,
        collection: str,
        key: str,
        expected_version: Optional[int] = None,
        origin: Optional[str] = None,
    ) -> None:
        self._enter("delete")
        records = self._collection(collection)
        current = records.get(key)
        if current is None:
            return
        if expected_version is not None and current.version != expected_version:
            raise VersionConflict(
                f"Record '{collection}/{key}' is at version {current.version}, "
                f"expected {expected_version}",
                expected=expected_version,
                actual=current.version,
            )
        del records[key]
        removed = replace(current, updated_at=self.clock.now(), origin=origin)
        self._publish(ChangeType.REMOVED, removed)

    def subscribe(self, collection: str, limit: Optional[int] = None) -> Subscription:
        subscription = Subscription(collection, limit, on_cancel=self._subscriptions.remove)
        recent = sorted(
            self._collection(collection).values(), key=lambda r: r.updated_at, reverse=True
        )
        if limit is not None:
            recent = recent[:limit]
        for record in reversed(recent):
            subscription.push(ChangeEvent(ChangeType.ADDED, copy.deepcopy(record)))
        self._subscriptions.append(subscription)
        return subscription

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    # -- holds and bookings ----------------------------------------------

    def _expire_holds(self) -> None:
        now = self.clock.now()
        for hold in self.holds.values():
            if hold.state is HoldState.ACTIVE and hold.expires_at <= now:
                hold.state = HoldState.EXPIRED
                logger.info("Hold %s expired by TTL", hold.id)

    def _conflicts(self, resource_id: str, period: Period) -> Optional[str]:
        for hold in self.holds.values():
            if (
                hold.resource_id == resource_id
                and hold.state is HoldState.ACTIVE
                and hold.period.overlaps(period)
            ):
                return f"held until {hold.expires_at.isoformat()}"
        for booking in self.bookings.values():
            if booking.resource_id == resource_id and booking.period.overlaps(period):
                return f"booked ({booking.id})"
        for blocked in self.blocks.get(resource_id, []):
            if blocked.overlaps(period):
                return f"blocked for maintenance ({blocked})"
        return None

    async def create_hold(
        self, resource_id: str, period: Period, owner_id: str, ttl_seconds: float
    ) -> ReservationHold:
        self._enter("create_hold")
        if not owner_id:
            raise ValidationError("Hold owner must be identified")
        if ttl_seconds <= 0:
            raise ValidationError("Hold TTL must be positive")
        self._expire_holds()
        reason = self._conflicts(resource_id, period)
        if reason:
            raise ResourceUnavailable(
                f"Resource '{resource_id}' is unavailable for {period}: {reason}",
                resource_id=resource_id,
            )
        now = self.clock.now()
        hold = ReservationHold(
            id=uuid4().hex,
            resource_id=resource_id,
            period=period,
            owner_id=owner_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        self.holds[hold.id] = hold
        return replace(hold)

    async def read_hold(self, hold_id: str) -> Optional[ReservationHold]:
        self._enter("read_hold")
        self._expire_holds()
        hold = self.holds.get(hold_id)
        return replace(hold) if hold else None

    async def release_hold(self, hold_id: str) -> None:
        self._enter("release_hold")
        self._expire_holds()
        hold = self.holds.get(hold_id)
        if hold is not None and hold.state is HoldState.ACTIVE:
            hold.state = HoldState.RELEASED

    async def atomic_commit(self, hold_id: str, payment_ref: str) -> str:
        self._enter("atomic_commit")
        if not payment_ref:
            raise ValidationError("Payment reference is required")
        self._expire_holds()
        hold = self.holds.get(hold_id)
        if hold is None:
            raise HoldExpired(f"Hold '{hold_id}' does not exist", hold_id=hold_id)
        if hold.state is HoldState.COMMITTED:
            raise AlreadyCommitted(
                f"Hold '{hold_id}' is already committed",
                hold_id=hold_id,
                booking_id=hold.booking_id,
            )
        if hold.state is not HoldState.ACTIVE:
            raise HoldExpired(f"Hold '{hold_id}' is {hold.state.value}", hold_id=hold_id)
        booking = Booking(
            id=uuid4().hex,
            resource_id=hold.resource_id,
            period=hold.period,
            owner_id=hold.owner_id,
            hold_id=hold.id,
            payment_ref=payment_ref,
            created_at=self.clock.now(),
        )
        self.bookings[booking.id] = booking
        hold.state = HoldState.COMMITTED
        hold.booking_id = booking.id
        return booking.id

    async def check_availability(self, resource_id: str, period: Period) -> bool:
        self._enter("check_availability")
        self._expire_holds()
        return self._conflicts(resource_id, period) is None

    async def block_dates(
        self, resource_id: str, periods: Sequence[Period], actor_id: Optional[str] = None
    ) -> None:
        self._enter("block_dates")
        if self.admins is not None and actor_id not in self.admins:
            raise PermissionDenied(f"'{actor_id}' may not block dates")
        self._expire_holds()
        for period in periods:
            reason = self._conflicts(resource_id, period)
            if reason:
                raise ResourceUnavailable(
                    f"Cannot block {period} on '{resource_id}': {reason}",
                    resource_id=resource_id,
                )
        self.blocks.setdefault(resource_id, []).extend(periods)

    def active_holds(self, resource_id: str) -> List[ReservationHold]:
        self._expire_holds()
        return [
            h for h in self.holds.values()
            if h.resource_id == resource_id and h.state is HoldState.ACTIVE
        ]
