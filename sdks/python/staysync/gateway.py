"""Contracts for the authoritative store.

The managers in this package never enforce exclusivity themselves; they rely
on the atomic operations declared here. ``staysync.memory.MemoryStore`` and
``staysync.client.HttpGateway`` implement both contracts.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Sequence

from .models import ChangeEvent, Period, Record, ReservationHold


class Subscription:
    """Cancelable stream of change events for one collection."""

    _CLOSED = object()

    def __init__(
        self,
        collection: str,
        limit: Optional[int] = None,
        on_cancel: Optional[Callable[["Subscription"], None]] = None,
    ):
        self.collection = collection
        self.limit = limit
        self._on_cancel = on_cancel
        self._queue: asyncio.Queue = asyncio.Queue()
        self._cancelled = False
        self.error: Optional[Exception] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def push(self, event: ChangeEvent) -> None:
        if not self._cancelled:
            self._queue.put_nowait(event)

    def drain(self) -> List[ChangeEvent]:
        """Return every event delivered so far without waiting."""
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return events
            if item is not self._CLOSED:
                events.append(item)

    async def get(self) -> Optional[ChangeEvent]:
        """Wait for the next event; ``None`` once cancelled."""
        if self._cancelled and self._queue.empty():
            return None
        item = await self._queue.get()
        return None if item is self._CLOSED else item

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._queue.put_nowait(self._CLOSED)
        if self._on_cancel is not None:
            self._on_cancel(self)

    def fail(self, error: Exception) -> None:
        """End the stream because the feed broke; ``error`` says why."""
        self.error = error
        self.cancel()

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class StoreGateway(ABC):
    """Keyed, versioned records with atomic single-document writes."""

    @abstractmethod
    async def create(
        self, collection: str, key: str, data: Dict[str, Any], origin: Optional[str] = None
    ) -> Record:
        """Create a record; raises ``RecordExists`` if the key is taken."""

    @abstractmethod
    async def read(self, collection: str, key: str) -> Optional[Record]:
        """Return the record or ``None``."""

    @abstractmethod
    async def update(
        self,
        collection: str,
        key: str,
        data: Dict[str, Any],
        expected_version: Optional[int] = None,
        origin: Optional[str] = None,
    ) -> Record:
        """Replace a record's data.

        Raises ``RecordNotFound`` when missing and ``VersionConflict`` when
        ``expected_version`` is given and differs from the stored version.
        """

    @abstractmethod
    async def delete(
        self,
        collection: str,
        key: str,
        expected_version: Optional[int] = None,
        origin: Optional[str] = None,
    ) -> None:
        """Delete a record; deleting a missing record is a no-op."""

    @abstractmethod
    def subscribe(self, collection: str, limit: Optional[int] = None) -> Subscription:
        """Stream changes of the ``limit`` most recently updated records."""


class TransactionCoordinator(ABC):
    """All-or-nothing operations over holds and bookings."""

    @abstractmethod
    async def create_hold(
        self, resource_id: str, period: Period, owner_id: str, ttl_seconds: float
    ) -> ReservationHold:
        """Atomically check overlap and create an active hold.

        Raises ``ResourceUnavailable`` on overlap with an active hold, a
        confirmed booking or a blocked period.
        """

    @abstractmethod
    async def read_hold(self, hold_id: str) -> Optional[ReservationHold]:
        """Authoritative hold state, expiry already applied."""

    @abstractmethod
    async def release_hold(self, hold_id: str) -> None:
        """Release an active hold; a no-op for any other state."""

    @abstractmethod
    async def atomic_commit(self, hold_id: str, payment_ref: str) -> str:
        """Verify the hold, create the booking and mark the hold committed.

        Returns the booking id. Raises ``HoldExpired`` or ``AlreadyCommitted``.
        """

    @abstractmethod
    async def check_availability(self, resource_id: str, period: Period) -> bool:
        pass

    @abstractmethod
    async def block_dates(
        self, resource_id: str, periods: Sequence[Period], actor_id: Optional[str] = None
    ) -> None:
        """Block periods for maintenance; admin only."""
