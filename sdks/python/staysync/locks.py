"""Edit lock manager.

One generic lock abstraction serves every lockable record type; the resource
id is turned into a store key by ``key_fn``. Locks are records in the store's
``edit_locks`` collection and every write is conditioned on the version that
was read, so two editors racing for the same record cannot both win.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Generic, List, Optional, Set, TypeVar

from .clock import Clock, TimerHandle
from .config import Settings, settings as default_settings
from .exceptions import (
    NetworkError,
    RecordExists,
    RecordNotFound,
    StaySyncError,
    ValidationError,
    VersionConflict,
)
from .gateway import StoreGateway, Subscription
from .models import ChangeEvent, ChangeType, EditLock, LockState
from .notifications import Notifier

logger = logging.getLogger(__name__)

K = TypeVar("K")

LOCK_COLLECTION = "edit_locks"


@dataclass
class _HeldLock:
    resource_id: object
    owner_id: str
    duration_minutes: int
    version: int
    expires_at: datetime
    renewal: Optional[TimerHandle] = None


class EditLockManager(Generic[K]):
    """Exclusive, renewable, TTL-bound editing locks."""

    SOURCE = "edit-lock"

    def __init__(
        self,
        store: StoreGateway,
        clock: Clock,
        notifier: Optional[Notifier] = None,
        config: Optional[Settings] = None,
        key_fn: Callable[[K], str] = str,
        collection: str = LOCK_COLLECTION,
    ):
        self.store = store
        self.clock = clock
        self.notifier = notifier or Notifier()
        self.config = config or default_settings
        self.key_fn = key_fn
        self.collection = collection
        self._held: Dict[str, _HeldLock] = {}
        self._conflicts: Set[str] = set()
        self._lost_listeners: List[Callable[[K, str], None]] = []
        self._subscription: Optional[Subscription] = None

    def on_lost(self, listener: Callable[[K, str], None]) -> None:
        """Register ``listener(resource_id, reason)`` for lost locks."""
        self._lost_listeners.append(listener)

    def _validate_duration(self, duration_minutes: int) -> None:
        if duration_minutes not in self.config.lock_durations:
            raise ValidationError(
                f"Lock duration must be one of {self.config.lock_durations} minutes"
            )

    def _renew_delay(self, duration_minutes: int) -> float:
        lead = self.config.lock_renew_lead_minutes
        return max(duration_minutes - lead, duration_minutes / 2) * 60

    async def _read(self, key: str):
        record = await self.store.read(self.collection, key)
        lock = EditLock.from_dict(record.data) if record else None
        return record, lock

    async def acquire(
        self,
        resource_id: K,
        owner_id: str,
        duration_minutes: Optional[int] = None,
        owner_label: Optional[str] = None,
    ) -> bool:
        """Take the lock; returns False when someone else holds it."""
        if not owner_id:
            raise ValidationError("Caller must be identified to lock a record")
        duration = duration_minutes or self.config.default_lock_minutes
        self._validate_duration(duration)
        key = self.key_fn(resource_id)
        now = self.clock.now()

        try:
            record, current = await self._read(key)
            if current is not None and current.is_held(now) and current.owner_id != owner_id:
                logger.info("Lock on %s refused for %s, held by %s", key, owner_id, current.owner_id)
                self.notifier.warning(
                    "Room Locked",
                    f"This record is being edited by {current.owner_label or current.owner_id}",
                    self.SOURCE,
                )
                return False

            lock = EditLock(
                resource_id=key,
                owner_id=owner_id,
                owner_label=owner_label,
                acquired_at=now,
                expires_at=now + timedelta(minutes=duration),
                state=LockState.HELD,
                duration_minutes=duration,
                previous_owner=current.previous_owner if current else None,
            )
            if record is None:
                saved = await self.store.create(self.collection, key, lock.to_dict())
            else:
                saved = await self.store.update(
                    self.collection, key, lock.to_dict(), expected_version=record.version
                )
        except (RecordExists, VersionConflict):
            logger.info("Lost the race for lock on %s", key)
            self.notifier.warning(
                "Lock Failed", "Another user locked this record first.", self.SOURCE
            )
            return False
        except NetworkError as e:
            logger.error("Failed to lock %s: %s", key, e)
            self.notifier.error(
                "Lock Failed", "Could not lock the record for editing.", self.SOURCE
            )
            return False

        self._track(resource_id, key, owner_id, duration, saved.version, lock.expires_at)
        self._conflicts.discard(key)
        logger.info("Locked %s for %s (%d min)", key, owner_id, duration)
        return True

    async def renew(self, resource_id: K, owner_id: Optional[str] = None) -> bool:
        """Push expiry out by the original duration; False if the lock is lost."""
        key = self.key_fn(resource_id)
        held = self._held.get(key)
        if held is None or (owner_id is not None and held.owner_id != owner_id):
            return False
        self._cancel_renewal(held)

        now = self.clock.now()
        try:
            record, current = await self._read(key)
            if record is None:
                raise RecordNotFound(f"Lock record '{key}' is gone")
            if not current.is_held(now) or current.owner_id != held.owner_id:
                self._lose(key, "taken over" if current.owner_id else "released")
                return False
            current.expires_at = now + timedelta(minutes=held.duration_minutes)
            current.renewals += 1
            saved = await self.store.update(
                self.collection, key, current.to_dict(), expected_version=record.version
            )
        except StaySyncError as e:
            logger.error("Failed to renew lock on %s: %s", key, e)
            self._lose(key, str(e))
            return False

        held.version = saved.version
        held.expires_at = current.expires_at
        self._schedule_renewal(key, held)
        logger.info("Renewed lock on %s until %s", key, current.expires_at.isoformat())
        return True

    async def release(self, resource_id: K, owner_id: str, force: bool = False) -> None:
        """Free the lock if ``owner_id`` holds it (or unconditionally with ``force``)."""
        key = self.key_fn(resource_id)
        held = self._held.get(key)
        if held is not None and (force or held.owner_id == owner_id):
            self._cancel_renewal(held)
            del self._held[key]

        try:
            record, current = await self._read(key)
            if current is None or current.state is LockState.FREE:
                return
            if not force and current.owner_id != owner_id:
                logger.debug("Release of %s by %s ignored, held by %s", key, owner_id, current.owner_id)
                return
            current.state = LockState.FREE
            current.released_by = owner_id
            current.owner_id = None
            current.owner_label = None
            current.expires_at = None
            await self.store.update(
                self.collection, key, current.to_dict(), expected_version=record.version
            )
        except VersionConflict:
            logger.warning("Lock on %s changed while releasing, leaving it as is", key)
            return
        except NetworkError as e:
            logger.error("Failed to release lock on %s, TTL will clear it: %s", key, e)
            return
        logger.info("Released lock on %s", key)

    async def force_takeover(
        self,
        resource_id: K,
        new_owner_id: str,
        owner_label: Optional[str] = None,
        duration_minutes: Optional[int] = None,
    ) -> EditLock:
        """Overwrite whoever holds the lock; the previous holder is recorded."""
        if not new_owner_id:
            raise ValidationError("Caller must be identified to take over a lock")
        key = self.key_fn(resource_id)
        now = self.clock.now()

        record, current = await self._read(key)
        duration = duration_minutes or (
            current.duration_minutes if current else self.config.default_lock_minutes
        )
        self._validate_duration(duration)
        lock = EditLock(
            resource_id=key,
            owner_id=new_owner_id,
            owner_label=owner_label,
            acquired_at=now,
            expires_at=now + timedelta(minutes=duration),
            state=LockState.TAKEN_OVER,
            duration_minutes=duration,
            previous_owner=current.owner_id if current else None,
        )
        if record is None:
            try:
                saved = await self.store.create(self.collection, key, lock.to_dict())
            except RecordExists:
                saved = await self.store.update(self.collection, key, lock.to_dict())
        else:
            saved = await self.store.update(self.collection, key, lock.to_dict())

        held = self._held.get(key)
        if held is not None and held.owner_id != new_owner_id:
            self._lose(key, f"taken over by {new_owner_id}")
        self._track(resource_id, key, new_owner_id, duration, saved.version, lock.expires_at)
        self._conflicts.discard(key)
        logger.warning("Lock on %s taken over by %s from %s", key, new_owner_id, lock.previous_owner)
        self.notifier.info(
            "Lock Taken Over",
            "You have taken over editing rights for this record",
            self.SOURCE,
        )
        return lock

    async def can_edit(self, resource_id: K, owner_id: str) -> bool:
        """True when the lock is free or held by ``owner_id``."""
        key = self.key_fn(resource_id)
        try:
            _, current = await self._read(key)
        except NetworkError as e:
            logger.warning("Lock status for %s unavailable, using local view: %s", key, e)
            held = self._held.get(key)
            return held is None or held.owner_id == owner_id

        if current is None or not current.is_held(self.clock.now()):
            return True
        held = self._held.get(key)
        if held is not None and held.owner_id != current.owner_id:
            self._lose(key, f"taken over by {current.owner_id}")
        return current.owner_id == owner_id

    async def lock_status(self, resource_id: K) -> EditLock:
        """Current lock with passive expiry applied."""
        key = self.key_fn(resource_id)
        _, current = await self._read(key)
        if current is None:
            return EditLock(resource_id=key, owner_id=None, owner_label=None,
                            acquired_at=None, expires_at=None)
        current.state = current.effective_state(self.clock.now())
        return current

    def holds(self, resource_id: K, owner_id: str) -> bool:
        """Local view: this manager holds a live lock for ``owner_id``."""
        held = self._held.get(self.key_fn(resource_id))
        return (
            held is not None
            and held.owner_id == owner_id
            and held.expires_at > self.clock.now()
        )

    def has_conflict(self, resource_id: K) -> bool:
        """Set when a lock was lost; unsaved work should be saved now."""
        return self.key_fn(resource_id) in self._conflicts

    def clear_conflict(self, resource_id: K) -> None:
        self._conflicts.discard(self.key_fn(resource_id))

    # -- change feed -----------------------------------------------------

    def watch(self) -> Subscription:
        """Follow lock changes so takeovers are noticed without polling."""
        if self._subscription is None or self._subscription.cancelled:
            self._subscription = self.store.subscribe(self.collection)
        return self._subscription

    def pump(self) -> int:
        """Apply lock changes delivered so far; returns how many were seen."""
        if self._subscription is None:
            return 0
        events = self._subscription.drain()
        for event in events:
            self.handle_change(event)
        return len(events)

    def handle_change(self, event: ChangeEvent) -> None:
        key = event.record.key
        held = self._held.get(key)
        if held is None:
            return
        if event.type is ChangeType.REMOVED:
            self._lose(key, "lock record removed")
            return
        lock = EditLock.from_dict(event.record.data)
        if lock.owner_id != held.owner_id:
            self._lose(key, f"taken over by {lock.owner_id}" if lock.owner_id else "released")

    def close(self) -> None:
        """Cancel renewals and the lock feed. Store-side locks expire by TTL."""
        for held in self._held.values():
            self._cancel_renewal(held)
        self._held.clear()
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    # -- internals -------------------------------------------------------

    def _track(self, resource_id, key, owner_id, duration, version, expires_at) -> None:
        previous = self._held.get(key)
        if previous is not None:
            self._cancel_renewal(previous)
        held = _HeldLock(resource_id, owner_id, duration, version, expires_at)
        self._held[key] = held
        self._schedule_renewal(key, held)

    def _schedule_renewal(self, key: str, held: _HeldLock) -> None:
        held.renewal = self.clock.call_later(
            self._renew_delay(held.duration_minutes), self._renew_due, key
        )

    def _cancel_renewal(self, held: _HeldLock) -> None:
        if held.renewal is not None:
            held.renewal.cancel()
            held.renewal = None

    async def _renew_due(self, key: str) -> None:
        held = self._held.get(key)
        if held is not None:
            held.renewal = None
            await self.renew(held.resource_id, held.owner_id)

    def _lose(self, key: str, reason: str) -> None:
        held = self._held.pop(key, None)
        if held is None:
            return
        self._cancel_renewal(held)
        self._conflicts.add(key)
        logger.warning("Lock on %s lost by %s: %s", key, held.owner_id, reason)
        self.notifier.error(
            "Lock Lost",
            "Your editing lock has expired or was taken over. Save your changes immediately.",
            self.SOURCE,
            reference_id=key,
        )
        for listener in list(self._lost_listeners):
            listener(held.resource_id, reason)


class AutoSaver:
    """Periodically saves while the owner holds the edit lock."""

    def __init__(
        self,
        locks: EditLockManager,
        resource_id,
        owner_id: str,
        save: Callable[[], Awaitable[None]],
        interval_seconds: Optional[float] = None,
    ):
        self.locks = locks
        self.resource_id = resource_id
        self.owner_id = owner_id
        self.save = save
        self.interval = interval_seconds or locks.config.autosave_interval_seconds
        self.enabled = True
        self.is_saving = False
        self.last_saved_at: Optional[datetime] = None
        self.failures = 0
        self._timer: Optional[TimerHandle] = None

    def start(self) -> None:
        self.stop()
        self._timer = self.locks.clock.call_every(self.interval, self._tick)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def running(self) -> bool:
        return self._timer is not None

    def toggle(self) -> bool:
        self.enabled = not self.enabled
        if not self.enabled:
            self.stop()
        return self.enabled

    async def _tick(self) -> None:
        if not self.enabled or self.is_saving:
            return
        if not self.locks.holds(self.resource_id, self.owner_id):
            return
        await self._run_save("Auto-save")

    async def save_now(self) -> bool:
        """Save immediately; False when the lock is not ours."""
        if not self.locks.holds(self.resource_id, self.owner_id):
            return False
        await self._run_save("Manual save", reraise=True)
        return True

    async def _run_save(self, label: str, reraise: bool = False) -> None:
        self.is_saving = True
        try:
            await self.save()
        except Exception as e:
            self.failures += 1
            logger.error("%s of %s failed: %s", label, self.resource_id, e)
            self.locks.notifier.error(f"{label} Failed", str(e), AutoSaver.__name__)
            if reraise:
                raise
            return
        finally:
            self.is_saving = False
        self.last_saved_at = self.locks.clock.now()
        logger.info("%s of %s completed", label, self.resource_id)
