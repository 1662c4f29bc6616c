"""Change reconciler and presence roster.

The reconciler follows the store's change feed for the most recently updated
records of one collection, turns every change into a field-level change-set,
and either mirrors it into the optimistic engine's local view or, when the
record has a pending local mutation the change did not come from, hands it
to the engine as a conflict.
"""

import asyncio
import logging
from collections import OrderedDict
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from .clock import Clock
from .config import Settings, settings as default_settings
from .exceptions import RecordExists, ValidationError
from .gateway import StoreGateway, Subscription
from .models import (
    ChangeEvent,
    ChangeSet,
    ChangeType,
    FieldChange,
    Presence,
    PresenceMode,
    Record,
    to_iso,
    parse_datetime,
)
from .notifications import Notifier
from .optimistic import OptimisticUpdateEngine

logger = logging.getLogger(__name__)

PRESENCE_COLLECTION = "presence"


def diff_fields(old: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]]) -> List[FieldChange]:
    """Field-by-field differences between two snapshots."""
    old = old or {}
    new = new or {}
    changes = []
    for name in sorted(set(old) | set(new)):
        before, after = old.get(name), new.get(name)
        if before != after:
            changes.append(FieldChange(name, before, after))
    return changes


class PresenceRoster:
    """Who is viewing or editing what. Informational only."""

    def __init__(self, clock: Clock, stale_seconds: float = 300.0):
        self.clock = clock
        self.stale_seconds = stale_seconds
        self._entries: Dict[str, Presence] = {}

    def update(
        self,
        user_id: str,
        resource_id: Optional[str],
        mode: PresenceMode = PresenceMode.VIEWING,
        label: Optional[str] = None,
        online: bool = True,
    ) -> Presence:
        entry = Presence(user_id, label, resource_id, PresenceMode(mode), self.clock.now(), online)
        self._entries[user_id] = entry
        return entry

    def remove(self, user_id: str) -> None:
        self._entries.pop(user_id, None)

    def prune(self) -> int:
        """Forget entries not refreshed within the stale window."""
        cutoff = self.clock.now() - timedelta(seconds=self.stale_seconds)
        stale = [uid for uid, entry in self._entries.items() if entry.last_seen < cutoff]
        for user_id in stale:
            del self._entries[user_id]
        return len(stale)

    def online_users(self, exclude: Optional[str] = None) -> List[Presence]:
        self.prune()
        return [e for e in self._entries.values() if e.online and e.user_id != exclude]

    def users_on(
        self,
        resource_id: str,
        mode: Optional[PresenceMode] = None,
        exclude: Optional[str] = None,
    ) -> List[Presence]:
        return [
            e for e in self.online_users(exclude)
            if e.resource_id == resource_id and (mode is None or e.mode is mode)
        ]

    def handle_change(self, event: ChangeEvent) -> None:
        data = event.record.data
        user_id = data.get("user_id") or event.record.key
        if event.type is ChangeType.REMOVED:
            self.remove(user_id)
            return
        self._entries[user_id] = Presence(
            user_id=user_id,
            label=data.get("label"),
            resource_id=data.get("resource_id"),
            mode=PresenceMode(data.get("mode", PresenceMode.VIEWING.value)),
            last_seen=parse_datetime(data.get("last_seen")) or event.record.updated_at,
            online=data.get("online", True),
        )

    async def publish(
        self,
        store: StoreGateway,
        user_id: str,
        resource_id: Optional[str],
        mode: PresenceMode = PresenceMode.VIEWING,
        label: Optional[str] = None,
        online: bool = True,
    ) -> Presence:
        """Announce our own presence to other clients."""
        if not user_id:
            raise ValidationError("Presence needs a user id")
        entry = self.update(user_id, resource_id, mode, label, online)
        data = {
            "user_id": user_id,
            "label": label,
            "resource_id": resource_id,
            "mode": entry.mode.value,
            "online": online,
            "last_seen": to_iso(entry.last_seen),
        }
        try:
            await store.create(PRESENCE_COLLECTION, user_id, data)
        except RecordExists:
            await store.update(PRESENCE_COLLECTION, user_id, data)
        return entry


class ChangeReconciler:
    """Diffs incoming store changes and routes them to the engine."""

    SOURCE = "reconciler"

    def __init__(
        self,
        store: StoreGateway,
        engine: OptimisticUpdateEngine,
        clock: Clock,
        notifier: Optional[Notifier] = None,
        config: Optional[Settings] = None,
        limit: Optional[int] = None,
        presence: Optional[PresenceRoster] = None,
    ):
        self.store = store
        self.engine = engine
        self.clock = clock
        self.notifier = notifier or Notifier()
        self.config = config or default_settings
        self.collection = engine.collection
        self.limit = limit or self.config.reconciler_limit
        self.presence = presence or PresenceRoster(clock, self.config.presence_stale_seconds)
        self._known: "OrderedDict[str, Record]" = OrderedDict()
        self._listeners: List[Callable[[ChangeSet], None]] = []
        self._subscription: Optional[Subscription] = None
        self._presence_subscription: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self.conflicts_raised = 0
        self.last_sync_at = None
        self.feed_error: Optional[Exception] = None

    @property
    def is_connected(self) -> bool:
        return self._subscription is not None and not self._subscription.cancelled

    def on_change(self, listener: Callable[[ChangeSet], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def known(self, key: str) -> Optional[Record]:
        return self._known.get(key)

    @property
    def tracked_keys(self) -> List[str]:
        return list(self._known)

    def start(self, track_presence: bool = True) -> Subscription:
        """Subscribe to the change feed (and the presence feed)."""
        if not self.is_connected:
            self._subscription = self.store.subscribe(self.collection, limit=self.limit)
            logger.info("Following %s (latest %d records)", self.collection, self.limit)
        if track_presence and self._presence_subscription is None:
            self._presence_subscription = self.store.subscribe(PRESENCE_COLLECTION)
        return self._subscription

    def pump(self) -> int:
        """Handle every change delivered so far; returns how many."""
        handled = 0
        if self._presence_subscription is not None:
            for event in self._presence_subscription.drain():
                self.presence.handle_change(event)
        if self._subscription is not None:
            for event in self._subscription.drain():
                self.handle_change(event)
                handled += 1
            self._check_feed(self._subscription)
        return handled

    async def run(self) -> None:
        """Consume the feed until the subscription is cancelled."""
        subscription = self.start()
        async for event in subscription:
            self.handle_change(event)
        self._check_feed(subscription)

    def _check_feed(self, subscription: Subscription) -> None:
        error = subscription.error
        if error is None or error is self.feed_error:
            return
        self.feed_error = error
        logger.error("Lost the change feed for %s: %s", self.collection, error)
        self.notifier.error(
            "Live Updates Stopped",
            f"Changes to {self.collection} are no longer being received: {error}",
            self.SOURCE,
        )

    def run_in_background(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    def handle_change(self, event: ChangeEvent) -> ChangeSet:
        record = event.record
        key = record.key
        previous = self._known.get(key)
        if event.type is ChangeType.REMOVED:
            changes = diff_fields(previous.data if previous else None, None)
        else:
            changes = diff_fields(previous.data if previous else None, record.data)
        change_set = ChangeSet(key, event.type, changes, record.version, record.origin)
        self._remember(event)
        self.last_sync_at = self.clock.now()

        pending = self.engine.pending_for(key)
        known_version = self.engine.known_version(key)
        if self.engine.is_own_origin(record.origin):
            logger.debug("Echo of our own write to %s (%s)", key, record.origin)
        elif (
            event.type is not ChangeType.REMOVED
            and known_version is not None
            and record.version <= known_version
        ):
            logger.debug("Already have %s at version %d", key, known_version)
        elif pending is not None:
            self.conflicts_raised += 1
            logger.warning(
                "Change to %s overlaps pending operation %s: %s", key, pending.id, change_set.describe()
            )
            server = None if event.type is ChangeType.REMOVED else record
            self.engine.report_conflict(key, server)
        else:
            self.engine.apply_remote(event)
            logger.info("Synced %s", change_set.describe())

        for listener in list(self._listeners):
            listener(change_set)
        return change_set

    def _remember(self, event: ChangeEvent) -> None:
        key = event.record.key
        if event.type is ChangeType.REMOVED:
            self._known.pop(key, None)
            return
        self._known[key] = event.record
        self._known.move_to_end(key)
        while len(self._known) > self.limit:
            evicted, _ = self._known.popitem(last=False)
            logger.debug("No longer tracking %s", evicted)

    def close(self) -> None:
        """Unsubscribe from every feed."""
        for subscription in (self._subscription, self._presence_subscription):
            if subscription is not None:
                subscription.cancel()
        self._subscription = None
        self._presence_subscription = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        logger.info("Stopped following %s", self.collection)
