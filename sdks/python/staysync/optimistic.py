"""Optimistic update engine.

Mutations land in the local view immediately and are tracked as pending
operations until the store confirms them. Operations on the same target are
submitted strictly in order, one in flight at a time; operations on
different targets go out in batches. A terminal failure rolls the local view
back so it never drifts from the store.
"""

import asyncio
import copy
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Union
from uuid import uuid4

from .clock import Clock, TimerHandle
from .config import Settings, settings as default_settings
from .exceptions import (
    ConflictPending,
    RecordExists,
    RecordNotFound,
    StaySyncError,
    ValidationError,
    VersionConflict,
    classify,
    is_retryable,
)
from .gateway import StoreGateway
from .models import (
    ChangeEvent,
    ChangeType,
    ConflictRecord,
    ConflictStrategy,
    OperationKind,
    OperationState,
    PendingOperation,
    Record,
    Resolution,
)
from .notifications import Notifier

logger = logging.getLogger(__name__)

# store answers that mean someone else wrote the target first
CONFLICT_ERRORS = (VersionConflict, RecordExists, RecordNotFound)

Item = Dict[str, Any]
MergeFn = Callable[[Item, Item], Item]


class OptimisticUpdateEngine:
    """Local view of one collection with optimistic writes."""

    SOURCE = "optimistic"

    def __init__(
        self,
        store: StoreGateway,
        collection: str,
        clock: Clock,
        notifier: Optional[Notifier] = None,
        config: Optional[Settings] = None,
        strategy: Union[ConflictStrategy, str] = ConflictStrategy.SERVER_WINS,
        merge: Optional[MergeFn] = None,
        id_field: str = "id",
        initial: Optional[List[Item]] = None,
    ):
        self.store = store
        self.collection = collection
        self.clock = clock
        self.notifier = notifier or Notifier()
        self.config = config or default_settings
        self.strategy = ConflictStrategy(strategy)
        if self.strategy is ConflictStrategy.MERGE and merge is None:
            raise ValidationError("The merge strategy needs a merge function")
        self.merge = merge
        self.id_field = id_field
        self.batch_size = self.config.submit_batch_size
        self.retry_delay = self.config.offline_retry_delay_seconds

        self._items: List[Item] = [copy.deepcopy(item) for item in initial or []]
        self._pending: Dict[str, PendingOperation] = {}
        self._order: List[str] = []
        self._in_flight: Dict[str, str] = {}
        self._not_before: Dict[str, datetime] = {}
        self._positions: Dict[str, int] = {}
        self._versions: Dict[str, int] = {}
        self._conflicts: Dict[str, ConflictRecord] = {}
        self._frozen: Dict[str, str] = {}
        self._processing = False
        self._rerun = False
        self._kick: Optional[TimerHandle] = None
        self._retry_timer: Optional[TimerHandle] = None
        self.queue = None
        self._online = True
        self._committed_ids: Deque[str] = deque(maxlen=256)

    # -- local view ------------------------------------------------------

    @property
    def items(self) -> List[Item]:
        return copy.deepcopy(self._items)

    def get(self, target_id: str) -> Optional[Item]:
        index = self._index_of(target_id)
        return copy.deepcopy(self._items[index]) if index is not None else None

    def _index_of(self, target_id: str) -> Optional[int]:
        for index, item in enumerate(self._items):
            if str(item.get(self.id_field)) == target_id:
                return index
        return None

    def _put(self, target_id: str, value: Item, position: Optional[int] = None) -> None:
        index = self._index_of(target_id)
        if index is not None:
            self._items[index] = copy.deepcopy(value)
        elif position is not None and 0 <= position <= len(self._items):
            self._items.insert(position, copy.deepcopy(value))
        else:
            self._items.append(copy.deepcopy(value))

    def _remove(self, target_id: str) -> Optional[int]:
        index = self._index_of(target_id)
        if index is not None:
            del self._items[index]
        return index

    def known_version(self, target_id: str) -> Optional[int]:
        return self._versions.get(target_id)

    def set_known_version(self, target_id: str, version: Optional[int]) -> None:
        if version is None:
            self._versions.pop(target_id, None)
        else:
            self._versions[target_id] = version

    # -- pending bookkeeping --------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def has_pending(self) -> bool:
        return bool(self._pending)

    def pending_operations(self) -> List[PendingOperation]:
        return list(self._pending.values())

    def pending_for(self, target_id: str) -> Optional[PendingOperation]:
        """Latest pending operation on ``target_id``."""
        ops = self._ops_for(target_id)
        return ops[-1] if ops else None

    def in_flight_for(self, target_id: str) -> Optional[PendingOperation]:
        op_id = self._in_flight.get(target_id)
        return self._pending.get(op_id) if op_id else None

    def _ops_for(self, target_id: str) -> List[PendingOperation]:
        return [op for op in self._pending.values() if op.target_id == target_id]

    def conflicts(self) -> List[ConflictRecord]:
        return list(self._conflicts.values())

    def is_frozen(self, target_id: str) -> bool:
        return target_id in self._frozen

    def is_own_origin(self, origin: Optional[str]) -> bool:
        """True when a store change was written by one of our operations."""
        return origin is not None and (origin in self._pending or origin in self._committed_ids)

    # -- connectivity ----------------------------------------------------

    def attach_queue(self, queue) -> None:
        """Route submissions through an offline queue while disconnected."""
        self.queue = queue
        queue.submit = self.submit_operation
        queue.is_busy = self._owns_target
        queue.on_committed(self._queue_committed)
        queue.on_failed(self._queue_failed)

    @property
    def online(self) -> bool:
        return self.queue.online if self.queue is not None else self._online

    async def set_online(self, online: bool) -> None:
        if self.queue is not None:
            await self.queue.set_online(online)
        self._online = online
        if not online:
            self._hand_to_queue()
        else:
            await self.process_pending()

    # -- execution -------------------------------------------------------

    def execute_optimistic(
        self,
        kind: Union[OperationKind, str],
        payload: Optional[Item],
        max_retries: Optional[int] = None,
    ) -> Optional[PendingOperation]:
        """Apply a mutation locally and queue it for submission.

        Returns the pending operation, or ``None`` when a create collides
        with an item that already exists locally.
        """
        try:
            kind = OperationKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown operation kind: {kind!r}")
        if not isinstance(payload, dict):
            raise ValidationError("Operation payload must be a mapping")
        identity = payload.get(self.id_field)
        if identity is None or identity == "":
            raise ValidationError(f"Operation payload has no '{self.id_field}'")
        target_id = str(identity)
        if target_id in self._frozen:
            raise ConflictPending(
                f"'{target_id}' has an unresolved conflict",
                target_id=target_id,
                operation_id=self._frozen[target_id],
            )

        index = self._index_of(target_id)
        existing = copy.deepcopy(self._items[index]) if index is not None else None

        if kind is OperationKind.CREATE and existing is not None:
            logger.warning("Create conflict: '%s' already exists locally", target_id)
            self.notifier.warning(
                "Already Exists", f"'{target_id}' already exists and was not duplicated", self.SOURCE
            )
            return None

        op = PendingOperation(
            id=uuid4().hex,
            kind=kind,
            target_id=target_id,
            payload=copy.deepcopy(payload),
            collection=self.collection,
            optimistic_snapshot=copy.deepcopy(payload) if kind is not OperationKind.DELETE else None,
            rollback_snapshot=existing,
            max_retries=self.config.max_retries if max_retries is None else max_retries,
            created_at=self.clock.now(),
            base_version=self._versions.get(target_id),
        )
        if index is not None:
            self._positions[op.id] = index

        if kind is OperationKind.DELETE:
            self._remove(target_id)
        else:
            self._put(target_id, payload)

        self._pending[op.id] = op
        logger.info("Applied %s on %s optimistically (%s)", kind.value, target_id, op.id)

        if self.queue is not None and (not self.online or self.queue.has_target(target_id)):
            # the queue keeps every write on a target it already holds
            self.queue.queue_operation(op)
        else:
            self._order.append(op.id)
            self._schedule_processing()
        return op

    def create(self, payload: Item) -> Optional[PendingOperation]:
        return self.execute_optimistic(OperationKind.CREATE, payload)

    def update(self, payload: Item) -> Optional[PendingOperation]:
        return self.execute_optimistic(OperationKind.UPDATE, payload)

    def delete(self, target_id: str) -> Optional[PendingOperation]:
        return self.execute_optimistic(OperationKind.DELETE, {self.id_field: target_id})

    def _schedule_processing(self) -> None:
        if self._kick is None:
            self._kick = self.clock.call_later(0, self._run_scheduled)

    async def _run_scheduled(self) -> None:
        self._kick = None
        await self.process_pending()

    async def process_pending(self) -> int:
        """Submit every ready operation; returns how many were settled."""
        if not self.online:
            return 0
        if self._processing:
            self._rerun = True
            return 0
        self._processing = True
        settled = 0
        try:
            while True:
                self._rerun = False
                batch = self._next_batch()
                if not batch:
                    if self._rerun:
                        continue
                    break
                for op in batch:
                    op.state = OperationState.IN_FLIGHT
                    self._in_flight[op.target_id] = op.id
                await asyncio.gather(*(self._submit_and_settle(op) for op in batch))
                settled += len(batch)
        finally:
            self._processing = False
        return settled

    def _next_batch(self) -> List[PendingOperation]:
        now = self.clock.now()
        batch: List[PendingOperation] = []
        seen_targets = set()
        for op_id in list(self._order):
            op = self._pending.get(op_id)
            if op is None:
                self._order.remove(op_id)
                continue
            target = op.target_id
            if target in seen_targets:
                continue
            seen_targets.add(target)
            if target in self._in_flight or target in self._frozen:
                continue
            not_before = self._not_before.get(op_id)
            if not_before is not None and not_before > now:
                continue
            batch.append(op)
            self._order.remove(op_id)
            self._not_before.pop(op_id, None)
            if len(batch) >= self.batch_size:
                break
        return batch

    async def submit_operation(self, op: PendingOperation) -> Optional[Record]:
        """Send one operation to the store; errors propagate."""
        if op.kind is OperationKind.CREATE:
            try:
                return await self.store.create(op.collection, op.target_id, op.payload, origin=op.id)
            except RecordExists:
                existing = await self.store.read(op.collection, op.target_id)
                if existing is not None and existing.origin == op.id:
                    # an earlier attempt landed before the connection dropped
                    return existing
                raise
        if op.kind is OperationKind.UPDATE:
            try:
                return await self.store.update(
                    op.collection, op.target_id, op.payload,
                    expected_version=op.base_version, origin=op.id,
                )
            except RecordNotFound:
                if op.base_version is not None:
                    raise
                return await self.store.create(op.collection, op.target_id, op.payload, origin=op.id)
        await self.store.delete(
            op.collection, op.target_id, expected_version=op.base_version, origin=op.id
        )
        return None

    async def _submit_and_settle(self, op: PendingOperation) -> None:
        try:
            record = await self.submit_operation(op)
        except CONFLICT_ERRORS:
            self._in_flight.pop(op.target_id, None)
            await self._handle_conflict(op)
        except StaySyncError as e:
            self._in_flight.pop(op.target_id, None)
            self._settle_failure(op, e)
        else:
            self._in_flight.pop(op.target_id, None)
            self._settle_success(op, record)
        if self.queue is not None and self.queue.has_target(op.target_id):
            self.queue.schedule_flush()

    def _owns_target(self, target_id: str) -> bool:
        """True while this engine still has an unsent or in-flight write on ``target_id``."""
        if target_id in self._in_flight:
            return True
        return any(
            self._pending[op_id].target_id == target_id
            for op_id in self._order
            if op_id in self._pending
        )

    def _hand_to_queue(self, target_id: Optional[str] = None) -> None:
        """Move unsent operations (all, or those on ``target_id``) to the offline queue."""
        if self.queue is None:
            return
        moving = [
            self._pending[op_id] for op_id in self._order
            if op_id in self._pending
            and (target_id is None or self._pending[op_id].target_id == target_id)
        ]
        # inserted ahead of the queue's own writes, so walk backwards to keep order
        for op in reversed(moving):
            self._order.remove(op.id)
            self._not_before.pop(op.id, None)
            self.queue.queue_operation(op, ahead=True)
        if moving:
            logger.info("Handed %d operation(s) to the offline queue", len(moving))

    def _settle_success(self, op: PendingOperation, record: Optional[Record]) -> None:
        op.state = OperationState.COMMITTED
        self._forget(op)
        self._committed_ids.append(op.id)
        version = record.version if record is not None else None
        self.set_known_version(op.target_id, version)
        later = self._ops_for(op.target_id)
        if later:
            # the next write on this target was queued on top of ours
            later[0].base_version = version
        logger.info("Operation %s (%s %s) committed", op.id, op.kind.value, op.target_id)

    def _settle_failure(self, op: PendingOperation, error: Exception) -> None:
        if is_retryable(error) and op.can_retry:
            op.retry_count += 1
            op.state = OperationState.QUEUED
            self._order.insert(0, op.id)
            logger.warning(
                "Operation %s failed (%s), retry %d/%d",
                op.id, error, op.retry_count, op.max_retries,
            )
            if self.queue is not None and (not self.online or self.queue.has_target(op.target_id)):
                self._hand_to_queue(op.target_id)
                return
            self._not_before[op.id] = self.clock.now() + timedelta(seconds=self.retry_delay)
            self._arm_retry()
            return
        logger.error(
            "Operation %s failed permanently (%s): %s", op.id, classify(error).value, error
        )
        self.rollback(op)
        self.notifier.error(
            "Operation Failed",
            f"Could not {op.kind.value} '{op.target_id}': {error}",
            self.SOURCE,
            reference_id=op.id,
        )

    def _arm_retry(self) -> None:
        if self._retry_timer is None:
            self._retry_timer = self.clock.call_later(self.retry_delay, self._run_retry)

    async def _run_retry(self) -> None:
        self._retry_timer = None
        await self.process_pending()

    def _forget(self, op: PendingOperation) -> None:
        self._pending.pop(op.id, None)
        self._positions.pop(op.id, None)
        self._not_before.pop(op.id, None)
        if op.id in self._order:
            self._order.remove(op.id)

    # -- rollback --------------------------------------------------------

    def rollback(self, op: PendingOperation) -> None:
        """Undo ``op`` in the local view as if it never happened."""
        same_target = self._ops_for(op.target_id)
        later = []
        if op in same_target:
            later = same_target[same_target.index(op) + 1:]
        position = self._positions.get(op.id)
        self._forget(op)
        op.state = OperationState.ROLLED_BACK

        if later:
            # a newer mutation owns the view; it now rolls back to our base
            later[0].rollback_snapshot = copy.deepcopy(op.rollback_snapshot)
            if position is not None:
                self._positions[later[0].id] = position
            logger.info("Rolled back %s beneath newer pending operations", op.id)
            return

        if op.kind is OperationKind.CREATE:
            self._remove(op.target_id)
        elif op.rollback_snapshot is not None:
            self._put(op.target_id, op.rollback_snapshot, position)
        else:
            self._remove(op.target_id)
        logger.info("Rolled back %s on %s", op.kind.value, op.target_id)

    # -- conflicts -------------------------------------------------------

    async def _handle_conflict(self, op: PendingOperation, server: Optional[Record] = None) -> None:
        if server is None:
            try:
                server = await self.store.read(op.collection, op.target_id)
            except StaySyncError as e:
                self._settle_failure(op, e)
                return
        self._resolve_by_strategy(op, server)

    def report_conflict(self, target_id: str, server: Optional[Record]) -> Optional[ConflictRecord]:
        """Called when the change feed shows a foreign write to a pending target."""
        op = self.pending_for(target_id)
        if op is None:
            return None
        if op.state is OperationState.IN_FLIGHT:
            # the in-flight write carries its base version; the store settles it
            logger.info("Foreign change to %s while %s is in flight", target_id, op.id)
            return None
        return self._resolve_by_strategy(op, server)

    def _resolve_by_strategy(self, op: PendingOperation, server: Optional[Record]) -> ConflictRecord:
        server_value = copy.deepcopy(server.data) if server else None
        server_version = server.version if server else None
        local_value = self.get(op.target_id)
        conflict = ConflictRecord(
            operation_id=op.id,
            target_id=op.target_id,
            local_value=local_value,
            server_value=server_value,
            strategy=self.strategy,
            server_version=server_version,
            detected_at=self.clock.now(),
        )
        logger.warning(
            "Conflict on %s (%s): server version %s", op.target_id, self.strategy.value, server_version
        )

        if self.strategy is ConflictStrategy.USER_WINS:
            self._rebase(op, local_value, server_version)
            conflict.resolved = True
        elif self.strategy is ConflictStrategy.SERVER_WINS:
            self._accept_server(op.target_id, server_value, server_version)
            conflict.resolved = True
            self.notifier.info(
                "Updated From Server",
                f"'{op.target_id}' was changed by someone else; their version was kept",
                self.SOURCE,
                reference_id=op.id,
            )
        elif self.strategy is ConflictStrategy.MERGE:
            merged = self.merge(copy.deepcopy(local_value or {}), copy.deepcopy(server_value or {}))
            merged.setdefault(self.id_field, op.target_id)
            self._put(op.target_id, merged)
            self._rebase(op, merged, server_version)
            conflict.resolved = True
        else:
            op.state = OperationState.FAILED
            if op.id in self._order:
                self._order.remove(op.id)
            self._conflicts[op.id] = conflict
            self._frozen[op.target_id] = op.id
            self.notifier.warning(
                "Conflict Detected",
                f"'{op.target_id}' was updated by another user. Choose which version to keep.",
                self.SOURCE,
                reference_id=op.id,
            )
        return conflict

    def _rebase(self, op: PendingOperation, value: Optional[Item], server_version: Optional[int]) -> None:
        """Resubmit ``value`` on top of the server's current version."""
        for other in self._ops_for(op.target_id):
            if other.id != op.id:
                self._forget(other)
        if value is None:
            op.kind = OperationKind.DELETE
            op.payload = {self.id_field: op.target_id}
            op.optimistic_snapshot = None
        else:
            op.kind = OperationKind.UPDATE
            op.payload = copy.deepcopy(value)
            op.optimistic_snapshot = copy.deepcopy(value)
        op.base_version = server_version
        op.state = OperationState.QUEUED
        self._pending[op.id] = op
        if op.id not in self._order:
            self._order.insert(0, op.id)
        self._schedule_processing()

    def _accept_server(self, target_id: str, server_value: Optional[Item], server_version: Optional[int]) -> None:
        for other in self._ops_for(target_id):
            other.state = OperationState.ROLLED_BACK
            self._forget(other)
        if server_value is None:
            self._remove(target_id)
        else:
            value = copy.deepcopy(server_value)
            value.setdefault(self.id_field, target_id)
            self._put(target_id, value)
        self.set_known_version(target_id, server_version)

    def resolve_conflict(
        self,
        operation_id: str,
        resolution: Union[Resolution, str],
        custom_value: Optional[Item] = None,
    ) -> Optional[PendingOperation]:
        """Settle a conflict raised under ``prompt_user``.

        Returns the follow-up operation that writes the chosen value, or
        ``None`` when the server value was accepted.
        """
        resolution = Resolution(resolution)
        conflict = self._conflicts.get(operation_id)
        if conflict is None:
            raise ValidationError(f"No open conflict for operation '{operation_id}'")
        if resolution is Resolution.CUSTOM and not isinstance(custom_value, dict):
            raise ValidationError("A custom resolution needs a value")

        del self._conflicts[operation_id]
        target_id = conflict.target_id
        self._frozen.pop(target_id, None)
        for op in self._ops_for(target_id):
            op.state = OperationState.ROLLED_BACK
            self._forget(op)
        conflict.resolved = True
        self.set_known_version(target_id, conflict.server_version)
        logger.info("Conflict on %s resolved with %s", target_id, resolution.value)

        if resolution is Resolution.USE_SERVER:
            self._accept_server(target_id, conflict.server_value, conflict.server_version)
            return None
        if resolution is Resolution.CUSTOM:
            value = copy.deepcopy(custom_value)
            value[self.id_field] = conflict.target_id
            return self.execute_optimistic(OperationKind.UPDATE, value)
        local = self.get(target_id)
        if local is None:
            return self.execute_optimistic(OperationKind.DELETE, {self.id_field: target_id})
        return self.execute_optimistic(OperationKind.UPDATE, local)

    # -- remote changes --------------------------------------------------

    def apply_remote(self, event: ChangeEvent) -> bool:
        """Mirror a confirmed store change into the local view."""
        key = event.record.key
        if key in self._frozen:
            return False
        if event.type is ChangeType.REMOVED:
            self._remove(key)
            self._versions.pop(key, None)
        else:
            value = copy.deepcopy(event.record.data)
            value.setdefault(self.id_field, key)
            self._put(key, value)
            self._versions[key] = event.record.version
        return True

    # -- offline queue hooks ---------------------------------------------

    def _queue_committed(self, op: PendingOperation, record: Optional[Record]) -> None:
        self._pending.setdefault(op.id, op)
        self._settle_success(op, record)

    async def _queue_failed(self, op: PendingOperation, error: Exception) -> None:
        self._pending.setdefault(op.id, op)
        if isinstance(error, CONFLICT_ERRORS):
            await self._handle_conflict(op)
            return
        self.rollback(op)

    def close(self) -> None:
        for timer in (self._kick, self._retry_timer):
            if timer is not None:
                timer.cancel()
        self._kick = None
        self._retry_timer = None
