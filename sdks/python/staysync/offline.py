"""Offline operation queue.

Mutations made while disconnected are written to durable storage before any
submission is attempted, then replayed in FIFO order once connectivity
returns. Operation ids never change across retries so the store can tell a
replay from a new write.
"""

import inspect
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional
from uuid import uuid4

from .clock import Clock, TimerHandle
from .config import Settings, settings as default_settings
from .exceptions import StaySyncError, ValidationError
from .models import OperationState, PendingOperation, Record
from .notifications import Notifier

logger = logging.getLogger(__name__)

Submitter = Callable[[PendingOperation], Awaitable[Optional[Record]]]


class QueueStorage(ABC):
    """Durable home for queued operations."""

    @abstractmethod
    def load(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def save(self, operations: List[Dict[str, Any]]) -> None:
        pass

    @abstractmethod
    def clear(self) -> None:
        pass


class MemoryQueueStorage(QueueStorage):
    """Keeps the serialized queue in memory; survives queue re-creation."""

    def __init__(self):
        self.raw: Optional[str] = None

    def load(self) -> List[Dict[str, Any]]:
        return json.loads(self.raw) if self.raw else []

    def save(self, operations: List[Dict[str, Any]]) -> None:
        self.raw = json.dumps(operations) if operations else None

    def clear(self) -> None:
        self.raw = None


class JsonFileQueueStorage(QueueStorage):
    """Queue persisted as a JSON file, replaced atomically on every write."""

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error("Failed to load offline queue from %s, discarding it: %s", self.path, e)
            self.clear()
            return []
        if not isinstance(data, list):
            logger.error("Offline queue file %s is not a list, discarding it", self.path)
            self.clear()
            return []
        return data

    def save(self, operations: List[Dict[str, Any]]) -> None:
        if not operations:
            self.clear()
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(operations, fh)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, self.path)

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


async def _call(listener, *args) -> None:
    result = listener(*args)
    if inspect.isawaitable(result):
        await result


class OfflineOperationQueue:
    """Durable FIFO of mutations awaiting submission."""

    SOURCE = "offline-queue"

    def __init__(
        self,
        storage: QueueStorage,
        clock: Clock,
        notifier: Optional[Notifier] = None,
        config: Optional[Settings] = None,
        submit: Optional[Submitter] = None,
        online: bool = True,
    ):
        self.storage = storage
        self.clock = clock
        self.notifier = notifier or Notifier()
        self.config = config or default_settings
        self.submit = submit
        self._online = online
        self._processing = False
        self._retry_timer: Optional[TimerHandle] = None
        self._flush_timer: Optional[TimerHandle] = None
        self._rerun = False
        self._retry_after: Dict[str, datetime] = {}
        self.is_busy: Optional[Callable[[str], bool]] = None
        self._committed: List[Callable] = []
        self._failed: List[Callable] = []
        self._operations: List[PendingOperation] = [
            PendingOperation.from_dict(data) for data in storage.load()
        ]
        if self._operations:
            logger.info("Loaded %d queued operation(s) from storage", len(self._operations))

    @property
    def online(self) -> bool:
        return self._online

    @property
    def size(self) -> int:
        return len(self._operations)

    @property
    def operations(self) -> List[PendingOperation]:
        return list(self._operations)

    def has_target(self, target_id: str) -> bool:
        return any(op.target_id == target_id for op in self._operations)

    @property
    def has_failed_operations(self) -> bool:
        return any(op.retry_count > 0 for op in self._operations)

    @property
    def is_processing(self) -> bool:
        return self._processing

    def on_committed(self, listener: Callable[[PendingOperation, Optional[Record]], Any]) -> None:
        self._committed.append(listener)

    def on_failed(self, listener: Callable[[PendingOperation, Exception], Any]) -> None:
        self._failed.append(listener)

    def _persist(self) -> None:
        self.storage.save([op.to_dict() for op in self._operations])

    def queue_operation(self, op: PendingOperation, ahead: bool = False) -> str:
        """Persist ``op`` and submit it as soon as the connection allows.

        With ``ahead`` the operation is older than anything queued for its
        target (it was handed over mid-flight) and goes in front of those
        writes, keeping its retry count.
        """
        if not op.target_id:
            raise ValidationError("Queued operation needs a target id")
        if not op.id:
            op.id = uuid4().hex
        op.state = OperationState.QUEUED
        if ahead:
            index = next(
                (i for i, queued in enumerate(self._operations) if queued.target_id == op.target_id),
                len(self._operations),
            )
            self._operations.insert(index, op)
            if op.retry_count:
                self._delay_retry(op.target_id)
        else:
            op.created_at = self.clock.now()
            op.retry_count = 0
            self._operations.append(op)
        self._persist()
        logger.info("Queued %s on %s (%s)", op.kind.value, op.target_id, op.id)
        if not ahead:
            self.notifier.info(
                "Operation Queued",
                "Your changes have been saved locally and will sync when online.",
                self.SOURCE,
                reference_id=op.id,
            )
        self.schedule_flush()
        return op.id

    def schedule_flush(self) -> None:
        """Replay the queue on the next tick if online."""
        if self._online and self._flush_timer is None:
            self._flush_timer = self.clock.call_later(0, self._scheduled_flush)

    def _delay_retry(self, target_id: str) -> None:
        delay = self.config.offline_retry_delay_seconds
        self._retry_after[target_id] = self.clock.now() + timedelta(seconds=delay)
        self._arm_retry()

    def _arm_retry(self) -> None:
        """Wake up when the earliest waiting target may be retried."""
        waiting = [when for target, when in self._retry_after.items() if self.has_target(target)]
        if self._retry_timer is not None or not waiting:
            return
        delay = max(0.0, (min(waiting) - self.clock.now()).total_seconds())
        self._retry_timer = self.clock.call_later(delay, self._scheduled_retry)

    def _must_wait(self, target_id: str, now: datetime) -> bool:
        if self.is_busy is not None and self.is_busy(target_id):
            return True
        retry_after = self._retry_after.get(target_id)
        return retry_after is not None and retry_after > now

    async def _scheduled_flush(self) -> None:
        self._flush_timer = None
        await self.process_queue()

    async def set_online(self, online: bool) -> None:
        was_online, self._online = self._online, online
        if was_online and not online:
            logger.warning("Device went offline, operations will be queued")
            self.notifier.warning(
                "Connection Lost",
                "You're offline. Changes will be saved when connection is restored.",
                self.SOURCE,
            )
        elif online and not was_online:
            self._retry_after.clear()
            logger.info("Device back online, processing %d queued operation(s)", self.size)
            await self.process_queue()

    async def process_queue(self) -> Dict[str, int]:
        """Replay queued operations in FIFO order."""
        summary = {"processed": 0, "retried": 0, "dropped": 0}
        if self._processing:
            self._rerun = True
            return summary
        if not self._online or not self._operations:
            return summary
        if self.submit is None:
            raise ValidationError("Offline queue has no submitter")

        self._processing = True
        logger.info("Processing offline queue (%d operation(s))", self.size)
        blocked = set()
        now = self.clock.now()
        try:
            for op in list(self._operations):
                if not self._online:
                    break
                if op.target_id in blocked:
                    continue
                if self._must_wait(op.target_id, now):
                    blocked.add(op.target_id)
                    continue
                op.state = OperationState.IN_FLIGHT
                try:
                    record = await self.submit(op)
                except StaySyncError as e:
                    if e.retryable and op.can_retry:
                        op.retry_count += 1
                        op.state = OperationState.QUEUED
                        blocked.add(op.target_id)
                        self._delay_retry(op.target_id)
                        summary["retried"] += 1
                        self._persist()
                        logger.warning(
                            "Queued operation %s failed, will retry (%d/%d): %s",
                            op.id, op.retry_count, op.max_retries, e,
                        )
                        continue
                    self._operations.remove(op)
                    self._retry_after.pop(op.target_id, None)
                    self._persist()
                    op.state = OperationState.FAILED
                    summary["dropped"] += 1
                    logger.error(
                        "Queued operation %s failed permanently after %d retries: %s",
                        op.id, op.retry_count, e,
                    )
                    self.notifier.error(
                        "Sync Failed",
                        f"Failed to sync {op.kind.value} of '{op.target_id}': {e}",
                        self.SOURCE,
                        reference_id=op.id,
                    )
                    for listener in list(self._failed):
                        await _call(listener, op, e)
                    continue

                self._operations.remove(op)
                self._retry_after.pop(op.target_id, None)
                self._persist()
                op.state = OperationState.COMMITTED
                summary["processed"] += 1
                logger.info("Queued operation %s processed successfully", op.id)
                for listener in list(self._committed):
                    await _call(listener, op, record)
        finally:
            self._processing = False
        if self._rerun:
            self._rerun = False
            self.schedule_flush()
        self._arm_retry()

        if summary["processed"]:
            self.notifier.info(
                "Sync Complete",
                f"Successfully synced {summary['processed']} operation(s).",
                self.SOURCE,
            )
        return summary

    async def _scheduled_retry(self) -> None:
        self._retry_timer = None
        await self.process_queue()

    async def force_sync(self) -> Dict[str, int]:
        if not self._operations:
            self.notifier.info("Nothing to Sync", "No pending operations to synchronize.", self.SOURCE)
            return {"processed": 0, "retried": 0, "dropped": 0}
        return await self.process_queue()

    def clear(self) -> None:
        """Drop every queued operation (emergency reset)."""
        self._operations = []
        self._retry_after.clear()
        self.storage.clear()
        self._cancel_timers()
        self.notifier.info("Queue Cleared", "All pending operations have been cleared.", self.SOURCE)

    def _cancel_timers(self) -> None:
        for timer in (self._retry_timer, self._flush_timer):
            if timer is not None:
                timer.cancel()
        self._retry_timer = None
        self._flush_timer = None

    def close(self) -> None:
        self._cancel_timers()
