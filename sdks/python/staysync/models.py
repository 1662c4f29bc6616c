"""StaySync data models."""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def parse_datetime(value) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    if value is None or isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed is not None and parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


@dataclass(frozen=True)
class Period:
    """Half-open stay period: the end date is the checkout day."""
    start: date
    end: date

    def __post_init__(self):
        if not self.start < self.end:
            raise ValidationError(
                f"Period start {self.start} must be before end {self.end}"
            )

    @classmethod
    def parse(cls, start, end) -> "Period":
        return cls(parse_date(start), parse_date(end))

    def overlaps(self, other: "Period") -> bool:
        return self.start < other.end and other.start < self.end

    @property
    def nights(self) -> int:
        return (self.end - self.start).days

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Period":
        return cls.parse(data["start"], data["end"])

    def __str__(self) -> str:
        return f"{self.start.isoformat()}..{self.end.isoformat()}"


class HoldState(str, Enum):
    """Reservation hold state."""
    ACTIVE = "active"
    COMMITTED = "committed"
    RELEASED = "released"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not HoldState.ACTIVE


@dataclass
class ReservationHold:
    """A TTL-bound exclusive claim on a resource for a period."""
    id: str
    resource_id: str
    period: Period
    owner_id: str
    created_at: datetime
    expires_at: datetime
    state: HoldState = HoldState.ACTIVE
    booking_id: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return self.state is HoldState.ACTIVE and now < self.expires_at

    def time_remaining(self, now: datetime) -> int:
        """Whole seconds left before expiry, never negative."""
        if self.state is not HoldState.ACTIVE:
            return 0
        return max(0, int((self.expires_at - now).total_seconds()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "period_start": self.period.start.isoformat(),
            "period_end": self.period.end.isoformat(),
            "owner_id": self.owner_id,
            "created_at": to_iso(self.created_at),
            "expires_at": to_iso(self.expires_at),
            "state": self.state.value,
            "booking_id": self.booking_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReservationHold":
        return cls(
            id=data["id"],
            resource_id=data["resource_id"],
            period=Period.parse(data["period_start"], data["period_end"]),
            owner_id=data["owner_id"],
            created_at=parse_datetime(data["created_at"]),
            expires_at=parse_datetime(data["expires_at"]),
            state=HoldState(data.get("state", HoldState.ACTIVE.value)),
            booking_id=data.get("booking_id"),
        )


@dataclass
class Booking:
    """A confirmed booking produced by committing a hold."""
    id: str
    resource_id: str
    period: Period
    owner_id: str
    hold_id: str
    payment_ref: str
    created_at: datetime


class LockState(str, Enum):
    """Edit lock state."""
    FREE = "free"
    HELD = "held"
    EXPIRED = "expired"
    TAKEN_OVER = "taken_over"


@dataclass
class EditLock:
    """An exclusive, renewable editing claim on one record."""
    resource_id: str
    owner_id: Optional[str]
    owner_label: Optional[str]
    acquired_at: Optional[datetime]
    expires_at: Optional[datetime]
    renewals: int = 0
    state: LockState = LockState.FREE
    duration_minutes: int = 15
    previous_owner: Optional[str] = None
    released_by: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def is_held(self, now: datetime) -> bool:
        """Held or taken over and not past its expiry."""
        return (
            self.state in (LockState.HELD, LockState.TAKEN_OVER)
            and self.owner_id is not None
            and not self.is_expired(now)
        )

    def effective_state(self, now: datetime) -> LockState:
        if self.state in (LockState.HELD, LockState.TAKEN_OVER) and self.is_expired(now):
            return LockState.EXPIRED
        return self.state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource_id": self.resource_id,
            "owner_id": self.owner_id,
            "owner_label": self.owner_label,
            "acquired_at": to_iso(self.acquired_at),
            "expires_at": to_iso(self.expires_at),
            "renewals": self.renewals,
            "state": self.state.value,
            "duration_minutes": self.duration_minutes,
            "previous_owner": self.previous_owner,
            "released_by": self.released_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EditLock":
        return cls(
            resource_id=data["resource_id"],
            owner_id=data.get("owner_id"),
            owner_label=data.get("owner_label"),
            acquired_at=parse_datetime(data.get("acquired_at")),
            expires_at=parse_datetime(data.get("expires_at")),
            renewals=data.get("renewals", 0),
            state=LockState(data.get("state", LockState.FREE.value)),
            duration_minutes=data.get("duration_minutes", 15),
            previous_owner=data.get("previous_owner"),
            released_by=data.get("released_by"),
        )


class OperationKind(str, Enum):
    """Mutation kind."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationState(str, Enum):
    """Pending operation lifecycle."""
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    COMMITTED = "committed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


@dataclass
class PendingOperation:
    """A locally applied mutation awaiting confirmation by the store."""
    id: str
    kind: OperationKind
    target_id: str
    payload: Optional[Dict[str, Any]]
    collection: str = "rooms"
    optimistic_snapshot: Optional[Dict[str, Any]] = None
    rollback_snapshot: Optional[Dict[str, Any]] = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime = field(default_factory=utcnow)
    state: OperationState = OperationState.QUEUED
    base_version: Optional[int] = None

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["state"] = self.state.value
        data["created_at"] = to_iso(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingOperation":
        return cls(
            id=data["id"],
            kind=OperationKind(data["kind"]),
            target_id=data["target_id"],
            payload=data.get("payload"),
            collection=data.get("collection", "rooms"),
            optimistic_snapshot=data.get("optimistic_snapshot"),
            rollback_snapshot=data.get("rollback_snapshot"),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", 3),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            state=OperationState(data.get("state", OperationState.QUEUED.value)),
            base_version=data.get("base_version"),
        )


class ConflictStrategy(str, Enum):
    """How the engine settles a local/server disagreement."""
    USER_WINS = "user_wins"
    SERVER_WINS = "server_wins"
    MERGE = "merge"
    PROMPT_USER = "prompt_user"


class Resolution(str, Enum):
    """Manual conflict resolution choice."""
    KEEP_LOCAL = "keep_local"
    USE_SERVER = "use_server"
    CUSTOM = "custom"


@dataclass
class ConflictRecord:
    """A detected disagreement between a pending mutation and the store."""
    operation_id: str
    target_id: str
    local_value: Optional[Dict[str, Any]]
    server_value: Optional[Dict[str, Any]]
    strategy: ConflictStrategy
    server_version: Optional[int] = None
    resolved: bool = False
    detected_at: datetime = field(default_factory=utcnow)


@dataclass
class Record:
    """A versioned document held by the store."""
    collection: str
    key: str
    data: Dict[str, Any]
    version: int
    updated_at: datetime
    origin: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "key": self.key,
            "data": self.data,
            "version": self.version,
            "updated_at": to_iso(self.updated_at),
            "origin": self.origin,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        return cls(
            collection=data["collection"],
            key=data["key"],
            data=data.get("data") or {},
            version=data["version"],
            updated_at=parse_datetime(data["updated_at"]),
            origin=data.get("origin"),
        )


class ChangeType(str, Enum):
    """Change feed event type."""
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass
class ChangeEvent:
    """One entry of the store's change feed."""
    type: ChangeType
    record: Record


@dataclass
class FieldChange:
    """A single field difference."""
    field: str
    old: Any
    new: Any

    def describe(self) -> str:
        if self.old is None:
            return f"{self.field} set to {self.new!r}"
        if self.new is None:
            return f"{self.field} removed (was {self.old!r})"
        return f"{self.field} changed from {self.old!r} to {self.new!r}"


@dataclass
class ChangeSet:
    """Field-level differences produced by one incoming change."""
    key: str
    type: ChangeType
    changes: List[FieldChange] = field(default_factory=list)
    version: Optional[int] = None
    origin: Optional[str] = None

    @property
    def fields(self) -> List[str]:
        return [change.field for change in self.changes]

    def describe(self) -> str:
        if self.type is ChangeType.ADDED:
            return f"{self.key} was added"
        if self.type is ChangeType.REMOVED:
            return f"{self.key} was removed"
        if not self.changes:
            return f"{self.key} was touched without field changes"
        return f"{self.key}: " + "; ".join(c.describe() for c in self.changes)


class PresenceMode(str, Enum):
    """What a user is doing with a resource."""
    VIEWING = "viewing"
    EDITING = "editing"


@dataclass
class Presence:
    """Best-effort roster entry."""
    user_id: str
    label: Optional[str]
    resource_id: Optional[str]
    mode: PresenceMode
    last_seen: datetime
    online: bool = True
