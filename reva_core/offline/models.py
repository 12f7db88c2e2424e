# =============================================================================
# reva_core/offline/models.py
# Data Model Shared by the Sync Components
# =============================================================================

from __future__ import annotations
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_FRACTION_PATTERN = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")
_SHORT_OFFSET_PATTERN = re.compile(r"([+-]\d{2})$")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp as Postgres prints it.

    Fractions are padded or cut to microseconds and `+00` offsets get their
    minutes, so `2024-05-01 10:00:40.12345+00` parses on Python 3.10 too.
    """
    if not value:
        return None
    text = str(value).strip().replace("Z", "+00:00")
    text = _FRACTION_PATTERN.sub(lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", text, count=1)
    if "T" in text or " " in text:
        text = _SHORT_OFFSET_PATTERN.sub(r"\1:00", text)
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


# =============================================================================
# ENUMS
# =============================================================================

class EntityState(str, Enum):
    """Sync state of one cached entity, as shown to the UI."""
    SYNCED = "synced"
    PENDING = "pending"
    CONFLICT = "conflict"
    ERROR = "error"


class MutationOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ChangeType(str, Enum):
    """Remote change-stream event types."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SubscriptionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    CONFLICT = "conflict"   # Held until the entity conflict is resolved


class DeadLetterReason(str, Enum):
    PERMANENT = "permanent"
    RETRIES_EXHAUSTED = "retries_exhausted"


class MergeResult(str, Enum):
    """Outcome of merging a remote change into the local store."""
    APPLIED = "applied"
    DELETED = "deleted"
    IGNORED = "ignored"
    CONFLICT = "conflict"


class CoordinatorState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    STOPPED = "stopped"


class AuthEventType(str, Enum):
    SIGNED_IN = "signed_in"
    SIGNED_OUT = "signed_out"
    TOKEN_REFRESHED = "token_refreshed"


# =============================================================================
# REVISION MARKERS
# =============================================================================

def _revision_key(value: Any) -> Tuple[int, Any]:
    if isinstance(value, bool):
        value = str(value)
    if isinstance(value, (int, float)):
        return (0, value)
    text = str(value)
    try:
        return (0, int(text))
    except ValueError:
        pass
    parsed = parse_timestamp(text)
    if parsed is not None:
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return (1, parsed)
    return (2, text)


def compare_revisions(a: Any, b: Any) -> int:
    """
    Compare two revision markers.

    Integers compare numerically, ISO-8601 timestamps chronologically and
    anything else lexically. A missing revision sorts lowest.

    Returns:
        -1, 0 or 1
    """
    if a is None and b is None:
        return 0
    if a is None:
        return -1
    if b is None:
        return 1

    ka, kb = _revision_key(a), _revision_key(b)
    if ka[0] != kb[0]:
        # Mixed kinds: fall back to the string form
        ka, kb = (2, str(a)), (2, str(b))
    if ka[1] < kb[1]:
        return -1
    if ka[1] > kb[1]:
        return 1
    return 0


# =============================================================================
# RECORDS
# =============================================================================

@dataclass
class Entity:
    """A cached domain record (task, expense, reminder, chat message)."""
    table: str
    entity_id: str
    payload: Dict[str, Any]
    revision: Optional[str] = None
    state: EntityState = EntityState.SYNCED
    deleted: bool = False
    conflict_payload: Optional[Dict[str, Any]] = None
    conflict_revision: Optional[str] = None
    conflict_deleted: bool = False
    last_error: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "revision": self.revision,
            "state": self.state.value,
            "deleted": self.deleted,
            "conflict_payload": self.conflict_payload,
            "conflict_revision": self.conflict_revision,
            "conflict_deleted": self.conflict_deleted,
            "last_error": self.last_error,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row) -> Entity:
        return cls(
            table=row["table_name"],
            entity_id=row["entity_id"],
            payload=json.loads(row["payload_json"]) if row["payload_json"] else {},
            revision=row["revision"],
            state=EntityState(row["state"]),
            deleted=bool(row["deleted"]),
            conflict_payload=json.loads(row["conflict_json"]) if row["conflict_json"] else None,
            conflict_revision=row["conflict_revision"],
            conflict_deleted=bool(row["conflict_deleted"]),
            last_error=row["last_error"],
            updated_at=parse_timestamp(row["updated_at"]) or utcnow(),
        )


@dataclass
class OutboxEntry:
    """One pending mutation waiting for server acknowledgment."""
    idempotency_key: str
    entity_type: str
    entity_id: str
    operation: MutationOperation
    payload: Dict[str, Any]
    created_at: datetime = field(default_factory=utcnow)
    attempts: int = 0
    last_error: Optional[str] = None
    status: OutboxStatus = OutboxStatus.PENDING
    seq: Optional[int] = None
    dead_letter_reason: Optional[DeadLetterReason] = None
    dead_lettered_at: Optional[datetime] = None

    @property
    def entity_key(self) -> Tuple[str, str]:
        return (self.entity_type, self.entity_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "idempotency_key": self.idempotency_key,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "operation": self.operation.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "attempts": self.attempts,
            "last_error": self.last_error,
            "status": self.status.value,
            "seq": self.seq,
            "dead_letter_reason": self.dead_letter_reason.value if self.dead_letter_reason else None,
            "dead_lettered_at": self.dead_lettered_at.isoformat() if self.dead_lettered_at else None,
        }

    @classmethod
    def from_row(cls, row) -> OutboxEntry:
        keys = row.keys()
        reason = row["reason"] if "reason" in keys else None
        failed_at = row["dead_lettered_at"] if "dead_lettered_at" in keys else None
        return cls(
            idempotency_key=row["idempotency_key"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            operation=MutationOperation(row["operation"]),
            payload=json.loads(row["payload_json"]) if row["payload_json"] else {},
            created_at=parse_timestamp(row["created_at"]) or utcnow(),
            attempts=row["attempts"],
            last_error=row["last_error"],
            status=OutboxStatus(row["status"]) if "status" in keys else OutboxStatus.PENDING,
            seq=row["seq"] if "seq" in keys else None,
            dead_letter_reason=DeadLetterReason(reason) if reason else None,
            dead_lettered_at=parse_timestamp(failed_at),
        )


@dataclass
class ChangeEvent:
    """A normalized remote change-stream event."""
    table: str
    change_type: ChangeType
    record: Dict[str, Any] = field(default_factory=dict)
    old_record: Dict[str, Any] = field(default_factory=dict)
    revision: Optional[str] = None
    commit_timestamp: Optional[str] = None

    @property
    def entity_id(self) -> Optional[str]:
        value = self.record.get("id")
        if value is None:
            value = self.old_record.get("id")
        return None if value is None else str(value)


@dataclass
class EntityChange:
    """Notification emitted by the local store after a committed write."""
    table: str
    entity_id: str
    entity: Optional[Entity]    # None when the row was removed
    source: str                 # "local", "remote" or "reconcile"


@dataclass
class SyncStatus:
    """Per-entity-type aggregate shown to status observers."""
    entity_type: str
    connected_subscriptions: int = 0
    pending_count: int = 0
    last_synced_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "connected_subscriptions": self.connected_subscriptions,
            "pending_count": self.pending_count,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }


@dataclass
class HealthStatus:
    """Aggregate snapshot of the whole sync subsystem."""
    state: CoordinatorState
    is_online: bool
    subscriptions: Dict[str, SubscriptionState]
    pending_count: int
    dead_letter_count: int
    conflict_count: int
    last_sync_at: Optional[datetime]
    per_type: Dict[str, SyncStatus] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "is_online": self.is_online,
            "subscriptions": {k: v.value for k, v in self.subscriptions.items()},
            "pending_count": self.pending_count,
            "dead_letter_count": self.dead_letter_count,
            "conflict_count": self.conflict_count,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "per_type": {k: v.to_dict() for k, v in self.per_type.items()},
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class AuthEvent:
    """Session change pushed in by the auth collaborator."""
    type: AuthEventType
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
