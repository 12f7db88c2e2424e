# =============================================================================
# reva_core/errors/exceptions.py
# Custom Exception Hierarchy for the Reva Sync Core
# =============================================================================

from enum import Enum
from typing import Optional, Dict, Any


class ErrorClassification(str, Enum):
    """How the sync core reacts to a failure."""
    TRANSIENT = "transient"     # Retry with backoff
    PERMANENT = "permanent"     # Dead-letter immediately
    CONFLICT = "conflict"       # Hold and flag the entity


class SyncCoreError(Exception):
    """
    Base exception for all sync core errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "REMOTE_001")
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
    """

    classification = ErrorClassification.PERMANENT

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or "SYNC_000"
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "classification": self.classification.value,
        }


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(SyncCoreError):
    """Raised when configuration is invalid or missing"""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            code="CONFIG_001",
            details=details,
            recoverable=False,
            **kwargs,
        )


# =============================================================================
# SUBSCRIPTION EXCEPTIONS
# =============================================================================

class UnknownTableError(SyncCoreError):
    """Raised when subscribing to a table the sync core does not track"""

    def __init__(self, table: str, known_tables: Optional[list] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["table"] = table
        if known_tables:
            details["known_tables"] = sorted(known_tables)

        super().__init__(
            message=f"Unknown table '{table}'",
            code="SUB_001",
            details=details,
            **kwargs,
        )


class InvalidFilterError(SyncCoreError):
    """Raised when a subscription filter is not a simple column predicate"""

    def __init__(self, filter_expr: str, **kwargs):
        details = kwargs.pop("details", {})
        details["filter"] = filter_expr

        super().__init__(
            message=f"Invalid filter expression '{filter_expr}' (expected column=op.value)",
            code="SUB_002",
            details=details,
            **kwargs,
        )


class ChannelError(SyncCoreError):
    """Raised when a realtime channel fails to open or drops"""

    classification = ErrorClassification.TRANSIENT

    def __init__(self, message: str, table: Optional[str] = None, status: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if table:
            details["table"] = table
        if status:
            details["status"] = status

        super().__init__(
            message=message,
            code="CHAN_001",
            details=details,
            **kwargs,
        )


# =============================================================================
# REMOTE API EXCEPTIONS
# =============================================================================

class RemoteApiError(SyncCoreError):
    """Base class for structured errors returned by the remote mutation API"""

    def __init__(
        self,
        message: str,
        code: str,
        table: Optional[str] = None,
        entity_id: Optional[str] = None,
        remote_code: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if table:
            details["table"] = table
        if entity_id:
            details["entity_id"] = entity_id
        if remote_code:
            details["remote_code"] = remote_code

        super().__init__(message=message, code=code, details=details, **kwargs)


class TransientRemoteError(RemoteApiError):
    """Network failure, timeout or 5xx: safe to retry"""

    classification = ErrorClassification.TRANSIENT

    def __init__(self, message: str, **kwargs):
        super().__init__(message=message, code="REMOTE_001", **kwargs)


class PermanentRemoteError(RemoteApiError):
    """Validation failure or 4xx: retrying will not help"""

    classification = ErrorClassification.PERMANENT

    def __init__(self, message: str, **kwargs):
        super().__init__(message=message, code="REMOTE_002", **kwargs)


class RevisionConflictError(RemoteApiError):
    """The server holds a newer revision than the one the mutation was based on"""

    classification = ErrorClassification.CONFLICT

    def __init__(
        self,
        message: str,
        expected_revision: Optional[str] = None,
        current_record: Optional[Dict[str, Any]] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if expected_revision is not None:
            details["expected_revision"] = expected_revision
        self.current_record = current_record

        super().__init__(message=message, code="REMOTE_003", details=details, **kwargs)


# =============================================================================
# LOCAL STORE EXCEPTIONS
# =============================================================================

class LocalStoreError(SyncCoreError):
    """Raised when the local SQLite store cannot complete an operation"""

    def __init__(self, message: str, table: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if table:
            details["table"] = table

        super().__init__(
            message=message,
            code="STORE_001",
            details=details,
            **kwargs,
        )


class EntityNotFoundError(SyncCoreError):
    """Raised when an operation targets an entity missing from the local store"""

    def __init__(self, table: str, entity_id: str, **kwargs):
        super().__init__(
            message=f"Entity {table}/{entity_id} not found",
            code="STORE_002",
            details={"table": table, "entity_id": entity_id},
            **kwargs,
        )


class OutboxEntryNotFoundError(SyncCoreError):
    """Raised when an idempotency key does not match any outbox or dead-letter entry"""

    def __init__(self, idempotency_key: str, **kwargs):
        super().__init__(
            message=f"No outbox entry for key {idempotency_key}",
            code="OUTBOX_001",
            details={"idempotency_key": idempotency_key},
            **kwargs,
        )
