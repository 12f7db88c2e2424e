# =============================================================================
# reva_core/errors/__init__.py
# Centralized Error Handling for the Reva Sync Core
# =============================================================================

from .exceptions import (
    ErrorClassification,
    SyncCoreError,
    ConfigurationError,
    UnknownTableError,
    InvalidFilterError,
    ChannelError,
    RemoteApiError,
    TransientRemoteError,
    PermanentRemoteError,
    RevisionConflictError,
    LocalStoreError,
    EntityNotFoundError,
    OutboxEntryNotFoundError,
)

from .handlers import (
    handle_error,
    classify_error,
    invoke_callback,
    error_boundary,
)

__all__ = [
    # Exceptions
    "ErrorClassification",
    "SyncCoreError",
    "ConfigurationError",
    "UnknownTableError",
    "InvalidFilterError",
    "ChannelError",
    "RemoteApiError",
    "TransientRemoteError",
    "PermanentRemoteError",
    "RevisionConflictError",
    "LocalStoreError",
    "EntityNotFoundError",
    "OutboxEntryNotFoundError",
    # Handlers
    "handle_error",
    "classify_error",
    "invoke_callback",
    "error_boundary",
]
