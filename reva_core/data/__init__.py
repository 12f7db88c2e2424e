# =============================================================================
# reva_core/data/__init__.py
# Remote Collaborators (Supabase)
# =============================================================================

from .remote import (
    RemoteApi,
    RealtimeTransport,
    RemoteResult,
    FilterSpec,
)

__all__ = [
    "RemoteApi",
    "RealtimeTransport",
    "RemoteResult",
    "FilterSpec",
]
