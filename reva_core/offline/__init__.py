# =============================================================================
# reva_core/offline/__init__.py
# Offline-Aware Realtime Sync Core for Reva
# =============================================================================
"""
Offline-Aware Sync Module

Keeps the assistant's tasks, expenses, reminders and chat messages usable
with or without a connection. The UI only ever reads the local store; the
rest of the module keeps that store in step with Supabase.

Architecture:
------------
┌─────────────────────────────────────────────────────────────────┐
│                     OFFLINE-AWARE SYNC CORE                      │
├─────────────────────────────────────────────────────────────────┤
│                                                                  │
│   ┌──────────────────────────────────────────────────────────┐  │
│   │                   SyncCoordinator                         │  │
│   │      (create/update/delete, watch, health, conflicts)     │  │
│   └──────────────────────────────────────────────────────────┘  │
│        │                  │                     │                │
│        ▼                  ▼                     ▼                │
│ ┌──────────────┐  ┌───────────────────┐  ┌─────────────────┐    │
│ │ Connectivity │  │SubscriptionManager│  │ OutboxProcessor │    │
│ │   Monitor    │  │ (realtime channels│  │ (retry, backoff,│    │
│ │(online flag) │  │  dedup, fan-out)  │  │  dead-letter)   │    │
│ └──────────────┘  └───────────────────┘  └─────────────────┘    │
│                          │    ▲               │    ▲             │
│                  merge   ▼    │ events        ▼    │ acks        │
│                   ┌────────────────┐    ┌──────────────┐        │
│                   │   LocalStore   │    │   Supabase   │        │
│                   │ (SQLite cache  │    │ (PostgREST + │        │
│                   │   + outbox)    │    │   Realtime)  │        │
│                   └────────────────┘    └──────────────┘        │
└─────────────────────────────────────────────────────────────────┘

Usage:
------
from reva_core.offline import create_sync_coordinator

coordinator = await create_sync_coordinator()
await coordinator.start()

coordinator.watch("tasks", "user_id=eq.42", on_change=refresh_list)
task = coordinator.create("tasks", {"title": "Buy milk"})

health = coordinator.get_health_status()
print(health.pending_count)  # Mutations not yet acknowledged
"""

from reva_core.offline.models import (
    Entity,
    EntityState,
    EntityChange,
    OutboxEntry,
    OutboxStatus,
    MutationOperation,
    ChangeEvent,
    ChangeType,
    SubscriptionState,
    DeadLetterReason,
    MergeResult,
    CoordinatorState,
    SyncStatus,
    HealthStatus,
    AuthEvent,
    AuthEventType,
    compare_revisions,
)

from reva_core.offline.backoff import compute_backoff

from reva_core.offline.local_store import LocalStore

from reva_core.offline.connectivity_monitor import ConnectivityMonitor

from reva_core.offline.subscription_manager import (
    SubscriptionManager,
    SubscriptionHandle,
    SubscriptionCallbacks,
    parse_filter,
)

from reva_core.offline.outbox_processor import (
    OutboxProcessor,
    DrainReport,
)

from reva_core.offline.sync_coordinator import (
    SyncCoordinator,
    WatchHandle,
    create_sync_coordinator,
)

__all__ = [
    # Models
    "Entity",
    "EntityState",
    "EntityChange",
    "OutboxEntry",
    "OutboxStatus",
    "MutationOperation",
    "ChangeEvent",
    "ChangeType",
    "SubscriptionState",
    "DeadLetterReason",
    "MergeResult",
    "CoordinatorState",
    "SyncStatus",
    "HealthStatus",
    "AuthEvent",
    "AuthEventType",
    "compare_revisions",
    "compute_backoff",
    # Components
    "LocalStore",
    "ConnectivityMonitor",
    "SubscriptionManager",
    "SubscriptionHandle",
    "SubscriptionCallbacks",
    "parse_filter",
    "OutboxProcessor",
    "DrainReport",
    "SyncCoordinator",
    "WatchHandle",
    "create_sync_coordinator",
]
