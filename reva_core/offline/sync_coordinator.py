# =============================================================================
# reva_core/offline/sync_coordinator.py
# Orchestration of Connectivity, Subscriptions and the Outbox
# =============================================================================
"""
SyncCoordinator - Single entry point the app talks to.

Features:
- idle -> syncing -> idle state machine driven by connectivity and the outbox
- Resume channels and drain the outbox when connectivity returns
- Suspend channels (registrations kept) when it is lost or the user signs out
- Remote events merged into the local store before consumers see them
- Catch-up pull whenever a channel (re)connects
- Health snapshots for status observers and the diagnostics dashboard
- Explicit conflict resolution and dead-letter retry/discard
"""

from __future__ import annotations
import asyncio
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set
import logging

from reva_core.config import SyncSettings
from reva_core.data.remote import RealtimeTransport, RemoteApi
from reva_core.errors import (
    ConfigurationError,
    EntityNotFoundError,
    UnknownTableError,
    handle_error,
    invoke_callback,
)
from reva_core.offline.connectivity_monitor import ConnectivityMonitor
from reva_core.offline.local_store import LocalStore
from reva_core.offline.models import (
    AuthEvent,
    AuthEventType,
    ChangeEvent,
    ChangeType,
    CoordinatorState,
    Entity,
    EntityChange,
    EntityState,
    HealthStatus,
    MergeResult,
    MutationOperation,
    OutboxEntry,
    SubscriptionState,
    SyncStatus,
    compare_revisions,
    parse_timestamp,
)
from reva_core.offline.outbox_processor import DrainReport, OutboxProcessor
from reva_core.offline.subscription_manager import (
    SubscriptionCallbacks,
    SubscriptionHandle,
    SubscriptionManager,
    channel_key_str,
    parse_filter,
)

logger = logging.getLogger(__name__)

StatusListener = Callable[[HealthStatus], Any]
EntityListener = Callable[[EntityChange], Any]

STALE_ENTITIES_KEY = "stale_entities"
AGENT_STATUS_KEY = "agent_status"

_MISSING = object()


def mark_entity_stale(store: LocalStore, table: str, entity_id: str) -> None:
    """Queue an entity for a refresh from the server on the next sync."""
    with store.transaction():
        stale = store.get_meta(STALE_ENTITIES_KEY, [])
        if [table, entity_id] not in stale:
            stale.append([table, entity_id])
            store.set_meta(STALE_ENTITIES_KEY, stale)


@dataclass
class _Watch:
    table: str
    filter_expr: Optional[str]
    subscription: SubscriptionHandle
    listeners: Dict[str, Optional[EntityListener]] = field(default_factory=dict)


class WatchHandle:
    """Disposable registration returned by SyncCoordinator.watch()."""

    def __init__(self, coordinator: SyncCoordinator, watch_id: str,
                 table: str, filter_expr: Optional[str]):
        self._coordinator = coordinator
        self.watch_id = watch_id
        self.table = table
        self.filter_expr = filter_expr
        self.disposed = False

    @property
    def key(self) -> str:
        return channel_key_str(self.table, self.filter_expr)

    @property
    def state(self) -> Optional[SubscriptionState]:
        return self._coordinator.subscriptions.get_status(self.table, self.filter_expr)

    async def dispose(self) -> None:
        if not self.disposed:
            await self._coordinator.unwatch(self)

    def __repr__(self) -> str:
        return f"WatchHandle({self.key!r}, id={self.watch_id[:8]})"


class SyncCoordinator:
    """
    Wires the sync components together.

    Build one with create_sync_coordinator() and keep the reference; there
    is no global instance.

    Usage:
        coordinator = await create_sync_coordinator(settings)
        await coordinator.start()
        coordinator.watch("tasks", "user_id=eq.42", on_change=render)
        task = coordinator.create("tasks", {"title": "Buy milk"})
    """

    def __init__(
        self,
        settings: SyncSettings,
        store: LocalStore,
        monitor: ConnectivityMonitor,
        subscriptions: SubscriptionManager,
        outbox: OutboxProcessor,
        remote: Optional[RemoteApi] = None,
        auth_events: Optional[AsyncIterator[AuthEvent]] = None,
    ):
        self.settings = settings
        self.store = store
        self.monitor = monitor
        self.subscriptions = subscriptions
        self.outbox = outbox
        self.remote = remote
        self.auth_events = auth_events

        self._state = CoordinatorState.STOPPED
        self._signed_out = False
        self._watches: Dict[str, _Watch] = {}
        self._status_listeners: List[StatusListener] = []
        self._tasks: Set[asyncio.Task] = set()
        self._background_drain: Optional[asyncio.Task] = None
        self._removers: List[Callable[[], None]] = []
        self._refresh_lock = asyncio.Lock()

        # The processor only drains while we are online and signed in
        self.outbox.is_online = self.is_online

    @property
    def state(self) -> CoordinatorState:
        return self._state

    def is_online(self) -> bool:
        return self.monitor.is_online and not self._signed_out

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self, probe: bool = True) -> None:
        """
        Start consuming connectivity and auth streams.

        Args:
            probe: Also run the periodic reachability probe
        """
        if self._state != CoordinatorState.STOPPED:
            return
        if self.subscriptions.is_closed:
            raise RuntimeError("Sync coordinator was stopped; create a new one to restart")

        self.store.initialize()
        self._removers.append(self.subscriptions.add_status_listener(self._on_channel_status))
        self._removers.append(self.outbox.add_listener(self._on_outbox_event))
        self._set_state(CoordinatorState.IDLE)

        self._spawn(self._consume_connectivity(), "connectivity-stream")
        if self.auth_events is not None:
            self._spawn(self._consume_auth(), "auth-stream")
        # Let the stream consumers attach before any transition can fire
        await asyncio.sleep(0)
        if probe:
            await self.monitor.start()

        logger.info(
            f"Sync coordinator started ({'online' if self.monitor.is_online else 'offline'}, "
            f"{self.store.pending_count()} pending)"
        )
        if self.is_online():
            self._schedule_drain()
        else:
            await self.subscriptions.suspend_all()

    async def stop(self) -> None:
        """Cancel every background task, channel and in-flight drain."""
        if self._state == CoordinatorState.STOPPED:
            return
        self._state = CoordinatorState.STOPPED

        for remove in self._removers:
            remove()
        self._removers.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._background_drain = None

        await self.outbox.cancel()
        await self.subscriptions.close()
        await self.monitor.stop()
        self._watches.clear()
        logger.info("Sync coordinator stopped")
        self._notify_status()

    async def close(self) -> None:
        """Stop and release the local database."""
        await self.stop()
        self.store.close()

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            handle_error(exc, context=f"Background task {task.get_name()}")

    async def _consume_connectivity(self) -> None:
        async for online in self.monitor.changes():
            await self.handle_connectivity_change(online)

    async def _consume_auth(self) -> None:
        async for event in self.auth_events:
            await self.handle_auth_event(event)

    def _set_state(self, state: CoordinatorState) -> None:
        if self._state == state or self._state == CoordinatorState.STOPPED and state != CoordinatorState.IDLE:
            return
        logger.debug(f"Coordinator {self._state.value} -> {state.value}")
        self._state = state
        self._notify_status()

    # =========================================================================
    # CONNECTIVITY & AUTH
    # =========================================================================

    async def handle_connectivity_change(self, online: bool) -> None:
        """React to an online/offline transition."""
        if self._state == CoordinatorState.STOPPED:
            return
        if online:
            if not self._signed_out:
                self.subscriptions.reconnect_all()
                self._schedule_drain()
        else:
            await self.subscriptions.suspend_all()
        self._notify_status()

    async def handle_auth_event(self, event: AuthEvent) -> None:
        """Apply a session change from the auth collaborator."""
        if event.type == AuthEventType.SIGNED_OUT:
            logger.info("Signed out: suspending sync")
            self._signed_out = True
            await self.outbox.cancel()
            await self.subscriptions.suspend_all()
        elif event.type == AuthEventType.SIGNED_IN:
            logger.info(f"Signed in{' as ' + event.user_id if event.user_id else ''}: resuming sync")
            self._signed_out = False
            if self.is_online():
                self.subscriptions.reconnect_all()
                self._schedule_drain()
        else:
            logger.debug("Auth token refreshed")
        self._notify_status()

    # =========================================================================
    # DRAINING
    # =========================================================================

    def _schedule_drain(self) -> None:
        if self._state == CoordinatorState.STOPPED or not self.is_online():
            return
        if self.store.pending_count() == 0:
            return
        if self._background_drain is not None and not self._background_drain.done():
            return
        try:
            self._background_drain = self._spawn(self._run_drain(), "coordinator-drain")
        except RuntimeError:
            logger.debug("No running event loop; drain deferred until the next sync")

    async def _run_drain(self) -> DrainReport:
        self._set_state(CoordinatorState.SYNCING)
        try:
            while True:
                report = await self.outbox.drain()
                # Connectivity may have flapped back while the drain was winding down
                if not (report.interrupted and self.is_online()):
                    return report
        finally:
            if self._state != CoordinatorState.STOPPED:
                self._set_state(CoordinatorState.IDLE)

    async def sync_now(self) -> DrainReport:
        """Drain the outbox and pull missed changes for every watched channel."""
        if self._state == CoordinatorState.STOPPED:
            raise RuntimeError("Sync coordinator is not running")
        report = await self._run_drain()
        if self.is_online():
            for key_str in list(self._watches):
                await self._catch_up(key_str)
            await self._refresh_stale_entities()
        return report

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def _check_table(self, table: str) -> None:
        if table not in self.settings.tables:
            raise UnknownTableError(table, list(self.settings.tables))

    def _mutate(
        self,
        table: str,
        operation: MutationOperation,
        payload: Optional[Dict[str, Any]],
        entity_id: Optional[str],
    ) -> OutboxEntry:
        self._check_table(table)
        entry = self.outbox.enqueue(table, operation, payload, entity_id)
        self._schedule_drain()
        return entry

    def create(self, table: str, payload: Dict[str, Any], entity_id: Optional[str] = None) -> Entity:
        """Create an entity locally and queue it; returns the optimistic entity."""
        entry = self._mutate(table, MutationOperation.CREATE, payload, entity_id)
        return self.store.get_entity(table, entry.entity_id)

    def update(self, table: str, entity_id: str, changes: Dict[str, Any]) -> Entity:
        entry = self._mutate(table, MutationOperation.UPDATE, changes, entity_id)
        return self.store.get_entity(table, entry.entity_id)

    def delete(self, table: str, entity_id: str) -> OutboxEntry:
        return self._mutate(table, MutationOperation.DELETE, None, entity_id)

    # =========================================================================
    # REMOTE CHANGES
    # =========================================================================

    def watch(
        self,
        table: str,
        filter_expr: Optional[str] = None,
        on_change: Optional[EntityListener] = None,
    ) -> WatchHandle:
        """
        Subscribe to remote changes of a table.

        Watchers of the same (table, filter) share one channel subscription.
        Every event is merged into the local store once; each on_change then
        receives the merged EntityChange (ignored events are not forwarded).
        """
        self._check_table(table)
        spec = parse_filter(filter_expr)
        filter_expr = spec.raw if spec else None
        key_str = channel_key_str(table, filter_expr)

        watch = self._watches.get(key_str)
        if watch is None:
            handle = self.subscriptions.subscribe(
                table,
                filter_expr,
                SubscriptionCallbacks(on_event=lambda event: self._on_remote_event(key_str, event)),
            )
            watch = _Watch(table=table, filter_expr=filter_expr, subscription=handle)
            self._watches[key_str] = watch

        watch_id = uuid.uuid4().hex
        watch.listeners[watch_id] = on_change
        return WatchHandle(self, watch_id, table, filter_expr)

    async def unwatch(self, handle: WatchHandle) -> None:
        """Remove one watcher; the channel subscription goes with the last one."""
        handle.disposed = True
        watch = self._watches.get(handle.key)
        if watch is None or watch.listeners.pop(handle.watch_id, _MISSING) is _MISSING:
            return
        if not watch.listeners:
            del self._watches[handle.key]
            await watch.subscription.dispose()

    def _on_remote_event(self, key_str: str, event: ChangeEvent) -> MergeResult:
        result = self._merge_remote_event(key_str, event)
        watch = self._watches.get(key_str)
        if watch is None or result == MergeResult.IGNORED:
            return result

        entity_id = event.entity_id
        change = EntityChange(event.table, entity_id, self.store.get_entity(event.table, entity_id), "remote")
        for listener in list(watch.listeners.values()):
            if listener is not None:
                invoke_callback(listener, change, label=f"watch callback on {key_str}")
        return result

    def _merge_remote_event(self, key_str: str, event: ChangeEvent) -> MergeResult:
        result = self.store.merge_remote(event, self.settings.idempotency_field)
        self._advance_cursor(key_str, event.revision)
        if result in (MergeResult.APPLIED, MergeResult.DELETED):
            self.store.mark_synced(event.table)
        if result == MergeResult.CONFLICT:
            self._notify_status()
        return result


    def _advance_cursor(self, key_str: str, revision: Optional[str]) -> None:
        if revision is None:
            return
        meta_key = f"cursor:{key_str}"
        if compare_revisions(revision, self.store.get_meta(meta_key)) > 0:
            self.store.set_meta(meta_key, str(revision))

    def _on_channel_status(self, key_str: str, state: SubscriptionState) -> None:
        if state == SubscriptionState.CONNECTED and key_str in self._watches:
            self._spawn(self._catch_up(key_str), f"catch-up:{key_str}")
            if self.store.get_meta(STALE_ENTITIES_KEY):
                self._spawn(self._refresh_stale_entities(), "refresh-stale")
        self._notify_status()

    async def _catch_up(self, key_str: str) -> int:
        """
        Pull rows changed since the channel's cursor and merge them.

        Returns:
            Number of rows merged
        """
        if self.remote is None or key_str not in self._watches:
            return 0
        watch = self._watches[key_str]
        table, filter_expr = watch.table, watch.filter_expr
        since = self.store.get_meta(f"cursor:{key_str}")
        try:
            rows = await self.remote.fetch_since(
                table, since, parse_filter(filter_expr), limit=self.settings.catch_up_page_size
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            handle_error(e, context=f"Catch-up for {key_str}")
            return 0

        for row in rows:
            revision = row.get(self.settings.revision_field)
            event = ChangeEvent(
                table=table,
                change_type=ChangeType.UPDATE,
                record=row,
                revision=None if revision is None else str(revision),
            )
            self._merge_remote_event(key_str, event)
        if rows:
            logger.info(f"Catch-up merged {len(rows)} row(s) for {key_str}")
        self.store.mark_synced(table)
        return len(rows)

    # =========================================================================
    # CONFLICTS & DEAD LETTERS
    # =========================================================================

    def resolve_conflict(self, table: str, entity_id: str, keep: str = "local") -> Optional[Entity]:
        """
        Resolve a flagged conflict.

        keep="local" rebases the pending edits onto the remote revision (a
        remotely deleted entity is re-created); keep="remote" drops the local
        edits and adopts the remote snapshot.
        """
        if keep not in ("local", "remote"):
            raise ValueError(f"keep must be 'local' or 'remote', got {keep!r}")

        entity = self.store.get_entity(table, entity_id, include_deleted=True)
        if entity is None or entity.state != EntityState.CONFLICT:
            raise EntityNotFoundError(table, entity_id)

        if keep == "remote" or (entity.conflict_deleted and entity.deleted):
            result = self.store.clear_conflict(table, entity_id, keep_local=False)
        elif entity.conflict_deleted:
            payload = {
                k: v for k, v in entity.payload.items()
                if k not in ("id", self.settings.revision_field, self.settings.idempotency_field)
            }
            recreate = OutboxEntry(
                idempotency_key=str(uuid.uuid4()),
                entity_type=table,
                entity_id=entity_id,
                operation=MutationOperation.CREATE,
                payload=payload,
            )
            with self.store.transaction():
                self.store.replace_entries_for_entity(table, entity_id, recreate)
                result = self.store.clear_conflict(table, entity_id, keep_local=True)
        else:
            result = self.store.clear_conflict(table, entity_id, keep_local=True)

        logger.info(f"Resolved conflict on {table}/{entity_id} keeping {keep}")
        self._schedule_drain()
        self._notify_status()
        return result

    def retry_dead_letter(self, idempotency_key: str) -> OutboxEntry:
        entry = self.outbox.retry_dead_letter(idempotency_key)
        self._schedule_drain()
        return entry

    async def discard_dead_letter(self, idempotency_key: str) -> OutboxEntry:
        """Drop a dead-lettered mutation and restore the entity from the server."""
        entry = self.outbox.discard_dead_letter(idempotency_key)
        mark_entity_stale(self.store, entry.entity_type, entry.entity_id)
        if self.is_online():
            await self._refresh_stale_entities()
        return entry

    async def _refresh_stale_entities(self) -> None:
        """Refetch entities marked stale; marks added meanwhile stay queued."""
        if self.remote is None:
            return
        async with self._refresh_lock:
            refreshed = []
            for table, entity_id in self.store.get_meta(STALE_ENTITIES_KEY, []):
                try:
                    record = await self.remote.fetch(table, entity_id)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    handle_error(e, context=f"Refreshing {table}/{entity_id}")
                    continue
                revision = record.get(self.settings.revision_field) if record else None
                self.store.reset_entity(table, entity_id, record, None if revision is None else str(revision))
                refreshed.append([table, entity_id])

            if refreshed:
                with self.store.transaction():
                    stale = self.store.get_meta(STALE_ENTITIES_KEY, [])
                    self.store.set_meta(STALE_ENTITIES_KEY, [item for item in stale if item not in refreshed])

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_entity(self, table: str, entity_id: str) -> Optional[Entity]:
        return self.store.get_entity(table, entity_id)

    def list_entities(self, table: str, state: Optional[EntityState] = None) -> List[Entity]:
        return self.store.list_entities(table, state)

    def get_entity_state(self, table: str, entity_id: str) -> Optional[EntityState]:
        entity = self.store.get_entity(table, entity_id, include_deleted=True)
        return entity.state if entity else None

    def get_sync_status(self, entity_type: str) -> SyncStatus:
        return SyncStatus(
            entity_type=entity_type,
            connected_subscriptions=self.subscriptions.connected_count(entity_type),
            pending_count=self.outbox.get_pending_count(entity_type),
            last_synced_at=self.store.get_last_synced(entity_type),
        )

    def get_health_status(self) -> HealthStatus:
        return HealthStatus(
            state=self._state,
            is_online=self.is_online(),
            subscriptions=self.subscriptions.get_all_statuses(),
            pending_count=self.outbox.get_pending_count(),
            dead_letter_count=self.store.dead_letter_count(),
            conflict_count=self.store.conflict_count(),
            last_sync_at=parse_timestamp(self.store.get_meta("last_synced")),
            per_type={t: self.get_sync_status(t) for t in self.settings.tables},
        )

    def publish_status(self) -> Dict[str, Any]:
        """
        Record the live health and channel details in the local store.

        The diagnostics dashboard runs in another process and reads this
        report from there.
        """
        report = {
            "health": self.get_health_status().to_dict(),
            "channels": self.subscriptions.get_channel_info(),
        }
        self.store.set_meta(AGENT_STATUS_KEY, report)
        return report

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Register listener(HealthStatus); returns a function that removes it."""
        self._status_listeners.append(listener)

        def remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return remove

    def add_entity_listener(self, listener: EntityListener) -> Callable[[], None]:
        """Register listener(EntityChange) for every committed entity change."""
        return self.store.add_change_listener(listener)

    def _on_outbox_event(self, event: str, entry: OutboxEntry) -> None:
        self._notify_status()

    def _notify_status(self) -> None:
        if not self._status_listeners:
            return
        try:
            health = self.get_health_status()
        except Exception as e:
            handle_error(e, context="Building health status")
            return
        for listener in list(self._status_listeners):
            invoke_callback(listener, health, label="status listener")


async def create_sync_coordinator(
    settings: Optional[SyncSettings] = None,
    client: Any = None,
    remote: Optional[RemoteApi] = None,
    transport: Optional[RealtimeTransport] = None,
    auth_events: Optional[AsyncIterator[AuthEvent]] = None,
    store: Optional[LocalStore] = None,
    monitor: Optional[ConnectivityMonitor] = None,
) -> SyncCoordinator:
    """
    Build a fully wired coordinator.

    With no remote collaborators given, an async Supabase client is created
    from settings and the Supabase adapters are used.
    """
    if settings is None:
        from reva_core.config import load_settings
        settings = load_settings()

    if remote is None or transport is None:
        from reva_core.data.supabase_client import (
            SupabaseRealtimeTransport,
            SupabaseRemoteApi,
            create_supabase_client,
            supabase_auth_events,
        )
        if client is None:
            client = await create_supabase_client(settings)
        remote = remote or SupabaseRemoteApi(client, settings.revision_field, settings.idempotency_field)
        transport = transport or SupabaseRealtimeTransport(
            client,
            schema=settings.schema,
            revision_field=settings.revision_field,
            subscribe_timeout=settings.channel_subscribe_timeout,
        )
        if auth_events is None:
            auth_events = supabase_auth_events(client)

    if remote is None or transport is None:
        raise ConfigurationError("Both a remote API and a realtime transport are required")

    store = store or LocalStore(settings.db_path)
    store.initialize()
    monitor = monitor or ConnectivityMonitor(
        supabase_url=settings.supabase_url,
        check_interval_online=settings.check_interval_online,
        check_interval_offline=settings.check_interval_offline,
        connection_timeout=settings.connection_timeout,
    )
    subscriptions = SubscriptionManager(
        transport,
        tables=settings.tables,
        backoff_base=settings.channel_backoff_base,
        backoff_cap=settings.channel_backoff_cap,
    )
    outbox = OutboxProcessor(
        store,
        remote,
        max_attempts=settings.outbox_max_attempts,
        retry_base_delay=settings.retry_base_delay,
        retry_max_delay=settings.retry_max_delay,
        max_concurrency=settings.max_concurrency,
        revision_field=settings.revision_field,
    )
    return SyncCoordinator(
        settings, store, monitor, subscriptions, outbox, remote=remote, auth_events=auth_events
    )
