# =============================================================================
# reva_core/offline/outbox_processor.py
# Durable Mutation Queue with Retry, Backoff and Dead-Lettering
# =============================================================================
"""
OutboxProcessor - Replays locally-made mutations against the backend.

Features:
- Optimistic local write and outbox append in one transaction
- Idempotency key per mutation, assigned at enqueue time
- FIFO per entity, concurrent across entities (bounded)
- Transient failures retried with full-jitter backoff up to max_attempts
- Permanent failures dead-lettered immediately, conflicts held for resolution
- Concurrent drain() calls coalesce onto a single running drain
"""

from __future__ import annotations
import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
import logging

from reva_core.data.remote import RemoteApi, RemoteResult
from reva_core.errors import (
    ErrorClassification,
    RevisionConflictError,
    classify_error,
    handle_error,
    invoke_callback,
)
from reva_core.logging import LogContext
from reva_core.offline.backoff import compute_backoff
from reva_core.offline.local_store import LocalStore
from reva_core.offline.models import (
    DeadLetterReason,
    EntityState,
    MutationOperation,
    OutboxEntry,
    OutboxStatus,
)

logger = logging.getLogger(__name__)

OutboxListener = Callable[[str, OutboxEntry], Any]


@dataclass
class DrainReport:
    """Outcome counters of one drain run."""
    acknowledged: int = 0
    retried: int = 0
    dead_lettered: int = 0
    conflicts: int = 0
    errors: int = 0
    remaining: int = 0
    interrupted: bool = False   # Stopped because connectivity was lost

    @property
    def progressed(self) -> int:
        return self.acknowledged + self.dead_lettered + self.conflicts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "acknowledged": self.acknowledged,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "conflicts": self.conflicts,
            "errors": self.errors,
            "remaining": self.remaining,
            "interrupted": self.interrupted,
        }


class OutboxProcessor:
    """
    Delivers outbox entries to the remote API.

    Usage:
        processor = OutboxProcessor(store, remote_api, is_online=monitor_flag)
        entry = processor.enqueue("tasks", MutationOperation.CREATE, {"title": "Buy milk"})
        report = await processor.drain()
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteApi,
        is_online: Callable[[], bool] = lambda: True,
        max_attempts: int = 5,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        max_concurrency: int = 4,
        revision_field: str = "updated_at",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.remote = remote
        self.is_online = is_online
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.max_concurrency = max_concurrency
        self.revision_field = revision_field
        self._sleep = sleep

        self._semaphore: Optional[asyncio.Semaphore] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._listeners: List[OutboxListener] = []

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    # =========================================================================
    # ENQUEUE
    # =========================================================================

    def enqueue(
        self,
        table: str,
        operation: Union[MutationOperation, str],
        payload: Optional[Dict[str, Any]] = None,
        entity_id: Optional[str] = None,
    ) -> OutboxEntry:
        """
        Record a mutation locally and queue it for delivery.

        The optimistic entity write and the outbox append commit together.

        Args:
            table: Entity type (table name)
            operation: create, update or delete
            payload: Full record for creates, changed fields for updates
            entity_id: Required for update/delete; generated for creates

        Returns:
            The persisted OutboxEntry
        """
        operation = MutationOperation(operation)
        payload = dict(payload or {})
        entity_id = entity_id or payload.get("id")

        if entity_id is None:
            if operation != MutationOperation.CREATE:
                raise ValueError(f"{operation.value} on {table} requires an entity_id")
            entity_id = str(uuid.uuid4())
        entity_id = str(entity_id)
        payload.pop("id", None)

        entry = OutboxEntry(
            idempotency_key=str(uuid.uuid4()),
            entity_type=table,
            entity_id=entity_id,
            operation=operation,
            payload=payload,
        )
        with self.store.transaction():
            self.store.apply_local_write(table, entity_id, operation, payload)
            self.store.append_outbox(entry)

        logger.debug(f"Enqueued {operation.value} {table}/{entity_id} (key {entry.idempotency_key})")
        self._notify("enqueued", entry)
        return entry

    # =========================================================================
    # DRAIN
    # =========================================================================

    async def drain(self) -> DrainReport:
        """
        Deliver pending entries while online.

        A call made while a drain is already running joins that drain; the
        running drain keeps picking up entries enqueued in the meantime.
        """
        if not self.is_draining:
            self._drain_task = asyncio.get_running_loop().create_task(
                self._drain_all(), name="outbox-drain"
            )
        return await asyncio.shield(self._drain_task)

    async def _drain_all(self) -> DrainReport:
        report = DrainReport()
        self._semaphore = asyncio.Semaphore(self.max_concurrency)

        with LogContext(logger, "Draining outbox"):
            while True:
                if not self.is_online():
                    report.interrupted = True
                    break

                lanes: List[Tuple[str, str]] = []
                for entry in self.store.ready_entries():
                    if entry.entity_key not in lanes:
                        lanes.append(entry.entity_key)
                if not lanes:
                    break

                before = report.progressed
                await asyncio.gather(*(self._drain_lane(key, report) for key in lanes))
                if report.progressed == before:
                    # Nothing moved (offline or repeated internal errors)
                    report.interrupted = not self.is_online()
                    break

        report.remaining = self.store.pending_count()
        logger.info(
            f"Drain finished: {report.acknowledged} acked, {report.dead_lettered} dead-lettered, "
            f"{report.conflicts} conflicts, {report.remaining} remaining"
        )
        return report

    async def _drain_lane(self, entity_key: Tuple[str, str], report: DrainReport) -> None:
        """Deliver one entity's entries strictly in order."""
        table, entity_id = entity_key
        while self.is_online():
            entries = self.store.entries_for_entity(table, entity_id)
            if not entries or entries[0].status == OutboxStatus.CONFLICT:
                return
            entity = self.store.get_entity(table, entity_id, include_deleted=True)
            if entity is not None and entity.state == EntityState.CONFLICT:
                return
            try:
                if not await self._deliver(entries[0], report):
                    return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                report.errors += 1
                handle_error(e, context=f"Outbox lane {table}/{entity_id}")
                return

    async def _deliver(self, entry: OutboxEntry, report: DrainReport) -> bool:
        """
        Attempt one entry.

        Returns:
            False when the lane must stop (conflict hold or offline)
        """
        try:
            async with self._semaphore:
                result = await self._send(entry)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            classification = classify_error(e)

            if classification == ErrorClassification.CONFLICT:
                current = e.current_record if isinstance(e, RevisionConflictError) else None
                revision = None
                if current is not None and current.get(self.revision_field) is not None:
                    revision = str(current[self.revision_field])
                self.store.hold_for_conflict(entry, current, revision, str(e))
                report.conflicts += 1
                logger.warning(f"Held {entry.operation.value} {entry.entity_type}/{entry.entity_id}: {e}")
                self._notify("conflict", entry)
                return False

            if classification == ErrorClassification.PERMANENT:
                self.store.move_to_dead_letter(entry, DeadLetterReason.PERMANENT, str(e))
                report.dead_lettered += 1
                logger.error(f"Dead-lettered {entry.entity_type}/{entry.entity_id} (permanent): {e}")
                self._notify("dead_lettered", entry)
                return True

            attempts = self.store.record_failed_attempt(entry.idempotency_key, str(e))
            entry.attempts = attempts
            entry.last_error = str(e)
            if attempts >= self.max_attempts:
                self.store.move_to_dead_letter(entry, DeadLetterReason.RETRIES_EXHAUSTED, str(e))
                report.dead_lettered += 1
                logger.error(
                    f"Dead-lettered {entry.entity_type}/{entry.entity_id} after {attempts} attempts: {e}"
                )
                self._notify("dead_lettered", entry)
                return True

            report.retried += 1
            delay = compute_backoff(attempts - 1, self.retry_base_delay, self.retry_max_delay)
            logger.warning(
                f"Transient failure for {entry.entity_type}/{entry.entity_id} "
                f"(attempt {attempts}/{self.max_attempts}): {e}. Retrying in {delay:.1f}s"
            )
            self._notify("retry", entry)
            await self._sleep(delay)
            return True

        self.store.acknowledge(entry, result.record, result.revision)
        self.store.mark_synced(entry.entity_type)
        report.acknowledged += 1
        if result.replayed:
            logger.info(f"Acknowledged replay of {entry.idempotency_key} without re-applying")
        self._notify("acknowledged", entry)
        return True

    async def _send(self, entry: OutboxEntry) -> RemoteResult:
        entity = self.store.get_entity(entry.entity_type, entry.entity_id, include_deleted=True)
        base_revision = entity.revision if entity is not None else None

        if entry.operation == MutationOperation.CREATE:
            return await self.remote.create(
                entry.entity_type, entry.entity_id, entry.payload, entry.idempotency_key
            )
        if entry.operation == MutationOperation.UPDATE:
            return await self.remote.update(
                entry.entity_type, entry.entity_id, entry.payload, entry.idempotency_key, base_revision
            )
        return await self.remote.delete(
            entry.entity_type, entry.entity_id, entry.idempotency_key, base_revision
        )

    async def cancel(self) -> None:
        """Cancel an in-flight drain; entries stay in the outbox."""
        task, self._drain_task = self._drain_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Outbox drain cancelled")

    # =========================================================================
    # DEAD LETTER
    # =========================================================================

    def retry_dead_letter(self, idempotency_key: str) -> OutboxEntry:
        """Requeue a dead-lettered entry with a fresh attempt budget."""
        entry = self.store.requeue_dead_letter(idempotency_key)
        logger.info(f"Requeued dead-lettered entry {idempotency_key}")
        self._notify("enqueued", entry)
        return entry

    def discard_dead_letter(self, idempotency_key: str) -> OutboxEntry:
        entry = self.store.discard_dead_letter(idempotency_key)
        logger.info(f"Discarded dead-lettered entry {idempotency_key}")
        self._notify("discarded", entry)
        return entry

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_pending_count(self, entity_type: Optional[str] = None) -> int:
        return self.store.pending_count(entity_type)

    def get_pending_entries(self) -> List[OutboxEntry]:
        return self.store.outbox_entries()

    def get_dead_letter_entries(self) -> List[OutboxEntry]:
        return self.store.dead_letter_entries()

    # =========================================================================
    # LISTENERS
    # =========================================================================

    def add_listener(self, listener: OutboxListener) -> Callable[[], None]:
        """
        Register listener(event, entry) for outbox events.

        Events: enqueued, acknowledged, retry, conflict, dead_lettered, discarded.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, event: str, entry: OutboxEntry) -> None:
        for listener in list(self._listeners):
            invoke_callback(listener, event, entry, label="outbox listener")
