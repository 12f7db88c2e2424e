# =============================================================================
# reva_core/offline/local_store.py
# Local SQLite Store: Entity Cache + Durable Mutation Outbox
# =============================================================================
"""
LocalStore - SQLite-backed cache that is the single source of truth for the UI.

Features:
- Cached entity snapshots with revision markers and sync state
- Durable outbox and dead-letter tables surviving process restarts
- Atomic per-entity upserts (one transaction per write, nestable)
- Revision-based merge of remote changes with conflict flagging
- Change listeners notified after commit
- DataFrame export (pandas) for diagnostics
"""

from __future__ import annotations
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union
import logging

import pandas as pd

from reva_core.errors import (
    EntityNotFoundError,
    LocalStoreError,
    OutboxEntryNotFoundError,
    invoke_callback,
)
from reva_core.offline.models import (
    ChangeEvent,
    ChangeType,
    DeadLetterReason,
    Entity,
    EntityChange,
    EntityState,
    MergeResult,
    MutationOperation,
    OutboxEntry,
    OutboxStatus,
    compare_revisions,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

ChangeListener = Callable[[EntityChange], Any]


class LocalStore:
    """
    Local SQLite store for cached entities and pending mutations.

    All writers (remote merge, outbox reconcile, optimistic user edits) go
    through this class so every change lands as one transaction per entity.
    """

    # Default database location
    DEFAULT_DB_PATH = Path(__file__).parent.parent.parent / "local_data" / "reva_cache.db"

    SCHEMA = {
        "entities": """
            CREATE TABLE IF NOT EXISTS entities (
                table_name TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                revision TEXT,
                state TEXT NOT NULL DEFAULT 'synced',
                deleted INTEGER NOT NULL DEFAULT 0,
                conflict_json TEXT,
                conflict_revision TEXT,
                conflict_deleted INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (table_name, entity_id)
            )
        """,
        "outbox": """
            CREATE TABLE IF NOT EXISTS outbox (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                idempotency_key TEXT NOT NULL UNIQUE,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                payload_json TEXT,
                created_at TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_attempt TEXT,
                last_error TEXT,
                status TEXT NOT NULL DEFAULT 'pending'
            )
        """,
        "dead_letter": """
            CREATE TABLE IF NOT EXISTS dead_letter (
                idempotency_key TEXT PRIMARY KEY,
                seq INTEGER,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                payload_json TEXT,
                created_at TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                reason TEXT NOT NULL,
                dead_lettered_at TEXT NOT NULL
            )
        """,
        "sync_meta": """
            CREATE TABLE IF NOT EXISTS sync_meta (
                key TEXT PRIMARY KEY,
                value TEXT,
                updated_at TEXT NOT NULL
            )
        """,
        "outbox_entity_index": """
            CREATE INDEX IF NOT EXISTS idx_outbox_entity
            ON outbox (entity_type, entity_id, seq)
        """,
    }

    def __init__(self, db_path: Optional[Union[Path, str]] = None):
        """
        Initialize local store.

        Args:
            db_path: Path to SQLite database file, or ":memory:"
        """
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self._queued_changes: List[EntityChange] = []
        self._listeners: List[ChangeListener] = []
        self._initialized = False

    @property
    def is_memory(self) -> bool:
        return str(self.db_path) == ":memory:"

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            if not self.is_memory:
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            # Autocommit mode; transactions are opened explicitly in transaction()
            self._connection = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None,
            )
            self._connection.row_factory = sqlite3.Row
            self._configure(self._connection)
        return self._connection

    def _configure(self, conn: sqlite3.Connection) -> None:
        if self.is_memory:
            return
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
        except sqlite3.Error as e:
            logger.warning(f"Could not enable WAL mode, falling back to DELETE mode: {e}")
            conn.execute("PRAGMA journal_mode=DELETE")
            conn.execute("PRAGMA synchronous=FULL")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for database transactions.

        Nested use joins the outer transaction, so callers can compose an
        optimistic entity write and an outbox append into one atomic unit.
        Change listeners fire only once the outermost transaction commits.
        """
        with self._lock:
            conn = self._get_connection()
            if self._depth:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                self._queued_changes.clear()
                raise
            else:
                conn.execute("COMMIT")
            finally:
                self._depth = 0

            changes, self._queued_changes = self._queued_changes, []
        for change in changes:
            self._emit(change)

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self.transaction() as conn:
            for name, schema in self.SCHEMA.items():
                try:
                    conn.execute(schema)
                    logger.debug(f"Created/verified schema object: {name}")
                except sqlite3.Error as e:
                    raise LocalStoreError(f"Error creating {name}: {e}", table=name) from e

        self._initialized = True
        logger.info(f"Local store initialized at: {self.db_path}")

    def query(self, sql: str, params: Optional[List] = None) -> List[sqlite3.Row]:
        """Execute a read query."""
        with self._lock:
            return self._get_connection().execute(sql, params or []).fetchall()

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None
                self._initialized = False

    # =========================================================================
    # CHANGE LISTENERS
    # =========================================================================

    def add_change_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """
        Register a listener for committed entity changes.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _queue_change(self, table: str, entity_id: str, source: str) -> None:
        entity = self._read_entity(table, entity_id)
        if entity is not None and entity.deleted:
            entity = None
        self._queued_changes.append(EntityChange(table, entity_id, entity, source))

    def _emit(self, change: EntityChange) -> None:
        for listener in list(self._listeners):
            invoke_callback(listener, change, label="entity change listener")

    # =========================================================================
    # ENTITIES
    # =========================================================================

    def _read_entity(self, table: str, entity_id: str) -> Optional[Entity]:
        row = self._get_connection().execute(
            "SELECT * FROM entities WHERE table_name = ? AND entity_id = ?",
            [table, entity_id],
        ).fetchone()
        return Entity.from_row(row) if row else None

    def get_entity(self, table: str, entity_id: str, include_deleted: bool = False) -> Optional[Entity]:
        """Get a cached entity (optimistically deleted rows are hidden by default)."""
        with self._lock:
            entity = self._read_entity(table, entity_id)
        if entity is not None and entity.deleted and not include_deleted:
            return None
        return entity

    def list_entities(
        self,
        table: str,
        state: Optional[EntityState] = None,
        include_deleted: bool = False,
    ) -> List[Entity]:
        """Get all cached entities of a table with optional state filtering."""
        sql = "SELECT * FROM entities WHERE table_name = ?"
        params: List[Any] = [table]
        if state is not None:
            sql += " AND state = ?"
            params.append(state.value)
        if not include_deleted:
            sql += " AND deleted = 0"
        sql += " ORDER BY entity_id"
        return [Entity.from_row(row) for row in self.query(sql, params)]

    def _write_entity(self, conn: sqlite3.Connection, entity: Entity) -> None:
        entity.updated_at = utcnow()
        conn.execute(
            """
            INSERT INTO entities (
                table_name, entity_id, payload_json, revision, state, deleted,
                conflict_json, conflict_revision, conflict_deleted, last_error, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (table_name, entity_id) DO UPDATE SET
                payload_json = excluded.payload_json,
                revision = excluded.revision,
                state = excluded.state,
                deleted = excluded.deleted,
                conflict_json = excluded.conflict_json,
                conflict_revision = excluded.conflict_revision,
                conflict_deleted = excluded.conflict_deleted,
                last_error = excluded.last_error,
                updated_at = excluded.updated_at
            """,
            [
                entity.table,
                entity.entity_id,
                json.dumps(entity.payload, default=str),
                None if entity.revision is None else str(entity.revision),
                entity.state.value,
                int(entity.deleted),
                json.dumps(entity.conflict_payload, default=str) if entity.conflict_payload is not None else None,
                None if entity.conflict_revision is None else str(entity.conflict_revision),
                int(entity.conflict_deleted),
                entity.last_error,
                entity.updated_at.isoformat(),
            ],
        )

    def _remove_entity(self, conn: sqlite3.Connection, table: str, entity_id: str) -> None:
        conn.execute(
            "DELETE FROM entities WHERE table_name = ? AND entity_id = ?",
            [table, entity_id],
        )

    def upsert_entity(self, entity: Entity, source: str = "local") -> Entity:
        """Insert or replace a cached entity as one atomic write."""
        with self.transaction() as conn:
            self._write_entity(conn, entity)
            self._queue_change(entity.table, entity.entity_id, source)
        return entity

    def remove_entity(self, table: str, entity_id: str, source: str = "local") -> bool:
        """Drop an entity from the cache."""
        with self.transaction() as conn:
            existed = self._read_entity(table, entity_id) is not None
            self._remove_entity(conn, table, entity_id)
            if existed:
                self._queue_change(table, entity_id, source)
        return existed

    def apply_local_write(
        self,
        table: str,
        entity_id: str,
        operation: MutationOperation,
        payload: Dict[str, Any],
    ) -> Entity:
        """
        Apply an optimistic user edit.

        Creates insert the payload, updates merge the changed fields into
        the cached payload and deletes hide the row until the server
        acknowledges them. The entity is marked pending in every case.
        """
        with self.transaction() as conn:
            entity = self._read_entity(table, entity_id)

            if operation == MutationOperation.CREATE:
                if entity is not None and not entity.deleted:
                    raise LocalStoreError(
                        f"Entity {table}/{entity_id} already exists",
                        table=table,
                        details={"entity_id": entity_id},
                    )
                entity = Entity(table=table, entity_id=entity_id, payload={**payload, "id": entity_id})
            elif entity is None or entity.deleted:
                raise EntityNotFoundError(table, entity_id)
            elif operation == MutationOperation.UPDATE:
                entity.payload = {**entity.payload, **payload}
            else:
                entity.deleted = True

            if entity.state != EntityState.CONFLICT:
                entity.state = EntityState.PENDING
            entity.last_error = None
            self._write_entity(conn, entity)
            self._queue_change(table, entity_id, "local")
        return entity

    # =========================================================================
    # REMOTE MERGE
    # =========================================================================

    def merge_remote(self, event: ChangeEvent, idempotency_field: Optional[str] = None) -> MergeResult:
        """
        Merge a remote change into the cache.

        Highest revision wins. A same-revision change with a different
        payload, or any newer change to an entity that still has local
        mutations in the outbox, is flagged as a conflict instead of
        overwriting local state. Echoes of our own mutations (matching
        idempotency key) are ignored; the outbox reconcile owns those.
        """
        entity_id = event.entity_id
        if entity_id is None:
            logger.warning(f"Ignoring {event.change_type.value} on {event.table} without an id")
            return MergeResult.IGNORED

        table = event.table
        with self.transaction() as conn:
            entity = self._read_entity(table, entity_id)
            pending_keys = self._pending_keys(conn, table, entity_id)
            has_local_edits = bool(pending_keys) or (
                entity is not None and entity.state == EntityState.CONFLICT
            )

            if event.change_type == ChangeType.DELETE:
                if entity is None:
                    return MergeResult.IGNORED
                if has_local_edits:
                    self._flag_conflict(conn, entity, None, event.revision, deleted=True)
                    return MergeResult.CONFLICT
                self._remove_entity(conn, table, entity_id)
                self._queue_change(table, entity_id, "remote")
                return MergeResult.DELETED

            record = dict(event.record)
            if entity is None:
                self._write_entity(conn, Entity(
                    table=table,
                    entity_id=entity_id,
                    payload=record,
                    revision=event.revision,
                ))
                self._queue_change(table, entity_id, "remote")
                return MergeResult.APPLIED

            if has_local_edits:
                if idempotency_field and record.get(idempotency_field) in pending_keys:
                    return MergeResult.IGNORED
                if entity.state == EntityState.CONFLICT:
                    if compare_revisions(event.revision, entity.conflict_revision) > 0:
                        self._flag_conflict(conn, entity, record, event.revision)
                    return MergeResult.CONFLICT
                if compare_revisions(event.revision, entity.revision) <= 0:
                    return MergeResult.IGNORED
                self._flag_conflict(conn, entity, record, event.revision)
                return MergeResult.CONFLICT

            cmp = compare_revisions(event.revision, entity.revision)
            if cmp < 0:
                return MergeResult.IGNORED
            if cmp == 0 and not entity.deleted:
                if record == entity.payload:
                    return MergeResult.IGNORED
                self._flag_conflict(conn, entity, record, event.revision)
                return MergeResult.CONFLICT

            entity.payload = record
            entity.revision = event.revision
            entity.deleted = False
            entity.state = EntityState.SYNCED
            entity.last_error = None
            self._write_entity(conn, entity)
            self._queue_change(table, entity_id, "remote")
            return MergeResult.APPLIED

    def _flag_conflict(
        self,
        conn: sqlite3.Connection,
        entity: Entity,
        record: Optional[Dict[str, Any]],
        revision: Optional[str],
        deleted: bool = False,
    ) -> None:
        entity.state = EntityState.CONFLICT
        entity.conflict_payload = record
        entity.conflict_revision = revision
        entity.conflict_deleted = deleted
        self._write_entity(conn, entity)
        self._queue_change(entity.table, entity.entity_id, "remote")
        logger.warning(
            f"Conflict on {entity.table}/{entity.entity_id}: "
            f"remote {'delete' if deleted else 'revision ' + str(revision)} vs local edits"
        )

    def clear_conflict(
        self,
        table: str,
        entity_id: str,
        keep_local: bool,
    ) -> Optional[Entity]:
        """
        Resolve a flagged conflict.

        keep_local rebases the pending edits onto the remote revision;
        otherwise the remote snapshot replaces the cached entity. Held
        outbox entries are released (keep_local) or dropped (remote wins).

        Returns:
            The entity after resolution, None if it was removed
        """
        with self.transaction() as conn:
            entity = self._read_entity(table, entity_id)
            if entity is None or entity.state != EntityState.CONFLICT:
                raise EntityNotFoundError(table, entity_id)

            if keep_local:
                entity.revision = entity.conflict_revision or entity.revision
                entity.state = EntityState.PENDING
                conn.execute(
                    "UPDATE outbox SET status = ? WHERE entity_type = ? AND entity_id = ?",
                    [OutboxStatus.PENDING.value, table, entity_id],
                )
                if not self._pending_keys(conn, table, entity_id):
                    entity.state = EntityState.SYNCED
                result: Optional[Entity] = entity
            else:
                conn.execute(
                    "DELETE FROM outbox WHERE entity_type = ? AND entity_id = ?",
                    [table, entity_id],
                )
                if entity.conflict_deleted:
                    self._remove_entity(conn, table, entity_id)
                    self._queue_change(table, entity_id, "reconcile")
                    return None
                if entity.conflict_payload is not None:
                    entity.payload = entity.conflict_payload
                    entity.revision = entity.conflict_revision
                entity.deleted = False
                entity.state = EntityState.SYNCED
                result = entity

            entity.conflict_payload = None
            entity.conflict_revision = None
            entity.conflict_deleted = False
            entity.last_error = None
            self._write_entity(conn, entity)
            self._queue_change(table, entity_id, "reconcile")
        return result

    # =========================================================================
    # OUTBOX
    # =========================================================================

    def _pending_keys(self, conn: sqlite3.Connection, table: str, entity_id: str) -> set:
        rows = conn.execute(
            "SELECT idempotency_key FROM outbox WHERE entity_type = ? AND entity_id = ?",
            [table, entity_id],
        ).fetchall()
        return {row["idempotency_key"] for row in rows}

    def append_outbox(self, entry: OutboxEntry, keep_seq: bool = False) -> OutboxEntry:
        """
        Append a mutation to the durable outbox.

        With keep_seq the entry is put back at its previous position
        (entry.seq), ahead of anything queued after it.
        """
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO outbox (
                    seq, idempotency_key, entity_type, entity_id, operation,
                    payload_json, created_at, attempts, last_error, status
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    entry.seq if keep_seq else None,
                    entry.idempotency_key,
                    entry.entity_type,
                    entry.entity_id,
                    entry.operation.value,
                    json.dumps(entry.payload, default=str),
                    entry.created_at.isoformat(),
                    entry.attempts,
                    entry.last_error,
                    entry.status.value,
                ],
            )
            entry.seq = cursor.lastrowid
        return entry

    def get_outbox_entry(self, idempotency_key: str) -> Optional[OutboxEntry]:
        rows = self.query("SELECT * FROM outbox WHERE idempotency_key = ?", [idempotency_key])
        return OutboxEntry.from_row(rows[0]) if rows else None

    def outbox_entries(
        self,
        status: Optional[OutboxStatus] = None,
        entity_type: Optional[str] = None,
    ) -> List[OutboxEntry]:
        """Outbox entries in FIFO (sequence) order."""
        sql = "SELECT * FROM outbox WHERE 1 = 1"
        params: List[Any] = []
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        if entity_type is not None:
            sql += " AND entity_type = ?"
            params.append(entity_type)
        sql += " ORDER BY seq ASC"
        return [OutboxEntry.from_row(row) for row in self.query(sql, params)]

    def entries_for_entity(self, table: str, entity_id: str) -> List[OutboxEntry]:
        rows = self.query(
            "SELECT * FROM outbox WHERE entity_type = ? AND entity_id = ? ORDER BY seq ASC",
            [table, entity_id],
        )
        return [OutboxEntry.from_row(row) for row in rows]

    def ready_entries(self) -> List[OutboxEntry]:
        """
        Entries eligible for delivery.

        Entities flagged as conflicts, or whose outbox holds a conflict-held
        entry, are skipped as a whole so later edits never overtake the held one.
        """
        rows = self.query(
            """
            SELECT * FROM outbox o
            WHERE o.status = ?
              AND NOT EXISTS (
                  SELECT 1 FROM outbox h
                  WHERE h.entity_type = o.entity_type
                    AND h.entity_id = o.entity_id
                    AND h.status = ?
              )
              AND NOT EXISTS (
                  SELECT 1 FROM entities e
                  WHERE e.table_name = o.entity_type
                    AND e.entity_id = o.entity_id
                    AND e.state = ?
              )
            ORDER BY o.seq ASC
            """,
            [OutboxStatus.PENDING.value, OutboxStatus.CONFLICT.value, EntityState.CONFLICT.value],
        )
        return [OutboxEntry.from_row(row) for row in rows]

    def record_failed_attempt(self, idempotency_key: str, error: str) -> int:
        """Increment the attempt counter and return the new value."""
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE outbox
                SET attempts = attempts + 1, last_attempt = ?, last_error = ?
                WHERE idempotency_key = ?
                """,
                [utcnow().isoformat(), error, idempotency_key],
            )
            if cursor.rowcount == 0:
                raise OutboxEntryNotFoundError(idempotency_key)
            row = conn.execute(
                "SELECT attempts FROM outbox WHERE idempotency_key = ?",
                [idempotency_key],
            ).fetchone()
        return row["attempts"]

    def hold_for_conflict(
        self,
        entry: OutboxEntry,
        record: Optional[Dict[str, Any]],
        revision: Optional[str],
        error: str,
    ) -> None:
        """Park an entry the server rejected as stale and flag its entity."""
        with self.transaction() as conn:
            conn.execute(
                "UPDATE outbox SET status = ?, last_error = ? WHERE idempotency_key = ?",
                [OutboxStatus.CONFLICT.value, error, entry.idempotency_key],
            )
            entity = self._read_entity(entry.entity_type, entry.entity_id)
            if entity is not None:
                self._flag_conflict(conn, entity, record, revision, deleted=record is None)

    def acknowledge(
        self,
        entry: OutboxEntry,
        server_record: Optional[Dict[str, Any]],
        revision: Optional[str],
    ) -> Optional[Entity]:
        """
        Remove an acknowledged entry and reconcile its entity.

        The server-confirmed revision becomes the base for any later
        mutation of the same entity. The server payload replaces the cached
        one only when no further local edits are waiting.
        """
        with self.transaction() as conn:
            conn.execute("DELETE FROM outbox WHERE idempotency_key = ?", [entry.idempotency_key])
            remaining = self._pending_keys(conn, entry.entity_type, entry.entity_id)
            entity = self._read_entity(entry.entity_type, entry.entity_id)

            if entry.operation == MutationOperation.DELETE:
                if entity is not None and not remaining:
                    self._remove_entity(conn, entry.entity_type, entry.entity_id)
                    self._queue_change(entry.entity_type, entry.entity_id, "reconcile")
                return None

            if entity is None:
                # Deleted locally in the meantime, nothing to reconcile into
                return None

            if revision is not None:
                entity.revision = revision
            if not remaining:
                if server_record:
                    entity.payload = dict(server_record)
                if entity.state != EntityState.CONFLICT:
                    entity.state = EntityState.SYNCED
                entity.last_error = None
            self._write_entity(conn, entity)
            self._queue_change(entry.entity_type, entry.entity_id, "reconcile")
        return entity

    def discard_entries_for_entity(self, table: str, entity_id: str) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM outbox WHERE entity_type = ? AND entity_id = ?",
                [table, entity_id],
            )
        return cursor.rowcount

    def replace_entries_for_entity(self, table: str, entity_id: str, entry: OutboxEntry) -> OutboxEntry:
        """Swap every outbox entry of an entity for a single new one."""
        with self.transaction():
            self.discard_entries_for_entity(table, entity_id)
            return self.append_outbox(entry)

    def pending_count(self, entity_type: Optional[str] = None) -> int:
        """Number of outbox entries not yet acknowledged (held ones included)."""
        if entity_type is None:
            rows = self.query("SELECT COUNT(*) AS count FROM outbox")
        else:
            rows = self.query(
                "SELECT COUNT(*) AS count FROM outbox WHERE entity_type = ?",
                [entity_type],
            )
        return rows[0]["count"] if rows else 0

    # =========================================================================
    # DEAD LETTER
    # =========================================================================

    def move_to_dead_letter(
        self,
        entry: OutboxEntry,
        reason: DeadLetterReason,
        error: str,
    ) -> OutboxEntry:
        """Move an entry out of the outbox; it stays until retried or discarded."""
        failed_at = utcnow()
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT seq, attempts FROM outbox WHERE idempotency_key = ?",
                [entry.idempotency_key],
            ).fetchone()
            if row is None:
                raise OutboxEntryNotFoundError(entry.idempotency_key)
            conn.execute("DELETE FROM outbox WHERE idempotency_key = ?", [entry.idempotency_key])
            conn.execute(
                """
                INSERT OR REPLACE INTO dead_letter (
                    idempotency_key, seq, entity_type, entity_id, operation, payload_json,
                    created_at, attempts, last_error, reason, dead_lettered_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    entry.idempotency_key,
                    row["seq"],
                    entry.entity_type,
                    entry.entity_id,
                    entry.operation.value,
                    json.dumps(entry.payload, default=str),
                    entry.created_at.isoformat(),
                    row["attempts"],
                    error,
                    reason.value,
                    failed_at.isoformat(),
                ],
            )
            entity = self._read_entity(entry.entity_type, entry.entity_id)
            if entity is not None and entity.state != EntityState.CONFLICT:
                entity.state = EntityState.ERROR
                entity.last_error = error
                self._write_entity(conn, entity)
                self._queue_change(entry.entity_type, entry.entity_id, "reconcile")

        entry.seq = row["seq"]
        entry.attempts = row["attempts"]
        entry.last_error = error
        entry.dead_letter_reason = reason
        entry.dead_lettered_at = failed_at
        return entry

    def dead_letter_entries(self) -> List[OutboxEntry]:
        rows = self.query("SELECT * FROM dead_letter ORDER BY dead_lettered_at ASC")
        return [OutboxEntry.from_row(row) for row in rows]

    def dead_letter_count(self) -> int:
        rows = self.query("SELECT COUNT(*) AS count FROM dead_letter")
        return rows[0]["count"] if rows else 0

    def requeue_dead_letter(self, idempotency_key: str) -> OutboxEntry:
        """
        Move a dead-lettered entry back into the outbox with a fresh budget.

        The entry gets its original sequence number back, so it is delivered
        before any later edits of the same entity.
        """
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM dead_letter WHERE idempotency_key = ?",
                [idempotency_key],
            ).fetchone()
            if row is None:
                raise OutboxEntryNotFoundError(idempotency_key)
            entry = OutboxEntry.from_row(row)
            conn.execute("DELETE FROM dead_letter WHERE idempotency_key = ?", [idempotency_key])

            entry.attempts = 0
            entry.last_error = None
            entry.dead_letter_reason = None
            entry.dead_lettered_at = None
            entry.status = OutboxStatus.PENDING
            self.append_outbox(entry, keep_seq=entry.seq is not None)

            entity = self._read_entity(entry.entity_type, entry.entity_id)
            if entity is not None and entity.state == EntityState.ERROR:
                entity.state = EntityState.PENDING
                entity.last_error = None
                self._write_entity(conn, entity)
                self._queue_change(entry.entity_type, entry.entity_id, "local")
        return entry

    def discard_dead_letter(self, idempotency_key: str) -> OutboxEntry:
        """Drop a dead-lettered entry for good."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM dead_letter WHERE idempotency_key = ?",
                [idempotency_key],
            ).fetchone()
            if row is None:
                raise OutboxEntryNotFoundError(idempotency_key)
            conn.execute("DELETE FROM dead_letter WHERE idempotency_key = ?", [idempotency_key])
        return OutboxEntry.from_row(row)

    def reset_entity(
        self,
        table: str,
        entity_id: str,
        record: Optional[Dict[str, Any]],
        revision: Optional[str],
    ) -> Optional[Entity]:
        """
        Replace an entity with a server snapshot after its local edits were dropped.

        Entities that still have queued mutations are left untouched.
        """
        with self.transaction() as conn:
            if self._pending_keys(conn, table, entity_id):
                return self._read_entity(table, entity_id)
            if record is None:
                self._remove_entity(conn, table, entity_id)
                self._queue_change(table, entity_id, "reconcile")
                return None
            entity = Entity(table=table, entity_id=entity_id, payload=dict(record), revision=revision)
            self._write_entity(conn, entity)
            self._queue_change(table, entity_id, "reconcile")
        return entity

    # =========================================================================
    # SYNC METADATA
    # =========================================================================

    def get_meta(self, key: str, default: Any = None) -> Any:
        """Get a sync metadata value."""
        rows = self.query("SELECT value FROM sync_meta WHERE key = ?", [key])
        if rows:
            try:
                return json.loads(rows[0]["value"])
            except json.JSONDecodeError:
                return rows[0]["value"]
        return default

    def set_meta(self, key: str, value: Any) -> None:
        """Set a sync metadata value (stored as JSON so "5" stays a string)."""
        value_str = json.dumps(value, default=str)
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sync_meta (key, value, updated_at)
                VALUES (?, ?, ?)
                """,
                [key, value_str, utcnow().isoformat()],
            )

    def get_last_synced(self, entity_type: str) -> Optional[datetime]:
        return parse_timestamp(self.get_meta(f"last_synced:{entity_type}"))

    def mark_synced(self, entity_type: str, when: Optional[datetime] = None) -> None:
        stamp = (when or utcnow()).isoformat()
        self.set_meta(f"last_synced:{entity_type}", stamp)
        self.set_meta("last_synced", stamp)

    def conflict_count(self) -> int:
        rows = self.query(
            "SELECT COUNT(*) AS count FROM entities WHERE state = ?",
            [EntityState.CONFLICT.value],
        )
        return rows[0]["count"] if rows else 0

    # =========================================================================
    # PANDAS INTEGRATION
    # =========================================================================

    VIEWS = {
        "entities": "SELECT table_name, entity_id, revision, state, deleted, last_error, updated_at FROM entities",
        "outbox": "SELECT seq, idempotency_key, entity_type, entity_id, operation, attempts, status, last_error, created_at FROM outbox ORDER BY seq",
        "dead_letter": "SELECT idempotency_key, entity_type, entity_id, operation, attempts, reason, last_error, dead_lettered_at FROM dead_letter ORDER BY dead_lettered_at",
        "conflicts": "SELECT table_name, entity_id, revision, conflict_revision, conflict_deleted, updated_at FROM entities WHERE state = 'conflict'",
    }

    def to_dataframe(self, view: str) -> pd.DataFrame:
        """
        Load one of the diagnostic views into a pandas DataFrame.

        Args:
            view: "entities", "outbox", "dead_letter" or "conflicts"
        """
        if view not in self.VIEWS:
            raise LocalStoreError(f"Unknown view '{view}'", details={"views": sorted(self.VIEWS)})
        with self._lock:
            return pd.read_sql_query(self.VIEWS[view], self._get_connection())

    def entity_counts(self) -> pd.DataFrame:
        """Entity counts per table and sync state."""
        frame = self.to_dataframe("entities")
        if frame.empty:
            return pd.DataFrame(columns=["table_name", "state", "count"])
        return (
            frame[frame["deleted"] == 0]
            .groupby(["table_name", "state"])
            .size()
            .reset_index(name="count")
        )
