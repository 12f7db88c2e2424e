# =============================================================================
# tests/conftest.py
# Pytest Configuration, Fakes and Fixtures
# =============================================================================

import asyncio
from collections import Counter
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pandas as pd
import pytest
import pytest_asyncio

from reva_core.config import DEFAULT_TABLES, SyncSettings
from reva_core.data.remote import FilterSpec, RealtimeTransport, RemoteApi, RemoteResult
from reva_core.errors import ChannelError, PermanentRemoteError, RevisionConflictError, TransientRemoteError
from reva_core.offline import (
    ChangeEvent,
    ChangeType,
    ConnectivityMonitor,
    LocalStore,
    create_sync_coordinator,
)
from reva_core.offline.models import compare_revisions


# =============================================================================
# FAKE REMOTE API
# =============================================================================

class FakeRemoteApi(RemoteApi):
    """
    In-memory backend with integer revisions and idempotency keys.

    Scripted failures are raised before the mutation is applied; lost acks
    (applied on the server, error on the wire) are scripted separately.
    """

    def __init__(self, revision_field: str = "updated_at", idempotency_field: str = "client_mutation_id"):
        self.revision_field = revision_field
        self.idempotency_field = idempotency_field
        self.rows: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.applied = Counter()            # idempotency key -> times applied
        self.calls: List[tuple] = []
        self.online = True
        self.failures: List[BaseException] = []
        self.lost_acks = 0
        self.gate: Optional[asyncio.Event] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self._revision = 0

    # -- scripting helpers -------------------------------------------------

    def fail_next(self, error: BaseException, times: int = 1) -> None:
        self.failures.extend([error] * times)

    def next_revision(self) -> str:
        self._revision += 1
        return str(self._revision)

    def server_upsert(self, table: str, entity_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Change a row the way another device would."""
        row = {**self.rows.setdefault(table, {}).get(entity_id, {}), **fields, "id": entity_id}
        row[self.revision_field] = self.next_revision()
        row[self.idempotency_field] = "other-device"
        self.rows[table][entity_id] = row
        return dict(row)

    def server_delete(self, table: str, entity_id: str) -> Optional[Dict[str, Any]]:
        return self.rows.get(table, {}).pop(entity_id, None)

    def get(self, table: str, entity_id: str) -> Optional[Dict[str, Any]]:
        row = self.rows.get(table, {}).get(entity_id)
        return dict(row) if row else None

    # -- RemoteApi ---------------------------------------------------------

    async def _enter(self, op: str, table: str, entity_id: str, key: Optional[str]) -> None:
        self.calls.append((op, table, entity_id, key))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
        finally:
            self.in_flight -= 1
        if not self.online:
            raise TransientRemoteError("Network unreachable", table=table, entity_id=entity_id)
        if self.failures:
            raise self.failures.pop(0)

    def _ack(self, result: RemoteResult) -> RemoteResult:
        if self.lost_acks:
            self.lost_acks -= 1
            raise TransientRemoteError("Connection reset before response")
        return result

    def _result(self, row: Optional[Dict[str, Any]], replayed: bool = False) -> RemoteResult:
        revision = row.get(self.revision_field) if row else None
        return RemoteResult(record=dict(row) if row else None, revision=revision, replayed=replayed)

    async def create(self, table, entity_id, payload, idempotency_key):
        await self._enter("create", table, entity_id, idempotency_key)
        existing = self.rows.setdefault(table, {}).get(entity_id)
        if existing is not None:
            if existing.get(self.idempotency_field) == idempotency_key:
                return self._ack(self._result(existing, replayed=True))
            raise PermanentRemoteError(f"duplicate key {entity_id}", table=table, entity_id=entity_id)
        if payload.get("title") == "":
            raise PermanentRemoteError("title must not be empty", table=table, entity_id=entity_id)
        row = {**payload, "id": entity_id, self.idempotency_field: idempotency_key,
               self.revision_field: self.next_revision()}
        self.rows[table][entity_id] = row
        self.applied[idempotency_key] += 1
        return self._ack(self._result(row))

    async def update(self, table, entity_id, payload, idempotency_key, expected_revision):
        await self._enter("update", table, entity_id, idempotency_key)
        row = self.rows.get(table, {}).get(entity_id)
        if row is None:
            raise RevisionConflictError("row deleted", expected_revision=expected_revision,
                                        current_record=None, table=table, entity_id=entity_id)
        if row.get(self.idempotency_field) == idempotency_key:
            return self._ack(self._result(row, replayed=True))
        if expected_revision is not None and row.get(self.revision_field) != expected_revision:
            raise RevisionConflictError("stale revision", expected_revision=expected_revision,
                                        current_record=dict(row), table=table, entity_id=entity_id)
        row.update(payload)
        row[self.idempotency_field] = idempotency_key
        row[self.revision_field] = self.next_revision()
        self.applied[idempotency_key] += 1
        return self._ack(self._result(row))

    async def delete(self, table, entity_id, idempotency_key, expected_revision):
        await self._enter("delete", table, entity_id, idempotency_key)
        row = self.rows.get(table, {}).get(entity_id)
        if row is None:
            return self._ack(RemoteResult(record=None, replayed=True))
        if expected_revision is not None and row.get(self.revision_field) != expected_revision:
            raise RevisionConflictError("stale revision", expected_revision=expected_revision,
                                        current_record=dict(row), table=table, entity_id=entity_id)
        del self.rows[table][entity_id]
        self.applied[idempotency_key] += 1
        return self._ack(RemoteResult(record=None))

    async def fetch(self, table, entity_id):
        await self._enter("fetch", table, entity_id, None)
        return self.get(table, entity_id)

    async def fetch_since(self, table, since, filter_spec: Optional[FilterSpec] = None, limit=500):
        await self._enter("fetch_since", table, "*", None)
        rows = [
            dict(row) for row in self.rows.get(table, {}).values()
            if compare_revisions(row.get(self.revision_field), since) > 0
        ]
        if filter_spec is not None and filter_spec.operator == "eq":
            rows = [r for r in rows if str(r.get(filter_spec.column)) == filter_spec.value]
        return sorted(rows, key=lambda r: int(r[self.revision_field]))


# =============================================================================
# FAKE REALTIME TRANSPORT
# =============================================================================

class FakeChannel:
    def __init__(self, table, filter_spec, on_event, on_close):
        self.table = table
        self.filter_spec = filter_spec
        self.on_event = on_event
        self.on_close = on_close
        self.closed = False


class FakeRealtimeTransport(RealtimeTransport):
    """Records channel opens/closes and lets tests push events or drop channels."""

    def __init__(self):
        self.channels: List[FakeChannel] = []
        self.open_attempts = 0
        self.fail_opens = 0

    async def open_channel(self, table, filter_spec, on_event, on_close):
        self.open_attempts += 1
        await asyncio.sleep(0)
        if self.fail_opens:
            self.fail_opens -= 1
            raise ChannelError("join refused", table=table, status="CHANNEL_ERROR")
        channel = FakeChannel(table, filter_spec, on_event, on_close)
        self.channels.append(channel)
        return channel

    async def close_channel(self, handle):
        handle.closed = True

    def active(self, table: Optional[str] = None) -> List[FakeChannel]:
        return [c for c in self.channels if not c.closed and (table is None or c.table == table)]

    def emit(self, table: str, change_type: ChangeType, record: Dict[str, Any],
             old_record: Optional[Dict[str, Any]] = None, revision: Optional[str] = None) -> None:
        source = record if change_type != ChangeType.DELETE else (old_record or {})
        event = ChangeEvent(
            table=table,
            change_type=change_type,
            record=dict(record),
            old_record=dict(old_record or {}),
            revision=revision or source.get("updated_at"),
        )
        for channel in self.active(table):
            channel.on_event(event)

    def drop(self, channel: FakeChannel) -> None:
        channel.on_close(ChannelError("socket closed", table=channel.table))


# =============================================================================
# HELPERS
# =============================================================================

async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until predicate() is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


def assert_dataframe_equal(df1, df2, check_dtype=False):
    """Assert two DataFrames are equal"""
    pd.testing.assert_frame_equal(df1, df2, check_dtype=check_dtype)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings():
    """Fast settings backed by an in-memory database"""
    return SyncSettings(
        db_path=":memory:",
        tables=DEFAULT_TABLES,
        channel_backoff_base=0.01,
        channel_backoff_cap=0.02,
        retry_base_delay=0.001,
        retry_max_delay=0.005,
        outbox_max_attempts=3,
        max_concurrency=2,
    ).validate()


@pytest.fixture
def store():
    store = LocalStore(":memory:")
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def remote():
    return FakeRemoteApi()


@pytest.fixture
def transport():
    return FakeRealtimeTransport()


@pytest.fixture
def monitor():
    return ConnectivityMonitor(initial_online=True)


@pytest_asyncio.fixture
async def coordinator(settings, store, remote, transport, monitor):
    coordinator = await create_sync_coordinator(
        settings, remote=remote, transport=transport, store=store, monitor=monitor
    )
    await coordinator.start(probe=False)
    yield coordinator
    await coordinator.stop()


@pytest.fixture
def mock_supabase():
    """Mock async Supabase client whose query chains end in an awaitable execute()"""
    client = MagicMock()
    query = MagicMock()
    for method in ("select", "insert", "update", "delete", "eq", "gt", "filter", "order", "range", "limit"):
        getattr(query, method).return_value = query
    query.execute = AsyncMock(return_value=MagicMock(data=[]))
    client.table.return_value = query
    client.remove_channel = AsyncMock()
    client.query = query
    return client
