# =============================================================================
# reva_core/data/supabase_client.py
# Supabase Adapters: Mutation API, Realtime Channels, Auth Events
# =============================================================================
"""
Supabase implementations of the sync core's remote collaborators.

Expects the async client from supabase-py:

    client = await create_supabase_client(settings)
    api = SupabaseRemoteApi(client)
    transport = SupabaseRealtimeTransport(client)

Rows are expected to carry an `id` primary key, a revision column
(`updated_at` by default, maintained by a server trigger) and a
`client_mutation_id` column holding the idempotency key of the last
mutation applied to the row.
"""

from __future__ import annotations
import asyncio
import uuid
from typing import Any, AsyncIterator, Dict, List, Optional
import logging

import httpx
from postgrest.exceptions import APIError
from realtime import RealtimeSubscribeStates
from supabase import AsyncClient, acreate_client

from reva_core.config import SyncSettings
from reva_core.data.remote import (
    CloseHandler,
    EventHandler,
    FilterSpec,
    RealtimeTransport,
    RemoteApi,
    RemoteResult,
)
from reva_core.errors import (
    ChannelError,
    ConfigurationError,
    PermanentRemoteError,
    RemoteApiError,
    RevisionConflictError,
    TransientRemoteError,
    invoke_callback,
)
from reva_core.offline.models import AuthEvent, AuthEventType, ChangeEvent, ChangeType

logger = logging.getLogger(__name__)

# Postgres SQLSTATE classes worth retrying: connection exception,
# transaction rollback, insufficient resources, operator intervention
TRANSIENT_SQLSTATE_CLASSES = ("08", "40", "53", "57")
TRANSIENT_POSTGREST_CODES = ("PGRST000", "PGRST001", "PGRST002", "PGRST301")
UNIQUE_VIOLATION = "23505"


async def create_supabase_client(settings: SyncSettings) -> AsyncClient:
    """
    Initialize the async Supabase client from settings.

    Raises:
        ConfigurationError: If URL or key are missing
    """
    if not settings.has_supabase:
        raise ConfigurationError(
            "Supabase credentials not found. Configure [supabase] url/key in "
            ".streamlit/secrets.toml or set SUPABASE_URL/SUPABASE_KEY",
            config_key="supabase",
        )
    return await acreate_client(settings.supabase_url, settings.supabase_key)


def classify_remote_exception(
    error: BaseException,
    table: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> RemoteApiError:
    """
    Convert a supabase/httpx exception into the sync error taxonomy.

    Network failures, timeouts, 5xx responses and retryable Postgres error
    classes are transient; everything else (constraint and validation
    failures, permission errors, malformed requests) is permanent.
    """
    if isinstance(error, RemoteApiError):
        return error

    if isinstance(error, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return TransientRemoteError(f"Network error: {error}", table=table, entity_id=entity_id)

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        cls = TransientRemoteError if status >= 500 or status == 429 else PermanentRemoteError
        return cls(f"HTTP {status}: {error}", table=table, entity_id=entity_id, remote_code=str(status))

    if isinstance(error, APIError):
        code = str(error.code or "")
        message = error.message or str(error)
        transient = (
            code.startswith(TRANSIENT_SQLSTATE_CLASSES)
            or code in TRANSIENT_POSTGREST_CODES
            or (code.isdigit() and len(code) == 3 and int(code) >= 500)
        )
        cls = TransientRemoteError if transient else PermanentRemoteError
        return cls(message, table=table, entity_id=entity_id, remote_code=code or None)

    return PermanentRemoteError(f"{error.__class__.__name__}: {error}", table=table, entity_id=entity_id)


class SupabaseRemoteApi(RemoteApi):
    """
    Mutation API over PostgREST.

    Optimistic concurrency: updates and deletes only match the row when its
    revision column still equals the revision the mutation was based on.
    A miss is resolved by reading the row back: a matching idempotency key
    means an earlier attempt already applied this mutation.
    """

    def __init__(
        self,
        client: AsyncClient,
        revision_field: str = "updated_at",
        idempotency_field: str = "client_mutation_id",
    ):
        self.client = client
        self.revision_field = revision_field
        self.idempotency_field = idempotency_field

    def _result(self, record: Optional[Dict[str, Any]], replayed: bool = False) -> RemoteResult:
        revision = None
        if record is not None and record.get(self.revision_field) is not None:
            revision = str(record[self.revision_field])
        return RemoteResult(record=record, revision=revision, replayed=replayed)

    async def create(self, table: str, entity_id: str, payload: Dict[str, Any],
                     idempotency_key: str) -> RemoteResult:
        row = {**payload, "id": entity_id, self.idempotency_field: idempotency_key}
        try:
            response = await self.client.table(table).insert(row).execute()
        except APIError as e:
            if str(e.code) != UNIQUE_VIOLATION:
                raise classify_remote_exception(e, table, entity_id) from e
            existing = await self.fetch(table, entity_id)
            if existing and existing.get(self.idempotency_field) == idempotency_key:
                logger.info(f"Create {table}/{entity_id} already applied (key {idempotency_key})")
                return self._result(existing, replayed=True)
            raise PermanentRemoteError(
                f"Row {table}/{entity_id} already exists",
                table=table,
                entity_id=entity_id,
                remote_code=UNIQUE_VIOLATION,
            ) from e
        except Exception as e:
            raise classify_remote_exception(e, table, entity_id) from e

        return self._result(response.data[0] if response.data else row)

    async def update(self, table: str, entity_id: str, payload: Dict[str, Any],
                     idempotency_key: str, expected_revision: Optional[str]) -> RemoteResult:
        changes = {k: v for k, v in payload.items() if k not in ("id", self.revision_field)}
        changes[self.idempotency_field] = idempotency_key
        try:
            query = self.client.table(table).update(changes).eq("id", entity_id)
            if expected_revision is not None:
                query = query.eq(self.revision_field, expected_revision)
            response = await query.execute()
        except Exception as e:
            raise classify_remote_exception(e, table, entity_id) from e

        if response.data:
            return self._result(response.data[0])
        return await self._resolve_miss(table, entity_id, idempotency_key, expected_revision)

    async def delete(self, table: str, entity_id: str, idempotency_key: str,
                     expected_revision: Optional[str]) -> RemoteResult:
        try:
            query = self.client.table(table).delete().eq("id", entity_id)
            if expected_revision is not None:
                query = query.eq(self.revision_field, expected_revision)
            response = await query.execute()
        except Exception as e:
            raise classify_remote_exception(e, table, entity_id) from e

        if response.data:
            return RemoteResult(record=None)

        current = await self.fetch(table, entity_id)
        if current is None:
            # Gone already: an earlier attempt or another device removed it
            return RemoteResult(record=None, replayed=True)
        raise RevisionConflictError(
            f"Delete of {table}/{entity_id} rejected: revision changed on server",
            expected_revision=expected_revision,
            current_record=current,
            table=table,
            entity_id=entity_id,
        )

    async def _resolve_miss(self, table: str, entity_id: str, idempotency_key: str,
                            expected_revision: Optional[str]) -> RemoteResult:
        current = await self.fetch(table, entity_id)
        if current is None:
            raise RevisionConflictError(
                f"Update of {table}/{entity_id} rejected: row deleted on server",
                expected_revision=expected_revision,
                current_record=None,
                table=table,
                entity_id=entity_id,
            )
        if current.get(self.idempotency_field) == idempotency_key:
            logger.info(f"Update {table}/{entity_id} already applied (key {idempotency_key})")
            return self._result(current, replayed=True)
        raise RevisionConflictError(
            f"Update of {table}/{entity_id} rejected: revision changed on server",
            expected_revision=expected_revision,
            current_record=current,
            table=table,
            entity_id=entity_id,
        )

    async def fetch(self, table: str, entity_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = await self.client.table(table).select("*").eq("id", entity_id).limit(1).execute()
        except Exception as e:
            raise classify_remote_exception(e, table, entity_id) from e
        return response.data[0] if response.data else None

    async def fetch_since(self, table: str, since: Optional[str],
                          filter_spec: Optional[FilterSpec] = None,
                          limit: int = 500) -> List[Dict[str, Any]]:
        """
        Fetch rows changed after `since`, following pages until exhausted.

        PostgREST caps responses (1000 rows by default), hence the paging.
        """
        rows: List[Dict[str, Any]] = []
        offset = 0
        while True:
            try:
                query = self.client.table(table).select("*")
                if since is not None:
                    query = query.gt(self.revision_field, since)
                if filter_spec is not None:
                    query = query.filter(filter_spec.column, filter_spec.operator, filter_spec.value)
                response = await (
                    query.order(self.revision_field)
                    .range(offset, offset + limit - 1)
                    .execute()
                )
            except Exception as e:
                raise classify_remote_exception(e, table) from e

            batch = response.data or []
            rows.extend(batch)
            if len(batch) < limit:
                return rows
            offset += limit


def parse_realtime_payload(
    payload: Dict[str, Any],
    table: str,
    revision_field: str = "updated_at",
) -> Optional[ChangeEvent]:
    """
    Normalize a postgres_changes payload.

    Accepts both the wrapped form ({"data": {...}}) and the flat form, with
    either `type`/`record`/`old_record` or `eventType`/`new`/`old` keys.
    """
    data = payload.get("data", payload)
    raw_type = data.get("type") or data.get("eventType")
    try:
        change_type = ChangeType(str(raw_type).upper())
    except ValueError:
        logger.warning(f"Ignoring realtime payload with unknown type {raw_type!r} on {table}")
        return None

    record = data.get("record") or data.get("new") or {}
    old_record = data.get("old_record") or data.get("old") or {}
    source = record if change_type != ChangeType.DELETE else old_record
    revision = source.get(revision_field)
    if revision is None and change_type == ChangeType.DELETE:
        revision = data.get("commit_timestamp")

    return ChangeEvent(
        table=data.get("table") or table,
        change_type=change_type,
        record=dict(record),
        old_record=dict(old_record),
        revision=None if revision is None else str(revision),
        commit_timestamp=data.get("commit_timestamp"),
    )


class SupabaseRealtimeTransport(RealtimeTransport):
    """Opens one Supabase realtime channel per (table, filter) key."""

    def __init__(
        self,
        client: AsyncClient,
        schema: str = "public",
        revision_field: str = "updated_at",
        subscribe_timeout: float = 10.0,
    ):
        self.client = client
        self.schema = schema
        self.revision_field = revision_field
        self.subscribe_timeout = subscribe_timeout

    async def open_channel(
        self,
        table: str,
        filter_spec: Optional[FilterSpec],
        on_event: EventHandler,
        on_close: CloseHandler,
    ) -> Any:
        loop = asyncio.get_running_loop()
        joined: asyncio.Future = loop.create_future()
        topic = f"reva:{table}:{filter_spec.raw if filter_spec else '*'}:{uuid.uuid4().hex[:8]}"
        channel = self.client.channel(topic)

        def handle_change(payload: Dict[str, Any]) -> None:
            event = parse_realtime_payload(payload, table, self.revision_field)
            if event is not None:
                invoke_callback(on_event, event, label=f"realtime handler for {table}")

        def handle_status(status: RealtimeSubscribeStates, err: Optional[Exception] = None) -> None:
            if status == RealtimeSubscribeStates.SUBSCRIBED:
                if not joined.done():
                    joined.set_result(True)
                return

            error = ChannelError(
                f"Channel {topic} reported {status.value if hasattr(status, 'value') else status}"
                + (f": {err}" if err else ""),
                table=table,
                status=str(status),
            )
            if not joined.done():
                joined.set_exception(error)
            else:
                invoke_callback(on_close, error, label=f"channel close handler for {table}")

        kwargs: Dict[str, Any] = {"table": table, "schema": self.schema}
        if filter_spec is not None:
            kwargs["filter"] = filter_spec.raw
        channel.on_postgres_changes("*", callback=handle_change, **kwargs)

        try:
            await channel.subscribe(handle_status)
            await asyncio.wait_for(joined, timeout=self.subscribe_timeout)
        except ChannelError:
            await self._remove(channel)
            raise
        except asyncio.TimeoutError as e:
            await self._remove(channel)
            raise ChannelError(f"Timed out joining channel {topic}", table=table, status="timeout") from e
        except Exception as e:
            await self._remove(channel)
            raise ChannelError(f"Could not open channel {topic}: {e}", table=table) from e

        logger.debug(f"Realtime channel joined: {topic}")
        return channel

    async def close_channel(self, handle: Any) -> None:
        await self._remove(handle)

    async def _remove(self, channel: Any) -> None:
        try:
            await self.client.remove_channel(channel)
        except Exception as e:
            logger.debug(f"Error removing realtime channel: {e}")


_AUTH_EVENT_MAP = {
    "SIGNED_IN": AuthEventType.SIGNED_IN,
    "INITIAL_SESSION": AuthEventType.SIGNED_IN,
    "SIGNED_OUT": AuthEventType.SIGNED_OUT,
    "TOKEN_REFRESHED": AuthEventType.TOKEN_REFRESHED,
}


async def supabase_auth_events(client: AsyncClient) -> AsyncIterator[AuthEvent]:
    """
    Bridge supabase auth state changes into an async stream of AuthEvent.

    Events the sync core does not react to (USER_UPDATED, PASSWORD_RECOVERY)
    are skipped.
    """
    queue: asyncio.Queue = asyncio.Queue()

    def on_change(event: Any, session: Any) -> None:
        name = getattr(event, "value", event)
        mapped = _AUTH_EVENT_MAP.get(str(name).upper())
        if mapped is None:
            return
        user = getattr(session, "user", None) if session is not None else None
        queue.put_nowait(AuthEvent(type=mapped, user_id=getattr(user, "id", None)))

    subscription = client.auth.on_auth_state_change(on_change)
    if asyncio.iscoroutine(subscription):
        subscription = await subscription
    try:
        while True:
            yield await queue.get()
    finally:
        unsubscribe = getattr(subscription, "unsubscribe", None)
        if unsubscribe is not None:
            result = unsubscribe()
            if asyncio.iscoroutine(result):
                await result
