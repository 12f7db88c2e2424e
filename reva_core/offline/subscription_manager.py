# =============================================================================
# reva_core/offline/subscription_manager.py
# Realtime Channel Lifecycle, Deduplication and Fan-Out
# =============================================================================
"""
SubscriptionManager - One realtime channel per (table, filter), many consumers.

Features:
- Duplicate subscriptions share a single remote channel
- Per-channel connection loop with full-jitter exponential backoff
- Suspend/resume on connectivity loss without dropping registrations
- Isolated consumer callbacks (sync or coroutine)
- Synchronous status queries for UI collaborators
"""

from __future__ import annotations
import asyncio
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union
import logging

from reva_core.data.remote import FilterSpec, RealtimeTransport
from reva_core.errors import InvalidFilterError, UnknownTableError, invoke_callback
from reva_core.offline.backoff import compute_backoff
from reva_core.offline.models import ChangeEvent, ChangeType, SubscriptionState, utcnow

logger = logging.getLogger(__name__)

FILTER_PATTERN = re.compile(r"^(\w+)=(eq|neq|lt|lte|gt|gte|in)\.(\S+)$")

ChannelKey = Tuple[str, Optional[str]]
EventCallback = Callable[[ChangeEvent], Any]
StatusListener = Callable[[str, SubscriptionState], Any]


def parse_filter(filter_expr: Optional[str]) -> Optional[FilterSpec]:
    """Parse `column=op.value`; None passes through."""
    if filter_expr is None:
        return None
    match = FILTER_PATTERN.match(filter_expr.strip())
    if not match:
        raise InvalidFilterError(filter_expr)
    column, operator, value = match.groups()
    return FilterSpec(column=column, operator=operator, value=value, raw=filter_expr.strip())


def channel_key_str(table: str, filter_expr: Optional[str] = None) -> str:
    return table if not filter_expr else f"{table}?{filter_expr}"


@dataclass
class SubscriptionCallbacks:
    """Per-consumer handlers; on_event receives every change type."""
    on_insert: Optional[EventCallback] = None
    on_update: Optional[EventCallback] = None
    on_delete: Optional[EventCallback] = None
    on_event: Optional[EventCallback] = None

    def handlers_for(self, change_type: ChangeType) -> List[EventCallback]:
        specific = {
            ChangeType.INSERT: self.on_insert,
            ChangeType.UPDATE: self.on_update,
            ChangeType.DELETE: self.on_delete,
        }[change_type]
        return [h for h in (specific, self.on_event) if h is not None]


class SubscriptionHandle:
    """Disposable registration returned by subscribe()."""

    def __init__(self, manager: SubscriptionManager, subscription_id: str,
                 table: str, filter_expr: Optional[str]):
        self._manager = manager
        self.subscription_id = subscription_id
        self.table = table
        self.filter_expr = filter_expr
        self.disposed = False

    @property
    def key(self) -> str:
        return channel_key_str(self.table, self.filter_expr)

    @property
    def state(self) -> Optional[SubscriptionState]:
        return self._manager.get_status(self.table, self.filter_expr)

    async def dispose(self) -> None:
        if not self.disposed:
            await self._manager.unsubscribe(self)

    def __repr__(self) -> str:
        return f"SubscriptionHandle({self.key!r}, id={self.subscription_id[:8]})"


@dataclass
class _Channel:
    table: str
    filter_spec: Optional[FilterSpec]
    consumers: Dict[str, SubscriptionCallbacks] = field(default_factory=dict)
    state: SubscriptionState = SubscriptionState.CONNECTING
    task: Optional[asyncio.Task] = None
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    closed: asyncio.Event = field(default_factory=asyncio.Event)
    remote: Any = None
    generation: int = 0
    attempts: int = 0
    last_error: Optional[str] = None
    connected_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None

    @property
    def filter_expr(self) -> Optional[str]:
        return self.filter_spec.raw if self.filter_spec else None

    @property
    def key_str(self) -> str:
        return channel_key_str(self.table, self.filter_expr)


class SubscriptionManager:
    """
    Owns every realtime channel of the sync core.

    Usage:
        manager = SubscriptionManager(transport, tables=settings.tables)
        handle = manager.subscribe("tasks", "user_id=eq.42",
                                   SubscriptionCallbacks(on_insert=print))
        ...
        await handle.dispose()
    """

    def __init__(
        self,
        transport: RealtimeTransport,
        tables: Iterable[str],
        backoff_base: float = 1.0,
        backoff_cap: float = 30.0,
    ):
        self.transport = transport
        self.tables = tuple(tables)
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap

        self._channels: Dict[ChannelKey, _Channel] = {}
        self._status_listeners: List[StatusListener] = []
        self._suspended = False
        self._closed = False

    @property
    def is_suspended(self) -> bool:
        return self._suspended

    @property
    def is_closed(self) -> bool:
        return self._closed

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def subscribe(
        self,
        table: str,
        filter_expr: Optional[str] = None,
        callbacks: Union[SubscriptionCallbacks, EventCallback, None] = None,
    ) -> SubscriptionHandle:
        """
        Register a consumer for changes of a table.

        Returns immediately; the channel connects in the background. Must be
        called from within a running event loop.

        Raises:
            UnknownTableError: If the table is not synchronized
            InvalidFilterError: If the filter is not `column=op.value`
            RuntimeError: If the manager was closed
        """
        if self._closed:
            raise RuntimeError("Subscription manager is closed")
        if table not in self.tables:
            raise UnknownTableError(table, list(self.tables))
        spec = parse_filter(filter_expr)
        if callable(callbacks):
            callbacks = SubscriptionCallbacks(on_event=callbacks)
        callbacks = callbacks or SubscriptionCallbacks()

        key = (table, spec.raw if spec else None)
        channel = self._channels.get(key)
        if channel is None:
            channel = _Channel(table=table, filter_spec=spec)
            if self._suspended:
                channel.state = SubscriptionState.DISCONNECTED
            self._channels[key] = channel
            channel.task = asyncio.get_running_loop().create_task(
                self._run_channel(channel), name=f"channel:{channel.key_str}"
            )
            logger.info(f"Opening channel {channel.key_str}")
        else:
            logger.debug(f"Reusing channel {channel.key_str} ({len(channel.consumers)} consumers)")

        subscription_id = uuid.uuid4().hex
        channel.consumers[subscription_id] = callbacks
        return SubscriptionHandle(self, subscription_id, table, key[1])

    async def unsubscribe(self, subscription: Union[SubscriptionHandle, str]) -> bool:
        """
        Remove one consumer; the channel is closed with its last consumer.

        Returns:
            True if the subscription existed
        """
        subscription_id = (
            subscription.subscription_id
            if isinstance(subscription, SubscriptionHandle)
            else subscription
        )
        if isinstance(subscription, SubscriptionHandle):
            subscription.disposed = True

        for key, channel in list(self._channels.items()):
            if subscription_id in channel.consumers:
                del channel.consumers[subscription_id]
                if not channel.consumers:
                    del self._channels[key]
                    await self._shutdown_channel(channel)
                    logger.info(f"Closed channel {channel.key_str} (no consumers left)")
                return True
        return False

    async def _shutdown_channel(self, channel: _Channel) -> None:
        channel.generation += 1
        task, channel.task = channel.task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_remote(channel)

    async def _close_remote(self, channel: _Channel) -> None:
        remote, channel.remote = channel.remote, None
        if remote is None:
            return
        try:
            await self.transport.close_channel(remote)
        except Exception as e:
            logger.warning(f"Error closing channel {channel.key_str}: {e}")

    # =========================================================================
    # CONNECTION LOOP
    # =========================================================================

    async def _run_channel(self, channel: _Channel) -> None:
        while True:
            if self._suspended:
                await channel.wake.wait()
                channel.wake.clear()
                continue

            channel.generation += 1
            generation = channel.generation
            channel.closed.clear()
            self._set_state(channel, SubscriptionState.CONNECTING)

            try:
                remote = await self.transport.open_channel(
                    channel.table,
                    channel.filter_spec,
                    on_event=lambda event, g=generation: self._dispatch(channel, g, event),
                    on_close=lambda error=None, g=generation: self._on_remote_close(channel, g, error),
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                channel.last_error = str(e)
                self._set_state(channel, SubscriptionState.ERROR)
                delay = compute_backoff(channel.attempts, self.backoff_base, self.backoff_cap)
                channel.attempts += 1
                logger.warning(
                    f"Channel {channel.key_str} failed to connect (attempt {channel.attempts}): {e}. "
                    f"Retrying in {delay:.1f}s"
                )
                await self._sleep_or_wake(channel, delay)
                continue

            if self._suspended or generation != channel.generation:
                # Suspended while the join was in flight
                channel.remote = remote
                await self._close_remote(channel)
                continue

            channel.remote = remote
            channel.attempts = 0
            channel.last_error = None
            channel.connected_at = utcnow()
            self._set_state(channel, SubscriptionState.CONNECTED)

            await channel.closed.wait()
            if self._suspended:
                continue

            await self._close_remote(channel)
            self._set_state(channel, SubscriptionState.DISCONNECTED)
            delay = compute_backoff(channel.attempts, self.backoff_base, self.backoff_cap)
            channel.attempts += 1
            logger.warning(f"Channel {channel.key_str} dropped: {channel.last_error}. Reconnecting in {delay:.1f}s")
            await self._sleep_or_wake(channel, delay)

    async def _sleep_or_wake(self, channel: _Channel, delay: float) -> None:
        try:
            await asyncio.wait_for(channel.wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        channel.wake.clear()

    def _on_remote_close(self, channel: _Channel, generation: int, error: Optional[BaseException]) -> None:
        if generation != channel.generation or channel.state != SubscriptionState.CONNECTED:
            return
        channel.last_error = str(error) if error else "closed by server"
        channel.closed.set()

    def _dispatch(self, channel: _Channel, generation: int, event: ChangeEvent) -> None:
        if generation != channel.generation or channel.state != SubscriptionState.CONNECTED:
            logger.debug(f"Dropping event for inactive channel {channel.key_str}")
            return
        channel.last_event_at = utcnow()
        for callbacks in list(channel.consumers.values()):
            for handler in callbacks.handlers_for(event.change_type):
                invoke_callback(handler, event, label=f"subscription callback on {channel.key_str}")

    def _set_state(self, channel: _Channel, state: SubscriptionState) -> None:
        if channel.state == state:
            return
        channel.state = state
        logger.debug(f"Channel {channel.key_str} -> {state.value}")
        for listener in list(self._status_listeners):
            invoke_callback(listener, channel.key_str, state, label="subscription status listener")

    # =========================================================================
    # SUSPEND / RESUME
    # =========================================================================

    async def suspend_all(self) -> None:
        """
        Disconnect every channel but keep all registrations.

        Channels stay idle until reconnect_all() is called.
        """
        self._suspended = True
        for channel in list(self._channels.values()):
            channel.generation += 1
            await self._close_remote(channel)
            self._set_state(channel, SubscriptionState.DISCONNECTED)
            channel.closed.set()
        if self._channels:
            logger.info(f"Suspended {len(self._channels)} channel(s)")

    def reconnect_all(self) -> None:
        """Resume and make every non-connected channel retry now."""
        self._suspended = False
        for channel in self._channels.values():
            if channel.state != SubscriptionState.CONNECTED:
                channel.attempts = 0
                channel.wake.set()
        logger.info(f"Reconnecting {len(self._channels)} channel(s)")

    async def close(self) -> None:
        """Tear down every channel and background task."""
        self._closed = True
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            await self._shutdown_channel(channel)
        logger.debug("Subscription manager closed")

    # =========================================================================
    # STATUS
    # =========================================================================

    def add_status_listener(self, listener: StatusListener) -> Callable[[], None]:
        """Register listener(key, state); returns a function that removes it."""
        self._status_listeners.append(listener)

        def remove() -> None:
            if listener in self._status_listeners:
                self._status_listeners.remove(listener)

        return remove

    def get_status(self, table: str, filter_expr: Optional[str] = None) -> Optional[SubscriptionState]:
        channel = self._channels.get((table, filter_expr.strip() if filter_expr else None))
        return channel.state if channel else None

    def get_all_statuses(self) -> Dict[str, SubscriptionState]:
        return {channel.key_str: channel.state for channel in self._channels.values()}

    def connected_count(self, table: Optional[str] = None) -> int:
        return sum(
            1 for channel in self._channels.values()
            if channel.state == SubscriptionState.CONNECTED and (table is None or channel.table == table)
        )

    def channel_count(self) -> int:
        return len(self._channels)

    def consumer_count(self, table: str, filter_expr: Optional[str] = None) -> int:
        channel = self._channels.get((table, filter_expr))
        return len(channel.consumers) if channel else 0

    def get_channel_info(self) -> List[Dict[str, Any]]:
        """Per-channel details for the diagnostics dashboard."""
        return [
            {
                "channel": channel.key_str,
                "table": channel.table,
                "filter": channel.filter_expr,
                "state": channel.state.value,
                "consumers": len(channel.consumers),
                "attempts": channel.attempts,
                "last_error": channel.last_error,
                "connected_at": channel.connected_at.isoformat() if channel.connected_at else None,
                "last_event_at": channel.last_event_at.isoformat() if channel.last_event_at else None,
            }
            for channel in self._channels.values()
        ]
