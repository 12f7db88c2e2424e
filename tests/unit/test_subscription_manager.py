# =============================================================================
# tests/unit/test_subscription_manager.py
# Unit Tests for SubscriptionManager
# =============================================================================

import asyncio

import pytest

from conftest import wait_until
from reva_core.errors import InvalidFilterError, UnknownTableError
from reva_core.offline import (
    ChangeType,
    SubscriptionCallbacks,
    SubscriptionManager,
    SubscriptionState,
    parse_filter,
)

TABLES = ("tasks", "expenses")


def make_manager(transport):
    return SubscriptionManager(transport, tables=TABLES, backoff_base=0.01, backoff_cap=0.02)


class TestFilterParsing:
    """parse_filter()"""

    def test_simple_predicate(self):
        spec = parse_filter("user_id=eq.42")

        assert (spec.column, spec.operator, spec.value) == ("user_id", "eq", "42")
        assert spec.raw == "user_id=eq.42"

    def test_in_operator_values(self):
        assert parse_filter("status=in.(open,done)").values == ["open", "done"]

    def test_none_passes_through(self):
        assert parse_filter(None) is None

    @pytest.mark.parametrize("expr", ["user_id", "user_id=like.%a%", "=eq.1", "user_id=eq."])
    def test_invalid_filters_rejected(self, expr):
        with pytest.raises(InvalidFilterError):
            parse_filter(expr)


class TestSubscribe:
    """Registration, dedup and teardown"""

    @pytest.mark.asyncio
    async def test_unknown_table_rejected(self, transport):
        manager = make_manager(transport)

        with pytest.raises(UnknownTableError):
            manager.subscribe("secrets")

    @pytest.mark.asyncio
    async def test_subscribe_connects_in_background(self, transport):
        manager = make_manager(transport)

        handle = manager.subscribe("tasks")
        assert manager.get_status("tasks") == SubscriptionState.CONNECTING

        await wait_until(lambda: handle.state == SubscriptionState.CONNECTED)
        assert manager.connected_count("tasks") == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_duplicate_subscriptions_share_one_channel(self, transport):
        manager = make_manager(transport)
        first, second = [], []

        manager.subscribe("tasks", "user_id=eq.42", first.append)
        manager.subscribe("tasks", "user_id=eq.42", second.append)
        await wait_until(lambda: manager.connected_count("tasks") == 1)

        transport.emit("tasks", ChangeType.INSERT, {"id": "t1", "user_id": 42, "updated_at": "1"})

        assert len(transport.channels) == 1
        assert manager.consumer_count("tasks", "user_id=eq.42") == 2
        assert len(first) == 1 and len(second) == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_different_filters_get_separate_channels(self, transport):
        manager = make_manager(transport)

        manager.subscribe("tasks", "user_id=eq.1")
        manager.subscribe("tasks", "user_id=eq.2")
        await wait_until(lambda: manager.connected_count("tasks") == 2)

        assert set(manager.get_all_statuses()) == {"tasks?user_id=eq.1", "tasks?user_id=eq.2"}
        await manager.close()

    @pytest.mark.asyncio
    async def test_channel_closed_with_last_consumer(self, transport):
        manager = make_manager(transport)
        a = manager.subscribe("tasks")
        b = manager.subscribe("tasks")
        await wait_until(lambda: manager.connected_count() == 1)

        await a.dispose()
        assert manager.get_status("tasks") == SubscriptionState.CONNECTED
        assert not transport.channels[0].closed

        await manager.unsubscribe(b.subscription_id)
        assert manager.get_status("tasks") is None
        assert transport.channels[0].closed
        assert manager.channel_count() == 0

    @pytest.mark.asyncio
    async def test_unsubscribe_unknown_returns_false(self, transport):
        manager = make_manager(transport)

        assert await manager.unsubscribe("nope") is False


class TestDispatch:
    """Event fan-out"""

    @pytest.mark.asyncio
    async def test_callbacks_by_change_type(self, transport):
        manager = make_manager(transport)
        inserts, deletes, everything = [], [], []
        manager.subscribe("tasks", callbacks=SubscriptionCallbacks(
            on_insert=inserts.append,
            on_delete=deletes.append,
            on_event=everything.append,
        ))
        await wait_until(lambda: manager.connected_count() == 1)

        transport.emit("tasks", ChangeType.INSERT, {"id": "t1", "updated_at": "1"})
        transport.emit("tasks", ChangeType.UPDATE, {"id": "t1", "updated_at": "2"})
        transport.emit("tasks", ChangeType.DELETE, {}, old_record={"id": "t1"})

        assert len(inserts) == 1
        assert len(deletes) == 1
        assert [e.change_type for e in everything] == [ChangeType.INSERT, ChangeType.UPDATE, ChangeType.DELETE]
        await manager.close()

    @pytest.mark.asyncio
    async def test_failing_callback_is_isolated(self, transport):
        manager = make_manager(transport)
        seen = []

        def broken(event):
            raise RuntimeError("consumer bug")

        manager.subscribe("tasks", callbacks=broken)
        manager.subscribe("tasks", callbacks=seen.append)
        await wait_until(lambda: manager.connected_count() == 1)

        transport.emit("tasks", ChangeType.INSERT, {"id": "t1", "updated_at": "1"})

        assert len(seen) == 1
        assert manager.get_status("tasks") == SubscriptionState.CONNECTED
        await manager.close()

    @pytest.mark.asyncio
    async def test_coroutine_callbacks_are_scheduled(self, transport):
        manager = make_manager(transport)
        seen = []

        async def consumer(event):
            seen.append(event.entity_id)

        manager.subscribe("tasks", callbacks=consumer)
        await wait_until(lambda: manager.connected_count() == 1)

        transport.emit("tasks", ChangeType.INSERT, {"id": "t1", "updated_at": "1"})

        await wait_until(lambda: seen == ["t1"])
        await manager.close()

    @pytest.mark.asyncio
    async def test_events_from_stale_channel_are_dropped(self, transport):
        manager = make_manager(transport)
        seen = []
        manager.subscribe("tasks", callbacks=seen.append)
        await wait_until(lambda: manager.connected_count() == 1)
        stale = transport.channels[0]

        await manager.suspend_all()
        stale.on_event(object())

        assert seen == []
        await manager.close()


class TestReconnect:
    """Backoff, suspend and resume"""

    @pytest.mark.asyncio
    async def test_failed_join_retries_with_backoff(self, transport):
        transport.fail_opens = 2
        manager = make_manager(transport)
        states = []
        manager.add_status_listener(lambda key, state: states.append(state))

        manager.subscribe("tasks")
        await wait_until(lambda: manager.get_status("tasks") == SubscriptionState.CONNECTED)

        assert transport.open_attempts == 3
        assert SubscriptionState.ERROR in states
        await manager.close()

    @pytest.mark.asyncio
    async def test_dropped_channel_reconnects(self, transport):
        manager = make_manager(transport)
        manager.subscribe("tasks")
        await wait_until(lambda: manager.connected_count() == 1)

        transport.drop(transport.channels[0])

        await wait_until(lambda: len(transport.active("tasks")) == 1 and len(transport.channels) == 2)
        await wait_until(lambda: manager.connected_count() == 1)
        assert transport.channels[0].closed
        await manager.close()

    @pytest.mark.asyncio
    async def test_suspend_keeps_registrations_and_resume_reconnects(self, transport):
        manager = make_manager(transport)
        seen = []
        manager.subscribe("tasks", callbacks=seen.append)
        manager.subscribe("expenses")
        await wait_until(lambda: manager.connected_count() == 2)

        await manager.suspend_all()

        assert manager.connected_count() == 0
        assert set(manager.get_all_statuses().values()) == {SubscriptionState.DISCONNECTED}
        assert transport.active() == []
        await asyncio.sleep(0.05)
        assert len(transport.channels) == 2

        manager.reconnect_all()
        await wait_until(lambda: manager.connected_count() == 2)

        transport.emit("tasks", ChangeType.INSERT, {"id": "t1", "updated_at": "1"})
        assert len(seen) == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_subscribe_while_suspended_waits_for_resume(self, transport):
        manager = make_manager(transport)
        await manager.suspend_all()

        manager.subscribe("tasks")
        await asyncio.sleep(0.03)

        assert manager.get_status("tasks") == SubscriptionState.DISCONNECTED
        assert transport.open_attempts == 0

        manager.reconnect_all()
        await wait_until(lambda: manager.connected_count() == 1)
        await manager.close()

    @pytest.mark.asyncio
    async def test_close_cancels_everything(self, transport):
        transport.fail_opens = 100
        manager = make_manager(transport)
        manager.subscribe("tasks")
        await asyncio.sleep(0.02)

        await manager.close()
        attempts = transport.open_attempts
        await asyncio.sleep(0.05)

        assert transport.open_attempts == attempts
        assert manager.get_all_statuses() == {}

    @pytest.mark.asyncio
    async def test_subscribe_after_close_rejected(self, transport):
        manager = make_manager(transport)
        await manager.close()

        assert manager.is_closed
        with pytest.raises(RuntimeError):
            manager.subscribe("tasks")
        assert transport.open_attempts == 0


class TestChannelInfo:
    """get_channel_info()"""

    @pytest.mark.asyncio
    async def test_details_per_channel(self, transport):
        manager = make_manager(transport)
        manager.subscribe("tasks", "user_id=eq.42")
        manager.subscribe("tasks", "user_id=eq.42")
        await wait_until(lambda: manager.connected_count() == 1)
        transport.emit("tasks", ChangeType.INSERT, {"id": "t1", "user_id": 42, "updated_at": "1"})

        [info] = manager.get_channel_info()

        assert info["channel"] == "tasks?user_id=eq.42"
        assert info["filter"] == "user_id=eq.42"
        assert info["state"] == "connected"
        assert info["consumers"] == 2
        assert info["attempts"] == 0
        assert info["connected_at"] is not None
        assert info["last_event_at"] is not None
        await manager.close()
