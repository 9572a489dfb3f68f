"""Tests for the async EventBus."""

import asyncio

import pytest

from branchline.events.bus import ALL_EVENTS, EventBus
from branchline.types import ChatEvent, EventType


@pytest.fixture
def bus():
    return EventBus()


class TestSubscribeAndEmit:
    @pytest.mark.asyncio
    async def test_async_handler(self, bus: EventBus):
        received = []

        async def handler(event: ChatEvent):
            received.append(event)

        bus.subscribe(EventType.STREAM_STARTED, handler)
        event = await bus.emit(EventType.STREAM_STARTED, "m1")

        assert received == [event]
        assert event.message_id == "m1"
        assert event.data == {}

    @pytest.mark.asyncio
    async def test_sync_handler_and_payload(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.STREAM_TOKEN, received.append)
        await bus.emit(EventType.STREAM_TOKEN, "m1", token="hi")
        assert received[0].data == {"token": "hi"}

    @pytest.mark.asyncio
    async def test_only_matching_type(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.STREAM_COMPLETED, received.append)
        await bus.emit(EventType.STREAM_TOKEN, "m1", token="x")
        assert received == []

    @pytest.mark.asyncio
    async def test_all_events(self, bus: EventBus):
        received = []
        bus.subscribe(ALL_EVENTS, received.append)
        await bus.emit(EventType.MESSAGE_ADDED, "m1", role="user")
        await bus.emit(EventType.CONTEXT_UPDATED, used_tokens=10)
        assert [e.type for e in received] == [EventType.MESSAGE_ADDED, EventType.CONTEXT_UPDATED]
        assert received[1].message_id is None

    @pytest.mark.asyncio
    async def test_string_and_enum_keys_are_equivalent(self, bus: EventBus):
        received = []
        bus.subscribe("context.updated", received.append)
        await bus.emit(EventType.CONTEXT_UPDATED)
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_handlers_run_concurrently(self, bus: EventBus):
        order = []

        async def slow(event):
            await asyncio.sleep(0.02)
            order.append("slow")

        async def fast(event):
            order.append("fast")

        bus.subscribe(EventType.STREAM_TOKEN, slow)
        bus.subscribe(EventType.STREAM_TOKEN, fast)
        await bus.emit(EventType.STREAM_TOKEN, "m1", token="x")
        assert order == ["fast", "slow"]


class TestMessageScope:
    @pytest.mark.asyncio
    async def test_scoped_subscription_sees_one_message(self, bus: EventBus):
        tokens = []
        bus.subscribe(
            EventType.STREAM_TOKEN,
            lambda e: tokens.append(e.data["token"]),
            message_id="reply-2",
        )
        await bus.emit(EventType.STREAM_TOKEN, "reply-1", token="old")
        await bus.emit(EventType.STREAM_TOKEN, "reply-2", token="new")
        await bus.emit(EventType.CONTEXT_UPDATED, used_tokens=3)
        assert tokens == ["new"]

    @pytest.mark.asyncio
    async def test_scoped_wildcard(self, bus: EventBus):
        received = []
        bus.subscribe(ALL_EVENTS, received.append, message_id="reply-1")
        await bus.emit(EventType.STREAM_STARTED, "reply-1")
        await bus.emit(EventType.STREAM_STARTED, "reply-2")
        await bus.emit(EventType.STREAM_COMPLETED, "reply-1", content="done")
        assert [e.type for e in received] == [EventType.STREAM_STARTED, EventType.STREAM_COMPLETED]


class TestUnsubscribe:
    @pytest.mark.asyncio
    async def test_returned_function_unsubscribes(self, bus: EventBus):
        received = []
        unsubscribe = bus.subscribe(EventType.STREAM_TOKEN, received.append)
        unsubscribe()
        await bus.emit(EventType.STREAM_TOKEN, "m1", token="x")
        assert received == []
        assert not bus.has_subscribers(EventType.STREAM_TOKEN)

    def test_unsubscribe_twice_is_silent(self, bus: EventBus):
        unsubscribe = bus.subscribe(EventType.STREAM_TOKEN, print)
        unsubscribe()
        unsubscribe()

    def test_same_handler_twice_is_removed_separately(self, bus: EventBus):
        first = bus.subscribe(EventType.STREAM_TOKEN, print)
        bus.subscribe(EventType.STREAM_TOKEN, print)
        first()
        assert bus.has_subscribers(EventType.STREAM_TOKEN)

    def test_wildcard_counts_as_subscriber(self, bus: EventBus):
        assert not bus.has_subscribers(EventType.STREAM_FAILED)
        bus.subscribe(ALL_EVENTS, print)
        assert bus.has_subscribers(EventType.STREAM_FAILED)


class TestErrorIsolation:
    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self, bus: EventBus, caplog):
        received = []

        def broken(event):
            raise RuntimeError("handler bug")

        bus.subscribe(EventType.STREAM_TOKEN, broken)
        bus.subscribe(EventType.STREAM_TOKEN, received.append)
        await bus.emit(EventType.STREAM_TOKEN, "m1", token="x")

        assert len(received) == 1
        assert "handler bug" in caplog.text
        assert "m1" in caplog.text
