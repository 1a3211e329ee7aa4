"""Tests for events/bus.py -- async pub/sub event bus.

Covers publish/subscribe, buffering, replay history, the
close_conversation sentinel and error isolation between subscribers.
"""

import asyncio

from events.bus import EventBus
from events.types import ConversationEvent, EventType

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    conversation_id: str = "conv_test",
    event_type: EventType = EventType.MESSAGE_APPENDED,
) -> ConversationEvent:
    return ConversationEvent(
        type=event_type,
        conversation_id=conversation_id,
        data={"test": True},
    )


# =========================================================================
# Subscribe / Publish basics
# =========================================================================


class TestSubscribePublish:
    """Basic subscribe and async publish."""

    async def test_subscribe_returns_queue(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("conv_1")
        assert isinstance(queue, asyncio.Queue)

    async def test_publish_delivers_to_subscriber(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("conv_1")
        await event_bus.publish(_make_event("conv_1"))
        received = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert received.type == EventType.MESSAGE_APPENDED
        assert received.conversation_id == "conv_1"

    async def test_publish_multiple_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("conv_1")
        q2 = event_bus.subscribe("conv_1")
        await event_bus.publish(_make_event("conv_1"))
        r1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        r2 = await asyncio.wait_for(q2.get(), timeout=1.0)
        assert r1.type == r2.type == EventType.MESSAGE_APPENDED

    async def test_publish_does_not_cross_conversations(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("conv_1")
        q2 = event_bus.subscribe("conv_2")
        await event_bus.publish(_make_event("conv_1"))
        r1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        assert r1.conversation_id == "conv_1"
        assert q2.empty()


# =========================================================================
# Event Buffering and history
# =========================================================================


class TestEventBuffering:
    """Events published before a subscriber connects are buffered."""

    async def test_buffered_events_delivered_on_subscribe(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("conv_1", EventType.CONVERSATION_CREATED))
        await event_bus.publish(_make_event("conv_1", EventType.STATUS_CHANGED))

        queue = event_bus.subscribe("conv_1")
        r1 = await asyncio.wait_for(queue.get(), timeout=1.0)
        r2 = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert r1.type == EventType.CONVERSATION_CREATED
        assert r2.type == EventType.STATUS_CHANGED

    async def test_buffer_cleared_after_subscribe(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("conv_1"))
        q1 = event_bus.subscribe("conv_1")
        assert not q1.empty()
        q2 = event_bus.subscribe("conv_1")
        assert q2.empty()

    async def test_history_kept_for_replay(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("conv_1")
        await event_bus.publish(_make_event("conv_1", EventType.MESSAGE_APPENDED))
        await event_bus.publish(_make_event("conv_1", EventType.COST_UPDATED))
        await event_bus.close_conversation("conv_1")

        history = event_bus.get_event_history("conv_1")
        assert [e.type for e in history] == [EventType.MESSAGE_APPENDED, EventType.COST_UPDATED]
        assert queue.qsize() == 3

    async def test_history_bounded(self, event_bus: EventBus, monkeypatch) -> None:
        monkeypatch.setattr(EventBus, "MAX_HISTORY_PER_CONVERSATION", 3)
        for _ in range(5):
            await event_bus.publish(_make_event("conv_1"))
        assert len(event_bus.get_event_history("conv_1")) == 3

    async def test_clear_history(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("conv_1"))
        event_bus.clear_event_history("conv_1")
        assert event_bus.get_event_history("conv_1") == []


# =========================================================================
# Unsubscribe
# =========================================================================


class TestUnsubscribe:
    async def test_unsubscribe_removes_queue(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("conv_1")
        event_bus.unsubscribe("conv_1", queue)
        assert event_bus.get_subscriber_count("conv_1") == 0

    async def test_unsubscribe_nonexistent_is_noop(self, event_bus: EventBus) -> None:
        dummy: asyncio.Queue[ConversationEvent] = asyncio.Queue()
        event_bus.unsubscribe("no_such_conversation", dummy)

    async def test_unsubscribe_wrong_queue_is_noop(self, event_bus: EventBus) -> None:
        event_bus.subscribe("conv_1")
        wrong_queue: asyncio.Queue[ConversationEvent] = asyncio.Queue()
        event_bus.unsubscribe("conv_1", wrong_queue)
        assert event_bus.get_subscriber_count("conv_1") == 1


# =========================================================================
# close_conversation -- sentinel
# =========================================================================


class TestCloseConversation:
    async def test_close_sends_sentinel(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("conv_1")
        await event_bus.close_conversation("conv_1", reason="stopped")
        sentinel = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert sentinel.type == EventType.CONVERSATION_CLOSED
        assert sentinel.data["reason"] == "stopped"

    async def test_close_removes_subscribers(self, event_bus: EventBus) -> None:
        event_bus.subscribe("conv_1")
        event_bus.subscribe("conv_1")
        await event_bus.close_conversation("conv_1")
        assert event_bus.get_subscriber_count("conv_1") == 0

    async def test_close_clears_buffer(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("conv_1"))
        await event_bus.close_conversation("conv_1")
        queue = event_bus.subscribe("conv_1")
        assert queue.empty()

    async def test_close_nonexistent_is_noop(self, event_bus: EventBus) -> None:
        await event_bus.close_conversation("no_such_conversation")


# =========================================================================
# Error isolation
# =========================================================================


class TestErrorIsolation:
    """A failing subscriber should not prevent delivery to other subscribers."""

    async def test_error_does_not_block_other_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("conv_1")
        q2 = event_bus.subscribe("conv_1")

        async def failing_put(item: ConversationEvent) -> None:
            raise RuntimeError("subscriber error")

        q1.put = failing_put  # type: ignore[assignment]

        await event_bus.publish(_make_event("conv_1"))

        assert not q2.empty()
        assert q2.get_nowait().type == EventType.MESSAGE_APPENDED
