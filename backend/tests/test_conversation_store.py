"""Tests for conversation_store.py -- aggregates, channel index and state machine."""

import asyncio

import pytest

from conftest import events_of, make_conversation, make_limits
from conversation_store import ConversationStore
from errors import ConversationNotFoundError, InvalidTransitionError
from events import EventBus, EventType
from models import ConversationStatus

# =========================================================================
# Creation and lookup
# =========================================================================


class TestGetOrCreate:
    async def test_creates_in_planning(self, store: ConversationStore, event_bus: EventBus) -> None:
        conversation, created = await store.get_or_create(
            "thread-1", topic="Chess openings", limits=make_limits(), selected_agents=["claude"]
        )
        assert created
        assert conversation.status == ConversationStatus.PLANNING
        assert conversation.id.startswith("conv_")
        assert conversation.selected_agents == ["claude"]
        assert len(events_of(event_bus, conversation.id, EventType.CONVERSATION_CREATED)) == 1

    async def test_same_channel_returns_existing(self, store: ConversationStore) -> None:
        first, _ = await store.get_or_create(
            "thread-1", topic="a", limits=make_limits(), selected_agents=[]
        )
        second, created = await store.get_or_create(
            "thread-1", topic="b", limits=make_limits(), selected_agents=[]
        )
        assert not created
        assert second is first
        assert second.topic == "a"

    async def test_concurrent_creates_yield_one_conversation(self, store: ConversationStore) -> None:
        results = await asyncio.gather(*(
            store.get_or_create("thread-x", topic="t", limits=make_limits(), selected_agents=[])
            for _ in range(5)
        ))
        assert len({conv.id for conv, _ in results}) == 1
        assert sum(created for _, created in results) == 1

    async def test_require_unknown_raises(self, store: ConversationStore) -> None:
        with pytest.raises(ConversationNotFoundError):
            store.require("conv_missing")
        assert store.get("conv_missing") is None

    async def test_not_found_is_a_key_error(self, store: ConversationStore) -> None:
        with pytest.raises(KeyError):
            store.require("conv_missing")

    async def test_find_by_channel_and_list(self, store: ConversationStore) -> None:
        a = await make_conversation(store, channel_ref="a")
        b = await make_conversation(store, channel_ref="b")
        assert store.find_by_channel("b") is b
        assert store.find_by_channel("zzz") is None
        assert [c.id for c in store.list_conversations()] == [a.id, b.id]


# =========================================================================
# State machine
# =========================================================================


class TestTransition:
    async def test_planning_to_active(self, store: ConversationStore, event_bus: EventBus) -> None:
        conv = await make_conversation(store, status=ConversationStatus.PLANNING)
        assert await store.transition(conv.id, ConversationStatus.ACTIVE)
        assert conv.status == ConversationStatus.ACTIVE
        [event] = events_of(event_bus, conv.id, EventType.STATUS_CHANGED)
        assert event.data["previous"] == "planning"
        assert event.data["status"] == "active"

    async def test_planning_never_reaches_completed(self, store: ConversationStore) -> None:
        conv = await make_conversation(store, status=ConversationStatus.PLANNING)
        with pytest.raises(InvalidTransitionError):
            await store.transition(conv.id, ConversationStatus.COMPLETED)

    async def test_planning_cannot_pause(self, store: ConversationStore) -> None:
        conv = await make_conversation(store, status=ConversationStatus.PLANNING)
        with pytest.raises(InvalidTransitionError):
            await store.transition(conv.id, ConversationStatus.PAUSED)

    async def test_active_paused_cycle(self, store: ConversationStore) -> None:
        conv = await make_conversation(store)
        await store.transition(conv.id, ConversationStatus.PAUSED)
        await store.transition(conv.id, ConversationStatus.ACTIVE)
        assert conv.status == ConversationStatus.ACTIVE

    async def test_terminal_states_are_final(self, store: ConversationStore) -> None:
        conv = await make_conversation(store)
        await store.transition(conv.id, ConversationStatus.STOPPED, "Stopped by request")
        assert conv.stop_reason == "Stopped by request"
        assert conv.is_terminal
        with pytest.raises(InvalidTransitionError):
            await store.transition(conv.id, ConversationStatus.ACTIVE)

    async def test_paused_can_complete(self, store: ConversationStore) -> None:
        conv = await make_conversation(store, status=ConversationStatus.PAUSED)
        await store.transition(conv.id, ConversationStatus.COMPLETED, "Objectives met")
        assert conv.status == ConversationStatus.COMPLETED

    async def test_same_status_is_noop(self, store: ConversationStore, event_bus: EventBus) -> None:
        conv = await make_conversation(store)
        assert not await store.transition(conv.id, ConversationStatus.ACTIVE)
        assert events_of(event_bus, conv.id, EventType.STATUS_CHANGED) == []


# =========================================================================
# Locks
# =========================================================================


class TestLocks:
    def test_locks_are_per_conversation(self, store: ConversationStore) -> None:
        assert store.lock("a") is store.lock("a")
        assert store.lock("a") is not store.lock("b")
        assert store.cost_lock("a") is not store.lock("a")
