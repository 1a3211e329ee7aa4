"""Tests for coordinator.py -- response policy, concurrent turns and cost ceilings."""

import asyncio

import pytest

from agents import MockAgent
from conftest import RecordingTransport, events_of, make_conversation, make_message, make_registry
from context_manager import ContextManager
from conversation_store import ConversationStore
from coordinator import DispatchCoordinator
from events import EventBus, EventType
from models import AgentReply, AuthorKind, ConversationStatus, Message, TokenUsage
from rate_limiter import RateLimiterRegistry
from resilience import ResilienceLayer
from transport import DeliveryService


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class OverlapCounter:
    """Tracks how many agent calls overlap at once."""

    def __init__(self) -> None:
        self.in_flight = 0
        self.peak = 0


class OverlapAgent:
    """Agent that reports its calls to a shared OverlapCounter."""

    def __init__(self, agent_id: str, counter: OverlapCounter) -> None:
        self.agent_id = agent_id
        self.counter = counter

    async def respond(self, history: list[Message], system_prompt: str) -> AgentReply:
        self.counter.in_flight += 1
        self.counter.peak = max(self.counter.peak, self.counter.in_flight)
        await asyncio.sleep(0.01)
        self.counter.in_flight -= 1
        return AgentReply(text=f"{self.agent_id} here")


def _coordinator(
    store: ConversationStore,
    context: ContextManager,
    resilience: ResilienceLayer,
    delivery: DeliveryService,
    *agents: object,
    **kwargs: object,
) -> DispatchCoordinator:
    return DispatchCoordinator(
        store,
        context,
        make_registry(*agents),
        resilience,
        delivery,
        **kwargs,
    )


async def _accept(context: ContextManager, conversation_id: str, message: Message) -> Message:
    await context.append(conversation_id, message)
    return message


# =========================================================================
# Response policy
# =========================================================================


class TestShouldRespond:
    async def test_human_always_gets_response(self, store, context, resilience, delivery) -> None:
        coordinator = _coordinator(store, context, resilience, delivery, max_responses_per_turn=2)
        conv = await make_conversation(store)
        for author in ("claude", "chatgpt"):
            await context.append(conv.id, make_message(conv.id, author_id=author,
                                                       author_kind=AuthorKind.AGENT))
        human = make_message(conv.id)
        assert coordinator.should_respond(human, conv)

    async def test_agent_chain_capped(self, store, context, resilience, delivery) -> None:
        coordinator = _coordinator(store, context, resilience, delivery, max_responses_per_turn=2)
        conv = await make_conversation(store)
        await context.append(conv.id, make_message(conv.id))
        first = make_message(conv.id, author_id="claude", author_kind=AuthorKind.AGENT)
        await context.append(conv.id, first)
        assert coordinator.should_respond(first, conv)

        second = make_message(conv.id, author_id="chatgpt", author_kind=AuthorKind.AGENT)
        await context.append(conv.id, second)
        assert not coordinator.should_respond(second, conv)

    async def test_agent_message_never_triggers_third_consecutive_response(
        self, store, context, resilience, delivery
    ) -> None:
        claude, chatgpt = MockAgent("claude"), MockAgent("chatgpt")
        coordinator = _coordinator(
            store, context, resilience, delivery, claude, chatgpt, max_responses_per_turn=2
        )
        conv = await make_conversation(store)
        human = await _accept(context, conv.id, make_message(conv.id, "Opening question"))

        produced = await coordinator.handle_new_message(conv.id, human)
        assert len(produced) == 2

        again = await coordinator.handle_new_message(conv.id, produced[-1])
        assert again == []
        assert claude.call_count == chatgpt.call_count == 1
        assert [m.author_kind for m in conv.messages] == [
            AuthorKind.HUMAN, AuthorKind.AGENT, AuthorKind.AGENT
        ]

    async def test_turn_after_agent_message_uses_remaining_budget(
        self, store, context, resilience, delivery
    ) -> None:
        claude, chatgpt = MockAgent("claude"), MockAgent("chatgpt")
        coordinator = _coordinator(
            store, context, resilience, delivery, claude, chatgpt, max_responses_per_turn=2
        )
        conv = await make_conversation(store)
        await _accept(context, conv.id, make_message(conv.id, "Opening question"))
        from_grok = await _accept(
            context,
            conv.id,
            make_message(conv.id, "Grok chiming in", author_id="grok",
                         author_kind=AuthorKind.AGENT),
        )

        produced = await coordinator.handle_new_message(conv.id, from_grok)

        assert len(produced) == 1
        assert claude.call_count + chatgpt.call_count == 1
        assert [m.author_kind for m in conv.messages] == [
            AuthorKind.HUMAN, AuthorKind.AGENT, AuthorKind.AGENT
        ]

    @pytest.mark.parametrize(
        ("kinds", "expected"),
        [
            ([], 3),
            ([AuthorKind.HUMAN], 3),
            ([AuthorKind.HUMAN, AuthorKind.AGENT], 2),
            ([AuthorKind.AGENT, AuthorKind.HUMAN, AuthorKind.AGENT, AuthorKind.AGENT], 1),
            ([AuthorKind.HUMAN, AuthorKind.AGENT, AuthorKind.AGENT, AuthorKind.AGENT], 0),
        ],
    )
    async def test_response_budget_counts_trailing_agent_messages(
        self, store, context, resilience, delivery, kinds, expected
    ) -> None:
        coordinator = _coordinator(store, context, resilience, delivery, max_responses_per_turn=3)
        conv = await make_conversation(store)
        for kind in kinds:
            author = "user_1" if kind == AuthorKind.HUMAN else "claude"
            await context.append(conv.id, make_message(conv.id, author_id=author, author_kind=kind))
        assert coordinator.response_budget(conv) == expected


# =========================================================================
# Turn dispatch
# =========================================================================


class TestDispatchTurn:
    async def test_each_agent_called_once_with_history_and_topic(
        self, store, context, resilience, delivery, transport: RecordingTransport
    ) -> None:
        claude, chatgpt = MockAgent("claude", ["Yes."]), MockAgent("chatgpt", ["No."])
        coordinator = _coordinator(store, context, resilience, delivery, claude, chatgpt)
        conv = await make_conversation(store, topic="Is P equal to NP?")
        human = await _accept(context, conv.id, make_message(conv.id, "Thoughts?"))

        produced = await coordinator.handle_new_message(conv.id, human)

        assert sorted(m.content for m in produced) == ["No.", "Yes."]
        assert all(m.is_agent for m in produced)
        call = claude.call_history[0]
        assert [m.content for m in call["history"]] == ["Thoughts?"]
        assert "Is P equal to NP?" in call["system_prompt"]
        assert conv.active_agents == {"claude", "chatgpt"}
        assert len(transport.delivered) == 2
        assert transport.delivered[0]["channel_ref"] == conv.channel_ref

    async def test_messages_appended_in_completion_order(
        self, store, context, resilience, delivery
    ) -> None:
        slow = MockAgent("claude", ["slow"], delay_seconds=0.05)
        fast = MockAgent("chatgpt", ["fast"])
        coordinator = _coordinator(store, context, resilience, delivery, slow, fast)
        conv = await make_conversation(store)
        human = await _accept(context, conv.id, make_message(conv.id))

        produced = await coordinator.handle_new_message(conv.id, human)

        assert [m.content for m in produced] == ["fast", "slow"]
        assert [m.content for m in conv.messages[1:]] == ["fast", "slow"]

    async def test_failed_agent_drops_out_of_turn(
        self, store, context, resilience, delivery, event_bus: EventBus
    ) -> None:
        broken = MockAgent("claude", [ValueError("invalid api key")])
        healthy = MockAgent("chatgpt", ["Still here."])
        coordinator = _coordinator(store, context, resilience, delivery, broken, healthy)
        conv = await make_conversation(store)
        human = await _accept(context, conv.id, make_message(conv.id))

        produced = await coordinator.handle_new_message(conv.id, human)

        assert [m.author_id for m in produced] == ["chatgpt"]
        assert conv.active_agents == {"chatgpt"}
        [error] = events_of(event_bus, conv.id, EventType.AGENT_ERROR)
        assert error.agent_id == "claude"
        assert error.data["error_type"] == "ValueError"

    async def test_transient_failure_is_retried(self, store, context, resilience, delivery) -> None:
        flaky = MockAgent("claude", [TimeoutError("slow upstream"), "Recovered."])
        coordinator = _coordinator(store, context, resilience, delivery, flaky)
        conv = await make_conversation(store, agents=["claude"])
        human = await _accept(context, conv.id, make_message(conv.id))

        produced = await coordinator.handle_new_message(conv.id, human)

        assert [m.content for m in produced] == ["Recovered."]
        assert flaky.call_count == 2

    async def test_no_dispatchable_agents_is_noop(self, store, context, resilience, delivery) -> None:
        claude = MockAgent("claude")
        coordinator = _coordinator(store, context, resilience, delivery, claude)
        conv = await make_conversation(store, agents=["claude"])
        conv.disabled_agents.add("claude")
        human = await _accept(context, conv.id, make_message(conv.id))

        assert await coordinator.handle_new_message(conv.id, human) == []
        assert claude.call_count == 0

    async def test_disabled_agent_is_skipped(self, store, context, resilience, delivery) -> None:
        claude, chatgpt = MockAgent("claude"), MockAgent("chatgpt")
        coordinator = _coordinator(store, context, resilience, delivery, claude, chatgpt)
        conv = await make_conversation(store)
        conv.disabled_agents.add("claude")
        human = await _accept(context, conv.id, make_message(conv.id))

        produced = await coordinator.handle_new_message(conv.id, human)
        assert [m.author_id for m in produced] == ["chatgpt"]
        assert claude.call_count == 0

    async def test_concurrency_is_bounded(self, store, context, resilience, delivery) -> None:
        counter = OverlapCounter()
        agents = [OverlapAgent(a, counter) for a in ("a1", "a2", "a3")]
        coordinator = _coordinator(
            store, context, resilience, delivery, *agents,
            concurrency=2, max_responses_per_turn=3,
        )
        conv = await make_conversation(store, agents=["a1", "a2", "a3"])
        human = await _accept(context, conv.id, make_message(conv.id))

        produced = await coordinator.handle_new_message(conv.id, human)
        assert len(produced) == 3
        assert counter.peak == 2

    async def test_inactive_conversation_is_noop(self, store, context, resilience, delivery) -> None:
        claude = MockAgent("claude")
        coordinator = _coordinator(store, context, resilience, delivery, claude)
        conv = await make_conversation(store, status=ConversationStatus.PAUSED)
        human = await _accept(context, conv.id, make_message(conv.id))

        assert await coordinator.handle_new_message(conv.id, human) == []
        assert claude.call_count == 0
        assert conv.message_count == 1

    async def test_limit_violation_stops_conversation(
        self, store, context, resilience, delivery, transport: RecordingTransport
    ) -> None:
        claude = MockAgent("claude")
        coordinator = _coordinator(store, context, resilience, delivery, claude)
        conv = await make_conversation(store, agents=["claude"], max_messages=1)
        human = await _accept(context, conv.id, make_message(conv.id))

        assert await coordinator.handle_new_message(conv.id, human) == []
        assert conv.status == ConversationStatus.STOPPED
        assert conv.stop_reason == "Maximum message count reached"
        assert claude.call_count == 0
        assert "Maximum message count reached" in transport.texts[-1]

    async def test_rate_limiter_records_agent_calls(self, store, context, resilience, delivery) -> None:
        limiters = RateLimiterRegistry(max_calls=10, window_seconds=60.0)
        claude = MockAgent("claude", ["ok"])
        coordinator = _coordinator(
            store, context, resilience, delivery, claude, rate_limiters=limiters
        )
        conv = await make_conversation(store, agents=["claude"])
        human = await _accept(context, conv.id, make_message(conv.id))

        await coordinator.handle_new_message(conv.id, human)
        assert limiters.get("claude").get_status()["current_calls"] == 1


# =========================================================================
# Reply-to batching
# =========================================================================


class TestReplyToWindow:
    async def test_reply_to_recent_messages(self, store, context, resilience, delivery) -> None:
        coordinator = _coordinator(
            store, context, resilience, delivery, MockAgent("claude"),
        )
        conv = await make_conversation(store, agents=["claude"])
        human = await _accept(context, conv.id, make_message(conv.id))

        [reply] = await coordinator.handle_new_message(conv.id, human)
        assert reply.reply_to_ids == (human.id,)

    async def test_window_pruned_and_capped(self, store, context, resilience, delivery) -> None:
        clock = FakeClock()
        coordinator = _coordinator(
            store, context, resilience, delivery, batch_window_seconds=60.0, clock=clock,
        )
        conv = await make_conversation(store)
        old = make_message(conv.id, "old")
        coordinator.record_recent(conv.id, old)

        clock.now = 61.0
        recent = [make_message(conv.id, f"m{i}") for i in range(7)]
        for message in recent:
            coordinator.record_recent(conv.id, message)

        ids = coordinator.reply_to_ids(conv.id)
        assert old.id not in ids
        assert ids == tuple(m.id for m in recent[:5])


# =========================================================================
# Cost ceiling
# =========================================================================


class TestCostCeiling:
    async def test_concurrent_breach_keeps_messages_then_pauses(
        self,
        store,
        context,
        resilience,
        delivery,
        event_bus: EventBus,
        transport: RecordingTransport,
    ) -> None:
        claude = MockAgent("claude", ["A"], cost_per_call=0.60, delay_seconds=0.01)
        chatgpt = MockAgent("chatgpt", ["B"], cost_per_call=0.60, delay_seconds=0.01)
        coordinator = _coordinator(store, context, resilience, delivery, claude, chatgpt)
        conv = await make_conversation(store, cost_limit=1.00)
        human = await _accept(context, conv.id, make_message(conv.id))

        produced = await coordinator.handle_new_message(conv.id, human)

        assert len(produced) == 2
        assert conv.status == ConversationStatus.PAUSED
        assert conv.cost_tracking.total_cost == pytest.approx(1.20)
        assert conv.message_count == 3
        assert any("cost limit reached" in text for text in transport.texts)
        assert len(events_of(event_bus, conv.id, EventType.COST_UPDATED)) == 2

        follow_up = await _accept(context, conv.id, make_message(conv.id, "Anyone?"))
        assert await coordinator.handle_new_message(conv.id, follow_up) == []
        assert claude.call_count == chatgpt.call_count == 1

    async def test_pre_check_pauses_before_calling(self, store, context, resilience, delivery) -> None:
        claude = MockAgent("claude")
        coordinator = _coordinator(store, context, resilience, delivery, claude)
        conv = await make_conversation(store, agents=["claude"], cost_limit=1.0)
        conv.cost_tracking.record("claude", 1.0, 0, 0)
        human = await _accept(context, conv.id, make_message(conv.id))

        assert await coordinator.handle_new_message(conv.id, human) == []
        assert conv.status == ConversationStatus.PAUSED
        assert claude.call_count == 0

    async def test_cost_breakdown_per_agent(self, store, context, resilience, delivery) -> None:
        claude = MockAgent("claude", [AgentReply(
            text="priced", tokens=TokenUsage(input=100, output=40), cost_usd=0.02,
        )])
        coordinator = _coordinator(store, context, resilience, delivery, claude)
        conv = await make_conversation(store, agents=["claude"])
        human = await _accept(context, conv.id, make_message(conv.id))

        [reply] = await coordinator.handle_new_message(conv.id, human)

        breakdown = conv.cost_tracking.costs_by_agent["claude"]
        assert breakdown.cost == pytest.approx(0.02)
        assert breakdown.input_tokens == 100
        assert breakdown.output_tokens == 40
        assert breakdown.request_count == 1
        assert reply.token_count == 140

    async def test_total_cost_has_no_lost_updates(self, store, context, resilience, delivery) -> None:
        agent_ids = [f"agent{i}" for i in range(6)]
        agents = [MockAgent(a, cost_per_call=0.10, delay_seconds=0.005) for a in agent_ids]
        coordinator = _coordinator(
            store, context, resilience, delivery, *agents,
            max_responses_per_turn=6, concurrency=6,
        )
        conv = await make_conversation(store, agents=agent_ids, cost_limit=100.0)
        human = await _accept(context, conv.id, make_message(conv.id))

        await coordinator.handle_new_message(conv.id, human)
        assert conv.cost_tracking.total_cost == pytest.approx(0.60)
        assert sum(b.request_count for b in conv.cost_tracking.costs_by_agent.values()) == 6
