"""Dispatch coordinator: decides whether agents respond and runs the turn.

For each accepted message in an ``active`` conversation the coordinator:

1. Short-circuits if the cost ceiling is already reached (→ ``paused``) or a
   hard limit is exceeded (→ ``stopped``), and compresses history when it
   has grown past the threshold.
2. Records the message in a per-conversation reply-to window.
3. Applies the turn-taking cap (``should_respond``).
4. Calls every dispatchable agent once, concurrently, under a global
   semaphore, through the resilience layer and the per-agent rate limiter.
5. Accumulates cost, appends each reply and re-checks the ceiling under the
   conversation's cost lock, in completion order.
6. Delivers the produced messages one at a time.

A failing agent contributes nothing to the turn; the other agents' replies
are unaffected.
"""

import asyncio
import time
from collections import defaultdict, deque
from collections.abc import Callable

import structlog

from agents import Agent, AgentRegistry, get_conversation_prompt
from context_manager import ContextManager
from conversation_store import ConversationStore
from events import EventType
from models import (
    MAX_REPLY_REFERENCES,
    AgentReply,
    AgentResult,
    AuthorKind,
    Conversation,
    ConversationStatus,
    Message,
    generate_message_id,
)
from rate_limiter import RateLimiterRegistry
from resilience import ResilienceLayer
from transport import DeliveryService

logger = structlog.get_logger(__name__)


def to_message(conversation_id: str, result: AgentResult) -> Message:
    """Convert a successful dispatch result into a history message."""
    return Message(
        id=generate_message_id("ai"),
        conversation_id=conversation_id,
        author_id=result.agent_id,
        author_kind=AuthorKind.AGENT,
        content=result.text,
        reply_to_ids=result.reply_to_ids,
        agent_id=result.agent_id,
        token_count=result.tokens.total,
    )


class DispatchCoordinator:
    """Runs agent turns for active conversations.

    Attributes:
        max_responses_per_turn: Cap on consecutive agent messages, and on
            agents dispatched per turn.
        batch_window_seconds: Age limit for reply-to references.
    """

    def __init__(
        self,
        store: ConversationStore,
        context: ContextManager,
        agents: AgentRegistry,
        resilience: ResilienceLayer,
        delivery: DeliveryService,
        *,
        rate_limiters: RateLimiterRegistry | None = None,
        max_responses_per_turn: int = 3,
        batch_window_seconds: float = 60.0,
        concurrency: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.context = context
        self.agents = agents
        self.resilience = resilience
        self.delivery = delivery
        self.rate_limiters = rate_limiters
        self.max_responses_per_turn = max_responses_per_turn
        self.batch_window_seconds = batch_window_seconds
        self._semaphore = asyncio.Semaphore(concurrency)
        self._clock = clock
        self._recent: dict[str, deque[tuple[Message, float]]] = defaultdict(deque)

    # -----------------------------------------------------------------
    # Response policy
    # -----------------------------------------------------------------

    def should_respond(self, message: Message, conversation: Conversation) -> bool:
        """Humans always get a response; agents only below the turn-taking cap."""
        if message.author_kind == AuthorKind.HUMAN:
            return True
        return self.response_budget(conversation) > 0

    def response_budget(self, conversation: Conversation) -> int:
        """Agent replies still allowed before a human must speak again.

        Agent-authored messages at the tail of the history count against
        ``max_responses_per_turn``.
        """
        trailing = 0
        for message in reversed(conversation.messages):
            if message.author_kind != AuthorKind.AGENT:
                break
            trailing += 1
        return max(self.max_responses_per_turn - trailing, 0)

    def record_recent(self, conversation_id: str, message: Message) -> None:
        """Add a message to the reply-to window and drop expired entries."""
        self._recent[conversation_id].append((message, self._clock()))
        self._prune_recent(conversation_id)

    def reply_to_ids(self, conversation_id: str) -> tuple[str, ...]:
        """Up to five ids of messages received within the batch window."""
        self._prune_recent(conversation_id)
        recent = self._recent.get(conversation_id, ())
        return tuple(message.id for message, _ in recent)[:MAX_REPLY_REFERENCES]

    def _prune_recent(self, conversation_id: str) -> None:
        recent = self._recent.get(conversation_id)
        if not recent:
            return
        cutoff = self._clock() - self.batch_window_seconds
        while recent and recent[0][1] <= cutoff:
            recent.popleft()

    def forget(self, conversation_id: str) -> None:
        """Drop the reply-to window of a finished conversation."""
        self._recent.pop(conversation_id, None)

    # -----------------------------------------------------------------
    # Turn handling
    # -----------------------------------------------------------------

    async def handle_new_message(self, conversation_id: str, message: Message) -> list[Message]:
        """Process an accepted message that is already in history.

        Returns:
            Agent messages produced by this turn, in append order.
        """
        conversation = self.store.require(conversation_id)
        if conversation.status != ConversationStatus.ACTIVE:
            logger.info(
                "dispatch_skipped_not_active",
                conversation_id=conversation_id,
                status=conversation.status.value,
            )
            return []

        if conversation.cost_limit_reached:
            await self._pause_for_cost(conversation)
            return []

        limits = self.context.check_limits(conversation_id)
        if limits.exceeded:
            logger.warning(
                "dispatch_limits_exceeded",
                conversation_id=conversation_id,
                reason=limits.reason,
            )
            await self.store.transition(
                conversation_id, ConversationStatus.STOPPED, limits.reason
            )
            await self.delivery.notify(
                conversation_id,
                f"Conversation stopped: {limits.reason}.",
                kind="closing",
            )
            return []

        if self.context.should_compress(conversation_id):
            await self.context.compress(conversation_id)

        self.record_recent(conversation_id, message)

        if not self.should_respond(message, conversation):
            logger.info(
                "dispatch_turn_cap_reached",
                conversation_id=conversation_id,
                max_responses_per_turn=self.max_responses_per_turn,
            )
            return []

        return await self.dispatch_turn(conversation_id)

    async def dispatch_turn(self, conversation_id: str) -> list[Message]:
        """Call each dispatchable agent once and deliver what they produce."""
        conversation = self.store.require(conversation_id)
        budget = self.response_budget(conversation)
        if budget == 0:
            logger.info(
                "dispatch_turn_cap_reached",
                conversation_id=conversation_id,
                max_responses_per_turn=self.max_responses_per_turn,
            )
            return []
        agent_ids = conversation.dispatchable_agents[:budget]
        if not agent_ids:
            logger.warning(
                "dispatch_no_active_agents",
                conversation_id=conversation_id,
                selected=conversation.selected_agents,
                disabled=sorted(conversation.disabled_agents),
            )
            return []

        history = list(conversation.messages)
        system_prompt = get_conversation_prompt(conversation.topic)
        reply_to = self.reply_to_ids(conversation_id)
        produced: list[Message] = []

        logger.info(
            "dispatch_turn_started",
            conversation_id=conversation_id,
            agents=agent_ids,
            history_length=len(history),
            reply_to_count=len(reply_to),
        )

        await asyncio.gather(*(
            self._dispatch_agent(
                conversation,
                agent_id,
                history,
                system_prompt,
                reply_to,
                produced,
            )
            for agent_id in agent_ids
        ))

        logger.info(
            "dispatch_turn_complete",
            conversation_id=conversation_id,
            produced=len(produced),
            attempted=len(agent_ids),
            total_cost=round(conversation.cost_tracking.total_cost, 6),
        )

        await self.delivery.deliver_messages(conversation_id, produced)
        return produced

    async def _dispatch_agent(
        self,
        conversation: Conversation,
        agent_id: str,
        history: list[Message],
        system_prompt: str,
        reply_to: tuple[str, ...],
        produced: list[Message],
    ) -> None:
        async with self._semaphore:
            if conversation.status != ConversationStatus.ACTIVE:
                logger.info(
                    "agent_dispatch_skipped_not_active",
                    conversation_id=conversation.id,
                    agent_id=agent_id,
                    status=conversation.status.value,
                )
                return

            if conversation.cost_limit_reached:
                await self._pause_for_cost(conversation)
                return

            try:
                agent = self.agents.get(agent_id)
                reply = await self.resilience.execute(
                    agent_id,
                    lambda: self._call_agent(agent, history, system_prompt),
                )
            except Exception as e:
                logger.warning(
                    "agent_dispatch_failed",
                    conversation_id=conversation.id,
                    agent_id=agent_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await self.store.emit(
                    EventType.AGENT_ERROR,
                    conversation.id,
                    agent_id=agent_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return

        async with self.store.cost_lock(conversation.id):
            conversation.cost_tracking.record(
                agent_id,
                reply.cost_usd,
                reply.tokens.input,
                reply.tokens.output,
            )
            result = AgentResult(
                text=reply.text,
                agent_id=agent_id,
                tokens=reply.tokens,
                cost_usd=reply.cost_usd,
                reply_to_ids=reply_to,
            )
            message = to_message(conversation.id, result)
            await self.context.append(conversation.id, message)
            conversation.active_agents.add(agent_id)
            produced.append(message)

            await self.store.emit(
                EventType.COST_UPDATED,
                conversation.id,
                agent_id=agent_id,
                call_cost=reply.cost_usd,
                total_cost=conversation.cost_tracking.total_cost,
                cost_limit=conversation.limits.cost_limit,
            )

            if conversation.cost_limit_reached:
                await self._pause_for_cost(conversation)

    async def _call_agent(
        self, agent: Agent, history: list[Message], system_prompt: str
    ) -> AgentReply:
        if self.rate_limiters is None:
            return await agent.respond(history, system_prompt)

        limiter = self.rate_limiters.get(agent.agent_id)
        estimated_tokens = max(sum(len(m.content) for m in history) // 4, 500)
        await limiter.acquire(estimated_tokens=estimated_tokens)
        reply = await agent.respond(history, system_prompt)
        limiter.record_usage(reply.tokens.total)
        return reply

    async def _pause_for_cost(self, conversation: Conversation) -> None:
        """Pause an active conversation whose cost ceiling is reached (no-op otherwise)."""
        if conversation.status != ConversationStatus.ACTIVE:
            return
        total = conversation.cost_tracking.total_cost
        limit = conversation.limits.cost_limit
        logger.warning(
            "conversation_cost_limit_reached",
            conversation_id=conversation.id,
            total_cost=round(total, 6),
            cost_limit=limit,
        )
        await self.store.transition(
            conversation.id, ConversationStatus.PAUSED, "Cost limit reached"
        )
        await self.delivery.notify(
            conversation.id,
            f"Conversation paused: cost limit reached (${total:.2f} / ${limit:.2f}). "
            "Resume once the limit has been raised.",
            kind="cost_limit",
        )
