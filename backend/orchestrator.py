"""Conversation orchestrator: the entry point for messages and control signals.

The orchestrator wires the store, context manager, dispatch coordinator,
session planner and documentation agents together and linearises all work
on one conversation behind the store's per-conversation lock. Different
conversations proceed in parallel.

Usage:
    >>> orchestrator = ConversationOrchestrator.from_settings(
    ...     settings, EventBus(), InMemoryDocumentationStore()
    ... )
    >>> response = await orchestrator.on_incoming_message(
    ...     IncomingMessage(channel_ref="thread-1", author_id="u1", content="Is P = NP?")
    ... )
    >>> await orchestrator.approve_and_start(response.conversation_id)
    >>> await orchestrator.cleanup_all()
"""

import asyncio
import time
from collections.abc import Coroutine
from typing import Any

import structlog

from agents import AgentRegistry
from config import Settings
from context_manager import ContextManager, estimate_tokens
from conversation_store import ConversationStore
from coordinator import DispatchCoordinator
from docs_store import DocumentationStore
from documentation import ScribeAgent, TldrAgent
from events import EventBus
from image_generator import ImageGenerator
from models import (
    Conversation,
    ConversationLimits,
    ConversationStatus,
    IncomingMessage,
    Message,
)
from models.schemas import (
    ControlResponse,
    ConversationDetailResponse,
    ConversationSummaryResponse,
    CostSummary,
    ImageGenerationResponse,
    IncomingMessageResponse,
)
from rate_limiter import RateLimiter, RateLimiterRegistry
from resilience import CircuitBreakerRegistry, ResilienceLayer, RetryPolicy
from resilience.retry import SleepFn
from session_planner import SessionPlanner
from task_presets import AgentPresets, TaskType
from transport import DeliveryService, EventStreamTransport, Transport

logger = structlog.get_logger(__name__)

STOP_ALL = "all"


def summarize(conversation: Conversation) -> ConversationSummaryResponse:
    """Build the API summary of a conversation."""
    moderation = conversation.moderation_state
    costs = conversation.cost_tracking
    return ConversationSummaryResponse(
        conversation_id=conversation.id,
        channel_ref=conversation.channel_ref,
        topic=conversation.topic,
        status=conversation.status,
        message_count=conversation.total_message_count,
        token_count=conversation.token_count,
        created_at=conversation.created_at,
        last_activity_at=conversation.last_activity_at,
        cost=CostSummary(
            total_cost=costs.total_cost,
            total_input_tokens=costs.total_input_tokens,
            total_output_tokens=costs.total_output_tokens,
            costs_by_agent={
                agent_id: breakdown.cost
                for agent_id, breakdown in costs.costs_by_agent.items()
            },
            image_cost=conversation.image_cost_tracking.total_cost,
        ),
        selected_agents=list(conversation.selected_agents),
        disabled_agents=sorted(conversation.disabled_agents),
        current_focus=moderation.current_focus if moderation else None,
        quality_score=moderation.quality_score if moderation else None,
        stop_reason=conversation.stop_reason,
    )


class ConversationOrchestrator:
    """Routes incoming messages and control signals to the core components.

    Thread Safety:
        Every operation on a conversation runs under ``store.lock(id)``.
        Background tasks (TL;DR refreshes) are tracked and cancelled on
        cleanup.

    Attributes:
        store: Conversation aggregates.
        context: History, compression and limits.
        coordinator: Agent turns.
        planner: Planning and moderation.
        delivery: Outbound notices.
        scribe: Debounced detailed documentation.
        tldr: Periodic TL;DR summaries.
        images: Image generation under the image cost ceiling.
        presets: Agents selected for a new conversation by task type.
    """

    def __init__(
        self,
        store: ConversationStore,
        context: ContextManager,
        coordinator: DispatchCoordinator,
        planner: SessionPlanner,
        delivery: DeliveryService,
        scribe: ScribeAgent,
        tldr: TldrAgent,
        images: ImageGenerator,
        *,
        default_limits: ConversationLimits,
        presets: AgentPresets,
    ) -> None:
        self.store = store
        self.context = context
        self.coordinator = coordinator
        self.planner = planner
        self.delivery = delivery
        self.scribe = scribe
        self.tldr = tldr
        self.images = images
        self.default_limits = default_limits
        self.presets = presets
        self._tasks: set[asyncio.Task[Any]] = set()
        self.planner.on_timeout = self._on_planning_timeout
        logger.info(
            "orchestrator_initialized",
            default_agents=self.presets.agents_for(TaskType.GENERAL),
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        event_bus: EventBus,
        docs_store: DocumentationStore,
        *,
        agents: AgentRegistry | None = None,
        transport: Transport | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> "ConversationOrchestrator":
        """Build the full component graph from application settings."""
        agents = agents or AgentRegistry.from_settings(settings)
        store = ConversationStore(event_bus)
        context = ContextManager(
            store, docs_store, keep_recent=settings.compression_keep_recent
        )
        retry_policy = RetryPolicy(
            max_retries=settings.retry_max_retries,
            initial_delay=settings.retry_initial_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )
        resilience = ResilienceLayer(
            CircuitBreakerRegistry(
                failure_threshold=settings.breaker_failure_threshold,
                reset_timeout=settings.breaker_reset_timeout_seconds,
                half_open_max_attempts=settings.breaker_half_open_max_attempts,
            ),
            retry_policy,
            sleep=sleep,
        )
        delivery = DeliveryService(
            transport or EventStreamTransport(),
            store,
            limiter=RateLimiter(
                "transport",
                max_calls=settings.transport_rate_limit_per_second,
                window_seconds=1.0,
            ),
            retry_policy=retry_policy,
            sleep=sleep,
        )
        coordinator = DispatchCoordinator(
            store,
            context,
            agents,
            resilience,
            delivery,
            rate_limiters=RateLimiterRegistry(
                max_calls=settings.agent_rate_limit_rpm,
                window_seconds=60.0,
            ),
            max_responses_per_turn=settings.max_ai_responses_per_turn,
            batch_window_seconds=settings.batch_reply_time_window_seconds,
            concurrency=settings.dispatch_concurrency,
        )
        planner = SessionPlanner(
            store,
            context,
            agents,
            resilience,
            delivery,
            planner_agent=settings.planner_agent,
            max_questions=settings.planner_max_questions,
            planning_timeout_seconds=settings.planner_timeout_minutes * 60,
            auto_start=settings.planner_auto_start,
            check_interval=settings.moderator_check_interval,
            drift_threshold=settings.moderator_topic_drift_threshold,
            max_drift_warnings=settings.moderator_max_drift_warnings,
            balance_check=settings.moderator_participant_balance_check,
            quality_assessment=settings.moderator_quality_assessment,
        )
        scribe = ScribeAgent(
            store,
            docs_store,
            agents,
            resilience,
            agent_id=settings.scribe_agent,
            update_interval_seconds=settings.scribe_update_interval_seconds,
        )
        tldr = TldrAgent(
            store,
            docs_store,
            agents,
            resilience,
            agent_id=settings.tldr_agent,
            update_interval_seconds=settings.tldr_update_interval_seconds,
        )
        images = ImageGenerator(
            store,
            docs_store,
            agents,
            resilience,
            delivery,
            default_agents=settings.default_image_agents,
        )
        return cls(
            store,
            context,
            coordinator,
            planner,
            delivery,
            scribe,
            tldr,
            images,
            default_limits=ConversationLimits(
                max_messages=settings.max_messages_per_conversation,
                cost_limit=settings.conversation_cost_limit,
                timeout_minutes=settings.conversation_timeout_minutes,
                compression_threshold=settings.compression_threshold,
                image_cost_limit=settings.image_cost_limit,
            ),
            presets=AgentPresets(
                settings.default_agents,
                coding=settings.coding_agents,
                architecture=settings.architecture_agents,
            ),
        )

    def _new_limits(self) -> ConversationLimits:
        d = self.default_limits
        return ConversationLimits(
            max_messages=d.max_messages,
            cost_limit=d.cost_limit,
            timeout_minutes=d.timeout_minutes,
            compression_threshold=d.compression_threshold,
            image_cost_limit=d.image_cost_limit,
        )

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # =========================================================================
    # Incoming messages
    # =========================================================================

    async def on_incoming_message(self, incoming: IncomingMessage) -> IncomingMessageResponse:
        """Accept an inbound message and run whatever it triggers.

        A message to an unseen channel creates a conversation in
        ``planning``, with agents chosen by the task type of the message.
        Messages to paused or finished conversations are recorded but
        trigger nothing.
        """
        task_type, agents = self.presets.select(incoming.content)
        conversation, created = await self.store.get_or_create(
            incoming.channel_ref,
            topic=incoming.content,
            limits=self._new_limits(),
            selected_agents=agents,
        )
        if created:
            logger.info(
                "conversation_agents_selected",
                conversation_id=conversation.id,
                task_type=task_type.value,
                agents=conversation.selected_agents,
            )
        message = Message(
            conversation_id=conversation.id,
            author_id=incoming.author_id,
            author_kind=incoming.author_kind,
            content=incoming.content,
            reply_to_ids=tuple(incoming.reply_to_ids),
            transport_message_id=incoming.transport_message_id,
            token_count=estimate_tokens(incoming.content),
        )

        async with self.store.lock(conversation.id):
            was_terminal = conversation.is_terminal
            if conversation.status == ConversationStatus.ACTIVE:
                await self._enforce_limits_before_append(conversation)

            await self.context.append(conversation.id, message)

            if created:
                await self.planner.handle_initial_message(conversation.id, message)
            elif conversation.status == ConversationStatus.PLANNING:
                await self.planner.handle_planning_response(conversation.id, message)
            elif conversation.status == ConversationStatus.ACTIVE:
                await self._run_turn(conversation, message)
            else:
                logger.info(
                    "message_recorded_without_dispatch",
                    conversation_id=conversation.id,
                    status=conversation.status.value,
                )

            finished = conversation.is_terminal and not was_terminal

        if finished:
            await self._finalize(conversation)

        return IncomingMessageResponse(
            conversation_id=conversation.id,
            message_id=message.id,
            status=conversation.status,
        )

    async def _enforce_limits_before_append(self, conversation: Conversation) -> None:
        limits = self.context.check_limits(conversation.id)
        if not limits.exceeded:
            return
        await self.store.transition(
            conversation.id, ConversationStatus.STOPPED, limits.reason
        )
        await self.delivery.notify(
            conversation.id,
            f"Conversation stopped: {limits.reason}.",
            kind="closing",
        )

    async def _run_turn(self, conversation: Conversation, message: Message) -> None:
        produced = await self.coordinator.handle_new_message(conversation.id, message)
        await self.planner.monitor_conversation(conversation.id, [message, *produced])
        self.scribe.notify_new_messages(conversation)
        if self.tldr.is_due(conversation.id):
            self._spawn(
                self.tldr.check_and_update(conversation),
                name=f"tldr_{conversation.id}",
            )

    async def _finalize(self, conversation: Conversation) -> None:
        """Document a conversation that just finished and close its event stream."""
        logger.info(
            "conversation_finished",
            conversation_id=conversation.id,
            status=conversation.status.value,
            reason=conversation.stop_reason,
        )
        await self.scribe.process_immediate(conversation)
        self.coordinator.forget(conversation.id)
        await self.store.event_bus.close_conversation(
            conversation.id, reason=conversation.stop_reason or conversation.status.value
        )

    async def _on_planning_timeout(self, conversation_id: str) -> None:
        conversation = self.store.get(conversation_id)
        if conversation is not None and conversation.is_terminal:
            await self._finalize(conversation)

    # =========================================================================
    # Control signals
    # =========================================================================

    def _response(
        self, conversation: Conversation, accepted: bool, detail: str | None = None
    ) -> ControlResponse:
        return ControlResponse(
            conversation_id=conversation.id,
            accepted=accepted,
            status=conversation.status,
            detail=detail,
        )

    async def approve_and_start(self, conversation_id: str) -> ControlResponse:
        """Approve the proposed plan and start the conversation.

        Raises:
            ConversationNotFoundError: If the id is unknown.
        """
        conversation = self.store.require(conversation_id)
        async with self.store.lock(conversation_id):
            accepted = await self.planner.approve_and_start(conversation_id)
        if not accepted:
            return self._response(conversation, False, "Conversation is not in planning")
        return self._response(conversation, True)

    async def resume(self, conversation_id: str) -> ControlResponse:
        """Resume a paused conversation if its cost ceiling allows it.

        Raises:
            ConversationNotFoundError: If the id is unknown.
        """
        conversation = self.store.require(conversation_id)
        async with self.store.lock(conversation_id):
            if conversation.status != ConversationStatus.PAUSED:
                return self._response(conversation, False, "Conversation is not paused")

            if conversation.cost_limit_reached:
                total = conversation.cost_tracking.total_cost
                limit = conversation.limits.cost_limit
                logger.info(
                    "resume_refused_cost_limit",
                    conversation_id=conversation_id,
                    total_cost=round(total, 6),
                    cost_limit=limit,
                )
                return self._response(
                    conversation,
                    False,
                    f"Cost limit still reached (${total:.2f} / ${limit:.2f})",
                )

            await self.store.transition(conversation_id, ConversationStatus.ACTIVE)
            # A pause does not count as inactivity
            conversation.last_activity_at = time.time()

        await self.delivery.notify(conversation_id, "Conversation resumed.", kind="resumed")
        return self._response(conversation, True)

    async def pause(self, conversation_id: str) -> ControlResponse:
        conversation = self.store.require(conversation_id)
        async with self.store.lock(conversation_id):
            if conversation.status != ConversationStatus.ACTIVE:
                return self._response(conversation, False, "Conversation is not active")
            await self.store.transition(
                conversation_id, ConversationStatus.PAUSED, "Paused by request"
            )
        await self.delivery.notify(conversation_id, "Conversation paused.", kind="paused")
        return self._response(conversation, True)

    async def stop(self, conversation_id: str, target: str = STOP_ALL) -> ControlResponse:
        """Stop the conversation, or disable one agent that has participated.

        Raises:
            ConversationNotFoundError: If the id is unknown.
        """
        conversation = self.store.require(conversation_id)
        if target.lower() != STOP_ALL:
            return await self._disable_agent(conversation, target.lower())

        async with self.store.lock(conversation_id):
            if conversation.is_terminal:
                return self._response(conversation, False, "Conversation has already ended")
            await self.store.transition(
                conversation_id, ConversationStatus.STOPPED, "Stopped by request"
            )

        await self.delivery.notify(
            conversation_id,
            "Conversation stopped by request.",
            kind="closing",
        )
        await self._finalize(conversation)
        return self._response(conversation, True)

    async def _disable_agent(self, conversation: Conversation, agent_id: str) -> ControlResponse:
        async with self.store.lock(conversation.id):
            if agent_id not in conversation.active_agents:
                return self._response(
                    conversation,
                    False,
                    f"Agent '{agent_id}' has not participated in this conversation",
                )
            conversation.disabled_agents.add(agent_id)

        logger.info("agent_disabled", conversation_id=conversation.id, agent_id=agent_id)
        await self.delivery.notify(
            conversation.id,
            f"{agent_id} has been removed from the conversation.",
            kind="agent_disabled",
        )
        return self._response(conversation, True, f"Agent '{agent_id}' disabled")

    async def enable_agent(self, conversation_id: str, agent_id: str) -> ControlResponse:
        """Re-enable a previously disabled agent."""
        conversation = self.store.require(conversation_id)
        agent_id = agent_id.lower()
        async with self.store.lock(conversation_id):
            if agent_id not in conversation.disabled_agents:
                return self._response(conversation, False, f"Agent '{agent_id}' is not disabled")
            conversation.disabled_agents.discard(agent_id)

        logger.info("agent_enabled", conversation_id=conversation_id, agent_id=agent_id)
        return self._response(conversation, True, f"Agent '{agent_id}' enabled")

    async def edit_planning_message(self, conversation_id: str, text: str) -> ControlResponse:
        """Replace the opening message and restart planning.

        Raises:
            ConversationNotFoundError: If the id is unknown.
        """
        conversation = self.store.require(conversation_id)
        async with self.store.lock(conversation_id):
            accepted = await self.planner.edit_planning_message(conversation_id, text)
        if not accepted:
            return self._response(conversation, False, "Conversation is not in planning")
        return self._response(conversation, True)

    async def refresh_context(self, conversation_id: str) -> ControlResponse:
        """Document the conversation now, then compress history from that documentation."""
        conversation = self.store.require(conversation_id)
        async with self.store.lock(conversation_id):
            await self.scribe.process_immediate(conversation)
            compressed = await self.context.compress(conversation_id)
        if not compressed:
            return self._response(conversation, False, "Nothing to compress")
        return self._response(conversation, True)

    async def generate_images(
        self,
        conversation_id: str,
        prompt: str | None = None,
        agent_ids: list[str] | None = None,
    ) -> ImageGenerationResponse:
        """Generate images for a conversation.

        Runs outside the conversation lock; image spend is serialised by the
        cost lock.
        """
        return await self.images.generate(conversation_id, prompt, agent_ids)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_status(self, conversation_id: str) -> ConversationSummaryResponse:
        return summarize(self.store.require(conversation_id))

    def get_detail(self, conversation_id: str) -> ConversationDetailResponse:
        conversation = self.store.require(conversation_id)
        return ConversationDetailResponse(
            **summarize(conversation).model_dump(),
            messages=list(conversation.messages),
        )

    def list_conversations(self) -> list[ConversationSummaryResponse]:
        return [summarize(c) for c in self.store.list_conversations()]

    def get_focus(self, conversation_id: str) -> str:
        """Current moderation focus, or the topic before moderation starts."""
        conversation = self.store.require(conversation_id)
        moderation = conversation.moderation_state
        if moderation is not None and moderation.current_focus:
            return moderation.current_focus
        return conversation.topic

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def cleanup_all(self) -> None:
        """Cancel background work. Called on application shutdown."""
        logger.info("orchestrator_cleanup_start", background_tasks=len(self._tasks))
        tasks = list(self._tasks)
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.planner.cancel_all()
        await self.scribe.cancel_all()
        logger.info("orchestrator_cleanup_complete")
