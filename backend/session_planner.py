"""Session planner and moderator.

Planning (status ``planning``):
    1. The initial message is analysed by the planner agent, which may ask
       up to ``max_questions`` clarifying questions.
    2. Once the questions are answered (or there are none) a plan is built:
       expanded topic, plan text and negotiated parameters. Unparseable
       plans fall back to a default built from the current limits.
    3. The plan waits for approval (``!start``, ``approve`` or ``go``, or the
       approve control). Planning that is not approved within the timeout
       stops the conversation.

Moderation (status ``active``), after every accepted message:
    1. Participant tally.
    2. Periodic drift check over the last five messages.
    3. Limit re-check, stopping the conversation on violation.
    4. Informational quality score.

Planner and moderator notices go through the delivery service; they are
not appended to the conversation history.
"""

import asyncio
import re
import time
from collections.abc import Awaitable, Callable, Sequence

import structlog

from agents import (
    AgentRegistry,
    get_drift_prompt,
    get_planner_analyze_prompt,
    get_planner_plan_prompt,
    parse_drift_response,
    parse_plan_response,
    parse_questions,
)
from context_manager import SYSTEM_AUTHOR_ID, ContextManager
from conversation_store import ConversationStore
from events import EventType
from models import (
    AgentReply,
    AuthorKind,
    ConversationStatus,
    DriftAssessment,
    Message,
    ModerationState,
    PlanDraft,
    PlanningState,
    PlanParameters,
)
from resilience import ResilienceLayer
from transport import DeliveryService

logger = structlog.get_logger(__name__)

APPROVAL_PATTERN = re.compile(r"^!?(start|approve|go)$", re.IGNORECASE)
DEFAULT_PLAN_TEXT = "General discussion on the topic."
DRIFT_WINDOW = 5


def is_approval(text: str) -> bool:
    """True if a planning reply is an approval keyword."""
    return bool(APPROVAL_PATTERN.match(text.strip()))


def compute_quality_score(moderation: ModerationState, max_drift_warnings: int) -> float:
    """Heuristic 0..1 score from participation and drift strikes."""
    score = 0.5
    tally = moderation.participant_balance
    if len(tally) >= 3:
        score += 0.2
    if tally:
        average = sum(tally.values()) / len(tally)
        if 5 <= average <= 20:
            score += 0.2
    if moderation.topic_drift_count > max_drift_warnings:
        score -= 0.3
    return min(1.0, max(0.0, score))


class SessionPlanner:
    """Drives the planning phase and moderates active conversations.

    Attributes:
        planner_agent: Agent id used for analysis, planning and drift checks.
        max_questions: Upper bound on clarifying questions.
        planning_timeout_seconds: Time allowed for planning before stopping.
        auto_start: Approve as soon as a plan exists.
        check_interval: Messages between drift checks.
        drift_threshold: Drift score above which a strike is counted.
        max_drift_warnings: Strikes answered with a redirect before the
            excessive-drift warning is used instead.
        on_timeout: Awaited with the conversation id after a planning
            timeout has stopped it.
    """

    def __init__(
        self,
        store: ConversationStore,
        context: ContextManager,
        agents: AgentRegistry,
        resilience: ResilienceLayer,
        delivery: DeliveryService,
        *,
        planner_agent: str = "claude",
        max_questions: int = 5,
        planning_timeout_seconds: float = 30 * 60,
        auto_start: bool = False,
        check_interval: int = 10,
        drift_threshold: float = 0.6,
        max_drift_warnings: int = 3,
        balance_check: bool = True,
        quality_assessment: bool = True,
        on_timeout: Callable[[str], Awaitable[None]] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.context = context
        self.agents = agents
        self.resilience = resilience
        self.delivery = delivery
        self.planner_agent = planner_agent
        self.max_questions = max_questions
        self.planning_timeout_seconds = planning_timeout_seconds
        self.auto_start = auto_start
        self.check_interval = check_interval
        self.drift_threshold = drift_threshold
        self.max_drift_warnings = max_drift_warnings
        self.balance_check = balance_check
        self.quality_assessment = quality_assessment
        self.on_timeout = on_timeout
        self._clock = clock
        self._inflight: dict[str, asyncio.Task[list[str]]] = {}
        self._timeouts: dict[str, asyncio.Task[None]] = {}

    async def _ask(self, system_prompt: str, history: list[Message]) -> AgentReply:
        agent = self.agents.get(self.planner_agent)
        return await self.resilience.execute(
            self.planner_agent,
            lambda: agent.respond(history, system_prompt),
        )

    # =========================================================================
    # Planning
    # =========================================================================

    async def handle_initial_message(self, conversation_id: str, message: Message) -> list[str]:
        """Start planning for a new conversation.

        Single-flight per conversation: a call made while analysis is already
        running returns the in-flight result.

        Returns:
            The clarifying questions posted (empty when a plan was proposed
            straight away).
        """
        existing = self._inflight.get(conversation_id)
        if existing is not None and not existing.done():
            logger.info("planning_already_in_flight", conversation_id=conversation_id)
            return await asyncio.shield(existing)

        task = asyncio.create_task(
            self._analyze(conversation_id, message),
            name=f"planning_{conversation_id}",
        )
        self._inflight[conversation_id] = task
        try:
            return await task
        finally:
            if self._inflight.get(conversation_id) is task:
                del self._inflight[conversation_id]

    async def _analyze(self, conversation_id: str, message: Message) -> list[str]:
        conversation = self.store.require(conversation_id)
        if conversation.planning_state is None:
            conversation.planning_state = PlanningState(
                initial_message_id=message.id,
                started_at=self._clock(),
            )
        state = conversation.planning_state
        self._start_planning_timeout(conversation_id)

        logger.info(
            "planning_analysis_started",
            conversation_id=conversation_id,
            planner_agent=self.planner_agent,
        )
        try:
            reply = await self._ask(
                get_planner_analyze_prompt(self.max_questions),
                [message],
            )
            questions = parse_questions(reply.text, self.max_questions)
        except Exception as e:
            logger.warning(
                "planning_analysis_failed",
                conversation_id=conversation_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            questions = []

        if not questions:
            await self.create_plan(conversation_id)
            return []

        state.questions = questions
        await self.store.emit(
            EventType.PLANNING_QUESTIONS,
            conversation_id,
            questions=questions,
        )
        numbered = "\n".join(f"{i}. {q}" for i, q in enumerate(questions, start=1))
        await self.delivery.notify(
            conversation_id,
            "Before we start, a few questions:\n\n"
            f"{numbered}\n\n"
            "Reply with your answers, or `!start` to begin right away.",
            kind="planning_questions",
        )
        logger.info(
            "planning_questions_posted",
            conversation_id=conversation_id,
            count=len(questions),
        )
        return questions

    async def handle_planning_response(self, conversation_id: str, message: Message) -> None:
        """Handle a human reply while the conversation is still planning."""
        conversation = self.store.require(conversation_id)
        if conversation.status != ConversationStatus.PLANNING:
            return

        if is_approval(message.content):
            await self.approve_and_start(conversation_id)
            return

        state = conversation.planning_state
        if state is None:
            await self.handle_initial_message(conversation_id, message)
            return

        # Answers to the questions, or feedback on a proposed plan
        if state.questions or state.awaiting_approval:
            await self.create_plan(conversation_id)

    def _default_plan(self, conversation_id: str) -> PlanDraft:
        conversation = self.store.require(conversation_id)
        limits = conversation.limits
        return PlanDraft(
            expanded_topic=conversation.topic,
            plan=DEFAULT_PLAN_TEXT,
            parameters=PlanParameters(
                max_messages=limits.max_messages,
                cost_limit=limits.cost_limit,
                timeout_minutes=limits.timeout_minutes,
                compression_threshold=limits.compression_threshold,
            ),
        )

    async def create_plan(self, conversation_id: str) -> PlanDraft:
        """Generate (or regenerate) the plan and post it for approval."""
        conversation = self.store.require(conversation_id)
        if conversation.planning_state is None:
            conversation.planning_state = PlanningState(started_at=self._clock())
        state = conversation.planning_state
        default = self._default_plan(conversation_id)

        fallback = False
        try:
            reply = await self._ask(
                get_planner_plan_prompt(**default.parameters.model_dump()),
                list(conversation.messages),
            )
            draft, parsed = parse_plan_response(reply.text, default)
            fallback = not parsed
            if fallback:
                logger.warning("plan_parse_fallback", conversation_id=conversation_id)
        except Exception as e:
            logger.warning(
                "plan_generation_failed",
                conversation_id=conversation_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            draft = default
            fallback = True

        state.plan = draft.plan
        state.expanded_topic = draft.expanded_topic
        state.parameters = draft.parameters
        state.awaiting_approval = True

        params = draft.parameters
        await self.store.emit(
            EventType.PLAN_PROPOSED,
            conversation_id,
            expanded_topic=draft.expanded_topic,
            plan=draft.plan,
            parameters=params.model_dump(),
            fallback=fallback,
        )
        await self.delivery.notify(
            conversation_id,
            f"**Proposed plan**\n\n"
            f"Topic: {draft.expanded_topic}\n\n"
            f"{draft.plan}\n\n"
            f"Limits: {params.max_messages} messages, ${params.cost_limit:.2f}, "
            f"{params.timeout_minutes} min inactivity timeout.\n\n"
            "Reply `!start` to begin, or reply with changes.",
            kind="plan",
        )
        logger.info(
            "plan_proposed",
            conversation_id=conversation_id,
            max_messages=params.max_messages,
            cost_limit=params.cost_limit,
        )

        if self.auto_start:
            await self.approve_and_start(conversation_id)
        return draft

    async def approve_and_start(self, conversation_id: str) -> bool:
        """Apply the plan and move the conversation to ``active``.

        Returns:
            False if the conversation is not planning.
        """
        conversation = self.store.require(conversation_id)
        if conversation.status != ConversationStatus.PLANNING:
            logger.info(
                "approve_ignored_not_planning",
                conversation_id=conversation_id,
                status=conversation.status.value,
            )
            return False

        self._cancel_planning_timeout(conversation_id)
        state = conversation.planning_state or PlanningState()
        if state.parameters is not None:
            conversation.limits.apply_plan(state.parameters)
        if state.expanded_topic:
            conversation.topic = state.expanded_topic
        state.awaiting_approval = False

        conversation.moderation_state = ModerationState(
            last_topic_check=self._clock(),
            original_objectives=[state.plan] if state.plan else [conversation.topic],
            current_focus=conversation.topic,
            messages_at_last_check=conversation.total_message_count,
        )
        await self.store.transition(conversation_id, ConversationStatus.ACTIVE)
        await self.delivery.notify(
            conversation_id,
            f"**Session started.** Topic: {conversation.topic}",
            kind="session_started",
        )
        return True

    async def edit_planning_message(self, conversation_id: str, text: str) -> bool:
        """Replace the opening message and restart planning from it.

        Returns:
            False if the conversation is not planning.
        """
        conversation = self.store.require(conversation_id)
        if conversation.status != ConversationStatus.PLANNING:
            return False

        state = conversation.planning_state or PlanningState(started_at=self._clock())
        conversation.planning_state = state
        edited: Message | None = None
        for i, message in enumerate(conversation.messages):
            if message.id == state.initial_message_id:
                edited = message.model_copy(update={"content": text})
                conversation.messages[i] = edited
                break
        if edited is None:
            edited = Message(
                conversation_id=conversation_id,
                author_id=SYSTEM_AUTHOR_ID,
                author_kind=AuthorKind.HUMAN,
                content=text,
            )
            state.initial_message_id = edited.id

        conversation.topic = text
        state.questions = []
        state.plan = None
        state.expanded_topic = None
        state.parameters = None
        state.awaiting_approval = False
        logger.info("planning_message_edited", conversation_id=conversation_id)

        await self.handle_initial_message(conversation_id, edited)
        return True

    def _start_planning_timeout(self, conversation_id: str) -> None:
        existing = self._timeouts.get(conversation_id)
        if existing is not None and not existing.done():
            return
        self._timeouts[conversation_id] = asyncio.create_task(
            self._planning_timeout(conversation_id),
            name=f"planning_timeout_{conversation_id}",
        )

    def _cancel_planning_timeout(self, conversation_id: str) -> None:
        task = self._timeouts.pop(conversation_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _planning_timeout(self, conversation_id: str) -> None:
        await asyncio.sleep(self.planning_timeout_seconds)
        if self._timeouts.get(conversation_id) is asyncio.current_task():
            del self._timeouts[conversation_id]

        conversation = self.store.get(conversation_id)
        if conversation is None or conversation.status != ConversationStatus.PLANNING:
            return
        logger.warning(
            "planning_timeout",
            conversation_id=conversation_id,
            timeout_seconds=self.planning_timeout_seconds,
        )
        async with self.store.lock(conversation_id):
            if conversation.status != ConversationStatus.PLANNING:
                return
            await self.store.transition(
                conversation_id, ConversationStatus.STOPPED, "Planning timeout"
            )
        await self.delivery.notify(
            conversation_id,
            "Planning timed out without approval. The conversation has been stopped.",
            kind="closing",
        )
        if self.on_timeout is not None:
            await self.on_timeout(conversation_id)

    # =========================================================================
    # Moderation
    # =========================================================================

    async def monitor_conversation(
        self, conversation_id: str, new_messages: Sequence[Message] = ()
    ) -> DriftAssessment | None:
        """Run the moderation checks after a turn.

        Args:
            conversation_id: Conversation to moderate.
            new_messages: Messages accepted since the last call, for the
                participant tally.

        Returns:
            The drift assessment if a drift check ran, else None.
        """
        conversation = self.store.require(conversation_id)
        if conversation.status != ConversationStatus.ACTIVE:
            return None
        if conversation.moderation_state is None:
            conversation.moderation_state = ModerationState(
                original_objectives=[conversation.topic],
                current_focus=conversation.topic,
            )
        moderation = conversation.moderation_state

        if self.balance_check:
            for message in new_messages:
                tally = moderation.participant_balance
                tally[message.author_id] = tally.get(message.author_id, 0) + 1

        assessment: DriftAssessment | None = None
        since_check = conversation.total_message_count - moderation.messages_at_last_check
        if self.check_interval > 0 and since_check >= self.check_interval:
            assessment = await self._check_drift(conversation_id)

        if conversation.status != ConversationStatus.ACTIVE:
            return assessment

        limits = self.context.check_limits(conversation_id)
        if limits.exceeded:
            await self.store.transition(
                conversation_id, ConversationStatus.STOPPED, limits.reason
            )
            await self.delivery.notify(
                conversation_id,
                f"Conversation stopped: {limits.reason}. "
                f"{conversation.total_message_count} messages, "
                f"${conversation.cost_tracking.total_cost:.2f} spent.",
                kind="closing",
            )
            return assessment

        if self.quality_assessment:
            moderation.quality_score = compute_quality_score(
                moderation, self.max_drift_warnings
            )
        return assessment

    async def _check_drift(self, conversation_id: str) -> DriftAssessment:
        conversation = self.store.require(conversation_id)
        moderation = conversation.moderation_state
        moderation.messages_at_last_check = conversation.total_message_count
        moderation.last_topic_check = self._clock()

        objective = "; ".join(moderation.original_objectives) or conversation.topic
        try:
            reply = await self._ask(
                get_drift_prompt(objective, moderation.current_focus),
                conversation.messages[-DRIFT_WINDOW:],
            )
            assessment = parse_drift_response(reply.text)
        except Exception as e:
            logger.warning(
                "drift_check_failed",
                conversation_id=conversation_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            assessment = DriftAssessment()

        if assessment.on_topic or assessment.drift_score <= self.drift_threshold:
            if moderation.topic_drift_count:
                logger.info("topic_drift_cleared", conversation_id=conversation_id)
            moderation.topic_drift_count = 0
            return assessment

        moderation.topic_drift_count += 1
        strikes = moderation.topic_drift_count
        logger.info(
            "topic_drift_detected",
            conversation_id=conversation_id,
            drift_score=assessment.drift_score,
            strikes=strikes,
        )
        suggestion = f" {assessment.suggestion}" if assessment.suggestion else ""
        if strikes <= self.max_drift_warnings:
            await self.delivery.notify(
                conversation_id,
                f"Let's steer back to the topic: {conversation.topic}.{suggestion}",
                kind="topic_redirect",
            )
        else:
            await self.delivery.notify(
                conversation_id,
                f"The conversation has drifted from its objective {strikes} checks in a row. "
                f"Please refocus on: {conversation.topic}.{suggestion}",
                kind="excessive_drift",
            )
        return assessment

    async def cancel_all(self) -> None:
        """Cancel planning timeouts and in-flight analyses."""
        tasks = [*self._timeouts.values(), *self._inflight.values()]
        self._timeouts.clear()
        self._inflight.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
