"""Conversation aggregate and its nested state.

The Conversation dataclass is the aggregate root for one thread. It is owned
by the ConversationStore; every other component mutates it through the store
and the context manager rather than holding copies.
"""

import time
from dataclasses import dataclass, field

from models.schemas import ConversationStatus, Message, PlanParameters

TERMINAL_STATUSES = frozenset({ConversationStatus.COMPLETED, ConversationStatus.STOPPED})

# Allowed status transitions. ``active <-> paused`` is the only cycle.
ALLOWED_TRANSITIONS: dict[ConversationStatus, frozenset[ConversationStatus]] = {
    ConversationStatus.PLANNING: frozenset({
        ConversationStatus.ACTIVE,
        ConversationStatus.STOPPED,
    }),
    ConversationStatus.ACTIVE: frozenset({
        ConversationStatus.PAUSED,
        ConversationStatus.COMPLETED,
        ConversationStatus.STOPPED,
    }),
    ConversationStatus.PAUSED: frozenset({
        ConversationStatus.ACTIVE,
        ConversationStatus.COMPLETED,
        ConversationStatus.STOPPED,
    }),
    ConversationStatus.COMPLETED: frozenset(),
    ConversationStatus.STOPPED: frozenset(),
}


@dataclass
class ConversationLimits:
    """Effective limits for one conversation.

    Seeded from settings at creation and overwritten with the approved plan
    parameters when planning ends.
    """

    max_messages: int
    cost_limit: float
    timeout_minutes: int
    compression_threshold: int
    image_cost_limit: float = 2.0

    def apply_plan(self, parameters: PlanParameters) -> None:
        """Copy negotiated plan parameters into the effective limits."""
        self.max_messages = parameters.max_messages
        self.cost_limit = parameters.cost_limit
        self.timeout_minutes = parameters.timeout_minutes
        self.compression_threshold = parameters.compression_threshold


@dataclass
class PlanningState:
    """State held while a conversation is in the planning phase.

    Attributes:
        questions: Clarifying questions posted to the humans.
        plan: Draft plan text, once generated.
        expanded_topic: Topic rewritten by the planner.
        parameters: Negotiated conversation parameters.
        awaiting_approval: True once a plan has been proposed.
        started_at: Unix timestamp when planning began.
        initial_message_id: The message that opened the conversation.
    """

    questions: list[str] = field(default_factory=list)
    plan: str | None = None
    expanded_topic: str | None = None
    parameters: PlanParameters | None = None
    awaiting_approval: bool = False
    started_at: float = field(default_factory=time.time)
    initial_message_id: str | None = None


@dataclass
class ModerationState:
    """State used by the moderator once the conversation is live.

    ``messages_at_last_check`` is the total message count at the last drift
    check, so checks stay periodic when a turn appends several messages.
    """

    topic_drift_count: int = 0
    last_topic_check: float = field(default_factory=time.time)
    original_objectives: list[str] = field(default_factory=list)
    current_focus: str = ""
    participant_balance: dict[str, int] = field(default_factory=dict)
    quality_score: float | None = None
    messages_at_last_check: int = 0


@dataclass
class AgentCost:
    """Per-agent cost and token breakdown."""

    cost: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    request_count: int = 0


@dataclass
class CostTracking:
    """Running USD totals for a conversation."""

    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    costs_by_agent: dict[str, AgentCost] = field(default_factory=dict)

    def record(
        self,
        agent_id: str,
        cost: float,
        input_tokens: int,
        output_tokens: int,
    ) -> None:
        """Add one call's usage to the aggregate and per-agent totals.

        Negative costs are clamped to zero so the total never decreases.
        """
        cost = max(0.0, cost)
        self.total_cost += cost
        self.total_input_tokens += input_tokens
        self.total_output_tokens += output_tokens

        breakdown = self.costs_by_agent.setdefault(agent_id, AgentCost())
        breakdown.cost += cost
        breakdown.input_tokens += input_tokens
        breakdown.output_tokens += output_tokens
        breakdown.request_count += 1


@dataclass
class Conversation:
    """Aggregate root for one conversation thread.

    ``message_count`` is derived from ``messages`` so it can never disagree
    with the sequence. Messages folded into a compressed-context message are
    counted in ``compressed_message_count`` so that limit checks still see the
    full history length.
    """

    id: str
    channel_ref: str
    topic: str
    limits: ConversationLimits
    status: ConversationStatus = ConversationStatus.PLANNING
    messages: list[Message] = field(default_factory=list)
    selected_agents: list[str] = field(default_factory=list)
    disabled_agents: set[str] = field(default_factory=set)
    active_agents: set[str] = field(default_factory=set)
    planning_state: PlanningState | None = None
    moderation_state: ModerationState | None = None
    cost_tracking: CostTracking = field(default_factory=CostTracking)
    image_cost_tracking: CostTracking = field(default_factory=CostTracking)
    token_count: int = 0
    compressed_message_count: int = 0
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)
    stop_reason: str | None = None

    @property
    def message_count(self) -> int:
        """Number of messages currently held in history."""
        return len(self.messages)

    @property
    def total_message_count(self) -> int:
        """Messages ever appended, including those folded away by compression."""
        return len(self.messages) + self.compressed_message_count

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def cost_limit_reached(self) -> bool:
        """True once total spend is at or above the effective cost ceiling."""
        return self.cost_tracking.total_cost >= self.limits.cost_limit

    @property
    def image_cost_limit_reached(self) -> bool:
        """True once image spend is at or above the image cost ceiling."""
        return self.image_cost_tracking.total_cost >= self.limits.image_cost_limit

    @property
    def dispatchable_agents(self) -> list[str]:
        """Selected agents minus disabled ones, in selection order."""
        return [a for a in self.selected_agents if a not in self.disabled_agents]

    def can_transition(self, target: ConversationStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]
