"""Pydantic schemas for messages, agent results and API request/response models.

Messages are immutable once created. All models use Pydantic v2.
"""

import time
import uuid
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

# Transport layers render at most this many reply references per message.
MAX_REPLY_REFERENCES = 5


class ConversationStatus(StrEnum):
    """Conversation lifecycle status."""

    PLANNING = "planning"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"


class AuthorKind(StrEnum):
    """Who wrote a message."""

    HUMAN = "human"
    AGENT = "agent"


def generate_message_id(prefix: str = "msg") -> str:
    """Generate a message identifier in the format ``{prefix}_{12 hex chars}``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class TokenUsage(BaseModel):
    """Token counts for a single agent call."""

    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        """Total tokens used in this call."""
        return self.input + self.output


class Message(BaseModel):
    """A single message in a conversation thread.

    Attributes:
        id: Unique message identifier.
        conversation_id: Owning conversation.
        author_id: Human user id or agent id.
        author_kind: Whether a human or an agent wrote it.
        content: Message text.
        reply_to_ids: Up to five message ids this message responds to.
        timestamp: Unix timestamp of creation.
        agent_id: Agent identifier for agent-authored messages.
        token_count: Tokens attributed to the message, if known.
        transport_message_id: Id assigned by the chat platform, if delivered.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=generate_message_id)
    conversation_id: str
    author_id: str
    author_kind: AuthorKind
    content: str
    reply_to_ids: tuple[str, ...] = Field(default=(), max_length=MAX_REPLY_REFERENCES)
    timestamp: float = Field(default_factory=time.time)
    agent_id: str | None = None
    token_count: int | None = None
    transport_message_id: str | None = None

    @property
    def is_agent(self) -> bool:
        """True when an agent authored this message."""
        return self.author_kind == AuthorKind.AGENT


class AgentReply(BaseModel):
    """What an agent capability returns for one ``respond`` call."""

    text: str
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    cost_usd: float = Field(default=0.0, ge=0.0)


class ImageReply(BaseModel):
    """What an image agent returns for one ``generate`` call.

    ``url`` is either a remote URL or a ``data:image/png;base64,...`` URI.
    """

    url: str = Field(min_length=1)
    cost_usd: float = Field(default=0.0, ge=0.0)


class AgentResult(BaseModel):
    """Outcome of one successful dispatch attempt.

    Not persisted directly; converted into a Message by the coordinator.
    """

    text: str
    agent_id: str
    tokens: TokenUsage = Field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    reply_to_ids: tuple[str, ...] = ()


class PlanParameters(BaseModel):
    """Parameters negotiated during planning and copied into effective limits."""

    max_messages: int = Field(gt=0)
    cost_limit: float = Field(gt=0.0)
    timeout_minutes: int = Field(gt=0)
    compression_threshold: int = Field(gt=0)


class PlanDraft(BaseModel):
    """A parsed plan produced by the planner agent."""

    expanded_topic: str
    plan: str
    parameters: PlanParameters


class DriftAssessment(BaseModel):
    """Parsed drift-detection verdict for the most recent messages."""

    on_topic: bool = True
    drift_score: float = 0.0
    suggestion: str = ""


class TldrSummary(BaseModel):
    """Short summary and key findings derived from the detailed documentation."""

    summary: str
    key_findings: list[str] = Field(default_factory=list)


class LimitCheck(BaseModel):
    """Result of a conversation limit evaluation."""

    exceeded: bool = False
    reason: str | None = None


class IncomingMessage(BaseModel):
    """An inbound message event from the transport layer."""

    channel_ref: str = Field(min_length=1, description="Opaque transport locator")
    author_id: str = Field(min_length=1)
    content: str
    author_kind: AuthorKind = AuthorKind.HUMAN
    transport_message_id: str | None = None
    reply_to_ids: list[str] = Field(default_factory=list, max_length=MAX_REPLY_REFERENCES)


# -----------------------------------------------------------------------------
# API request/response models
# -----------------------------------------------------------------------------


class StopRequest(BaseModel):
    """Request body for stopping a conversation or disabling one agent."""

    target: str = Field(
        default="all",
        description='"all" to stop the conversation, or an agent id to disable',
        examples=["all", "claude"],
    )


class EditPlanningRequest(BaseModel):
    """Request body for replacing the initial planning message."""

    text: str = Field(min_length=1, max_length=10000)


class IncomingMessageResponse(BaseModel):
    """Response after an incoming message has been handled."""

    conversation_id: str
    message_id: str
    status: ConversationStatus


class ImageRequest(BaseModel):
    """Request body for generating images in a conversation.

    Without a prompt the latest TL;DR summary (or detailed documentation)
    is used as the source text.
    """

    prompt: str | None = Field(default=None, min_length=1, max_length=4000)
    agents: list[str] | None = Field(
        default=None,
        description="Image agent ids; the configured defaults when omitted",
        examples=[["dall-e-3"]],
    )


class ImageResult(BaseModel):
    """Outcome of one image agent call."""

    agent_id: str
    url: str | None = None
    cost_usd: float = 0.0
    error: str | None = None


class ImageGenerationResponse(BaseModel):
    """Response for an image generation request."""

    conversation_id: str
    accepted: bool
    prompt: str | None = None
    results: list[ImageResult] = Field(default_factory=list)
    image_cost: float = 0.0
    image_cost_limit: float
    detail: str | None = None


class ControlResponse(BaseModel):
    """Response for control signals (approve, resume, pause, stop)."""

    conversation_id: str
    accepted: bool
    status: ConversationStatus
    detail: str | None = None


class CostSummary(BaseModel):
    """Cost totals exposed through the API."""

    total_cost: float = 0.0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    costs_by_agent: dict[str, float] = Field(default_factory=dict)
    image_cost: float = 0.0


class ConversationSummaryResponse(BaseModel):
    """Summary information for conversation listing and status."""

    conversation_id: str
    channel_ref: str
    topic: str
    status: ConversationStatus
    message_count: int
    token_count: int
    created_at: float
    last_activity_at: float
    cost: CostSummary
    selected_agents: list[str]
    disabled_agents: list[str]
    current_focus: str | None = None
    quality_score: float | None = None
    stop_reason: str | None = None


class ConversationDetailResponse(ConversationSummaryResponse):
    """Conversation summary plus the current message history."""

    messages: list[Message]


class HealthResponse(BaseModel):
    """Response for health check endpoint."""

    status: Literal["healthy", "degraded"]
    version: str
    conversations: int
    open_circuits: list[str]
