"""Models module for the conversation aggregate and Pydantic schemas.

This module exposes the domain types shared by the orchestration core and
the request/response models used by the API.
"""

from models.conversation import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    AgentCost,
    Conversation,
    ConversationLimits,
    CostTracking,
    ModerationState,
    PlanningState,
)
from models.schemas import (
    MAX_REPLY_REFERENCES,
    AgentReply,
    AgentResult,
    AuthorKind,
    ConversationStatus,
    DriftAssessment,
    ImageReply,
    IncomingMessage,
    LimitCheck,
    Message,
    PlanDraft,
    PlanParameters,
    TldrSummary,
    TokenUsage,
    generate_message_id,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "MAX_REPLY_REFERENCES",
    "TERMINAL_STATUSES",
    "AgentCost",
    "AgentReply",
    "AgentResult",
    "AuthorKind",
    "Conversation",
    "ConversationLimits",
    "ConversationStatus",
    "CostTracking",
    "DriftAssessment",
    "ImageReply",
    "IncomingMessage",
    "LimitCheck",
    "Message",
    "ModerationState",
    "PlanDraft",
    "PlanParameters",
    "PlanningState",
    "TldrSummary",
    "TokenUsage",
    "generate_message_id",
]
