"""Event type definitions for the Roundtable event system.

This module defines the events that flow from the orchestration core to
observers (WebSocket clients, tests). Every lifecycle change, appended
message and cost update produces an event.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the Roundtable system.

    Events are categorized by:
    - Conversation lifecycle: creation, status changes and closing
    - Messages: appended to history and delivered to the transport
    - Agents: dispatch failures, cost accounting and generated images
    - Planning and moderation: questions, plans and moderator output
    - Context and documentation: compression and scribe/TL;DR updates
    """

    # Conversation lifecycle
    CONVERSATION_CREATED = "conversation_created"
    STATUS_CHANGED = "status_changed"
    CONVERSATION_CLOSED = "conversation_closed"

    # Messages
    MESSAGE_APPENDED = "message_appended"
    MESSAGE_DELIVERED = "message_delivered"

    # Agents
    AGENT_ERROR = "agent_error"
    COST_UPDATED = "cost_updated"
    IMAGE_GENERATED = "image_generated"

    # Planning and moderation
    PLANNING_QUESTIONS = "planning_questions"
    PLAN_PROPOSED = "plan_proposed"
    MODERATOR_MESSAGE = "moderator_message"

    # Context and documentation
    CONTEXT_COMPRESSED = "context_compressed"
    DOCUMENTATION_UPDATED = "documentation_updated"


class ConversationEvent(BaseModel):
    """An event emitted by the orchestration core.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - conversation_id: Which conversation this event belongs to
    - agent_id: Which agent the event concerns (if applicable)
    - data: Event-specific payload

    Payload schemas by event type:

    CONVERSATION_CREATED:
        - channel_ref: str - Transport locator
        - topic: str - Initial topic

    STATUS_CHANGED:
        - previous: str - Status before the transition
        - status: str - Status after the transition
        - reason: Optional[str] - Why the transition happened

    MESSAGE_APPENDED:
        - message_id: str
        - author_id: str
        - author_kind: str - "human" or "agent"
        - content: str
        - message_count: int - History length after the append

    MESSAGE_DELIVERED:
        - channel_ref: str
        - text: str
        - reply_to_ids: list[str]
        - transport_message_id: str

    AGENT_ERROR:
        - error: str
        - error_type: str

    COST_UPDATED:
        - total_cost: float
        - cost_limit: float
        - call_cost: float

    IMAGE_GENERATED:
        - url: str
        - call_cost: float
        - image_cost: float - Total image spend after this call
        - image_cost_limit: float

    PLANNING_QUESTIONS:
        - questions: list[str]

    PLAN_PROPOSED:
        - expanded_topic: str
        - plan: str
        - parameters: dict
        - fallback: bool - True when the default plan was used

    MODERATOR_MESSAGE:
        - kind: str - e.g. "plan", "topic_redirect", "excessive_drift",
          "cost_limit", "closing"
        - text: str

    CONTEXT_COMPRESSED:
        - removed: int - Messages folded into the synthetic context message
        - retained: int

    DOCUMENTATION_UPDATED:
        - kind: str - "detail" or "tldr"
        - characters: int - Length of the detail text (detail)
        - summary: str, key_findings: list[str] (tldr)
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    conversation_id: str
    agent_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "status_changed",
                    "timestamp": 1699876543.123,
                    "conversation_id": "conv_abc123def456",
                    "agent_id": None,
                    "data": {
                        "previous": "active",
                        "status": "paused",
                        "reason": "Cost limit reached",
                    },
                }
            ]
        }
    }
