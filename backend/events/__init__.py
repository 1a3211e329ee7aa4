"""Event system for conversation observers.

This package provides the event infrastructure between the orchestration
core and its observers. It is an async pub/sub built on asyncio.Queue.

Key Components:
    - EventType: Enum of all event types in the system
    - ConversationEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation keyed by conversation id

Usage:
    >>> from events import EventBus, ConversationEvent, EventType
    >>> bus = EventBus()
    >>> queue = bus.subscribe("conv_123")
    >>> await bus.publish(ConversationEvent(
    ...     type=EventType.MESSAGE_APPENDED,
    ...     conversation_id="conv_123",
    ...     data={"message_id": "msg_abc"},
    ... ))
    >>> event = await queue.get()
"""

from events.bus import EventBus
from events.types import ConversationEvent, EventType

__all__ = [
    "ConversationEvent",
    "EventBus",
    "EventType",
]
