"""Async event bus for conversation pub/sub communication.

This module provides an EventBus class that enables asynchronous
publish/subscribe communication between the orchestration core and
observers (via WebSocket).

The event bus is thread-safe and supports:
- Multiple subscribers per conversation
- Async event delivery via asyncio.Queue
- Conversation closing (close_conversation terminates all subscribers)
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import ConversationEvent, EventType

logger = structlog.get_logger(__name__)


class EventBus:
    """Async pub/sub event bus for conversation events.

    The EventBus manages subscriptions per conversation, allowing multiple
    WebSocket connections to receive events for the same conversation.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately.

    Thread Safety:
        All registry operations use a threading.Lock.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("conv_123")
        >>> await bus.publish(ConversationEvent(
        ...     type=EventType.STATUS_CHANGED,
        ...     conversation_id="conv_123",
        ...     data={"previous": "planning", "status": "active"},
        ... ))
        >>> event = await queue.get()
        >>> bus.unsubscribe("conv_123", queue)
    """

    # Maximum number of events to retain per conversation for replay on reconnect.
    MAX_HISTORY_PER_CONVERSATION = 5000

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[ConversationEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[ConversationEvent]] = defaultdict(list)
        self._event_history: dict[str, list[ConversationEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, conversation_id: str) -> asyncio.Queue[ConversationEvent]:
        """Subscribe to events for a conversation.

        Buffered events (published before any subscriber connected) are
        delivered immediately to the new subscriber.

        Args:
            conversation_id: The conversation to subscribe to

        Returns:
            An asyncio.Queue that receives ConversationEvent objects
        """
        queue: asyncio.Queue[ConversationEvent] = asyncio.Queue()
        buffered_events: list[ConversationEvent] = []

        with self._lock:
            self._subscribers[conversation_id].append(queue)
            subscriber_count = len(self._subscribers[conversation_id])
            if conversation_id in self._event_buffer:
                buffered_events = self._event_buffer.pop(conversation_id)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            conversation_id=conversation_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(
        self, conversation_id: str, queue: asyncio.Queue[ConversationEvent]
    ) -> None:
        """Unsubscribe a queue from conversation events (no-op if unknown)."""
        with self._lock:
            queues = self._subscribers.get(conversation_id)
            if queues is None:
                return
            try:
                queues.remove(queue)
            except ValueError:
                logger.warning(
                    "unsubscribe_queue_not_found",
                    conversation_id=conversation_id,
                )
                return
            if not queues:
                del self._subscribers[conversation_id]
            logger.info(
                "subscriber_removed",
                conversation_id=conversation_id,
                subscriber_count=len(queues),
            )

    async def publish(self, event: ConversationEvent) -> None:
        """Publish an event to all subscribers for its conversation.

        If there are no subscribers, the event is buffered until one
        connects. Every event except the closing sentinel is also stored in
        the conversation's history for replay on reconnect.

        Args:
            event: The ConversationEvent to publish
        """
        conversation_id = event.conversation_id
        with self._lock:
            if event.type != EventType.CONVERSATION_CLOSED:
                history = self._event_history[conversation_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_CONVERSATION:
                    self._event_history[conversation_id] = history[
                        -self.MAX_HISTORY_PER_CONVERSATION:
                    ]

            subscribers = list(self._subscribers.get(conversation_id, []))

            if not subscribers:
                self._event_buffer[conversation_id].append(event)
                logger.debug(
                    "event_buffered",
                    conversation_id=conversation_id,
                    event_type=event.type.value,
                    buffer_size=len(self._event_buffer[conversation_id]),
                )
                return

        # Time-bounded put so a stalled consumer cannot block the publisher
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    conversation_id=conversation_id,
                    event_type=event.type.value,
                )
            except Exception as e:
                logger.error(
                    "event_delivery_failed",
                    conversation_id=conversation_id,
                    event_type=event.type.value,
                    error=str(e),
                )

        logger.debug(
            "event_published",
            conversation_id=conversation_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
            agent_id=event.agent_id,
        )

    def get_event_history(self, conversation_id: str) -> list[ConversationEvent]:
        """Return all stored events for a conversation in chronological order."""
        with self._lock:
            return list(self._event_history.get(conversation_id, []))

    async def close_conversation(self, conversation_id: str, reason: str = "closed") -> None:
        """Signal subscribers that the conversation has ended and drop them.

        A CONVERSATION_CLOSED sentinel is put into each subscriber queue so
        consumers can break out of their read loops. Buffered events are
        cleared; history is preserved.

        Args:
            conversation_id: The conversation to close
            reason: Reason string carried by the sentinel
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(conversation_id, [])
            buffered = self._event_buffer.pop(conversation_id, [])

        sentinel = ConversationEvent(
            type=EventType.CONVERSATION_CLOSED,
            conversation_id=conversation_id,
            data={"reason": reason},
        )
        for queue in queues_to_signal:
            queue.put_nowait(sentinel)

        logger.info(
            "conversation_events_closed",
            conversation_id=conversation_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=len(buffered),
        )

    def get_subscriber_count(self, conversation_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(conversation_id, []))

    def clear_event_history(self, conversation_id: str) -> None:
        with self._lock:
            self._event_history.pop(conversation_id, None)
