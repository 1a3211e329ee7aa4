"""In-memory store of Conversation aggregates.

The store is the single owner of mutable conversation state. Other
components look conversations up here and mutate them in place. Status
changes go through ``transition`` so that the state machine is enforced in
one place and every change is published on the event bus.

Usage:
    >>> store = ConversationStore(EventBus())
    >>> conversation, created = await store.get_or_create(
    ...     "channel-42", topic="Should we adopt Rust?", limits=limits,
    ...     selected_agents=["claude", "chatgpt"],
    ... )
    >>> async with store.lock(conversation.id):
    ...     await store.transition(conversation.id, ConversationStatus.ACTIVE)
"""

import asyncio
import uuid
from collections import defaultdict
from typing import Any

import structlog

from errors import ConversationNotFoundError, InvalidTransitionError
from events import ConversationEvent, EventBus, EventType
from models import Conversation, ConversationLimits, ConversationStatus

logger = structlog.get_logger(__name__)


def generate_conversation_id() -> str:
    """Generate a conversation ID in the format ``conv_{12 hex chars}``."""
    return f"conv_{uuid.uuid4().hex[:12]}"


class ConversationStore:
    """Conversations keyed by id, with a channel index and per-conversation locks.

    Thread Safety:
        Registry mutations (create) are serialised by an asyncio.Lock. Turn
        processing for one conversation is serialised by ``lock(id)``; cost
        accumulation inside a turn by ``cost_lock(id)``.

    Attributes:
        event_bus: Bus that receives lifecycle events.
    """

    def __init__(self, event_bus: EventBus) -> None:
        self.event_bus = event_bus
        self._conversations: dict[str, Conversation] = {}
        self._by_channel: dict[str, str] = {}
        self._registry_lock = asyncio.Lock()
        self._turn_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._cost_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        logger.info("conversation_store_initialized")

    async def emit(
        self,
        event_type: EventType,
        conversation_id: str,
        agent_id: str | None = None,
        **data: Any,
    ) -> None:
        """Publish an event for a conversation."""
        await self.event_bus.publish(
            ConversationEvent(
                type=event_type,
                conversation_id=conversation_id,
                agent_id=agent_id,
                data=data,
            )
        )

    async def get_or_create(
        self,
        channel_ref: str,
        *,
        topic: str,
        limits: ConversationLimits,
        selected_agents: list[str],
    ) -> tuple[Conversation, bool]:
        """Return the conversation bound to ``channel_ref``, creating it if unseen.

        New conversations start in ``planning``.

        Returns:
            ``(conversation, created)``
        """
        async with self._registry_lock:
            existing_id = self._by_channel.get(channel_ref)
            if existing_id is not None:
                return self._conversations[existing_id], False

            conversation = Conversation(
                id=generate_conversation_id(),
                channel_ref=channel_ref,
                topic=topic,
                limits=limits,
                selected_agents=list(selected_agents),
            )
            self._conversations[conversation.id] = conversation
            self._by_channel[channel_ref] = conversation.id

        logger.info(
            "conversation_created",
            conversation_id=conversation.id,
            channel_ref=channel_ref,
            selected_agents=conversation.selected_agents,
        )
        await self.emit(
            EventType.CONVERSATION_CREATED,
            conversation.id,
            channel_ref=channel_ref,
            topic=topic,
        )
        return conversation, True

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def require(self, conversation_id: str) -> Conversation:
        """Return the conversation or raise.

        Raises:
            ConversationNotFoundError: If the id is unknown.
        """
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def find_by_channel(self, channel_ref: str) -> Conversation | None:
        conversation_id = self._by_channel.get(channel_ref)
        return self._conversations.get(conversation_id) if conversation_id else None

    def list_conversations(self) -> list[Conversation]:
        """All conversations, oldest first."""
        return sorted(self._conversations.values(), key=lambda c: c.created_at)

    def lock(self, conversation_id: str) -> asyncio.Lock:
        """Lock that linearises turn processing for one conversation."""
        return self._turn_locks[conversation_id]

    def cost_lock(self, conversation_id: str) -> asyncio.Lock:
        """Lock that serialises the accumulate-append-check step of a turn."""
        return self._cost_locks[conversation_id]

    async def transition(
        self,
        conversation_id: str,
        target: ConversationStatus,
        reason: str | None = None,
    ) -> bool:
        """Move a conversation to ``target``.

        Transitioning to the current status is a no-op. Terminal statuses
        record ``reason`` as the stop reason.

        Returns:
            True if the status changed, False if it already was ``target``.

        Raises:
            ConversationNotFoundError: If the id is unknown.
            InvalidTransitionError: If the state machine forbids the change.
        """
        conversation = self.require(conversation_id)
        previous = conversation.status
        if previous == target:
            return False
        if not conversation.can_transition(target):
            raise InvalidTransitionError(conversation_id, previous.value, target.value)

        conversation.status = target
        if conversation.is_terminal:
            conversation.stop_reason = reason

        logger.info(
            "conversation_status_changed",
            conversation_id=conversation_id,
            previous=previous.value,
            status=target.value,
            reason=reason,
        )
        await self.emit(
            EventType.STATUS_CHANGED,
            conversation_id,
            previous=previous.value,
            status=target.value,
            reason=reason,
        )
        return True
