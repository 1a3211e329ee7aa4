"""Conversation history, counters, compression and hard limits.

The ContextManager is the only component that appends to a conversation's
message history. It also decides when history should be compressed and
whether the message-count or inactivity limits have been exceeded. Cost
limits are checked by the dispatch coordinator, because cost is only known
after an agent call completes.
"""

import math
import time
from collections.abc import Callable

import structlog

from conversation_store import ConversationStore
from docs_store import DocumentationStore
from events import EventType
from models import AuthorKind, LimitCheck, Message, generate_message_id

logger = structlog.get_logger(__name__)

COMPRESSED_CONTEXT_HEADER = "[Compressed Context from Previous Conversation]"
SYSTEM_AUTHOR_ID = "system"


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return math.ceil(len(text) / 4)


class ContextManager:
    """Appends messages and evaluates compression and limits.

    Attributes:
        store: Owner of the conversation aggregates.
        docs_store: Source of compressed context.
        keep_recent: Messages kept verbatim when history is compressed.
    """

    def __init__(
        self,
        store: ConversationStore,
        docs_store: DocumentationStore,
        keep_recent: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.docs_store = docs_store
        self.keep_recent = keep_recent
        self._clock = clock

    async def append(self, conversation_id: str, message: Message) -> None:
        """Append a message and update token count and last activity.

        Raises:
            ConversationNotFoundError: If the conversation is unknown.
        """
        conversation = self.store.require(conversation_id)
        conversation.messages.append(message)
        conversation.token_count += message.token_count or 0
        conversation.last_activity_at = self._clock()

        await self.store.emit(
            EventType.MESSAGE_APPENDED,
            conversation_id,
            agent_id=message.agent_id,
            message_id=message.id,
            author_id=message.author_id,
            author_kind=message.author_kind.value,
            content=message.content,
            message_count=conversation.message_count,
        )

    def should_compress(self, conversation_id: str) -> bool:
        """True when history holds more messages than the compression threshold."""
        conversation = self.store.require(conversation_id)
        return conversation.message_count > conversation.limits.compression_threshold

    async def compress(self, conversation_id: str) -> bool:
        """Replace all but the most recent messages with one compressed-context message.

        The compressed text comes from the documentation store. If it is
        empty or the store fails, history is left untouched.

        Returns:
            True if history was compressed.
        """
        conversation = self.store.require(conversation_id)
        if conversation.message_count <= self.keep_recent + 1:
            return False

        try:
            context = await self.docs_store.fetch_compressed_context(conversation_id)
        except Exception as e:
            logger.warning(
                "compressed_context_fetch_failed",
                conversation_id=conversation_id,
                error=str(e),
            )
            return False

        if not context or not context.strip():
            logger.info(
                "compression_skipped_no_context",
                conversation_id=conversation_id,
            )
            return False

        content = f"{COMPRESSED_CONTEXT_HEADER}\n\n{context}"
        summary_message = Message(
            id=generate_message_id("ctx"),
            conversation_id=conversation_id,
            author_id=SYSTEM_AUTHOR_ID,
            author_kind=AuthorKind.HUMAN,
            content=content,
            token_count=estimate_tokens(content),
        )

        previous_count = conversation.message_count
        retained = conversation.messages[-self.keep_recent:] if self.keep_recent else []
        conversation.messages = [summary_message, *retained]
        # Keeps total_message_count unchanged across compression
        conversation.compressed_message_count += previous_count - conversation.message_count

        logger.info(
            "context_compressed",
            conversation_id=conversation_id,
            previous_count=previous_count,
            retained=len(retained),
        )
        await self.store.emit(
            EventType.CONTEXT_COMPRESSED,
            conversation_id,
            removed=previous_count - len(retained),
            retained=len(retained),
        )
        return True

    def check_limits(self, conversation_id: str) -> LimitCheck:
        """Evaluate the message-count ceiling, then the inactivity timeout.

        Returns the first violated limit.
        """
        conversation = self.store.require(conversation_id)
        limits = conversation.limits

        if conversation.total_message_count >= limits.max_messages:
            return LimitCheck(exceeded=True, reason="Maximum message count reached")

        idle_seconds = self._clock() - conversation.last_activity_at
        if idle_seconds > limits.timeout_minutes * 60:
            return LimitCheck(exceeded=True, reason="Conversation timeout")

        return LimitCheck()
