"""Outbound delivery to the chat transport.

The core only needs one call from a transport: ``deliver(channel_ref, text,
reply_to_ids)`` returning the platform's id for the sent message.
``DeliveryService`` wraps that call with a rate limiter and retry, and
publishes a ``message_delivered`` event on success. A delivery that still
fails after retries is logged and reported as ``None``; it never blocks
the remaining deliveries of a turn.
"""

import asyncio
import uuid
from collections.abc import Sequence
from typing import Protocol

import structlog

from conversation_store import ConversationStore
from events import EventType
from models import Message
from rate_limiter import RateLimiter
from resilience import RetryPolicy, retry_with_backoff
from resilience.retry import SleepFn

logger = structlog.get_logger(__name__)


class Transport(Protocol):
    """Chat platform seen by the core."""

    async def deliver(
        self, channel_ref: str, text: str, reply_to_ids: Sequence[str]
    ) -> str: ...


class EventStreamTransport:
    """Transport for API deployments: delivery is the published event itself.

    WebSocket clients subscribed to a conversation receive every
    ``message_delivered`` event, so there is nothing further to send. Each
    delivery gets a fresh transport id.
    """

    async def deliver(
        self, channel_ref: str, text: str, reply_to_ids: Sequence[str]
    ) -> str:
        return f"out_{uuid.uuid4().hex[:12]}"


def render_agent_message(message: Message) -> str:
    """Text sent to the transport for an agent-authored message."""
    return f"**[{message.author_id}]**\n\n{message.content}"


class DeliveryService:
    """Rate-limited, retried delivery of messages and notices.

    Attributes:
        transport: The chat platform.
        store: Used to publish delivery and moderator events.
        limiter: Optional limiter shared by all deliveries.
        retry_policy: Backoff applied to each delivery.
    """

    def __init__(
        self,
        transport: Transport,
        store: ConversationStore,
        *,
        limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self.transport = transport
        self.store = store
        self.limiter = limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    async def deliver(
        self,
        conversation_id: str,
        text: str,
        reply_to_ids: Sequence[str] = (),
        agent_id: str | None = None,
    ) -> str | None:
        """Deliver text to the conversation's channel.

        Returns:
            The transport message id, or None if delivery failed.
        """
        conversation = self.store.require(conversation_id)
        reply_to = list(reply_to_ids)

        async def attempt() -> str:
            if self.limiter is not None:
                await self.limiter.acquire()
            return await self.transport.deliver(conversation.channel_ref, text, reply_to)

        try:
            transport_message_id = await retry_with_backoff(
                attempt,
                self.retry_policy,
                sleep=self._sleep,
                target="transport",
            )
        except Exception as e:
            logger.error(
                "delivery_failed",
                conversation_id=conversation_id,
                agent_id=agent_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None

        await self.store.emit(
            EventType.MESSAGE_DELIVERED,
            conversation_id,
            agent_id=agent_id,
            channel_ref=conversation.channel_ref,
            text=text,
            reply_to_ids=reply_to,
            transport_message_id=transport_message_id,
        )
        return transport_message_id

    async def deliver_messages(self, conversation_id: str, messages: list[Message]) -> int:
        """Deliver agent messages one at a time; returns how many succeeded."""
        delivered = 0
        for message in messages:
            result = await self.deliver(
                conversation_id,
                render_agent_message(message),
                message.reply_to_ids,
                agent_id=message.agent_id,
            )
            if result is not None:
                delivered += 1
        return delivered

    async def notify(
        self,
        conversation_id: str,
        text: str,
        kind: str,
        reply_to_ids: Sequence[str] = (),
    ) -> str | None:
        """Post a planner, moderator or system notice."""
        await self.store.emit(
            EventType.MODERATOR_MESSAGE,
            conversation_id,
            kind=kind,
            text=text,
        )
        return await self.deliver(conversation_id, text, reply_to_ids)
