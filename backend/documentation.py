"""Passive documentation agents.

The scribe turns the running transcript into detailed documentation, at
most once per quiet period per conversation (debounced). The TL;DR agent
periodically condenses the latest detailed documentation into a short
summary and key findings. Neither ever blocks or fails a conversation turn.
"""

import time
from collections.abc import Callable

import structlog

from agents import (
    SCRIBE_COMPRESS_PROMPT,
    TLDR_SUMMARY_PROMPT,
    AgentRegistry,
    parse_tldr_response,
)
from context_manager import SYSTEM_AUTHOR_ID
from conversation_store import ConversationStore
from debouncer import Debouncer
from docs_store import DocumentationStore
from events import EventType
from models import AuthorKind, Conversation, Message, TldrSummary
from resilience import ResilienceLayer

logger = structlog.get_logger(__name__)

FALLBACK_SUMMARY_MESSAGES = 10


def format_transcript(conversation: Conversation) -> str:
    """Render a conversation as plain text for the scribe."""
    lines = [
        f"Topic: {conversation.topic}",
        f"Status: {conversation.status.value}",
        f"Messages: {conversation.total_message_count}",
        f"Tokens: {conversation.token_count}",
        "",
    ]
    for i, message in enumerate(conversation.messages, start=1):
        header = f"[{i}] {message.author_id}"
        if message.reply_to_ids:
            header += f" [Replying to: {', '.join(message.reply_to_ids)}]"
        lines.append(f"{header}:\n{message.content}\n")
    return "\n".join(lines)


def fallback_summary(conversation: Conversation) -> str:
    """Deterministic summary of the most recent messages."""
    recent = conversation.messages[-FALLBACK_SUMMARY_MESSAGES:]
    lines = [f"## {conversation.topic}", "", "Recent discussion:"]
    for message in recent:
        preview = message.content.replace("\n", " ")
        if len(preview) > 200:
            preview = preview[:200] + "..."
        lines.append(f"- {message.author_id}: {preview}")
    return "\n".join(lines)


def _prompt_message(conversation_id: str, text: str) -> Message:
    return Message(
        conversation_id=conversation_id,
        author_id=SYSTEM_AUTHOR_ID,
        author_kind=AuthorKind.HUMAN,
        content=text,
    )


class ScribeAgent:
    """Debounced detailed documentation of each conversation."""

    def __init__(
        self,
        store: ConversationStore,
        docs_store: DocumentationStore,
        agents: AgentRegistry,
        resilience: ResilienceLayer,
        *,
        agent_id: str = "chatgpt",
        update_interval_seconds: float = 60.0,
    ) -> None:
        self.store = store
        self.docs_store = docs_store
        self.agents = agents
        self.resilience = resilience
        self.agent_id = agent_id
        self.debouncer = Debouncer(
            self._document,
            delay_seconds=update_interval_seconds,
            name="scribe",
        )

    def notify_new_messages(self, conversation: Conversation) -> None:
        """Schedule a documentation update after the quiet period."""
        self.debouncer.notify(conversation.id)

    async def process_immediate(self, conversation: Conversation) -> None:
        """Document the conversation now, dropping any pending update."""
        await self.debouncer.immediate(conversation.id)

    async def _document(self, conversation_id: str) -> None:
        conversation = self.store.get(conversation_id)
        if conversation is None or not conversation.messages:
            return

        transcript = format_transcript(conversation)
        try:
            agent = self.agents.get(self.agent_id)
            reply = await self.resilience.execute(
                self.agent_id,
                lambda: agent.respond(
                    [_prompt_message(conversation_id, transcript)],
                    SCRIBE_COMPRESS_PROMPT,
                ),
            )
            documentation = reply.text.strip() or fallback_summary(conversation)
        except Exception as e:
            logger.warning(
                "scribe_agent_failed",
                conversation_id=conversation_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            documentation = fallback_summary(conversation)

        stored = await self.docs_store.append_detail(conversation_id, documentation)
        if not stored:
            return
        logger.info(
            "scribe_documentation_updated",
            conversation_id=conversation_id,
            characters=len(documentation),
        )
        await self.store.emit(
            EventType.DOCUMENTATION_UPDATED,
            conversation_id,
            kind="detail",
            characters=len(documentation),
        )

    async def cancel_all(self) -> None:
        await self.debouncer.cancel_all()


class TldrAgent:
    """Periodic TL;DR of the detailed documentation."""

    def __init__(
        self,
        store: ConversationStore,
        docs_store: DocumentationStore,
        agents: AgentRegistry,
        resilience: ResilienceLayer,
        *,
        agent_id: str = "chatgpt",
        update_interval_seconds: float = 600.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.docs_store = docs_store
        self.agents = agents
        self.resilience = resilience
        self.agent_id = agent_id
        self.update_interval_seconds = update_interval_seconds
        self._clock = clock
        self._last_update: dict[str, float] = {}

    def is_due(self, conversation_id: str) -> bool:
        last = self._last_update.get(conversation_id)
        return last is None or self._clock() - last >= self.update_interval_seconds

    async def check_and_update(self, conversation: Conversation) -> TldrSummary | None:
        """Refresh the TL;DR if the update interval has elapsed.

        Returns:
            The stored summary, or None if nothing was done.
        """
        if not self.is_due(conversation.id):
            return None

        detail = await self.docs_store.fetch_latest_detail(conversation.id)
        if not detail.strip():
            return None
        self._last_update[conversation.id] = self._clock()

        try:
            agent = self.agents.get(self.agent_id)
            reply = await self.resilience.execute(
                self.agent_id,
                lambda: agent.respond(
                    [_prompt_message(conversation.id, detail)],
                    TLDR_SUMMARY_PROMPT,
                ),
            )
            tldr = parse_tldr_response(reply.text)
        except Exception as e:
            logger.warning(
                "tldr_agent_failed",
                conversation_id=conversation.id,
                error_type=type(e).__name__,
                error=str(e),
            )
            tldr = TldrSummary(
                summary=f"Discussion on {conversation.topic}: "
                f"{conversation.total_message_count} messages so far.",
                key_findings=["Summary unavailable; see detailed documentation"],
            )

        if not await self.docs_store.save_tldr(conversation.id, tldr):
            return None
        await self.store.emit(
            EventType.DOCUMENTATION_UPDATED,
            conversation.id,
            kind="tldr",
            summary=tldr.summary,
            key_findings=tldr.key_findings,
        )
        return tldr
