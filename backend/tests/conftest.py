"""Shared test fixtures for backend tests.

Provides an isolated event bus, conversation store and documentation store,
a recording transport, fast resilience settings and conversation factories
so tests never touch real LLM APIs or sleep through backoff delays.
"""

import sys
from collections.abc import Sequence
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from conversation_store import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents import AgentRegistry, MockAgent  # noqa: E402
from context_manager import ContextManager  # noqa: E402
from conversation_store import ConversationStore  # noqa: E402
from docs_store import InMemoryDocumentationStore  # noqa: E402
from events import ConversationEvent, EventBus, EventType  # noqa: E402
from models import (  # noqa: E402
    AuthorKind,
    Conversation,
    ConversationLimits,
    ConversationStatus,
    Message,
    ModerationState,
)
from resilience import CircuitBreakerRegistry, ResilienceLayer, RetryPolicy  # noqa: E402
from transport import DeliveryService  # noqa: E402

# ---------------------------------------------------------------------------
# Sleep / retry helpers
# ---------------------------------------------------------------------------


class RecordingSleep:
    """Async sleep replacement that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture()
def no_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def fast_retry() -> RetryPolicy:
    """Two retries, no real delay (used with ``no_sleep``)."""
    return RetryPolicy(max_retries=2, initial_delay=0.01, max_delay=0.05)


@pytest.fixture()
def resilience(fast_retry: RetryPolicy, no_sleep: RecordingSleep) -> ResilienceLayer:
    return ResilienceLayer(CircuitBreakerRegistry(), fast_retry, sleep=no_sleep)


# ---------------------------------------------------------------------------
# Core components
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    return EventBus()


@pytest.fixture()
def store(event_bus: EventBus) -> ConversationStore:
    return ConversationStore(event_bus)


@pytest.fixture()
def docs_store() -> InMemoryDocumentationStore:
    return InMemoryDocumentationStore()


@pytest.fixture()
def context(store: ConversationStore, docs_store: InMemoryDocumentationStore) -> ContextManager:
    return ContextManager(store, docs_store, keep_recent=3)


class RecordingTransport:
    """Transport that records deliveries and can be told to fail."""

    def __init__(self, failures: Sequence[BaseException] = ()) -> None:
        self.delivered: list[dict[str, Any]] = []
        self._failures = list(failures)

    async def deliver(self, channel_ref: str, text: str, reply_to_ids: Sequence[str]) -> str:
        if self._failures:
            raise self._failures.pop(0)
        self.delivered.append({
            "channel_ref": channel_ref,
            "text": text,
            "reply_to_ids": list(reply_to_ids),
        })
        return f"out_{len(self.delivered)}"

    @property
    def texts(self) -> list[str]:
        return [d["text"] for d in self.delivered]


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def delivery(
    transport: RecordingTransport,
    store: ConversationStore,
    fast_retry: RetryPolicy,
    no_sleep: RecordingSleep,
) -> DeliveryService:
    return DeliveryService(transport, store, retry_policy=fast_retry, sleep=no_sleep)


def make_registry(*agents: MockAgent) -> AgentRegistry:
    registry = AgentRegistry()
    for agent in agents:
        registry.register_agent(agent)
    return registry


# ---------------------------------------------------------------------------
# Conversation / message factories
# ---------------------------------------------------------------------------


def make_limits(**overrides: Any) -> ConversationLimits:
    values: dict[str, Any] = {
        "max_messages": 100,
        "cost_limit": 5.0,
        "timeout_minutes": 60,
        "compression_threshold": 50,
    }
    values.update(overrides)
    return ConversationLimits(**values)


async def make_conversation(
    store: ConversationStore,
    *,
    channel_ref: str = "thread-1",
    topic: str = "Is P equal to NP?",
    status: ConversationStatus = ConversationStatus.ACTIVE,
    agents: Sequence[str] = ("claude", "chatgpt"),
    **limit_overrides: Any,
) -> Conversation:
    """Create a conversation directly in ``status`` (no planning round-trip)."""
    conversation, _ = await store.get_or_create(
        channel_ref,
        topic=topic,
        limits=make_limits(**limit_overrides),
        selected_agents=list(agents),
    )
    conversation.status = status
    if status != ConversationStatus.PLANNING:
        conversation.moderation_state = ModerationState(
            original_objectives=[topic],
            current_focus=topic,
        )
    return conversation


def make_message(
    conversation_id: str,
    content: str = "What do you think?",
    *,
    author_id: str = "user_1",
    author_kind: AuthorKind = AuthorKind.HUMAN,
    **kwargs: Any,
) -> Message:
    if author_kind == AuthorKind.AGENT:
        kwargs.setdefault("agent_id", author_id)
    return Message(
        conversation_id=conversation_id,
        author_id=author_id,
        author_kind=author_kind,
        content=content,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Event Collection Helper
# ---------------------------------------------------------------------------


def events_of(
    event_bus: EventBus, conversation_id: str, event_type: EventType
) -> list[ConversationEvent]:
    """Events of one type from a conversation's history."""
    return [e for e in event_bus.get_event_history(conversation_id) if e.type == event_type]
