"""Exception hierarchy for the conversation orchestration core.

Transient agent failures never reach callers except as the final error after
retries; everything here is either a caller error (unknown id, illegal
transition) or a recognisable "skip rather than wait" signal.
"""


class RoundtableError(Exception):
    """Base class for all orchestration errors."""


class ConversationNotFoundError(RoundtableError, KeyError):
    """Raised when a conversation id is unknown to the store."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation '{conversation_id}' not found")

    def __str__(self) -> str:
        return f"Conversation '{self.conversation_id}' not found"


class InvalidTransitionError(RoundtableError):
    """Raised when a status change violates the conversation state machine."""

    def __init__(self, conversation_id: str, current: str, target: str) -> None:
        self.conversation_id = conversation_id
        self.current = current
        self.target = target
        super().__init__(
            f"Conversation '{conversation_id}' cannot move from {current} to {target}"
        )


class CircuitOpenError(RoundtableError):
    """Raised without calling the target while its circuit breaker is open.

    Attributes:
        target: The breaker key (usually an agent identifier).
        retry_after: Seconds until the breaker admits a trial call.
    """

    def __init__(self, target: str, retry_after: float) -> None:
        self.target = target
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Circuit open for '{target}', retry after {self.retry_after:.0f}s"
        )


class RateLimitExceededError(RoundtableError):
    """Raised when the rate limiter wait deadline is exceeded."""


class AgentNotFoundError(RoundtableError, KeyError):
    """Raised when no agent is registered under an identifier."""

    def __init__(self, agent_id: str) -> None:
        self.agent_id = agent_id
        super().__init__(f"Agent '{agent_id}' is not registered")

    def __str__(self) -> str:
        return f"Agent '{self.agent_id}' is not registered"
