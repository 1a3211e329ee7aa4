"""The agent capability seen by the orchestration core.

Every participant (conversation agents, the planner, the scribe and the
TL;DR writer) is reached through the same single-method protocol. Image
generation models use a second one-method protocol, ``ImageAgent``. Concrete
agents of both kinds are built by ``AgentRegistry`` from an identifier.
"""

from typing import Protocol, runtime_checkable

from models.schemas import AgentReply, AuthorKind, ImageReply, Message


@runtime_checkable
class Agent(Protocol):
    """Produces one reply for a conversation history.

    Implementations raise on failure; the resilience layer decides whether the
    error is retried.
    """

    agent_id: str

    async def respond(self, history: list[Message], system_prompt: str) -> AgentReply:
        ...


@runtime_checkable
class ImageAgent(Protocol):
    """Produces one image for a text prompt."""

    agent_id: str

    async def generate(self, prompt: str) -> ImageReply:
        ...


def format_history_for_llm(
    history: list[Message],
    system_prompt: str,
    agent_id: str,
) -> list[dict[str, str]]:
    """Convert conversation history into chat-completion messages.

    The agent's own messages become ``assistant`` turns. Human messages and
    other agents' messages become ``user`` turns, labelled with the author so
    the model can tell the participants apart.
    """
    messages: list[dict[str, str]] = [{"role": "system", "content": system_prompt}]
    for message in history:
        if message.author_kind == AuthorKind.AGENT and message.author_id == agent_id:
            messages.append({"role": "assistant", "content": message.content})
        elif message.author_kind == AuthorKind.AGENT:
            messages.append({
                "role": "user",
                "content": f"[{message.author_id}]: {message.content}",
            })
        else:
            messages.append({"role": "user", "content": message.content})
    return messages
