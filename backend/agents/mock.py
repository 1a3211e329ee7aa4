"""Mock chat and image agents for tests and offline development.

Returns scripted replies without network calls. When the script runs out it
falls back to a canned echo so a dev server with ``use_mock_agents`` keeps
working indefinitely.
"""

import asyncio
from typing import Any

import structlog

from models.schemas import AgentReply, ImageReply, Message, TokenUsage

logger = structlog.get_logger(__name__)

ScriptedReply = str | AgentReply | BaseException


class MockAgent:
    """Agent with predefined replies.

    Script entries are consumed in order. A ``str`` becomes a reply costing
    ``cost_per_call``; an ``AgentReply`` is returned as is; an exception is
    raised.

    Usage:
        >>> agent = MockAgent("claude", replies=["Hello", TimeoutError("slow")])
        >>> reply = await agent.respond(history, "You are helpful")
        >>> agent.call_count
        1
    """

    def __init__(
        self,
        agent_id: str,
        replies: list[ScriptedReply] | None = None,
        *,
        cost_per_call: float = 0.0,
        delay_seconds: float = 0.0,
        default_reply: str | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.replies: list[ScriptedReply] = list(replies) if replies else []
        self.cost_per_call = cost_per_call
        self.delay_seconds = delay_seconds
        self.default_reply = default_reply
        self.call_history: list[dict[str, Any]] = []
        self._reply_index = 0

    @property
    def call_count(self) -> int:
        return len(self.call_history)

    async def respond(self, history: list[Message], system_prompt: str) -> AgentReply:
        self.call_history.append({
            "history": list(history),
            "system_prompt": system_prompt,
        })

        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        if self._reply_index < len(self.replies):
            scripted = self.replies[self._reply_index]
            self._reply_index += 1
        else:
            scripted = self._fallback_text(history)

        logger.debug(
            "mock_agent_call",
            agent_id=self.agent_id,
            call_number=self.call_count,
            scripted_type=type(scripted).__name__,
        )

        if isinstance(scripted, BaseException):
            raise scripted
        if isinstance(scripted, AgentReply):
            return scripted
        return AgentReply(
            text=scripted,
            tokens=TokenUsage(input=sum(len(m.content) for m in history) // 4, output=len(scripted) // 4),
            cost_usd=self.cost_per_call,
        )

    def _fallback_text(self, history: list[Message]) -> str:
        if self.default_reply is not None:
            return self.default_reply
        last = history[-1].content[:80] if history else ""
        return f"[{self.agent_id}] Mock response to: {last}"

    def reset(self) -> None:
        """Start the script from the beginning and forget recorded calls."""
        self._reply_index = 0
        self.call_history.clear()


ScriptedImage = str | ImageReply | BaseException


class MockImageAgent:
    """Image agent with predefined results.

    A ``str`` script entry is an image URL costing ``cost_per_image``; an
    ``ImageReply`` is returned as is; an exception is raised. Once the script
    runs out every call returns a placeholder URL.
    """

    def __init__(
        self,
        agent_id: str,
        images: list[ScriptedImage] | None = None,
        *,
        cost_per_image: float = 0.0,
    ) -> None:
        self.agent_id = agent_id
        self.images: list[ScriptedImage] = list(images) if images else []
        self.cost_per_image = cost_per_image
        self.prompts: list[str] = []

    @property
    def call_count(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: str) -> ImageReply:
        self.prompts.append(prompt)
        index = self.call_count - 1
        if index < len(self.images):
            scripted = self.images[index]
        else:
            scripted = f"https://images.invalid/{self.agent_id}/{self.call_count}.png"

        if isinstance(scripted, BaseException):
            raise scripted
        if isinstance(scripted, ImageReply):
            return scripted
        return ImageReply(url=scripted, cost_usd=self.cost_per_image)
