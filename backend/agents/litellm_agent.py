"""LiteLLM-backed chat and image agents.

One instance per agent identifier, wrapping a LiteLLM model string. Retry,
circuit breaking and rate limiting are applied by the caller, so a failed
request raises straight through.
"""

import time
from typing import Any

import structlog
from litellm import acompletion, aimage_generation, completion_cost
from litellm.types.utils import ModelResponse

from agents.base import format_history_for_llm
from models.schemas import AgentReply, ImageReply, Message, TokenUsage

logger = structlog.get_logger(__name__)


class LiteLLMAgent:
    """Agent that answers through ``litellm.acompletion``.

    Attributes:
        agent_id: Identifier used for dispatch, breakers and cost attribution.
        model: LiteLLM model string (e.g. ``anthropic/claude-sonnet-4-20250514``).
        temperature: Sampling temperature.
        max_tokens: Optional cap on response tokens.
        timeout_seconds: Per-request timeout passed to LiteLLM.
    """

    def __init__(
        self,
        agent_id: str,
        model: str,
        *,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        timeout_seconds: float = 120.0,
    ) -> None:
        self.agent_id = agent_id
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds

    async def respond(self, history: list[Message], system_prompt: str) -> AgentReply:
        """Send the history to the model and return its reply with usage and cost.

        Raises:
            Exception: Any LiteLLM error (rate limit, timeout, auth, ...).
        """
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": format_history_for_llm(history, system_prompt, self.agent_id),
            "temperature": self.temperature,
            "timeout": self.timeout_seconds,
        }
        if self.max_tokens:
            kwargs["max_tokens"] = self.max_tokens

        start_time = time.time()
        response = await acompletion(**kwargs)
        latency_ms = int((time.time() - start_time) * 1000)

        content = response.choices[0].message.content or ""
        usage = response.usage
        tokens = TokenUsage(
            input=usage.prompt_tokens if usage else 0,
            output=usage.completion_tokens if usage else 0,
        )
        cost = self._cost_of(response)

        logger.info(
            "agent_response_received",
            agent_id=self.agent_id,
            model=self.model,
            input_tokens=tokens.input,
            output_tokens=tokens.output,
            cost_usd=round(cost, 6),
            latency_ms=latency_ms,
        )
        return AgentReply(text=content, tokens=tokens, cost_usd=cost)

    def _cost_of(self, response: ModelResponse) -> float:
        """USD cost of a completion; 0.0 when LiteLLM has no pricing for the model."""
        try:
            return float(completion_cost(completion_response=response) or 0.0)
        except Exception as e:
            logger.warning(
                "agent_cost_unavailable",
                agent_id=self.agent_id,
                model=self.model,
                error=str(e),
            )
            return 0.0


class LiteLLMImageAgent:
    """Image agent that draws through ``litellm.aimage_generation``.

    Attributes:
        agent_id: Identifier used for breakers and image cost attribution.
        model: LiteLLM image model string (e.g. ``dall-e-3``).
        size: Requested image size.
        timeout_seconds: Per-request timeout passed to LiteLLM.
    """

    def __init__(
        self,
        agent_id: str,
        model: str,
        *,
        size: str = "1024x1024",
        timeout_seconds: float = 120.0,
    ) -> None:
        self.agent_id = agent_id
        self.model = model
        self.size = size
        self.timeout_seconds = timeout_seconds

    async def generate(self, prompt: str) -> ImageReply:
        """Generate one image and return its URL (or data URI) with cost.

        Raises:
            ValueError: If the model returned no image data.
            Exception: Any LiteLLM error.
        """
        start_time = time.time()
        response = await aimage_generation(
            model=self.model,
            prompt=prompt,
            n=1,
            size=self.size,
            timeout=self.timeout_seconds,
        )
        latency_ms = int((time.time() - start_time) * 1000)

        images = response.data or []
        if not images:
            raise ValueError(f"No image data returned from {self.model}")
        image = images[0]
        if image.url:
            url = image.url
        elif image.b64_json:
            url = f"data:image/png;base64,{image.b64_json}"
        else:
            raise ValueError(f"No image data returned from {self.model}")

        try:
            cost = float(completion_cost(
                completion_response=response,
                model=self.model,
                call_type="image_generation",
                size=self.size,
            ) or 0.0)
        except Exception as e:
            logger.warning(
                "image_cost_unavailable",
                agent_id=self.agent_id,
                model=self.model,
                error=str(e),
            )
            cost = 0.0

        logger.info(
            "image_generated",
            agent_id=self.agent_id,
            model=self.model,
            cost_usd=round(cost, 6),
            latency_ms=latency_ms,
        )
        return ImageReply(url=url, cost_usd=cost)
