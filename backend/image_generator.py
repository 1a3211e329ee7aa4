"""Image generation for a conversation.

Images are drawn from an explicit prompt, or from the conversation's latest
TL;DR summary (falling back to the detailed documentation) when no prompt is
given. Every requested image agent is called once, concurrently, through the
resilience layer. Spend accumulates in the conversation's image cost tracking
under its cost lock and is capped by ``image_cost_limit``, independently of
the conversation cost ceiling.
"""

import asyncio
import re

import structlog

from agents import AgentRegistry
from conversation_store import ConversationStore
from docs_store import DocumentationStore
from events import EventType
from models import Conversation
from models.schemas import ImageGenerationResponse, ImageResult
from resilience import ResilienceLayer
from transport import DeliveryService

logger = structlog.get_logger(__name__)

VISUAL_KEYWORDS = (
    "visual", "image", "diagram", "chart", "graph", "design", "appearance",
    "look", "style",
)
MAX_DIRECT_PROMPT_CHARS = 500
MAX_PROMPT_CHARS = 200


def extract_image_prompt(content: str) -> str:
    """Turn documentation text into a short image prompt.

    Short single-paragraph text is used as is. Longer text is reduced to up
    to three lines mentioning visual terms, else its first sentence, else
    its first 200 characters.
    """
    content = content.strip()
    if len(content) < MAX_DIRECT_PROMPT_CHARS and "\n\n" not in content:
        return content

    visual_lines = [
        line.strip()
        for line in content.splitlines()
        if any(keyword in line.lower() for keyword in VISUAL_KEYWORDS)
    ][:3]
    if visual_lines:
        return " ".join(visual_lines)

    first_sentence = re.split(r"[.!?]", content, maxsplit=1)[0].strip()
    if 20 < len(first_sentence) < MAX_PROMPT_CHARS:
        return first_sentence
    return content[:MAX_PROMPT_CHARS].strip() + "..."


class ImageGenerator:
    """Generates images for conversations under a per-conversation image budget.

    Attributes:
        default_agents: Image agents used when a request names none.
    """

    def __init__(
        self,
        store: ConversationStore,
        docs_store: DocumentationStore,
        agents: AgentRegistry,
        resilience: ResilienceLayer,
        delivery: DeliveryService,
        *,
        default_agents: list[str] | None = None,
    ) -> None:
        self.store = store
        self.docs_store = docs_store
        self.agents = agents
        self.resilience = resilience
        self.delivery = delivery
        self.default_agents = [a.lower() for a in default_agents or []]

    async def resolve_prompt(self, conversation_id: str, prompt: str | None) -> str | None:
        """The explicit prompt, or one extracted from the conversation's documentation."""
        if prompt and prompt.strip():
            return prompt.strip()
        tldr = await self.docs_store.fetch_tldr(conversation_id)
        source = tldr.summary if tldr is not None else ""
        if not source.strip():
            source = await self.docs_store.fetch_latest_detail(conversation_id)
        if not source.strip():
            return None
        return extract_image_prompt(source)

    async def generate(
        self,
        conversation_id: str,
        prompt: str | None = None,
        agent_ids: list[str] | None = None,
    ) -> ImageGenerationResponse:
        """Generate one image per agent and post the results to the conversation.

        Raises:
            ConversationNotFoundError: If the conversation does not exist.
        """
        conversation = self.store.require(conversation_id)
        if conversation.image_cost_limit_reached:
            logger.warning(
                "image_cost_limit_reached",
                conversation_id=conversation_id,
                image_cost=round(conversation.image_cost_tracking.total_cost, 6),
                image_cost_limit=conversation.limits.image_cost_limit,
            )
            return self._response(
                conversation, False, detail="Image cost limit reached"
            )

        resolved = await self.resolve_prompt(conversation_id, prompt)
        if resolved is None:
            return self._response(
                conversation, False, detail="No prompt given and no summary to draw from"
            )

        targets = [a.lower() for a in agent_ids] if agent_ids else self.default_agents
        if not targets:
            return self._response(
                conversation, False, prompt=resolved, detail="No image agents configured"
            )

        logger.info(
            "image_generation_started",
            conversation_id=conversation_id,
            agents=targets,
            prompt_length=len(resolved),
        )
        results = list(await asyncio.gather(*(
            self._generate_one(conversation, agent_id, resolved) for agent_id in targets
        )))

        for result in results:
            if result.url is not None:
                await self.delivery.deliver(
                    conversation_id,
                    f"**[{result.agent_id}]** {result.url}",
                    agent_id=result.agent_id,
                )

        if conversation.image_cost_limit_reached:
            total = conversation.image_cost_tracking.total_cost
            limit = conversation.limits.image_cost_limit
            await self.delivery.notify(
                conversation_id,
                f"Image cost limit reached (${total:.2f} / ${limit:.2f}). "
                "No further images will be generated.",
                kind="image_cost_limit",
            )

        logger.info(
            "image_generation_complete",
            conversation_id=conversation_id,
            generated=sum(1 for r in results if r.url is not None),
            failed=sum(1 for r in results if r.error is not None),
            image_cost=round(conversation.image_cost_tracking.total_cost, 6),
        )
        return self._response(conversation, True, prompt=resolved, results=results)

    async def _generate_one(
        self, conversation: Conversation, agent_id: str, prompt: str
    ) -> ImageResult:
        if conversation.image_cost_limit_reached:
            return ImageResult(agent_id=agent_id, error="Image cost limit reached")

        try:
            agent = self.agents.get_image(agent_id)
            reply = await self.resilience.execute(agent_id, lambda: agent.generate(prompt))
        except Exception as e:
            logger.warning(
                "image_generation_failed",
                conversation_id=conversation.id,
                agent_id=agent_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self.store.emit(
                EventType.AGENT_ERROR,
                conversation.id,
                agent_id=agent_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ImageResult(agent_id=agent_id, error=str(e))

        async with self.store.cost_lock(conversation.id):
            conversation.image_cost_tracking.record(agent_id, reply.cost_usd, 0, 0)
            await self.store.emit(
                EventType.IMAGE_GENERATED,
                conversation.id,
                agent_id=agent_id,
                url=reply.url,
                call_cost=reply.cost_usd,
                image_cost=conversation.image_cost_tracking.total_cost,
                image_cost_limit=conversation.limits.image_cost_limit,
            )
        return ImageResult(agent_id=agent_id, url=reply.url, cost_usd=reply.cost_usd)

    def _response(
        self,
        conversation: Conversation,
        accepted: bool,
        *,
        prompt: str | None = None,
        results: list[ImageResult] | None = None,
        detail: str | None = None,
    ) -> ImageGenerationResponse:
        return ImageGenerationResponse(
            conversation_id=conversation.id,
            accepted=accepted,
            prompt=prompt,
            results=results or [],
            image_cost=conversation.image_cost_tracking.total_cost,
            image_cost_limit=conversation.limits.image_cost_limit,
            detail=detail,
        )
