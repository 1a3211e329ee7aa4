"""Agent factory keyed by identifier.

The registry maps an agent identifier (``claude``, ``chatgpt``, ...) to a
factory and caches the built agent, so every component that asks for
``claude`` talks to the same instance.
"""

import threading
from collections.abc import Callable

import structlog

from agents.base import Agent, ImageAgent
from agents.litellm_agent import LiteLLMAgent, LiteLLMImageAgent
from agents.mock import MockAgent, MockImageAgent
from config import Settings
from errors import AgentNotFoundError

logger = structlog.get_logger(__name__)

AgentFactory = Callable[[str], Agent]
ImageAgentFactory = Callable[[str], ImageAgent]


class AgentRegistry:
    """Builds and caches agents by identifier.

    Identifiers are case-insensitive. Factories receive the normalised id.
    Image agents live in a separate namespace, so ``dall-e-3`` the image
    model never shadows a chat agent.
    """

    def __init__(self, factories: dict[str, AgentFactory] | None = None) -> None:
        self._factories: dict[str, AgentFactory] = {}
        self._agents: dict[str, Agent] = {}
        self._image_factories: dict[str, ImageAgentFactory] = {}
        self._image_agents: dict[str, ImageAgent] = {}
        self._lock = threading.Lock()
        for agent_id, factory in (factories or {}).items():
            self.register(agent_id, factory)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AgentRegistry":
        """Create a registry with one factory per configured chat and image model."""
        registry = cls()
        for agent_id, model in settings.agent_models.items():
            if settings.use_mock_agents:
                registry.register(agent_id, lambda aid: MockAgent(aid))
            else:
                registry.register(
                    agent_id,
                    lambda aid, model=model: LiteLLMAgent(
                        aid,
                        model,
                        timeout_seconds=settings.llm_request_timeout_seconds,
                    ),
                )
        for agent_id, model in settings.image_models.items():
            if settings.use_mock_agents:
                registry.register_image(agent_id, lambda aid: MockImageAgent(aid))
            else:
                registry.register_image(
                    agent_id,
                    lambda aid, model=model: LiteLLMImageAgent(
                        aid,
                        model,
                        size=settings.image_size,
                        timeout_seconds=settings.llm_request_timeout_seconds,
                    ),
                )
        logger.info(
            "agent_registry_configured",
            agents=registry.available(),
            image_agents=registry.available_images(),
            mock=settings.use_mock_agents,
        )
        return registry

    def register(self, agent_id: str, factory: AgentFactory) -> None:
        """Register (or replace) the factory for ``agent_id``."""
        key = agent_id.lower()
        with self._lock:
            self._factories[key] = factory
            self._agents.pop(key, None)

    def register_agent(self, agent: Agent) -> None:
        """Register an already-built agent under its own id."""
        self.register(agent.agent_id, lambda _aid: agent)

    def get(self, agent_id: str) -> Agent:
        """Return the agent for ``agent_id``, building it on first use.

        Raises:
            AgentNotFoundError: If no factory is registered for the id.
        """
        key = agent_id.lower()
        with self._lock:
            agent = self._agents.get(key)
            if agent is not None:
                return agent
            factory = self._factories.get(key)
            if factory is None:
                raise AgentNotFoundError(agent_id)
            agent = factory(key)
            self._agents[key] = agent
            return agent

    def has(self, agent_id: str) -> bool:
        with self._lock:
            return agent_id.lower() in self._factories

    def available(self) -> list[str]:
        with self._lock:
            return sorted(self._factories)

    def register_image(self, agent_id: str, factory: ImageAgentFactory) -> None:
        """Register (or replace) the factory for image agent ``agent_id``."""
        key = agent_id.lower()
        with self._lock:
            self._image_factories[key] = factory
            self._image_agents.pop(key, None)

    def register_image_agent(self, agent: ImageAgent) -> None:
        self.register_image(agent.agent_id, lambda _aid: agent)

    def get_image(self, agent_id: str) -> ImageAgent:
        """Return the image agent for ``agent_id``, building it on first use.

        Raises:
            AgentNotFoundError: If no image factory is registered for the id.
        """
        key = agent_id.lower()
        with self._lock:
            agent = self._image_agents.get(key)
            if agent is not None:
                return agent
            factory = self._image_factories.get(key)
            if factory is None:
                raise AgentNotFoundError(agent_id)
            agent = factory(key)
            self._image_agents[key] = agent
            return agent

    def available_images(self) -> list[str]:
        with self._lock:
            return sorted(self._image_factories)
