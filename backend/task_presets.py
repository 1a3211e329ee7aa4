"""Task-type agent presets.

A new conversation's opening message is classified as a general, coding or
architecture discussion by keyword counts, and the agents for that task type
are selected. Architecture wins ties with coding.
"""

from enum import StrEnum

import structlog

logger = structlog.get_logger(__name__)


class TaskType(StrEnum):
    GENERAL = "general"
    CODING = "coding"
    ARCHITECTURE = "architecture"


CODING_KEYWORDS = (
    "code", "programming", "function", "class", "method", "variable",
    "algorithm", "syntax", "debug", "compile", "repository", "git", "api",
    "endpoint", "database", "sql", "javascript", "typescript", "python",
    "react", "node", "framework", "library", "package",
)

ARCHITECTURE_KEYWORDS = (
    "architecture", "design", "system design", "microservices", "scalability",
    "infrastructure", "deployment", "kubernetes", "docker", "aws", "cloud",
    "serverless", "database design", "schema", "erd", "diagram", "component",
    "service", "api design",
)


def detect_task_type(text: str) -> TaskType:
    """Classify a message by the number of coding and architecture keywords it contains."""
    lowered = text.lower()
    coding = sum(1 for keyword in CODING_KEYWORDS if keyword in lowered)
    architecture = sum(1 for keyword in ARCHITECTURE_KEYWORDS if keyword in lowered)
    if architecture > 0 and architecture >= coding:
        return TaskType.ARCHITECTURE
    if coding > 0:
        return TaskType.CODING
    return TaskType.GENERAL


class AgentPresets:
    """Agent selections per task type.

    Task types without a configured selection use the general agents.
    """

    def __init__(
        self,
        general: list[str],
        coding: list[str] | None = None,
        architecture: list[str] | None = None,
    ) -> None:
        self._agents: dict[TaskType, list[str]] = {
            TaskType.GENERAL: [a.lower() for a in general],
            TaskType.CODING: [a.lower() for a in coding or general],
            TaskType.ARCHITECTURE: [a.lower() for a in architecture or general],
        }

    def agents_for(self, task_type: TaskType) -> list[str]:
        return list(self._agents[task_type])

    def select(self, text: str) -> tuple[TaskType, list[str]]:
        """Detect the task type of ``text`` and return it with its agents."""
        task_type = detect_task_type(text)
        agents = self.agents_for(task_type)
        logger.debug("task_type_detected", task_type=task_type.value, agents=agents)
        return task_type, agents
