"""Application configuration using Pydantic Settings.

This module provides centralized configuration management for the Roundtable
backend. All settings can be overridden via environment variables or a .env file.
"""

import json
import logging
from typing import Annotated, Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_mapping(v: Any) -> dict[str, str]:
    """Parse a JSON object or comma-separated ``key=value`` pairs."""
    if isinstance(v, dict):
        return {str(k): str(val) for k, val in v.items()}
    if isinstance(v, str):
        v = v.strip()
        if not v:
            return {}
        if v.startswith("{"):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                return {str(k): str(val) for k, val in parsed.items()}
        pairs: dict[str, str] = {}
        for item in v.split(","):
            key, sep, value = item.partition("=")
            if sep and key.strip() and value.strip():
                pairs[key.strip()] = value.strip()
        return pairs
    return {}


def _parse_list(v: Any) -> list[str]:
    """Parse a JSON array, comma-separated string, or list."""
    if isinstance(v, list):
        return [str(item) for item in v]
    if isinstance(v, str):
        v = v.strip()
        if v.startswith("["):
            try:
                parsed = json.loads(v)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return [str(item) for item in parsed]
        return [item.strip() for item in v.split(",") if item.strip()]
    return []


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Attributes:
        agent_models: Mapping of agent identifier to LiteLLM model string
            (e.g. ``{"claude": "anthropic/claude-sonnet-4"}``).
        default_agents: Agents selected for new general-purpose conversations.
        coding_agents: Agents for conversations detected as coding tasks
            (empty: ``default_agents``).
        architecture_agents: Agents for conversations detected as architecture
            tasks (empty: ``default_agents``).
        image_models: Mapping of image agent identifier to LiteLLM image model.
        default_image_agents: Image agents used when a request names none.
        image_size: Size requested from image models.
        use_mock_agents: If True, agents return canned responses (no API calls).
        llm_request_timeout_seconds: Timeout for a single LLM request.
        max_messages_per_conversation: Message ceiling before a conversation stops.
        conversation_timeout_minutes: Inactivity timeout before a conversation stops.
        conversation_cost_limit: USD ceiling before a conversation pauses.
        image_cost_limit: USD ceiling for image generation spend.
        compression_threshold: Message count above which history is compressed.
        compression_keep_recent: Messages kept verbatim after compression.
        max_ai_responses_per_turn: Cap on consecutive agent responses.
        batch_reply_time_window_seconds: Window for reply-to batching.
        dispatch_concurrency: Global bound on in-flight agent calls.
        planner_agent: Agent used for planning and moderation.
        planner_timeout_minutes: Planning phase timeout.
        planner_max_questions: Maximum clarifying questions.
        planner_auto_start: Start as soon as a plan exists.
        moderator_check_interval: Messages between drift checks.
        moderator_topic_drift_threshold: Drift score above which a strike is counted.
        moderator_max_drift_warnings: Redirects before excessive drift warnings.
        scribe_agent: Agent used by the scribe to compress transcripts.
        scribe_update_interval_seconds: Scribe debounce delay.
        tldr_agent: Agent used for TL;DR summaries.
        tldr_update_interval_seconds: Minimum seconds between TL;DR updates.
        docs_database_path: SQLite file for the documentation store.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Agents
    agent_models: Annotated[dict[str, str], NoDecode] = {
        "claude": "anthropic/claude-sonnet-4-20250514",
        "chatgpt": "openai/gpt-4o",
        "grok": "xai/grok-3",
    }
    default_agents: Annotated[list[str], NoDecode] = ["claude", "chatgpt"]
    coding_agents: Annotated[list[str], NoDecode] = []
    architecture_agents: Annotated[list[str], NoDecode] = []
    use_mock_agents: bool = False
    llm_request_timeout_seconds: int = 120

    # Image generation
    image_models: Annotated[dict[str, str], NoDecode] = {"dall-e-3": "dall-e-3"}
    default_image_agents: Annotated[list[str], NoDecode] = ["dall-e-3"]
    image_size: str = "1024x1024"

    # Conversation limits
    max_messages_per_conversation: int = 1000
    conversation_timeout_minutes: int = 60
    conversation_cost_limit: float = 5.0
    image_cost_limit: float = 2.0
    compression_threshold: int = 50
    compression_keep_recent: int = 10

    # Dispatch
    max_ai_responses_per_turn: int = 3
    batch_reply_time_window_seconds: int = 60
    dispatch_concurrency: int = 3

    # Resilience
    retry_max_retries: int = 3
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_backoff_multiplier: float = 2.0
    breaker_failure_threshold: int = 5
    breaker_reset_timeout_seconds: float = 60.0
    breaker_half_open_max_attempts: int = 3

    # Rate limiting
    agent_rate_limit_rpm: int = 30
    transport_rate_limit_per_second: int = 50

    # Session planner / moderator
    planner_agent: str = "claude"
    planner_timeout_minutes: int = 30
    planner_max_questions: int = 5
    planner_auto_start: bool = False
    moderator_check_interval: int = 10
    moderator_topic_drift_threshold: float = 0.6
    moderator_max_drift_warnings: int = 3
    moderator_participant_balance_check: bool = True
    moderator_quality_assessment: bool = True

    # Documentation agents
    scribe_agent: str = "chatgpt"
    scribe_update_interval_seconds: float = 60.0
    tldr_agent: str = "chatgpt"
    tldr_update_interval_seconds: float = 600.0
    docs_database_path: str = "./data/documentation.db"

    # Server Configuration
    backend_port: int = 8000
    cors_origins: Annotated[list[str], NoDecode] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("agent_models", "image_models", mode="before")
    @classmethod
    def parse_agent_models(cls, v: Any) -> dict[str, str]:
        """Parse agent models from a JSON object or ``id=model`` pairs.

        Accepts:
        - JSON object: '{"claude": "anthropic/claude-sonnet-4"}'
        - Comma-separated pairs: 'claude=anthropic/claude-sonnet-4,grok=xai/grok-3'
        - Already a dict
        """
        return _parse_mapping(v)

    @field_validator(
        "default_agents", "coding_agents", "architecture_agents", "default_image_agents",
        mode="before",
    )
    @classmethod
    def parse_agent_lists(cls, v: Any) -> list[str]:
        """Parse agent lists from JSON array, comma-separated string, or list."""
        return _parse_list(v)

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string or list."""
        origins = _parse_list(v)
        return origins or ["http://localhost:3000"]

    model_config = SettingsConfigDict(
        # Support running `uvicorn` from either the repo root or `backend/`
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging for the application.

    Sets up structlog with appropriate processors for either JSON or console output.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for production, 'text' for development.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)

logger = structlog.get_logger(__name__)
