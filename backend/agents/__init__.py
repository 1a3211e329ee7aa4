"""Agent capability, implementations, prompts and reply parsing.

This module exports the key components needed to talk to agents:
- The single-method Agent protocol and the registry that builds agents by id
- LiteLLM-backed and mock implementations, for chat and for images
- System prompts for conversation agents, the planner/moderator and the
  documentation agents
- Parsers that turn structured replies into models, with defaults on failure
"""

from agents.base import Agent, ImageAgent, format_history_for_llm
from agents.litellm_agent import LiteLLMAgent, LiteLLMImageAgent
from agents.mock import MockAgent, MockImageAgent
from agents.parsing import (
    extract_json_from_response,
    parse_drift_response,
    parse_plan_response,
    parse_questions,
    parse_tldr_response,
)
from agents.prompts import (
    SCRIBE_COMPRESS_PROMPT,
    TLDR_SUMMARY_PROMPT,
    get_conversation_prompt,
    get_drift_prompt,
    get_planner_analyze_prompt,
    get_planner_plan_prompt,
)
from agents.registry import AgentFactory, AgentRegistry, ImageAgentFactory

__all__ = [
    # Capability
    "Agent",
    "AgentFactory",
    "AgentRegistry",
    "ImageAgent",
    "ImageAgentFactory",
    "LiteLLMAgent",
    "LiteLLMImageAgent",
    "MockAgent",
    "MockImageAgent",
    "format_history_for_llm",
    # Prompts
    "SCRIBE_COMPRESS_PROMPT",
    "TLDR_SUMMARY_PROMPT",
    "get_conversation_prompt",
    "get_drift_prompt",
    "get_planner_analyze_prompt",
    "get_planner_plan_prompt",
    # Parsing
    "extract_json_from_response",
    "parse_drift_response",
    "parse_plan_response",
    "parse_questions",
    "parse_tldr_response",
]
