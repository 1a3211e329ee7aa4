"""Tests for task_presets.py -- task type detection and agent selection."""

import pytest

from task_presets import AgentPresets, TaskType, detect_task_type


class TestDetectTaskType:
    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Is P equal to NP?", TaskType.GENERAL),
            ("How should I debug this Python function?", TaskType.CODING),
            ("Design a microservices deployment on kubernetes", TaskType.ARCHITECTURE),
            ("", TaskType.GENERAL),
        ],
    )
    def test_classification(self, text: str, expected: TaskType) -> None:
        assert detect_task_type(text) == expected

    def test_architecture_wins_ties(self) -> None:
        # one coding keyword ("python"), one architecture keyword ("cloud")
        assert detect_task_type("Python on the cloud") == TaskType.ARCHITECTURE

    def test_more_coding_keywords_win(self) -> None:
        text = "Refactor this javascript class and its sql query for the schema"
        assert detect_task_type(text) == TaskType.CODING


class TestAgentPresets:
    def test_unconfigured_types_use_general_agents(self) -> None:
        presets = AgentPresets(["Claude", "chatgpt"])
        assert presets.agents_for(TaskType.CODING) == ["claude", "chatgpt"]
        assert presets.agents_for(TaskType.ARCHITECTURE) == ["claude", "chatgpt"]

    def test_select_returns_type_and_agents(self) -> None:
        presets = AgentPresets(["claude", "chatgpt"], coding=["claude", "grok"])
        task_type, agents = presets.select("Why does my python code not compile?")
        assert task_type == TaskType.CODING
        assert agents == ["claude", "grok"]

    def test_selection_is_a_copy(self) -> None:
        presets = AgentPresets(["claude"])
        presets.agents_for(TaskType.GENERAL).append("grok")
        assert presets.agents_for(TaskType.GENERAL) == ["claude"]
