"""Tests for agents/parsing.py -- tolerant parsing of planner, moderator and TL;DR replies."""

import json

import pytest

from agents.parsing import (
    extract_json_from_response,
    extract_tldr_from_text,
    parse_drift_response,
    parse_plan_response,
    parse_questions,
    parse_tldr_response,
)
from models import PlanDraft, PlanParameters


@pytest.fixture()
def default_plan() -> PlanDraft:
    return PlanDraft(
        expanded_topic="Original topic",
        plan="General discussion on the topic.",
        parameters=PlanParameters(
            max_messages=100, cost_limit=5.0, timeout_minutes=60, compression_threshold=50,
        ),
    )


# =========================================================================
# JSON extraction
# =========================================================================


class TestExtractJson:
    def test_plain_json(self) -> None:
        assert extract_json_from_response('{"a": 1}') == {"a": 1}

    def test_fenced_json(self) -> None:
        text = 'Here you go:\n```json\n{"a": {"b": 2}}\n```\nThanks'
        assert extract_json_from_response(text) == {"a": {"b": 2}}

    def test_embedded_object_with_braces_in_strings(self) -> None:
        text = 'Sure. {"plan": "use {braces}", "n": 3} done'
        assert extract_json_from_response(text) == {"plan": "use {braces}", "n": 3}

    def test_no_object(self) -> None:
        assert extract_json_from_response("no json here [1, 2]") is None


# =========================================================================
# Questions
# =========================================================================


class TestParseQuestions:
    def test_numbered_lines(self) -> None:
        text = "Some preamble\n1. Who?\n2) What?\n   3. Why?\nnot a question"
        assert parse_questions(text, 5) == ["Who?", "What?", "Why?"]

    def test_marker_means_none(self) -> None:
        assert parse_questions("NO_QUESTIONS", 5) == []

    def test_capped(self) -> None:
        text = "\n".join(f"{i}. q{i}" for i in range(1, 10))
        assert parse_questions(text, 2) == ["q1", "q2"]


# =========================================================================
# Plan
# =========================================================================


class TestParsePlan:
    def test_full_plan(self, default_plan: PlanDraft) -> None:
        reply = json.dumps({
            "expandedTopic": "Expanded",
            "plan": "Outline",
            "parameters": {
                "maxMessages": 30, "costLimit": 1.5, "timeoutMinutes": 15,
                "compressionThreshold": 20,
            },
        })
        draft, parsed = parse_plan_response(reply, default_plan)

        assert parsed
        assert draft.expanded_topic == "Expanded"
        assert draft.plan == "Outline"
        assert draft.parameters == PlanParameters(
            max_messages=30, cost_limit=1.5, timeout_minutes=15, compression_threshold=20,
        )

    def test_invalid_fields_fall_back_individually(self, default_plan: PlanDraft) -> None:
        reply = json.dumps({
            "plan": "  ",
            "parameters": {"maxMessages": -3, "costLimit": "2.0", "timeoutMinutes": True},
        })
        draft, parsed = parse_plan_response(reply, default_plan)

        assert parsed
        assert draft.expanded_topic == "Original topic"
        assert draft.plan == "General discussion on the topic."
        assert draft.parameters.max_messages == 100
        assert draft.parameters.cost_limit == pytest.approx(2.0)
        assert draft.parameters.timeout_minutes == 60

    def test_unparseable_returns_default(self, default_plan: PlanDraft) -> None:
        draft, parsed = parse_plan_response("I think we should just talk.", default_plan)
        assert not parsed
        assert draft == default_plan


# =========================================================================
# Drift
# =========================================================================


class TestParseDrift:
    def test_off_topic(self) -> None:
        reply = '{"onTopic": false, "driftScore": 0.8, "suggestion": "Refocus."}'
        assessment = parse_drift_response(reply)
        assert not assessment.on_topic
        assert assessment.drift_score == pytest.approx(0.8)
        assert assessment.suggestion == "Refocus."

    def test_score_clamped(self) -> None:
        assert parse_drift_response('{"onTopic": false, "driftScore": 7}').drift_score == 1.0

    def test_unparseable_assumes_on_topic(self) -> None:
        assessment = parse_drift_response("Looks fine to me")
        assert assessment.on_topic
        assert assessment.drift_score == 0.0


# =========================================================================
# TL;DR
# =========================================================================


class TestParseTldr:
    def test_json(self) -> None:
        tldr = parse_tldr_response(
            json.dumps({"summary": "S.", "keyFindings": [f"f{i}" for i in range(8)]})
        )
        assert tldr.summary == "S."
        assert tldr.key_findings == ["f0", "f1", "f2", "f3", "f4"]

    def test_text_sections(self) -> None:
        text = "Summary: The group converged.\nKey findings:\n- First\n- Second"
        tldr = extract_tldr_from_text(text)
        assert tldr.summary == "The group converged."
        assert tldr.key_findings == ["First", "Second"]

    def test_text_without_findings(self) -> None:
        tldr = parse_tldr_response("Just a paragraph of prose.")
        assert tldr.summary == "Just a paragraph of prose."
        assert tldr.key_findings == ["No specific findings extracted"]
