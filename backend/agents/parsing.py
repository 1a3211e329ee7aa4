"""Structured-output parsing for planner, moderator and TL;DR replies.

Every parser here returns a well-defined default when the reply cannot be
parsed. None of them raise on malformed model output.
"""

import json
import re
from typing import Any

import structlog

from models.schemas import DriftAssessment, PlanDraft, PlanParameters, TldrSummary

logger = structlog.get_logger(__name__)

NO_QUESTIONS_MARKER = "NO_QUESTIONS"
MAX_TLDR_FINDINGS = 5

_NUMBERED_LINE = re.compile(r"^\s*\d+[.)]\s*(.+)$")
_SUMMARY_SECTION = re.compile(r"summary[:\s]+(.*?)(?=key|findings|$)", re.IGNORECASE | re.DOTALL)
_FINDINGS_SECTION = re.compile(r"(?:key\s+findings|findings)[:\s]+(.*?)$", re.IGNORECASE | re.DOTALL)
_FINDING_SPLIT = re.compile(r"\n|•|^\s*[-*]\s+", re.MULTILINE)


def _extract_balanced_json_objects(text: str) -> list[str]:
    """Extract balanced JSON object candidates from arbitrary text."""
    candidates: list[str] = []
    n = len(text)

    for start in range(n):
        if text[start] != "{":
            continue

        depth = 0
        in_string = False
        escaped = False

        for end in range(start, n):
            ch = text[end]

            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidates.append(text[start : end + 1])
                    break

    return candidates


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract a JSON object from an LLM reply that may contain extra text.

    Tries, in order: the whole reply, fenced code blocks, then any balanced
    ``{...}`` object in the free-form text.

    Returns:
        Parsed JSON dict if found, None otherwise
    """
    def try_parse(candidate: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    parsed = try_parse(response.strip())
    if parsed is not None:
        return parsed

    fence_pattern = r"```(?:json)?\s*([\s\S]*?)\s*```"
    for match in re.finditer(fence_pattern, response, re.IGNORECASE):
        fenced_body = match.group(1).strip()
        parsed = try_parse(fenced_body)
        if parsed is not None:
            return parsed
        for candidate in _extract_balanced_json_objects(fenced_body):
            parsed = try_parse(candidate)
            if parsed is not None:
                return parsed

    for candidate in _extract_balanced_json_objects(response):
        parsed = try_parse(candidate)
        if parsed is not None:
            return parsed

    return None


def parse_questions(content: str, max_questions: int) -> list[str]:
    """Parse numbered clarifying questions.

    ``NO_QUESTIONS`` anywhere in the reply means no questions. Lines that are
    not numbered are ignored. At most ``max_questions`` are returned.
    """
    if NO_QUESTIONS_MARKER in content:
        return []

    questions: list[str] = []
    for line in content.splitlines():
        match = _NUMBERED_LINE.match(line)
        if match:
            question = match.group(1).strip()
            if question:
                questions.append(question)
    return questions[:max(0, max_questions)]


def _positive(value: Any, default: float, cast: type) -> Any:
    """Return ``cast(value)`` if it is a positive number, else ``default``."""
    if isinstance(value, bool):
        return default
    try:
        number = cast(value)
    except (TypeError, ValueError):
        return default
    return number if number > 0 else default


def parse_plan_response(content: str, default: PlanDraft) -> tuple[PlanDraft, bool]:
    """Parse an ``{expandedTopic, plan, parameters}`` reply.

    Missing or invalid fields are taken from ``default``.

    Returns:
        ``(plan, parsed)`` where ``parsed`` is False when no JSON object was
        found and ``default`` was returned unchanged.
    """
    data = extract_json_from_response(content)
    if data is None:
        logger.warning("plan_parse_failed", preview=content[:120])
        return default, False

    raw_params = data.get("parameters")
    if not isinstance(raw_params, dict):
        raw_params = {}
    fallback = default.parameters
    parameters = PlanParameters(
        max_messages=_positive(raw_params.get("maxMessages"), fallback.max_messages, int),
        cost_limit=_positive(raw_params.get("costLimit"), fallback.cost_limit, float),
        timeout_minutes=_positive(raw_params.get("timeoutMinutes"), fallback.timeout_minutes, int),
        compression_threshold=_positive(
            raw_params.get("compressionThreshold"), fallback.compression_threshold, int
        ),
    )

    expanded_topic = data.get("expandedTopic")
    plan = data.get("plan")
    return (
        PlanDraft(
            expanded_topic=expanded_topic.strip()
            if isinstance(expanded_topic, str) and expanded_topic.strip()
            else default.expanded_topic,
            plan=plan.strip() if isinstance(plan, str) and plan.strip() else default.plan,
            parameters=parameters,
        ),
        True,
    )


def parse_drift_response(content: str) -> DriftAssessment:
    """Parse an ``{onTopic, driftScore, suggestion}`` reply; assume on-topic on failure."""
    data = extract_json_from_response(content)
    if data is None:
        logger.warning("drift_parse_failed", preview=content[:120])
        return DriftAssessment()

    try:
        drift_score = float(data.get("driftScore") or 0.0)
    except (TypeError, ValueError):
        drift_score = 0.0
    suggestion = data.get("suggestion")
    return DriftAssessment(
        on_topic=data.get("onTopic") is not False,
        drift_score=min(max(drift_score, 0.0), 1.0),
        suggestion=suggestion if isinstance(suggestion, str) else "",
    )


def parse_tldr_response(content: str) -> TldrSummary:
    """Parse a ``{summary, keyFindings}`` reply, falling back to text extraction."""
    data = extract_json_from_response(content)
    if data is not None:
        summary = data.get("summary")
        findings = data.get("keyFindings")
        return TldrSummary(
            summary=summary if isinstance(summary, str) and summary else content,
            key_findings=[str(f) for f in findings][:MAX_TLDR_FINDINGS]
            if isinstance(findings, list)
            else [],
        )

    logger.debug("tldr_json_missing_using_text", preview=content[:120])
    return extract_tldr_from_text(content)


def extract_tldr_from_text(text: str) -> TldrSummary:
    """Pull a summary and bullet findings out of loosely structured text."""
    summary_match = _SUMMARY_SECTION.search(text)
    findings_match = _FINDINGS_SECTION.search(text)

    summary = summary_match.group(1).strip() if summary_match else text[:500].strip()
    findings_text = findings_match.group(1) if findings_match else ""

    findings = [
        item.strip()
        for item in _FINDING_SPLIT.split(findings_text)
        if item.strip() and not re.fullmatch(r"\d+\.?", item.strip())
    ][:MAX_TLDR_FINDINGS]

    return TldrSummary(
        summary=summary,
        key_findings=findings or ["No specific findings extracted"],
    )
