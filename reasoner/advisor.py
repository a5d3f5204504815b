"""
Alternative-Approach Advisor.

Given the failure history of one task, picks the next approach to try:

  1. no failures yet                     → default (1.0)
  2. ≥3 distinct approaches tried         → DIRECT_RESPONSE (0.6), stop retrying
  3. known failure signatures, in order:
       invalid / undefined URL            → SINGLE_URL_PROCESSING (0.8)
       missing reasoning-tool parameter   → WEB_SEARCH (0.7)
  4. per task type:
       INFORMATION_GATHERING → first untried of WEB_SEARCH, READ_URL,
                               MEMORY_CHECK, REASONING_TOOL; then
                               DIRECT_SYNTHESIS once
       SYNTHESIS             → DIRECT_SYNTHESIS once
       TOOL_SELECTION        → READ_URL for platform queries, REASONING_TOOL
                               after a failed WEB_SEARCH
  5. otherwise                            → ASK_CLARIFICATION (0.5)

ASK_CLARIFICATION tells the executor to give up on the task.

prioritize_tools() builds the ranked tool-candidate list used by the
TOOL_SELECTION step.
"""
from __future__ import annotations

import re
from typing import Any, Sequence

from .models import (
    Approach, ErrorKind, ExecutionContext, FailureRecord, Suggestion, Task,
    TaskType, ToolCandidate, ToolName,
)

ESCALATION_THRESHOLD = 3

# Ordered (approach, confidence) fallbacks for information gathering
INFO_GATHERING_PRIORITIES: tuple[tuple[Approach, float], ...] = (
    (Approach.WEB_SEARCH,     0.9),
    (Approach.READ_URL,       0.8),
    (Approach.MEMORY_CHECK,   0.7),
    (Approach.REASONING_TOOL, 0.6),
)

# Queries naming these platforms are better served by reading URLs directly
EXTERNAL_PLATFORM_KEYWORDS: tuple[str, ...] = ("github",)

_PERSONAL_RE = re.compile(r"\b(my|i have)\b", re.IGNORECASE)


def query_text(context: Any) -> str:
    if isinstance(context, ExecutionContext):
        return context.user_msg or ""
    if isinstance(context, dict):
        return str(context.get("user_msg") or "")
    return ""


def mentions_platform(query: str) -> bool:
    lowered = query.lower()
    return any(k in lowered for k in EXTERNAL_PLATFORM_KEYWORDS)


class AlternativeApproachAdvisor:
    """Stateless heuristics; the failure history lives in the state manager."""

    def suggest(self, task: Task, failures: Sequence[FailureRecord],
                context: Any = None) -> Suggestion:
        if not failures:
            return Suggestion(approach=Approach.DEFAULT.value, confidence=1.0)

        tried = [f.approach for f in failures]

        def _make(approach: Approach, confidence: float, **kw) -> Suggestion:
            return Suggestion(
                approach=approach.value, confidence=confidence,
                previous_approaches=list(tried), **kw,
            )

        if len(set(tried)) >= ESCALATION_THRESHOLD:
            return _make(Approach.DIRECT_RESPONSE, 0.6, response_type="summary")

        kinds = {f.kind for f in failures}
        if ErrorKind.INVALID_URL in kinds:
            return _make(Approach.SINGLE_URL_PROCESSING, 0.8)
        if ErrorKind.MISSING_REASONING_PARAMETER in kinds:
            return _make(Approach.WEB_SEARCH, 0.7)

        if task.type == TaskType.INFORMATION_GATHERING:
            for approach, confidence in INFO_GATHERING_PRIORITIES:
                if approach.value not in tried:
                    return _make(approach, confidence)
            if Approach.DIRECT_SYNTHESIS.value not in tried:
                return _make(Approach.DIRECT_SYNTHESIS, 0.7)

        elif task.type == TaskType.SYNTHESIS:
            if Approach.DIRECT_SYNTHESIS.value not in tried:
                return _make(Approach.DIRECT_SYNTHESIS, 0.8)

        elif task.type == TaskType.TOOL_SELECTION:
            if mentions_platform(query_text(context)) \
                    and Approach.READ_URL.value not in tried:
                return _make(Approach.READ_URL, 0.8)
            if Approach.WEB_SEARCH.value in tried \
                    and Approach.REASONING_TOOL.value not in tried:
                return _make(Approach.REASONING_TOOL, 0.7)

        return _make(Approach.ASK_CLARIFICATION, 0.5)


# ─────────────────────────────────────────────────────────────────────────────
# Tool prioritisation
# ─────────────────────────────────────────────────────────────────────────────

_DEFAULT_PRIORITIES: tuple[tuple[ToolName, float], ...] = (
    (ToolName.WEB_SEARCH,     0.8),
    (ToolName.READ_URL,       0.7),
    (ToolName.REASONING_TOOL, 0.6),
    (ToolName.RESPOND,        0.5),
)


def prioritize_tools(task: Task, context: Any) -> list[ToolCandidate]:
    """Ranked tool candidates for a task, chosen by the shape of the query."""
    query = query_text(context)
    if mentions_platform(query):
        return [
            ToolCandidate(ToolName.READ_URL.value, 0.9, {"use_api": True}),
            ToolCandidate(ToolName.WEB_SEARCH.value, 0.7),
        ]
    if _PERSONAL_RE.search(query):
        return [
            ToolCandidate(ToolName.MEMORY_CHECK.value, 0.9),
            ToolCandidate(ToolName.RESPOND.value, 0.7),
        ]
    if task.type == TaskType.INFORMATION_GATHERING:
        return [
            ToolCandidate(ToolName.WEB_SEARCH.value, 0.9),
            ToolCandidate(ToolName.READ_URL.value, 0.8),
            ToolCandidate(ToolName.REASONING_TOOL.value, 0.7),
        ]
    return [ToolCandidate(tool.value, conf) for tool, conf in _DEFAULT_PRIORITIES]
