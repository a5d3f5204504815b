"""
Collaborator interfaces — the narrow seams between the planning core and the
language-model calls and tools it relies on.

The core never implements these capabilities. It awaits them, treats any
raised exception as a task failure, and routes recovery on the ErrorKind the
failure carries (see classify_error()).
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from .models import ErrorKind


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class CollaboratorError(Exception):
    """A collaborator call failed or returned an error payload."""

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.kind = kind or classify_message(message)


def classify_message(message: str) -> ErrorKind:
    """Map a free-text error message onto a known failure signature."""
    lowered = message.lower()
    if "invalid url" in lowered or "undefined" in lowered:
        return ErrorKind.INVALID_URL
    # REASONING_TOOL takes a single required "problem" parameter
    if "parameter" in lowered and "problem" in lowered:
        return ErrorKind.MISSING_REASONING_PARAMETER
    if "timed out" in lowered or "timeout" in lowered:
        return ErrorKind.TIMEOUT
    if "not found" in lowered and "tool" in lowered:
        return ErrorKind.TOOL_NOT_FOUND
    return ErrorKind.GENERIC


def classify_error(error: BaseException | str) -> ErrorKind:
    if isinstance(error, CollaboratorError):
        return error.kind
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    return classify_message(str(error))


def error_message(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


# ─────────────────────────────────────────────────────────────────────────────
# Collaborator results
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class MemoryAnswer:
    found: bool
    answer: Optional[str] = None
    confidence: Optional[float] = None
    reason: Optional[str] = None


@dataclass
class IntentResult:
    intent: str
    confidence: float = 0.0


@dataclass
class ToolDecision:
    tool: Optional[str]
    parameters: dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""


# ─────────────────────────────────────────────────────────────────────────────
# Protocols
# ─────────────────────────────────────────────────────────────────────────────

@runtime_checkable
class Decomposer(Protocol):
    async def decompose(self, query: str, context: dict) -> Any:
        """Return raw task descriptors (list of dicts) or model text holding them."""
        ...


@runtime_checkable
class MemoryService(Protocol):
    async def check_answer(self, query: str) -> MemoryAnswer: ...


@runtime_checkable
class IntentClassifier(Protocol):
    async def classify(self, query: str, context: dict) -> IntentResult: ...


@runtime_checkable
class ToolSelector(Protocol):
    async def select(self, query: str, intent: str, facts: list[dict],
                     history: str, tool_history: dict) -> ToolDecision: ...


@runtime_checkable
class ToolRunner(Protocol):
    async def run(self, tool_name: str, parameters: dict, context: Any) -> dict: ...


@runtime_checkable
class Synthesizer(Protocol):
    async def synthesize(self, query: str, information: str,
                         response_type: str = "answer") -> str: ...


@dataclass
class Collaborators:
    """Bundle of every external capability the executor dispatches to."""
    memory: MemoryService
    intent_classifier: IntentClassifier
    tool_selector: ToolSelector
    tool_runner: ToolRunner
    synthesizer: Synthesizer
    decomposer: Optional[Decomposer] = None
