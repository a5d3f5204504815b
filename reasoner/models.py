"""
Meta-Reasoner — Core Models & Types
===================================
Task records, plan aggregate, step results, failure records and checkpoints,
plus the fixed tables (canonical type order, logical dependencies) that the
resolver, executor and advisor share.

Task types are kept as plain strings on the Task so that decompositions may
introduce types the engine does not know; TaskType members compare equal to
their string values.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from .state import ReasoningStateManager


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class TaskType(str, Enum):
    MEMORY_CHECK = "MEMORY_CHECK"
    INTENT_CLASSIFICATION = "INTENT_CLASSIFICATION"
    TOOL_SELECTION = "TOOL_SELECTION"
    INFORMATION_GATHERING = "INFORMATION_GATHERING"
    SYNTHESIS = "SYNTHESIS"
    VERIFICATION = "VERIFICATION"


class TaskState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATES: frozenset[TaskState] = frozenset({
    TaskState.COMPLETED, TaskState.FAILED, TaskState.SKIPPED,
})


class Approach(str, Enum):
    """Approach labels recorded in failure history and returned by the advisor."""
    DEFAULT = "default"
    DIRECT_RESPONSE = "DIRECT_RESPONSE"
    SINGLE_URL_PROCESSING = "SINGLE_URL_PROCESSING"
    WEB_SEARCH = "WEB_SEARCH"
    READ_URL = "READ_URL"
    MEMORY_CHECK = "MEMORY_CHECK"
    REASONING_TOOL = "REASONING_TOOL"
    DIRECT_SYNTHESIS = "DIRECT_SYNTHESIS"
    ASK_CLARIFICATION = "ASK_CLARIFICATION"


class ToolName(str, Enum):
    WEB_SEARCH = "WEB_SEARCH"
    READ_URL = "READ_URL"
    GET_DATE = "GET_DATE"
    REASONING_TOOL = "REASONING_TOOL"
    RESPOND = "RESPOND"
    MEMORY_CHECK = "MEMORY_CHECK"


class ErrorKind(str, Enum):
    """Structured failure signatures produced by collaborators."""
    INVALID_URL = "invalid_url"
    MISSING_REASONING_PARAMETER = "missing_reasoning_parameter"
    TIMEOUT = "timeout"
    TOOL_NOT_FOUND = "tool_not_found"
    GENERIC = "generic"


# ─────────────────────────────────────────────
# Ordering tables
# ─────────────────────────────────────────────

CANONICAL_ORDER: tuple[str, ...] = (
    TaskType.MEMORY_CHECK.value,
    TaskType.INTENT_CLASSIFICATION.value,
    TaskType.TOOL_SELECTION.value,
    TaskType.INFORMATION_GATHERING.value,
    TaskType.SYNTHESIS.value,
    TaskType.VERIFICATION.value,
)

# task type → predecessor types it logically requires (when present in the plan)
LOGICAL_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    TaskType.MEMORY_CHECK.value:          (),
    TaskType.INTENT_CLASSIFICATION.value: (),
    TaskType.TOOL_SELECTION.value:        (TaskType.INTENT_CLASSIFICATION.value,
                                           TaskType.MEMORY_CHECK.value),
    TaskType.INFORMATION_GATHERING.value: (TaskType.TOOL_SELECTION.value,),
    TaskType.SYNTHESIS.value:             (TaskType.INFORMATION_GATHERING.value,),
    TaskType.VERIFICATION.value:          (TaskType.SYNTHESIS.value,),
}

# task type → predecessor type whose successful result must already exist
REQUIRED_INPUTS: dict[str, str] = {
    TaskType.SYNTHESIS.value:             TaskType.INFORMATION_GATHERING.value,
    TaskType.VERIFICATION.value:          TaskType.SYNTHESIS.value,
    TaskType.INFORMATION_GATHERING.value: TaskType.TOOL_SELECTION.value,
}


def type_rank(task_type: str) -> int:
    """Position of a type in the canonical order; unknown types sort last."""
    try:
        return CANONICAL_ORDER.index(task_type)
    except ValueError:
        return len(CANONICAL_ORDER)


def normalize_task_type(raw: Any) -> str:
    if isinstance(raw, TaskType):
        return raw.value
    text = str(raw or "").strip()
    if not text:
        return "GENERIC"
    return text.upper().replace("-", "_").replace(" ", "_")


# ─────────────────────────────────────────────
# Data classes
# ─────────────────────────────────────────────

@dataclass
class Task:
    id: str
    type: str
    description: str = ""
    input: str = ""
    output: str = ""
    dependencies: list[str] = field(default_factory=list)
    priority: int = 3
    optional: bool = False
    state: TaskState = TaskState.PENDING
    start_time: Optional[float] = None
    end_time: Optional[float] = None

    def __post_init__(self):
        self.type = normalize_task_type(self.type)
        deps: list[str] = []
        for dep in self.dependencies:
            dep = str(dep)
            if dep != self.id and dep not in deps:
                deps.append(dep)
        self.dependencies = deps

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass
class StepResult:
    """
    Outcome payload of one executed task.

    The payload shape depends on the task type and the tool that produced it,
    so it is kept as a plain dict with accessors for the fields other steps
    read back.
    """
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str = ""

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    @property
    def response(self) -> Optional[str]:
        return self.data.get("response")

    @property
    def selected_tool(self) -> Optional[str]:
        return self.data.get("selected_tool")

    @property
    def tool_result(self) -> Optional[dict]:
        value = self.data.get("tool_result")
        return value if isinstance(value, dict) else None

    @property
    def intent(self) -> Optional[str]:
        return self.data.get("intent")

    @property
    def answer(self) -> Optional[str]:
        return self.data.get("answer")

    @property
    def information(self) -> str:
        return str(self.data.get("information", ""))

    def to_dict(self) -> dict:
        return {"success": self.success, "data": self.data, "error": self.error}

    @classmethod
    def from_dict(cls, d: dict) -> "StepResult":
        return cls(
            success=bool(d.get("success", False)),
            data=dict(d.get("data", {})),
            error=d.get("error", ""),
        )


@dataclass
class StepRecord:
    """One entry of Plan.results."""
    step: Task
    result: StepResult
    alternative: Optional[str] = None


@dataclass
class FailureRecord:
    approach: str
    error_message: str
    kind: ErrorKind = ErrorKind.GENERIC
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot of a state manager at one instant."""
    name: str
    timestamp: float
    task_states: dict[str, TaskState]
    results: dict[str, StepResult]
    failures: dict[str, tuple[FailureRecord, ...]]


@dataclass
class Suggestion:
    approach: str
    confidence: float
    previous_approaches: list[str] = field(default_factory=list)
    response_type: Optional[str] = None


@dataclass
class ToolCandidate:
    tool: str
    confidence: float
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionContext:
    """
    Per-turn context handed to execute_next_step().

    The executor writes the classified intent and the selected tool back into
    the context so that later steps of the same plan can read them.
    """
    user_msg: str = ""
    facts: list[dict] = field(default_factory=list)
    history_context: str = ""
    tool_history: dict[str, list[str]] = field(default_factory=dict)
    urls: list[str] = field(default_factory=list)
    additional_params: dict[str, Any] = field(default_factory=dict)
    intent: Optional[str] = None
    intent_confidence: float = 0.0
    selected_tool: Optional[str] = None
    selected_tool_params: dict[str, Any] = field(default_factory=dict)


@dataclass
class Plan:
    """One query's execution: ordered steps, cursor, results log."""
    query: str
    steps: list[Task]
    state_manager: "ReasoningStateManager"
    current_step_index: int = 0
    results: list[StepRecord] = field(default_factory=list)
    plan_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    start_time: float = field(default_factory=time.time)
    completed: bool = False
    last_step_successful: Optional[bool] = None
    used_alternative: bool = False
    skipped_step: bool = False
    error: Optional[str] = None
    decomposition_error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)
    # ids of tasks that already had a fixing task spliced in front of them
    fixed_task_ids: set[str] = field(default_factory=set)

    @property
    def exhausted(self) -> bool:
        return self.current_step_index >= len(self.steps)

    @property
    def current_step(self) -> Optional[Task]:
        if self.exhausted:
            return None
        return self.steps[self.current_step_index]

    def successful_results(self, task_type: str) -> list[StepRecord]:
        return [
            r for r in self.results
            if r.step.type == task_type and r.result.success
        ]

    def final_result(self) -> Optional[StepResult]:
        """Last successful VERIFICATION or SYNTHESIS result carrying a response."""
        for record in reversed(self.results):
            if record.step.type in (TaskType.VERIFICATION, TaskType.SYNTHESIS):
                if record.result.success and record.result.response:
                    return record.result
        return None
