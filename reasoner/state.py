"""
Reasoning State — per-plan task states, results, failure history, checkpoints
=============================================================================
ReasoningStateManager is the only place mutable plan state lives. Each Plan
owns its own instance; nothing here is module-global.

Checkpoints are deep copies kept in a bounded ring buffer (10 by default,
oldest evicted first). restore_checkpoint() swaps the three live maps in one
step, so a restore is all-or-nothing.

Serialization: JSON-safe dicts (not pickle), used by the checkpoint store for
diagnostics.
"""

from __future__ import annotations

import copy
import logging
import time
from collections import deque
from typing import Any, Callable, Optional

from .advisor import AlternativeApproachAdvisor
from .collaborators import classify_error, error_message
from .models import (
    Checkpoint, ErrorKind, FailureRecord, Plan, StepResult, Suggestion, Task,
    TaskState, TERMINAL_STATES,
)

logger = logging.getLogger("reasoner.state")

DEFAULT_MAX_CHECKPOINTS = 10


# ─────────────────────────────────────────────
# JSON serializers / deserializers
# ─────────────────────────────────────────────

def _failure_to_dict(f: FailureRecord) -> dict:
    return {
        "approach": f.approach,
        "error_message": f.error_message,
        "kind": f.kind.value,
        "timestamp": f.timestamp,
    }


def _failure_from_dict(d: dict) -> FailureRecord:
    return FailureRecord(
        approach=d["approach"],
        error_message=d.get("error_message", ""),
        kind=ErrorKind(d.get("kind", ErrorKind.GENERIC.value)),
        timestamp=d.get("timestamp", 0.0),
    )


def checkpoint_to_dict(cp: Checkpoint) -> dict:
    return {
        "name": cp.name,
        "timestamp": cp.timestamp,
        "task_states": {tid: s.value for tid, s in cp.task_states.items()},
        "results": {tid: r.to_dict() for tid, r in cp.results.items()},
        "failures": {
            tid: [_failure_to_dict(f) for f in records]
            for tid, records in cp.failures.items()
        },
    }


def checkpoint_from_dict(d: dict) -> Checkpoint:
    return Checkpoint(
        name=d["name"],
        timestamp=d["timestamp"],
        task_states={tid: TaskState(s) for tid, s in d.get("task_states", {}).items()},
        results={
            tid: StepResult.from_dict(r) for tid, r in d.get("results", {}).items()
        },
        failures={
            tid: tuple(_failure_from_dict(f) for f in records)
            for tid, records in d.get("failures", {}).items()
        },
    )


# ─────────────────────────────────────────────
# ReasoningStateManager
# ─────────────────────────────────────────────

class ReasoningStateManager:
    """
    Owns task state, per-task results and per-task failure history for one plan.

    The registered Task objects are the plan's own steps; their ``state``
    field is kept in sync as a convenience view, but the authoritative value
    is the manager's state map (the one checkpoints capture).
    """

    def __init__(self, max_checkpoints: int = DEFAULT_MAX_CHECKPOINTS,
                 advisor: Optional[AlternativeApproachAdvisor] = None,
                 clock: Callable[[], float] = time.time):
        self._tasks: dict[str, Task] = {}
        self._states: dict[str, TaskState] = {}
        self._results: dict[str, StepResult] = {}
        self._failures: dict[str, list[FailureRecord]] = {}
        self._checkpoints: deque[Checkpoint] = deque(maxlen=max(1, max_checkpoints))
        self._advisor = advisor or AlternativeApproachAdvisor()
        self._clock = clock

    # ── Registration ──────────────────────────────────────────────────────

    def initialize_plan(self, plan: Plan) -> None:
        """Register every step at ``pending`` and checkpoint ``plan_initialized``."""
        self._tasks.clear()
        self._states.clear()
        self._results.clear()
        self._failures.clear()
        for index, step in enumerate(plan.steps):
            if not step.id:
                step.id = f"task-{index}"
            self._register(step)
        self.create_checkpoint("plan_initialized")

    def register_task(self, task: Task) -> bool:
        """Register a task inserted after initialization. False if the id is taken."""
        if task.id in self._tasks:
            return False
        self._register(task)
        return True

    def _register(self, task: Task) -> None:
        task.state = TaskState.PENDING
        task.start_time = None
        task.end_time = None
        self._tasks[task.id] = task
        self._states[task.id] = TaskState.PENDING

    # ── Queries ───────────────────────────────────────────────────────────

    def task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def state_of(self, task_id: str) -> Optional[TaskState]:
        return self._states.get(task_id)

    def result(self, task_id: str) -> Optional[StepResult]:
        return self._results.get(task_id)

    def failure_history(self, task_id: str) -> list[FailureRecord]:
        return list(self._failures.get(task_id, []))

    @property
    def checkpoints(self) -> list[Checkpoint]:
        return list(self._checkpoints)

    def get_task_status(self) -> dict[str, int]:
        """Counts per state across all tasks, plus ``total``."""
        status = {s.value: 0 for s in TaskState}
        for state in self._states.values():
            status[state.value] += 1
        status["total"] = len(self._tasks)
        return status

    # ── Transitions ───────────────────────────────────────────────────────

    def update_task_state(self, task_id: str, new_state: TaskState) -> bool:
        task = self._tasks.get(task_id)
        if task is None:
            return False
        new_state = TaskState(new_state)
        now = self._clock()
        if new_state == TaskState.IN_PROGRESS and task.start_time is None:
            task.start_time = now
        if new_state in TERMINAL_STATES and task.end_time is None:
            task.end_time = now
        self._states[task_id] = new_state
        task.state = new_state
        return True

    def record_success(self, task_id: str, result: StepResult) -> bool:
        if not self.update_task_state(task_id, TaskState.COMPLETED):
            logger.warning("record_success for unknown task %s", task_id)
            return False
        self._results[task_id] = result
        self.create_checkpoint(f"task_{task_id}_completed")
        return True

    def record_failure(self, task_id: str, approach: str,
                       error: BaseException | str) -> bool:
        if not self.update_task_state(task_id, TaskState.FAILED):
            logger.warning("record_failure for unknown task %s", task_id)
            return False
        self._failures.setdefault(task_id, []).append(FailureRecord(
            approach=str(approach),
            error_message=error_message(error),
            kind=classify_error(error),
            timestamp=self._clock(),
        ))
        self.create_checkpoint(f"task_{task_id}_failed")
        return True

    def suggest_alternative_approach(self, task_id: str,
                                     context: Any = None) -> Optional[Suggestion]:
        task = self._tasks.get(task_id)
        if task is None:
            return None
        return self._advisor.suggest(task, self._failures.get(task_id, []), context)

    # ── Checkpoints ───────────────────────────────────────────────────────

    def create_checkpoint(self, name: str) -> Checkpoint:
        cp = Checkpoint(
            name=name,
            timestamp=self._clock(),
            task_states=dict(self._states),
            results=copy.deepcopy(self._results),
            failures={tid: tuple(copy.deepcopy(recs))
                      for tid, recs in self._failures.items()},
        )
        self._checkpoints.append(cp)
        return cp

    def restore_checkpoint(self, name: str) -> bool:
        """Restore the most recent checkpoint with this name. False if none."""
        for cp in reversed(self._checkpoints):
            if cp.name == name:
                break
        else:
            return False

        states = dict(cp.task_states)
        results = copy.deepcopy(cp.results)
        failures = {tid: list(copy.deepcopy(recs)) for tid, recs in cp.failures.items()}
        self._states, self._results, self._failures = states, results, failures
        for task_id, task in self._tasks.items():
            task.state = states.get(task_id, TaskState.PENDING)
        logger.info("Restored checkpoint %r", name)
        return True

    # ── Serialization ─────────────────────────────────────────────────────

    def to_dict(self) -> dict:
        return {
            "status": self.get_task_status(),
            "task_states": {tid: s.value for tid, s in self._states.items()},
            "results": {tid: r.to_dict() for tid, r in self._results.items()},
            "failures": {
                tid: [_failure_to_dict(f) for f in recs]
                for tid, recs in self._failures.items()
            },
            "checkpoints": [checkpoint_to_dict(cp) for cp in self._checkpoints],
        }
