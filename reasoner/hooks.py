"""
HookRegistry — event hooks for the plan / step lifecycle.
=========================================================
A small pub-sub layer for observing the executor without touching its logic.
Callbacks are synchronous; async callers can wrap with asyncio.create_task().

Events fired (see EventType):
  PLAN_CREATED          — after plan_query_execution() builds a Plan
  TASK_STARTED          — a task enters in_progress
  TASK_COMPLETED        — a task's result was recorded
  TASK_FAILED           — a task failed and was not recovered
  TASK_SKIPPED          — a task was skipped (unfixable inputs or optional)
  FIXING_TASK_INSERTED  — a fixing task was spliced in before a task
  ALTERNATIVE_SELECTED  — the advisor's suggestion is about to be tried
  PLAN_COMPLETED        — MetaReasoner.run() finished driving a Plan
"""
from __future__ import annotations

import logging
from collections import defaultdict
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger("reasoner.hooks")


class EventType(str, Enum):
    """
    Callback signatures (all kwargs):
      PLAN_CREATED         — plan: Plan
      TASK_STARTED         — task_id: str, task: Task
      TASK_COMPLETED       — task_id: str, result: StepResult, alternative: str | None
      TASK_FAILED          — task_id: str, error: str, optional: bool
      TASK_SKIPPED         — task_id: str, reason: str
      FIXING_TASK_INSERTED — task_id: str, fixing_task: Task
      ALTERNATIVE_SELECTED — task_id: str, suggestion: Suggestion
      PLAN_COMPLETED       — plan: Plan
    """
    PLAN_CREATED         = "plan_created"
    TASK_STARTED         = "task_started"
    TASK_COMPLETED       = "task_completed"
    TASK_FAILED          = "task_failed"
    TASK_SKIPPED         = "task_skipped"
    FIXING_TASK_INSERTED = "fixing_task_inserted"
    ALTERNATIVE_SELECTED = "alternative_selected"
    PLAN_COMPLETED       = "plan_completed"


def _key(event: str | EventType) -> str:
    return event.value if isinstance(event, EventType) else str(event)


class HookRegistry:
    """
    Maps event names to callback lists.

    Usage:
        hooks = HookRegistry()
        hooks.add(EventType.TASK_COMPLETED, lambda task_id, **_: print(task_id))

    A callback that raises is logged and skipped; the remaining callbacks and
    the executor carry on.
    """

    def __init__(self) -> None:
        self._hooks: dict[str, list[Callable]] = defaultdict(list)

    def add(self, event: str | EventType, callback: Callable) -> None:
        self._hooks[_key(event)].append(callback)

    def fire(self, event: str | EventType, **kwargs) -> None:
        key = _key(event)
        for cb in self._hooks.get(key, []):
            try:
                cb(**kwargs)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Hook callback %r raised for event %r: %s", cb, key, exc)

    def clear(self, event: Optional[str | EventType] = None) -> None:
        """Drop the callbacks of one event, or of every event when None."""
        if event is None:
            self._hooks.clear()
        else:
            self._hooks.pop(_key(event), None)

    def registered_events(self) -> list[str]:
        return [k for k, v in self._hooks.items() if v]

    def __len__(self) -> int:
        return sum(len(v) for v in self._hooks.values())
