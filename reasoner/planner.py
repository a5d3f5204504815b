"""
PlanBuilder — query → Plan (ordered tasks + fresh ReasoningStateManager).
========================================================================
1. Ask the Decomposer for raw task descriptors
2. Parse them defensively (model text with fences, trailing commas, or a
   wrapping object is accepted) and normalise every field
3. Resolve dependencies: logical injection, cycle breaking, canonical
   ordering, bookend MEMORY_CHECK / VERIFICATION tasks
4. Initialise a new state manager for the plan

Any decomposition failure (exception, unparseable text, zero usable tasks)
falls back to the fixed five-task default plan; the triggering error is kept
on Plan.decomposition_error. plan_query_execution() never raises.
"""
from __future__ import annotations

import json
import logging
import re
import uuid
from typing import Any, Callable, Optional

from .collaborators import Decomposer
from .dep_resolver import DependencyResolver
from .models import Plan, Task, TaskType
from .state import DEFAULT_MAX_CHECKPOINTS, ReasoningStateManager

logger = logging.getLogger("reasoner.planner")

_DEFAULT_PRIORITY = 3


def default_tasks() -> list[Task]:
    """The fixed plan used whenever decomposition fails."""
    return [
        Task(id="task-1", type=TaskType.MEMORY_CHECK,
             description="Check if query can be answered from memory",
             input="User query", output="Memory check result", priority=1),
        Task(id="task-2", type=TaskType.INTENT_CLASSIFICATION,
             description="Classify user intent",
             input="User query", output="Intent classification", priority=1),
        Task(id="task-3", type=TaskType.TOOL_SELECTION,
             description="Select appropriate tool based on intent",
             input="Intent classification", output="Selected tool",
             dependencies=["task-2"], priority=2),
        Task(id="task-4", type=TaskType.INFORMATION_GATHERING,
             description="Gather information using selected tool",
             input="Selected tool", output="Retrieved information",
             dependencies=["task-3"], priority=3),
        Task(id="task-5", type=TaskType.SYNTHESIS,
             description="Synthesize answer from gathered information",
             input="Retrieved information", output="Final answer",
             dependencies=["task-4"], priority=4),
    ]


def parse_task_descriptors(text: str) -> Optional[list]:
    """Extract a JSON array of task descriptors from model output, or None."""
    text = text.strip()

    # Strip markdown fences (``` or ```json)
    if text.startswith("```"):
        text = re.sub(r"^```[a-zA-Z]*\s*\n?", "", text)
        text = re.sub(r"\n?```\s*$", "", text)
        text = text.strip()

    def _try_parse(s: str):
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            pass
        # trailing commas before ] or }
        cleaned = re.sub(r",\s*([}\]])", r"\1", s)
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError:
            pass
        # control characters other than \n \r \t
        cleaned2 = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]", "", cleaned)
        try:
            return json.loads(cleaned2)
        except json.JSONDecodeError:
            return None

    items = _try_parse(text)

    if isinstance(items, dict):
        for v in items.values():
            if isinstance(v, list):
                items = v
                break

    if not isinstance(items, list):
        match = re.search(r"\[.*\]", text, re.DOTALL)
        if match:
            items = _try_parse(match.group())

    return items if isinstance(items, list) else None


def _coerce_priority(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return _DEFAULT_PRIORITY


class PlanBuilder:
    """
    Builds Plans from an external decomposition.

    Usage:
        builder = PlanBuilder(decomposer)
        plan = await builder.plan_query_execution(query, facts, history)
    """

    def __init__(self, decomposer: Optional[Decomposer] = None,
                 resolver: Optional[DependencyResolver] = None,
                 max_checkpoints: int = DEFAULT_MAX_CHECKPOINTS,
                 state_manager_factory: Optional[Callable[[], ReasoningStateManager]] = None):
        self.decomposer = decomposer
        self.resolver = resolver or DependencyResolver()
        self._state_manager_factory = state_manager_factory or (
            lambda: ReasoningStateManager(max_checkpoints=max_checkpoints)
        )

    async def plan_query_execution(self, query: str,
                                   facts: Optional[list[dict]] = None,
                                   history_context: str = "") -> Plan:
        logger.info("Planning execution for query: %r", query[:200])
        context = {"facts": list(facts or []), "history_context": history_context}

        if self.decomposer is None:
            return self.build_default_plan(query, "No decomposer configured")

        try:
            raw = await self.decomposer.decompose(query, context)
        except Exception as e:
            logger.error("Error decomposing query: %s", e)
            return self.build_default_plan(query, f"Decomposition failed: {e}")

        tasks = self.normalize_descriptors(raw)
        if not tasks:
            logger.warning("Decomposition yielded no parseable tasks")
            return self.build_default_plan(
                query, "Decomposition yielded no parseable task structure"
            )

        logger.info("Query decomposed into %d subtasks", len(tasks))
        return self.build_plan(query, tasks)

    # ─────────────────────────────────────────
    # Normalisation
    # ─────────────────────────────────────────

    def normalize_descriptors(self, raw: Any) -> list[Task]:
        """Turn raw descriptors (list of dicts, or text holding one) into Tasks."""
        if isinstance(raw, str):
            items = parse_task_descriptors(raw)
            if items is None:
                logger.error(
                    "Could not parse decomposition output as JSON. "
                    "Raw response (first 500 chars): %r", raw[:500],
                )
                return []
        elif isinstance(raw, (list, tuple)):
            items = list(raw)
        else:
            return []

        tasks: list[Task] = []
        seen: set[str] = set()
        for item in items:
            if not isinstance(item, dict):
                logger.warning("Skipping malformed task descriptor: %r", item)
                continue
            task_id = str(item.get("id") or f"task-{uuid.uuid4().hex[:6]}")
            if task_id in seen:
                n = 2
                while f"{task_id}-{n}" in seen:
                    n += 1
                task_id = f"{task_id}-{n}"
            seen.add(task_id)
            deps = item.get("dependencies")
            tasks.append(Task(
                id=task_id,
                type=item.get("type") or "GENERIC",
                description=str(item.get("description") or "Execute task"),
                input=str(item.get("input") or "Query"),
                output=str(item.get("output") or "Result"),
                dependencies=[str(d) for d in deps] if isinstance(deps, list) else [],
                priority=_coerce_priority(item.get("priority", _DEFAULT_PRIORITY)),
                optional=bool(item.get("optional", False)),
            ))
        return tasks

    # ─────────────────────────────────────────
    # Plan assembly
    # ─────────────────────────────────────────

    def build_plan(self, query: str, tasks: list[Task],
                   add_bookends: bool = True,
                   decomposition_error: Optional[str] = None) -> Plan:
        report = self.resolver.resolve(tasks, add_bookends=add_bookends)
        for warning in report.warnings:
            logger.warning(warning)
        plan = Plan(
            query=query,
            steps=report.order,
            state_manager=self._state_manager_factory(),
            decomposition_error=decomposition_error,
            warnings=list(report.warnings),
        )
        plan.state_manager.initialize_plan(plan)
        logger.info("Execution order: %s", [f"{t.id}:{t.type}" for t in plan.steps])
        return plan

    def build_default_plan(self, query: str, error: str) -> Plan:
        """
        The fixed MEMORY_CHECK → … → SYNTHESIS plan, already canonical and
        fully wired, so it is used as-is without bookends.
        """
        logger.info("Using default plan (%s)", error)
        return self.build_plan(query, default_tasks(), add_bookends=False,
                               decomposition_error=error)
