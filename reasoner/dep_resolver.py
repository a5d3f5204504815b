"""
DependencyResolver — turns a decomposed task list into a valid execution order.

Steps:
1. Inject logical dependencies implied by task types (TOOL_SELECTION needs the
   intent and memory tasks, INFORMATION_GATHERING needs TOOL_SELECTION, ...)
2. Break dependency cycles with a depth-first walk ("visiting" marker); each
   back edge is dropped and reported as a warning
3. Order tasks with Kahn's algorithm; ready tasks are taken by canonical type
   rank, then by input position, so unconstrained tasks keep a stable order
4. Add the mandatory bookends (MEMORY_CHECK first, VERIFICATION last) when the
   plan lacks them
5. Return ResolveReport
"""
from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field

from .models import (
    CANONICAL_ORDER, LOGICAL_DEPENDENCIES, Task, TaskType, type_rank,
)

logger = logging.getLogger("reasoner.dep_resolver")

MEMORY_BOOKEND_ID = "task-memory"
VERIFICATION_BOOKEND_ID = "task-verification"


@dataclass
class ResolveReport:
    """Report from DependencyResolver.resolve()."""

    order: list[Task] = field(default_factory=list)
    injected: dict[str, list[str]] = field(default_factory=dict)
    dropped_edges: list[tuple[str, str]] = field(default_factory=list)
    synthesized: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ids(self) -> list[str]:
        return [t.id for t in self.order]


class DependencyResolver:
    """
    Resolves task dependencies into a total, cycle-free execution order.

    Usage:
        resolver = DependencyResolver()
        report = resolver.resolve(tasks)
        steps = report.order

    Tasks are mutated in place: injected dependencies are appended and cycle
    edges removed from Task.dependencies, so the returned order always
    satisfies the dependencies the tasks retain.
    """

    def resolve(self, tasks: list[Task], add_bookends: bool = True) -> ResolveReport:
        report = ResolveReport()
        report.injected = self.inject_logical_dependencies(tasks)
        report.dropped_edges = self.break_cycles(tasks)
        for task_id, dep_id in report.dropped_edges:
            report.warnings.append(
                f"Cyclic dependency detected: dropped edge {task_id} -> {dep_id}"
            )
        ordered = self.order(tasks)
        if add_bookends:
            ordered, report.synthesized = self.ensure_bookends(ordered)
        report.order = ordered
        logger.debug("Resolved execution order: %s", report.ids)
        return report

    # ─────────────────────────────────────────
    # Logical dependency injection
    # ─────────────────────────────────────────

    def inject_logical_dependencies(self, tasks: list[Task]) -> dict[str, list[str]]:
        """
        Add a dependency on the most urgent task of every required predecessor
        type that exists in the plan and is not already depended upon.

        Returns {task_id: [injected dependency ids]}. Running it again on the
        same tasks injects nothing.
        """
        by_id = {t.id: t for t in tasks}
        by_type: dict[str, list[Task]] = {}
        for t in tasks:
            by_type.setdefault(t.type, []).append(t)

        injected: dict[str, list[str]] = {}
        for task in tasks:
            for dep_type in LOGICAL_DEPENDENCIES.get(task.type, ()):
                candidates = by_type.get(dep_type)
                if not candidates:
                    continue
                already = any(
                    dep in by_id and by_id[dep].type == dep_type
                    for dep in task.dependencies
                )
                if already:
                    continue
                # sorted() is stable: equal priorities keep input order
                target = sorted(candidates, key=lambda t: t.priority)[0]
                if target.id == task.id:
                    continue
                task.dependencies.append(target.id)
                injected.setdefault(task.id, []).append(target.id)
        if injected:
            logger.debug("Injected logical dependencies: %s", injected)
        return injected

    # ─────────────────────────────────────────
    # Cycle breaking
    # ─────────────────────────────────────────

    def break_cycles(self, tasks: list[Task]) -> list[tuple[str, str]]:
        """
        Depth-first walk over the dependency graph. An edge leading back to a
        task that is still being visited closes a cycle; it is removed from the
        dependent task and returned as (task_id, dependency_id).

        Iterative, so long dependency chains cannot exhaust the call stack.
        """
        by_id = {t.id: t for t in tasks}
        visited: set[str] = set()
        visiting: set[str] = set()
        dropped: list[tuple[str, str]] = []

        for root in tasks:
            if root.id in visited:
                continue
            # stack of (task_id, index of next dependency to inspect)
            stack: list[list] = [[root.id, 0]]
            visiting.add(root.id)
            while stack:
                frame = stack[-1]
                task = by_id[frame[0]]
                if frame[1] >= len(task.dependencies):
                    stack.pop()
                    visiting.discard(task.id)
                    visited.add(task.id)
                    continue
                dep_id = task.dependencies[frame[1]]
                if dep_id not in by_id or dep_id in visited:
                    frame[1] += 1
                    continue
                if dep_id in visiting:
                    logger.warning(
                        "Cyclic dependency detected for task %s (via %s); breaking cycle",
                        task.id, dep_id,
                    )
                    task.dependencies.pop(frame[1])
                    dropped.append((task.id, dep_id))
                    continue
                frame[1] += 1
                visiting.add(dep_id)
                stack.append([dep_id, 0])
        return dropped

    # ─────────────────────────────────────────
    # Ordering
    # ─────────────────────────────────────────

    def order(self, tasks: list[Task]) -> list[Task]:
        """
        Kahn's algorithm over an acyclic task set. Among ready tasks the one
        with the lowest canonical type rank wins, then the earliest input
        position. Dependencies on ids outside the set are ignored.
        """
        index = {t.id: i for i, t in enumerate(tasks)}
        in_degree = {t.id: 0 for t in tasks}
        dependents: dict[str, list[str]] = {t.id: [] for t in tasks}
        for t in tasks:
            for dep in t.dependencies:
                if dep in index:
                    in_degree[t.id] += 1
                    dependents[dep].append(t.id)

        def _key(task_id: str) -> tuple[int, int]:
            return (type_rank(tasks[index[task_id]].type), index[task_id])

        ready = [(_key(tid), tid) for tid, deg in in_degree.items() if deg == 0]
        heapq.heapify(ready)
        result: list[Task] = []
        while ready:
            _, tid = heapq.heappop(ready)
            result.append(tasks[index[tid]])
            for child in dependents[tid]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, (_key(child), child))

        if len(result) != len(tasks):
            # Only reachable if break_cycles() was skipped; keep every task.
            leftover = [t for t in tasks if t not in result]
            logger.error(
                "Dependency cycle remained among: %s", [t.id for t in leftover]
            )
            leftover.sort(key=lambda t: (type_rank(t.type), index[t.id]))
            result.extend(leftover)
        return result

    # ─────────────────────────────────────────
    # Bookends
    # ─────────────────────────────────────────

    def ensure_bookends(self, ordered: list[Task]) -> tuple[list[Task], list[str]]:
        """Prepend a MEMORY_CHECK and append a VERIFICATION task if missing."""
        types = {t.type for t in ordered}
        ids = {t.id for t in ordered}
        result = list(ordered)
        synthesized: list[str] = []

        if TaskType.MEMORY_CHECK.value not in types:
            task = Task(
                id=_unique_id(MEMORY_BOOKEND_ID, ids),
                type=TaskType.MEMORY_CHECK,
                description="Check if query can be answered from memory",
                input="User query",
                output="Memory check result",
                priority=0,
            )
            result.insert(0, task)
            ids.add(task.id)
            synthesized.append(task.id)

        if TaskType.VERIFICATION.value not in types:
            task = Task(
                id=_unique_id(VERIFICATION_BOOKEND_ID, ids),
                type=TaskType.VERIFICATION,
                description="Verify the synthesized answer",
                input="Synthesized answer",
                output="Verification result",
                priority=len(CANONICAL_ORDER),
            )
            result.append(task)
            synthesized.append(task.id)

        if synthesized:
            logger.info("Added bookend tasks: %s", synthesized)
        return result, synthesized


def _unique_id(base: str, taken: set[str]) -> str:
    if base not in taken:
        return base
    n = 2
    while f"{base}-{n}" in taken:
        n += 1
    return f"{base}-{n}"
