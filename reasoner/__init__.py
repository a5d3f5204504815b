"""
Meta-Reasoner
=============
Task planning and execution-state engine for a conversational agent: a query
is decomposed into typed sub-tasks (memory check, intent classification, tool
selection, information gathering, synthesis, verification), ordered by their
dependencies and executed one step at a time, with checkpointed state and
failure-driven alternative approaches.

Basic usage:
    from reasoner import MetaReasoner, Collaborators

    reasoner = MetaReasoner(Collaborators(memory=..., intent_classifier=...,
                                          tool_selector=..., tool_runner=...,
                                          synthesizer=..., decomposer=...))
    plan = asyncio.run(reasoner.run("Summarise the latest CPython release"))
    print(reasoner.final_answer(plan))

Step-by-step usage:
    plan = await reasoner.plan_query_execution(query, facts, history_context)
    while not plan.completed:
        plan = await reasoner.execute_next_step(plan, context)
"""

from .models import (
    Approach, ErrorKind, ExecutionContext, Plan, StepRecord, StepResult, Task,
    TaskState, TaskType, ToolName,
)
from .collaborators import (
    CollaboratorError, Collaborators, IntentResult, MemoryAnswer, ToolDecision,
)
from .dep_resolver import DependencyResolver
from .state import ReasoningStateManager
from .advisor import AlternativeApproachAdvisor, prioritize_tools
from .planner import PlanBuilder
from .executor import StepExecutor
from .engine import MetaReasoner
from .hooks import EventType, HookRegistry
from .tools import Tool, ToolRegistry
from .config import ReasonerConfig, load_config
from .checkpoint_store import CheckpointStore

__all__ = [
    # ── Core engine ─────────────────────────────────────────────────────────
    "MetaReasoner", "PlanBuilder", "StepExecutor", "DependencyResolver",
    "ReasoningStateManager", "AlternativeApproachAdvisor", "prioritize_tools",
    # ── Data model ──────────────────────────────────────────────────────────
    "Task", "TaskType", "TaskState", "Plan", "StepResult", "StepRecord",
    "ExecutionContext", "Approach", "ErrorKind", "ToolName",
    # ── Collaborators ───────────────────────────────────────────────────────
    "Collaborators", "CollaboratorError", "MemoryAnswer", "IntentResult",
    "ToolDecision", "Tool", "ToolRegistry",
    # ── Ambient ─────────────────────────────────────────────────────────────
    "EventType", "HookRegistry", "ReasonerConfig", "load_config",
    "CheckpointStore",
]
