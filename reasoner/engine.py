"""
MetaReasoner — turn driver
==========================
Wires the plan builder, the step executor, hooks, tracing and the optional
checkpoint store behind two entry points:

  plan_query_execution(query, facts, history_context) -> Plan
  execute_next_step(plan, context) -> Plan

run() drives one query end to end, bounded by ``max_steps`` executor calls,
and final_answer() picks the text to show the user.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from .checkpoint_store import CheckpointStore
from .collaborators import Collaborators
from .config import ReasonerConfig
from .executor import StepExecutor
from .hooks import EventType, HookRegistry
from .models import ExecutionContext, Plan, TaskType
from .planner import PlanBuilder
from .tracing import TracingConfig, configure_tracing, get_tracer

logger = logging.getLogger("reasoner")

FALLBACK_ANSWER = ("I'm sorry, I couldn't find a reliable answer to that. "
                   "Could you rephrase or give me more detail?")


class MetaReasoner:
    """
    Usage:
        reasoner = MetaReasoner(collaborators)
        plan = await reasoner.run("What is new in Python 3.13?")
        print(reasoner.final_answer(plan))
    """

    def __init__(self, collaborators: Collaborators,
                 max_steps: int = 50,
                 max_checkpoints: int = 10,
                 checkpoint_store: Optional[CheckpointStore] = None,
                 tracing_cfg: Optional[TracingConfig] = None):
        self.collaborators = collaborators
        self.max_steps = max(1, max_steps)
        self.checkpoint_store = checkpoint_store
        self._hook_registry = HookRegistry()
        self.builder = PlanBuilder(collaborators.decomposer,
                                   max_checkpoints=max_checkpoints)
        self.executor = StepExecutor(collaborators, hooks=self._hook_registry)
        if tracing_cfg is not None:
            configure_tracing(tracing_cfg)

    @classmethod
    def from_config(cls, collaborators: Collaborators, config: ReasonerConfig,
                    checkpoint_store: Optional[CheckpointStore] = None) -> "MetaReasoner":
        if checkpoint_store is None and config.checkpoint_db:
            checkpoint_store = CheckpointStore(config.checkpoint_db)
        tracing_cfg = None
        if config.tracing:
            tracing_cfg = TracingConfig(enabled=True, otlp_endpoint=config.otlp_endpoint)
        return cls(collaborators,
                   max_steps=config.max_steps,
                   max_checkpoints=config.max_checkpoints,
                   checkpoint_store=checkpoint_store,
                   tracing_cfg=tracing_cfg)

    def add_hook(self, event: str | EventType, callback: Callable) -> None:
        """Register a lifecycle callback (see hooks.EventType for signatures)."""
        self._hook_registry.add(event, callback)

    # ─────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────

    async def plan_query_execution(self, query: str,
                                   facts: Optional[list[dict]] = None,
                                   history_context: str = "") -> Plan:
        plan = await self.builder.plan_query_execution(query, facts, history_context)
        self._hook_registry.fire(EventType.PLAN_CREATED, plan=plan)
        return plan

    async def execute_next_step(self, plan: Plan, context=None) -> Plan:
        return await self.executor.execute_next_step(plan, context)

    async def run(self, query: str, facts: Optional[list[dict]] = None,
                  history_context: str = "",
                  context: Optional[ExecutionContext] = None) -> Plan:
        """Plan and execute one query. Never raises on collaborator failures."""
        with get_tracer().start_as_current_span("reasoner.run") as span:
            span.set_attribute("query.length", len(query))
            plan = await self.plan_query_execution(query, facts, history_context)
            ctx = context or ExecutionContext(
                user_msg=query, facts=list(facts or []), history_context=history_context,
            )

            steps = 0
            while not plan.completed:
                if steps >= self.max_steps:
                    plan.error = f"Step limit of {self.max_steps} reached"
                    logger.warning("Plan %s stopped after %d steps", plan.plan_id, steps)
                    break
                plan = await self.execute_next_step(plan, ctx)
                steps += 1

            status = plan.state_manager.get_task_status()
            span.set_attribute("plan.steps", len(plan.steps))
            span.set_attribute("plan.completed_tasks", status["completed"])
            span.set_attribute("plan.failed_tasks", status["failed"])
            logger.info("Plan %s finished: %s", plan.plan_id, status)

        self._hook_registry.fire(EventType.PLAN_COMPLETED, plan=plan)
        if self.checkpoint_store is not None:
            await self.checkpoint_store.save_plan(plan)
        return plan

    # ─────────────────────────────────────────
    # Answer selection
    # ─────────────────────────────────────────

    def final_answer(self, plan: Plan) -> str:
        """Verified or synthesized response, else a memory answer, else an apology."""
        result = plan.final_result()
        if result is not None:
            return result.response
        for record in reversed(plan.successful_results(TaskType.MEMORY_CHECK.value)):
            if record.result.answer:
                return record.result.answer
        return FALLBACK_ANSWER

    async def close(self) -> None:
        if self.checkpoint_store is not None:
            await self.checkpoint_store.close()
