"""
StepExecutor — advances a Plan by exactly one task per call.
============================================================
Per call:
  1. Plan exhausted → mark completed and return (idempotent)
  2. Validate the current task's inputs against plan.results; a missing
     predecessor is fixed by splicing a zero-dependency ``fix-{id}`` task in
     front of it and re-validating (work list, never recursion). A task whose
     fixing task was already inserted is skipped instead
  3. Dispatch the task to its collaborator
  4. On an exception: record the failure, ask the advisor, run the suggested
     alternative once; unrecovered optional tasks are skipped, required ones
     set plan.error. The cursor always advances, so every plan terminates.

A StepResult returned by a collaborator is recorded as completed even when
its ``success`` is False (a memory miss, an unknown task type); only raised
exceptions count as failures.
"""
from __future__ import annotations

import dataclasses
import json
import logging
import re
from typing import Any, Optional

from .advisor import prioritize_tools
from .collaborators import (
    CollaboratorError, Collaborators, classify_error, error_message,
)
from .hooks import EventType, HookRegistry
from .models import (
    Approach, ExecutionContext, Plan, REQUIRED_INPUTS, StepRecord, StepResult,
    Suggestion, Task, TaskState, TaskType, ToolName,
)
from .tracing import traced_alternative, traced_collaborator_call, traced_task

logger = logging.getLogger("reasoner.executor")

FIX_PREFIX = "fix-"
URL_CONTENT_PREVIEW = 500
_URL_RE = re.compile(r"(https?://[^\s]+)")
_MIN_DIRECT_INFO = 50


def tool_parameters(tool_name: str, query: str,
                    extra: Optional[dict] = None) -> dict[str, Any]:
    """Base parameters each tool expects, overlaid with ``extra``."""
    if tool_name == ToolName.REASONING_TOOL.value:
        params: dict[str, Any] = {"problem": query}
    elif tool_name == ToolName.READ_URL.value:
        params = {"url": query}
    else:
        params = {"query": query}
    if extra:
        params.update(extra)
    return params


def as_context(context: Any) -> ExecutionContext:
    if isinstance(context, ExecutionContext):
        return context
    if context is None:
        return ExecutionContext()
    if isinstance(context, dict):
        names = {f.name for f in dataclasses.fields(ExecutionContext)}
        return ExecutionContext(**{k: v for k, v in context.items() if k in names})
    raise TypeError(f"Unsupported execution context: {type(context).__name__}")


def carry_forward(plan: Plan, ctx: ExecutionContext) -> None:
    """Fill an unset intent or selected tool from the plan's own results."""
    if ctx.intent is None:
        records = plan.successful_results(TaskType.INTENT_CLASSIFICATION.value)
        if records:
            ctx.intent = records[-1].result.intent
            ctx.intent_confidence = records[-1].result.get("confidence", 0.0)
    if ctx.selected_tool is None:
        records = plan.successful_results(TaskType.TOOL_SELECTION.value)
        if records:
            ctx.selected_tool = records[-1].result.selected_tool
            ctx.selected_tool_params = dict(records[-1].result.get("parameters") or {})


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


class StepExecutor:
    """
    Executes the next task of a Plan against the collaborators.

    Usage:
        executor = StepExecutor(collaborators, hooks)
        while not plan.completed:
            plan = await executor.execute_next_step(plan, context)
    """

    def __init__(self, collaborators: Collaborators,
                 hooks: Optional[HookRegistry] = None):
        self.collaborators = collaborators
        self.hooks = hooks or HookRegistry()

    # ─────────────────────────────────────────
    # Public entry point
    # ─────────────────────────────────────────

    async def execute_next_step(self, plan: Plan, context: Any = None) -> Plan:
        """
        Run the current task of ``plan``. An ExecutionContext is updated in
        place; a dict context gets the updated fields written back into it.
        """
        ctx = as_context(context)
        if not isinstance(context, ExecutionContext):
            carry_forward(plan, ctx)
        if not ctx.user_msg:
            ctx.user_msg = plan.query
        try:
            return await self._execute_step(plan, ctx)
        finally:
            if isinstance(context, dict):
                context.update(
                    (f.name, getattr(ctx, f.name)) for f in dataclasses.fields(ctx)
                )

    async def _execute_step(self, plan: Plan, ctx: ExecutionContext) -> Plan:
        if plan.exhausted:
            if not plan.completed:
                logger.info("Plan %s execution complete", plan.plan_id)
            plan.completed = True
            return plan

        plan.skipped_step = False
        plan.used_alternative = False

        task = self._prepare_current_task(plan)
        if task is None:
            return plan

        self._log_task_execution(plan, task)
        with traced_task(task.id, task.type) as span:
            plan.state_manager.update_task_state(task.id, TaskState.IN_PROGRESS)
            self.hooks.fire(EventType.TASK_STARTED, task_id=task.id, task=task)
            try:
                result = await self._dispatch(task, plan, ctx)
            except Exception as e:
                span.record_exception(e)
                await self._recover(plan, task, ctx, e)
                span.set_attribute("task.outcome", task.state.value)
                return plan
            self._complete(plan, task, result)
            span.set_attribute("task.outcome", "completed")
        return plan

    # ─────────────────────────────────────────
    # Validation / fixing tasks
    # ─────────────────────────────────────────

    def validate_inputs(self, task: Task, plan: Plan) -> Optional[str]:
        """The task type whose successful result is missing, or None."""
        required = REQUIRED_INPUTS.get(task.type)
        if required and not plan.successful_results(required):
            return required
        return None

    def _prepare_current_task(self, plan: Plan) -> Optional[Task]:
        """
        Return the task to execute now, splicing in fixing tasks as needed.
        Returns None when the current task was skipped instead.
        """
        manager = plan.state_manager
        while True:
            task = plan.steps[plan.current_step_index]
            missing = self.validate_inputs(task, plan)
            if missing is None:
                return task

            if task.id in plan.fixed_task_ids:
                reason = f"No successful {missing} result available for {task.type}"
                logger.warning("Cannot execute %s (%s): %s; skipping",
                               task.id, task.type, reason)
                manager.update_task_state(task.id, TaskState.SKIPPED)
                self.hooks.fire(EventType.TASK_SKIPPED, task_id=task.id, reason=reason)
                self._advance(plan, success=False)
                plan.skipped_step = True
                return None

            fix_id = f"{FIX_PREFIX}{task.id}"
            suffix = 2
            while manager.task(fix_id) is not None:
                fix_id = f"{FIX_PREFIX}{task.id}-{suffix}"
                suffix += 1
            fixing = Task(
                id=fix_id,
                type=missing,
                description=(f"Auto-generated {missing} step to fix missing "
                             f"input for {task.type}"),
                input=task.input,
                output=f"{missing} result",
                priority=task.priority,
            )
            logger.info("Inserting fixing step %s (%s) before %s",
                        fixing.id, fixing.type, task.id)
            plan.steps.insert(plan.current_step_index, fixing)
            plan.fixed_task_ids.add(task.id)
            manager.register_task(fixing)
            self.hooks.fire(EventType.FIXING_TASK_INSERTED,
                            task_id=task.id, fixing_task=fixing)

    def _check_dependencies(self, task: Task, plan: Plan) -> None:
        manager = plan.state_manager
        for dep in task.dependencies:
            state = manager.state_of(dep)
            if state is None:
                logger.debug("Task %s depends on unknown task %s; ignored", task.id, dep)
            elif state != TaskState.COMPLETED:
                logger.warning("Task %s runs although dependency %s is %s",
                               task.id, dep, state.value)

    def _log_task_execution(self, plan: Plan, task: Task) -> None:
        logger.info("Executing task %s: %s - %s", task.id, task.type, task.description)
        self._check_dependencies(task, plan)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("  Dependencies: %s", ", ".join(task.dependencies) or "none")
            logger.debug("  Input: %s  Expected output: %s", task.input, task.output)
            logger.debug("  Task status: %s", plan.state_manager.get_task_status())

    # ─────────────────────────────────────────
    # Outcome bookkeeping
    # ─────────────────────────────────────────

    def _advance(self, plan: Plan, success: bool) -> None:
        plan.current_step_index += 1
        plan.last_step_successful = success
        plan.completed = plan.exhausted

    def _complete(self, plan: Plan, task: Task, result: StepResult,
                  alternative: Optional[str] = None) -> None:
        plan.state_manager.record_success(task.id, result)
        plan.results.append(StepRecord(step=task, result=result, alternative=alternative))
        if alternative is not None:
            plan.used_alternative = True
        self._advance(plan, success=True)
        self.hooks.fire(EventType.TASK_COMPLETED, task_id=task.id,
                        result=result, alternative=alternative)

    async def _recover(self, plan: Plan, task: Task, ctx: ExecutionContext,
                       error: Exception) -> None:
        manager = plan.state_manager
        message = error_message(error)
        logger.error("Error executing task %s (%s): %s", task.id, task.type, message)
        manager.record_failure(task.id, task.type, error)

        suggestion = manager.suggest_alternative_approach(task.id, ctx)
        if suggestion and suggestion.approach != Approach.ASK_CLARIFICATION.value:
            logger.info("Retrying task %s with alternative approach %s (confidence %.2f)",
                        task.id, suggestion.approach, suggestion.confidence)
            self.hooks.fire(EventType.ALTERNATIVE_SELECTED,
                            task_id=task.id, suggestion=suggestion)
            with traced_alternative(task.id, suggestion.approach,
                                    suggestion.confidence) as span:
                manager.update_task_state(task.id, TaskState.IN_PROGRESS)
                try:
                    result = await self.run_alternative(suggestion, plan, ctx)
                except Exception as retry_error:
                    span.record_exception(retry_error)
                    logger.error("Alternative %s for task %s failed: %s",
                                 suggestion.approach, task.id, error_message(retry_error))
                    manager.record_failure(task.id, suggestion.approach, retry_error)
                else:
                    self._complete(plan, task, result, alternative=suggestion.approach)
                    return

        self.hooks.fire(EventType.TASK_FAILED, task_id=task.id,
                        error=message, optional=task.optional)
        if task.optional:
            logger.info("Skipping optional task %s (%s) after failure", task.id, task.type)
            manager.update_task_state(task.id, TaskState.SKIPPED)
            self.hooks.fire(EventType.TASK_SKIPPED, task_id=task.id, reason=message)
            plan.skipped_step = True
        else:
            plan.error = message
        self._advance(plan, success=False)

    # ─────────────────────────────────────────
    # Dispatch by task type
    # ─────────────────────────────────────────

    async def _dispatch(self, task: Task, plan: Plan,
                        ctx: ExecutionContext) -> StepResult:
        if task.type == TaskType.MEMORY_CHECK:
            return await self.execute_memory_check(plan.query)
        if task.type == TaskType.INTENT_CLASSIFICATION:
            return await self.execute_intent_classification(plan.query, ctx)
        if task.type == TaskType.TOOL_SELECTION:
            return await self.execute_tool_selection(task, plan.query, ctx)
        if task.type == TaskType.INFORMATION_GATHERING:
            return await self.execute_information_gathering(plan.query, ctx)
        if task.type == TaskType.SYNTHESIS:
            return await self.execute_synthesis(plan, ctx)
        if task.type == TaskType.VERIFICATION:
            return self.execute_verification(plan)
        logger.warning("Unknown step type %s for task %s", task.type, task.id)
        return StepResult(success=False, error=f"Unknown step type: {task.type}")

    async def execute_memory_check(self, query: str) -> StepResult:
        with traced_collaborator_call("memory", "check_answer"):
            answer = await self.collaborators.memory.check_answer(query)
        return StepResult(success=bool(answer.found), data={
            "answer": answer.answer,
            "confidence": answer.confidence,
            "missing_information": answer.reason,
        })

    async def execute_intent_classification(self, query: str,
                                            ctx: ExecutionContext) -> StepResult:
        with traced_collaborator_call("intent_classifier", "classify"):
            result = await self.collaborators.intent_classifier.classify(
                query, {"history_context": ctx.history_context, "facts": ctx.facts},
            )
        ctx.intent = result.intent
        ctx.intent_confidence = result.confidence
        return StepResult(success=True, data={
            "intent": result.intent, "confidence": result.confidence,
        })

    async def execute_tool_selection(self, task: Task, query: str,
                                     ctx: ExecutionContext) -> StepResult:
        candidates = prioritize_tools(task, ctx)
        with traced_collaborator_call("tool_selector", "select"):
            decision = await self.collaborators.tool_selector.select(
                query, ctx.intent or "unknown", ctx.facts,
                ctx.history_context, ctx.tool_history,
            )
        tool = decision.tool
        params = dict(decision.parameters or {})
        if not tool and candidates:
            tool, params = candidates[0].tool, dict(candidates[0].params)
            logger.info("Tool selector made no choice; using top candidate %s", tool)
        ctx.selected_tool = tool
        ctx.selected_tool_params = params
        return StepResult(success=True, data={
            "selected_tool": tool,
            "parameters": params,
            "reasoning": decision.reasoning,
            "candidates": [
                {"tool": c.tool, "confidence": c.confidence, "params": c.params}
                for c in candidates
            ],
        })

    async def execute_information_gathering(self, query: str,
                                            ctx: ExecutionContext) -> StepResult:
        tool = ctx.selected_tool or ToolName.WEB_SEARCH.value

        if tool == ToolName.READ_URL.value and ctx.urls:
            return await self._read_urls(ctx)

        params = tool_parameters(tool, query, ctx.selected_tool_params)
        result = await self._run_tool(tool, params, ctx)
        return StepResult(success=True, data={
            "information": _dumps(result),
            "tool_result": result,
            "selected_tool": tool,
        })

    async def _read_urls(self, ctx: ExecutionContext) -> StepResult:
        reads: list[dict] = []
        errors: list[Exception] = []
        for url in ctx.urls:
            try:
                result = await self._run_tool(ToolName.READ_URL.value, {"url": url}, ctx)
            except Exception as e:
                errors.append(e)
                reads.append({"url": url, "success": False, "error": error_message(e)})
            else:
                reads.append({"url": url, "success": True,
                              "content": result.get("result", result)})

        successful = [r for r in reads if r["success"]]
        if not successful:
            first = errors[0]
            raise CollaboratorError(
                f"Failed to read any URL: {error_message(first)}", classify_error(first),
            )

        def _preview(content: Any) -> str:
            if isinstance(content, str):
                return content[:URL_CONTENT_PREVIEW] + "..."
            return _dumps(content)

        return StepResult(success=True, data={
            "results": reads,
            "selected_tool": ToolName.READ_URL.value,
            "information": "\n\n".join(
                f"URL: {r['url']}\nContent: {_preview(r['content'])}" for r in successful
            ),
        })

    async def execute_synthesis(self, plan: Plan, ctx: ExecutionContext) -> StepResult:
        query = plan.query
        gathered = plan.successful_results(TaskType.INFORMATION_GATHERING.value)

        for record in reversed(gathered):
            rt = record.result.tool_result
            if record.result.selected_tool == ToolName.REASONING_TOOL.value and rt:
                return StepResult(success=True, data={
                    "response": self.reasoning_report(query, rt),
                })

        for record in reversed(gathered):
            tr = record.result.tool_result
            if not tr:
                continue
            hits = tr.get("results")
            if isinstance(hits, list):
                lines = []
                for idx, item in enumerate(hits, 1):
                    item = item if isinstance(item, dict) else {"title": str(item)}
                    title = item.get("title") or item.get("snippet") or item.get("url")
                    lines.append(f"{idx}. {title} ({item.get('url', '')})")
                return StepResult(success=True, data={"response": (
                    f'I found the following top results for "{query}":\n' + "\n".join(lines)
                )})
            if tr.get("content"):
                return StepResult(success=True, data={
                    "response": f"Here is the content from {tr.get('url', 'the page')}:\n"
                                f"{tr['content']}",
                })

        return await self.execute_direct_synthesis(query, plan, ctx)

    @staticmethod
    def reasoning_report(query: str, rt: dict) -> str:
        report = f'Report for "{query}":\n'
        if rt.get("problem_type"):
            report += f"\nProblem Type: {rt['problem_type']}\n"
        if rt.get("reasoning_approach"):
            report += f"Approach: {rt['reasoning_approach']}\n"
        steps = rt.get("steps")
        if isinstance(steps, list) and steps:
            report += "\nSteps:\n"
            for i, step in enumerate(steps, 1):
                report += f"{i}. {step}\n"
        if rt.get("conclusion"):
            report += f"\nConclusion: {rt['conclusion']}\n"
        if rt.get("confidence") is not None:
            report += f"Confidence: {rt['confidence']}\n"
        return report

    def execute_verification(self, plan: Plan) -> StepResult:
        for record in reversed(plan.successful_results(TaskType.SYNTHESIS.value)):
            if record.result.response:
                return StepResult(success=True, data={"response": record.result.response})
        return StepResult(success=False,
                          error="No synthesis result available for verification")

    # ─────────────────────────────────────────
    # Alternative approaches
    # ─────────────────────────────────────────

    async def run_alternative(self, suggestion: Suggestion, plan: Plan,
                              ctx: ExecutionContext) -> StepResult:
        """Run one advisor suggestion. Raises when it cannot produce a result."""
        approach = suggestion.approach
        query = plan.query

        if approach in (ToolName.WEB_SEARCH.value, ToolName.READ_URL.value,
                        ToolName.REASONING_TOOL.value):
            return await self.execute_tool_with_name(approach, query, ctx)
        if approach == Approach.SINGLE_URL_PROCESSING.value:
            return await self.execute_single_url_processing(ctx)
        if approach == Approach.MEMORY_CHECK.value:
            result = await self.execute_memory_check(query)
            if not result.success:
                raise CollaboratorError(
                    f"Memory has no answer: {result.get('missing_information') or 'not found'}"
                )
            result.data["information"] = str(result.answer or "")
            return result
        if approach == Approach.DIRECT_SYNTHESIS.value:
            return await self.execute_direct_synthesis(query, plan, ctx)
        if approach == Approach.DIRECT_RESPONSE.value:
            return await self.execute_direct_synthesis(
                query, plan, ctx, response_type=suggestion.response_type or "summary",
            )
        raise CollaboratorError(f"Unknown alternative approach: {approach}")

    async def execute_tool_with_name(self, tool_name: str, query: str,
                                     ctx: ExecutionContext) -> StepResult:
        params = tool_parameters(tool_name, query, ctx.additional_params)
        result = await self._run_tool(tool_name, params, ctx)
        return StepResult(success=True, data={
            "information": _dumps(result),
            "tool_result": result,
            "selected_tool": tool_name,
        })

    async def execute_single_url_processing(self, ctx: ExecutionContext) -> StepResult:
        url = self.pick_url(ctx)
        if not url:
            raise CollaboratorError("No URL found to process")
        result = await self._run_tool(ToolName.READ_URL.value, {"url": url}, ctx)
        content = result.get("result", result)
        return StepResult(success=True, data={
            "url": url,
            "content": content,
            "information": f"URL: {url}\nContent: {_dumps(content)}",
        })

    @staticmethod
    def pick_url(ctx: ExecutionContext) -> Optional[str]:
        """First known URL, else the last one read, else one in the message."""
        if ctx.urls:
            return ctx.urls[0]
        reads = ctx.tool_history.get("url_reads") or []
        if reads:
            return reads[-1]
        match = _URL_RE.search(ctx.user_msg or "")
        return match.group(1) if match else None

    async def execute_direct_synthesis(self, query: str, plan: Plan,
                                       ctx: ExecutionContext,
                                       response_type: str = "answer") -> StepResult:
        info = "\n\n".join(
            r.result.information
            for r in plan.successful_results(TaskType.INFORMATION_GATHERING.value)
            if r.result.information
        )
        if ctx.tool_history.get("url_reads"):
            info += f"\nURLs read: {', '.join(ctx.tool_history['url_reads'])}"
        if ctx.tool_history.get("web_searches"):
            info += f"\nWeb searches performed: {', '.join(ctx.tool_history['web_searches'])}"
        if len(info.strip()) < _MIN_DIRECT_INFO:
            info = f"Query: {query}\n" + info

        with traced_collaborator_call("synthesizer", response_type):
            response = await self.collaborators.synthesizer.synthesize(
                query, info.strip(), response_type,
            )
        return StepResult(success=True, data={
            "response": response, "direct_synthesis": True,
            "response_type": response_type,
        })

    # ─────────────────────────────────────────
    # Tool invocation
    # ─────────────────────────────────────────

    async def _run_tool(self, tool_name: str, params: dict,
                        ctx: ExecutionContext) -> dict:
        with traced_collaborator_call("tool_runner", tool_name):
            result = await self.collaborators.tool_runner.run(tool_name, params, ctx)
        if tool_name == ToolName.WEB_SEARCH.value and params.get("query"):
            ctx.tool_history.setdefault("web_searches", []).append(str(params["query"]))
        elif tool_name == ToolName.READ_URL.value and params.get("url"):
            ctx.tool_history.setdefault("url_reads", []).append(str(params["url"]))
        return result if isinstance(result, dict) else {"result": result}
