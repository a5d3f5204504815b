"""
Tests for StepExecutor.
Covers: single-step advancement, fixing-task insertion and termination,
        alternative-approach recovery, optional/required failure handling,
        per-type step behaviour, context write-back, hooks.
"""
from __future__ import annotations

import asyncio

import pytest

from reasoner.collaborators import (
    CollaboratorError, Collaborators, IntentResult, MemoryAnswer, ToolDecision,
)
from reasoner.executor import StepExecutor, as_context, tool_parameters
from reasoner.hooks import EventType, HookRegistry
from reasoner.models import (
    ErrorKind, ExecutionContext, Suggestion, Task, TaskState,
)
from reasoner.planner import PlanBuilder


def _run(coro):
    return asyncio.run(coro)


# ─────────────────────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────────────────────

class FakeMemory:
    def __init__(self, answer: MemoryAnswer | None = None, error: Exception | None = None):
        self.answer = answer or MemoryAnswer(found=False, reason="nothing stored")
        self.error = error
        self.queries: list[str] = []

    async def check_answer(self, query):
        self.queries.append(query)
        if self.error:
            raise self.error
        return self.answer


class FakeIntent:
    async def classify(self, query, context):
        return IntentResult("information", 0.8)


class FakeSelector:
    def __init__(self, tool: str | None = "WEB_SEARCH", params: dict | None = None,
                 error: Exception | None = None):
        self.tool = tool
        self.params = params or {}
        self.error = error

    async def select(self, query, intent, facts, history, tool_history):
        if self.error:
            raise self.error
        return ToolDecision(self.tool, dict(self.params), reasoning="test")


SEARCH_HITS = {"results": [
    {"title": "Python 3.13 released", "url": "https://python.org/3.13"},
    {"title": "What's new", "url": "https://docs.python.org/whatsnew"},
]}


class FakeTools:
    """Returns canned payloads per tool; exceptions in the table are raised."""

    def __init__(self, table: dict | None = None):
        self.table = {"WEB_SEARCH": SEARCH_HITS}
        self.table.update(table or {})
        self.calls: list[tuple[str, dict]] = []

    async def run(self, tool_name, parameters, context):
        self.calls.append((tool_name, dict(parameters)))
        entry = self.table.get(tool_name)
        if callable(entry):
            entry = entry(parameters)
        if isinstance(entry, Exception):
            raise entry
        if entry is None:
            raise CollaboratorError(f"Tool '{tool_name}' not found")
        return entry


class FakeSynth:
    def __init__(self):
        self.calls: list[tuple[str, str, str]] = []

    async def synthesize(self, query, information, response_type="answer"):
        self.calls.append((query, information, response_type))
        return f"[{response_type}] {query}"


def _executor(memory=None, selector=None, tools=None, synth=None, hooks=None):
    collaborators = Collaborators(
        memory=memory or FakeMemory(),
        intent_classifier=FakeIntent(),
        tool_selector=selector or FakeSelector(),
        tool_runner=tools or FakeTools(),
        synthesizer=synth or FakeSynth(),
    )
    return StepExecutor(collaborators, hooks)


def _default_plan(query="what is new in python"):
    return PlanBuilder().build_default_plan(query, "test")


def _plan(tasks, query="what is new in python", add_bookends=False):
    return PlanBuilder().build_plan(query, tasks, add_bookends=add_bookends)


def _drive(executor, plan, ctx=None, limit=50):
    ctx = ctx if ctx is not None else ExecutionContext()
    for _ in range(limit):
        if plan.completed:
            break
        _run(executor.execute_next_step(plan, ctx))
    return ctx


# ─────────────────────────────────────────────────────────────────────────────
# Happy path
# ─────────────────────────────────────────────────────────────────────────────

def test_default_plan_runs_one_task_per_call():
    executor = _executor()
    plan = _default_plan()
    ctx = ExecutionContext()

    _run(executor.execute_next_step(plan, ctx))
    assert plan.current_step_index == 1
    assert len(plan.results) == 1

    _drive(executor, plan, ctx)
    assert [r.step.id for r in plan.results] == ["task-1", "task-2", "task-3",
                                                 "task-4", "task-5"]
    status = plan.state_manager.get_task_status()
    assert status["completed"] == 5
    assert status["failed"] == 0
    assert status["pending"] == 0
    assert plan.completed
    assert plan.error is None
    assert plan.final_result().response.startswith(
        'I found the following top results for "what is new in python"'
    )


def test_memory_miss_is_recorded_as_completed():
    executor = _executor()
    plan = _default_plan()
    _run(executor.execute_next_step(plan, ExecutionContext()))
    record = plan.results[0]
    assert record.result.success is False
    assert record.result.get("missing_information") == "nothing stored"
    assert plan.state_manager.state_of("task-1") == TaskState.COMPLETED
    assert plan.last_step_successful is True


def test_completed_plan_is_left_unchanged():
    executor = _executor()
    plan = _default_plan()
    _drive(executor, plan)
    before = len(plan.results)
    _run(executor.execute_next_step(plan, ExecutionContext()))
    _run(executor.execute_next_step(plan, ExecutionContext()))
    assert len(plan.results) == before
    assert plan.completed


def test_empty_plan_completes_immediately():
    plan = _plan([])
    _run(_executor().execute_next_step(plan))
    assert plan.completed
    assert plan.results == []


def test_context_receives_intent_and_tool():
    selector = FakeSelector("WEB_SEARCH", {"num_results": 3})
    tools = FakeTools()
    executor = _executor(selector=selector, tools=tools)
    plan = _default_plan()
    ctx = _drive(executor, plan)
    assert ctx.intent == "information"
    assert ctx.intent_confidence == 0.8
    assert ctx.selected_tool == "WEB_SEARCH"
    assert tools.calls == [("WEB_SEARCH", {"query": "what is new in python",
                                           "num_results": 3})]
    assert ctx.tool_history["web_searches"] == ["what is new in python"]


def test_empty_user_msg_is_filled_from_query():
    plan = _default_plan("tell me about my github")
    ctx = ExecutionContext()
    _run(_executor().execute_next_step(plan, ctx))
    assert ctx.user_msg == "tell me about my github"


def test_selector_without_choice_uses_top_candidate():
    executor = _executor(selector=FakeSelector(tool=None))
    plan = _default_plan()
    ctx = ExecutionContext()
    for _ in range(3):
        _run(executor.execute_next_step(plan, ctx))
    ts = plan.results[2].result
    assert ts.selected_tool == "WEB_SEARCH"
    assert [c["tool"] for c in ts.get("candidates")] == [
        "WEB_SEARCH", "READ_URL", "REASONING_TOOL", "RESPOND",
    ]
    assert ctx.selected_tool == "WEB_SEARCH"


def test_dict_context_is_accepted():
    executor = _executor()
    plan = _default_plan()
    _run(executor.execute_next_step(plan, {"user_msg": "hi", "stray": 1}))
    assert len(plan.results) == 1


def test_fresh_dict_context_each_step_keeps_selected_tool():
    tools = FakeTools({"REASONING_TOOL": {"conclusion": "42"}})
    executor = _executor(selector=FakeSelector("REASONING_TOOL"), tools=tools)
    plan = _default_plan()
    for _ in range(10):
        if plan.completed:
            break
        _run(executor.execute_next_step(plan, {"user_msg": "q"}))
    assert [name for name, _ in tools.calls] == ["REASONING_TOOL"]
    assert tools.calls[0][1] == {"problem": "what is new in python"}
    assert plan.final_result().response.startswith('Report for "what is new in python"')


def test_none_context_keeps_intent_and_selected_tool():
    tools = FakeTools({"REASONING_TOOL": {"conclusion": "42"}})
    executor = _executor(selector=FakeSelector("REASONING_TOOL", {"depth": 2}), tools=tools)
    plan = _default_plan()
    for _ in range(10):
        if plan.completed:
            break
        _run(executor.execute_next_step(plan))
    assert tools.calls == [("REASONING_TOOL", {"problem": "what is new in python",
                                               "depth": 2})]


def test_dict_context_receives_updates():
    executor = _executor(selector=FakeSelector("WEB_SEARCH"))
    plan = _default_plan()
    ctx = _drive(executor, plan, {"user_msg": "q"})
    assert ctx["intent"] == "information"
    assert ctx["selected_tool"] == "WEB_SEARCH"
    assert ctx["tool_history"] == {"web_searches": ["what is new in python"]}


def test_as_context_rejects_other_types():
    assert as_context(None) == ExecutionContext()
    assert as_context({"user_msg": "x", "junk": 2}).user_msg == "x"
    with pytest.raises(TypeError):
        as_context(42)


def test_tool_parameters_by_tool():
    assert tool_parameters("REASONING_TOOL", "q") == {"problem": "q"}
    assert tool_parameters("READ_URL", "https://x") == {"url": "https://x"}
    assert tool_parameters("WEB_SEARCH", "q", {"n": 2}) == {"query": "q", "n": 2}


# ─────────────────────────────────────────────────────────────────────────────
# Fixing tasks
# ─────────────────────────────────────────────────────────────────────────────

def test_missing_inputs_insert_fixing_tasks_in_order():
    inserted = []
    hooks = HookRegistry()
    hooks.add(EventType.FIXING_TASK_INSERTED,
              lambda task_id, fixing_task: inserted.append((task_id, fixing_task.id)))
    executor = _executor(hooks=hooks)
    plan = _plan([Task(id="t1", type="SYNTHESIS")], add_bookends=True)

    _drive(executor, plan)
    assert [r.step.id for r in plan.results] == [
        "task-memory", "fix-fix-t1", "fix-t1", "t1", "task-verification",
    ]
    assert [r.step.type for r in plan.results] == [
        "MEMORY_CHECK", "TOOL_SELECTION", "INFORMATION_GATHERING",
        "SYNTHESIS", "VERIFICATION",
    ]
    assert inserted == [("t1", "fix-t1"), ("fix-t1", "fix-fix-t1")]
    fixing = plan.state_manager.task("fix-t1")
    assert fixing.dependencies == []
    assert plan.error is None
    # verification passes the synthesis response through
    assert plan.results[-1].result.response == plan.results[-2].result.response


def test_unfixable_tasks_are_skipped_and_plan_terminates():
    skipped = []
    hooks = HookRegistry()
    hooks.add(EventType.TASK_SKIPPED, lambda task_id, reason: skipped.append(task_id))
    executor = _executor(selector=FakeSelector(error=RuntimeError("selector down")),
                         hooks=hooks)
    plan = _plan([Task(id="v", type="VERIFICATION")])

    _drive(executor, plan, limit=20)
    assert plan.completed
    assert plan.error == "selector down"
    manager = plan.state_manager
    assert manager.state_of("fix-fix-fix-v") == TaskState.FAILED
    assert skipped == ["fix-fix-v", "fix-v", "v"]
    assert manager.get_task_status()["skipped"] == 3
    assert [t.id for t in plan.steps] == ["fix-fix-fix-v", "fix-fix-v", "fix-v", "v"]


def test_planned_task_named_like_a_fixing_task_still_gets_fixed():
    executor = _executor()
    plan = _plan([Task(id="fix-t1", type="MEMORY_CHECK"), Task(id="t1", type="SYNTHESIS")])

    _drive(executor, plan)
    assert [r.step.id for r in plan.results] == [
        "fix-t1", "fix-fix-t1-2", "fix-t1-2", "t1",
    ]
    assert plan.state_manager.state_of("t1") == TaskState.COMPLETED
    assert plan.fixed_task_ids == {"t1", "fix-t1-2"}
    assert plan.state_manager.get_task_status()["skipped"] == 0


def test_skip_sets_skipped_flag_for_that_call_only():
    executor = _executor(selector=FakeSelector(error=RuntimeError("selector down")))
    plan = _plan([Task(id="g", type="INFORMATION_GATHERING")])
    ctx = ExecutionContext()
    _run(executor.execute_next_step(plan, ctx))   # fix-g fails
    assert plan.skipped_step is False
    _run(executor.execute_next_step(plan, ctx))   # g skipped
    assert plan.skipped_step is True
    assert plan.last_step_successful is False
    assert plan.completed


# ─────────────────────────────────────────────────────────────────────────────
# Recovery
# ─────────────────────────────────────────────────────────────────────────────

def test_read_url_failure_recovers_with_web_search():
    selected = []
    hooks = HookRegistry()
    hooks.add(EventType.ALTERNATIVE_SELECTED,
              lambda task_id, suggestion: selected.append((task_id, suggestion.approach)))
    tools = FakeTools({"READ_URL": CollaboratorError("connection reset")})
    executor = _executor(selector=FakeSelector("READ_URL", {"url": "https://example.com"}),
                         tools=tools, hooks=hooks)
    plan = _default_plan()
    ctx = ExecutionContext()
    for _ in range(4):
        _run(executor.execute_next_step(plan, ctx))

    record = plan.results[-1]
    assert record.step.id == "task-4"
    assert record.alternative == "WEB_SEARCH"
    assert record.result.selected_tool == "WEB_SEARCH"
    assert plan.used_alternative is True
    assert plan.state_manager.state_of("task-4") == TaskState.COMPLETED
    history = plan.state_manager.failure_history("task-4")
    assert [f.approach for f in history] == ["INFORMATION_GATHERING"]
    assert selected == [("task-4", "WEB_SEARCH")]

    _run(executor.execute_next_step(plan, ctx))
    assert plan.used_alternative is False
    assert plan.final_result().response.startswith("I found the following top results")


def test_invalid_url_recovers_with_url_from_message():
    def read(params):
        if params["url"] == "undefined":
            return CollaboratorError("Invalid URL: undefined")
        return {"result": "page text"}

    tools = FakeTools({"READ_URL": read})
    synth = FakeSynth()
    executor = _executor(selector=FakeSelector("READ_URL", {"url": "undefined"}),
                         tools=tools, synth=synth)
    plan = _default_plan("summarize https://example.com/post please")
    ctx = _drive(executor, plan)

    gather = plan.results[3]
    assert gather.alternative == "SINGLE_URL_PROCESSING"
    assert gather.result.get("url") == "https://example.com/post"
    assert gather.result.get("content") == "page text"
    assert plan.state_manager.failure_history("task-4")[0].kind == ErrorKind.INVALID_URL
    assert ctx.tool_history["url_reads"] == ["https://example.com/post"]

    # no search hits or page payload, so synthesis goes direct
    query, info, response_type = synth.calls[-1]
    assert response_type == "answer"
    assert "page text" in info
    assert plan.final_result().get("direct_synthesis") is True


def test_unrecovered_optional_task_is_skipped():
    events = []
    hooks = HookRegistry()
    hooks.add(EventType.TASK_FAILED, lambda **kw: events.append(("failed", kw["optional"])))
    hooks.add(EventType.TASK_SKIPPED, lambda **kw: events.append(("skipped", kw["task_id"])))
    executor = _executor(memory=FakeMemory(error=RuntimeError("store offline")), hooks=hooks)
    plan = _plan([Task(id="m", type="MEMORY_CHECK", optional=True)])

    _run(executor.execute_next_step(plan, ExecutionContext()))
    assert plan.state_manager.state_of("m") == TaskState.SKIPPED
    assert plan.skipped_step is True
    assert plan.error is None
    assert plan.completed
    assert events == [("failed", True), ("skipped", "m")]


def test_unrecovered_required_task_sets_plan_error():
    executor = _executor(memory=FakeMemory(error=RuntimeError("store offline")))
    plan = _plan([Task(id="m", type="MEMORY_CHECK")])
    _run(executor.execute_next_step(plan, ExecutionContext()))
    assert plan.state_manager.state_of("m") == TaskState.FAILED
    assert plan.error == "store offline"
    assert plan.last_step_successful is False
    assert plan.results == []
    assert plan.completed


def test_failed_alternative_is_recorded_too():
    tools = FakeTools({
        "READ_URL": CollaboratorError("connection reset"),
        "WEB_SEARCH": CollaboratorError("search quota exhausted"),
    })
    executor = _executor(selector=FakeSelector("READ_URL", {"url": "https://x.org"}),
                         tools=tools)
    plan = _plan([Task(id="s", type="TOOL_SELECTION"),
                  Task(id="g", type="INFORMATION_GATHERING", dependencies=["s"])])
    _drive(executor, plan)
    history = plan.state_manager.failure_history("g")
    assert [f.approach for f in history] == ["INFORMATION_GATHERING", "WEB_SEARCH"]
    assert plan.state_manager.state_of("g") == TaskState.FAILED
    assert plan.error == "connection reset"


def test_synthesis_failure_falls_back_to_direct_synthesis():
    class FlakySynth(FakeSynth):
        async def synthesize(self, query, information, response_type="answer"):
            if not self.calls:
                self.calls.append((query, information, response_type))
                raise RuntimeError("model overloaded")
            return await super().synthesize(query, information, response_type)

    tools = FakeTools({"WEB_SEARCH": {"answer": "no structured hits"}})
    synth = FlakySynth()
    executor = _executor(tools=tools, synth=synth)
    plan = _default_plan()
    _drive(executor, plan)
    record = plan.results[-1]
    assert record.step.type == "SYNTHESIS"
    assert record.alternative == "DIRECT_SYNTHESIS"
    assert record.result.response == "[answer] what is new in python"


# ─────────────────────────────────────────────────────────────────────────────
# Alternatives run directly
# ─────────────────────────────────────────────────────────────────────────────

def test_direct_response_uses_summary_and_prefixes_query():
    synth = FakeSynth()
    executor = _executor(synth=synth)
    plan = _plan([], query="why is the sky blue")
    ctx = ExecutionContext(user_msg="why is the sky blue")
    result = _run(executor.run_alternative(
        Suggestion("DIRECT_RESPONSE", 0.6, response_type="summary"), plan, ctx,
    ))
    assert result.get("response_type") == "summary"
    assert result.get("direct_synthesis") is True
    _, info, response_type = synth.calls[0]
    assert response_type == "summary"
    assert info.startswith("Query: why is the sky blue")


def test_memory_alternative_needs_a_hit():
    hit = FakeMemory(MemoryAnswer(found=True, answer="Your name is Ada", confidence=0.9))
    plan = _plan([])
    ctx = ExecutionContext()
    result = _run(_executor(memory=hit).run_alternative(
        Suggestion("MEMORY_CHECK", 0.7), plan, ctx))
    assert result.information == "Your name is Ada"

    with pytest.raises(CollaboratorError):
        _run(_executor().run_alternative(Suggestion("MEMORY_CHECK", 0.7), plan, ctx))


def test_single_url_processing_without_url_raises():
    with pytest.raises(CollaboratorError, match="No URL"):
        _run(_executor().run_alternative(
            Suggestion("SINGLE_URL_PROCESSING", 0.8), _plan([]), ExecutionContext()))


def test_unknown_alternative_raises():
    with pytest.raises(CollaboratorError, match="Unknown alternative approach"):
        _run(_executor().run_alternative(
            Suggestion("TELEPATHY", 0.1), _plan([]), ExecutionContext()))


def test_pick_url_preference_order():
    ctx = ExecutionContext(user_msg="see https://c.dev/x", urls=["https://a.dev"],
                           tool_history={"url_reads": ["https://b.dev"]})
    assert StepExecutor.pick_url(ctx) == "https://a.dev"
    ctx.urls = []
    assert StepExecutor.pick_url(ctx) == "https://b.dev"
    ctx.tool_history = {}
    assert StepExecutor.pick_url(ctx) == "https://c.dev/x"


def test_tool_with_name_merges_additional_params():
    tools = FakeTools({"REASONING_TOOL": {"conclusion": "ok"}})
    ctx = ExecutionContext(additional_params={"depth": 2})
    _run(_executor(tools=tools).execute_tool_with_name("REASONING_TOOL", "q", ctx))
    assert tools.calls == [("REASONING_TOOL", {"problem": "q", "depth": 2})]


# ─────────────────────────────────────────────────────────────────────────────
# Per-type steps
# ─────────────────────────────────────────────────────────────────────────────

def test_unknown_task_type_completes_with_unsuccessful_result():
    plan = _plan([Task(id="x", type="CUSTOM_STEP")])
    _run(_executor().execute_next_step(plan, ExecutionContext()))
    result = plan.results[0].result
    assert result.success is False
    assert result.error == "Unknown step type: CUSTOM_STEP"
    assert plan.state_manager.state_of("x") == TaskState.COMPLETED


def test_read_url_loop_keeps_partial_successes():
    def read(params):
        if params["url"] == "https://a.dev":
            return CollaboratorError("HTTP 500")
        return {"result": "x" * 600}

    executor = _executor(tools=FakeTools({"READ_URL": read}))
    ctx = ExecutionContext(selected_tool="READ_URL", urls=["https://a.dev", "https://b.dev"])
    result = _run(executor.execute_information_gathering("q", ctx))
    assert [r["success"] for r in result.get("results")] == [False, True]
    assert result.information == "URL: https://b.dev\nContent: " + "x" * 500 + "..."
    assert ctx.tool_history["url_reads"] == ["https://b.dev"]


def test_read_url_loop_raises_when_every_read_fails():
    executor = _executor(tools=FakeTools({"READ_URL": CollaboratorError("Invalid URL: x")}))
    ctx = ExecutionContext(selected_tool="READ_URL", urls=["x", "y"])
    with pytest.raises(CollaboratorError) as exc:
        _run(executor.execute_information_gathering("q", ctx))
    assert exc.value.kind == ErrorKind.INVALID_URL


def test_gathering_defaults_to_web_search():
    tools = FakeTools()
    result = _run(_executor(tools=tools).execute_information_gathering("q", ExecutionContext()))
    assert result.selected_tool == "WEB_SEARCH"
    assert tools.calls == [("WEB_SEARCH", {"query": "q"})]


def test_reasoning_tool_output_becomes_report():
    payload = {"problem_type": "arithmetic", "reasoning_approach": "stepwise",
               "steps": ["add 2 and 2", "check"], "conclusion": "4", "confidence": 0.95}
    tools = FakeTools({"REASONING_TOOL": payload})
    executor = _executor(selector=FakeSelector("REASONING_TOOL"), tools=tools)
    plan = _default_plan("what is 2 + 2")
    _drive(executor, plan)
    assert tools.calls == [("REASONING_TOOL", {"problem": "what is 2 + 2"})]
    response = plan.final_result().response
    assert response.startswith('Report for "what is 2 + 2":')
    assert "Problem Type: arithmetic" in response
    assert "1. add 2 and 2" in response
    assert "Conclusion: 4" in response
    assert "Confidence: 0.95" in response


def test_page_content_synthesis():
    tools = FakeTools({"WEB_SEARCH": {"url": "https://p.dev", "content": "hello"}})
    plan = _default_plan()
    _drive(_executor(tools=tools), plan)
    assert plan.final_result().response == "Here is the content from https://p.dev:\nhello"


def test_verification_without_synthesis_is_unsuccessful():
    result = _executor().execute_verification(_plan([]))
    assert result.success is False


# ─────────────────────────────────────────────────────────────────────────────
# Hooks
# ─────────────────────────────────────────────────────────────────────────────

def test_hooks_observe_lifecycle_and_bad_hooks_are_isolated():
    started, completed = [], []
    hooks = HookRegistry()

    def _boom(**_):
        raise RuntimeError("hook bug")

    hooks.add(EventType.TASK_STARTED, _boom)
    hooks.add(EventType.TASK_STARTED, lambda task_id, task: started.append(task_id))
    hooks.add(EventType.TASK_COMPLETED, lambda task_id, **_: completed.append(task_id))
    executor = _executor(hooks=hooks)
    plan = _default_plan()
    _drive(executor, plan)
    assert started == ["task-1", "task-2", "task-3", "task-4", "task-5"]
    assert completed == started
    assert plan.error is None
