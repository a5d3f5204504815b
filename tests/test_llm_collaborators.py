"""
Tests for the LLM-backed collaborators.
A fake client returns canned APIResponse text; no provider SDK is touched.
"""
from __future__ import annotations

import asyncio

from reasoner.api_clients import APIResponse
from reasoner.llm_collaborators import (
    FactMemory, LLMDecomposer, LLMIntentClassifier, LLMSynthesizer,
    LLMToolSelector, default_tool_selection, extract_json_object, quick_classify,
)
from reasoner.planner import parse_task_descriptors


def _run(coro):
    return asyncio.run(coro)


class FakeClient:
    def __init__(self, *replies: str):
        self.replies = list(replies)
        self.prompts: list[str] = []
        self.kwargs: list[dict] = []

    async def complete(self, prompt, **kwargs):
        self.prompts.append(prompt)
        self.kwargs.append(kwargs)
        text = self.replies.pop(0) if self.replies else ""
        return APIResponse(text, 10, 5, "fake-model")


TOOLS = {
    "WEB_SEARCH": "Search the web",
    "READ_URL": "Read a page",
    "REASONING_TOOL": "Structured reasoning",
    "RESPOND": "Reply directly",
}


# ─────────────────────────────────────────────────────────────────────────────
# JSON extraction
# ─────────────────────────────────────────────────────────────────────────────

def test_extract_json_object_tolerates_prose_and_trailing_commas():
    text = 'Sure! Here you go:\n{"intent": "greeting", "confidence": 0.9,}\nAnything else?'
    assert extract_json_object(text) == {"intent": "greeting", "confidence": 0.9}


def test_extract_json_object_failure():
    assert extract_json_object("no json") is None
    assert extract_json_object("{broken") is None
    assert extract_json_object("") is None


# ─────────────────────────────────────────────────────────────────────────────
# Decomposer
# ─────────────────────────────────────────────────────────────────────────────

def test_decomposer_returns_raw_text_and_builds_prompt():
    reply = '```json\n[{"id": "task-1", "type": "SYNTHESIS"}]\n```'
    client = FakeClient(reply)
    decomposer = LLMDecomposer(client)
    text = _run(decomposer.decompose("who won the match", {
        "facts": [{"type": "team", "value": "Arsenal"}], "history_context": "",
    }))
    assert text == reply
    assert parse_task_descriptors(text) == [{"id": "task-1", "type": "SYNTHESIS"}]
    prompt = client.prompts[0]
    assert 'USER QUERY: "who won the match"' in prompt
    assert "- team: Arsenal" in prompt
    assert "No additional context" in prompt
    assert "MEMORY_CHECK, INTENT_CLASSIFICATION" in prompt


# ─────────────────────────────────────────────────────────────────────────────
# Intent
# ─────────────────────────────────────────────────────────────────────────────

def test_quick_classify_rules():
    assert quick_classify("hello").intent == "greeting"
    assert quick_classify("Thanks").intent == "thanks"
    assert quick_classify("write a report on tides").intent == "action_request"
    assert (quick_classify("what is my name").intent,
            quick_classify("what is my name").confidence) == ("personal_query", 0.8)
    assert quick_classify("explain entropy").intent == "unknown"


def test_unambiguous_message_skips_the_model():
    client = FakeClient()
    result = _run(LLMIntentClassifier(client).classify("hi", {}))
    assert result.intent == "greeting"
    assert client.prompts == []


def test_model_intent_is_used():
    client = FakeClient('{"intent": "factual_query", "confidence": 0.85, "explanation": "x"}')
    result = _run(LLMIntentClassifier(client).classify(
        "capital of France", {"history_context": "we talked about Europe"}))
    assert (result.intent, result.confidence) == ("factual_query", 0.85)
    assert "we talked about Europe" in client.prompts[0]


def test_invalid_model_intent_falls_back_to_rules():
    client = FakeClient('{"intent": "rant"}', "garbage")
    classifier = LLMIntentClassifier(client)
    assert _run(classifier.classify("what is my name", {})).intent == "personal_query"
    unknown = _run(classifier.classify("explain entropy", {}))
    assert (unknown.intent, unknown.confidence) == ("unknown", 0.5)


# ─────────────────────────────────────────────────────────────────────────────
# Tool selection
# ─────────────────────────────────────────────────────────────────────────────

def _select(client, query, intent="factual_query"):
    return _run(LLMToolSelector(client, TOOLS).select(query, intent, [], "", {}))


def test_report_request_uses_reasoning_tool():
    client = FakeClient()
    decision = _select(client, "Write a report on solar panels")
    assert decision.tool == "REASONING_TOOL"
    assert decision.parameters == {"problem": "Write a report on solar panels"}
    assert client.prompts == []


def test_find_user_reads_github_profile():
    decision = _select(FakeClient(), "find octocat")
    assert decision.tool == "READ_URL"
    assert decision.parameters == {"url": "https://github.com/octocat"}


def test_model_choice_is_validated():
    client = FakeClient('{"reasoning": "needs a page", "selected_tool": "READ_URL", '
                        '"parameters": {"url": "https://python.org"}}')
    decision = _select(client, "what does python.org say")
    assert decision.tool == "READ_URL"
    assert decision.parameters == {"url": "https://python.org"}
    assert decision.reasoning == "needs a page"


def test_invalid_model_choice_uses_default():
    decision = _select(FakeClient('{"selected_tool": "TELEPORT"}'), "latest news")
    assert decision.tool == "WEB_SEARCH"
    assert decision.parameters == {"query": "latest news"}

    social = _select(FakeClient("no idea"), "good evening friend", intent="greeting")
    assert social.tool == "RESPOND"


BUILTIN_TOOLS = {"GET_DATE": "Current date", "RESPOND": "Reply directly"}


def test_default_selection_without_web_search_responds():
    assert default_tool_selection("latest news", "factual_query").tool == "WEB_SEARCH"
    assert default_tool_selection("latest news", "factual_query", BUILTIN_TOOLS).tool == "RESPOND"

    selector = LLMToolSelector(FakeClient("garbage"), BUILTIN_TOOLS)
    decision = _run(selector.select("latest news", "factual_query", [], "", {}))
    assert decision.tool == "RESPOND"
    assert decision.parameters == {}


def test_shortcuts_need_their_tool_registered():
    client = FakeClient('{"selected_tool": "GET_DATE"}', '{"selected_tool": "RESPOND"}')
    selector = LLMToolSelector(client, BUILTIN_TOOLS)
    report = _run(selector.select("Write a report on tides", "action_request", [], "", {}))
    lookup = _run(selector.select("find octocat", "factual_query", [], "", {}))
    assert (report.tool, lookup.tool) == ("GET_DATE", "RESPOND")
    assert len(client.prompts) == 2


# ─────────────────────────────────────────────────────────────────────────────
# Synthesis
# ─────────────────────────────────────────────────────────────────────────────

def test_synthesizer_styles():
    client = FakeClient("  The answer.  ", "Summary.")
    synth = LLMSynthesizer(client)
    assert _run(synth.synthesize("q", "info")) == "The answer."
    assert _run(synth.synthesize("q", "", "summary")) == "Summary."
    assert "concise" in client.prompts[0]
    assert "Summarise what is known" in client.prompts[1]
    assert "AVAILABLE INFORMATION:\nNone" in client.prompts[1]


# ─────────────────────────────────────────────────────────────────────────────
# Memory
# ─────────────────────────────────────────────────────────────────────────────

FACTS = [{"type": "name", "value": "Ada"}, {"type": "pet", "value": "a cat called Tom"}]


def test_relevant_facts_by_word_overlap():
    memory = FactMemory(FakeClient(), FACTS)
    assert memory.relevant_facts("what is my name") == [FACTS[0]]
    assert memory.relevant_facts("xy") == []


def test_no_relevant_facts_skips_the_model():
    client = FakeClient()
    answer = _run(FactMemory(client, FACTS).check_answer("weather in Oslo"))
    assert answer.found is False
    assert client.prompts == []


def test_memory_answer_found():
    client = FakeClient('{"can_answer": true, "answer": "Your name is Ada", "confidence": 0.9}')
    answer = _run(FactMemory(client, FACTS).check_answer("what is my name"))
    assert answer.found is True
    assert answer.answer == "Your name is Ada"
    assert answer.confidence == 0.9
    assert "- name: Ada" in client.prompts[0]


def test_memory_declines():
    client = FakeClient('{"can_answer": false, "missing_information": "surname"}')
    answer = _run(FactMemory(client, FACTS).check_answer("what is my full name"))
    assert answer.found is False
    assert answer.reason == "surname"


def test_stored_request_is_not_an_answer():
    client = FakeClient()
    memory = FactMemory(client)
    memory.add("user_request", "please tell me what is my name")
    answer = _run(memory.check_answer("what is my name"))
    assert answer.found is False
    assert client.prompts == []
