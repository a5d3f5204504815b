"""
LLM-backed collaborators
========================
Concrete Decomposer, IntentClassifier, ToolSelector, Synthesizer and
MemoryService implementations on top of LLMClient. Each one builds a prompt,
asks for JSON, and parses the reply tolerantly; anything the model gets wrong
falls back to a rule-based answer rather than failing the task.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, Optional

from .api_clients import LLMClient
from .collaborators import IntentResult, MemoryAnswer, ToolDecision
from .models import CANONICAL_ORDER, ToolName

logger = logging.getLogger("reasoner.llm")

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def extract_json_object(text: str) -> Optional[dict]:
    """First {...} block in model output, parsed, or None."""
    match = _JSON_OBJECT_RE.search(text or "")
    if not match:
        return None
    raw = match.group()
    for candidate in (raw, re.sub(r",\s*([}\]])", r"\1", raw)):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        return value if isinstance(value, dict) else None
    return None


def format_facts(facts: Iterable[dict]) -> str:
    return "\n".join(f"- {f.get('type', 'fact')}: {f.get('value', '')}" for f in facts)


# ─────────────────────────────────────────────────────────────────────────────
# Decomposer
# ─────────────────────────────────────────────────────────────────────────────

DECOMPOSE_PROMPT = """\
You are an expert in breaking down complex problems into smaller, manageable tasks.
Analyze this query and decompose it into a logical sequence of sub-tasks.

USER QUERY: "{query}"
{facts_block}
CONTEXT: {history}

Break down this query into 3-6 subtasks that would help solve it effectively.
For each subtask, specify:
1. A unique ID (task-1, task-2, etc.)
2. Task type (one of: {types})
3. A specific description of what this subtask should accomplish
4. Input requirements - what information this task needs
5. Output expectations - what information this task should produce
6. Dependencies - IDs of tasks that must be completed before this one (if any)
7. Priority (1-5, where 1 is highest priority)

Keep tasks in a logical order: MEMORY_CHECK and INTENT_CLASSIFICATION before
TOOL_SELECTION, TOOL_SELECTION before INFORMATION_GATHERING, then SYNTHESIS,
then VERIFICATION.

Return ONLY a JSON array:
[
  {{"id": "task-1", "type": "INTENT_CLASSIFICATION",
    "description": "...", "input": "User query", "output": "...",
    "dependencies": [], "priority": 1}}
]
"""


class LLMDecomposer:
    """Returns the raw model text; PlanBuilder parses and normalises it."""

    def __init__(self, client: LLMClient, max_tokens: int = 1500):
        self.client = client
        self.max_tokens = max_tokens

    async def decompose(self, query: str, context: dict) -> str:
        facts = context.get("facts") or []
        prompt = DECOMPOSE_PROMPT.format(
            query=query,
            facts_block=f"\nKNOWN FACTS:\n{format_facts(facts)}\n" if facts else "",
            history=context.get("history_context") or "No additional context",
            types=", ".join(CANONICAL_ORDER),
        )
        response = await self.client.complete(prompt, max_tokens=self.max_tokens,
                                              temperature=0.2)
        return response.text


# ─────────────────────────────────────────────────────────────────────────────
# Intent classification
# ─────────────────────────────────────────────────────────────────────────────

VALID_INTENTS = (
    "greeting", "farewell", "thanks", "factual_query", "personal_query",
    "opinion_query", "action_request", "clarification", "feedback",
)

_QUICK_RULES: tuple[tuple[re.Pattern, str, float], ...] = (
    (re.compile(r"\breport\b"), "action_request", 0.95),
    (re.compile(r"^(hi|hello|hey|hi there|good morning|good afternoon|good evening)$"), "greeting", 0.95),
    (re.compile(r"^(bye|goodbye|see you|later|until next time)$"), "farewell", 0.95),
    (re.compile(r"^(thanks|thank you|thx|ty|appreciate it)$"), "thanks", 0.95),
    (re.compile(r"\b(my|mine|i have|do i have)\b"), "personal_query", 0.8),
)


def quick_classify(message: str) -> IntentResult:
    lowered = message.lower().strip()
    for pattern, intent, confidence in _QUICK_RULES:
        if pattern.search(lowered):
            return IntentResult(intent, confidence)
    return IntentResult("unknown", 0.3)


INTENT_PROMPT = """\
Classify the user's message into one of these intent categories:
{intents}

User message: "{message}"
{history}{facts}
Respond with only a JSON object:
{{"intent": "THE_INTENT_CATEGORY", "confidence": 0.0-1.0, "explanation": "..."}}
"""


class LLMIntentClassifier:
    """Rule-based for unambiguous messages, the model for everything else."""

    def __init__(self, client: LLMClient, quick_threshold: float = 0.9):
        self.client = client
        self.quick_threshold = quick_threshold

    async def classify(self, query: str, context: dict) -> IntentResult:
        quick = quick_classify(query)
        if quick.confidence > self.quick_threshold:
            return quick

        history = context.get("history_context")
        facts = context.get("facts") or []
        prompt = INTENT_PROMPT.format(
            intents="\n".join(f"- {i}" for i in VALID_INTENTS),
            message=query,
            history=f"Recent conversation context: {history}\n" if history else "",
            facts=f"Known facts:\n{format_facts(facts)}\n" if facts else "",
        )
        response = await self.client.complete(prompt, max_tokens=200, temperature=0.0)
        data = extract_json_object(response.text)
        if not data or data.get("intent") not in VALID_INTENTS:
            logger.warning("Could not parse intent from model output; using rules")
            return quick if quick.intent != "unknown" else IntentResult("unknown", 0.5)
        try:
            confidence = float(data.get("confidence", 0.5))
        except (TypeError, ValueError):
            confidence = 0.5
        return IntentResult(data["intent"], confidence)


# ─────────────────────────────────────────────────────────────────────────────
# Tool selection
# ─────────────────────────────────────────────────────────────────────────────

SOCIAL_INTENTS = {"greeting", "farewell", "thanks", "clarification", "feedback"}

_FIND_USER_RE = re.compile(r"^find\s+([\w-]+)$", re.IGNORECASE)

TOOL_PROMPT = """\
Select the most appropriate tool to handle this user query.

USER QUERY: "{query}"
QUERY INTENT: {intent}

AVAILABLE TOOLS:
{tools}

KNOWN FACTS ABOUT USER:
{facts}

CONVERSATION HISTORY:
{history}

PREVIOUSLY USED TOOLS:
{tool_history}

Guidelines: social intents → RESPOND; factual queries needing external
information → WEB_SEARCH; web page content → READ_URL; complex reasoning →
REASONING_TOOL; questions answered by known facts → RESPOND.

Respond with a JSON object:
{{"reasoning": "...", "selected_tool": "NAME", "parameters": {{}}}}
"""


def default_tool_selection(query: str, intent: str,
                           available: Optional[Iterable[str]] = None) -> ToolDecision:
    """RESPOND for social intents or when WEB_SEARCH is not among ``available``."""
    if available is not None and ToolName.WEB_SEARCH.value not in available:
        return ToolDecision(ToolName.RESPOND.value, {},
                            "Web search unavailable, responding directly")
    if intent in SOCIAL_INTENTS or intent == "personal_query":
        return ToolDecision(ToolName.RESPOND.value, {}, f"Default selection for {intent}")
    return ToolDecision(ToolName.WEB_SEARCH.value, {"query": query},
                        "Default to web search for information")


class LLMToolSelector:
    """Shortcut rules first (report requests, ``find <user>``), then the model."""

    def __init__(self, client: LLMClient, tool_descriptions: dict[str, str]):
        self.client = client
        self.tool_descriptions = dict(tool_descriptions)

    async def select(self, query: str, intent: str, facts: list[dict],
                     history: str, tool_history: dict) -> ToolDecision:
        normalized = query.lower().strip()
        if "report" in normalized and ToolName.REASONING_TOOL.value in self.tool_descriptions:
            return ToolDecision(ToolName.REASONING_TOOL.value, {"problem": query},
                                "Report request detected, using reasoning tool")
        match = _FIND_USER_RE.match(normalized)
        if match and ToolName.READ_URL.value in self.tool_descriptions:
            return ToolDecision(ToolName.READ_URL.value,
                                {"url": f"https://github.com/{match.group(1)}"},
                                "Direct GitHub profile lookup for username")

        prompt = TOOL_PROMPT.format(
            query=query,
            intent=intent,
            tools="\n".join(f"{n}: {d}" for n, d in self.tool_descriptions.items()),
            facts=format_facts(facts) or "None",
            history=history or "No previous conversation",
            tool_history=json.dumps(tool_history or {}),
        )
        response = await self.client.complete(prompt, max_tokens=400, temperature=0.0)
        data = extract_json_object(response.text)
        tool = (data or {}).get("selected_tool") or (data or {}).get("selectedTool")
        if tool not in self.tool_descriptions:
            logger.warning("Invalid tool selection %r; using default", tool)
            return default_tool_selection(query, intent, self.tool_descriptions)
        params = data.get("parameters")
        return ToolDecision(tool, params if isinstance(params, dict) else {},
                            str(data.get("reasoning", "")))


# ─────────────────────────────────────────────────────────────────────────────
# Synthesis
# ─────────────────────────────────────────────────────────────────────────────

SYNTHESIS_PROMPT = """\
Based on the information available, write a response that addresses the
user's query as well as possible.

USER QUERY: "{query}"

AVAILABLE INFORMATION:
{information}

Please provide:
1. A direct answer to the query with the information available
2. An acknowledgment of any limitations in the response
3. Suggestions for how the user could get better results
{style}
"""

_STYLES = {
    "answer": "Keep your response concise and helpful.",
    "summary": "Summarise what is known in a few sentences; the usual tools could not be used.",
}


class LLMSynthesizer:

    def __init__(self, client: LLMClient, max_tokens: int = 1200):
        self.client = client
        self.max_tokens = max_tokens

    async def synthesize(self, query: str, information: str,
                         response_type: str = "answer") -> str:
        prompt = SYNTHESIS_PROMPT.format(
            query=query, information=information or "None",
            style=_STYLES.get(response_type, _STYLES["answer"]),
        )
        response = await self.client.complete(prompt, max_tokens=self.max_tokens)
        return response.text.strip()


# ─────────────────────────────────────────────────────────────────────────────
# Memory
# ─────────────────────────────────────────────────────────────────────────────

MEMORY_PROMPT = """\
You are helping an assistant decide whether it can answer a query from facts
in its memory.

USER QUERY: "{query}"

RELEVANT FACTS:
{facts}

Answer true only if the facts contain SPECIFIC information that directly
answers the query. A stored restatement of the request is not an answer.

Respond with a JSON object:
{{"can_answer": true/false, "answer": "...", "confidence": 0.0-1.0,
  "missing_information": "...", "is_user_request_only": true/false}}
"""

_WORD_RE = re.compile(r"[a-z0-9]{3,}")


class FactMemory:
    """
    In-process fact list (``{"type": ..., "value": ...}`` dicts) answering
    queries through the model. Facts sharing no word with the query are
    never shown to it.
    """

    def __init__(self, client: LLMClient, facts: Optional[list[dict]] = None):
        self.client = client
        self.facts: list[dict] = list(facts or [])

    def add(self, fact_type: str, value: Any) -> None:
        self.facts.append({"type": fact_type, "value": value})

    def relevant_facts(self, query: str) -> list[dict]:
        words = set(_WORD_RE.findall(query.lower()))
        return [
            f for f in self.facts
            if words & set(_WORD_RE.findall(f"{f.get('type', '')} {f.get('value', '')}".lower()))
        ]

    async def check_answer(self, query: str) -> MemoryAnswer:
        relevant = self.relevant_facts(query)
        if not relevant:
            return MemoryAnswer(found=False, reason="No relevant facts in memory")
        if (len(relevant) == 1 and relevant[0].get("type") == "user_request"
                and query.lower() in str(relevant[0].get("value", "")).lower()):
            logger.info("Memory only holds the request itself; not treating it as an answer")
            return MemoryAnswer(found=False, reason="Only the user request is stored")

        response = await self.client.complete(
            MEMORY_PROMPT.format(query=query, facts=format_facts(relevant)),
            max_tokens=300, temperature=0.0,
        )
        data = extract_json_object(response.text)
        if not data:
            logger.warning("Failed to parse memory check result from model output")
            return MemoryAnswer(found=False, reason="Unparseable memory check")
        if data.get("is_user_request_only") or not data.get("can_answer") \
                or not data.get("answer"):
            return MemoryAnswer(found=False,
                                reason=data.get("missing_information") or "Not in memory")
        try:
            confidence = float(data.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        return MemoryAnswer(found=True, answer=str(data["answer"]), confidence=confidence)
