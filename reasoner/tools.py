"""
Tool registry — the ToolRunner the executor uses in practice.
=============================================================
Tools are async callables registered by name together with a small parameter
schema. run() checks required parameters, enforces the per-call timeout and
turns error payloads (``{"error": ...}``) into CollaboratorError, so the
executor only ever sees a dict on success or an exception on failure.

GET_DATE and RESPOND are built in. Web search, page reading and the
reasoning tool are supplied by the host application.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from .collaborators import CollaboratorError
from .models import ErrorKind, ExecutionContext, ToolName

logger = logging.getLogger("reasoner.tools")

ToolFn = Callable[[dict, Any], Awaitable[dict]]


@dataclass
class Tool:
    name: str
    description: str
    run: ToolFn
    # parameter name → required?
    parameters: dict[str, bool] = field(default_factory=dict)

    @property
    def required_parameters(self) -> list[str]:
        return [name for name, required in self.parameters.items() if required]


class ToolRegistry:
    """
    Name → Tool map with validated, time-limited execution.

    Usage:
        registry = ToolRegistry(timeout=15.0)
        registry.register(Tool("WEB_SEARCH", "Search the web", search, {"query": True}))
        result = await registry.run("WEB_SEARCH", {"query": "..."}, context)
    """

    def __init__(self, timeout: Optional[float] = None, builtins: bool = True):
        self.timeout = timeout
        self._tools: dict[str, Tool] = {}
        if builtins:
            self.register(Tool(ToolName.GET_DATE.value,
                               "Get the current date and time.", get_date))
            self.register(Tool(ToolName.RESPOND.value,
                               "Reply directly to the user with the provided message.",
                               respond, {"reply": False}))

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.info("Replacing tool %s", tool.name)
        self._tools[tool.name] = tool

    def names(self) -> list[str]:
        return sorted(self._tools)

    def describe(self) -> dict[str, str]:
        return {name: self._tools[name].description for name in self.names()}

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    async def run(self, tool_name: str, parameters: dict, context: Any = None) -> dict:
        tool = self._tools.get(tool_name)
        if tool is None:
            raise CollaboratorError(f"Tool '{tool_name}' not found", ErrorKind.TOOL_NOT_FOUND)

        for name in tool.required_parameters:
            if parameters.get(name) in (None, ""):
                raise CollaboratorError(
                    f"Missing required parameter for {tool_name}: {name}"
                )

        logger.debug("Running tool %s with %s", tool_name, parameters)
        try:
            if self.timeout:
                result = await asyncio.wait_for(tool.run(parameters, context),
                                                timeout=self.timeout)
            else:
                result = await tool.run(parameters, context)
        except asyncio.TimeoutError:
            raise CollaboratorError(
                f"Tool {tool_name} timed out after {self.timeout}s", ErrorKind.TIMEOUT,
            )

        if not isinstance(result, dict):
            result = {"result": result}
        if result.get("error"):
            raise CollaboratorError(f"Error executing tool {tool_name}: {result['error']}")
        return result


# ─────────────────────────────────────────────────────────────────────────────
# Built-in tools
# ─────────────────────────────────────────────────────────────────────────────

async def get_date(params: dict, context: Any) -> dict:
    return {"reply": datetime.now().strftime("%Y-%m-%d %H:%M:%S")}


_CANNED_REPLIES = {
    "greeting": "Hi there! How can I assist you today?",
    "farewell": "Goodbye! Feel free to chat again when you need assistance.",
    "thanks": "You're welcome! Happy to help.",
}

_SHORT_MESSAGE_PATTERNS = (
    ("greeting", re.compile(r"^(hi|hey|hello|howdy|hiya|morning|evening|afternoon|greetings|yo|sup)\b")),
    ("farewell", re.compile(r"^(bye|goodbye|farewell|see\s*you|later|take\s*care)\b")),
    ("thanks", re.compile(r"^(thanks|thank|thx|appreciate|grateful)\b")),
)


def detect_message_type(message: str) -> str:
    """greeting / farewell / thanks for short social messages, else other."""
    normalized = (message or "").lower().strip()
    if len(normalized) < 15:
        for kind, pattern in _SHORT_MESSAGE_PATTERNS:
            if pattern.search(normalized):
                return kind
    return "other"


async def respond(params: dict, context: Any) -> dict:
    reply = (params.get("reply") or params.get("response")
             or params.get("message") or params.get("text"))
    if reply:
        return {"reply": reply}

    user_msg = context.user_msg if isinstance(context, ExecutionContext) else ""
    if user_msg:
        kind = detect_message_type(user_msg)
        return {
            "reply": _CANNED_REPLIES.get(
                kind, "I'm not sure how to respond to that. "
                      "Can you please provide more information?"),
            "message_type": kind,
        }
    return {"reply": "Sorry, I could not select a tool."}
