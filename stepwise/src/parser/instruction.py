"""Natural-language instruction to step list using OpenAI tool calling."""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import openai

from stepwise.src.catalog.resolver import resolve_catalog
from stepwise.src.parser.fallback import fallback_parse
from stepwise.src.utils.config import CONFIG, LLMConfig
from stepwise.src.utils.llm import OpenAIChat
from stepwise.src.utils.models import UNKNOWN, LogicalTool, Step, ToolDescriptor

logger = logging.getLogger("stepwise.parser")

MAX_STEPS = 10

_REF_HELP = f'Exact element reference from the page snapshot. Use "{UNKNOWN}" when the page has not been seen yet.'

TOOL_SCHEMAS: Dict[LogicalTool, Dict[str, Any]] = {
    LogicalTool.NAVIGATE: {
        "description": "Navigate the browser to a specific URL.",
        "parameters": {
            "type": "object",
            "properties": {"url": {"type": "string", "description": "The absolute URL to navigate to."}},
            "required": ["url"],
        },
    },
    LogicalTool.CLICK: {
        "description": "Click an element on the page.",
        "parameters": {
            "type": "object",
            "properties": {
                "element": {"type": "string", "description": "Human-readable element description."},
                "ref": {"type": "string", "description": _REF_HELP},
            },
            "required": ["element", "ref"],
        },
    },
    LogicalTool.TYPE: {
        "description": "Type text into an editable element.",
        "parameters": {
            "type": "object",
            "properties": {
                "element": {"type": "string", "description": "Human-readable element description."},
                "ref": {"type": "string", "description": _REF_HELP},
                "text": {"type": "string", "description": "The text to type."},
                "submit": {"type": "boolean", "description": "Press Enter after typing.", "default": False},
            },
            "required": ["element", "ref", "text"],
        },
    },
    LogicalTool.SCROLL: {
        "description": "Scroll the page in a direction.",
        "parameters": {
            "type": "object",
            "properties": {
                "direction": {"type": "string", "enum": ["up", "down", "left", "right"]},
                "offset": {"type": "string", "description": 'Pixels such as "400px", a percentage, or "edge".'},
            },
            "required": ["direction", "offset"],
        },
    },
    LogicalTool.SEARCH: {
        "description": "Run a search query on the current site.",
        "parameters": {
            "type": "object",
            "properties": {"query": {"type": "string", "description": "Search terms."}},
            "required": ["query"],
        },
    },
    LogicalTool.ASSERT_TEXT: {
        "description": "Verify that an element contains specific text.",
        "parameters": {
            "type": "object",
            "properties": {
                "selector": {"type": "string", "description": "Element to check."},
                "text": {"type": "string", "description": "The exact text to expect."},
            },
            "required": ["selector", "text"],
        },
    },
    LogicalTool.DISMISS_MODAL: {
        "description": "Accept or dismiss an open dialog.",
        "parameters": {
            "type": "object",
            "properties": {"accept": {"type": "boolean", "description": "Accept instead of dismissing."}},
        },
    },
    LogicalTool.SNAPSHOT: {
        "description": "Capture the current page state so later steps can resolve element references.",
        "parameters": {"type": "object", "properties": {}},
    },
}

SYSTEM_PROMPT = (
    "You are a web automation assistant. Convert the user's instruction into a sequence of tool calls "
    f"using ONLY the provided tools. Generate a maximum of {MAX_STEPS} steps. "
    f'When an argument can only be known after looking at the page (such as an element ref), use "{UNKNOWN}". '
    "If the request cannot be fulfilled with the available tools, do not invent a tool call."
)


class InstructionParser:
    """Callable ``(instruction, descriptors) -> list[Step]``."""

    def __init__(self, chat: Optional[OpenAIChat] = None, config: LLMConfig | None = None) -> None:
        self.config = config or CONFIG.llm
        self.chat = chat or OpenAIChat(self.config, model=self.config.model)

    def tool_definitions(self, descriptors: Sequence[ToolDescriptor]) -> List[Dict[str, Any]]:
        """Function tools for the logical tools the server can actually run."""
        catalog = resolve_catalog(descriptors)
        available = [tool for tool in LogicalTool if tool in catalog] if len(catalog) else list(LogicalTool)
        return [
            {
                "type": "function",
                "function": {"name": tool.value, **TOOL_SCHEMAS[tool]},
            }
            for tool in available
        ]

    def parse(self, instruction: str, descriptors: Sequence[ToolDescriptor]) -> List[Step]:
        tools = self.tool_definitions(descriptors)
        allowed = {tool["function"]["name"] for tool in tools}
        try:
            message = self.chat.complete(
                [
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": instruction},
                ],
                tools=tools,
                model=self.config.model,
            )
        except openai.OpenAIError as exc:
            logger.error("Instruction parsing failed: %s", exc)
            return []

        steps = self._steps_from_tool_calls(getattr(message, "tool_calls", None) or [], allowed)

        if len(steps) < 2:
            fallback = fallback_parse(instruction)
            if len(fallback) > len(steps):
                logger.info("Using fallback parser: %d steps", len(fallback))
                steps = fallback

        if len(steps) > MAX_STEPS:
            logger.warning("Parser produced %d steps, truncating to %d", len(steps), MAX_STEPS)
            steps = steps[:MAX_STEPS]
        logger.info("Parsed instruction into %d steps", len(steps))
        return steps

    __call__ = parse

    @staticmethod
    def _steps_from_tool_calls(tool_calls: Sequence[Any], allowed: set) -> List[Step]:
        steps: List[Step] = []
        for index, call in enumerate(tool_calls):
            function = getattr(call, "function", None)
            name = getattr(function, "name", None)
            if not name or name not in allowed:
                logger.warning("Skipping tool call %d with unknown tool %r", index, name)
                continue
            try:
                arguments = json.loads(getattr(function, "arguments", None) or "{}")
            except ValueError:
                logger.warning("Skipping tool call %d (%s): arguments are not JSON", index, name)
                continue
            if not isinstance(arguments, dict):
                logger.warning("Skipping tool call %d (%s): arguments are not an object", index, name)
                continue
            step_kwargs: Dict[str, Any] = {"logical_tool": LogicalTool(name), "arguments": arguments}
            if getattr(call, "id", None):
                step_kwargs["id"] = call.id
            steps.append(Step(**step_kwargs))
        return steps
