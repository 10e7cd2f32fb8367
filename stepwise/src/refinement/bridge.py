"""Resolve ``<UNKNOWN>`` step arguments from a page snapshot via an LLM."""
from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Dict, Optional

from stepwise.src.utils.config import CONFIG, OrchestratorConfig
from stepwise.src.utils.errors import RefinementError
from stepwise.src.utils.llm import OpenAIChat
from stepwise.src.utils.models import UNKNOWN, Step

logger = logging.getLogger("stepwise.refinement")

LLMCall = Callable[[str, str], str]

TRUNCATION_MARKER = "\n... (truncated) ...\n"

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)

SYSTEM_PROMPT = (
    "You are an expert assistant analyzing web page snapshots to determine the correct "
    "arguments for web automation tool calls.\n"
    f'Given a tool call whose unknown arguments are marked as "{UNKNOWN}" and a snapshot of '
    f'the current page, replace every "{UNKNOWN}" value with the correct value found in the snapshot. '
    "Element references (ref) must be copied exactly as they appear in the snapshot.\n\n"
    "Output ONLY the refined JSON object of arguments. Do not include explanations or markdown."
)


def truncate_snapshot(snapshot: str, max_chars: int = 10_000) -> str:
    """Bound ``snapshot`` to ``max_chars`` keeping both its head and its tail."""
    if len(snapshot) <= max_chars:
        return snapshot
    if max_chars <= len(TRUNCATION_MARKER):
        return snapshot[:max(max_chars, 0)]
    keep = max_chars - len(TRUNCATION_MARKER)
    head = keep - keep // 2
    tail = keep // 2
    return snapshot[:head] + TRUNCATION_MARKER + (snapshot[-tail:] if tail else "")


def parse_arguments(text: str) -> Dict[str, Any]:
    """Parse the LLM reply as a JSON object, directly or from a fenced block."""
    raw = (text or "").strip()
    candidates = [raw]
    match = _FENCE_RE.search(raw)
    if match:
        candidates.append(match.group(1).strip())

    for candidate in candidates:
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
        raise RefinementError(f"Refined arguments are not a JSON object: {type(parsed).__name__}")
    raise RefinementError("LLM output did not contain a JSON arguments object")


class RefinementBridge:
    """Callable ``(step, snapshot) -> Step`` used by the FSM."""

    def __init__(
        self,
        llm: Optional[LLMCall] = None,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self.config = config or CONFIG.orchestrator
        self._llm = llm

    @property
    def llm(self) -> LLMCall:
        if self._llm is None:
            self._llm = OpenAIChat()
        return self._llm

    def build_prompt(self, step: Step, snapshot: str) -> str:
        excerpt = truncate_snapshot(snapshot or "", self.config.max_snapshot_chars)
        return (
            "Tool call to refine:\n"
            f"Tool Name: {step.logical_tool.value}\n"
            f"Original Arguments: {json.dumps(step.arguments, indent=2, ensure_ascii=False)}\n\n"
            "Web Page Snapshot:\n"
            f"```\n{excerpt}\n```\n\n"
            f'Based on the snapshot, determine the correct values for every "{UNKNOWN}" argument.\n'
            "Output ONLY the refined JSON arguments object, for example:\n"
            '{"element": "Login button", "ref": "e42"}'
        )

    def refine(self, step: Step, snapshot: str) -> Step:
        if not step.needs_refinement:
            return step

        prompt = self.build_prompt(step, snapshot)
        logger.info("Refining %s step %s (snapshot %d chars)", step.logical_tool.value, step.id, len(snapshot or ""))
        try:
            output = self.llm(SYSTEM_PROMPT, prompt)
        except RefinementError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise RefinementError(f"LLM refinement failed: {exc}") from exc

        arguments = parse_arguments(output)
        logger.debug("Refined arguments for %s: %s", step.id, arguments)
        return step.model_copy(update={"arguments": arguments}, deep=True)

    __call__ = refine
