"""Regex parser for short imperative instructions."""
from __future__ import annotations

import re
import uuid
from typing import List, Optional

from stepwise.src.utils.models import UNKNOWN, LogicalTool, Step

_QUOTES_RE = re.compile(r"[“”‘’]")
_CLAUSE_SPLIT_RE = re.compile(r"\s*,\s*(?:then\s+)?|\s+(?:and then|then|and)\s+", re.IGNORECASE)

_GO_TO_RE = re.compile(r"^(?:go to|open|visit)\s+(https?://\S+|\S+\.\S+)", re.IGNORECASE)
_CLICK_RE = re.compile(r"^click\s+(?:on\s+)?(.+)$", re.IGNORECASE)
_TYPE_RE = re.compile(r"^type\s+['\"]?([^'\"]+?)['\"]?\s+into\s+(.+)$", re.IGNORECASE)
_SEARCH_RE = re.compile(r"^search\s+for\s+['\"]?([^'\"]+?)['\"]?$", re.IGNORECASE)


def _fallback_id() -> str:
    return f"fallback_{uuid.uuid4().hex[:12]}"


def split_clauses(instruction: str) -> List[str]:
    return [part.strip() for part in _CLAUSE_SPLIT_RE.split(instruction or "") if part and part.strip()]


def parse_clause(clause: str) -> Optional[Step]:
    """Recognise one command; returns None when nothing matches."""
    text = _QUOTES_RE.sub('"', clause or "").strip().rstrip(".")
    if not text:
        return None

    match = _GO_TO_RE.match(text)
    if match:
        url = match.group(1)
        if not url.lower().startswith(("http://", "https://")):
            url = f"http://{url}"
        return Step(id=_fallback_id(), logical_tool=LogicalTool.NAVIGATE, arguments={"url": url})

    match = _TYPE_RE.match(text)
    if match:
        value, target = match.group(1).strip(), match.group(2).strip()
        if value and target:
            return Step(
                id=_fallback_id(),
                logical_tool=LogicalTool.TYPE,
                arguments={"element": target, "ref": UNKNOWN, "text": value},
            )

    match = _SEARCH_RE.match(text)
    if match:
        return Step(id=_fallback_id(), logical_tool=LogicalTool.SEARCH, arguments={"query": match.group(1).strip()})

    match = _CLICK_RE.match(text)
    if match:
        target = match.group(1).strip()
        if target:
            return Step(
                id=_fallback_id(),
                logical_tool=LogicalTool.CLICK,
                arguments={"element": target, "ref": UNKNOWN},
            )
    return None


def fallback_parse(instruction: str) -> List[Step]:
    """Parse every clause of ``instruction`` that matches a known command."""
    steps: List[Step] = []
    for clause in split_clauses(instruction):
        step = parse_clause(clause)
        if step is not None:
            steps.append(step)
    return steps
