"""Map logical browser actions onto the tool names a server advertises."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Sequence, Tuple

from stepwise.src.utils.models import LogicalTool, ToolCatalog, ToolDescriptor

logger = logging.getLogger("stepwise.catalog")

DEFAULT_KEYWORDS: Mapping[LogicalTool, Tuple[str, ...]] = {
    LogicalTool.NAVIGATE: ("navigate",),
    LogicalTool.CLICK: ("click",),
    LogicalTool.TYPE: ("type",),
    LogicalTool.SCROLL: ("scroll",),
    LogicalTool.SEARCH: ("search",),
    LogicalTool.ASSERT_TEXT: ("assert", "verify", "expect"),
    LogicalTool.DISMISS_MODAL: ("dialog", "modal"),
    LogicalTool.SNAPSHOT: ("snapshot",),
}


def resolve_catalog(
    descriptors: Iterable[ToolDescriptor],
    keywords: Mapping[LogicalTool, Sequence[str]] = DEFAULT_KEYWORDS,
) -> ToolCatalog:
    """Return the first advertised name containing each logical tool's keyword.

    Keywords are tried in order; within a keyword, advertised order decides.
    Logical tools with no match are left out of the catalog.
    """
    names = [descriptor.name for descriptor in descriptors]
    lowered = [name.lower() for name in names]
    mapping: Dict[str, str] = {}

    for logical_tool, words in keywords.items():
        match = _first_containing(names, lowered, words)
        if match is None:
            logger.debug("No remote tool for %s", logical_tool.value)
            continue
        mapping[logical_tool.value] = match

    logger.info("Resolved %d/%d logical tools from %d advertised", len(mapping), len(keywords), len(names))
    return ToolCatalog(mapping)


def _first_containing(names: Sequence[str], lowered: Sequence[str], words: Sequence[str]):
    for word in words:
        needle = word.lower()
        for name, low in zip(names, lowered):
            if needle in low:
                return name
    return None
