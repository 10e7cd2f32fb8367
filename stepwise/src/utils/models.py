"""Shared data models for stepwise components."""
from __future__ import annotations

import uuid
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field

from stepwise.src.utils.errors import ToolResolutionError

UNKNOWN = "<UNKNOWN>"


class LogicalTool(str, Enum):
    """Abstract browser actions understood by the parser and the FSM."""

    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    SCROLL = "scroll"
    SEARCH = "search"
    ASSERT_TEXT = "assert_text"
    DISMISS_MODAL = "dismiss_modal"
    SNAPSHOT = "snapshot"


DIAGNOSTIC_TOOLS = frozenset({LogicalTool.SNAPSHOT.value})


def _new_step_id() -> str:
    return f"step_{uuid.uuid4().hex[:12]}"


class Step(BaseModel):
    """One planned browser action."""

    id: str = Field(default_factory=_new_step_id)
    logical_tool: LogicalTool
    arguments: Dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None

    @property
    def is_diagnostic(self) -> bool:
        return self.logical_tool.value in DIAGNOSTIC_TOOLS

    @property
    def needs_refinement(self) -> bool:
        return any(value == UNKNOWN for value in self.arguments.values())


class ToolDescriptor(BaseModel):
    """Capability advertised by the automation server in ``tools/list``."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")


class ToolCatalog:
    """Immutable logical -> remote tool name mapping for one session."""

    __slots__ = ("_mapping",)

    def __init__(self, mapping: Optional[Mapping[str, str]] = None) -> None:
        normalised = {_tool_key(key): value for key, value in (mapping or {}).items()}
        self._mapping = MappingProxyType(normalised)

    @property
    def mapping(self) -> Mapping[str, str]:
        return self._mapping

    def get(self, logical_tool: Any) -> Optional[str]:
        return self._mapping.get(_tool_key(logical_tool))

    def remote_name(self, logical_tool: Any) -> str:
        key = _tool_key(logical_tool)
        try:
            return self._mapping[key]
        except KeyError:
            raise ToolResolutionError(key) from None

    def __contains__(self, logical_tool: object) -> bool:
        return _tool_key(logical_tool) in self._mapping

    def __len__(self) -> int:
        return len(self._mapping)

    def __repr__(self) -> str:
        return f"ToolCatalog({dict(self._mapping)!r})"


def _tool_key(logical_tool: Any) -> str:
    if isinstance(logical_tool, Enum):
        return str(logical_tool.value)
    return str(logical_tool)


class ErrorInfo(BaseModel):
    """Diagnostic record of the error that ended or is failing a session."""

    kind: str
    message: str
    code: Optional[Any] = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        return cls(kind=type(exc).__name__, message=str(exc), code=getattr(exc, "code", None))


class OrchestratorState(str, Enum):
    IDLE = "IDLE"
    WAIT_CONFIRM = "WAIT_CONFIRM"
    EXECUTE = "EXECUTE"
    WAIT_REFINEMENT = "WAIT_REFINEMENT"
    ERROR = "ERROR"


class FsmSnapshot(BaseModel):
    """Externally observable status of the orchestrator.

    Step lists and the index are expressed over the steps a user can see,
    diagnostic steps are filtered out.
    """

    state: OrchestratorState = OrchestratorState.IDLE
    session_id: Optional[str] = None
    instruction: Optional[str] = None
    current_step_index: int = -1
    total_steps: int = 0
    step_to_confirm: Optional[Step] = None
    steps: List[Step] = Field(default_factory=list)
    retry_count: int = 0
    last_error: Optional[ErrorInfo] = None


class McpResponse(BaseModel):
    """Normalised JSON-RPC response handed to the message listener."""

    request_id: Optional[int] = None
    ok: bool = True
    result: Optional[Any] = None
    snapshot: Optional[str] = None
    error_code: Optional[Any] = None
    error_message: Optional[str] = None
    connection_lost: bool = False
    malformed: bool = False
