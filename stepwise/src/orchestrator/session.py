"""Mutable state of one automation run."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Set

from stepwise.src.utils.models import ErrorInfo, Step, ToolCatalog, ToolDescriptor


class RequestKind(str, Enum):
    STEP = "step"
    CAPTURE = "capture"


@dataclass(slots=True)
class PendingRequest:
    """The single in-flight remote call of a session."""

    request_id: int
    step_id: Optional[str]
    kind: RequestKind
    issued_at: float


@dataclass(slots=True, eq=False)
class Session:
    """One automation run. Only the FSM mutates it."""

    session_id: str
    instruction: str
    endpoint_url: Optional[str] = None
    steps: List[Step] = field(default_factory=list)
    catalog: ToolCatalog = field(default_factory=ToolCatalog)
    descriptors: List[ToolDescriptor] = field(default_factory=list)
    client: Any = field(default=None, repr=False)
    current_step_index: int = -1
    latest_snapshot: Optional[str] = None
    snapshot_fresh: bool = False
    last_error: Optional[ErrorInfo] = None
    retry_count: int = 0
    pending: Optional[PendingRequest] = None
    step_to_confirm: Optional[Step] = None
    confirm_epoch: int = 0
    issued_ids: Set[int] = field(default_factory=set)
    connection_lost: bool = False
    failure: Optional[BaseException] = field(default=None, repr=False)

    @property
    def current_step(self) -> Optional[Step]:
        if 0 <= self.current_step_index < len(self.steps):
            return self.steps[self.current_step_index]
        return None
