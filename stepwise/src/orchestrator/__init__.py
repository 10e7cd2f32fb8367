"""Session orchestration: sequencing, state machine and facade."""
from stepwise.src.orchestrator.fsm import OrchestratorEvent, OrchestratorFsm
from stepwise.src.orchestrator.sequencer import needs_refinement, next_executable
from stepwise.src.orchestrator.service import Orchestrator
from stepwise.src.orchestrator.session import PendingRequest, RequestKind, Session

__all__ = [
    "Orchestrator",
    "OrchestratorEvent",
    "OrchestratorFsm",
    "PendingRequest",
    "RequestKind",
    "Session",
    "needs_refinement",
    "next_executable",
]
