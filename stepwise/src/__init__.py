"""Stepwise package root exposing the orchestrator and its collaborators."""

from stepwise.src.catalog.resolver import resolve_catalog
from stepwise.src.orchestrator.fsm import OrchestratorEvent, OrchestratorFsm
from stepwise.src.orchestrator.service import Orchestrator
from stepwise.src.parser.instruction import InstructionParser
from stepwise.src.protocol.client import McpSseClient
from stepwise.src.refinement.bridge import RefinementBridge

__all__ = [
    "InstructionParser",
    "McpSseClient",
    "Orchestrator",
    "OrchestratorEvent",
    "OrchestratorFsm",
    "RefinementBridge",
    "resolve_catalog",
]
