"""Utility exports for stepwise."""
from stepwise.src.utils.config import CONFIG, AppConfig, LLMConfig, MCPConfig, OrchestratorConfig, SnapshotPolicy
from stepwise.src.utils.models import (
    UNKNOWN,
    ErrorInfo,
    FsmSnapshot,
    LogicalTool,
    McpResponse,
    OrchestratorState,
    Step,
    ToolCatalog,
    ToolDescriptor,
)

__all__ = [
    "CONFIG",
    "AppConfig",
    "LLMConfig",
    "MCPConfig",
    "OrchestratorConfig",
    "SnapshotPolicy",
    "UNKNOWN",
    "ErrorInfo",
    "FsmSnapshot",
    "LogicalTool",
    "McpResponse",
    "OrchestratorState",
    "Step",
    "ToolCatalog",
    "ToolDescriptor",
]
