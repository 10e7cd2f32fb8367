"""Exception hierarchy shared by the protocol client and the orchestrator."""
from __future__ import annotations

from typing import Any, Optional


class StepwiseError(Exception):
    """Base class for every error raised by stepwise."""


class McpConnectionError(StepwiseError, ConnectionError):
    """Handshake, stream or transport failure. Fatal for the session."""


class ProtocolError(StepwiseError):
    """Malformed JSON-RPC traffic or a response for an id never issued."""


class ToolResolutionError(StepwiseError):
    """A step's logical tool has no counterpart in the server's catalog."""

    def __init__(self, logical_tool: str) -> None:
        self.logical_tool = logical_tool
        super().__init__(f"No remote tool advertised for logical tool '{logical_tool}'")


class RemoteExecutionError(StepwiseError):
    """The automation server reported a failure for a tool call."""

    def __init__(self, message: str, *, code: Optional[Any] = None) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


class RefinementError(StepwiseError):
    """Placeholder arguments could not be resolved from the page snapshot."""


class ParsingError(StepwiseError):
    """The instruction did not produce any executable step."""


class SessionTerminated(StepwiseError):
    """Ordinary end of a session that is not a failure."""


class ConfirmationTimeout(SessionTerminated):
    """Nobody confirmed the pending step in time."""


class UserCancelled(SessionTerminated):
    """The user rejected the plan or cancelled the session."""
