"""Configuration helpers for stepwise services."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class SnapshotPolicy(str, Enum):
    """When the orchestrator captures page state on its own."""

    ATTACHED = "attached"  # only snapshots attached to execution results
    ALWAYS = "always"  # capture after every successful step
    ON_DEMAND = "on_demand"  # capture right before a step that needs refinement


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _snapshot_policy_from_env() -> SnapshotPolicy:
    raw = (os.getenv("STEPWISE_SNAPSHOT_POLICY") or "").strip().lower()
    if raw:
        try:
            return SnapshotPolicy(raw)
        except ValueError:
            pass
    if (os.getenv("ALWAYS_GET_SNAPSHOT") or "").strip().lower() in ("1", "true", "yes"):
        return SnapshotPolicy.ALWAYS
    return SnapshotPolicy.ATTACHED


@dataclass(slots=True)
class LLMConfig:
    """Settings for the parsing and refinement LLM calls."""

    api_key: Optional[str] = field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    model: str = field(default_factory=lambda: os.getenv("STEPWISE_LLM_MODEL", "gpt-4o"))
    refine_model: Optional[str] = field(default_factory=lambda: os.getenv("STEPWISE_REFINE_MODEL"))
    timeout: float = field(default_factory=lambda: _env_float("STEPWISE_LLM_TIMEOUT", 60.0))
    max_completion_tokens: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.refine_model:
            self.refine_model = self.model
        max_tokens = os.getenv("STEPWISE_LLM_MAX_COMPLETION_TOKENS")
        if max_tokens and self.max_completion_tokens is None:
            try:
                self.max_completion_tokens = int(max_tokens)
            except ValueError:
                self.max_completion_tokens = None


@dataclass(slots=True)
class MCPConfig:
    """Connection details for the remote Playwright MCP server."""

    base_url: str = field(default_factory=lambda: os.getenv("MCP_SERVER_BASE_URL", "http://localhost:8931"))
    handshake_timeout: float = field(default_factory=lambda: _env_float("MCP_HANDSHAKE_TIMEOUT", 20.0))
    request_timeout: float = field(default_factory=lambda: _env_float("MCP_TIMEOUT", 30.0))


@dataclass(slots=True)
class OrchestratorConfig:
    """Retry, timer and snapshot policy for the session state machine.

    ``max_retries`` applies uniformly to execution and refinement failures.
    With the default of 0 the first failure of any kind is terminal.
    """

    max_retries: int = field(default_factory=lambda: _env_int("STEPWISE_MAX_RETRIES", 0))
    confirmation_timeout: float = field(default_factory=lambda: _env_float("STEPWISE_CONFIRM_TIMEOUT", 120.0))
    execution_timeout: float = field(default_factory=lambda: _env_float("STEPWISE_EXECUTION_TIMEOUT", 60.0))
    snapshot_policy: SnapshotPolicy = field(default_factory=_snapshot_policy_from_env)
    max_snapshot_chars: int = field(default_factory=lambda: _env_int("STEPWISE_MAX_SNAPSHOT_CHARS", 10_000))

    def __post_init__(self) -> None:
        self.max_retries = max(0, int(self.max_retries))
        self.snapshot_policy = SnapshotPolicy(self.snapshot_policy)


@dataclass(slots=True)
class AppConfig:
    """Aggregated configuration for the orchestrator."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    mcp: MCPConfig = field(default_factory=MCPConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)


CONFIG = AppConfig()
