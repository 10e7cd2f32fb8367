"""Orchestrator facade: the operations exposed to the HTTP layer."""
from __future__ import annotations

import logging
from concurrent.futures import Executor
from typing import Any, Callable, List, Optional, Sequence

from stepwise.src.catalog.resolver import resolve_catalog
from stepwise.src.orchestrator.fsm import OrchestratorEvent, OrchestratorFsm, StateListener
from stepwise.src.orchestrator.sequencer import visible_steps
from stepwise.src.orchestrator.session import Session
from stepwise.src.orchestrator.timers import TimerFactory, thread_timer
from stepwise.src.parser.instruction import MAX_STEPS, InstructionParser
from stepwise.src.protocol.client import McpSseClient
from stepwise.src.refinement.bridge import RefinementBridge
from stepwise.src.utils.config import CONFIG, AppConfig
from stepwise.src.utils.errors import McpConnectionError, ParsingError, StepwiseError
from stepwise.src.utils.models import FsmSnapshot, OrchestratorState, Step, ToolDescriptor

logger = logging.getLogger("stepwise.orchestrator")

Parser = Callable[[str, Sequence[ToolDescriptor]], List[Step]]
ClientFactory = Callable[[], Any]


class Orchestrator:
    """Owns one FSM and at most one active session.

    Every collaborator is injectable; the defaults talk to a real Playwright
    MCP server and to OpenAI.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        *,
        parser: Optional[Parser] = None,
        refiner: Optional[Callable[[Step, str], Step]] = None,
        client_factory: Optional[ClientFactory] = None,
        executor: Executor | None = None,
        timer_factory: TimerFactory = thread_timer,
    ) -> None:
        self.config = config or CONFIG
        self._parser = parser or InstructionParser(config=self.config.llm)
        self._client_factory = client_factory or (lambda: McpSseClient(self.config.mcp))
        self.fsm = OrchestratorFsm(
            refiner or RefinementBridge(config=self.config.orchestrator),
            self.config.orchestrator,
            executor=executor,
            timer_factory=timer_factory,
        )

    def start_session(self, instruction: str) -> List[Step]:
        """Connect, parse ``instruction`` and start confirming steps.

        Returns the steps a user reviews (diagnostic steps left out).
        Raises ``McpConnectionError`` when the server cannot be reached or the
        stream drops before the session starts, and ``ParsingError`` when the
        instruction yields no executable step.
        """
        if self.fsm.state is not OrchestratorState.IDLE:
            logger.info("Discarding active session before starting a new one")
            self.fsm.dispatch(OrchestratorEvent.RESET)

        client = self._client_factory()
        try:
            session_id = client.open_session(self.config.mcp.base_url)
            client.initialize()
            descriptors = client.list_tools()
        except StepwiseError:
            client.close()
            raise
        catalog = resolve_catalog(descriptors)

        session = Session(
            session_id=session_id,
            instruction=instruction,
            endpoint_url=getattr(client, "endpoint_url", None),
            catalog=catalog,
            descriptors=list(descriptors),
            client=client,
        )
        client.on_message(lambda response: self.fsm.handle_response(response, session))

        try:
            steps = list(self._parser(instruction, descriptors) or [])
        except Exception as exc:  # noqa: BLE001
            error = ParsingError(f"Instruction parser failed: {exc}")
            self.fsm.dispatch(OrchestratorEvent.PARSING_FAILED, (session, error))
            raise error from exc

        if not steps:
            error = ParsingError("Could not derive any steps from the instruction")
            self.fsm.dispatch(OrchestratorEvent.PARSING_FAILED, (session, error))
            raise error
        if len(steps) > MAX_STEPS:
            logger.warning("Truncating %d parsed steps to %d", len(steps), MAX_STEPS)
            steps = steps[:MAX_STEPS]

        session.steps = steps
        logger.info("Session %s: %d steps parsed from %r", session_id, len(steps), instruction)
        self.fsm.dispatch(OrchestratorEvent.STEPS_PARSED, session)
        if self.fsm.session is session and self.fsm.state is OrchestratorState.ERROR:
            if isinstance(session.failure, (ParsingError, McpConnectionError)):
                raise session.failure
        return [step.model_copy(deep=True) for step in visible_steps(steps)]

    def confirm_step(self, step_id: Optional[str] = None) -> FsmSnapshot:
        self.fsm.dispatch(OrchestratorEvent.CONFIRM, step_id)
        return self.get_status()

    def reject_steps(self) -> FsmSnapshot:
        self.fsm.dispatch(OrchestratorEvent.REJECT)
        return self.get_status()

    def cancel_session(self) -> FsmSnapshot:
        self.fsm.dispatch(OrchestratorEvent.CANCEL)
        return self.get_status()

    def reset(self) -> FsmSnapshot:
        self.fsm.dispatch(OrchestratorEvent.RESET)
        return self.get_status()

    def get_status(self) -> FsmSnapshot:
        return self.fsm.snapshot()

    def add_listener(self, listener: StateListener) -> None:
        self.fsm.add_listener(listener)

    def close(self) -> None:
        self.fsm.close()

