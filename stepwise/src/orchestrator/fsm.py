"""Session state machine: confirmation, execution, refinement, next step."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from stepwise.src.orchestrator.sequencer import (
    next_executable,
    skipped_diagnostics,
    visible_position,
    visible_steps,
)
from stepwise.src.orchestrator.session import PendingRequest, RequestKind, Session
from stepwise.src.orchestrator.timers import SingleTimer, TimerFactory, thread_timer
from stepwise.src.utils.config import CONFIG, OrchestratorConfig, SnapshotPolicy
from stepwise.src.utils.errors import (
    ConfirmationTimeout,
    McpConnectionError,
    ParsingError,
    ProtocolError,
    RefinementError,
    RemoteExecutionError,
    StepwiseError,
    ToolResolutionError,
    UserCancelled,
)
from stepwise.src.utils.models import (
    ErrorInfo,
    FsmSnapshot,
    LogicalTool,
    McpResponse,
    OrchestratorState,
    Step,
)

logger = logging.getLogger("stepwise.fsm")

Refiner = Callable[[Step, str], Step]
StateListener = Callable[[OrchestratorState, FsmSnapshot], None]

IDLE = OrchestratorState.IDLE
WAIT_CONFIRM = OrchestratorState.WAIT_CONFIRM
EXECUTE = OrchestratorState.EXECUTE
WAIT_REFINEMENT = OrchestratorState.WAIT_REFINEMENT
ERROR = OrchestratorState.ERROR

ACTIVE_STATES = frozenset({WAIT_CONFIRM, EXECUTE, WAIT_REFINEMENT})


class OrchestratorEvent(str, Enum):
    STEPS_PARSED = "steps_parsed"
    PARSING_FAILED = "parsing_failed"
    CONFIRM = "confirm"
    REJECT = "reject"
    CANCEL = "cancel"
    CONFIRM_TIMEOUT = "confirm_timeout"
    STEP_SUCCEEDED = "step_succeeded"
    STEP_FAILED = "step_failed"
    REFINEMENT_SUCCEEDED = "refinement_succeeded"
    REFINEMENT_FAILED = "refinement_failed"
    CONNECTION_LOST = "connection_lost"
    PROTOCOL_ERROR = "protocol_error"
    RESET = "reset"


@dataclass(slots=True)
class StepFailure:
    """Local failure of an issued request (transport error or timeout)."""

    request_id: Optional[int]
    error: StepwiseError


class OrchestratorFsm:
    """Single-writer state machine driving one session at a time.

    Every input goes through :meth:`dispatch`. Events are queued and drained
    one at a time under a re-entrant lock, so an event raised while a
    transition runs is handled after that transition completes. Tool calls
    are collected while draining and sent after the lock is released.
    """

    def __init__(
        self,
        refiner: Refiner,
        config: OrchestratorConfig | None = None,
        *,
        executor: Executor | None = None,
        timer_factory: TimerFactory = thread_timer,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CONFIG.orchestrator
        self._refiner = refiner
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="stepwise-refine")
        self._confirm_timer = SingleTimer(timer_factory)
        self._execution_timer = SingleTimer(timer_factory)
        self._clock = clock
        self._lock = threading.RLock()
        self._queue: Deque[Tuple[OrchestratorEvent, Any, Optional[Session]]] = deque()
        self._draining = False
        self._outbox: Deque[Callable[[], None]] = deque()
        self._listeners: List[StateListener] = []
        self.state: OrchestratorState = IDLE
        self.session: Optional[Session] = None
        self._published = FsmSnapshot()

        E = OrchestratorEvent
        self._handlers: Dict[Tuple[OrchestratorState, OrchestratorEvent], Callable[[Any], None]] = {
            (IDLE, E.STEPS_PARSED): self._on_steps_parsed,
            (IDLE, E.PARSING_FAILED): self._on_parsing_failed,
            (WAIT_CONFIRM, E.CONFIRM): self._on_confirm,
            (WAIT_CONFIRM, E.REJECT): self._on_reject,
            (WAIT_CONFIRM, E.CONFIRM_TIMEOUT): self._on_confirm_timeout,
            (EXECUTE, E.STEP_SUCCEEDED): self._on_step_succeeded,
            (EXECUTE, E.STEP_FAILED): self._on_step_failed,
            (WAIT_REFINEMENT, E.REFINEMENT_SUCCEEDED): self._on_refinement_succeeded,
            (WAIT_REFINEMENT, E.REFINEMENT_FAILED): self._on_refinement_failed,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def dispatch(
        self,
        event: OrchestratorEvent,
        payload: Any = None,
        *,
        session: Session | None = None,
    ) -> None:
        """Queue ``event`` and drain the queue unless a drain is already running.

        ``session`` tags the event with the session it belongs to; tagged
        events for a session that is no longer active are dropped.
        """
        with self._lock:
            self._queue.append((event, payload, session))
            if self._draining:
                return
            self._draining = True
            try:
                while self._queue:
                    item = self._queue.popleft()
                    before = self.state
                    self._process(*item)
                    self._publish(before)
            finally:
                self._draining = False
                sends = list(self._outbox)
                self._outbox.clear()
        for send in sends:
            send()

    def handle_response(self, response: McpResponse, session: Session) -> None:
        """Listener for the protocol client of ``session``."""
        E = OrchestratorEvent
        if response.connection_lost:
            session.connection_lost = True
            self.dispatch(E.CONNECTION_LOST, response, session=session)
        elif response.request_id is None:
            self.dispatch(
                E.PROTOCOL_ERROR,
                ProtocolError(response.error_message or "Response without request id"),
                session=session,
            )
        elif response.ok:
            self.dispatch(E.STEP_SUCCEEDED, response, session=session)
        else:
            self.dispatch(E.STEP_FAILED, response, session=session)

    def snapshot(self) -> FsmSnapshot:
        return self._published.model_copy(deep=True)

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def close(self) -> None:
        self.dispatch(OrchestratorEvent.RESET)
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Event routing
    # ------------------------------------------------------------------
    def _process(self, event: OrchestratorEvent, payload: Any, session: Optional[Session]) -> None:
        E = OrchestratorEvent
        if session is not None and session is not self.session:
            logger.debug("Dropping %s for inactive session %s", event.value, session.session_id)
            return

        if event in (E.STEP_SUCCEEDED, E.STEP_FAILED) and isinstance(payload, (McpResponse, StepFailure)):
            if not self._accept_response(payload.request_id):
                return

        handler = self._handlers.get((self.state, event))
        if handler is not None:
            handler(payload)
        elif event is E.CANCEL and self.state is not IDLE:
            self._finish(UserCancelled("Session cancelled"))
        elif event is E.RESET and self.state is not IDLE:
            self._finish(UserCancelled("Session reset"))
        elif event is E.CONNECTION_LOST and self.state in ACTIVE_STATES:
            message = payload.error_message if isinstance(payload, McpResponse) else None
            self._fail(McpConnectionError(message or "Connection to automation server lost"))
        elif event is E.PROTOCOL_ERROR and self.state in ACTIVE_STATES:
            self._fail(payload if isinstance(payload, ProtocolError) else ProtocolError(str(payload)))
        else:
            logger.debug("Ignoring %s in state %s", event.value, self.state.value)

    def _accept_response(self, request_id: Optional[int]) -> bool:
        session = self.session
        if session is None:
            logger.debug("Dropping response #%s: no active session", request_id)
            return False
        pending = session.pending
        if pending is not None and request_id == pending.request_id:
            return True
        if request_id is not None and request_id in session.issued_ids:
            logger.debug("Dropping stale response #%s", request_id)
            return False
        if self.state in ACTIVE_STATES:
            self._fail(ProtocolError(f"Response for request id {request_id} that was never issued"))
        else:
            logger.debug("Dropping response #%s in state %s", request_id, self.state.value)
        return False

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------
    def _on_steps_parsed(self, session: Session) -> None:
        self.session = session
        session.current_step_index = -1
        session.retry_count = 0
        if session.connection_lost:
            self._fail(McpConnectionError("Connection to automation server lost before the session started"))
            return
        if not session.steps:
            self._fail(ParsingError("Instruction produced no steps"))
            return
        logger.info("Session %s started with %d steps", session.session_id, len(session.steps))
        self._select_next(-1)

    def _on_parsing_failed(self, payload: Tuple[Session, StepwiseError]) -> None:
        session, error = payload
        self.session = session
        self._fail(error)

    def _on_confirm(self, step_id: Optional[str]) -> None:
        session = self._require_session()
        step = session.step_to_confirm
        if step is None or (step_id is not None and step_id != step.id):
            logger.warning("Confirmation for %s does not match pending step; ignored", step_id)
            return
        session.step_to_confirm = None
        session.retry_count = 0
        self._issue(RequestKind.STEP)

    def _on_reject(self, _payload: Any) -> None:
        self._finish(UserCancelled("Steps rejected by user"))

    def _on_confirm_timeout(self, epoch: Any) -> None:
        session = self._require_session()
        if epoch != session.confirm_epoch:
            logger.debug("Ignoring superseded confirmation timer")
            return
        self._finish(ConfirmationTimeout(f"No confirmation within {self.config.confirmation_timeout:g}s"))

    def _on_step_succeeded(self, response: McpResponse) -> None:
        session = self._require_session()
        pending = self._clear_pending()
        if response.snapshot:
            session.latest_snapshot = response.snapshot
            session.snapshot_fresh = True
        elif pending is not None and pending.kind is RequestKind.STEP:
            session.snapshot_fresh = False

        if pending is not None and pending.kind is RequestKind.CAPTURE:
            logger.info("Captured page snapshot (%d chars)", len(session.latest_snapshot or ""))
            self._select_next(session.current_step_index, allow_capture=False)
            return

        step = session.current_step
        logger.info("Step %s (%s) succeeded", step.id if step else "?", step.logical_tool.value if step else "?")
        self._select_next(session.current_step_index)

    def _on_step_failed(self, payload: Any) -> None:
        session = self._require_session()
        pending = self._clear_pending()
        kind = pending.kind if pending is not None else RequestKind.STEP

        if isinstance(payload, StepFailure):
            error: StepwiseError = payload.error
        else:
            if payload.malformed:
                self._fail(ProtocolError(payload.error_message or "Malformed response"))
                return
            if payload.snapshot:
                session.latest_snapshot = payload.snapshot
                session.snapshot_fresh = True
            error = RemoteExecutionError(payload.error_message or "Remote execution failed", code=payload.error_code)

        self._retry_or_fail(error, lambda: self._issue(kind))

    def _on_refinement_succeeded(self, refined: Step) -> None:
        session = self._require_session()
        step = session.current_step
        if step is None:
            self._fail(RefinementError("No step awaiting refinement"))
            return
        if refined.needs_refinement:
            self._retry_or_fail(RefinementError("Refined arguments still contain placeholders"), self._start_refinement)
            return
        step.arguments = dict(refined.arguments)
        session.retry_count = 0
        logger.info("Step %s refined: %s", step.id, step.arguments)
        self._enter_confirm(step)

    def _on_refinement_failed(self, error: Any) -> None:
        if not isinstance(error, StepwiseError):
            error = RefinementError(str(error))
        self._retry_or_fail(error, self._start_refinement)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def _select_next(self, after_index: int, *, allow_capture: bool = True) -> None:
        session = self._require_session()
        index = next_executable(session.steps, after_index)
        if index is None:
            if after_index < 0:
                self._fail(ParsingError("Instruction produced no executable steps"))
            else:
                self._finish(None)
            return

        step = session.steps[index]
        session.retry_count = 0
        skipped = skipped_diagnostics(session.steps, after_index, index)
        if allow_capture and self._should_capture(step, after_index, skipped):
            self._issue(RequestKind.CAPTURE)
            return

        session.current_step_index = index
        if step.needs_refinement:
            if not session.latest_snapshot:
                self._fail(RefinementError(f"Step {step.id} needs page state but no snapshot is available"))
                return
            self._start_refinement()
            return
        self._enter_confirm(step)

    def _should_capture(self, step: Step, after_index: int, skipped: bool) -> bool:
        session = self._require_session()
        if LogicalTool.SNAPSHOT not in session.catalog:
            return False
        if skipped:
            return True
        policy = self.config.snapshot_policy
        if policy is SnapshotPolicy.ALWAYS:
            return after_index >= 0 and not session.snapshot_fresh
        if policy is SnapshotPolicy.ON_DEMAND:
            return step.needs_refinement and not session.snapshot_fresh
        return False

    def _enter_confirm(self, step: Step) -> None:
        session = self._require_session()
        session.step_to_confirm = step
        session.confirm_epoch += 1
        epoch = session.confirm_epoch
        self._set_state(WAIT_CONFIRM)
        self._confirm_timer.start(
            self.config.confirmation_timeout,
            lambda: self.dispatch(OrchestratorEvent.CONFIRM_TIMEOUT, epoch, session=session),
        )

    def _start_refinement(self) -> None:
        session = self._require_session()
        step = session.current_step
        snapshot = session.latest_snapshot or ""
        self._set_state(WAIT_REFINEMENT)
        logger.info("Refining step %s against %d-char snapshot", step.id, len(snapshot))
        self._executor.submit(self._run_refinement, session, step.model_copy(deep=True), snapshot)

    def _run_refinement(self, session: Session, step: Step, snapshot: str) -> None:
        try:
            refined = self._refiner(step, snapshot)
        except StepwiseError as exc:
            self.dispatch(OrchestratorEvent.REFINEMENT_FAILED, exc, session=session)
            return
        except Exception as exc:  # noqa: BLE001
            self.dispatch(OrchestratorEvent.REFINEMENT_FAILED, RefinementError(str(exc)), session=session)
            return
        self.dispatch(OrchestratorEvent.REFINEMENT_SUCCEEDED, refined, session=session)

    def _issue(self, kind: RequestKind) -> None:
        """Resolve the remote tool and send the request for the current step or a capture."""
        session = self._require_session()
        step = session.current_step if kind is RequestKind.STEP else None
        logical = step.logical_tool if step is not None else LogicalTool.SNAPSHOT
        arguments = dict(step.arguments) if step is not None else {}

        try:
            remote_name = session.catalog.remote_name(logical)
        except ToolResolutionError as exc:
            self._fail(exc)
            return

        request_id = session.client.next_request_id()
        session.issued_ids.add(request_id)
        session.pending = PendingRequest(
            request_id=request_id,
            step_id=step.id if step is not None else None,
            kind=kind,
            issued_at=self._clock(),
        )
        self._set_state(EXECUTE)
        timeout = self.config.execution_timeout
        self._execution_timer.start(
            timeout,
            lambda: self.dispatch(
                OrchestratorEvent.STEP_FAILED,
                StepFailure(request_id, RemoteExecutionError(f"No response within {timeout:g}s", code="timeout")),
                session=session,
            ),
        )

        def send() -> None:
            pending = session.pending
            if pending is None or pending.request_id != request_id:
                logger.debug("Request #%d superseded before it was sent", request_id)
                return
            try:
                session.client.call_tool(request_id, remote_name, arguments)
            except StepwiseError as exc:
                self.dispatch(OrchestratorEvent.STEP_FAILED, StepFailure(request_id, exc), session=session)

        self._outbox.append(send)

    def _retry_or_fail(self, error: StepwiseError, retry: Callable[[], None]) -> None:
        session = self._require_session()
        session.retry_count += 1
        session.last_error = ErrorInfo.from_exception(error)
        if session.retry_count < self.config.max_retries:
            logger.warning(
                "Attempt %d/%d failed (%s); retrying",
                session.retry_count,
                self.config.max_retries,
                error,
            )
            retry()
            return
        self._fail(error)

    def _fail(self, error: BaseException) -> None:
        session = self.session
        logger.error("Session %s failed: %s: %s", session.session_id if session else "-", type(error).__name__, error)
        self._teardown()
        if session is not None:
            session.last_error = ErrorInfo.from_exception(error)
            session.failure = error
            session.step_to_confirm = None
        self._set_state(ERROR)

    def _finish(self, reason: Optional[BaseException]) -> None:
        session = self.session
        if reason is None:
            logger.info("Session %s completed", session.session_id if session else "-")
        else:
            logger.info("Session %s ended: %s", session.session_id if session else "-", reason)
        self._teardown()
        self.session = None
        self._set_state(IDLE)

    def _teardown(self) -> None:
        self._confirm_timer.cancel()
        self._execution_timer.cancel()
        session = self.session
        if session is None:
            return
        session.pending = None
        client = session.client
        if client is not None:
            client.on_message(None)
            client.close()

    def _clear_pending(self) -> Optional[PendingRequest]:
        self._execution_timer.cancel()
        session = self._require_session()
        pending, session.pending = session.pending, None
        return pending

    def _set_state(self, state: OrchestratorState) -> None:
        if self.state is WAIT_CONFIRM and state is not WAIT_CONFIRM:
            self._confirm_timer.cancel()
        if state is not self.state:
            logger.debug("%s -> %s", self.state.value, state.value)
        self.state = state

    def _require_session(self) -> Session:
        if self.session is None:
            raise RuntimeError(f"No active session in state {self.state.value}")
        return self.session

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    def _build_snapshot(self) -> FsmSnapshot:
        session = self.session
        if session is None:
            return FsmSnapshot(state=self.state)
        visible = visible_steps(session.steps)
        return FsmSnapshot(
            state=self.state,
            session_id=session.session_id,
            instruction=session.instruction,
            current_step_index=visible_position(session.steps, session.current_step_index),
            total_steps=len(visible),
            step_to_confirm=session.step_to_confirm.model_copy(deep=True) if session.step_to_confirm else None,
            steps=[step.model_copy(deep=True) for step in visible],
            retry_count=session.retry_count,
            last_error=session.last_error,
        )

    def _publish(self, before: OrchestratorState) -> None:
        self._published = self._build_snapshot()
        if self.state is before:
            return
        for listener in list(self._listeners):
            try:
                listener(self.state, self._published.model_copy(deep=True))
            except Exception:  # noqa: BLE001
                logger.exception("State listener failed")
