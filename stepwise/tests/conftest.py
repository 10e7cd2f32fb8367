from __future__ import annotations

from concurrent.futures import Future
from typing import Any, Callable, Dict, List, Optional

from stepwise.src.catalog.resolver import resolve_catalog
from stepwise.src.orchestrator.fsm import OrchestratorEvent, OrchestratorFsm
from stepwise.src.orchestrator.session import Session
from stepwise.src.utils.config import OrchestratorConfig, SnapshotPolicy
from stepwise.src.utils.models import McpResponse, Step, ToolDescriptor

PLAYWRIGHT_TOOLS = [
    "browser_navigate",
    "browser_navigate_back",
    "browser_click",
    "browser_type",
    "browser_press_key",
    "browser_snapshot",
    "browser_handle_dialog",
    "browser_wait_for",
]

CONFIRM_TIMEOUT = 120.0
EXECUTION_TIMEOUT = 60.0

SNAPSHOT_TEXT = "- Page URL: https://example.com\n- Page Snapshot:\n```yaml\n- button \"Login\" [ref=e7]\n```"


def descriptors(names: List[str] = PLAYWRIGHT_TOOLS) -> List[ToolDescriptor]:
    return [ToolDescriptor(name=name, description=f"{name} tool") for name in names]


class ManualTimer:
    def __init__(self, interval: float, callback: Callable[[], None]) -> None:
        self.interval = interval
        self.callback = callback
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if self.started and not self.cancelled:
            self.callback()


class ManualTimers:
    """Timer factory whose timers only fire when a test says so."""

    def __init__(self) -> None:
        self.created: List[ManualTimer] = []

    def __call__(self, interval: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(interval, callback)
        self.created.append(timer)
        return timer

    def live(self, interval: Optional[float] = None) -> List[ManualTimer]:
        return [
            timer
            for timer in self.created
            if timer.started and not timer.cancelled and (interval is None or timer.interval == interval)
        ]


class InlineExecutor:
    """Runs submitted work immediately, or later when ``deferred`` is set."""

    def __init__(self, deferred: bool = False) -> None:
        self.deferred = deferred
        self.queued: List[Callable[[], Any]] = []

    def submit(self, fn, *args, **kwargs) -> Future:
        future: Future = Future()

        def run() -> None:
            future.set_result(fn(*args, **kwargs))

        if self.deferred:
            self.queued.append(run)
        else:
            run()
        return future

    def run_all(self) -> None:
        queued, self.queued = self.queued, []
        for run in queued:
            run()

    def shutdown(self, wait: bool = True) -> None:
        self.queued.clear()


class FakeMcpClient:
    """Stands in for ``McpSseClient``; records calls and replays responses."""

    def __init__(
        self,
        tools: List[str] = PLAYWRIGHT_TOOLS,
        *,
        session_id: str = "session-1",
        open_error: Optional[Exception] = None,
    ) -> None:
        self.tools = tools
        self.session_id = session_id
        self.endpoint_url = f"http://mcp.test/messages?sessionId={session_id}"
        self.open_error = open_error
        self.calls: List[Dict[str, Any]] = []
        self.call_error: Optional[Exception] = None
        self.listener: Optional[Callable[[McpResponse], None]] = None
        self._last_listener: Optional[Callable[[McpResponse], None]] = None
        self.closed = False
        self._next_id = 0

    def open_session(self, base_url: Optional[str] = None) -> str:
        if self.open_error is not None:
            raise self.open_error
        return self.session_id

    def initialize(self) -> Dict[str, Any]:
        self.next_request_id()
        return {"serverInfo": {"name": "fake"}}

    def list_tools(self) -> List[ToolDescriptor]:
        self.next_request_id()
        return descriptors(self.tools)

    def next_request_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def on_message(self, handler) -> None:
        self.listener = handler
        if handler is not None:
            self._last_listener = handler

    def call_tool(self, request_id: int, name: str, arguments: Dict[str, Any]) -> None:
        self.calls.append({"id": request_id, "name": name, "arguments": arguments})
        if self.call_error is not None:
            raise self.call_error

    def close(self) -> None:
        self.closed = True

    @property
    def last_request_id(self) -> int:
        return self.calls[-1]["id"]

    def respond(
        self,
        *,
        ok: bool = True,
        snapshot: Optional[str] = None,
        request_id: Optional[int] = None,
        error_message: str = "Element not found",
        error_code: Any = -32000,
    ) -> None:
        """Deliver a response through the listener that was registered last.

        Uses the last registered handler even after it was detached, the way a
        reply already in flight still reaches the reader.
        """
        response = McpResponse(
            request_id=self.last_request_id if request_id is None else request_id,
            ok=ok,
            snapshot=snapshot,
            error_code=None if ok else error_code,
            error_message=None if ok else error_message,
        )
        assert self._last_listener is not None
        self._last_listener(response)

    def lose_connection(self) -> None:
        assert self._last_listener is not None
        self._last_listener(McpResponse(ok=False, connection_lost=True, error_message="event stream ended"))


def navigate(url: str = "https://example.com", step_id: str = "s-nav") -> Step:
    return Step(id=step_id, logical_tool="navigate", arguments={"url": url})


def click(ref: str = "<UNKNOWN>", step_id: str = "s-click") -> Step:
    return Step(id=step_id, logical_tool="click", arguments={"element": "Login button", "ref": ref})


def snapshot_step(step_id: str = "s-snap") -> Step:
    return Step(id=step_id, logical_tool="snapshot", arguments={})


def resolve_ref(step: Step, snapshot: str) -> Step:
    arguments = {key: ("e7" if value == "<UNKNOWN>" else value) for key, value in step.arguments.items()}
    return step.model_copy(update={"arguments": arguments})


class FsmHarness:
    def __init__(
        self,
        *,
        max_retries: int = 0,
        policy: SnapshotPolicy = SnapshotPolicy.ATTACHED,
        refiner: Callable[[Step, str], Step] = resolve_ref,
        deferred_refinement: bool = False,
        tools: List[str] = PLAYWRIGHT_TOOLS,
    ) -> None:
        self.config = OrchestratorConfig(
            max_retries=max_retries,
            confirmation_timeout=CONFIRM_TIMEOUT,
            execution_timeout=EXECUTION_TIMEOUT,
            snapshot_policy=policy,
        )
        self.timers = ManualTimers()
        self.executor = InlineExecutor(deferred=deferred_refinement)
        self.fsm = OrchestratorFsm(refiner, self.config, executor=self.executor, timer_factory=self.timers)
        self.client = FakeMcpClient(tools)
        self.client.list_tools()
        self.states: List[str] = []
        self.indices: List[int] = []
        self.fsm.add_listener(self._record)
        self.session: Optional[Session] = None

    def _record(self, state, snapshot) -> None:
        self.states.append(state.value)
        self.indices.append(snapshot.current_step_index)

    def start(self, steps: List[Step]) -> Session:
        session = Session(
            session_id=self.client.session_id,
            instruction="test instruction",
            steps=steps,
            catalog=resolve_catalog(descriptors(self.client.tools)),
            client=self.client,
        )
        self.client.on_message(lambda response: self.fsm.handle_response(response, session))
        self.session = session
        self.fsm.dispatch(OrchestratorEvent.STEPS_PARSED, session)
        return session

    def confirm(self, step_id: Optional[str] = None) -> None:
        self.fsm.dispatch(OrchestratorEvent.CONFIRM, step_id)

    @property
    def state(self) -> str:
        return self.fsm.state.value

    def status(self):
        return self.fsm.snapshot()

