"""JSON-RPC over HTTP POST + Server-Sent Events client for Playwright MCP."""
from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import requests
from pydantic import ValidationError

from stepwise.src.protocol.messages import (
    CLIENT_INFO,
    PROTOCOL_VERSION,
    build_notification,
    build_request,
    is_response,
    normalise_response,
    parse_endpoint,
)
from stepwise.src.protocol.sse import SseEvent, iter_events
from stepwise.src.utils.config import CONFIG, MCPConfig
from stepwise.src.utils.errors import McpConnectionError, ProtocolError
from stepwise.src.utils.models import McpResponse, ToolDescriptor

logger = logging.getLogger("stepwise.protocol")

MessageHandler = Callable[[McpResponse], None]


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class McpSseClient:
    """One logical connection to the automation server.

    ``open_session`` starts a daemon thread reading the event stream. Responses
    to internal requests (``initialize``, ``tools/list``) resolve futures;
    everything else is normalised and handed to the registered listener.
    """

    def __init__(
        self,
        config: MCPConfig | None = None,
        *,
        http: requests.Session | None = None,
    ) -> None:
        self.config = config or CONFIG.mcp
        self._http = http or requests.Session()
        self._lock = threading.Lock()
        self._handshake = threading.Event()
        self._closed = threading.Event()
        self._handshake_error: Optional[Exception] = None
        self._stream: Optional[requests.Response] = None
        self._reader: Optional[threading.Thread] = None
        self._pending: Dict[int, Future] = {}
        self._internal_ids: Set[int] = set()
        self._listener: Optional[MessageHandler] = None
        self._next_id = 0
        self.stream_url: Optional[str] = None
        self.endpoint_url: Optional[str] = None
        self.session_id: Optional[str] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def open_session(self, base_url: str | None = None) -> str:
        """Open the event stream and wait for the handshake event."""
        base = (base_url or self.config.base_url).rstrip("/")
        stream_url = base if base.endswith("/sse") else f"{base}/sse"
        self.stream_url = stream_url

        try:
            response = self._http.get(
                stream_url,
                headers={"Accept": "text/event-stream", "Cache-Control": "no-cache"},
                stream=True,
                timeout=(self.config.handshake_timeout, None),
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            self.close()
            raise McpConnectionError(f"Cannot open event stream at {stream_url}: {exc}") from exc

        self._stream = response
        self._reader = threading.Thread(
            target=self._read_stream,
            args=(response,),
            name="stepwise-sse-reader",
            daemon=True,
        )
        self._reader.start()

        if not self._handshake.wait(self.config.handshake_timeout):
            self.close()
            raise McpConnectionError(
                f"No handshake from {stream_url} within {self.config.handshake_timeout:g}s"
            )
        if self._handshake_error is not None:
            error = self._handshake_error
            self.close()
            if isinstance(error, McpConnectionError):
                raise error
            raise McpConnectionError(f"Handshake failed: {error}") from error

        logger.info("MCP session %s opened (endpoint %s)", self.session_id, self.endpoint_url)
        return self.session_id  # type: ignore[return-value]

    def initialize(self) -> Dict[str, Any]:
        """Run the MCP ``initialize`` exchange and acknowledge it."""
        result = self._request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": dict(CLIENT_INFO),
            },
        )
        self._post(build_notification("notifications/initialized"))
        server = (result or {}).get("serverInfo", {}) if isinstance(result, dict) else {}
        logger.info("MCP server initialised: %s", server.get("name", "unknown"))
        return result if isinstance(result, dict) else {}

    def list_tools(self) -> List[ToolDescriptor]:
        result = self._request("tools/list", {})
        raw_tools = result.get("tools", []) if isinstance(result, dict) else []
        descriptors: List[ToolDescriptor] = []
        for raw in raw_tools:
            try:
                descriptors.append(ToolDescriptor.model_validate(raw))
            except ValidationError:
                logger.warning("Skipping malformed tool descriptor: %r", raw)
        logger.info("Server advertises %d tools", len(descriptors))
        return descriptors

    def call_tool(self, request_id: int, name: str, arguments: Dict[str, Any]) -> None:
        """Send ``tools/call``. The outcome arrives through the listener."""
        payload = build_request(request_id, "tools/call", {"name": name, "arguments": arguments})
        logger.info("-> tools/call #%d %s", request_id, name)
        response = self._post(payload)
        for message in self._body_messages(response):
            if is_response(message) and _as_int(message.get("id")) == request_id:
                self._emit(normalise_response(message))

    def on_message(self, handler: MessageHandler | None) -> None:
        self._listener = handler

    def next_request_id(self) -> int:
        with self._lock:
            self._next_id += 1
            return self._next_id

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._handshake.set()
        self._fail_pending(McpConnectionError("Client closed"))
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.close()
            except (requests.RequestException, OSError) as exc:
                logger.debug("Error closing event stream: %s", exc)
        self._http.close()
        logger.info("MCP session %s closed", self.session_id)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _post(self, payload: Dict[str, Any]) -> requests.Response:
        if self._closed.is_set():
            raise McpConnectionError("Client is closed")
        if not self.endpoint_url:
            raise McpConnectionError("Session is not open")
        try:
            response = self._http.post(
                self.endpoint_url,
                json=payload,
                timeout=self.config.request_timeout,
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise McpConnectionError(f"POST {payload.get('method')} failed: {exc}") from exc
        return response

    def _request(self, method: str, params: Dict[str, Any]) -> Any:
        """Send an internal request and wait for whichever reply comes first."""
        request_id = self.next_request_id()
        future: Future = Future()
        with self._lock:
            self._pending[request_id] = future
            self._internal_ids.add(request_id)

        try:
            response = self._post(build_request(request_id, method, params))
            for message in self._body_messages(response):
                if is_response(message) and _as_int(message.get("id")) == request_id:
                    self._resolve(request_id, message)
            try:
                message = future.result(timeout=self.config.handshake_timeout)
            except FutureTimeout as exc:
                raise McpConnectionError(
                    f"No {method} response within {self.config.handshake_timeout:g}s"
                ) from exc
        finally:
            with self._lock:
                self._pending.pop(request_id, None)

        if "error" in message:
            error = message.get("error") or {}
            detail = error.get("message") if isinstance(error, dict) else error
            raise ProtocolError(f"{method} failed: {detail}")
        return message.get("result")

    def _resolve(self, request_id: int, message: Dict[str, Any]) -> bool:
        with self._lock:
            future = self._pending.pop(request_id, None)
        if future is None or future.done():
            return False
        future.set_result(message)
        return True

    def _fail_pending(self, error: Exception) -> None:
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)

    def _body_messages(self, response: requests.Response) -> Iterable[Dict[str, Any]]:
        """JSON-RPC messages carried synchronously in a POST response body."""
        text = (response.text or "").strip()
        if not text or text.lower() == "accepted":
            return []
        if text.startswith(("event:", "data:")):
            decoded: List[Any] = []
            for event in iter_events(text.splitlines()):
                decoded.extend(self._decode(event.data))
            return [item for item in decoded if isinstance(item, dict)]
        return [item for item in self._decode(text) if isinstance(item, dict)]

    @staticmethod
    def _decode(data: str) -> List[Any]:
        try:
            parsed = json.loads(data)
        except ValueError:
            logger.debug("Ignoring non-JSON payload: %.200s", data)
            return []
        return parsed if isinstance(parsed, list) else [parsed]

    # ------------------------------------------------------------------
    # Stream reader
    # ------------------------------------------------------------------
    def _read_stream(self, response: requests.Response) -> None:
        reason = "event stream ended"
        try:
            response.encoding = "utf-8"
            lines = response.iter_lines(chunk_size=1, decode_unicode=True)
            for event in iter_events(lines):
                if self._closed.is_set():
                    return
                self._handle_event(event)
        except Exception as exc:  # noqa: BLE001
            reason = f"event stream failed: {exc}"

        if self._closed.is_set():
            return
        error = McpConnectionError(reason)
        if not self._handshake.is_set():
            self._handshake_error = error
            self._handshake.set()
            return

        logger.warning("MCP session %s lost: %s", self.session_id, reason)
        self._fail_pending(error)
        self._emit(McpResponse(request_id=None, ok=False, connection_lost=True, error_message=reason))

    def _handle_event(self, event: SseEvent) -> None:
        if event.event == "endpoint":
            if self._handshake.is_set():
                logger.debug("Ignoring repeated endpoint event: %s", event.data)
                return
            try:
                self.endpoint_url, self.session_id = parse_endpoint(self.stream_url or "", event.data)
            except ProtocolError as exc:
                self._handshake_error = exc
            self._handshake.set()
            return

        for message in self._decode(event.data):
            self._dispatch_message(message)

    def _dispatch_message(self, message: Any) -> None:
        if not is_response(message):
            method = message.get("method") if isinstance(message, dict) else None
            logger.debug("Dropping server message without id (method=%s)", method)
            return

        request_id = _as_int(message.get("id"))
        if request_id is not None and request_id in self._internal_ids:
            if not self._resolve(request_id, message):
                logger.debug("Duplicate reply for internal request #%d dropped", request_id)
            return
        self._emit(normalise_response(message))

    def _emit(self, response: McpResponse) -> None:
        if self._closed.is_set():
            return
        listener = self._listener
        if listener is None:
            logger.debug("No listener for response #%s", response.request_id)
            return
        try:
            listener(response)
        except Exception:  # noqa: BLE001
            logger.exception("Message listener failed for response #%s", response.request_id)
