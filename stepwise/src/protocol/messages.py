"""JSON-RPC 2.0 framing and MCP result normalisation."""
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urljoin, urlparse

from stepwise.src.utils.errors import ProtocolError
from stepwise.src.utils.models import McpResponse

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "stepwise", "version": "0.1.0"}

_SNAPSHOT_MARKERS = ("Page Snapshot", "- Page URL:", "```yaml")


def build_request(request_id: int, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        payload["params"] = params
    return payload


def build_notification(method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        payload["params"] = params
    return payload


def parse_endpoint(base_url: str, data: str) -> Tuple[str, str]:
    """Resolve a handshake path such as ``/messages?sessionId=abc``.

    Returns ``(endpoint_url, session_id)``.
    """
    fragment = (data or "").strip()
    if not fragment:
        raise ProtocolError("Empty endpoint event")
    endpoint_url = urljoin(base_url, fragment)
    parsed = urlparse(endpoint_url)
    query = parse_qs(parsed.query)
    for key in ("sessionId", "session_id"):
        values = query.get(key)
        if values and values[0]:
            return endpoint_url, values[0]
    tail = parsed.path.rstrip("/").rsplit("/", 1)[-1]
    if tail and tail not in ("messages", "message", "sse"):
        return endpoint_url, tail
    raise ProtocolError(f"Endpoint event carries no session id: {fragment!r}")


def is_response(message: Any) -> bool:
    return isinstance(message, dict) and "id" in message and "method" not in message


def _text_items(result: Any):
    if not isinstance(result, dict):
        return
    content = result.get("content")
    if not isinstance(content, list):
        return
    for item in content:
        if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str):
            yield item["text"]


def extract_snapshot(result: Any) -> Optional[str]:
    """Return the first text item that looks like a page-state dump."""
    for text in _text_items(result):
        if any(marker in text for marker in _SNAPSHOT_MARKERS):
            return text
    return None


def _result_error_message(result: Any) -> str:
    texts = [text for text in _text_items(result) if text.strip()]
    if texts:
        return "\n".join(texts)
    return "Tool reported an error"


def normalise_response(message: Dict[str, Any]) -> McpResponse:
    """Turn one JSON-RPC response object into an ``McpResponse``."""
    raw_id = message.get("id")
    request_id: Optional[int]
    try:
        request_id = int(raw_id) if raw_id is not None else None
    except (TypeError, ValueError):
        request_id = None

    if "error" in message:
        error = message.get("error") or {}
        if not isinstance(error, dict):
            error = {"message": str(error)}
        return McpResponse(
            request_id=request_id,
            ok=False,
            error_code=error.get("code"),
            error_message=str(error.get("message") or "Remote error"),
            result=error.get("data"),
        )

    if "result" not in message:
        return McpResponse(
            request_id=request_id,
            ok=False,
            malformed=True,
            error_message="Response carries neither result nor error",
        )

    result = message.get("result")
    snapshot = extract_snapshot(result)
    if isinstance(result, dict) and result.get("isError"):
        return McpResponse(
            request_id=request_id,
            ok=False,
            result=result,
            snapshot=snapshot,
            error_code="tool_error",
            error_message=_result_error_message(result),
        )
    return McpResponse(request_id=request_id, ok=True, result=result, snapshot=snapshot)
