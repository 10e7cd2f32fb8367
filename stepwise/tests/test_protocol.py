import json
import queue
import threading

import pytest
import requests

from stepwise.src.protocol.client import McpSseClient
from stepwise.src.protocol.messages import extract_snapshot, normalise_response, parse_endpoint
from stepwise.src.protocol.sse import iter_events
from stepwise.src.utils.config import MCPConfig
from stepwise.src.utils.errors import McpConnectionError, ProtocolError

WAIT = 2.0


class FakeStream:
    """Streaming GET response fed line by line from a queue."""

    def __init__(self):
        self.lines = queue.Queue()
        self.encoding = None
        self.closed = False

    def raise_for_status(self):
        return None

    def push_event(self, data, event=None):
        if event:
            self.lines.put(f"event: {event}")
        self.lines.put(f"data: {data if isinstance(data, str) else json.dumps(data)}")
        self.lines.put("")

    def end(self):
        self.lines.put(None)

    def iter_lines(self, chunk_size=1, decode_unicode=False):
        while True:
            line = self.lines.get(timeout=10)
            if line is None:
                return
            yield line

    def close(self):
        self.closed = True
        self.end()


class FakePostResponse:
    def __init__(self, text="Accepted", status_code=202):
        self.text = text
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")


class FakeHttp:
    def __init__(self, stream, on_post=None):
        self.stream = stream
        self.on_post = on_post
        self.get_calls = []
        self.posts = []
        self.closed = False

    def get(self, url, headers=None, stream=False, timeout=None):
        self.get_calls.append({"url": url, "headers": headers, "stream": stream})
        return self.stream

    def post(self, url, json=None, timeout=None):
        self.posts.append({"url": url, "json": json})
        if self.on_post is not None:
            return self.on_post(json)
        return FakePostResponse()

    def close(self):
        self.closed = True


def _config(**overrides):
    values = {"base_url": "http://mcp.test", "handshake_timeout": WAIT, "request_timeout": 1.0}
    values.update(overrides)
    return MCPConfig(**values)


def _open_client(on_post=None, **config):
    stream = FakeStream()
    http = FakeHttp(stream, on_post)
    client = McpSseClient(_config(**config), http=http)
    stream.push_event("/messages?sessionId=abc123", event="endpoint")
    client.open_session()
    return client, stream, http


TOOLS_RESULT = {"tools": [{"name": "browser_navigate", "description": "Navigate", "inputSchema": {"type": "object"}}]}


def test_iter_events_groups_fields():
    lines = [": keep-alive", "event: endpoint", "data: /messages?sessionId=1", "", "data: {\"a\":", "data: 1}", ""]

    events = list(iter_events(lines))

    assert [(event.event, event.data) for event in events] == [
        ("endpoint", "/messages?sessionId=1"),
        ("message", "{\"a\":\n1}"),
    ]


def test_parse_endpoint_reads_session_id():
    url, session_id = parse_endpoint("http://mcp.test/sse", "/messages?sessionId=abc")

    assert url == "http://mcp.test/messages?sessionId=abc"
    assert session_id == "abc"


def test_parse_endpoint_without_session_id_fails():
    with pytest.raises(ProtocolError):
        parse_endpoint("http://mcp.test/sse", "/messages")


def test_normalise_error_response():
    response = normalise_response({"jsonrpc": "2.0", "id": 4, "error": {"code": -32602, "message": "Invalid ref"}})

    assert response.request_id == 4
    assert not response.ok
    assert response.error_code == -32602
    assert response.error_message == "Invalid ref"


def test_normalise_tool_error_result():
    response = normalise_response(
        {"jsonrpc": "2.0", "id": "5", "result": {"isError": True, "content": [{"type": "text", "text": "Ref e9 not found"}]}}
    )

    assert response.request_id == 5
    assert not response.ok
    assert response.error_code == "tool_error"
    assert response.error_message == "Ref e9 not found"


def test_normalise_success_extracts_snapshot():
    snapshot = "- Page URL: https://example.com\n- Page Snapshot:\n```yaml\n- link \"Home\"\n```"
    response = normalise_response(
        {
            "jsonrpc": "2.0",
            "id": 6,
            "result": {"content": [{"type": "text", "text": "Clicked"}, {"type": "text", "text": snapshot}]},
        }
    )

    assert response.ok
    assert response.snapshot == snapshot


def test_normalise_without_result_or_error_is_malformed():
    response = normalise_response({"jsonrpc": "2.0", "id": 7})

    assert response.malformed
    assert not response.ok


def test_extract_snapshot_ignores_plain_text():
    assert extract_snapshot({"content": [{"type": "text", "text": "Navigated"}]}) is None


def test_open_session_performs_handshake():
    client, stream, http = _open_client()

    assert client.session_id == "abc123"
    assert client.endpoint_url == "http://mcp.test/messages?sessionId=abc123"
    assert http.get_calls[0]["url"] == "http://mcp.test/sse"
    assert http.get_calls[0]["headers"]["Accept"] == "text/event-stream"
    assert http.get_calls[0]["stream"] is True
    client.close()


def test_handshake_timeout_raises_connection_error():
    stream = FakeStream()
    http = FakeHttp(stream)
    client = McpSseClient(_config(handshake_timeout=0.2), http=http)

    with pytest.raises(McpConnectionError):
        client.open_session()
    assert http.closed
    assert stream.closed


def test_stream_closing_before_handshake_is_connection_error():
    stream = FakeStream()
    client = McpSseClient(_config(), http=FakeHttp(stream))
    stream.end()

    with pytest.raises(McpConnectionError):
        client.open_session()


def test_failed_stream_request_is_connection_error():
    class RefusingHttp(FakeHttp):
        def get(self, url, headers=None, stream=False, timeout=None):
            raise requests.ConnectionError("connection refused")

    client = McpSseClient(_config(), http=RefusingHttp(FakeStream()))

    with pytest.raises(McpConnectionError, match="connection refused"):
        client.open_session()


def test_list_tools_from_synchronous_body():
    def on_post(payload):
        if payload.get("method") == "tools/list":
            return FakePostResponse(json.dumps({"jsonrpc": "2.0", "id": payload["id"], "result": TOOLS_RESULT}), 200)
        return FakePostResponse()

    client, _, _ = _open_client(on_post)

    tools = client.list_tools()

    assert [tool.name for tool in tools] == ["browser_navigate"]
    assert tools[0].input_schema == {"type": "object"}
    client.close()


def test_list_tools_from_stream_resolves_once():
    delivered = []
    streams = {}

    def on_post(payload):
        if payload.get("method") == "tools/list":
            reply = {"jsonrpc": "2.0", "id": payload["id"], "result": TOOLS_RESULT}
            streams["stream"].push_event(reply)
            streams["stream"].push_event(reply)
        return FakePostResponse()

    stream = FakeStream()
    streams["stream"] = stream
    client = McpSseClient(_config(), http=FakeHttp(stream, on_post))
    stream.push_event("/messages?sessionId=s1", event="endpoint")
    client.open_session()
    client.on_message(delivered.append)

    tools = client.list_tools()
    got_marker = threading.Event()
    client.on_message(lambda response: got_marker.set())
    stream.push_event({"jsonrpc": "2.0", "id": 99, "result": {}})

    assert [tool.name for tool in tools] == ["browser_navigate"]
    assert got_marker.wait(WAIT)
    assert delivered == []
    client.close()


def test_initialize_sends_handshake_and_notification():
    def on_post(payload):
        if payload.get("method") == "initialize":
            body = {"jsonrpc": "2.0", "id": payload["id"], "result": {"serverInfo": {"name": "Playwright"}}}
            return FakePostResponse(json.dumps(body), 200)
        return FakePostResponse()

    client, _, http = _open_client(on_post)

    result = client.initialize()

    methods = [post["json"]["method"] for post in http.posts]
    assert methods == ["initialize", "notifications/initialized"]
    assert http.posts[0]["json"]["params"]["protocolVersion"] == "2024-11-05"
    assert "id" not in http.posts[1]["json"]
    assert result["serverInfo"]["name"] == "Playwright"
    client.close()


def test_list_tools_error_is_protocol_error():
    def on_post(payload):
        body = {"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32601, "message": "Method not found"}}
        return FakePostResponse(json.dumps(body), 200)

    client, _, _ = _open_client(on_post)

    with pytest.raises(ProtocolError):
        client.list_tools()
    client.close()


def test_call_tool_result_arrives_through_listener():
    received = []
    arrived = threading.Event()
    client, stream, http = _open_client()

    def listener(response):
        received.append(response)
        arrived.set()

    client.on_message(listener)
    request_id = client.next_request_id()
    client.call_tool(request_id, "browser_navigate", {"url": "https://example.com"})
    stream.push_event(
        {
            "jsonrpc": "2.0",
            "id": request_id,
            "result": {"content": [{"type": "text", "text": "- Page URL: https://example.com"}]},
        }
    )

    assert arrived.wait(WAIT)
    assert http.posts[-1]["json"] == {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "tools/call",
        "params": {"name": "browser_navigate", "arguments": {"url": "https://example.com"}},
    }
    assert received[0].request_id == request_id
    assert received[0].ok
    assert received[0].snapshot == "- Page URL: https://example.com"
    client.close()


def test_call_tool_synchronous_body_is_delivered():
    received = []

    def on_post(payload):
        body = {"jsonrpc": "2.0", "id": payload["id"], "result": {"content": []}}
        return FakePostResponse(json.dumps(body), 200)

    client, _, _ = _open_client(on_post)
    client.on_message(received.append)

    client.call_tool(7, "browser_click", {"ref": "e1"})

    assert [response.request_id for response in received] == [7]
    client.close()


def test_call_tool_transport_failure_raises():
    client, _, _ = _open_client(lambda payload: FakePostResponse("boom", 500))

    with pytest.raises(McpConnectionError):
        client.call_tool(client.next_request_id(), "browser_click", {})
    client.close()


def test_stream_end_reports_connection_loss():
    lost = threading.Event()
    received = []
    client, stream, _ = _open_client()

    def listener(response):
        received.append(response)
        lost.set()

    client.on_message(listener)
    stream.end()

    assert lost.wait(WAIT)
    assert received[0].connection_lost
    assert received[0].request_id is None
    client.close()


def test_close_is_idempotent_and_silences_listener():
    received = []
    client, stream, http = _open_client()
    client.on_message(received.append)

    client.close()
    client.close()
    stream.push_event({"jsonrpc": "2.0", "id": 1, "result": {}})

    assert http.closed
    assert stream.closed
    assert client.closed
    assert received == []


def test_request_ids_increase_per_session():
    client, _, _ = _open_client()

    assert [client.next_request_id() for _ in range(3)] == [1, 2, 3]
    client.close()
