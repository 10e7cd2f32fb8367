"""Protocol client for Playwright MCP servers speaking JSON-RPC over SSE."""
from stepwise.src.protocol.client import McpSseClient
from stepwise.src.protocol.messages import extract_snapshot, normalise_response, parse_endpoint

__all__ = ["McpSseClient", "extract_snapshot", "normalise_response", "parse_endpoint"]
