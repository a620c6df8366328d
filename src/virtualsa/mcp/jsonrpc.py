"""JSON-RPC 2.0 message helpers for MCP backends."""

import uuid
from typing import Any, Dict, List, Mapping, Optional

from virtualsa.errors import BackendApplicationError
from virtualsa.mcp.base import ToolSegment, segments_from_content

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "virtualsa", "version": "0.1.0"}


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def request(method: str, params: Optional[Dict[str, Any]] = None, request_id: Optional[str] = None) -> Dict[str, Any]:
    message: Dict[str, Any] = {
        "jsonrpc": "2.0",
        "id": request_id or new_request_id(),
        "method": method,
    }
    if params is not None:
        message["params"] = params
    return message


def notification(method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
    if params is not None:
        message["params"] = params
    return message


def initialize_params() -> Dict[str, Any]:
    return {
        "protocolVersion": PROTOCOL_VERSION,
        "capabilities": {},
        "clientInfo": dict(CLIENT_INFO),
    }


def tool_call_params(name: str, arguments: Mapping[str, Any]) -> Dict[str, Any]:
    return {"name": name, "arguments": dict(arguments)}


def raise_for_error(backend: str, response: Any, fallback: str) -> None:
    """Raise BackendApplicationError when ``response`` carries an error member."""
    if not isinstance(response, Mapping):
        raise BackendApplicationError(backend, f"{backend} returned a non-object response.")
    error = response.get("error")
    if error is None:
        return
    if isinstance(error, Mapping):
        code = error.get("code") if isinstance(error.get("code"), int) else None
        message = error.get("message") if isinstance(error.get("message"), str) else None
        raise BackendApplicationError(backend, message or fallback, code)
    raise BackendApplicationError(backend, str(error) or fallback)


def tool_result_segments(backend: str, response: Mapping[str, Any]) -> List[ToolSegment]:
    """Extract segments from a ``tools/call`` response.

    A result flagged ``isError`` is an application error; its text parts
    become the message.
    """
    raise_for_error(backend, response, f"{backend} request failed.")
    result = response.get("result")
    if not isinstance(result, Mapping):
        result = {}
    segments = segments_from_content(result.get("content"))
    if result.get("isError"):
        detail = "; ".join(s.text for s in segments if s.text) or f"{backend} reported an error."
        raise BackendApplicationError(backend, detail)
    structured = result.get("structuredContent")
    if structured is not None:
        segments.append(ToolSegment.payload(structured))
    return segments
