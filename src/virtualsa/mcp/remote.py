"""MCP backends reached over HTTP (one request per call)."""

import asyncio
import json
from typing import Any, Dict, List, Mapping, Optional

import httpx
from loguru import logger

from virtualsa.errors import BackendTransportError
from virtualsa.mcp import jsonrpc
from virtualsa.mcp.base import (
    REMOTE,
    ToolBackend,
    ToolBackendClient,
    ToolSegment,
    run_with_signal,
)


class HttpBackendClient(ToolBackendClient):
    """Base for backends that POST JSON and read JSON back.

    Transport failures (network errors, non-2xx statuses, bodies that are not
    JSON) raise BackendTransportError. A ``text/event-stream`` body is read
    as the JSON carried by its last event. Subclasses decide what counts as an
    application error inside a 2xx body.
    """

    def __init__(
        self,
        name: str,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(ToolBackend(name=name, transport=REMOTE, endpoint_or_command=url))
        self._url = url
        self._headers = dict(headers or {})
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post_json(
        self,
        url: str,
        body: Any,
        signal: Optional[asyncio.Event],
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        merged = {"Content-Type": "application/json", **self._headers, **(headers or {})}
        logger.debug(f"{self.name} POST {url}")
        try:
            response = await run_with_signal(
                self._client.post(url, json=body, headers=merged), signal, self.name
            )
        except httpx.HTTPError as exc:
            raise BackendTransportError(self.name, f"{self.name} request failed: {exc}") from exc

        if not response.is_success:
            raise BackendTransportError(
                self.name,
                self._error_message(response),
                status=response.status_code,
            )
        if response.headers.get("content-type", "").startswith("text/event-stream"):
            return self._decode_event_stream(response)
        try:
            return response.json()
        except ValueError as exc:
            raise BackendTransportError(
                self.name,
                f"{self.name} response was not valid JSON.",
                status=response.status_code,
            ) from exc

    def _decode_event_stream(self, response: httpx.Response) -> Any:
        """Return the JSON payload of the last event in an SSE body."""
        events: List[str] = []
        data: List[str] = []
        for line in response.text.splitlines() + [""]:
            if line.startswith("data:"):
                data.append(line[len("data:") :].lstrip())
            elif not line.strip() and data:
                events.append("\n".join(data))
                data = []
        if not events:
            raise BackendTransportError(
                self.name,
                f"{self.name} event stream carried no data.",
                status=response.status_code,
            )
        try:
            return json.loads(events[-1])
        except ValueError as exc:
            raise BackendTransportError(
                self.name,
                f"{self.name} response was not valid JSON.",
                status=response.status_code,
            ) from exc

    def _error_message(self, response: httpx.Response) -> str:
        text = response.text.strip()
        return (
            f"{self.name} request failed: {response.status_code} "
            f"{response.reason_phrase} {text}"
        ).strip()


class RemoteJsonRpcClient(HttpBackendClient):
    """Generic MCP-over-HTTP client issuing a JSON-RPC ``tools/call``."""

    def __init__(
        self,
        name: str,
        url: str,
        *,
        tool_names: Optional[Mapping[str, str]] = None,
        **kwargs,
    ) -> None:
        super().__init__(name, url, **kwargs)
        self._tool_names = dict(tool_names or {})

    def remote_tool_name(self, tool: str) -> str:
        return self._tool_names.get(tool, tool)

    def prepare_arguments(self, tool: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        return dict(arguments)

    async def call(
        self,
        tool: str,
        arguments: Dict[str, Any],
        signal: Optional[asyncio.Event] = None,
    ) -> List[ToolSegment]:
        message = jsonrpc.request(
            "tools/call",
            jsonrpc.tool_call_params(
                self.remote_tool_name(tool), self.prepare_arguments(tool, arguments)
            ),
        )
        body = await self._post_json(
            self._url,
            message,
            signal,
            headers={"Accept": "application/json, text/event-stream"},
        )
        return jsonrpc.tool_result_segments(self.name, body)
