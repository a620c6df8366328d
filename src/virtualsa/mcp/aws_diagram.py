"""AWS diagram MCP server, run locally over stdio or reached over HTTP."""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from virtualsa.config import Settings
from virtualsa.errors import BackendApplicationError, ConfigurationError
from virtualsa.mcp import jsonrpc
from virtualsa.mcp.base import ToolBackendClient, ToolSegment
from virtualsa.mcp.remote import HttpBackendClient
from virtualsa.mcp.stdio import StdioJsonRpcClient

BACKEND_NAME = "aws-diagram"

TOOL_NAME_TRANSLATIONS = {
    "aws_generate_diagram": "generate_diagram",
    "aws_list_diagram_icons": "list_icons",
    "aws_get_diagram_examples": "get_diagram_examples",
}


def check_tool(tool: str) -> str:
    try:
        return TOOL_NAME_TRANSLATIONS[tool]
    except KeyError:
        raise BackendApplicationError(BACKEND_NAME, f"Unsupported AWS diagram tool: {tool}") from None


def with_diagram_summary(segments: List[ToolSegment]) -> List[ToolSegment]:
    """Prepend a readable summary when the first segment is the diagram payload.

    ``generate_diagram`` answers with a JSON document holding ``status``,
    ``message`` and the ``path`` of the rendered image.
    """
    if not segments or not isinstance(segments[0].parsed, dict):
        return segments
    info = segments[0].parsed
    lines = []
    if isinstance(info.get("message"), str) and info["message"].strip():
        lines.append(info["message"].strip())
    if info.get("path"):
        lines.append(f"Diagram path: {info['path']}")
    if not lines:
        return segments
    return [ToolSegment.summary("\n".join(lines)), *segments]


class AwsDiagramLocalClient(StdioJsonRpcClient):
    def __init__(self, command: Sequence[str], **kwargs) -> None:
        super().__init__(BACKEND_NAME, command, tool_names=TOOL_NAME_TRANSLATIONS, **kwargs)

    async def call(
        self,
        tool: str,
        arguments: Dict[str, Any],
        signal: Optional[asyncio.Event] = None,
    ) -> List[ToolSegment]:
        check_tool(tool)
        return await super().call(tool, arguments, signal)

    def build_segments(self, tool: str, response: Dict[str, Any]) -> List[ToolSegment]:
        return with_diagram_summary(super().build_segments(tool, response))


class AwsDiagramRemoteClient(HttpBackendClient):
    def __init__(self, base_url: str, api_key: Optional[str] = None, **kwargs) -> None:
        headers = {"Accept": "application/json, text/event-stream"}
        if api_key:
            headers["X-API-Key"] = api_key
        super().__init__(BACKEND_NAME, base_url.rstrip("/"), headers=headers, **kwargs)

    async def call(
        self,
        tool: str,
        arguments: Dict[str, Any],
        signal: Optional[asyncio.Event] = None,
    ) -> List[ToolSegment]:
        name = check_tool(tool)
        body = await self._post_json(
            f"{self._url}/tools/call", {"name": name, "arguments": dict(arguments)}, signal
        )
        return with_diagram_summary(jsonrpc.tool_result_segments(self.name, body))


def create_aws_diagram_client(settings: Settings) -> ToolBackendClient:
    if settings.aws_diagram_mode == "remote":
        if not settings.aws_diagram_url:
            raise ConfigurationError("AWS_DIAGRAM_MCP_URL is required when AWS_DIAGRAM_MCP_MODE=remote")
        logger.info(f"AWS diagram MCP in remote mode at {settings.aws_diagram_url}")
        return AwsDiagramRemoteClient(
            settings.aws_diagram_url,
            settings.mcp_service_api_key,
            timeout=settings.tool_timeout,
        )
    logger.info(f"AWS diagram MCP in local mode: {' '.join(settings.aws_diagram_command)}")
    return AwsDiagramLocalClient(
        settings.aws_diagram_command, request_timeout=settings.tool_timeout
    )
