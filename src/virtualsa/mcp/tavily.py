"""Tavily search, extract, crawl and map over its REST API."""

import asyncio
from typing import Any, Dict, List, Optional

import httpx

from virtualsa.errors import BackendApplicationError
from virtualsa.mcp.base import ToolSegment
from virtualsa.mcp.remote import HttpBackendClient

TAVILY_ENDPOINTS = {
    "tavily_search": "/search",
    "tavily_extract": "/extract",
    "tavily_crawl": "/crawl",
    "tavily_map": "/map",
}

SNIPPET_LIMIT = 280
MAX_SUMMARY_RESULTS = 5


def normalize_list(value: Any) -> Optional[List[str]]:
    """Accept a list of strings or a comma separated string."""
    if not value:
        return None
    if isinstance(value, list):
        return [entry for entry in value if isinstance(entry, str) and entry.strip()]
    if isinstance(value, str):
        return [entry.strip() for entry in value.split(",") if entry.strip()]
    return None


def coerce_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
        return int(number) if number.is_integer() else number
    return None


def coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.lower()
        if lowered == "true":
            return True
        if lowered == "false":
            return False
    return None


def _apply(arguments: Dict[str, Any], fields, coerce) -> None:
    for field in fields:
        value = coerce(arguments.get(field))
        if value is not None:
            arguments[field] = value


def sanitize_arguments(tool: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    """Coerce the loosely typed values the model tends to send."""
    sanitized = dict(arguments)
    if tool == "tavily_search":
        _apply(sanitized, ("include_domains", "exclude_domains"), normalize_list)
        _apply(sanitized, ("max_results", "days"), coerce_number)
        _apply(
            sanitized,
            (
                "include_images",
                "include_image_descriptions",
                "include_raw_content",
                "include_favicon",
            ),
            coerce_bool,
        )
    elif tool == "tavily_extract":
        _apply(sanitized, ("urls",), normalize_list)
        _apply(sanitized, ("include_images", "include_favicon"), coerce_bool)
    elif tool in ("tavily_crawl", "tavily_map"):
        _apply(sanitized, ("max_depth", "max_breadth", "limit"), coerce_number)
        _apply(
            sanitized,
            ("select_paths", "select_domains", "exclude_paths", "exclude_domains"),
            normalize_list,
        )
        _apply(sanitized, ("allow_external",), coerce_bool)
    return sanitized


def _snippet(text: str) -> str:
    if len(text) > SNIPPET_LIMIT:
        return f"{text[:SNIPPET_LIMIT - 3]}..."
    return text


def build_segments(tool: str, payload: Any) -> List[ToolSegment]:
    segments: List[ToolSegment] = []
    if tool == "tavily_search" and isinstance(payload, dict):
        lines: List[str] = []
        answer = payload.get("answer")
        if isinstance(answer, str) and answer.strip():
            lines.append(f"Answer: {answer.strip()}")
        results = payload.get("results")
        if isinstance(results, list) and results:
            lines.append("Top results:")
            for result in results[:MAX_SUMMARY_RESULTS]:
                if not isinstance(result, dict):
                    continue
                title = result.get("title") or result.get("url") or "Result"
                url = f" ({result['url']})" if result.get("url") else ""
                snippet = _snippet(result.get("snippet") or result.get("content") or "")
                line = f"- {title}{url}"
                if snippet:
                    line += f"\n  {snippet}"
                lines.append(line)
        if lines:
            segments.append(ToolSegment.summary("\n".join(lines)))
    segments.append(ToolSegment.payload(payload))
    return segments


class TavilyClient(HttpBackendClient):
    def __init__(self, api_key: str, base_url: str = "https://api.tavily.com", **kwargs) -> None:
        super().__init__("tavily", base_url.rstrip("/"), **kwargs)
        self._api_key = api_key

    async def call(
        self,
        tool: str,
        arguments: Dict[str, Any],
        signal: Optional[asyncio.Event] = None,
    ) -> List[ToolSegment]:
        endpoint = TAVILY_ENDPOINTS.get(tool)
        if endpoint is None:
            raise BackendApplicationError(self.name, f"Unsupported Tavily tool: {tool}")
        body = {"api_key": self._api_key, **sanitize_arguments(tool, arguments)}
        payload = await self._post_json(f"{self._url}{endpoint}", body, signal)
        return build_segments(tool, payload)

    def _error_message(self, response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            if isinstance(body.get("message"), str):
                return body["message"]
            error = body.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                return error["message"]
        return f"Tavily API request failed with status {response.status_code}."
