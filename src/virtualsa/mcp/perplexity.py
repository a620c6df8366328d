"""Perplexity web search."""

import asyncio
import math
from typing import Any, Dict, List, Optional

from virtualsa.errors import BackendApplicationError
from virtualsa.mcp.base import ToolSegment
from virtualsa.mcp.remote import HttpBackendClient

SEARCH_MODES = ("web", "academic", "sec")


class PerplexityClient(HttpBackendClient):
    def __init__(self, api_key: str, base_url: str = "https://api.perplexity.ai", **kwargs) -> None:
        kwargs.setdefault("timeout", 45.0)
        super().__init__(
            "perplexity",
            base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {api_key}"},
            **kwargs,
        )

    def _invalid(self, message: str) -> BackendApplicationError:
        return BackendApplicationError(self.name, message)

    def _query(self, value: Any):
        if isinstance(value, str):
            if not value.strip():
                raise self._invalid("query must not be empty.")
            return value.strip()
        if isinstance(value, list):
            entries = [e.strip() for e in value if isinstance(e, str) and e.strip()]
            if not entries:
                raise self._invalid("query array must include at least one non-empty string.")
            return entries[0] if len(entries) == 1 else entries
        if value is None:
            raise self._invalid("query is required for perplexity_search.")
        raise self._invalid("query must be a string or an array of strings.")

    def build_request(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        body: Dict[str, Any] = {"query": self._query(arguments.get("query"))}
        for field in ("max_results", "max_tokens", "max_tokens_per_page"):
            if arguments.get(field) is None:
                continue
            try:
                number = float(arguments[field])
            except (TypeError, ValueError):
                raise self._invalid(f"{field} must be a number.") from None
            if not math.isfinite(number):
                raise self._invalid(f"{field} must be a number.")
            body[field] = int(number)

        country = arguments.get("country")
        if country is not None:
            if not isinstance(country, str) or len(country.strip()) != 2:
                raise self._invalid("country must be a 2-letter ISO code.")
            body["country"] = country.strip().upper()

        mode = arguments.get("search_mode")
        if mode is not None:
            if mode not in SEARCH_MODES:
                raise self._invalid("search_mode must be one of web, academic, or sec.")
            body["search_mode"] = mode
        return body

    async def call(
        self,
        tool: str,
        arguments: Dict[str, Any],
        signal: Optional[asyncio.Event] = None,
    ) -> List[ToolSegment]:
        if tool != "perplexity_search":
            raise self._invalid(f"Unsupported Perplexity tool '{tool}'.")
        payload = await self._post_json(f"{self._url}/search", self.build_request(arguments), signal)

        raw_results = payload.get("results") if isinstance(payload, dict) else None
        results = []
        for entry in raw_results if isinstance(raw_results, list) else []:
            if not isinstance(entry, dict):
                continue
            results.append(
                {
                    "title": entry.get("title") or "",
                    "url": entry.get("url") or "",
                    "snippet": entry.get("snippet") or "",
                    "date": entry.get("date"),
                    "last_updated": entry.get("last_updated"),
                }
            )

        segments = []
        for index, result in enumerate(results, start=1):
            line = f"{index}. {result['title']}"
            if result["date"]:
                line += f" ({result['date']})"
            if result["url"]:
                line += f" - {result['url']}"
            if result["snippet"]:
                line += f"\n{result['snippet']}"
            segments.append(ToolSegment.summary(line))
        segments.append(ToolSegment.payload({"results": results}))
        return segments
