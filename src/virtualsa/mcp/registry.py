"""Prefix routes from model tool names to backend clients."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from virtualsa.config import Settings
from virtualsa.mcp.aws_diagram import create_aws_diagram_client
from virtualsa.mcp.aws_knowledge import AwsKnowledgeClient
from virtualsa.mcp.base import ToolBackendClient
from virtualsa.mcp.perplexity import PerplexityClient
from virtualsa.mcp.tavily import TavilyClient

SEARCH = "search"
KNOWLEDGE = "knowledge"
DIAGRAM = "diagram"

TAVILY_DEFAULTS = {
    "max_results": 4,
    "include_answer": "basic",
    "include_raw_content": False,
    "search_depth": "basic",
}
PERPLEXITY_DEFAULTS = {"max_results": 5, "max_tokens_per_page": 1024}


@dataclass
class BackendRoute:
    prefix: str
    client: ToolBackendClient
    category: str
    label: str
    defaults: Dict[str, Any] = field(default_factory=dict)

    @property
    def backend(self) -> str:
        return self.client.name

    def apply_defaults(self, arguments: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(arguments)
        for key, value in self.defaults.items():
            merged.setdefault(key, value)
        return merged


class BackendRegistry:
    """Resolves a tool name to the route with the longest matching prefix."""

    def __init__(self, routes: Iterable[BackendRoute] = ()) -> None:
        self._routes: List[BackendRoute] = []
        for route in routes:
            self.add(route)

    def add(self, route: BackendRoute) -> None:
        self._routes.append(route)
        self._routes.sort(key=lambda r: len(r.prefix), reverse=True)

    @property
    def routes(self) -> List[BackendRoute]:
        return list(self._routes)

    def match(self, name: str) -> Optional[BackendRoute]:
        for route in self._routes:
            if name.startswith(route.prefix):
                return route
        return None

    async def aclose(self) -> None:
        seen = set()
        for route in self._routes:
            if id(route.client) in seen:
                continue
            seen.add(id(route.client))
            await route.client.aclose()


def build_registry(settings: Settings) -> BackendRegistry:
    """Create the routes for every backend whose configuration is present."""
    registry = BackendRegistry()

    if settings.aws_knowledge_url:
        registry.add(
            BackendRoute(
                prefix="aws_knowledge",
                client=AwsKnowledgeClient(settings.aws_knowledge_url, timeout=settings.tool_timeout),
                category=KNOWLEDGE,
                label="AWS Knowledge",
            )
        )
    if settings.tavily_api_key:
        registry.add(
            BackendRoute(
                prefix="tavily_",
                client=TavilyClient(
                    settings.tavily_api_key, settings.tavily_base_url, timeout=settings.tool_timeout
                ),
                category=SEARCH,
                label="Tavily",
                defaults=dict(TAVILY_DEFAULTS),
            )
        )
    if settings.perplexity_api_key:
        registry.add(
            BackendRoute(
                prefix="perplexity_",
                client=PerplexityClient(settings.perplexity_api_key, settings.perplexity_base_url),
                category=SEARCH,
                label="Perplexity",
                defaults=dict(PERPLEXITY_DEFAULTS),
            )
        )
    registry.add(
        BackendRoute(
            prefix="aws_",
            client=create_aws_diagram_client(settings),
            category=DIAGRAM,
            label="AWS diagram",
        )
    )

    logger.info(
        f"Tool routes: {', '.join(f'{r.prefix}->{r.backend}' for r in registry.routes)}"
    )
    return registry
