"""Function definitions announced to the realtime model."""

from typing import Any, Dict, List, Optional

from virtualsa.config import Settings


def _function(
    name: str,
    description: str,
    properties: Dict[str, Any],
    required: Optional[List[str]] = None,
) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "description": description,
        "parameters": {
            "type": "object",
            "properties": properties,
            "required": required or [],
            "additionalProperties": False,
        },
    }


def _string(description: str, **extra) -> Dict[str, Any]:
    return {"type": "string", "description": description, **extra}


def _integer(description: str, **extra) -> Dict[str, Any]:
    return {"type": "integer", "description": description, **extra}


def _strings(description: str, **extra) -> Dict[str, Any]:
    return {"type": "array", "items": {"type": "string"}, "description": description, **extra}


EXCALIDRAW_OPERATION = {
    "type": "object",
    "properties": {
        "kind": {"enum": ["add_elements", "update_element", "remove_element", "clear_scene"]},
        "elements": {"type": "array", "items": {"type": "object"}},
        "id": {"type": "string"},
        "props": {"type": "object"},
    },
    "required": ["kind"],
}

CANVAS_TOOLS = [
    _function(
        "canvas_update_mermaid",
        "Generate or update the Mermaid diagram for the current architecture or flow. "
        "Always send the full diagram.",
        {
            "title": _string("Human-readable title for the diagram."),
            "diagram": _string("Complete Mermaid definition, e.g. graph TD ...", minLength=10),
            "focus": _string("Optional node or flow to highlight."),
        },
        ["diagram"],
    ),
    _function(
        "canvas_patch_excalidraw",
        "Apply incremental updates to the shared Excalidraw canvas.",
        {
            "operations": {
                "type": "array",
                "minItems": 1,
                "items": EXCALIDRAW_OPERATION,
                "description": "Drawing operations to apply in order.",
            },
            "summary": _string("Short description of the change."),
        },
        ["operations"],
    ),
    _function(
        "canvas_append_note",
        "Append a note to the session notes shown next to the canvas.",
        {"text": _string("Note text."), "title": _string("Optional heading.")},
        ["text"],
    ),
]

AWS_DIAGRAM_TOOLS = [
    _function(
        "aws_generate_diagram",
        "Generate an AWS architecture diagram with the Python diagrams DSL. Start with "
        "`with Diagram(...):` and do not include imports.",
        {
            "code": _string("Python diagrams code describing the architecture.", minLength=20),
            "filename": {"type": ["string", "null"], "description": "Optional output filename."},
            "timeout": _integer("Generation timeout in seconds (default 90).", minimum=10, maximum=300),
        },
        ["code"],
    ),
    _function(
        "aws_list_diagram_icons",
        "List icon classes available to the diagram generator.",
        {
            "provider_filter": {"type": ["string", "null"], "description": "e.g. aws, gcp."},
            "service_filter": {"type": ["string", "null"], "description": "e.g. compute, database."},
        },
    ),
    _function(
        "aws_get_diagram_examples",
        "Fetch example diagrams code to use as a reference.",
        {
            "diagram_type": {
                "type": ["string", "null"],
                "enum": ["aws", "sequence", "flow", "class", "k8s", "onprem", "custom", "all", None],
                "description": "Optional example category.",
            }
        },
    ),
]

AWS_KNOWLEDGE_TOOLS = [
    _function(
        "aws_knowledge_search",
        "Search official AWS documentation, blogs and guidance.",
        {
            "search_phrase": _string("Search phrase."),
            "limit": _integer("Maximum results (default 5).", minimum=1, maximum=10),
        },
        ["search_phrase"],
    ),
    _function(
        "aws_knowledge_read",
        "Fetch an AWS documentation page as markdown.",
        {
            "url": _string("docs.aws.amazon.com or aws.amazon.com URL."),
            "start_index": _integer("Start offset for partial fetches.", minimum=0),
            "max_length": _integer("Maximum characters to return.", minimum=500, maximum=50000),
        },
        ["url"],
    ),
    _function(
        "aws_knowledge_recommend",
        "Recommend related AWS documentation for a page.",
        {"url": _string("Seed documentation URL.")},
        ["url"],
    ),
]

TAVILY_TOOLS = [
    _function(
        "tavily_search",
        "Search the live web for up-to-date information.",
        {
            "query": _string("Search query."),
            "max_results": _integer("Maximum results.", minimum=1, maximum=10),
            "search_depth": _string("basic or advanced.", enum=["basic", "advanced"]),
            "topic": _string("Search agent.", enum=["general", "news", "finance"]),
            "time_range": _string("Recent time window.", enum=["day", "week", "month", "year"]),
            "include_domains": _strings("Domains to prioritise."),
            "exclude_domains": _strings("Domains to skip."),
            "include_raw_content": {"type": "boolean", "description": "Include cleaned page text."},
        },
        ["query"],
    ),
    _function(
        "tavily_extract",
        "Extract the content of one or more URLs.",
        {
            "urls": _strings("URLs to extract.", minItems=1),
            "extract_depth": _string("basic or advanced.", enum=["basic", "advanced"]),
            "format": _string("Output format.", enum=["markdown", "text"]),
            "include_images": {"type": "boolean", "description": "Include image references."},
        },
        ["urls"],
    ),
    _function(
        "tavily_crawl",
        "Crawl a website and collect content across pages.",
        {
            "url": _string("Root URL."),
            "instructions": _string("What to capture."),
            "limit": _integer("Maximum pages.", minimum=1),
            "max_depth": _integer("Crawl depth.", minimum=1),
            "select_paths": _strings("Path patterns to include."),
            "exclude_paths": _strings("Path patterns to exclude."),
        },
        ["url"],
    ),
    _function(
        "tavily_map",
        "Map how the pages of a site link together.",
        {
            "url": _string("Root URL."),
            "max_depth": _integer("Traversal depth.", minimum=1),
            "max_breadth": _integer("Links per level.", minimum=1),
            "limit": _integer("Total link cap.", minimum=1),
            "allow_external": {"type": "boolean", "description": "Include external links."},
        },
        ["url"],
    ),
]

PERPLEXITY_TOOLS = [
    _function(
        "perplexity_search",
        "Search the web with Perplexity for ranked, citation-ready results.",
        {
            "query": {
                "description": "Query string, or several related queries.",
                "oneOf": [
                    {"type": "string"},
                    {"type": "array", "minItems": 1, "items": {"type": "string"}},
                ],
            },
            "max_results": _integer("Maximum results.", minimum=1, maximum=10),
            "country": {"type": ["string", "null"], "description": "ISO 3166-1 alpha-2 code."},
            "search_mode": {
                "type": ["string", "null"],
                "enum": ["web", "academic", "sec", None],
                "description": "Restrict results to a mode.",
            },
            "max_tokens_per_page": _integer("Content per result.", minimum=128, maximum=2048),
            "max_tokens": _integer("Total extraction budget.", minimum=256, maximum=4096),
        },
        ["query"],
    ),
]


def get_voice_agent_tools(settings: Settings) -> List[Dict[str, Any]]:
    """Every tool whose backend is configured, canvas and diagram tools always."""
    tools = [*CANVAS_TOOLS, *AWS_DIAGRAM_TOOLS]
    if settings.aws_knowledge_url:
        tools.extend(AWS_KNOWLEDGE_TOOLS)
    if settings.tavily_api_key:
        tools.extend(TAVILY_TOOLS)
    if settings.perplexity_api_key:
        tools.extend(PERPLEXITY_TOOLS)
    return tools
