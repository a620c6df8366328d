"""Runtime configuration for virtualsa.

Settings come from the process environment (optionally seeded from a ``.env``
file). Every variable the project reads is declared in ``ENV_VARS`` so the CLI
can list them.
"""

import os
import shlex
import sys
from dataclasses import dataclass, field

from dotenv import load_dotenv
from loguru import logger

from virtualsa.errors import ConfigurationError


@dataclass
class EnvVar:
    """Definition of an environment variable."""

    name: str
    description: str
    default: str | None = None
    secret: bool = False  # If True, mask value in display
    required: bool = False  # Needed by the credential issuer


ENV_VARS: list[EnvVar] = [
    EnvVar("OPENAI_API_KEY", "OpenAI API key used to mint realtime sessions", secret=True, required=True),
    EnvVar("OPENAI_REALTIME_MODEL", "Realtime model name", required=True),
    EnvVar("OPENAI_REALTIME_API_URL", "Realtime API base URL", required=True),
    EnvVar("OPENAI_REALTIME_VOICE", "Voice preset for the realtime model"),
    EnvVar("OPENAI_TRANSCRIPTION_MODEL", "Input audio transcription model", default="whisper-1"),
    EnvVar("VOICE_TOKEN_ALLOWED_ORIGINS", "Comma-separated origins allowed to call the voice routes"),
    EnvVar("TAVILY_API_KEY", "Tavily API key (enables tavily_* tools)", secret=True),
    EnvVar("TAVILY_API_BASE_URL", "Tavily API base URL", default="https://api.tavily.com"),
    EnvVar("PERPLEXITY_API_KEY", "Perplexity API key (enables perplexity_search)", secret=True),
    EnvVar("PERPLEXITY_API_BASE_URL", "Perplexity API base URL", default="https://api.perplexity.ai"),
    EnvVar("AWS_KNOWLEDGE_MCP_URL", "AWS Knowledge MCP endpoint", default="https://knowledge-mcp.global.api.aws"),
    EnvVar("AWS_DIAGRAM_MCP_MODE", "AWS diagram MCP transport: local or remote", default="local"),
    EnvVar("AWS_DIAGRAM_MCP_URL", "AWS diagram MCP base URL (remote mode)"),
    EnvVar("AWS_DIAGRAM_MCP_COMMAND", "AWS diagram MCP command (local mode)", default="uvx awslabs.aws-diagram-mcp-server"),
    EnvVar("MCP_SERVICE_API_KEY", "API key sent to remote MCP services", secret=True),
    EnvVar("CANVAS_SERVICE_URL", "Canvas service base URL"),
    EnvVar("VIRTUALSA_BASE_URL", "Base URL of the token and SDP relay routes", default="http://localhost:3000"),
    EnvVar("VIRTUALSA_RESULT_CAP", "Maximum characters injected per tool result", default="4000"),
    EnvVar("VIRTUALSA_TOOL_TIMEOUT", "Per-request timeout for tool backends (seconds)", default="30"),
    EnvVar("VIRTUALSA_ICE_TIMEOUT", "ICE gathering timeout (seconds)", default="3.0"),
    EnvVar("VIRTUALSA_CONTINUE_CATEGORIES", "Tool categories that trigger a continue request", default="search,knowledge"),
    EnvVar("VIRTUALSA_LOG_LEVEL", "Loguru level", default="INFO"),
]

# Map of env var name to EnvVar for quick lookup
ENV_VAR_MAP: dict[str, EnvVar] = {var.name: var for var in ENV_VARS}


def _read(name: str) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        declared = ENV_VAR_MAP.get(name)
        return declared.default if declared else None
    return value


def get_env(name: str, fallback: str | None = None) -> str:
    """Return a required variable, raising ConfigurationError when unset."""
    value = _read(name)
    if value is None:
        if fallback is not None:
            return fallback
        raise ConfigurationError(f"Environment variable {name} is not set.")
    return value


def get_optional_env(name: str, fallback: str | None = None) -> str | None:
    value = _read(name)
    return value if value is not None else fallback


def get_csv_env(name: str) -> list[str]:
    value = _read(name)
    if not value:
        return []
    return [entry.strip() for entry in value.split(",") if entry.strip()]


def assert_required_env() -> None:
    missing = [var.name for var in ENV_VARS if var.required and not os.getenv(var.name)]
    if missing:
        raise ConfigurationError(
            f"Missing required environment variables: {', '.join(missing)}"
        )


def _number(name: str, cast):
    raw = get_env(name)
    try:
        return cast(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    """Resolved settings consumed by the session engine and the backends."""

    base_url: str = "http://localhost:3000"
    tavily_api_key: str | None = None
    tavily_base_url: str = "https://api.tavily.com"
    perplexity_api_key: str | None = None
    perplexity_base_url: str = "https://api.perplexity.ai"
    aws_knowledge_url: str | None = "https://knowledge-mcp.global.api.aws"
    aws_diagram_mode: str = "local"
    aws_diagram_url: str | None = None
    aws_diagram_command: tuple[str, ...] = ("uvx", "awslabs.aws-diagram-mcp-server")
    mcp_service_api_key: str | None = None
    canvas_url: str | None = None
    result_cap: int = 4000
    tool_timeout: float = 30.0
    ice_timeout: float = 3.0
    continue_categories: frozenset[str] = field(
        default_factory=lambda: frozenset({"search", "knowledge"})
    )
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        mode = get_env("AWS_DIAGRAM_MCP_MODE").lower()
        if mode not in {"local", "remote"}:
            raise ConfigurationError(
                f"AWS_DIAGRAM_MCP_MODE must be 'local' or 'remote', got {mode!r}"
            )
        return cls(
            base_url=get_env("VIRTUALSA_BASE_URL").rstrip("/"),
            tavily_api_key=get_optional_env("TAVILY_API_KEY"),
            tavily_base_url=get_env("TAVILY_API_BASE_URL").rstrip("/"),
            perplexity_api_key=get_optional_env("PERPLEXITY_API_KEY"),
            perplexity_base_url=get_env("PERPLEXITY_API_BASE_URL").rstrip("/"),
            aws_knowledge_url=get_optional_env("AWS_KNOWLEDGE_MCP_URL"),
            aws_diagram_mode=mode,
            aws_diagram_url=get_optional_env("AWS_DIAGRAM_MCP_URL"),
            aws_diagram_command=tuple(shlex.split(get_env("AWS_DIAGRAM_MCP_COMMAND"))),
            mcp_service_api_key=get_optional_env("MCP_SERVICE_API_KEY"),
            canvas_url=get_optional_env("CANVAS_SERVICE_URL"),
            result_cap=_number("VIRTUALSA_RESULT_CAP", int),
            tool_timeout=_number("VIRTUALSA_TOOL_TIMEOUT", float),
            ice_timeout=_number("VIRTUALSA_ICE_TIMEOUT", float),
            continue_categories=frozenset(get_csv_env("VIRTUALSA_CONTINUE_CATEGORIES")),
            log_level=get_env("VIRTUALSA_LOG_LEVEL").upper(),
        )


def load_settings(dotenv_path: str | None = None) -> Settings:
    """Load ``.env`` (without overriding the real environment) and resolve settings."""
    load_dotenv(dotenv_path)
    return Settings.from_env()


def configure_logging(level: str = "INFO") -> None:
    logger.remove()
    logger.add(sys.stderr, level=level)
