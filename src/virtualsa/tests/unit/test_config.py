import pytest

from virtualsa.config import (
    ENV_VARS,
    Settings,
    assert_required_env,
    get_csv_env,
    get_env,
)
from virtualsa.errors import ConfigurationError
from virtualsa.mcp.aws_diagram import AwsDiagramLocalClient, AwsDiagramRemoteClient
from virtualsa.mcp.registry import build_registry
from virtualsa.server.tools_schema import get_voice_agent_tools


@pytest.fixture
def clean_env(monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var.name, raising=False)
    return monkeypatch


def test_defaults_from_empty_environment(clean_env):
    settings = Settings.from_env()

    assert settings.base_url == "http://localhost:3000"
    assert settings.aws_knowledge_url == "https://knowledge-mcp.global.api.aws"
    assert settings.aws_diagram_mode == "local"
    assert settings.aws_diagram_command == ("uvx", "awslabs.aws-diagram-mcp-server")
    assert settings.tavily_api_key is None
    assert settings.result_cap == 4000
    assert settings.tool_timeout == 30.0
    assert settings.continue_categories == frozenset({"search", "knowledge"})


def test_overrides(clean_env):
    clean_env.setenv("AWS_DIAGRAM_MCP_MODE", "REMOTE")
    clean_env.setenv("AWS_DIAGRAM_MCP_URL", "https://diagram.test")
    clean_env.setenv("VIRTUALSA_RESULT_CAP", "1200")
    clean_env.setenv("VIRTUALSA_CONTINUE_CATEGORIES", "search")
    clean_env.setenv("VIRTUALSA_BASE_URL", "https://sa.test/")

    settings = Settings.from_env()

    assert settings.aws_diagram_mode == "remote"
    assert settings.result_cap == 1200
    assert settings.continue_categories == frozenset({"search"})
    assert settings.base_url == "https://sa.test"


def test_invalid_mode_is_rejected(clean_env):
    clean_env.setenv("AWS_DIAGRAM_MCP_MODE", "docker")
    with pytest.raises(ConfigurationError, match="AWS_DIAGRAM_MCP_MODE"):
        Settings.from_env()


def test_invalid_number_is_rejected(clean_env):
    clean_env.setenv("VIRTUALSA_TOOL_TIMEOUT", "soon")
    with pytest.raises(ConfigurationError, match="VIRTUALSA_TOOL_TIMEOUT"):
        Settings.from_env()


def test_get_env_raises_when_unset(clean_env):
    with pytest.raises(ConfigurationError):
        get_env("OPENAI_API_KEY")
    assert get_env("OPENAI_API_KEY", "fallback") == "fallback"


def test_csv_env(clean_env):
    clean_env.setenv("VOICE_TOKEN_ALLOWED_ORIGINS", " https://a.test ,,https://b.test ")
    assert get_csv_env("VOICE_TOKEN_ALLOWED_ORIGINS") == ["https://a.test", "https://b.test"]


def test_required_env_lists_every_missing_name(clean_env):
    clean_env.setenv("OPENAI_REALTIME_MODEL", "gpt-realtime")
    with pytest.raises(ConfigurationError) as excinfo:
        assert_required_env()
    assert "OPENAI_API_KEY" in str(excinfo.value)
    assert "OPENAI_REALTIME_API_URL" in str(excinfo.value)
    assert "OPENAI_REALTIME_MODEL" not in str(excinfo.value)


@pytest.mark.asyncio
async def test_registry_follows_configuration():
    registry = build_registry(Settings(tavily_api_key="tvly", perplexity_api_key="pplx"))

    assert [route.prefix for route in registry.routes] == ["aws_knowledge", "perplexity_", "tavily_", "aws_"]
    assert registry.match("tavily_search").defaults["max_results"] == 4
    assert registry.match("perplexity_search").category == "search"
    assert isinstance(registry.match("aws_generate_diagram").client, AwsDiagramLocalClient)
    await registry.aclose()


@pytest.mark.asyncio
async def test_registry_without_optional_backends():
    registry = build_registry(
        Settings(aws_knowledge_url=None, aws_diagram_mode="remote", aws_diagram_url="https://diagram.test")
    )

    assert [route.prefix for route in registry.routes] == ["aws_"]
    assert isinstance(registry.routes[0].client, AwsDiagramRemoteClient)
    await registry.aclose()


def test_remote_diagram_requires_url():
    with pytest.raises(ConfigurationError, match="AWS_DIAGRAM_MCP_URL"):
        build_registry(Settings(aws_knowledge_url=None, aws_diagram_mode="remote"))


def test_voice_agent_tools_follow_configuration():
    names = {tool["name"] for tool in get_voice_agent_tools(Settings(aws_knowledge_url=None))}
    assert "canvas_update_mermaid" in names
    assert "aws_generate_diagram" in names
    assert "aws_knowledge_search" not in names
    assert "perplexity_search" not in names

    names = {tool["name"] for tool in get_voice_agent_tools(Settings(perplexity_api_key="pplx"))}
    assert "perplexity_search" in names
