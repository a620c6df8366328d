"""AWS Knowledge MCP server (documentation search, read and recommend)."""

from typing import Any, Dict

from virtualsa.mcp.remote import RemoteJsonRpcClient

TOOL_NAME_MAP = {
    "aws_knowledge_search": "aws___search_documentation",
    "aws_knowledge_read": "aws___read_documentation",
    "aws_knowledge_recommend": "aws___recommend",
}

NUMERIC_ARGUMENTS = ("limit", "start_index", "max_length")


class AwsKnowledgeClient(RemoteJsonRpcClient):
    def __init__(self, url: str, **kwargs) -> None:
        super().__init__("aws-knowledge", url, tool_names=TOOL_NAME_MAP, **kwargs)

    def prepare_arguments(self, tool: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        prepared = dict(arguments)
        for field in NUMERIC_ARGUMENTS:
            value = prepared.get(field)
            if isinstance(value, str):
                try:
                    number = float(value)
                except ValueError:
                    continue
                prepared[field] = int(number) if number.is_integer() else number
        return prepared
