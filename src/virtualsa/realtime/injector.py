"""Write tool results back into the conversation."""

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Iterable, List, Optional

from loguru import logger

from virtualsa.mcp.base import ToolSegment

if TYPE_CHECKING:
    from virtualsa.realtime.session import RealtimeSession

DEFAULT_RESULT_CAP = 4000
TRUNCATION_MARKER = "…"
ERROR_TEXT_CAP = 400
MAX_SUMMARY_SEGMENTS = 3
NO_SUMMARY = "Tool call completed with no textual summary."


def truncate(text: str, cap: int = DEFAULT_RESULT_CAP) -> str:
    if len(text) <= cap:
        return text
    return text[:cap] + TRUNCATION_MARKER


def summarize(tool: str, label: str, segments: Iterable[ToolSegment]) -> str:
    segments = list(segments)
    texts = [s.text.strip() for s in segments if s.type == "text" and s.text and s.text.strip()]
    if texts:
        return "\n\n".join([f"{label} {tool} results:", *texts[:MAX_SUMMARY_SEGMENTS]])
    for segment in segments:
        if segment.type == "json" and segment.text:
            return segment.text
    return NO_SUMMARY


def error_text(error: BaseException) -> str:
    message = str(error).strip() or type(error).__name__
    return message[:ERROR_TEXT_CAP]


@dataclass
class ContinuePolicy:
    """Which tool categories prompt the model to carry on by itself."""

    categories: FrozenSet[str] = field(default_factory=lambda: frozenset({"search", "knowledge"}))
    excerpt_limit: int = 800

    def should_continue(self, category: Optional[str]) -> bool:
        return category is not None and category in self.categories

    def build(self, tool_name: str, content: str) -> Dict[str, Any]:
        excerpt = content.strip()[: self.excerpt_limit]
        if excerpt:
            instructions = (
                f"You just received new information from the tool {tool_name}: {excerpt}\n"
                "Use it to continue the task without waiting for the user unless "
                "clarification is needed."
            )
        else:
            instructions = (
                "Continue assisting the user using the latest tool results. "
                "Only pause if you need clarification."
            )
        return {
            "type": "response.create",
            "response": {
                "modalities": ["text", "audio"],
                "instructions": instructions,
                "metadata": {"resumed_after_tool": tool_name},
            },
        }


def function_call_output(call_id: str, output: str) -> Dict[str, Any]:
    return {
        "type": "conversation.item.create",
        "item": {"type": "function_call_output", "call_id": call_id, "output": output},
    }


def system_message(text: str) -> Dict[str, Any]:
    return {
        "type": "conversation.item.create",
        "item": {
            "type": "message",
            "role": "system",
            "content": [{"type": "input_text", "text": text}],
        },
    }


class ResultInjector:
    def __init__(self, cap: int = DEFAULT_RESULT_CAP, policy: Optional[ContinuePolicy] = None) -> None:
        self.cap = cap
        self.policy = policy or ContinuePolicy()

    def build_frames(
        self,
        call_id: Optional[str],
        content: str,
        *,
        tool_name: str,
        category: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        output = truncate(content, self.cap)
        frames = [function_call_output(call_id, output) if call_id else system_message(output)]
        if self.policy.should_continue(category):
            frames.append(self.policy.build(tool_name, content))
        return frames

    def inject(
        self,
        session: "RealtimeSession",
        call_id: Optional[str],
        content: str,
        *,
        tool_name: str,
        category: Optional[str] = None,
        is_error: bool = False,
    ) -> List[Dict[str, Any]]:
        """Send the result (and maybe a continue request) through the session."""
        frames = self.build_frames(call_id, content, tool_name=tool_name, category=category)
        if call_id:
            session.debug(
                "tool.output",
                json.dumps(
                    {"callId": call_id, "output": frames[0]["item"]["output"], "isError": is_error},
                    indent=2,
                ),
            )
        else:
            logger.warning(f"No call_id for {tool_name}; sending result as a system message")
            session.debug(
                "tool.warning",
                f"Missing call_id for {tool_name}; result sent as uncorrelated system message.",
            )
        for frame in frames:
            session.send(frame)
        return frames
