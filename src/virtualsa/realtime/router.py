"""Classify completed function calls and dispatch them to backends."""

import asyncio
import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

from loguru import logger

from virtualsa.canvas.bridge import CanvasClient, CanvasCommand, is_canvas_tool, translate
from virtualsa.errors import ArgumentParseError, BackendError, CanvasError
from virtualsa.mcp.base import ToolSegment
from virtualsa.mcp.registry import BackendRegistry, BackendRoute
from virtualsa.realtime.injector import ResultInjector, error_text, summarize

if TYPE_CHECKING:
    from virtualsa.realtime.session import RealtimeSession


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    INVOKING = "invoking"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class FunctionCallRequest:
    name: str
    arguments: str
    response_id: Optional[str] = None
    call_id: Optional[str] = None


@dataclass
class ToolCall:
    key: str
    name: str
    arguments: Dict[str, Any]
    route: BackendRoute
    call_id: Optional[str] = None
    response_id: Optional[str] = None
    status: ToolCallStatus = ToolCallStatus.PENDING
    signal: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def finished(self) -> bool:
        return self.status in (
            ToolCallStatus.COMPLETED,
            ToolCallStatus.FAILED,
            ToolCallStatus.ABANDONED,
        )


@dataclass(frozen=True)
class ToolOutcome:
    """Posted to the session inbox when a backend call finishes."""

    key: str
    segments: Optional[List[ToolSegment]] = None
    error: Optional[BaseException] = None


def new_call_key() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


def parse_arguments(name: str, arguments: Optional[str]) -> Dict[str, Any]:
    text = arguments if arguments is not None else ""
    if not text.strip():
        return {}
    try:
        parsed = json.loads(text)
    except ValueError as exc:
        raise ArgumentParseError(name, text, str(exc)) from exc
    if not isinstance(parsed, dict):
        raise ArgumentParseError(name, text, "arguments must be a JSON object")
    return parsed


def _function_call(value: Any) -> bool:
    return isinstance(value, Mapping) and (
        value.get("type") == "function_call" or "call_id" in value
    )


def _candidates(payload: Mapping[str, Any], field_name: str) -> List[Tuple[str, str]]:
    """Collect ``field_name`` values from the known locations, most specific first."""
    found: List[Tuple[str, str]] = []

    def add(where: str, value: Any) -> None:
        if isinstance(value, str) and value:
            found.append((where, value))

    response = payload.get("response")
    output = response.get("output") if isinstance(response, Mapping) else None
    if isinstance(output, list):
        content_hit = None
        for entry in output:
            content = entry.get("content") if isinstance(entry, Mapping) else None
            if isinstance(content, list):
                content_hit = next((c for c in content if _function_call(c)), None)
                if content_hit is not None:
                    break
        if content_hit is not None:
            add("response.output[].content[]", content_hit.get(field_name))

        item_id = payload.get("item_id")
        matching = [e for e in output if _function_call(e)]
        preferred = next((e for e in matching if item_id and e.get("id") == item_id), None)
        if preferred is None and matching:
            preferred = matching[0]
        if preferred is not None:
            add("response.output[]", preferred.get(field_name))

    item = payload.get("item")
    if isinstance(item, Mapping):
        add("item", item.get(field_name))
    add(field_name, payload.get(field_name))
    return found


def _pick(candidates: List[Tuple[str, str]], what: str) -> Optional[str]:
    if not candidates:
        return None
    winner = candidates[0][1]
    if len({value for _, value in candidates}) > 1:
        logger.warning(
            f"Conflicting {what} candidates {candidates}; using {winner!r} from {candidates[0][0]}"
        )
    return winner


def resolve_call_id(
    payload: Mapping[str, Any],
    remembered: Optional[Mapping[str, Tuple[Optional[str], Optional[str]]]] = None,
) -> Optional[str]:
    candidates = _candidates(payload, "call_id")
    item_id = payload.get("item_id")
    if remembered and isinstance(item_id, str) and item_id in remembered:
        call_id, _ = remembered[item_id]
        if call_id:
            candidates.append(("function_call item", call_id))
    return _pick(candidates, "call_id")


def resolve_name(
    payload: Mapping[str, Any],
    remembered: Optional[Mapping[str, Tuple[Optional[str], Optional[str]]]] = None,
) -> Optional[str]:
    top = payload.get("name")
    candidates = [("name", top)] if isinstance(top, str) and top else []
    candidates += [c for c in _candidates(payload, "name") if c[0] != "name"]
    item_id = payload.get("item_id")
    if remembered and isinstance(item_id, str) and item_id in remembered:
        _, name = remembered[item_id]
        if name:
            candidates.append(("function_call item", name))
    return _pick(candidates, "name")


class ToolCallRouter:
    """Routes a completed function call to the canvas or a tool backend.

    Backend calls run in their own tasks; their outcomes come back through the
    session inbox and are handled by ``complete`` on the session task.
    """

    def __init__(
        self,
        registry: BackendRegistry,
        *,
        canvas: Optional[CanvasClient] = None,
        injector: Optional[ResultInjector] = None,
    ) -> None:
        self.registry = registry
        self.canvas = canvas
        self.injector = injector or ResultInjector()

    def route(self, session: "RealtimeSession", request: FunctionCallRequest) -> Optional[ToolCall]:
        try:
            arguments = parse_arguments(request.name, request.arguments)
        except ArgumentParseError as exc:
            logger.warning(f"{exc}")
            session.debug(
                "function_call_parse_error",
                json.dumps(
                    {"callName": request.name, "args": exc.arguments, "error": exc.detail},
                    indent=2,
                ),
            )
            return None

        if is_canvas_tool(request.name):
            self._route_canvas(session, request.name, arguments)
            return None

        route = self.registry.match(request.name)
        if route is None:
            logger.warning(f"No backend for tool {request.name}")
            session.debug("tool.unsupported", f"No backend handles {request.name}.")
            return None

        call = ToolCall(
            key=new_call_key(),
            name=request.name,
            arguments=route.apply_defaults(arguments),
            route=route,
            call_id=request.call_id,
            response_id=request.response_id,
        )
        session.tool_calls[call.key] = call
        session.debug(
            f"{route.backend}.request",
            json.dumps({"tool": call.name, "arguments": call.arguments}, indent=2, default=str),
        )
        call.status = ToolCallStatus.INVOKING
        session.spawn(self._invoke(session, call), name=f"tool-{call.key}")
        return call

    def cancel(self, session: "RealtimeSession", call_id_or_key: str) -> bool:
        """Fire the cancellation signal of one in-flight call."""
        for call in session.tool_calls.values():
            if call_id_or_key in (call.key, call.call_id):
                if call.finished:
                    return False
                logger.info(f"Cancelling {call.name} ({call.key})")
                call.signal.set()
                return True
        return False

    async def _invoke(self, session: "RealtimeSession", call: ToolCall) -> None:
        logger.info(f"Invoking {call.name} on {call.route.backend}")
        try:
            segments = await call.route.client.call(call.name, call.arguments, call.signal)
        except BackendError as exc:
            logger.error(f"{call.route.backend} {exc.kind} error for {call.name}: {exc}")
            session.post(ToolOutcome(call.key, error=exc))
        except Exception as exc:
            logger.exception(f"Unexpected failure in {call.name}")
            session.post(ToolOutcome(call.key, error=exc))
        else:
            session.post(ToolOutcome(call.key, segments=segments))

    def complete(self, session: "RealtimeSession", outcome: ToolOutcome) -> None:
        """Record the outcome and inject exactly one result for the call."""
        call = session.tool_calls.pop(outcome.key, None)
        if call is None or call.finished:
            logger.debug(f"Dropping outcome for unknown or finished call {outcome.key}")
            return

        backend = call.route.backend
        if outcome.error is not None:
            call.status = ToolCallStatus.FAILED
            content = error_text(outcome.error)
            session.debug(f"{backend}.error", content)
        else:
            call.status = ToolCallStatus.COMPLETED
            content = summarize(call.name, call.route.label, outcome.segments or [])
            session.debug(f"{backend}.result", content)

        self.injector.inject(
            session,
            call.call_id,
            content,
            tool_name=call.name,
            category=call.route.category,
            is_error=call.status is ToolCallStatus.FAILED,
        )

    def _route_canvas(self, session: "RealtimeSession", name: str, arguments: Dict[str, Any]) -> None:
        command = translate(name, arguments)
        if command is None:
            session.debug("tool.unsupported", f"Unknown canvas command {name}.")
            return
        if self.canvas is None:
            session.debug("canvas.warning", f"Canvas service not configured; dropped {command.type}.")
            return
        session.spawn(self._apply_canvas(session, command), name=f"canvas-{command.id}")

    async def _apply_canvas(self, session: "RealtimeSession", command: CanvasCommand) -> None:
        try:
            result = await self.canvas.apply(session.session_id, [command])
        except CanvasError as exc:
            logger.error(f"Canvas command {command.type} failed: {exc}")
            session.notify("canvas.error", str(exc))
            return
        session.notify(
            "canvas.command",
            json.dumps(command.to_wire(session.session_id), indent=2, default=str),
        )
        for warning in result.get("warnings") or []:
            session.notify("canvas.warning", str(warning))
