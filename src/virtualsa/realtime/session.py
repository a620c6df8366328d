"""The realtime voice session: one inbox, one consumer task."""

import asyncio
import json
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Deque, Dict, List, Optional, Set, Tuple

import httpx
from loguru import logger

from virtualsa.canvas.bridge import CanvasClient
from virtualsa.config import Settings
from virtualsa.mcp.registry import BackendRegistry, build_registry
from virtualsa.realtime import transcript
from virtualsa.realtime.events import (
    USER,
    DecodedEvent,
    EventStreamParser,
    FunctionCallArgumentsDelta,
    FunctionCallArgumentsDone,
    FunctionCallItem,
    TranscriptDelta,
    TranscriptDone,
    new_event_id,
)
from virtualsa.realtime.injector import ContinuePolicy, ResultInjector
from virtualsa.realtime.negotiator import (
    Credentials,
    LocalMedia,
    SessionCallbacks,
    SessionHandle,
    SessionNegotiator,
    SignalingClient,
)
from virtualsa.realtime.router import (
    FunctionCallRequest,
    ToolCall,
    ToolCallRouter,
    ToolCallStatus,
    ToolOutcome,
    resolve_call_id,
    resolve_name,
)
from virtualsa.realtime.transcript import TranscriptLine

DEBUG_TRAIL_LIMIT = 50
FATAL_CONNECTION_STATES = frozenset({"failed", "closed"})


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(frozen=True)
class DebugEvent:
    id: str
    type: str
    label: str
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class InboundFrame:
    raw: Any


@dataclass(frozen=True)
class LocalNotice:
    """A locally synthesized event (connection state, channel lifecycle, canvas)."""

    type: str
    label: str


class RealtimeSession:
    """Owns every piece of per-conversation state.

    Frames, tool outcomes and local notices are queued on ``inbox`` and
    consumed in order by a single task, which is the only code that touches
    the buffers and the tool-call table.
    """

    def __init__(
        self,
        router: ToolCallRouter,
        *,
        session_id: Optional[str] = None,
        parser: Optional[EventStreamParser] = None,
        on_debug: Optional[Callable[[DebugEvent], None]] = None,
        on_transcript: Optional[Callable[[TranscriptLine], None]] = None,
        debug_limit: int = DEBUG_TRAIL_LIMIT,
    ) -> None:
        self.session_id = session_id or f"session_{uuid.uuid4().hex[:12]}"
        self.router = router
        self.parser = parser or EventStreamParser()
        self.on_debug = on_debug
        self.on_transcript = on_transcript

        self.state = SessionState.IDLE
        self.handle: Optional[SessionHandle] = None
        self.channel: Any = None

        self.user_buffers: transcript.BufferMap = {}
        self.assistant_buffers: transcript.BufferMap = {}
        self.argument_buffers: Dict[str, str] = {}
        self.function_items: Dict[str, Tuple[Optional[str], Optional[str]]] = {}
        self.tool_calls: Dict[str, ToolCall] = {}
        self.transcripts: List[TranscriptLine] = []
        self.debug_events: Deque[DebugEvent] = deque(maxlen=debug_limit)

        self.inbox: asyncio.Queue = asyncio.Queue()
        self._loop_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(
        self,
        negotiator: SessionNegotiator,
        request_credentials: Callable[[], Awaitable[Credentials]],
        acquire_local_media: Callable[[], Awaitable[LocalMedia]],
        on_remote_track: Optional[Callable[[Any], None]] = None,
    ) -> None:
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"Session {self.session_id} already {self.state.value}")
        self.state = SessionState.CONNECTING
        logger.info(f"Starting realtime session {self.session_id}")
        callbacks = SessionCallbacks(
            on_remote_track=on_remote_track,
            on_connection_state=lambda state: self.notify("connection.state", state),
            on_control_message=self.feed,
            on_control_open=lambda: self.notify("control_channel.open", "Control channel open"),
            on_control_close=lambda: self.notify("control_channel.close", "Control channel closed"),
        )
        try:
            handle = await negotiator.negotiate(request_credentials, acquire_local_media, callbacks)
        except Exception:
            self.state = SessionState.CLOSED
            raise
        self.handle = handle
        self.attach(handle.control_channel)

    def attach(self, channel: Any) -> None:
        """Bind the control channel and start consuming the inbox."""
        self.channel = channel
        self.state = SessionState.ACTIVE
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._run(), name=f"session-{self.session_id}")

    async def stop(self) -> None:
        await self._teardown("stopped")
        task, self._loop_task = self._loop_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        while not self.inbox.empty():
            self.inbox.get_nowait()
            self.inbox.task_done()

    async def settle(self) -> None:
        """Wait until the inbox is drained and no tool or canvas task is running."""
        while True:
            await self.inbox.join()
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                if self.inbox.empty():
                    return
                continue
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Inputs

    def feed(self, raw: Any) -> None:
        self.post(InboundFrame(raw))

    def notify(self, event_type: str, label: str) -> None:
        self.post(LocalNotice(event_type, label))

    def post(self, item: Any) -> None:
        if self.state is SessionState.CLOSED:
            logger.debug(f"Session {self.session_id} closed; discarding {type(item).__name__}")
            return
        self.inbox.put_nowait(item)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Outputs

    def send(self, frame: Dict[str, Any]) -> bool:
        frame_type = frame.get("type", "?")
        if self.state is SessionState.CLOSED:
            logger.warning(f"Session closed; not sending {frame_type}")
            return False
        channel = self.channel
        if channel is None or getattr(channel, "readyState", None) != "open":
            logger.warning(f"Control channel not open; dropped {frame_type}")
            self.debug("tool.warning", f"Control channel not open; dropped {frame_type}.")
            return False
        channel.send(json.dumps(frame))
        logger.debug(f"Sent {frame_type}")
        return True

    def debug(self, event_type: str, label: str, event_id: Optional[str] = None) -> DebugEvent:
        event = DebugEvent(id=event_id or new_event_id(), type=event_type, label=label)
        self.debug_events.append(event)
        if self.on_debug:
            self.on_debug(event)
        return event

    def cancel_tool(self, call_id_or_key: str) -> bool:
        return self.router.cancel(self, call_id_or_key)

    # ------------------------------------------------------------------
    # Consumer

    async def _run(self) -> None:
        while True:
            item = await self.inbox.get()
            try:
                if self.state is not SessionState.CLOSED:
                    await self._handle(item)
            except Exception:
                logger.exception(f"Session {self.session_id} failed to handle {type(item).__name__}")
            finally:
                self.inbox.task_done()

    async def _handle(self, item: Any) -> None:
        if isinstance(item, InboundFrame):
            decoded = self.parser.parse(item.raw, self)
            if decoded is not None:
                self._dispatch(decoded)
        elif isinstance(item, ToolOutcome):
            self.router.complete(self, item)
        elif isinstance(item, LocalNotice):
            self.debug(item.type, item.label)
            if item.type == "connection.state" and item.label in FATAL_CONNECTION_STATES:
                logger.warning(f"Connection {item.label}; closing session {self.session_id}")
                await self._teardown(f"connection {item.label}")
        else:
            logger.warning(f"Unexpected inbox item {item!r}")

    def _dispatch(self, decoded: DecodedEvent) -> None:
        if isinstance(decoded, TranscriptDelta):
            buffers = self.user_buffers if decoded.role == USER else self.assistant_buffers
            transcript.upsert(buffers, decoded.turn_id, decoded.role, decoded.text)
        elif isinstance(decoded, TranscriptDone):
            buffers = self.user_buffers if decoded.role == USER else self.assistant_buffers
            line = transcript.finalize(buffers, decoded.turn_id)
            if line is not None:
                self.transcripts.append(line)
                if self.on_transcript:
                    self.on_transcript(line)
        elif isinstance(decoded, FunctionCallItem):
            self.function_items[decoded.item_id] = (decoded.call_id, decoded.name)
        elif isinstance(decoded, FunctionCallArgumentsDelta):
            self.argument_buffers[decoded.key] = self.argument_buffers.get(decoded.key, "") + decoded.delta
        elif isinstance(decoded, FunctionCallArgumentsDone):
            self._finish_function_call(decoded)

    def _finish_function_call(self, done: FunctionCallArgumentsDone) -> None:
        payload = done.event.raw_payload
        call_id = resolve_call_id(payload, self.function_items)
        name = resolve_name(payload, self.function_items)

        keys = {k for k in (done.call_id, done.item_id, call_id) if k}
        buffered = next((self.argument_buffers[k] for k in keys if k in self.argument_buffers), None)
        for key in keys:
            self.argument_buffers.pop(key, None)
        if done.item_id:
            self.function_items.pop(done.item_id, None)

        if not name:
            logger.warning(f"Function call without a name (event {done.event.id})")
            self.debug("tool.unsupported", "Function call arrived without a name.")
            return

        arguments = done.arguments if done.arguments is not None else (buffered or "")
        self.router.route(
            self,
            FunctionCallRequest(
                name=name,
                arguments=arguments,
                response_id=done.response_id,
                call_id=call_id,
            ),
        )

    async def _teardown(self, reason: str) -> None:
        if self.state is SessionState.CLOSED:
            return
        logger.info(f"Closing session {self.session_id}: {reason}")
        self.state = SessionState.CLOSED

        for call in self.tool_calls.values():
            if not call.finished:
                call.status = ToolCallStatus.ABANDONED
        self.tool_calls.clear()
        self.user_buffers.clear()
        self.assistant_buffers.clear()
        self.argument_buffers.clear()
        self.function_items.clear()

        handle, self.handle = self.handle, None
        self.channel = None
        if handle is not None:
            await handle.close()


@dataclass
class SessionComponents:
    """A session together with the clients it was wired to."""

    session: RealtimeSession
    negotiator: SessionNegotiator
    signaling: SignalingClient
    registry: BackendRegistry
    canvas: Optional[CanvasClient] = None

    async def start(
        self,
        acquire_local_media: Callable[[], Awaitable[LocalMedia]],
        *,
        instructions: Optional[str] = None,
        on_remote_track: Optional[Callable[[Any], None]] = None,
    ) -> None:
        await self.session.start(
            self.negotiator,
            lambda: self.signaling.request_credentials(instructions),
            acquire_local_media,
            on_remote_track,
        )

    async def aclose(self) -> None:
        await self.session.stop()
        await self.registry.aclose()
        if self.canvas is not None:
            await self.canvas.aclose()
        await self.signaling.aclose()


def build_session(
    settings: Settings,
    *,
    registry: Optional[BackendRegistry] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    **session_kwargs: Any,
) -> SessionComponents:
    """Wire a session from resolved settings.

    ``http_client`` is shared by the signaling and canvas clients when given;
    the tool backends keep their own.
    """
    if registry is None:
        registry = build_registry(settings)
    canvas = (
        CanvasClient(settings.canvas_url, http_client=http_client)
        if settings.canvas_url
        else None
    )
    injector = ResultInjector(
        cap=settings.result_cap,
        policy=ContinuePolicy(categories=settings.continue_categories),
    )
    signaling = SignalingClient(settings.base_url, http_client=http_client)
    negotiator = SessionNegotiator(signaling.exchange_sdp, ice_timeout=settings.ice_timeout)
    session = RealtimeSession(
        ToolCallRouter(registry, canvas=canvas, injector=injector), **session_kwargs
    )
    logger.debug(
        f"Built session {session.session_id}: {len(registry.routes)} routes, "
        f"canvas={'on' if canvas else 'off'}, continue={sorted(settings.continue_categories)}"
    )
    return SessionComponents(session, negotiator, signaling, registry, canvas)
