import asyncio
import json

import pytest

from virtualsa.canvas.bridge import CanvasClient
from virtualsa.config import Settings
from virtualsa.errors import BackendTransportError, CanvasError
from virtualsa.mcp.base import ToolSegment
from virtualsa.realtime.router import ToolCallRouter, ToolCallStatus
from virtualsa.realtime.injector import TRUNCATION_MARKER
from virtualsa.realtime.session import SessionState, build_session
from virtualsa.realtime.transcript import TranscriptLine


def function_call(call_id, name, arguments, item_id="item_1"):
    """The frames the model sends for one streamed function call."""
    half = len(arguments) // 2
    return [
        {
            "type": "response.output_item.added",
            "item": {"type": "function_call", "id": item_id, "call_id": call_id, "name": name},
        },
        {
            "type": "response.function_call_arguments.delta",
            "item_id": item_id,
            "call_id": call_id,
            "delta": arguments[:half],
        },
        {
            "type": "response.function_call_arguments.delta",
            "item_id": item_id,
            "call_id": call_id,
            "delta": arguments[half:],
        },
        {"type": "response.function_call_arguments.done", "item_id": item_id, "call_id": call_id},
    ]


def feed(session, frames):
    for frame in frames:
        session.feed(json.dumps(frame))


def debug_types(session):
    return [event.type for event in session.debug_events]


class DummyCanvas:
    def __init__(self, result=None, error=None):
        self.result = result or {}
        self.error = error
        self.applied = []

    async def apply(self, session_id, commands):
        self.applied.append((session_id, list(commands)))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.mark.asyncio
async def test_user_transcript_is_reassembled(make_session):
    lines = []
    session = make_session(on_transcript=lines.append)
    feed(
        session,
        [
            {"type": "conversation.item.input_audio_transcription.delta", "item_id": "t1", "delta": "Hel"},
            {"type": "conversation.item.input_audio_transcription.delta", "item_id": "t1", "delta": "lo"},
            {"type": "conversation.item.input_audio_transcription.completed", "item_id": "t1"},
        ],
    )
    await session.settle()

    assert session.transcripts == [TranscriptLine(id="t1", speaker="user", text="Hello")]
    assert lines == session.transcripts
    assert session.user_buffers == {}
    await session.stop()


@pytest.mark.asyncio
async def test_search_result_is_injected_once(make_session, channel, backend):
    backend.segments = [ToolSegment.summary("Answer: use S3")]
    session = make_session()
    feed(session, function_call("c1", "tavily_search", '{"query": "aws storage"}'))
    await session.settle()

    assert backend.calls == [("tavily_search", {"query": "aws storage"})]
    outputs = channel.outputs()
    assert len(outputs) == 1
    assert outputs[0]["call_id"] == "c1"
    assert outputs[0]["output"] == "Tavily tavily_search results:\n\nAnswer: use S3"
    assert channel.frames()[-1]["type"] == "response.create"
    assert session.tool_calls == {}
    assert session.argument_buffers == {}
    assert session.function_items == {}
    assert "tavily.request" in debug_types(session)
    assert "tavily.result" in debug_types(session)
    await session.stop()


@pytest.mark.asyncio
async def test_malformed_arguments_are_not_dispatched(make_session, channel, backend):
    session = make_session()
    session.feed(
        json.dumps(
            {
                "type": "response.function_call_arguments.done",
                "call_id": "c2",
                "name": "tavily_search",
                "arguments": "{not json",
            }
        )
    )
    await session.settle()

    assert backend.calls == []
    assert channel.sent == []
    assert "function_call_parse_error" in debug_types(session)
    await session.stop()


@pytest.mark.asyncio
async def test_unknown_tool_is_discarded(make_session, channel):
    session = make_session()
    session.feed(
        json.dumps(
            {"type": "response.function_call_arguments.done", "call_id": "c3", "name": "github_search", "arguments": "{}"}
        )
    )
    await session.settle()

    assert channel.sent == []
    assert "tool.unsupported" in debug_types(session)
    await session.stop()


@pytest.mark.asyncio
async def test_missing_call_id_degrades_to_system_message(make_session, channel):
    session = make_session()
    session.feed(
        json.dumps({"type": "response.function_call_arguments.done", "name": "tavily_search", "arguments": "{}"})
    )
    await session.settle()

    first = channel.frames()[0]
    assert first["item"]["type"] == "message"
    assert first["item"]["role"] == "system"
    assert channel.outputs() == []
    assert "tool.warning" in debug_types(session)
    await session.stop()


@pytest.mark.asyncio
async def test_backend_failure_is_injected_as_error(make_session, channel, backend):
    backend.error = BackendTransportError("tavily", "Tavily API request failed with status 500.", status=500)
    session = make_session()
    feed(session, function_call("c4", "tavily_search", '{"query": "x"}'))
    await session.settle()

    outputs = channel.outputs()
    assert outputs == [
        {"type": "function_call_output", "call_id": "c4", "output": "Tavily API request failed with status 500."}
    ]
    assert "tavily.error" in debug_types(session)
    await session.stop()


@pytest.mark.asyncio
async def test_results_returning_out_of_order_keep_their_call_ids(make_session, channel, backend, until):
    backend.segments_for = {
        "tavily_search": [ToolSegment.summary("search text")],
        "tavily_extract": [ToolSegment.summary("extract text")],
    }
    backend.gates = {"tavily_search": asyncio.Event(), "tavily_extract": asyncio.Event()}
    session = make_session()
    feed(session, function_call("c1", "tavily_search", '{"query": "q"}', item_id="i1"))
    feed(session, function_call("c2", "tavily_extract", '{"urls": ["https://aws.amazon.com"]}', item_id="i2"))
    await until(lambda: len(backend.calls) == 2)

    backend.gates["tavily_extract"].set()
    await until(lambda: len(channel.outputs()) == 1)
    backend.gates["tavily_search"].set()
    await session.settle()

    outputs = channel.outputs()
    assert [o["call_id"] for o in outputs] == ["c2", "c1"]
    assert outputs[0]["output"].endswith("extract text")
    assert outputs[1]["output"].endswith("search text")
    await session.stop()


@pytest.mark.asyncio
async def test_cancel_aborts_only_that_call(make_session, channel, backend, until):
    backend.gates = {"tavily_search": asyncio.Event()}
    session = make_session()
    feed(session, function_call("c5", "tavily_search", '{"query": "slow"}'))
    await until(lambda: len(backend.calls) == 1)

    assert session.cancel_tool("c5") is True
    assert session.cancel_tool("unknown") is False
    await session.settle()

    assert channel.outputs()[0]["output"] == "tavily request aborted."
    await session.stop()


@pytest.mark.asyncio
async def test_teardown_abandons_in_flight_calls(make_session, channel, backend, until):
    gate = asyncio.Event()
    backend.gates = {"tavily_search": gate}
    session = make_session()
    feed(session, function_call("c6", "tavily_search", '{"query": "slow"}'))
    await until(lambda: len(backend.calls) == 1)
    call = next(iter(session.tool_calls.values()))

    await session.stop()

    assert call.status is ToolCallStatus.ABANDONED
    assert session.state is SessionState.CLOSED
    assert session.tool_calls == {}

    gate.set()
    await asyncio.gather(*list(session._tasks))
    assert channel.sent == []
    assert session.send({"type": "response.create"}) is False


@pytest.mark.asyncio
async def test_fatal_connection_state_closes_session(make_session):
    session = make_session()
    session.notify("connection.state", "failed")
    await session.settle()

    assert session.state is SessionState.CLOSED
    assert "connection.state" in debug_types(session)
    await session.stop()


@pytest.mark.asyncio
async def test_closed_channel_drops_frames(make_session, channel):
    channel.readyState = "closing"
    session = make_session()
    feed(session, function_call("c7", "tavily_search", '{"query": "x"}'))
    await session.settle()

    assert channel.sent == []
    assert "tool.warning" in debug_types(session)
    await session.stop()


@pytest.mark.asyncio
async def test_canvas_calls_are_applied_without_injection(registry, make_session, channel):
    canvas = DummyCanvas(result={"warnings": ["Mermaid diagram replaced."]})
    session = make_session(router=ToolCallRouter(registry, canvas=canvas))
    session.feed(
        json.dumps(
            {
                "type": "response.function_call_arguments.done",
                "call_id": "c8",
                "name": "canvas_update_mermaid",
                "arguments": '{"diagram": "graph TD; A-->B"}',
            }
        )
    )
    await session.settle()

    session_id, commands = canvas.applied[0]
    assert session_id == session.session_id
    assert commands[0].type == "mermaid.update"
    assert commands[0].payload == {"diagram": "graph TD; A-->B"}
    assert channel.sent == []
    assert "canvas.command" in debug_types(session)
    assert "canvas.warning" in debug_types(session)
    await session.stop()


@pytest.mark.asyncio
async def test_canvas_failure_becomes_debug_event(registry, make_session):
    canvas = DummyCanvas(error=CanvasError("Canvas session not found", status=404))
    session = make_session(router=ToolCallRouter(registry, canvas=canvas))
    session.feed(
        json.dumps(
            {"type": "response.function_call_arguments.done", "name": "canvas.append_note", "arguments": '{"text": "hi"}'}
        )
    )
    await session.settle()

    errors = [e for e in session.debug_events if e.type == "canvas.error"]
    assert errors[0].label == "Canvas session not found"
    await session.stop()


@pytest.mark.asyncio
async def test_canvas_without_service_is_reported(make_session):
    session = make_session()
    session.feed(
        json.dumps(
            {"type": "response.function_call_arguments.done", "name": "canvas_append_note", "arguments": "{}"}
        )
    )
    await session.settle()

    assert "canvas.warning" in debug_types(session)
    await session.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "categories, frame_types",
    [
        (frozenset({"search"}), ["conversation.item.create", "response.create"]),
        (frozenset({"diagram"}), ["conversation.item.create"]),
    ],
)
async def test_built_session_follows_continue_categories(registry, channel, backend, categories, frame_types):
    backend.segments = [ToolSegment.summary("x" * 100)]
    components = build_session(Settings(continue_categories=categories, result_cap=40), registry=registry)
    session = components.session
    session.attach(channel)

    feed(session, function_call("c1", "tavily_search", '{"query": "aws"}'))
    await session.settle()

    assert [frame["type"] for frame in channel.frames()] == frame_types
    assert channel.outputs()[0]["output"].endswith(TRUNCATION_MARKER)
    assert len(channel.outputs()[0]["output"]) == 40 + len(TRUNCATION_MARKER)

    await components.aclose()
    assert session.state is SessionState.CLOSED
    assert backend.closed == 1


@pytest.mark.asyncio
async def test_built_session_wires_canvas_and_signaling(registry):
    components = build_session(
        Settings(base_url="https://sa.test", canvas_url="https://canvas.test/"), registry=registry
    )

    assert isinstance(components.canvas, CanvasClient)
    assert components.session.router.canvas is components.canvas
    assert components.canvas.base_url == "https://canvas.test"
    assert components.signaling.base_url == "https://sa.test"
    await components.aclose()

    plain = build_session(Settings(), registry=registry)
    assert plain.canvas is None
    await plain.aclose()
