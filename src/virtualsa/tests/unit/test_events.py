import json

import pytest

from virtualsa.errors import ProtocolDecodeError
from virtualsa.realtime.events import (
    ARGUMENTS_DELTA,
    ARGUMENTS_DONE,
    ASSISTANT,
    USER,
    EventStreamParser,
    FunctionCallArgumentsDelta,
    FunctionCallArgumentsDone,
    FunctionCallItem,
    TranscriptDelta,
    TranscriptDone,
    UnknownEvent,
    decode_event,
    decode_frame,
)


class DummySession:
    def __init__(self):
        self.events = []

    def debug(self, event_type, label, event_id=None):
        self.events.append((event_type, label, event_id))


def decode(payload):
    return decode_event(decode_frame(json.dumps(payload)))


@pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '"text"', '{"delta": "x"}', '{"type": ""}'])
def test_decode_frame_rejects_untyped_frames(raw):
    with pytest.raises(ProtocolDecodeError) as excinfo:
        decode_frame(raw)
    assert excinfo.value.raw == raw


def test_decode_frame_keeps_server_event_id():
    event = decode_frame(json.dumps({"type": "session.created", "event_id": "evt_server"}))
    assert event.id == "evt_server"
    assert event.type == "session.created"


def test_decode_frame_assigns_id_when_missing():
    event = decode_frame(b'{"type": "session.created"}')
    assert event.id.startswith("evt_")


@pytest.mark.parametrize("delta", ["Hel", ["H", "el"], {"text": "Hel"}, {"text": ["He", "l"]}])
def test_user_transcript_delta_shapes(delta):
    decoded = decode(
        {
            "type": "conversation.item.input_audio_transcription.delta",
            "item_id": "item_1",
            "delta": delta,
        }
    )
    assert isinstance(decoded, TranscriptDelta)
    assert decoded.role == USER
    assert decoded.turn_id == "item_1"
    assert decoded.text == "Hel"


def test_user_transcript_prefers_item_object_id():
    decoded = decode(
        {
            "type": "conversation.item.input_audio_transcription.completed",
            "item": {"id": "item_obj"},
            "item_id": "item_flat",
        }
    )
    assert isinstance(decoded, TranscriptDone)
    assert decoded.turn_id == "item_obj"


def test_unrecognized_delta_shape_is_unknown():
    decoded = decode(
        {
            "type": "conversation.item.input_audio_transcription.delta",
            "item_id": "item_1",
            "delta": 42,
        }
    )
    assert isinstance(decoded, UnknownEvent)
    assert decoded.reason == "unrecognized transcription delta shape"


def test_assistant_audio_transcript_delta_uses_response_id():
    decoded = decode({"type": "response.audio_transcript.delta", "response_id": "resp_1", "delta": "Hi"})
    assert isinstance(decoded, TranscriptDelta)
    assert decoded.role == ASSISTANT
    assert decoded.turn_id == "resp_1"


def test_response_done_closes_assistant_turn():
    decoded = decode({"type": "response.done", "response": {"id": "resp_1"}})
    assert isinstance(decoded, TranscriptDone)
    assert decoded.role == ASSISTANT
    assert decoded.turn_id == "resp_1"


def test_response_event_without_id_is_unknown():
    decoded = decode({"type": "response.output_text.delta", "delta": "Hi"})
    assert isinstance(decoded, UnknownEvent)
    assert decoded.reason is not None


def test_function_call_item_is_remembered():
    decoded = decode(
        {
            "type": "response.output_item.added",
            "item": {"type": "function_call", "id": "item_9", "call_id": "c1", "name": "tavily_search"},
        }
    )
    assert isinstance(decoded, FunctionCallItem)
    assert (decoded.item_id, decoded.call_id, decoded.name) == ("item_9", "c1", "tavily_search")


def test_message_item_is_not_a_function_call():
    decoded = decode({"type": "conversation.item.created", "item": {"type": "message", "id": "m1"}})
    assert isinstance(decoded, UnknownEvent)


def test_arguments_delta_accepts_legacy_field_and_item_id():
    decoded = decode({"type": ARGUMENTS_DELTA, "item_id": "item_1", "arguments_delta": '{"q"'})
    assert isinstance(decoded, FunctionCallArgumentsDelta)
    assert decoded.key == "item_1"
    assert decoded.delta == '{"q"'


def test_arguments_delta_prefers_call_id():
    decoded = decode({"type": ARGUMENTS_DELTA, "item_id": "item_1", "call_id": "c1", "delta": "{"})
    assert decoded.key == "c1"


def test_arguments_done_reads_nested_arguments():
    decoded = decode(
        {
            "type": ARGUMENTS_DONE,
            "item_id": "item_1",
            "response": {"id": "resp_1", "output": [{"content": [{"arguments": '{"q": 1}'}]}]},
        }
    )
    assert isinstance(decoded, FunctionCallArgumentsDone)
    assert decoded.arguments == '{"q": 1}'
    assert decoded.response_id == "resp_1"
    assert decoded.call_id is None


def test_arguments_done_finds_later_output_entry():
    decoded = decode(
        {
            "type": ARGUMENTS_DONE,
            "item_id": "item_2",
            "response": {
                "output": [
                    {"type": "message", "id": "msg_1", "content": [{"type": "text", "text": "Looking"}]},
                    {"type": "function_call", "id": "item_1", "arguments": '{"q": "old"}'},
                    {"type": "function_call", "id": "item_2", "arguments": '{"q": "new"}'},
                ]
            },
        }
    )
    assert decoded.arguments == '{"q": "new"}'


def test_arguments_done_without_arguments_leaves_them_unset():
    decoded = decode({"type": ARGUMENTS_DONE, "call_id": "c1"})
    assert decoded.arguments is None
    assert decoded.item_id is None


def test_parser_reports_parse_error_without_raising():
    session = DummySession()
    assert EventStreamParser().parse("nope", session) is None

    event_type, label, _ = session.events[0]
    assert event_type == "parse_error"
    assert json.loads(label)["raw"] == "nope"


def test_parser_records_every_decoded_frame():
    session = DummySession()
    decoded = EventStreamParser().parse(
        json.dumps({"type": "session.created", "event_id": "evt_7"}), session
    )

    assert isinstance(decoded, UnknownEvent)
    assert [(t, i) for t, _, i in session.events] == [("session.created", "evt_7")]
