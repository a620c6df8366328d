"""Decode control channel frames into typed events.

Every frame from the ``oai-events`` data channel is a JSON object with a
``type`` discriminator. ``decode_frame`` turns the raw text into a
``ProtocolEvent`` and ``decode_event`` narrows that into one of the variants
below. Types the engine does not act on become ``UnknownEvent`` so callers can
still observe them.
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional, Union

from loguru import logger

from virtualsa.errors import ProtocolDecodeError

if TYPE_CHECKING:
    from virtualsa.realtime.session import RealtimeSession

USER = "user"
ASSISTANT = "assistant"

USER_TRANSCRIPT_DELTA = "conversation.item.input_audio_transcription.delta"
USER_TRANSCRIPT_DONE = "conversation.item.input_audio_transcription.completed"
ASSISTANT_DELTA_TYPES = frozenset(
    {
        "response.output_text.delta",
        "response.audio_transcript.delta",
        "response.output_audio_transcript.delta",
    }
)
ASSISTANT_DONE_TYPES = frozenset(
    {
        "response.output_text.done",
        "response.audio_transcript.done",
        "response.output_audio_transcript.done",
        "response.completed",
        "response.done",
    }
)
FUNCTION_ITEM_TYPES = frozenset({"response.output_item.added", "conversation.item.created"})
ARGUMENTS_DELTA = "response.function_call_arguments.delta"
ARGUMENTS_DONE = "response.function_call_arguments.done"


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class ProtocolEvent:
    id: str
    type: str
    raw_payload: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)

    def get(self, key: str, default: Any = None) -> Any:
        return self.raw_payload.get(key, default)


@dataclass(frozen=True)
class TranscriptDelta:
    event: ProtocolEvent
    role: str
    turn_id: str
    text: str


@dataclass(frozen=True)
class TranscriptDone:
    event: ProtocolEvent
    role: str
    turn_id: str


@dataclass(frozen=True)
class FunctionCallItem:
    event: ProtocolEvent
    item_id: str
    call_id: Optional[str]
    name: Optional[str]


@dataclass(frozen=True)
class FunctionCallArgumentsDelta:
    event: ProtocolEvent
    key: str
    delta: str


@dataclass(frozen=True)
class FunctionCallArgumentsDone:
    event: ProtocolEvent
    item_id: Optional[str]
    call_id: Optional[str]
    response_id: Optional[str]
    arguments: Optional[str]


@dataclass(frozen=True)
class UnknownEvent:
    event: ProtocolEvent
    reason: Optional[str] = None


DecodedEvent = Union[
    TranscriptDelta,
    TranscriptDone,
    FunctionCallItem,
    FunctionCallArgumentsDelta,
    FunctionCallArgumentsDone,
    UnknownEvent,
]


def _string(value: Any) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def _nested(payload: Dict[str, Any], key: str, inner: str) -> Optional[str]:
    value = payload.get(key)
    if isinstance(value, dict):
        return _string(value.get(inner))
    return None


def coerce_delta_text(value: Any) -> Optional[str]:
    """Accept a string, a list of strings, or ``{"text": str | [str]}``."""
    if isinstance(value, str):
        return value
    if isinstance(value, list) and all(isinstance(part, str) for part in value):
        return "".join(value)
    if isinstance(value, dict):
        text = value.get("text")
        if isinstance(text, str):
            return text
        if isinstance(text, list) and all(isinstance(part, str) for part in text):
            return "".join(text)
    return None


def decode_frame(raw: Union[str, bytes]) -> ProtocolEvent:
    """Parse one frame. Raises ProtocolDecodeError for anything but a typed object."""
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise ProtocolDecodeError(f"Frame is not valid JSON: {exc}", text) from exc
    if not isinstance(payload, dict):
        raise ProtocolDecodeError("Frame is not a JSON object", text)
    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ProtocolDecodeError("Frame has no type", text)
    event_id = _string(payload.get("event_id")) or new_event_id()
    return ProtocolEvent(id=event_id, type=event_type, raw_payload=payload)


def _user_turn_id(payload: Dict[str, Any]) -> Optional[str]:
    return _nested(payload, "item", "id") or _string(payload.get("item_id"))


def _response_id(payload: Dict[str, Any]) -> Optional[str]:
    return _nested(payload, "response", "id") or _string(payload.get("response_id"))


def _has_arguments(value: Any) -> bool:
    return isinstance(value, dict) and isinstance(value.get("arguments"), str)


def _output_arguments(payload: Dict[str, Any]) -> Optional[str]:
    """Find arguments nested under ``response.output`` in a done event.

    Content parts win over whole entries; among entries the one whose id is
    the event's ``item_id`` is preferred.
    """
    response = payload.get("response")
    output = response.get("output") if isinstance(response, dict) else None
    if not isinstance(output, list):
        return None

    for entry in output:
        content = entry.get("content") if isinstance(entry, dict) else None
        if isinstance(content, list):
            hit = next((c for c in content if _has_arguments(c)), None)
            if hit is not None:
                return hit["arguments"]

    item_id = payload.get("item_id")
    matching = [e for e in output if _has_arguments(e)]
    preferred = next((e for e in matching if item_id and e.get("id") == item_id), None)
    if preferred is None and matching:
        preferred = matching[0]
    return preferred["arguments"] if preferred is not None else None


def decode_event(event: ProtocolEvent) -> DecodedEvent:
    payload = event.raw_payload
    event_type = event.type

    if event_type in (USER_TRANSCRIPT_DELTA, USER_TRANSCRIPT_DONE):
        turn_id = _user_turn_id(payload)
        if turn_id is None:
            return UnknownEvent(event, reason="transcription event without item id")
        if event_type == USER_TRANSCRIPT_DONE:
            return TranscriptDone(event, USER, turn_id)
        text = coerce_delta_text(payload.get("delta"))
        if text is None:
            return UnknownEvent(event, reason="unrecognized transcription delta shape")
        return TranscriptDelta(event, USER, turn_id, text)

    if event_type in ASSISTANT_DELTA_TYPES or event_type in ASSISTANT_DONE_TYPES:
        turn_id = _response_id(payload)
        if turn_id is None:
            return UnknownEvent(event, reason="response event without response id")
        if event_type in ASSISTANT_DONE_TYPES:
            return TranscriptDone(event, ASSISTANT, turn_id)
        text = coerce_delta_text(payload.get("delta"))
        if text is None:
            return UnknownEvent(event, reason="unrecognized response delta shape")
        return TranscriptDelta(event, ASSISTANT, turn_id, text)

    if event_type in FUNCTION_ITEM_TYPES:
        item = payload.get("item")
        if isinstance(item, dict) and item.get("type") == "function_call" and _string(item.get("id")):
            return FunctionCallItem(
                event,
                item_id=item["id"],
                call_id=_string(item.get("call_id")),
                name=_string(item.get("name")),
            )
        return UnknownEvent(event)

    if event_type == ARGUMENTS_DELTA:
        key = _string(payload.get("call_id")) or _string(payload.get("item_id"))
        raw_delta = payload.get("delta", payload.get("arguments_delta"))
        delta = coerce_delta_text(raw_delta)
        if key is None:
            return UnknownEvent(event, reason="argument delta without call_id or item_id")
        if delta is None:
            return UnknownEvent(event, reason="unrecognized argument delta shape")
        return FunctionCallArgumentsDelta(event, key, delta)

    if event_type == ARGUMENTS_DONE:
        arguments = payload.get("arguments")
        return FunctionCallArgumentsDone(
            event,
            item_id=_string(payload.get("item_id")) or _nested(payload, "item", "id"),
            call_id=_string(payload.get("call_id")),
            response_id=_response_id(payload),
            arguments=arguments if isinstance(arguments, str) else _output_arguments(payload),
        )

    return UnknownEvent(event)


def describe(event: ProtocolEvent) -> str:
    return json.dumps(event.raw_payload, indent=2, default=str)


class EventStreamParser:
    """Decodes frames for a session and records them on its debug trail.

    ``parse`` never raises: malformed frames are reported as ``parse_error``
    debug events and dropped.
    """

    def parse(self, raw: Union[str, bytes], session: "RealtimeSession") -> Optional[DecodedEvent]:
        try:
            event = decode_frame(raw)
        except ProtocolDecodeError as exc:
            logger.warning(f"Dropping control frame: {exc}")
            session.debug("parse_error", json.dumps({"error": str(exc), "raw": exc.raw}))
            return None

        session.debug(event.type, describe(event), event_id=event.id)
        decoded = decode_event(event)
        if isinstance(decoded, UnknownEvent) and decoded.reason:
            logger.debug(f"Ignoring {event.type}: {decoded.reason}")
        return decoded
