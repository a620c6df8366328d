"""Reassemble streamed text into finished transcript lines."""

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass
class TranscriptBuffer:
    role: str
    text: str = ""


@dataclass(frozen=True)
class TranscriptLine:
    id: str
    speaker: str
    text: str


BufferMap = Dict[str, TranscriptBuffer]


def upsert(buffers: BufferMap, turn_id: str, role: str, chunk: str) -> TranscriptBuffer:
    buffer = buffers.get(turn_id)
    if buffer is None:
        buffer = buffers[turn_id] = TranscriptBuffer(role=role)
    buffer.text += chunk
    return buffer


def finalize(buffers: BufferMap, turn_id: str) -> Optional[TranscriptLine]:
    """Close a turn. Whitespace-only turns are dropped; unknown ids are a no-op."""
    buffer = buffers.pop(turn_id, None)
    if buffer is None:
        return None
    text = buffer.text.strip()
    if not text:
        return None
    return TranscriptLine(id=turn_id, speaker=buffer.role, text=text)
