"""Shared types for tool backend clients."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Mapping, Optional, TypeVar

from virtualsa.errors import BackendAbortedError

T = TypeVar("T")

REMOTE = "remote"
LOCAL = "local"


@dataclass(frozen=True)
class ToolSegment:
    """One piece of a backend result.

    ``text`` segments hold a human-readable summary, ``json`` segments the
    machine payload (``text`` is its serialized form, ``parsed`` the object).
    """

    type: str
    text: Optional[str] = None
    parsed: Any = None

    @classmethod
    def summary(cls, text: str) -> "ToolSegment":
        return cls(type="text", text=text)

    @classmethod
    def payload(cls, value: Any) -> "ToolSegment":
        return cls(type="json", text=json.dumps(value, indent=2, default=str), parsed=value)


@dataclass(frozen=True)
class ToolBackend:
    """Static registry entry describing where a backend lives."""

    name: str
    transport: str  # REMOTE or LOCAL
    endpoint_or_command: str


class ToolBackendClient(ABC):
    """Uniform entry point for every backend family."""

    def __init__(self, backend: ToolBackend) -> None:
        self.backend = backend

    @property
    def name(self) -> str:
        return self.backend.name

    @abstractmethod
    async def call(
        self,
        tool: str,
        arguments: Dict[str, Any],
        signal: Optional[asyncio.Event] = None,
    ) -> List[ToolSegment]:
        """Run ``tool`` and return its result segments or raise a BackendError."""

    async def aclose(self) -> None:
        """Release pooled resources (HTTP clients)."""


async def run_with_signal(
    awaitable: Awaitable[T],
    signal: Optional[asyncio.Event],
    backend: str,
) -> T:
    """Await ``awaitable`` unless ``signal`` fires first.

    When the signal wins the awaitable is cancelled and BackendAbortedError is
    raised.
    """
    if signal is None:
        return await awaitable
    if signal.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise BackendAbortedError(backend, f"{backend} request aborted.")

    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(signal.wait())
    try:
        done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not work.done():
            work.cancel()
    if work in done:
        return work.result()
    await asyncio.gather(work, return_exceptions=True)
    raise BackendAbortedError(backend, f"{backend} request aborted.")


def segments_from_content(content: Any) -> List[ToolSegment]:
    """Convert an MCP ``content`` array into segments.

    Text parts that hold JSON keep the parsed value in ``parsed``.
    """
    if not isinstance(content, list):
        return []
    segments: List[ToolSegment] = []
    for part in content:
        if not isinstance(part, Mapping):
            continue
        text = part.get("text") if isinstance(part.get("text"), str) else None
        parsed = None
        if text:
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
        segments.append(ToolSegment(type=str(part.get("type") or "text"), text=text, parsed=parsed))
    return segments
