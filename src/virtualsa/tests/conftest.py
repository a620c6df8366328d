"""Shared fixtures for the virtualsa unit tests."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from virtualsa.mcp.base import REMOTE, ToolBackend, ToolBackendClient, ToolSegment, run_with_signal
from virtualsa.mcp.registry import BackendRegistry, BackendRoute
from virtualsa.realtime.router import ToolCallRouter
from virtualsa.realtime.session import RealtimeSession


class DummyChannel:
    """Stands in for the ``oai-events`` data channel."""

    def __init__(self, ready_state: str = "open") -> None:
        self.readyState = ready_state
        self.sent: List[str] = []

    def send(self, data: str) -> None:
        self.sent.append(data)

    def frames(self) -> List[Dict[str, Any]]:
        return [json.loads(data) for data in self.sent]

    def outputs(self) -> List[Dict[str, Any]]:
        return [
            frame["item"]
            for frame in self.frames()
            if frame["type"] == "conversation.item.create"
            and frame["item"]["type"] == "function_call_output"
        ]


class DummyBackend(ToolBackendClient):
    """Answers from memory. A tool listed in ``gates`` waits for its event."""

    def __init__(self, name: str = "tavily", segments: Optional[List[ToolSegment]] = None) -> None:
        super().__init__(ToolBackend(name=name, transport=REMOTE, endpoint_or_command="memory://"))
        self.segments = segments or [ToolSegment.summary("ok")]
        self.segments_for: Dict[str, List[ToolSegment]] = {}
        self.error: Optional[BaseException] = None
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[tuple] = []
        self.closed = 0

    async def call(self, tool, arguments, signal=None):
        self.calls.append((tool, dict(arguments)))
        gate = self.gates.get(tool)
        if gate is not None:
            await run_with_signal(gate.wait(), signal, self.name)
        if self.error is not None:
            raise self.error
        return list(self.segments_for.get(tool, self.segments))

    async def aclose(self) -> None:
        self.closed += 1


@pytest.fixture
def channel() -> DummyChannel:
    return DummyChannel()


@pytest.fixture
def backend() -> DummyBackend:
    return DummyBackend()


@pytest.fixture
def registry(backend) -> BackendRegistry:
    return BackendRegistry([BackendRoute("tavily_", backend, "search", "Tavily")])


@pytest.fixture
def make_session(registry, channel):
    """Build a session bound to ``channel``. Call it from inside a running loop."""

    def factory(router: Optional[ToolCallRouter] = None, **kwargs) -> RealtimeSession:
        session = RealtimeSession(router or ToolCallRouter(registry), **kwargs)
        session.attach(channel)
        return session

    return factory


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def until():
    return wait_until
