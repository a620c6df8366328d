from types import SimpleNamespace

import httpx
import pytest

from virtualsa.errors import SessionTransportError
from virtualsa.realtime.negotiator import (
    CONTROL_CHANNEL_LABEL,
    Credentials,
    LocalMedia,
    SessionCallbacks,
    SessionNegotiator,
    SignalingClient,
)
from virtualsa.realtime.router import ToolCallRouter
from virtualsa.realtime.session import RealtimeSession, SessionState

CREDENTIALS = Credentials(client_secret="ek_test", realtime_url="https://realtime.test/v1?model=m")


class DummyEmitter:
    def __init__(self):
        self.handlers = {}

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def remove_listener(self, event, handler):
        self.handlers[event].remove(handler)

    def emit(self, event, *args):
        for handler in list(self.handlers.get(event, [])):
            handler(*args)


class DummyDataChannel(DummyEmitter):
    def __init__(self, label):
        super().__init__()
        self.label = label
        self.readyState = "connecting"
        self.sent = []

    def send(self, data):
        self.sent.append(data)


class DummyPeerConnection(DummyEmitter):
    def __init__(self, fail_on=None):
        super().__init__()
        self.fail_on = fail_on
        self.tracks = []
        self.transceivers = []
        self.channel = None
        self.localDescription = None
        self.remoteDescription = None
        self.iceGatheringState = "new"
        self.connectionState = "new"
        self.closed = False

    def addTrack(self, track):
        self.tracks.append(track)

    def addTransceiver(self, kind, direction=None):
        self.transceivers.append((kind, direction))

    def createDataChannel(self, label):
        self.channel = DummyDataChannel(label)
        return self.channel

    async def createOffer(self):
        if self.fail_on == "offer":
            raise RuntimeError("offer failed")
        return SimpleNamespace(sdp="v=0 offer", type="offer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.iceGatheringState = "gathering"
        self.iceGatheringState = "complete"
        self.emit("icegatheringstatechange")

    async def setRemoteDescription(self, description):
        self.remoteDescription = description

    async def close(self):
        self.closed = True


class DummyTrack:
    def __init__(self, kind="audio"):
        self.kind = kind
        self.stopped = False

    def stop(self):
        self.stopped = True


def negotiator_for(pc, exchange=None, **kwargs):
    async def default_exchange(credentials, sdp):
        assert credentials == CREDENTIALS
        assert sdp == "v=0 offer"
        return "v=0 answer"

    return SessionNegotiator(exchange or default_exchange, peer_connection_factory=lambda urls: pc, **kwargs)


async def credentials_ok():
    return CREDENTIALS


def media_with(track):
    async def acquire():
        return LocalMedia(tracks=[track])

    return acquire


@pytest.mark.asyncio
async def test_negotiate_returns_active_handle():
    pc = DummyPeerConnection()
    track = DummyTrack()
    states = []

    handle = await negotiator_for(pc).negotiate(
        credentials_ok,
        media_with(track),
        SessionCallbacks(on_connection_state=states.append),
    )

    assert handle.credentials == CREDENTIALS
    assert pc.tracks == [track]
    assert pc.transceivers == []
    assert handle.control_channel.label == CONTROL_CHANNEL_LABEL
    assert pc.remoteDescription.sdp == "v=0 answer"
    assert pc.remoteDescription.type == "answer"

    pc.connectionState = "connected"
    pc.emit("connectionstatechange")
    assert states == ["connected"]

    await handle.close()
    assert track.stopped
    assert pc.closed


@pytest.mark.asyncio
async def test_receive_only_when_no_audio_track():
    pc = DummyPeerConnection()

    async def no_media():
        return LocalMedia()

    await negotiator_for(pc).negotiate(credentials_ok, no_media)

    assert pc.transceivers == [("audio", "recvonly")]


@pytest.mark.asyncio
async def test_credential_failure_releases_media():
    track = DummyTrack()

    async def credentials_fail():
        raise SessionTransportError("token endpoint unavailable")

    with pytest.raises(SessionTransportError, match="token endpoint unavailable"):
        await negotiator_for(DummyPeerConnection()).negotiate(credentials_fail, media_with(track))
    assert track.stopped


@pytest.mark.asyncio
async def test_media_failure_is_transport_error():
    async def media_denied():
        raise PermissionError("microphone denied")

    with pytest.raises(SessionTransportError, match="microphone denied"):
        await negotiator_for(DummyPeerConnection()).negotiate(credentials_ok, media_denied)


@pytest.mark.asyncio
async def test_sdp_failure_stops_media_and_closes_connection():
    pc = DummyPeerConnection()
    track = DummyTrack()

    async def exchange_fails(credentials, sdp):
        raise SessionTransportError("Realtime SDP exchange failed (502)")

    with pytest.raises(SessionTransportError, match="502"):
        await negotiator_for(pc, exchange_fails).negotiate(credentials_ok, media_with(track))
    assert track.stopped
    assert pc.closed


@pytest.mark.asyncio
async def test_offer_failure_is_wrapped():
    pc = DummyPeerConnection(fail_on="offer")
    track = DummyTrack()

    with pytest.raises(SessionTransportError, match="offer failed"):
        await negotiator_for(pc).negotiate(credentials_ok, media_with(track))
    assert track.stopped
    assert pc.closed


@pytest.mark.asyncio
async def test_session_start_wires_control_channel(registry):
    pc = DummyPeerConnection()
    session = RealtimeSession(ToolCallRouter(registry))

    await session.start(negotiator_for(pc), credentials_ok, media_with(DummyTrack()))
    assert session.state is SessionState.ACTIVE

    pc.channel.readyState = "open"
    pc.channel.emit("open")
    pc.channel.emit("message", '{"type": "session.created", "event_id": "evt_1"}')
    await session.settle()

    assert [e.type for e in session.debug_events] == ["control_channel.open", "session.created"]
    await session.stop()
    assert pc.closed


@pytest.mark.asyncio
async def test_session_start_failure_closes_session(registry):
    session = RealtimeSession(ToolCallRouter(registry))

    async def credentials_fail():
        raise SessionTransportError("no token")

    with pytest.raises(SessionTransportError):
        await session.start(negotiator_for(DummyPeerConnection()), credentials_fail, media_with(DummyTrack()))
    assert session.state is SessionState.CLOSED


@pytest.mark.asyncio
async def test_signaling_client_round_trip():
    def handler(request):
        if request.url.path == "/api/voice/token":
            return httpx.Response(200, json={"clientSecret": "ek_1", "realtimeUrl": "https://rt.test"})
        return httpx.Response(200, json={"answer": "v=0 answer"})

    client = SignalingClient(
        "http://relay.test/", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )

    credentials = await client.request_credentials()
    answer = await client.exchange_sdp(credentials, "v=0 offer")

    assert credentials == Credentials("ek_1", "https://rt.test")
    assert answer == "v=0 answer"


@pytest.mark.asyncio
async def test_signaling_client_surfaces_server_detail():
    def handler(request):
        return httpx.Response(403, json={"detail": "Origin not allowed to request voice session tokens."})

    client = SignalingClient(
        "http://relay.test", http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler))
    )

    with pytest.raises(SessionTransportError, match="Origin not allowed"):
        await client.request_credentials()
