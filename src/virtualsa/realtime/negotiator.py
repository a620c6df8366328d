"""Set up the WebRTC peer connection with the realtime model."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

import httpx
from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from loguru import logger

from virtualsa.errors import SessionTransportError

CONTROL_CHANNEL_LABEL = "oai-events"
DEFAULT_STUN_URLS = ["stun:stun.l.google.com:19302"]
DEFAULT_ICE_TIMEOUT = 3.0


@dataclass(frozen=True)
class Credentials:
    client_secret: str
    realtime_url: str


@dataclass
class LocalMedia:
    """Local tracks attached to the peer connection (usually one audio track)."""

    tracks: List[Any] = field(default_factory=list)
    stopped: bool = False

    def stop(self) -> None:
        if self.stopped:
            return
        self.stopped = True
        for track in self.tracks:
            track.stop()


@dataclass
class SessionCallbacks:
    on_remote_track: Optional[Callable[[Any], None]] = None
    on_connection_state: Optional[Callable[[str], None]] = None
    on_control_message: Optional[Callable[[Any], None]] = None
    on_control_open: Optional[Callable[[], None]] = None
    on_control_close: Optional[Callable[[], None]] = None


@dataclass
class SessionHandle:
    credentials: Credentials
    peer_connection: Any
    control_channel: Any
    media: LocalMedia

    async def close(self) -> None:
        self.media.stop()
        await self.peer_connection.close()


class SignalingClient:
    """Talks to the credential issuer and SDP relay routes."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, path: str, body: dict, failure: str) -> dict:
        try:
            response = await self._client.post(f"{self.base_url}{path}", json=body)
        except httpx.HTTPError as exc:
            raise SessionTransportError(f"{failure}: {exc}") from exc
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not response.is_success:
            message = None
            if isinstance(payload, dict):
                message = payload.get("detail") or payload.get("message")
            raise SessionTransportError(message or f"{failure} ({response.status_code})")
        if not isinstance(payload, dict):
            raise SessionTransportError(f"{failure}: unexpected response body")
        return payload

    async def request_credentials(self, instructions: Optional[str] = None) -> Credentials:
        body = {"instructions": instructions} if instructions else {}
        payload = await self._post(
            "/api/voice/token", body, "Failed to obtain realtime credentials"
        )
        secret, url = payload.get("clientSecret"), payload.get("realtimeUrl")
        if not secret or not url:
            raise SessionTransportError("Credential response is missing clientSecret or realtimeUrl")
        return Credentials(client_secret=secret, realtime_url=url)

    async def exchange_sdp(self, credentials: Credentials, sdp: str) -> str:
        payload = await self._post(
            "/api/voice/sdp",
            {
                "clientSecret": credentials.client_secret,
                "realtimeUrl": credentials.realtime_url,
                "sdp": sdp,
            },
            "Realtime SDP exchange failed",
        )
        answer = payload.get("answer")
        if not isinstance(answer, str) or not answer:
            raise SessionTransportError("SDP relay returned no answer")
        return answer


async def wait_for_ice_gathering(pc: Any, timeout: float = DEFAULT_ICE_TIMEOUT) -> None:
    """Wait until ICE gathering completes, or give up after ``timeout`` seconds."""
    if pc.iceGatheringState == "complete":
        return
    complete = asyncio.Event()

    def on_change() -> None:
        if pc.iceGatheringState == "complete":
            complete.set()

    pc.on("icegatheringstatechange", on_change)
    try:
        await asyncio.wait_for(complete.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"ICE gathering incomplete after {timeout}s; using gathered candidates")
    finally:
        pc.remove_listener("icegatheringstatechange", on_change)


def create_peer_connection(stun_urls: List[str]) -> RTCPeerConnection:
    return RTCPeerConnection(
        configuration=RTCConfiguration(iceServers=[RTCIceServer(urls=list(stun_urls))])
    )


class SessionNegotiator:
    """Produces an active ``SessionHandle`` or raises SessionTransportError.

    Nothing is left running on failure: local media is stopped and the peer
    connection closed before the error propagates.
    """

    def __init__(
        self,
        exchange_sdp: Callable[[Credentials, str], Awaitable[str]],
        *,
        stun_urls: Optional[List[str]] = None,
        ice_timeout: float = DEFAULT_ICE_TIMEOUT,
        peer_connection_factory: Optional[Callable[[List[str]], Any]] = None,
    ) -> None:
        self._exchange_sdp = exchange_sdp
        self._stun_urls = stun_urls or list(DEFAULT_STUN_URLS)
        self._ice_timeout = ice_timeout
        self._pc_factory = peer_connection_factory or create_peer_connection

    async def negotiate(
        self,
        request_credentials: Callable[[], Awaitable[Credentials]],
        acquire_local_media: Callable[[], Awaitable[LocalMedia]],
        callbacks: Optional[SessionCallbacks] = None,
    ) -> SessionHandle:
        callbacks = callbacks or SessionCallbacks()
        credentials, media = await asyncio.gather(
            request_credentials(), acquire_local_media(), return_exceptions=True
        )
        failure = next(
            (r for r in (credentials, media) if isinstance(r, BaseException)), None
        )
        if failure is not None:
            if isinstance(media, LocalMedia):
                media.stop()
            logger.error(f"Session setup failed before negotiation: {failure}")
            if isinstance(failure, SessionTransportError):
                raise failure
            raise SessionTransportError(f"Session setup failed: {failure}") from failure

        pc = None
        try:
            pc = self._pc_factory(self._stun_urls)
            self._register_callbacks(pc, callbacks)

            audio_tracks = [t for t in media.tracks if getattr(t, "kind", None) == "audio"]
            for track in media.tracks:
                pc.addTrack(track)
            if not audio_tracks:
                pc.addTransceiver("audio", direction="recvonly")

            channel = pc.createDataChannel(CONTROL_CHANNEL_LABEL)
            self._register_channel(channel, callbacks)

            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
            await wait_for_ice_gathering(pc, self._ice_timeout)

            local = pc.localDescription
            if local is None or not local.sdp:
                raise SessionTransportError("Local description missing after ICE gathering.")

            answer = await self._exchange_sdp(credentials, local.sdp)
            await pc.setRemoteDescription(RTCSessionDescription(sdp=answer, type="answer"))
        except Exception as exc:
            media.stop()
            if pc is not None:
                await pc.close()
            logger.error(f"Realtime negotiation failed: {exc}")
            if isinstance(exc, SessionTransportError):
                raise
            raise SessionTransportError(f"Realtime negotiation failed: {exc}") from exc

        logger.info("Realtime session negotiated")
        return SessionHandle(
            credentials=credentials, peer_connection=pc, control_channel=channel, media=media
        )

    @staticmethod
    def _register_callbacks(pc: Any, callbacks: SessionCallbacks) -> None:
        if callbacks.on_remote_track:
            pc.on("track", callbacks.on_remote_track)
        if callbacks.on_connection_state:

            def on_state() -> None:
                callbacks.on_connection_state(pc.connectionState)

            pc.on("connectionstatechange", on_state)

    @staticmethod
    def _register_channel(channel: Any, callbacks: SessionCallbacks) -> None:
        if callbacks.on_control_message:
            channel.on("message", callbacks.on_control_message)
        if callbacks.on_control_open:
            channel.on("open", callbacks.on_control_open)
        if callbacks.on_control_close:
            channel.on("close", callbacks.on_control_close)
