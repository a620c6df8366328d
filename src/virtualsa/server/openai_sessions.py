"""Mint ephemeral OpenAI realtime sessions and relay SDP offers."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from loguru import logger

from virtualsa.config import get_env, get_optional_env
from virtualsa.errors import SessionTransportError
from virtualsa.prompts import voice_agent_instructions

OPENAI_BETA_HEADER = {"OpenAI-Beta": "realtime=v1"}


@dataclass(frozen=True)
class RealtimeSessionGrant:
    client_secret: str
    realtime_url: str
    session_id: Optional[str] = None


def _with_query(url: str, params: Dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


async def create_realtime_session(
    client: httpx.AsyncClient,
    tools: List[Dict[str, Any]],
    additional_instructions: Optional[str] = None,
) -> RealtimeSessionGrant:
    api_key = get_env("OPENAI_API_KEY")
    model = get_env("OPENAI_REALTIME_MODEL")
    base_url = get_env("OPENAI_REALTIME_API_URL").rstrip("/")
    voice = get_optional_env("OPENAI_REALTIME_VOICE")

    payload: Dict[str, Any] = {
        "model": model,
        "instructions": voice_agent_instructions(additional_instructions),
        "tools": tools,
        "tool_choice": "auto",
        "input_audio_transcription": {"model": get_env("OPENAI_TRANSCRIPTION_MODEL")},
    }
    if voice:
        payload["voice"] = voice

    try:
        response = await client.post(
            f"{base_url}/sessions",
            json=payload,
            headers={"Authorization": f"Bearer {api_key}", **OPENAI_BETA_HEADER},
        )
    except httpx.HTTPError as exc:
        raise SessionTransportError(f"Failed to create OpenAI realtime session: {exc}") from exc

    if not response.is_success:
        raise SessionTransportError(
            f"Failed to create OpenAI realtime session: {response.status_code} "
            f"{response.reason_phrase} {response.text}".strip()
        )

    body = response.json()
    secret = (body.get("client_secret") or {}).get("value")
    if not secret:
        raise SessionTransportError("Realtime session response missing client secret.")

    realtime_url = body.get("url")
    if not realtime_url:
        params = {"model": model}
        if voice:
            params["voice"] = voice
        realtime_url = _with_query(base_url, params)

    logger.info(f"Issued OpenAI realtime session token ({body.get('id', 'no id')})")
    return RealtimeSessionGrant(secret, realtime_url, body.get("id"))


async def relay_sdp(client: httpx.AsyncClient, client_secret: str, realtime_url: str, sdp: str) -> str:
    try:
        response = await client.post(
            realtime_url,
            content=sdp.encode("utf-8"),
            headers={
                "Authorization": f"Bearer {client_secret}",
                "Content-Type": "application/sdp",
                **OPENAI_BETA_HEADER,
            },
        )
    except httpx.HTTPError as exc:
        raise SessionTransportError(f"Realtime SDP exchange failed: {exc}") from exc
    if not response.is_success:
        raise SessionTransportError(
            f"Realtime SDP exchange failed: {response.status_code} {response.text}"
        )
    return response.text
