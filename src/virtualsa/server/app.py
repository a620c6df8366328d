"""HTTP routes that mint realtime credentials and relay SDP offers."""

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
from fastapi import FastAPI, HTTPException, Request
from loguru import logger

from virtualsa.config import Settings, assert_required_env, get_csv_env
from virtualsa.errors import ConfigurationError, SessionTransportError
from virtualsa.server.openai_sessions import create_realtime_session, relay_sdp
from virtualsa.server.tools_schema import get_voice_agent_tools

VERSION = "0.1.0"


def _check_origin(request: Request, action: str) -> None:
    allowed = [origin.lower() for origin in get_csv_env("VOICE_TOKEN_ALLOWED_ORIGINS")]
    if not allowed:
        return
    origin = request.headers.get("origin")
    if not origin or origin.lower() not in allowed:
        logger.warning(f"Rejected {action} from origin {origin!r}")
        raise HTTPException(status_code=403, detail=f"Origin not allowed to {action}.")


async def _json_body(request: Request) -> Optional[Any]:
    try:
        return await request.json()
    except ValueError:
        return None


def create_app(http_client: Optional[httpx.AsyncClient] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = http_client or httpx.AsyncClient(timeout=30.0)
        app.state.http = client
        try:
            yield
        finally:
            if http_client is None:
                await client.aclose()

    app = FastAPI(title="virtualsa", version=VERSION, lifespan=lifespan)

    @app.get("/")
    async def root() -> Dict[str, Any]:
        return {"name": "virtualsa", "version": VERSION, "status": "running"}

    @app.post("/api/voice/token")
    async def issue_token(request: Request) -> Dict[str, str]:
        _check_origin(request, "request voice session tokens")
        try:
            assert_required_env()
            settings = Settings.from_env()
        except ConfigurationError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

        # The body is optional.
        body = await _json_body(request)
        instructions = None
        if isinstance(body, dict) and isinstance(body.get("instructions"), str):
            instructions = body["instructions"].strip() or None

        try:
            grant = await create_realtime_session(
                request.app.state.http, get_voice_agent_tools(settings), instructions
            )
        except SessionTransportError as exc:
            logger.error(f"Failed to obtain realtime session token: {exc}")
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"clientSecret": grant.client_secret, "realtimeUrl": grant.realtime_url}

    @app.post("/api/voice/sdp")
    async def exchange_sdp(request: Request) -> Dict[str, str]:
        _check_origin(request, "perform SDP exchange")
        body = await _json_body(request)
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Invalid JSON payload.")
        secret, url, sdp = body.get("clientSecret"), body.get("realtimeUrl"), body.get("sdp")
        if not all(isinstance(v, str) and v for v in (secret, url, sdp)):
            raise HTTPException(
                status_code=400, detail="Missing clientSecret, realtimeUrl, or sdp in request."
            )

        try:
            answer = await relay_sdp(request.app.state.http, secret, url, sdp)
        except SessionTransportError as exc:
            logger.error(f"Realtime SDP exchange error: {exc}")
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"answer": answer}

    return app


app = create_app()
