"""Turn model canvas function calls into canvas service commands."""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Sequence

import httpx
from loguru import logger

from virtualsa.errors import CanvasError

CANVAS_PREFIXES = ("canvas_", "canvas.")

SUPPORTED_COMMANDS = {
    "update_mermaid": "mermaid.update",
    "initialize_excalidraw": "excalidraw.initialize",
    "patch_excalidraw": "excalidraw.patch",
    "append_note": "note.append",
    "set_metadata": "metadata.set",
}


def is_canvas_tool(name: str) -> bool:
    return name.startswith(CANVAS_PREFIXES)


@dataclass(frozen=True)
class CanvasCommand:
    type: str
    payload: Dict[str, Any]
    id: str = field(default_factory=lambda: f"cmd_{uuid.uuid4().hex[:12]}")
    issued_at: int = field(default_factory=lambda: int(time.time() * 1000))
    issued_by: str = "agent"

    def to_wire(self, session_id: str) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": session_id,
            "type": self.type,
            "payload": self.payload,
            "issuedAt": self.issued_at,
            "issuedBy": self.issued_by,
        }


def translate(name: str, arguments: Optional[Dict[str, Any]]) -> Optional[CanvasCommand]:
    """Map ``canvas_update_mermaid`` (or ``canvas.update_mermaid``) to a command.

    Returns None for names the canvas does not understand.
    """
    for prefix in CANVAS_PREFIXES:
        if name.startswith(prefix):
            command_type = SUPPORTED_COMMANDS.get(name[len(prefix):])
            if command_type is None:
                return None
            return CanvasCommand(type=command_type, payload=dict(arguments or {}))
    return None


class CanvasClient:
    """Posts command batches to ``{base_url}/api/canvas/events``."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    def translate(self, name: str, arguments: Optional[Dict[str, Any]]) -> Optional[CanvasCommand]:
        return translate(name, arguments)

    async def apply(self, session_id: str, commands: Sequence[CanvasCommand]) -> Dict[str, Any]:
        batch = {
            "sessionId": session_id,
            "commands": [command.to_wire(session_id) for command in commands],
        }
        url = f"{self.base_url}/api/canvas/events"
        logger.debug(f"POST {url} with {len(commands)} canvas command(s)")
        try:
            response = await self._client.post(url, json=batch)
        except httpx.HTTPError as exc:
            raise CanvasError(f"Failed to send canvas commands: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not response.is_success:
            message = body.get("message") if isinstance(body, dict) else None
            raise CanvasError(
                message or "Failed to send canvas commands.", status=response.status_code
            )
        return body if isinstance(body, dict) else {"result": body}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()