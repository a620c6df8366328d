"""Error types shared by the realtime session and the tool backends."""

from typing import Optional


class VirtualSAError(RuntimeError):
    """Base class for every error raised by this package."""


class ConfigurationError(VirtualSAError):
    """Raised when a required setting is missing or malformed."""


class SessionTransportError(VirtualSAError):
    """Negotiation or signaling failed; the session cannot continue."""


class ProtocolDecodeError(VirtualSAError):
    """A control channel frame could not be decoded."""

    def __init__(self, message: str, raw: str) -> None:
        super().__init__(message)
        self.raw = raw


class ArgumentParseError(VirtualSAError):
    """The model supplied tool-call arguments that are not a JSON object."""

    def __init__(self, name: str, arguments: str, detail: str) -> None:
        super().__init__(f"Invalid arguments for {name}: {detail}")
        self.name = name
        self.arguments = arguments
        self.detail = detail


class BackendError(VirtualSAError):
    """A tool backend failed to produce a result.

    ``kind`` tags the failure for diagnostics; every subclass is injected back
    into the conversation as a tool error.
    """

    kind = "backend"

    def __init__(self, backend: str, message: str) -> None:
        super().__init__(message)
        self.backend = backend


class BackendTransportError(BackendError):
    """Network failure, non-2xx status, spawn failure or unreadable body."""

    kind = "transport"

    def __init__(
        self, backend: str, message: str, status: Optional[int] = None
    ) -> None:
        super().__init__(backend, message)
        self.status = status


class BackendApplicationError(BackendError):
    """The backend answered, but with an error envelope."""

    kind = "application"

    def __init__(
        self, backend: str, message: str, code: Optional[int] = None
    ) -> None:
        super().__init__(backend, message)
        self.code = code


class BackendTimeoutError(BackendError):
    """A request did not receive its response in time."""

    kind = "timeout"


class BackendAbortedError(BackendError):
    """The call's cancellation signal fired before it finished."""

    kind = "aborted"


class CanvasError(VirtualSAError):
    """The canvas service rejected or could not receive a command batch."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
