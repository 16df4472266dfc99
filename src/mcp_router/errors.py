"""Error taxonomy for the routing pipeline."""

from __future__ import annotations


class RouterError(Exception):
    """Base class for all router failures."""


class InitializationError(RouterError):
    """Index artifacts could not be loaded or built."""


class EmbeddingDimensionError(InitializationError):
    """An embedding does not match the configured index dimension."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class NoCandidatesError(RouterError):
    """No backend is available to route the request to."""


class ArbitrationParseError(RouterError):
    """The reasoning engine returned an unusable selection payload."""


class SynthesisError(RouterError):
    """The reasoning engine returned an unusable tool-call payload."""


class BackendNotFoundError(RouterError):
    def __init__(self, backend_id: str) -> None:
        super().__init__(f"Backend not found: {backend_id}")
        self.backend_id = backend_id


class BackendConnectionError(RouterError):
    """Spawning or handshaking with a backend failed."""

    def __init__(self, backend_id: str, reason: str) -> None:
        super().__init__(f"Failed to connect to backend {backend_id}: {reason}")
        self.backend_id = backend_id


class NotConnectedError(RouterError):
    def __init__(self, backend_id: str) -> None:
        super().__init__(f"Not connected to backend: {backend_id}")
        self.backend_id = backend_id


class ToolExecutionError(RouterError):
    """A backend reported a failure for a tool call."""

    def __init__(self, backend_id: str, tool_name: str, reason: str) -> None:
        super().__init__(f"Tool {tool_name} failed on {backend_id}: {reason}")
        self.backend_id = backend_id
        self.tool_name = tool_name
        self.reason = reason


class ResourceReadError(RouterError):
    """A backend refused or failed a resource read."""

    def __init__(self, backend_id: str, uri: str, reason: str) -> None:
        super().__init__(f"Reading {uri} from {backend_id} failed: {reason}")
        self.backend_id = backend_id
        self.uri = uri


class TransportTeardownError(RouterError):
    """Closing a session or its transport failed."""


class RouteFailedError(RouterError):
    """A routed request terminated in the error state."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message
