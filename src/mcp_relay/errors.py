"""
Error taxonomy for MCP Relay.

Every error raised while serving a request derives from RelayError and
knows how to render itself as a JSON-RPC error object, so the gateway can
answer the upstream caller without special-casing each failure.
"""

from __future__ import annotations

from typing import Any

from mcp_relay.jsonrpc import (
    INVALID_PARAMS,
    RESOURCE_NOT_FOUND,
    SERVER_ERROR,
)


class RelayError(Exception):
    """Base class for gateway errors."""

    code: int = SERVER_ERROR

    def to_error(self) -> dict[str, Any]:
        """Render as a JSON-RPC error object."""
        return {"code": self.code, "message": str(self)}


class ConnectError(RelayError):
    """A downstream server could not be started or initialized."""

    def __init__(self, server: str, cause: BaseException) -> None:
        super().__init__(f"Failed to connect to {server}: {cause}")
        self.server = server
        self.cause = cause


class ListError(RelayError):
    """A downstream server failed to list its tools or resources."""

    def __init__(self, server: str, kind: str, cause: BaseException) -> None:
        super().__init__(f"Failed to list {kind} for {server}: {cause}")
        self.server = server
        self.kind = kind
        self.cause = cause


class DownstreamError(RelayError):
    """A downstream server answered a request with a JSON-RPC error.

    The original error object is kept so it can be relayed unmodified.
    """

    def __init__(self, server: str, error: dict[str, Any]) -> None:
        self.server = server
        self.error = error
        code = error.get("code")
        self.code = code if isinstance(code, int) and not isinstance(code, bool) else SERVER_ERROR
        super().__init__(str(error.get("message", "Unknown error")))

    def to_error(self) -> dict[str, Any]:
        return self.error


class ConnectionClosedError(RelayError):
    """The downstream process exited or closed its stdout."""

    def __init__(self, server: str, returncode: int | None = None) -> None:
        detail = f" (exit code {returncode})" if returncode is not None else ""
        super().__init__(f"Server {server} disconnected{detail}")
        self.server = server
        self.returncode = returncode


class RequestTimeoutError(RelayError):
    """A downstream request exceeded the configured request timeout."""

    def __init__(self, server: str, method: str, timeout: float) -> None:
        super().__init__(f"Timeout after {timeout:g}s waiting for {method} from {server}")
        self.server = server
        self.method = method
        self.timeout = timeout


class InvalidParamsError(RelayError):
    code = INVALID_PARAMS


class ToolNotFoundError(RelayError):
    """No connected server's namespace prefix matches the requested tool."""

    code = INVALID_PARAMS

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool {tool_name} not found in any active server.")
        self.tool_name = tool_name


class ResourceNotFoundError(RelayError):
    """No connected server could read the requested resource."""

    code = RESOURCE_NOT_FOUND

    def __init__(self, uri: str) -> None:
        super().__init__(f"Resource not found: {uri}")
        self.uri = uri

    def to_error(self) -> dict[str, Any]:
        return {"code": self.code, "message": str(self), "data": {"uri": self.uri}}
