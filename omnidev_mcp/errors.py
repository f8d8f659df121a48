"""Exceptions raised by the MCP controller and its collaborators."""

from __future__ import annotations


class McpControllerError(RuntimeError):
    """Base class for controller failures."""


class ConfigurationError(McpControllerError):
    """Raised when a capability's MCP launch spec is missing or unsupported."""


class SpawnFailure(McpControllerError):
    """Raised when a child process cannot be launched or fails its handshake."""

    def __init__(self, message: str, *, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class NotFoundError(McpControllerError):
    """Raised when no connection is tracked for a capability."""

    def __init__(self, capability_id: str) -> None:
        super().__init__(f"No MCP connection for capability: {capability_id}")
        self.capability_id = capability_id


class NotConnectedError(McpControllerError):
    """Raised when a tracked connection is not in the ``connected`` state."""

    def __init__(self, capability_id: str, status: str) -> None:
        super().__init__(f"MCP {capability_id} is not connected (status: {status})")
        self.capability_id = capability_id
        self.status = status
