"""Supervise MCP child processes declared by OmniDev capabilities."""

from .controller import McpController
from .errors import (
    ConfigurationError,
    McpControllerError,
    NotConnectedError,
    NotFoundError,
    SpawnFailure,
)
from .models import (
    CapabilityDescriptor,
    McpChildProcess,
    McpConnection,
    McpLaunchSpec,
    McpStatusFile,
    McpToolInfo,
)

__version__ = "0.1.0"

__all__ = [
    "CapabilityDescriptor",
    "ConfigurationError",
    "McpChildProcess",
    "McpConnection",
    "McpController",
    "McpControllerError",
    "McpLaunchSpec",
    "McpStatusFile",
    "McpToolInfo",
    "NotConnectedError",
    "NotFoundError",
    "SpawnFailure",
]
