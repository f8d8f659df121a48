"""Data model for capabilities, connection records and the status file."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .client import ClientLike
    from .transport import ChildHandle

ChildStatus = Literal["starting", "connected", "disconnected", "error"]


def utc_timestamp() -> str:
    """Return the current UTC time as ISO-8601 with millisecond precision."""

    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class McpLaunchSpec:
    """How to start (or reach) the MCP server behind a capability."""

    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    transport: str = "stdio"
    url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class CapabilityDescriptor:
    """A loaded capability as seen by the controller."""

    id: str
    mcp: Optional[McpLaunchSpec] = None
    path: Optional[str] = None
    module: Optional[str] = None

    @property
    def module_name(self) -> str:
        return self.module or self.id


class McpToolInfo(BaseModel):
    """Schema triple describing one tool exposed by an MCP server."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str
    description: str = ""
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")

    @classmethod
    def from_tool(cls, tool: Any) -> "McpToolInfo":
        """Build from an ``mcp.types.Tool`` (or anything shaped like one)."""

        schema = getattr(tool, "inputSchema", None)
        return cls(
            name=str(tool.name),
            description=getattr(tool, "description", None) or "",
            input_schema=dict(schema) if isinstance(schema, dict) else {},
        )


# Connection states. Each carries only the fields that are meaningful for it.


@dataclass(frozen=True)
class Starting:
    name: ChildStatus = field(default="starting", init=False)


@dataclass(frozen=True)
class Connected:
    tools: Tuple[McpToolInfo, ...] = ()
    name: ChildStatus = field(default="connected", init=False)


@dataclass(frozen=True)
class Disconnected:
    reason: str = ""
    name: ChildStatus = field(default="disconnected", init=False)


@dataclass(frozen=True)
class Errored:
    message: str
    name: ChildStatus = field(default="error", init=False)


ChildState = Union[Starting, Connected, Disconnected, Errored]


@dataclass
class McpChildProcess:
    """Process-level status of one MCP child."""

    capability_id: str
    transport: str = "stdio"
    pid: Optional[int] = None
    state: ChildState = field(default_factory=Starting)
    last_health_check: Optional[str] = None

    @property
    def status(self) -> ChildStatus:
        return self.state.name

    @property
    def error(self) -> Optional[str]:
        """Why the record is not usable: the error message or the exit reason."""

        if isinstance(self.state, Errored):
            return self.state.message
        if isinstance(self.state, Disconnected) and self.state.reason:
            return self.state.reason
        return None

    @property
    def tools(self) -> Optional[List[McpToolInfo]]:
        if isinstance(self.state, Connected):
            return list(self.state.tools)
        return None

    @property
    def tool_count(self) -> Optional[int]:
        if isinstance(self.state, Connected):
            return len(self.state.tools)
        return None

    def to_status(self) -> "McpChildStatus":
        return McpChildStatus(
            capability_id=self.capability_id,
            pid=self.pid,
            status=self.status,
            transport=self.transport,
            last_health_check=self.last_health_check,
            error=self.error,
            tool_count=self.tool_count,
            tools=self.tools,
        )


@dataclass
class McpConnection:
    """Aggregate owning the child process, its client session and its status."""

    capability_id: str
    process: McpChildProcess
    client: Optional["ClientLike"] = None
    child: Optional["ChildHandle"] = None


class McpChildStatus(BaseModel):
    """Serialized projection of ``McpChildProcess`` (no handles)."""

    model_config = ConfigDict(populate_by_name=True)

    capability_id: str = Field(alias="capabilityId")
    pid: Optional[int] = None
    status: ChildStatus
    transport: str
    last_health_check: Optional[str] = Field(default=None, alias="lastHealthCheck")
    error: Optional[str] = None
    tool_count: Optional[int] = Field(default=None, alias="toolCount")
    tools: Optional[List[McpToolInfo]] = None

    def to_json_dict(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, exclude_none=True)
        # pid is part of the contract even when the process is gone
        data.setdefault("pid", None)
        return data


class McpStatusFile(BaseModel):
    """Contents of ``.omni/state/mcp-status.json``."""

    model_config = ConfigDict(populate_by_name=True)

    last_updated: str = Field(default_factory=utc_timestamp, alias="lastUpdated")
    relay_port: int = Field(alias="relayPort")
    children: List[McpChildStatus] = Field(default_factory=list)

    def to_json_dict(self) -> Dict[str, Any]:
        return {
            "lastUpdated": self.last_updated,
            "relayPort": self.relay_port,
            "children": [child.to_json_dict() for child in self.children],
        }
