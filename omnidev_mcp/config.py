"""Environment driven settings shared by the controller and the serve runtime."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


OMNI_DIR = ".omni"
STATE_DIR = Path(OMNI_DIR) / "state"
STATUS_FILE = STATE_DIR / "mcp-status.json"
RELAY_PORT_FILE = STATE_DIR / "relay-port"
PID_FILE = STATE_DIR / "server.pid"
LOG_FILE = Path(OMNI_DIR) / "logs" / "mcp-server.log"
CAPABILITIES_DIR = Path(OMNI_DIR) / "capabilities"
SANDBOX_DIR = Path(OMNI_DIR) / "sandbox"

DEFAULT_RELAY_PORT = 9876
RELAY_PORT_SEARCH_START = 10000

HEALTH_CHECK_INTERVAL = _env_float("OMNI_MCP_HEALTH_INTERVAL", 30.0)
HEALTH_CHECK_TIMEOUT = _env_float("OMNI_MCP_HEALTH_TIMEOUT", 10.0)
START_TIMEOUT = _env_float("OMNI_MCP_START_TIMEOUT", 30.0)
STOP_GRACE = _env_float("OMNI_MCP_STOP_GRACE", 5.0)
RELAY_PORT = _env_int("OMNI_MCP_RELAY_PORT", 0)
LOG_LEVEL = os.environ.get("OMNI_MCP_LOG_LEVEL", "INFO")


def project_root() -> Path:
    """Return the project root, honouring ``OMNI_MCP_PROJECT_ROOT``."""

    override = os.environ.get("OMNI_MCP_PROJECT_ROOT")
    if override:
        return Path(override).expanduser().resolve()
    return Path.cwd()


@dataclass(frozen=True)
class ControllerSettings:
    """Timing and location knobs for one ``McpController``."""

    root: Path
    health_interval: float = HEALTH_CHECK_INTERVAL
    health_timeout: float = HEALTH_CHECK_TIMEOUT
    start_timeout: float = START_TIMEOUT
    stop_grace: float = STOP_GRACE

    @property
    def status_path(self) -> Path:
        return self.root / STATUS_FILE

    @classmethod
    def from_env(cls, root: Path | None = None) -> "ControllerSettings":
        return cls(root=root if root is not None else project_root())
