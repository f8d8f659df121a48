"""Discover and load capabilities from ``.omni/capabilities/*/capability.toml``."""

from __future__ import annotations

import logging
import sys
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .config import CAPABILITIES_DIR
from .errors import ConfigurationError
from .models import CapabilityDescriptor, McpLaunchSpec

logger = logging.getLogger(__name__)

CAPABILITY_FILE = "capability.toml"

# Capability modules are imported by name inside the sandbox, so they must not
# shadow the standard library or the packages the generated wrappers rely on.
RESERVED_NAMES = frozenset(sys.stdlib_module_names) | frozenset(
    {"omnidev_mcp", "mcp", "anyio", "pydantic", "aiohttp"}
)


def discover_capabilities(root: Path) -> List[Path]:
    """Return capability directories (those holding a ``capability.toml``)."""

    base = Path(root) / CAPABILITIES_DIR
    if not base.is_dir():
        return []
    found = [
        entry
        for entry in sorted(base.iterdir())
        if entry.is_dir() and (entry / CAPABILITY_FILE).is_file()
    ]
    logger.debug("Discovered %d capabilities under %s", len(found), base)
    return found


def _str_map(raw: Any, field_name: str, capability_id: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(
            f"Capability {capability_id}: mcp.{field_name} must be a table"
        )
    return {str(key): str(value) for key, value in raw.items()}


def _parse_mcp(raw: Any, capability_id: str, directory: Path) -> Optional[McpLaunchSpec]:
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Capability {capability_id}: [mcp] must be a table")

    command = raw.get("command")
    if not isinstance(command, str) or not command.strip():
        raise ConfigurationError(f"Capability {capability_id}: mcp.command is required")

    args = raw.get("args", [])
    if not isinstance(args, list):
        raise ConfigurationError(f"Capability {capability_id}: mcp.args must be a list")

    cwd_raw = raw.get("cwd")
    cwd: Optional[str] = None
    if isinstance(cwd_raw, str) and cwd_raw:
        cwd_path = Path(cwd_raw).expanduser()
        if not cwd_path.is_absolute():
            cwd_path = directory / cwd_path
        cwd = str(cwd_path)

    url = raw.get("url")
    return McpLaunchSpec(
        command=command,
        args=[str(arg) for arg in args],
        env=_str_map(raw.get("env"), "env", capability_id),
        cwd=cwd,
        transport=str(raw.get("transport") or "stdio"),
        url=str(url) if url else None,
        headers=_str_map(raw.get("headers"), "headers", capability_id),
    )


def load_capability(path: Path) -> CapabilityDescriptor:
    """Parse one capability directory. Raises ``ConfigurationError`` when invalid."""

    directory = Path(path).resolve()
    config_path = directory / CAPABILITY_FILE
    try:
        with open(config_path, "rb") as handle:
            data = tomllib.load(handle)
    except (tomllib.TOMLDecodeError, OSError) as exc:
        raise ConfigurationError(f"Invalid {CAPABILITY_FILE} at {directory}: {exc}") from exc

    section = data.get("capability")
    if not isinstance(section, Mapping) or not isinstance(section.get("id"), str):
        raise ConfigurationError(f"capability.id is required in {config_path}")
    capability_id = section["id"].strip()
    if not capability_id:
        raise ConfigurationError(f"capability.id is required in {config_path}")

    exports = data.get("exports")
    module = None
    if isinstance(exports, Mapping) and isinstance(exports.get("module"), str):
        module = exports["module"]

    descriptor = CapabilityDescriptor(
        id=capability_id,
        mcp=_parse_mcp(data.get("mcp"), capability_id, directory),
        path=str(directory),
        module=module,
    )
    if descriptor.module_name in RESERVED_NAMES:
        raise ConfigurationError(
            f'Capability name "{descriptor.module_name}" is reserved. Choose a different name.'
        )
    return descriptor


def load_capabilities(root: Path) -> List[CapabilityDescriptor]:
    """Load every discoverable capability, skipping (and logging) broken ones."""

    loaded: List[CapabilityDescriptor] = []
    seen: Dict[str, Path] = {}
    for directory in discover_capabilities(root):
        try:
            capability = load_capability(directory)
        except ConfigurationError as exc:
            logger.warning("Skipping capability at %s: %s", directory, exc)
            continue
        if capability.id in seen:
            logger.warning(
                "Skipping capability at %s: id %s already used by %s",
                directory,
                capability.id,
                seen[capability.id],
            )
            continue
        seen[capability.id] = directory
        loaded.append(capability)
    logger.info("Loaded %d capabilities", len(loaded))
    return loaded
