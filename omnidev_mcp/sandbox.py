"""Lay out ``.omni/sandbox`` so sandboxed code can import capabilities by name."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from .client import describe_exception
from .codegen import generate_type_stub, generate_wrapper_module, sanitize_identifier
from .config import SANDBOX_DIR
from .models import CapabilityDescriptor

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .controller import McpController

logger = logging.getLogger(__name__)


def sandbox_module_name(capability: CapabilityDescriptor) -> str:
    return sanitize_identifier(capability.module_name, default="capability")


def _clear(directory: Path) -> None:
    for entry in directory.iterdir():
        try:
            if entry.is_symlink() or entry.is_file():
                entry.unlink()
            else:
                shutil.rmtree(entry)
        except OSError as exc:
            logger.debug("Could not remove stale sandbox entry %s: %s", entry, exc)


def setup_sandbox(capabilities: Sequence[CapabilityDescriptor], root: Path) -> Path:
    """Recreate the sandbox directory and link every non-MCP capability into it.

    MCP capabilities are left out here; ``setup_mcp_wrappers`` writes their
    generated modules once the controller has connected them.
    """

    sandbox = Path(root) / SANDBOX_DIR
    sandbox.mkdir(parents=True, exist_ok=True)
    _clear(sandbox)

    for capability in capabilities:
        if capability.mcp is not None or not capability.path:
            continue
        link = sandbox / sandbox_module_name(capability)
        target = Path(capability.path)
        if not target.is_absolute():
            target = Path(root) / target
        try:
            link.symlink_to(target.resolve(), target_is_directory=True)
        except FileExistsError:
            logger.debug("Sandbox entry %s already exists", link.name)
        except OSError as exc:
            logger.error("Failed to link %s into the sandbox: %s", capability.id, exc)
    return sandbox


async def setup_mcp_wrappers(
    capabilities: Sequence[CapabilityDescriptor],
    controller: "McpController",
    relay_port: int,
    root: Path,
) -> int:
    """Write a wrapper package for every connected MCP capability.

    Returns the number of wrappers written.
    """

    sandbox = Path(root) / SANDBOX_DIR
    written = 0
    for capability in capabilities:
        if capability.mcp is None:
            continue
        connection = controller.get_connection(capability.id)
        if connection is None or connection.process.status != "connected":
            logger.info("MCP %s not connected, skipping wrapper generation", capability.id)
            continue
        try:
            tools = await controller.list_tools(capability.id)
            package_dir = sandbox / sandbox_module_name(capability)
            if package_dir.is_symlink():
                package_dir.unlink()
            package_dir.mkdir(parents=True, exist_ok=True)
            (package_dir / "__init__.py").write_text(
                generate_wrapper_module(capability.id, tools, relay_port),
                encoding="utf-8",
            )
            (package_dir / "__init__.pyi").write_text(
                generate_type_stub(capability.id, tools), encoding="utf-8"
            )
        except Exception as exc:
            logger.error(
                "Failed to generate wrapper for %s: %s",
                capability.id,
                describe_exception(exc),
            )
            continue
        written += 1
        logger.info("Generated wrapper for %s with %d tools", capability.id, len(tools))
    return written
