"""Supervisor for the MCP child processes declared by capabilities."""

from __future__ import annotations

import asyncio
import functools
import logging
from contextlib import suppress
from typing import Any, Coroutine, Dict, List, Optional, Sequence, Set

from .client import ClientLike, describe_exception
from .config import DEFAULT_RELAY_PORT, ControllerSettings
from .errors import ConfigurationError, NotConnectedError, NotFoundError
from .models import (
    CapabilityDescriptor,
    Connected,
    Disconnected,
    Errored,
    McpChildProcess,
    McpConnection,
    McpLaunchSpec,
    McpStatusFile,
    McpToolInfo,
    utc_timestamp,
)
from .status import StatusPersister, build_snapshot
from .transport import ChildHandle, Launcher, StdioLauncher

logger = logging.getLogger(__name__)

HEALTH_CHECK_FAILED = "Health check failed"


class McpController:
    """Single authority over the live MCP child connections of a project.

    Every connection record owns its child process and its protocol client.
    Spawn and health-check failures are recorded on the record instead of
    being raised; request-shape errors (unknown or unconnected capability,
    missing MCP config) are raised to the caller. The full status snapshot is
    written to ``.omni/state/mcp-status.json`` after every change.

    Mutating operations are meant to be driven by one caller at a time.
    ``spawn_child`` claims its record before its first suspension point, and
    ``sync_capabilities`` calls are serialized, so overlapping calls do not
    double-spawn a capability.
    """

    def __init__(
        self,
        settings: Optional[ControllerSettings] = None,
        *,
        launcher: Optional[Launcher] = None,
        persister: Optional[StatusPersister] = None,
        relay_port: int = DEFAULT_RELAY_PORT,
    ) -> None:
        self.settings = settings or ControllerSettings.from_env()
        self._launcher: Launcher = launcher or StdioLauncher()
        self._persister = persister or StatusPersister(self.settings.status_path)
        self._relay_port = relay_port
        self._connections: Dict[str, McpConnection] = {}
        self._children: Dict[str, ChildHandle] = {}
        self._health_task: Optional[asyncio.Task[None]] = None
        self._monitor_stopped = False
        self._background: Set[asyncio.Task[Any]] = set()
        self._status_lock = asyncio.Lock()
        self._sync_lock = asyncio.Lock()
        self._start_health_monitor()

    async def __aenter__(self) -> "McpController":
        self._start_health_monitor()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop_all()

    # ------------------------------------------------------------------ state

    @property
    def relay_port(self) -> int:
        return self._relay_port

    def set_relay_port(self, port: int) -> None:
        self._relay_port = port

    @property
    def health_monitor_running(self) -> bool:
        return self._health_task is not None and not self._health_task.done()

    def get_connection(self, capability_id: str) -> Optional[McpConnection]:
        return self._connections.get(capability_id)

    def get_all_connections(self) -> List[McpConnection]:
        return list(self._connections.values())

    def status_snapshot(self) -> McpStatusFile:
        return build_snapshot(
            (connection.process for connection in self._connections.values()),
            self._relay_port,
        )

    def _is_current(self, connection: McpConnection) -> bool:
        return self._connections.get(connection.capability_id) is connection

    # ------------------------------------------------------------------ spawn

    async def spawn_child(self, capability: CapabilityDescriptor) -> None:
        spec = capability.mcp
        if spec is None:
            raise ConfigurationError(
                f"Capability {capability.id} does not have an MCP configuration"
            )

        if capability.id in self._connections:
            logger.info("MCP %s already connected, skipping spawn", capability.id)
            return

        transport = spec.transport or "stdio"
        connection = McpConnection(
            capability_id=capability.id,
            process=McpChildProcess(capability_id=capability.id, transport=transport),
        )
        self._connections[capability.id] = connection
        self._start_health_monitor()
        logger.info("Spawning MCP child for %s (transport: %s)", capability.id, transport)

        await self._attempt_spawn(connection, spec)
        await self._write_status()

    async def _attempt_spawn(self, connection: McpConnection, spec: McpLaunchSpec) -> None:
        """Run the transport specific spawn, mapping any failure onto the record."""

        try:
            await self._spawn_transport(connection, spec)
        except Exception as exc:
            message = describe_exception(exc)
            logger.warning("Failed to spawn MCP %s: %s", connection.capability_id, message)
            await self._release(connection)
            connection.process.pid = None
            connection.process.state = Errored(message)

    async def _spawn_transport(self, connection: McpConnection, spec: McpLaunchSpec) -> None:
        transport = connection.process.transport
        if transport == "stdio":
            await self._spawn_stdio(connection, spec)
        elif transport == "sse":
            raise ConfigurationError("SSE transport not yet implemented")
        elif transport == "http":
            raise ConfigurationError("HTTP transport not yet implemented")
        else:
            raise ConfigurationError(f"Unknown transport: {transport}")

    async def _spawn_stdio(self, connection: McpConnection, spec: McpLaunchSpec) -> None:
        capability_id = connection.capability_id
        child = await self._launcher.launch(
            capability_id,
            spec,
            cwd=self.settings.root,
            on_exit=functools.partial(self._handle_exit, connection),
            on_error=functools.partial(self._handle_error, connection),
        )
        connection.child = child
        connection.process.pid = child.pid
        if not self._is_current(connection):
            logger.info("MCP %s was stopped while starting", capability_id)
            await self._release(connection)
            return
        self._children[capability_id] = child

        client = await self._launcher.connect(child, timeout=self.settings.start_timeout)
        connection.client = client
        tools = await asyncio.wait_for(
            client.list_tools(), timeout=self.settings.start_timeout
        )
        if not self._is_current(connection):
            logger.info("MCP %s was stopped while starting", capability_id)
            await self._release(connection)
            return

        connection.process.state = Connected(tuple(tools))
        connection.process.last_health_check = utc_timestamp()
        logger.info(
            "MCP %s connected successfully with %d tools", capability_id, len(tools)
        )

    # -------------------------------------------------------------- observers

    def _handle_exit(self, connection: McpConnection, returncode: Optional[int]) -> None:
        logger.info(
            "MCP %s process exited with code %s", connection.capability_id, returncode
        )
        if not self._is_current(connection):
            return
        child = connection.child
        if child is not None and self._children.get(connection.capability_id) is child:
            del self._children[connection.capability_id]
        connection.child = None
        connection.process.pid = None
        connection.process.state = Disconnected(f"Process exited with code {returncode}")
        self._run_in_background(self._write_status())

    def _handle_error(self, connection: McpConnection, message: str) -> None:
        logger.warning("MCP %s process error: %s", connection.capability_id, message)
        if not self._is_current(connection):
            return
        connection.process.state = Errored(message)
        self._run_in_background(self._write_status())

    # ------------------------------------------------------------------- stop

    async def stop_child(self, capability_id: str) -> None:
        connection = self._connections.pop(capability_id, None)
        if connection is None:
            logger.debug("No connection found for %s", capability_id)
            return

        logger.info("Stopping MCP child %s", capability_id)
        await self._release(connection)
        await self._write_status()

    async def stop_all(self) -> None:
        logger.info("Stopping all MCP children")
        await self._stop_health_monitor()
        await asyncio.gather(
            *(self.stop_child(capability_id) for capability_id in list(self._connections))
        )
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        logger.info("All MCP children stopped")

    async def _release(self, connection: McpConnection) -> None:
        """Close the client and signal the process owned by ``connection``."""

        client, connection.client = connection.client, None
        if client is not None:
            try:
                await client.close()
            except Exception as exc:
                logger.warning(
                    "Error closing client for %s: %s",
                    connection.capability_id,
                    describe_exception(exc),
                )
                logger.debug("Client close traceback", exc_info=True)

        child, connection.child = connection.child, None
        if child is None:
            return
        if self._children.get(connection.capability_id) is child:
            del self._children[connection.capability_id]
        child.terminate()
        if self.settings.stop_grace > 0:
            self._run_in_background(self._reap(child))

    async def _reap(self, child: ChildHandle) -> None:
        try:
            await asyncio.wait_for(child.wait(), timeout=self.settings.stop_grace)
        except asyncio.TimeoutError:
            logger.warning(
                "MCP %s ignored SIGTERM for %gs, killing",
                child.capability_id,
                self.settings.stop_grace,
            )
            child.kill()

    def _run_in_background(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------ tools

    def _require_connected(self, capability_id: str) -> ClientLike:
        connection = self._connections.get(capability_id)
        if connection is None:
            raise NotFoundError(capability_id)
        if connection.process.status != "connected" or connection.client is None:
            raise NotConnectedError(capability_id, connection.process.status)
        return connection.client

    async def call_tool(
        self, capability_id: str, tool_name: str, arguments: Dict[str, object]
    ) -> Dict[str, object]:
        client = self._require_connected(capability_id)
        logger.debug("Calling tool %s on %s", tool_name, capability_id)
        return await client.call_tool(tool_name, arguments)

    async def list_tools(self, capability_id: str) -> List[McpToolInfo]:
        client = self._require_connected(capability_id)
        return await client.list_tools()

    # ------------------------------------------------------------------- sync

    async def sync_capabilities(self, capabilities: Sequence[CapabilityDescriptor]) -> None:
        """Stop MCPs that are gone from ``capabilities``, then start new ones."""

        async with self._sync_lock:
            wanted = {capability.id for capability in capabilities if capability.mcp}

            for capability_id in list(self._connections):
                if capability_id not in wanted:
                    logger.info("Capability %s removed, stopping MCP", capability_id)
                    await self.stop_child(capability_id)

            for capability in capabilities:
                if capability.mcp and capability.id not in self._connections:
                    logger.info("New MCP capability %s, spawning", capability.id)
                    await self.spawn_child(capability)

    # ----------------------------------------------------------------- health

    def _start_health_monitor(self) -> None:
        if self._health_task is not None or self._monitor_stopped:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # constructed outside an event loop; started on first use
            return
        self._health_task = loop.create_task(
            self._health_loop(), name="mcp-health-monitor"
        )

    async def _stop_health_monitor(self) -> None:
        self._monitor_stopped = True
        task, self._health_task = self._health_task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.health_interval)
            try:
                await self.check_health()
            except Exception:
                logger.warning("Health sweep failed", exc_info=True)

    async def check_health(self) -> None:
        """List tools on every connected child; failures flip it to ``error``."""

        for capability_id, connection in list(self._connections.items()):
            client = connection.client
            if connection.process.status != "connected" or client is None:
                continue
            try:
                await asyncio.wait_for(
                    client.list_tools(), timeout=self.settings.health_timeout
                )
            except Exception as exc:
                logger.warning(
                    "Health check failed for %s: %s",
                    capability_id,
                    describe_exception(exc),
                )
                if self._is_current(connection) and connection.process.status == "connected":
                    connection.process.state = Errored(HEALTH_CHECK_FAILED)
                continue
            if self._is_current(connection):
                connection.process.last_health_check = utc_timestamp()
        await self._write_status()

    # ----------------------------------------------------------------- status

    async def _write_status(self) -> None:
        async with self._status_lock:
            await self._persister.write(self.status_snapshot())
