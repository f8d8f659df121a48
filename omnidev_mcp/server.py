"""Long running runtime tying the controller, relay, sandbox and watcher together."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from contextlib import suppress
from pathlib import Path
from typing import Any, Coroutine, List, Optional

from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.server.stdio import stdio_server

from .capabilities import load_capabilities
from .config import (
    LOG_FILE,
    LOG_LEVEL,
    PID_FILE,
    RELAY_PORT,
    RELAY_PORT_FILE,
    RELAY_PORT_SEARCH_START,
    ControllerSettings,
)
from .controller import McpController
from .environment import build_server
from .models import CapabilityDescriptor
from .relay import RelayServer, find_free_port
from .sandbox import setup_mcp_wrappers, setup_sandbox
from .transport import Launcher
from .watcher import CapabilityWatcher, default_watch_paths

logger = logging.getLogger(__name__)

_LOG_FORMAT = "[%(asctime)s] [%(name)s] %(levelname)s %(message)s"
_SERVER_CLOSE_TIMEOUT = 1.0


def configure_logging(root: Path, level: str = LOG_LEVEL) -> None:
    """Log to stderr and append to ``.omni/logs/mcp-server.log``."""

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    log_path = Path(root) / LOG_FILE
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    except OSError as exc:
        logging.getLogger(__name__).warning("Failed to open log file %s: %s", log_path, exc)
    logging.basicConfig(level=level.upper(), format=_LOG_FORMAT, handlers=handlers, force=True)


class McpRuntime:
    """Start child MCPs for the project's capabilities and keep them in sync."""

    def __init__(
        self,
        root: Path,
        *,
        relay_port: Optional[int] = None,
        settings: Optional[ControllerSettings] = None,
        launcher: Optional[Launcher] = None,
        watch: bool = True,
        stdio: bool = True,
    ) -> None:
        self.root = Path(root).resolve()
        self._requested_port = RELAY_PORT if relay_port is None else relay_port
        self.controller = McpController(
            settings or ControllerSettings.from_env(self.root), launcher=launcher
        )
        self.capabilities: List[CapabilityDescriptor] = []
        self.relay: Optional[RelayServer] = None
        self.watcher: Optional[CapabilityWatcher] = None
        self._watch = watch
        self._stdio = stdio
        self._stop_event = asyncio.Event()
        self._started = False

    @property
    def relay_port(self) -> int:
        return self.controller.relay_port

    @property
    def pid_path(self) -> Path:
        return self.root / PID_FILE

    @property
    def relay_port_path(self) -> Path:
        return self.root / RELAY_PORT_FILE

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        logger.info("Starting MCP runtime in %s", self.root)

        self.capabilities = load_capabilities(self.root)
        setup_sandbox(self.capabilities, self.root)

        port = self._requested_port or find_free_port(RELAY_PORT_SEARCH_START)
        self.controller.set_relay_port(port)
        self.relay = RelayServer(self.controller, port)
        await self.relay.start()
        self.relay_port_path.parent.mkdir(parents=True, exist_ok=True)
        self.relay_port_path.write_text(str(port), encoding="utf-8")

        await self.controller.sync_capabilities(self.capabilities)
        await setup_mcp_wrappers(self.capabilities, self.controller, port, self.root)

        self.pid_path.write_text(str(os.getpid()), encoding="utf-8")
        logger.info("PID file written: %s", os.getpid())

        if self._watch:
            self.watcher = CapabilityWatcher(default_watch_paths(self.root), self.reload)
            self.watcher.start()

    async def reload(self) -> None:
        logger.info("Reloading capabilities...")
        self.capabilities = load_capabilities(self.root)
        setup_sandbox(self.capabilities, self.root)
        await self.controller.sync_capabilities(self.capabilities)
        await setup_mcp_wrappers(
            self.capabilities, self.controller, self.relay_port, self.root
        )
        logger.info("Capabilities reloaded")

    async def shutdown(self) -> None:
        logger.info("Shutting down...")
        if self.watcher is not None:
            await self.watcher.stop()
            self.watcher = None
        try:
            await self.controller.stop_all()
        except Exception:
            logger.error("Error stopping MCP children", exc_info=True)
        if self.relay is not None:
            await self.relay.stop()
            self.relay = None
        with suppress(FileNotFoundError):
            self.pid_path.unlink()
        self._started = False

    def request_stop(self) -> None:
        self._stop_event.set()

    async def run_forever(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(signum, self.request_stop)
        try:
            await self.start()
            logger.info("MCP runtime ready (relay port %d)", self.relay_port)
            if self._stdio:
                await self._until_stopped(self._serve_stdio())
            else:
                await self._stop_event.wait()
        finally:
            await self.shutdown()
            for signum in (signal.SIGINT, signal.SIGTERM):
                with suppress(NotImplementedError, RuntimeError):
                    loop.remove_signal_handler(signum)

    async def serve(
        self,
        read_stream: MemoryObjectReceiveStream,
        write_stream: MemoryObjectSendStream,
    ) -> None:
        """Serve the sandbox-environment MCP server until the client goes away."""

        app = build_server(self.controller, lambda: self.capabilities)
        await app.run(read_stream, write_stream, app.create_initialization_options())
        logger.info("MCP client disconnected")

    async def serve_until_stopped(
        self,
        read_stream: MemoryObjectReceiveStream,
        write_stream: MemoryObjectSendStream,
    ) -> None:
        await self._until_stopped(self.serve(read_stream, write_stream))

    async def _serve_stdio(self) -> None:
        async with stdio_server() as (read_stream, write_stream):
            await self.serve(read_stream, write_stream)

    async def _until_stopped(self, coro: Coroutine[Any, Any, None]) -> None:
        serving = asyncio.create_task(coro, name="omnidev-mcp-server")
        stopping = asyncio.create_task(self._stop_event.wait(), name="omnidev-stop")
        done, _ = await asyncio.wait({serving, stopping}, return_when=asyncio.FIRST_COMPLETED)
        stopping.cancel()
        if serving in done:
            serving.result()
            return
        serving.cancel()
        # the stdin reader thread only sees the cancellation after its next line or EOF
        done, _ = await asyncio.wait({serving}, timeout=_SERVER_CLOSE_TIMEOUT)
        if not done:
            logger.warning("MCP stdio transport still waiting on stdin, shutting down anyway")
