"""Launch MCP child processes and expose their pipes as MCP message streams."""

from __future__ import annotations

import asyncio
import collections
import logging
import os
from asyncio import subprocess as aio_subprocess
from contextlib import suppress
from pathlib import Path
from typing import Callable, Deque, Dict, List, Mapping, Optional, Protocol

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp import types
from mcp.shared.message import SessionMessage

from .client import ClientLike, McpClientSession
from .errors import SpawnFailure
from .models import McpLaunchSpec

logger = logging.getLogger(__name__)

# MCP servers routinely answer tools/list with a single very long line.
STREAM_LIMIT = 16 * 1024 * 1024
_STDERR_TAIL_LINES = 50

ExitObserver = Callable[[Optional[int]], None]
ErrorObserver = Callable[[str], None]


class ChildHandle(Protocol):
    """What the controller needs from a launched child."""

    capability_id: str

    @property
    def pid(self) -> Optional[int]:  # pragma: no cover - typing only
        ...

    @property
    def returncode(self) -> Optional[int]:  # pragma: no cover - typing only
        ...

    def terminate(self) -> None:  # pragma: no cover - typing only
        ...

    def kill(self) -> None:  # pragma: no cover - typing only
        ...

    async def wait(self) -> Optional[int]:  # pragma: no cover - typing only
        ...

    def stderr_tail(self) -> str:  # pragma: no cover - typing only
        ...


class Launcher(Protocol):
    """Starts child processes and opens protocol sessions over them."""

    async def launch(
        self,
        capability_id: str,
        spec: McpLaunchSpec,
        *,
        cwd: Path,
        on_exit: ExitObserver,
        on_error: ErrorObserver,
    ) -> ChildHandle:  # pragma: no cover - typing only
        ...

    async def connect(
        self, child: ChildHandle, *, timeout: float
    ) -> ClientLike:  # pragma: no cover - typing only
        ...


def build_environment(overrides: Mapping[str, str]) -> Dict[str, str]:
    """Overlay capability variables onto the ambient environment."""

    env = dict(os.environ)
    env.update({str(key): str(value) for key, value in overrides.items()})
    return env


class StdioChild:
    """A running MCP server speaking newline-delimited JSON-RPC over stdio.

    ``mcp.client.stdio.stdio_client`` is not used because it spawns its own
    process; here one process backs both the tracked PID and the session.
    """

    def __init__(
        self,
        capability_id: str,
        process: aio_subprocess.Process,
        *,
        on_exit: ExitObserver,
        on_error: ErrorObserver,
    ) -> None:
        self.capability_id = capability_id
        self.process = process
        self._on_exit = on_exit
        self._on_error = on_error
        self._stderr_lines: Deque[str] = collections.deque(maxlen=_STDERR_TAIL_LINES)

        read_send, read_recv = anyio.create_memory_object_stream(0)
        write_send, write_recv = anyio.create_memory_object_stream(0)
        self.read_stream: MemoryObjectReceiveStream = read_recv
        self.write_stream: MemoryObjectSendStream = write_send

        name = f"mcp-{capability_id}"
        self._pumps: List[asyncio.Task[None]] = [
            asyncio.create_task(self._pump_stdout(read_send), name=f"{name}-stdout"),
            asyncio.create_task(self._pump_stdin(write_recv), name=f"{name}-stdin"),
            asyncio.create_task(self._pump_stderr(), name=f"{name}-stderr"),
        ]
        self._exit_task = asyncio.create_task(self._watch_exit(), name=f"{name}-exit")

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_lines)

    def terminate(self) -> None:
        if self.process.returncode is None:
            with suppress(ProcessLookupError):
                self.process.terminate()

    def kill(self) -> None:
        if self.process.returncode is None:
            with suppress(ProcessLookupError):
                self.process.kill()

    async def wait(self) -> Optional[int]:
        return await self.process.wait()

    async def _pump_stdout(self, sender: MemoryObjectSendStream) -> None:
        stdout = self.process.stdout
        assert stdout is not None
        async with sender:
            try:
                async for raw in stdout:
                    line = raw.decode("utf-8", errors="replace").strip()
                    if not line:
                        continue
                    try:
                        message = types.JSONRPCMessage.model_validate_json(line)
                    except Exception as exc:
                        logger.debug(
                            "MCP %s wrote a non JSON-RPC line: %s",
                            self.capability_id,
                            line[:200],
                        )
                        await sender.send(exc)
                        continue
                    await sender.send(SessionMessage(message))
            except (anyio.ClosedResourceError, anyio.BrokenResourceError):
                logger.debug("MCP %s session closed its stream", self.capability_id)
            except (OSError, ValueError) as exc:
                self._notify_error(f"Failed to read from MCP server: {exc}")

    async def _pump_stdin(self, receiver: MemoryObjectReceiveStream) -> None:
        stdin = self.process.stdin
        assert stdin is not None
        async with receiver:
            try:
                async for session_message in receiver:
                    payload = session_message.message.model_dump_json(
                        by_alias=True, exclude_none=True
                    )
                    stdin.write(payload.encode("utf-8") + b"\n")
                    await stdin.drain()
            except anyio.ClosedResourceError:
                logger.debug("MCP %s session closed its stream", self.capability_id)
            except (BrokenPipeError, ConnectionResetError) as exc:
                self._notify_error(f"Failed to write to MCP server: {exc}")
            finally:
                with suppress(Exception):
                    stdin.close()

    async def _pump_stderr(self) -> None:
        stderr = self.process.stderr
        assert stderr is not None
        try:
            async for raw in stderr:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    self._stderr_lines.append(line)
                    logger.debug("[%s] %s", self.capability_id, line)
        except (OSError, ValueError):
            logger.debug("stderr reader for %s stopped", self.capability_id, exc_info=True)

    async def _watch_exit(self) -> None:
        returncode = await self.process.wait()
        # nothing left to write to; stdout and stderr end on their own at EOF
        self._pumps[1].cancel()
        try:
            self._on_exit(returncode)
        except Exception:
            logger.warning(
                "Exit observer for %s failed", self.capability_id, exc_info=True
            )

    def _notify_error(self, message: str) -> None:
        logger.debug("MCP %s transport error: %s", self.capability_id, message)
        try:
            self._on_error(message)
        except Exception:
            logger.warning(
                "Error observer for %s failed", self.capability_id, exc_info=True
            )


class StdioLauncher:
    """Default launcher: real OS processes plus ``mcp.ClientSession``."""

    def __init__(self, *, client_version: str = "1.0.0") -> None:
        self.client_version = client_version

    async def launch(
        self,
        capability_id: str,
        spec: McpLaunchSpec,
        *,
        cwd: Path,
        on_exit: ExitObserver,
        on_error: ErrorObserver,
    ) -> StdioChild:
        env = build_environment(spec.env)
        workdir = spec.cwd or str(cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                spec.command,
                *spec.args,
                cwd=workdir,
                env=env,
                stdin=aio_subprocess.PIPE,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            raise SpawnFailure(f"Failed to start {spec.command!r}: {exc}") from exc
        logger.debug(
            "Started MCP %s: %s %s (pid %s)",
            capability_id,
            spec.command,
            " ".join(spec.args),
            process.pid,
        )
        return StdioChild(capability_id, process, on_exit=on_exit, on_error=on_error)

    async def connect(self, child: ChildHandle, *, timeout: float) -> ClientLike:
        if not isinstance(child, StdioChild):
            raise TypeError(f"StdioLauncher cannot connect to {type(child).__name__}")
        client = McpClientSession(
            child.capability_id,
            child.read_stream,
            child.write_stream,
            client_version=self.client_version,
            stderr_tail=child.stderr_tail,
        )
        await client.start(timeout=timeout)
        return client
