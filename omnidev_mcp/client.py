"""Protocol client session wrapping one MCP child."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from typing import Callable, Dict, List, Optional, Protocol

from mcp.client.session import ClientSession
from mcp.types import Implementation

from .errors import McpControllerError, SpawnFailure
from .models import McpToolInfo

logger = logging.getLogger(__name__)

_CLOSE_TIMEOUT = 5.0


class ClientLike(Protocol):
    async def list_tools(self) -> List[McpToolInfo]:  # pragma: no cover - typing only
        ...

    async def call_tool(
        self, name: str, arguments: Dict[str, object]
    ) -> Dict[str, object]:  # pragma: no cover - typing only
        ...

    async def close(self) -> None:  # pragma: no cover - typing only
        ...


def describe_exception(exc: BaseException) -> str:
    """Human readable message, unwrapping single-leaf exception groups."""

    while isinstance(exc, BaseExceptionGroup) and len(exc.exceptions) == 1:
        exc = exc.exceptions[0]
    text = str(exc).strip()
    return text or type(exc).__name__


class McpClientSession:
    """Keep an ``mcp.ClientSession`` alive in a task of its own.

    The SDK session owns an anyio task group which must be exited by the task
    that entered it. Running the session in a dedicated owner task lets any
    other task issue requests and close the session.
    """

    def __init__(
        self,
        capability_id: str,
        read_stream,
        write_stream,
        *,
        client_version: str = "1.0.0",
        stderr_tail: Optional[Callable[[], str]] = None,
    ) -> None:
        self.capability_id = capability_id
        self._read_stream = read_stream
        self._write_stream = write_stream
        self._client_info = Implementation(
            name=f"omnidev-{capability_id}", version=client_version
        )
        self._stderr_tail = stderr_tail
        self._session: Optional[ClientSession] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._ready = asyncio.Event()
        self._closing = asyncio.Event()
        self._failure: Optional[BaseException] = None

    async def start(self, timeout: float) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(
            self._run(), name=f"mcp-session-{self.capability_id}"
        )
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise SpawnFailure(
                f"Timed out after {timeout:g}s waiting for the MCP handshake",
                stderr=self._captured_stderr(),
            ) from None

        if self._failure is not None:
            stderr_text = self._captured_stderr()
            logger.debug(
                "Client session for %s failed to initialize: %s (stderr=%s)",
                self.capability_id,
                self._failure,
                stderr_text,
            )
            message = f"MCP handshake failed: {describe_exception(self._failure)}"
            if stderr_text:
                message = f"{message}\n{stderr_text.splitlines()[-1]}"
            raise SpawnFailure(message, stderr=stderr_text) from self._failure

    async def _run(self) -> None:
        try:
            async with ClientSession(
                self._read_stream, self._write_stream, client_info=self._client_info
            ) as session:
                await session.initialize()
                self._session = session
                self._ready.set()
                await self._closing.wait()
        except Exception as exc:
            if not self._ready.is_set():
                self._failure = exc
            else:
                logger.debug(
                    "MCP session for %s ended: %s",
                    self.capability_id,
                    describe_exception(exc),
                )
        finally:
            self._session = None
            if not self._ready.is_set():
                if self._failure is None:
                    self._failure = SpawnFailure("MCP session ended before the handshake")
                self._ready.set()

    def _captured_stderr(self) -> str:
        if self._stderr_tail is None:
            return ""
        try:
            return self._stderr_tail()
        except Exception:
            return "<failed to read captured stderr>"

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise McpControllerError("MCP client not started")
        return self._session

    async def list_tools(self) -> List[McpToolInfo]:
        session = self._require_session()
        result = await session.list_tools()
        return [McpToolInfo.from_tool(tool) for tool in result.tools]

    async def call_tool(
        self, name: str, arguments: Dict[str, object]
    ) -> Dict[str, object]:
        session = self._require_session()
        start_time = time.monotonic()
        logger.info("Calling tool %s on %s", name, self.capability_id)
        call_result = await session.call_tool(name=name, arguments=arguments)
        logger.info(
            "Tool %s on %s completed in %.2fs",
            name,
            self.capability_id,
            time.monotonic() - start_time,
        )
        return call_result.model_dump(by_alias=True, exclude_none=True)

    async def close(self) -> None:
        task = self._task
        if task is None:
            return
        self._task = None
        self._closing.set()
        if not self._ready.is_set():
            # still inside the handshake, nothing to wind down gracefully
            task.cancel()
        try:
            with suppress(asyncio.CancelledError):
                await asyncio.wait_for(asyncio.shield(task), timeout=_CLOSE_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug("MCP session for %s did not close in time", self.capability_id)
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        finally:
            self._session = None
