"""In-memory launcher, child and client used to drive McpController in tests."""

import asyncio
import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from omnidev_mcp.errors import SpawnFailure
from omnidev_mcp.models import McpLaunchSpec, McpToolInfo


def make_tools(*names: str) -> List[McpToolInfo]:
    return [
        McpToolInfo(
            name=name,
            description=f"{name} tool",
            input_schema={"type": "object", "properties": {}},
        )
        for name in names
    ]


@dataclass
class Script:
    """How the fake launcher should behave for one capability."""

    tools: List[McpToolInfo] = field(default_factory=lambda: make_tools("search"))
    launch_error: Optional[BaseException] = None
    connect_error: Optional[BaseException] = None
    connect_gate: Optional[asyncio.Event] = None
    ignore_terminate: bool = False
    close_error: Optional[BaseException] = None


class FakeChild:
    _pids = itertools.count(4000)

    def __init__(
        self,
        capability_id: str,
        script: Script,
        on_exit: Callable[[Optional[int]], None],
        on_error: Callable[[str], None],
    ) -> None:
        self.capability_id = capability_id
        self.script = script
        self.pid: Optional[int] = next(self._pids)
        self.returncode: Optional[int] = None
        self.on_exit = on_exit
        self.on_error = on_error
        self.terminated = False
        self.killed = False
        self.events: List[tuple] = []
        self._exited = asyncio.Event()

    def terminate(self) -> None:
        self.terminated = True
        self.events.append(("terminate", self.capability_id))
        if not self.script.ignore_terminate:
            self._finish(-15, notify=False)

    def kill(self) -> None:
        self.killed = True
        self._finish(-9, notify=False)

    async def wait(self) -> Optional[int]:
        await self._exited.wait()
        return self.returncode

    def stderr_tail(self) -> str:
        return ""

    def crash(self, code: int = 1) -> None:
        """Simulate the process exiting on its own."""
        self._finish(code, notify=True)

    def _finish(self, code: int, *, notify: bool) -> None:
        if self.returncode is None:
            self.returncode = code
            self._exited.set()
            if notify:
                self.on_exit(code)


class FakeClient:
    def __init__(self, script: Script) -> None:
        self.script = script
        self.tools = list(script.tools)
        self.calls: List[Dict[str, Any]] = []
        self.list_calls = 0
        self.fail_list: Optional[BaseException] = None
        self.hang_list = False
        self.closed = False

    async def list_tools(self) -> List[McpToolInfo]:
        self.list_calls += 1
        if self.hang_list:
            await asyncio.Event().wait()
        if self.fail_list is not None:
            raise self.fail_list
        return list(self.tools)

    async def call_tool(self, name: str, arguments: Dict[str, object]) -> Dict[str, object]:
        self.calls.append({"name": name, "arguments": arguments})
        return {"content": [{"type": "text", "text": f"{name}:{arguments}"}], "isError": False}

    async def close(self) -> None:
        self.closed = True
        if self.script.close_error is not None:
            raise self.script.close_error


class FakeLauncher:
    def __init__(self, scripts: Optional[Dict[str, Script]] = None) -> None:
        self.scripts: Dict[str, Script] = dict(scripts or {})
        self.launches: List[str] = []
        self.children: Dict[str, List[FakeChild]] = {}
        self.clients: Dict[str, List[FakeClient]] = {}
        self.events: List[tuple] = []

    def script_for(self, capability_id: str) -> Script:
        return self.scripts.setdefault(capability_id, Script())

    async def launch(self, capability_id: str, spec: McpLaunchSpec, *, cwd, on_exit, on_error):
        self.launches.append(capability_id)
        self.events.append(("launch", capability_id))
        script = self.script_for(capability_id)
        await asyncio.sleep(0)
        if script.launch_error is not None:
            raise script.launch_error
        child = FakeChild(capability_id, script, on_exit, on_error)
        child.events = self.events
        self.children.setdefault(capability_id, []).append(child)
        return child

    async def connect(self, child: FakeChild, *, timeout: float) -> FakeClient:
        script = child.script
        if script.connect_gate is not None:
            await script.connect_gate.wait()
        if script.connect_error is not None:
            raise script.connect_error
        client = FakeClient(script)
        self.clients.setdefault(child.capability_id, []).append(client)
        return client

    def child(self, capability_id: str) -> FakeChild:
        return self.children[capability_id][-1]

    def client(self, capability_id: str) -> FakeClient:
        return self.clients[capability_id][-1]


def not_found_failure(command: str) -> SpawnFailure:
    return SpawnFailure(f"Failed to start {command!r}: [Errno 2] No such file or directory")


class RecordingPersister:
    """Keeps every snapshot instead of touching the filesystem."""

    def __init__(self) -> None:
        self.snapshots: List[Any] = []

    async def write(self, snapshot) -> bool:
        self.snapshots.append(snapshot)
        return True
