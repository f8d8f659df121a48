import tempfile
import unittest
from pathlib import Path

from fakes import FakeLauncher, RecordingPersister, Script, make_tools, not_found_failure
from omnidev_mcp.config import ControllerSettings
from omnidev_mcp.controller import McpController
from omnidev_mcp.models import CapabilityDescriptor, McpLaunchSpec, McpToolInfo
from omnidev_mcp.sandbox import setup_mcp_wrappers, setup_sandbox


class SandboxLayoutTest(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.sandbox = self.root / ".omni" / "sandbox"

    def tearDown(self):
        self._tmp.cleanup()

    def _capability_dir(self, name):
        directory = self.root / ".omni" / "capabilities" / name
        directory.mkdir(parents=True)
        (directory / "__init__.py").write_text("VALUE = 1\n")
        return directory

    def test_links_non_mcp_capabilities_by_module_name(self):
        docs = self._capability_dir("docs")
        notes = self._capability_dir("notes")
        capabilities = [
            CapabilityDescriptor(id="docs", path=str(docs)),
            CapabilityDescriptor(id="notes", path=str(notes), module="team-notes"),
            CapabilityDescriptor(id="search", mcp=McpLaunchSpec(command="node")),
        ]

        setup_sandbox(capabilities, self.root)

        self.assertEqual(sorted(p.name for p in self.sandbox.iterdir()), ["docs", "team_notes"])
        self.assertTrue((self.sandbox / "docs").is_symlink())
        self.assertEqual((self.sandbox / "docs").resolve(), docs.resolve())
        self.assertTrue((self.sandbox / "team_notes" / "__init__.py").exists())

    def test_clears_stale_entries(self):
        self.sandbox.mkdir(parents=True)
        (self.sandbox / "old_module").mkdir()
        (self.sandbox / "old_module" / "__init__.py").write_text("")
        (self.sandbox / "stray.txt").write_text("x")

        setup_sandbox([], self.root)

        self.assertEqual(list(self.sandbox.iterdir()), [])


class McpWrapperSetupTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.launcher = FakeLauncher(
            {
                "search": Script(tools=make_tools("search", "fetch")),
                "broken": Script(launch_error=not_found_failure("/nope")),
            }
        )
        self.controller = McpController(
            ControllerSettings(root=self.root, health_interval=3600, stop_grace=0),
            launcher=self.launcher,
            persister=RecordingPersister(),
        )

    async def asyncTearDown(self):
        await self.controller.stop_all()
        self._tmp.cleanup()

    async def test_writes_wrappers_only_for_connected_mcps(self):
        capabilities = [
            CapabilityDescriptor(id="search", mcp=McpLaunchSpec(command="node")),
            CapabilityDescriptor(id="broken", mcp=McpLaunchSpec(command="/nope")),
            CapabilityDescriptor(id="docs"),
            CapabilityDescriptor(id="later", mcp=McpLaunchSpec(command="node")),
        ]
        await self.controller.spawn_child(capabilities[0])
        await self.controller.spawn_child(capabilities[1])

        written = await setup_mcp_wrappers(capabilities, self.controller, 10001, self.root)

        self.assertEqual(written, 1)
        package = self.root / ".omni" / "sandbox" / "search"
        source = (package / "__init__.py").read_text()
        self.assertIn("http://localhost:10001/mcp/search/call", source)
        self.assertIn("async def fetch(", source)
        self.assertIn("async def search(", (package / "__init__.pyi").read_text())
        self.assertFalse((self.root / ".omni" / "sandbox" / "broken").exists())
        self.assertFalse((self.root / ".omni" / "sandbox" / "later").exists())

    async def test_uses_fresh_tool_list(self):
        capability = CapabilityDescriptor(id="search", mcp=McpLaunchSpec(command="node"))
        await self.controller.spawn_child(capability)
        self.launcher.client("search").tools = [McpToolInfo(name="brand_new")]

        await setup_mcp_wrappers([capability], self.controller, 9876, self.root)

        source = (self.root / ".omni" / "sandbox" / "search" / "__init__.py").read_text()
        self.assertIn("async def brand_new(", source)
        self.assertNotIn("async def fetch(", source)

    async def test_failure_for_one_capability_does_not_stop_others(self):
        first = CapabilityDescriptor(id="search", mcp=McpLaunchSpec(command="node"))
        second = CapabilityDescriptor(id="other", mcp=McpLaunchSpec(command="node"))
        await self.controller.spawn_child(first)
        await self.controller.spawn_child(second)
        self.launcher.client("search").fail_list = RuntimeError("boom")

        with self.assertLogs("omnidev_mcp.sandbox", level="ERROR") as logs:
            written = await setup_mcp_wrappers([first, second], self.controller, 9876, self.root)

        self.assertEqual(written, 1)
        self.assertIn("boom", "\n".join(logs.output))
        self.assertTrue((self.root / ".omni" / "sandbox" / "other" / "__init__.py").exists())
