import json

import pytest
import pytest_asyncio
from mcp.shared.memory import create_connected_server_and_client_session

from fakes import FakeLauncher, RecordingPersister, Script, make_tools
from omnidev_mcp.config import ControllerSettings
from omnidev_mcp.controller import McpController
from omnidev_mcp.environment import (
    TOOL_NAME,
    build_server,
    describe_sandbox,
    sandbox_modules,
)
from omnidev_mcp.models import CapabilityDescriptor, McpLaunchSpec, McpToolInfo

SEARCH_TOOL = McpToolInfo(
    name="web-search",
    description="Search the web.\nReturns the top hits.",
    input_schema={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "What to look for"},
            "limit": {"type": "integer", "default": 5},
            "mode": {"type": "string", "enum": ["fast", "deep"]},
        },
        "required": ["query", "mode"],
    },
)


def _capability(capability_id, module=None):
    return CapabilityDescriptor(
        id=capability_id, mcp=McpLaunchSpec(command="node"), module=module
    )


def _controller(tmp_path, scripts):
    return McpController(
        ControllerSettings(root=tmp_path, health_interval=3600, stop_grace=0),
        launcher=FakeLauncher(scripts),
        persister=RecordingPersister(),
    )


@pytest_asyncio.fixture
async def controller(tmp_path):
    controller = _controller(
        tmp_path,
        {
            "search": Script(tools=[SEARCH_TOOL]),
            "notes": Script(tools=make_tools("list", "read")),
            "empty": Script(tools=[]),
        },
    )
    await controller.spawn_child(_capability("search", module="web-tools"))
    await controller.spawn_child(_capability("notes"))
    await controller.spawn_child(_capability("empty"))
    await controller.spawn_child(
        CapabilityDescriptor(id="remote", mcp=McpLaunchSpec(command="x", transport="http"))
    )
    yield controller
    await controller.stop_all()


CAPABILITIES = [_capability("search", module="web-tools"), _capability("notes")]


@pytest.mark.asyncio
async def test_only_connected_modules_with_tools_are_listed(controller):
    modules = sandbox_modules(controller, CAPABILITIES)
    assert [(module.capability_id, module.module_name) for module in modules] == [
        ("search", "web_tools"),
        ("notes", "notes"),
    ]
    # without descriptors the capability id is used as the module name
    assert [module.module_name for module in sandbox_modules(controller)] == [
        "search",
        "notes",
    ]


@pytest.mark.asyncio
async def test_overview_lists_modules_and_functions(controller):
    text = describe_sandbox(sandbox_modules(controller, CAPABILITIES))
    assert "Available modules: 2" in text
    assert "## web_tools" in text
    assert "  - web_search: Search the web." in text
    assert "Returns the top hits" not in text
    assert "  - list: list tool" in text


def test_overview_without_modules():
    assert describe_sandbox([]).startswith("No sandbox modules available.")


@pytest.mark.asyncio
async def test_module_details_show_signatures(controller):
    modules = sandbox_modules(controller, CAPABILITIES)
    by_id = describe_sandbox(modules, capability="search")
    by_module = describe_sandbox(modules, capability="web_tools")
    assert by_id == by_module
    assert "import web_tools" in by_id
    assert (
        "async def web_search(*, query: str, mode: Literal['fast', 'deep'], "
        "limit: Optional[int] = ...) -> Any"
    ) in by_id


@pytest.mark.asyncio
async def test_tool_details_include_schema_and_example(controller):
    modules = sandbox_modules(controller, CAPABILITIES)
    text = describe_sandbox(modules, capability="search", tool="web-search")
    assert text == describe_sandbox(modules, capability="search", tool="web_search")
    assert text.startswith("# web_tools.web_search")
    assert "MCP tool name: `web-search`" in text
    assert "- `query` (str, required): What to look for" in text
    schema = text.split("```json\n", 1)[1].split("\n```", 1)[0]
    assert json.loads(schema) == SEARCH_TOOL.input_schema
    assert "from web_tools import web_search" in text
    assert "result = await web_search(query=\"...\", mode='fast')" in text


@pytest.mark.asyncio
async def test_unknown_capability_and_tool_are_reported(controller):
    modules = sandbox_modules(controller, CAPABILITIES)
    missing = describe_sandbox(modules, capability="remote")
    assert missing.startswith('Error: Capability "remote" not found.')
    assert "Available: search, notes" in missing

    missing_tool = describe_sandbox(modules, capability="notes", tool="write")
    assert 'Tool "write" not found in capability "notes"' in missing_tool
    assert "Available tools: list, read" in missing_tool


@pytest.mark.asyncio
async def test_server_answers_over_mcp(controller):
    server = build_server(controller, lambda: CAPABILITIES)
    async with create_connected_server_and_client_session(server) as session:
        listed = await session.list_tools()
        assert [tool.name for tool in listed.tools] == [TOOL_NAME]
        assert set(listed.tools[0].inputSchema["properties"]) == {"capability", "tool"}

        overview = await session.call_tool(TOOL_NAME, {})
        assert not overview.isError
        assert "# Sandbox Environment" in overview.content[0].text

        detail = await session.call_tool(TOOL_NAME, {"capability": "notes", "tool": "read"})
        assert detail.content[0].text.startswith("# notes.read")

        unknown = await session.call_tool("omni_execute", {})
        assert unknown.isError
