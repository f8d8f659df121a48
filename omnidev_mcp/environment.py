"""MCP server exposing ``omni_sandbox_environment``: what sandboxed code can import.

Three levels of detail, picked by the arguments:

* none: every connected MCP module and its functions;
* ``capability``: the Python signature of each function in one module;
* ``capability`` and ``tool``: one function's signature, JSON schema and a
  usage example.

Everything is answered from the tool lists the controller cached when each
child connected, so no child is contacted.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Sequence

from mcp.server import Server
from mcp.types import TextContent, Tool

from .codegen import ToolSignature, build_signatures, sanitize_identifier
from .models import CapabilityDescriptor, McpToolInfo
from .sandbox import sandbox_module_name

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .controller import McpController

logger = logging.getLogger(__name__)

SERVER_NAME = "omnidev"
TOOL_NAME = "omni_sandbox_environment"

CapabilitiesProvider = Callable[[], Sequence[CapabilityDescriptor]]


@dataclass
class SandboxModule:
    capability_id: str
    module_name: str
    tools: List[McpToolInfo]

    @property
    def signatures(self) -> List[ToolSignature]:
        return build_signatures(self.tools)


def sandbox_modules(
    controller: "McpController", capabilities: Iterable[CapabilityDescriptor] = ()
) -> List[SandboxModule]:
    """Connected capabilities with tools, named as they are importable in the sandbox."""

    names = {capability.id: sandbox_module_name(capability) for capability in capabilities}
    modules: List[SandboxModule] = []
    for connection in controller.get_all_connections():
        process = connection.process
        tools = process.tools
        if process.status != "connected" or not tools:
            continue
        module_name = names.get(connection.capability_id) or sanitize_identifier(
            connection.capability_id, default="capability"
        )
        modules.append(SandboxModule(connection.capability_id, module_name, tools))
    return modules


def _summary(text: str) -> str:
    lines = text.strip().splitlines()
    return lines[0] if lines else ""


def _example_value(schema: object) -> str:
    if not isinstance(schema, dict):
        return "None"
    enum = schema.get("enum")
    if isinstance(enum, list) and enum:
        return repr(enum[0])
    if "default" in schema:
        return repr(schema["default"])
    return {
        "string": '"..."',
        "integer": "0",
        "number": "0",
        "boolean": "True",
        "array": "[]",
        "object": "{}",
    }.get(schema.get("type"), "None")


def format_overview(modules: Sequence[SandboxModule]) -> str:
    if not modules:
        return (
            "No sandbox modules available.\n\n"
            "Connect MCP capabilities to see their tools here."
        )

    lines = ["# Sandbox Environment", "", f"Available modules: {len(modules)}", ""]
    for module in modules:
        lines.append(f"## {module.module_name}")
        lines.append(f"MCP capability `{module.capability_id}`")
        lines.append("")
        lines.append("Functions:")
        for signature in module.signatures:
            lines.append(
                f"  - {signature.function_name}: {_summary(signature.tool.description)}"
            )
        lines.append("")
    lines.append("---")
    lines.append(f'Call {TOOL_NAME} with {{"capability": "<name>"}} for signatures.')
    return "\n".join(lines)


def format_module(module: SandboxModule) -> str:
    lines = [
        f"# Module: {module.module_name}",
        f"MCP capability `{module.capability_id}`",
        "",
        "```python",
        f"import {module.module_name}",
        "```",
        "",
        "## Functions",
        "",
    ]
    for signature in module.signatures:
        lines.append(f"### {signature.function_name}")
        if signature.tool.description:
            lines.append(signature.tool.description.strip())
        lines.append("")
        lines.append("```python")
        lines.append(signature.declaration())
        lines.append("```")
        lines.append("")
    lines.append("---")
    lines.append(
        f'Call {TOOL_NAME} with {{"capability": "{module.capability_id}", '
        '"tool": "<name>"} for the full schema.'
    )
    return "\n".join(lines)


def format_tool(module: SandboxModule, signature: ToolSignature) -> str:
    tool = signature.tool
    lines = [f"# {module.module_name}.{signature.function_name}"]
    if tool.description:
        lines.append(tool.description.strip())
    lines.append("")
    if signature.function_name != tool.name:
        lines.append(f"MCP tool name: `{tool.name}`")
        lines.append("")

    lines += ["## Signature", "```python", signature.declaration(), "```", ""]

    described = [param for param in signature.params if param.description]
    if described:
        lines.append("## Parameters")
        for param in described:
            flag = "required" if param.required else "optional"
            lines.append(f"- `{param.name}` ({param.annotation}, {flag}): {param.description}")
        lines.append("")

    lines += [
        "## JSON Schema (Input)",
        "```json",
        json.dumps(tool.input_schema, indent=2, sort_keys=True),
        "```",
        "",
    ]

    properties = tool.input_schema.get("properties")
    if not isinstance(properties, dict):
        properties = {}
    arguments = ", ".join(
        f"{param.name}={_example_value(properties.get(param.key))}"
        for param in signature.params
        if param.required
    )
    lines += [
        "## Usage Example",
        "```python",
        f"from {module.module_name} import {signature.function_name}",
        "",
        f"result = await {signature.function_name}({arguments})",
        "```",
    ]
    return "\n".join(lines)


def describe_sandbox(
    modules: Sequence[SandboxModule],
    capability: Optional[str] = None,
    tool: Optional[str] = None,
) -> str:
    """Render the answer to one ``omni_sandbox_environment`` call."""

    if not capability:
        return format_overview(modules)

    module = next(
        (
            candidate
            for candidate in modules
            if capability in (candidate.capability_id, candidate.module_name)
        ),
        None,
    )
    if module is None:
        available = ", ".join(candidate.capability_id for candidate in modules) or "none"
        return f'Error: Capability "{capability}" not found.\n\nAvailable: {available}'

    if not tool:
        return format_module(module)

    signatures = module.signatures
    signature = next(
        (
            candidate
            for candidate in signatures
            if tool in (candidate.tool.name, candidate.function_name)
        ),
        None,
    )
    if signature is None:
        available = ", ".join(candidate.function_name for candidate in signatures)
        return (
            f'Error: Tool "{tool}" not found in capability "{capability}".\n\n'
            f"Available tools: {available}"
        )
    return format_tool(module, signature)


def _optional_str(arguments: Dict[str, object], key: str) -> Optional[str]:
    value = arguments.get(key)
    if value is None:
        return None
    return str(value).strip() or None


def build_server(
    controller: "McpController", capabilities: CapabilitiesProvider = tuple
) -> Server:
    """Return an MCP server answering ``omni_sandbox_environment`` from ``controller``."""

    app = Server(SERVER_NAME)

    @app.list_tools()
    async def list_tools() -> List[Tool]:
        return [
            Tool(
                name=TOOL_NAME,
                description=(
                    "Describe the Python modules available in the sandbox. "
                    "Without arguments lists every module; pass capability for its "
                    "function signatures, and capability plus tool for one function's "
                    "full schema and a usage example."
                ),
                inputSchema={
                    "type": "object",
                    "properties": {
                        "capability": {
                            "type": "string",
                            "description": "Capability id or module name",
                        },
                        "tool": {
                            "type": "string",
                            "description": "Tool or function name within the capability",
                        },
                    },
                },
            )
        ]

    @app.call_tool()
    async def call_tool(name: str, arguments: Dict[str, object]) -> List[TextContent]:
        if name != TOOL_NAME:
            raise ValueError(f"Unknown tool: {name}")
        arguments = arguments or {}
        capability = _optional_str(arguments, "capability")
        tool = _optional_str(arguments, "tool")
        logger.debug("%s capability=%s tool=%s", TOOL_NAME, capability, tool)
        text = describe_sandbox(
            sandbox_modules(controller, capabilities()), capability=capability, tool=tool
        )
        return [TextContent(type="text", text=text)]

    return app
