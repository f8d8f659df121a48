"""Generate importable Python wrappers that reach MCP tools through the relay."""

from __future__ import annotations

import keyword
import re
import textwrap
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .models import McpToolInfo, utc_timestamp

_JSON_SCALARS = {
    "string": "str",
    "integer": "int",
    "number": "float",
    "boolean": "bool",
    "null": "None",
}

_MODULE_PRELUDE = textwrap.dedent(
    '''
    from __future__ import annotations

    import asyncio as _asyncio
    import json as _json
    import urllib.error as _urlerror
    import urllib.request as _urlrequest
    from typing import Any, Dict, List, Literal, Optional

    CAPABILITY_ID = __CAPABILITY_ID__
    RELAY_URL = __RELAY_URL__


    def _post(tool_name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
        body = _json.dumps({"toolName": tool_name, "arguments": arguments}).encode("utf-8")
        request = _urlrequest.Request(
            RELAY_URL,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with _urlrequest.urlopen(request) as response:
                return _json.loads(response.read().decode("utf-8"))
        except _urlerror.HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="replace")
            try:
                return _json.loads(raw)
            except ValueError:
                return {"success": False, "error": f"Relay returned HTTP {exc.code}"}


    async def _call(tool_name: str, arguments: Dict[str, Any]) -> Any:
        payload = await _asyncio.to_thread(_post, tool_name, arguments)
        if not payload.get("success"):
            raise RuntimeError(payload.get("error") or f"Unknown error calling {tool_name}")
        return payload.get("result")
    '''
).strip()

_STUB_PRELUDE = "from typing import Any, Dict, List, Literal, Optional\n\nCAPABILITY_ID: str\nRELAY_URL: str"


def sanitize_identifier(value: str, *, default: str) -> str:
    """Convert an arbitrary string into a valid Python identifier."""

    cleaned = re.sub(r"[^0-9a-zA-Z_]+", "_", value.strip())
    cleaned = cleaned.lower() or default
    if cleaned[0].isdigit():
        cleaned = f"_{cleaned}"
    if keyword.iskeyword(cleaned):
        cleaned = f"{cleaned}_"
    return cleaned


_RESERVED_NAMES = frozenset({"_call", "_post", "_asyncio", "_json", "_urlerror", "_urlrequest"})


def _unique(base: str, used: Dict[str, int]) -> str:
    if base in _RESERVED_NAMES:
        base = f"{base}_"
    used[base] = used.get(base, 0) + 1
    count = used[base]
    return base if count == 1 else f"{base}_{count}"


def schema_to_annotation(schema: object) -> str:
    """Map a JSON schema fragment onto a Python annotation string."""

    if not isinstance(schema, dict):
        return "Any"

    enum = schema.get("enum")
    if isinstance(enum, list) and enum and all(
        isinstance(item, (str, int)) and not isinstance(item, bool) for item in enum
    ):
        return f"Literal[{', '.join(repr(item) for item in enum)}]"

    for combinator in ("anyOf", "oneOf"):
        options = schema.get(combinator)
        if isinstance(options, list) and options:
            return _union(schema_to_annotation(option) for option in options)

    schema_type = schema.get("type")
    if isinstance(schema_type, list):
        return _union(schema_to_annotation({**schema, "type": item}) for item in schema_type)
    if schema_type in _JSON_SCALARS:
        return _JSON_SCALARS[schema_type]
    if schema_type == "array":
        return f"List[{schema_to_annotation(schema.get('items'))}]"
    if schema_type == "object":
        return "Dict[str, Any]"
    return "Any"


def _union(parts) -> str:
    unique = list(dict.fromkeys(parts))
    if "Any" in unique:
        return "Any"
    if len(unique) == 1:
        return unique[0]
    non_null = [part for part in unique if part != "None"]
    if len(non_null) == 1 and "None" in unique:
        return f"Optional[{non_null[0]}]"
    return " | ".join(unique)


@dataclass
class _Param:
    key: str
    name: str
    annotation: str
    required: bool
    description: str


@dataclass
class ToolSignature:
    tool: McpToolInfo
    function_name: str
    params: List[_Param]

    def render_params(self, *, stub: bool = False) -> str:
        if not self.params:
            return ""
        rendered = []
        for param in self.params:
            if param.required:
                rendered.append(f"{param.name}: {param.annotation}")
            else:
                default = "..." if stub else "None"
                annotation = param.annotation
                if annotation not in ("Any", "None") and not annotation.startswith("Optional["):
                    annotation = f"Optional[{annotation}]"
                rendered.append(f"{param.name}: {annotation} = {default}")
        return "*, " + ", ".join(rendered)

    def declaration(self) -> str:
        return f"async def {self.function_name}({self.render_params(stub=True)}) -> Any"


def build_signatures(tools: Sequence[McpToolInfo]) -> List[ToolSignature]:
    """Pair each tool with the unique function name and parameters it is exposed as."""

    used_functions: Dict[str, int] = {}
    signatures: List[ToolSignature] = []
    for tool in tools:
        function_name = _unique(
            sanitize_identifier(tool.name, default="tool"), used_functions
        )
        schema = tool.input_schema or {}
        properties = schema.get("properties")
        if not isinstance(properties, dict):
            properties = {}
        required_raw = schema.get("required")
        required = set(required_raw) if isinstance(required_raw, list) else set()

        used_params: Dict[str, int] = {}
        params: List[_Param] = []
        for key, prop in properties.items():
            prop_schema = prop if isinstance(prop, dict) else {}
            params.append(
                _Param(
                    key=str(key),
                    name=_unique(sanitize_identifier(str(key), default="arg"), used_params),
                    annotation=schema_to_annotation(prop_schema),
                    required=key in required,
                    description=str(prop_schema.get("description") or "").strip(),
                )
            )
        # keyword-only, but keep required parameters visually first
        params.sort(key=lambda param: not param.required)
        signatures.append(ToolSignature(tool, function_name, params))
    return signatures


def _docstring(text: str, indent: str = "    ") -> str:
    safe = text.replace("\\", "\\\\").replace('"""', '\\"\\"\\"')
    lines = safe.splitlines() or [""]
    if len(lines) == 1:
        return f'{indent}"""{lines[0]}"""'
    body = "\n".join(f"{indent}{line}" if line else "" for line in lines[1:])
    return f'{indent}"""{lines[0]}\n{body}\n{indent}"""'


def _render_function(signature: ToolSignature) -> str:
    tool = signature.tool
    doc_lines = [tool.description.strip() or tool.name]
    described = [param for param in signature.params if param.description]
    if described:
        doc_lines += ["", "Args:"]
        doc_lines += [f"    {param.name}: {param.description}" for param in described]

    lines = [
        f"async def {signature.function_name}({signature.render_params()}) -> Any:",
        _docstring("\n".join(doc_lines)),
    ]
    if signature.params:
        pairs = ", ".join(f"{param.key!r}: {param.name}" for param in signature.params)
        lines.append(f"    arguments = {{{pairs}}}")
        lines.append(
            "    arguments = {key: value for key, value in arguments.items() if value is not None}"
        )
    else:
        lines.append("    arguments: Dict[str, Any] = {}")
    lines.append(f"    return await _call({tool.name!r}, arguments)")
    return "\n".join(lines)


def relay_call_url(capability_id: str, relay_port: int) -> str:
    return f"http://localhost:{relay_port}/mcp/{capability_id}/call"


def generate_wrapper_module(
    capability_id: str,
    tools: Sequence[McpToolInfo],
    relay_port: int,
    *,
    generated_at: Optional[str] = None,
) -> str:
    """Return Python source exposing every tool as an async function."""

    header = (
        f"# Auto-generated MCP wrapper for {capability_id}\n"
        "# Do not edit - regenerated on capability reload\n"
        f"# Generated at: {generated_at or utc_timestamp()}\n"
    )
    prelude = _MODULE_PRELUDE.replace("__CAPABILITY_ID__", repr(capability_id)).replace(
        "__RELAY_URL__", repr(relay_call_url(capability_id, relay_port))
    )
    signatures = build_signatures(tools)
    functions = [_render_function(signature) for signature in signatures]
    exports = sorted(signature.function_name for signature in signatures)
    all_line = f"__all__ = {exports!r}"
    return "\n\n\n".join([header + "\n" + prelude, *functions, all_line]) + "\n"


def generate_type_stub(
    capability_id: str,
    tools: Sequence[McpToolInfo],
    *,
    generated_at: Optional[str] = None,
) -> str:
    """Return the ``.pyi`` stub matching ``generate_wrapper_module``."""

    header = (
        f"# Auto-generated type definitions for {capability_id}\n"
        f"# Generated at: {generated_at or utc_timestamp()}\n"
    )
    stubs = [
        f"{signature.declaration()}: ..."
        for signature in build_signatures(tools)
    ]
    return header + "\n" + _STUB_PRELUDE + "\n\n" + "\n".join(stubs) + "\n"

