#!/usr/bin/env python3
"""
Echo MCP server

A tiny stdio MCP server used as a child in end-to-end tests and as a
starting point for capability authors.

Usage:
    python servers/echo.py

Declare it in a capability:
    [capability]
    id = "echo"

    [mcp]
    command = "python"
    args = ["servers/echo.py"]
"""

import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

SERVER_NAME = os.environ.get("ECHO_SERVER_NAME", "echo")

# stderr only; stdout carries the protocol
logging.basicConfig(level=logging.INFO, format="%(name)s - %(message)s")
logger = logging.getLogger(SERVER_NAME)

app = Server(SERVER_NAME)


@app.list_tools()
async def list_tools() -> List[Tool]:
    return [
        Tool(
            name="echo",
            description="Return the message unchanged.",
            inputSchema={
                "type": "object",
                "properties": {
                    "message": {"type": "string", "description": "Text to echo back"},
                },
                "required": ["message"],
            },
        ),
        Tool(
            name="add",
            description="Add two numbers.",
            inputSchema={
                "type": "object",
                "properties": {
                    "a": {"type": "number"},
                    "b": {"type": "number"},
                },
                "required": ["a", "b"],
            },
        ),
        Tool(
            name="pid",
            description="Return the process id of this server.",
            inputSchema={"type": "object", "properties": {}},
        ),
        Tool(
            name="exit",
            description="Terminate the server process with the given exit code.",
            inputSchema={
                "type": "object",
                "properties": {"code": {"type": "integer", "default": 3}},
            },
        ),
    ]


@app.call_tool()
async def call_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
    logger.info("Tool called: %s with args: %s", name, arguments)

    if name == "echo":
        return [TextContent(type="text", text=str(arguments.get("message", "")))]
    if name == "add":
        total = float(arguments["a"]) + float(arguments["b"])
        return [TextContent(type="text", text=json.dumps({"sum": total}))]
    if name == "pid":
        return [TextContent(type="text", text=str(os.getpid()))]
    if name == "exit":
        code = int(arguments.get("code", 3))
        logger.info("Exiting with code %d", code)
        sys.stderr.flush()
        os._exit(code)
    raise ValueError(f"Unknown tool: {name}")


async def main() -> None:
    logger.info("Starting %s MCP server...", SERVER_NAME)
    async with stdio_server() as (read_stream, write_stream):
        await app.run(
            read_stream,
            write_stream,
            app.create_initialization_options(),
        )


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
