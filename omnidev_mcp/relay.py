"""Local HTTP relay letting sandboxed code reach MCP tools through the controller."""

from __future__ import annotations

import json
import logging
import socket
from typing import Any, Dict, Optional

from aiohttp import web
from aiohttp_cors import ResourceOptions
from aiohttp_cors import setup as cors_setup

from .client import describe_exception
from .config import RELAY_PORT_SEARCH_START
from .controller import McpController
from .errors import NotConnectedError, NotFoundError

logger = logging.getLogger(__name__)

CONTROLLER_KEY = web.AppKey("controller", McpController)

RELAY_HOST = "127.0.0.1"


def find_free_port(start: int = RELAY_PORT_SEARCH_START, *, attempts: int = 100) -> int:
    """Return the first port at or above ``start`` that can be bound locally."""

    for port in range(start, min(start + attempts, 65536)):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((RELAY_HOST, port))
            except OSError:
                continue
            return port
    raise RuntimeError(f"No free port found in {start}-{start + attempts - 1}")


def _failure(message: str, status: int) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


def _error_status(exc: Exception) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, NotConnectedError):
        return 409
    return 500


@web.middleware
async def _json_errors(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPNotFound:
        return _failure("Not Found", 404)
    except web.HTTPMethodNotAllowed:
        return _failure("Method Not Allowed", 405)


async def _status(request: web.Request) -> web.Response:
    snapshot = request.app[CONTROLLER_KEY].status_snapshot()
    return web.json_response({"children": snapshot.to_json_dict()["children"]})


async def _call(request: web.Request) -> web.Response:
    controller = request.app[CONTROLLER_KEY]
    capability_id = request.match_info["capability_id"]
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _failure("Request body must be JSON", 400)
    if not isinstance(body, dict) or not body.get("toolName"):
        return _failure("Missing toolName", 400)

    tool_name = str(body["toolName"])
    arguments: Optional[Dict[str, Any]] = body.get("arguments")
    if not isinstance(arguments, dict):
        arguments = {}

    logger.debug("Relay call %s on %s", tool_name, capability_id)
    try:
        result = await controller.call_tool(capability_id, tool_name, arguments)
    except Exception as exc:
        message = describe_exception(exc)
        logger.warning("Tool call %s on %s failed: %s", tool_name, capability_id, message)
        return _failure(message, _error_status(exc))
    return web.json_response({"success": True, "result": result})


async def _tools(request: web.Request) -> web.Response:
    controller = request.app[CONTROLLER_KEY]
    capability_id = request.match_info["capability_id"]
    try:
        tools = await controller.list_tools(capability_id)
    except Exception as exc:
        return _failure(describe_exception(exc), _error_status(exc))
    return web.json_response(
        {"tools": [tool.model_dump(by_alias=True) for tool in tools]}
    )


def build_app(controller: McpController) -> web.Application:
    app = web.Application(middlewares=[_json_errors])
    app[CONTROLLER_KEY] = controller

    cors = cors_setup(
        app,
        defaults={
            "*": ResourceOptions(
                allow_credentials=False,
                expose_headers="*",
                allow_headers="*",
                allow_methods=["GET", "POST", "OPTIONS"],
            )
        },
    )

    app.router.add_get("/mcp/status", _status)
    app.router.add_post("/mcp/{capability_id}/call", _call)
    app.router.add_get("/mcp/{capability_id}/tools", _tools)

    for route in list(app.router.routes()):
        cors.add(route)
    return app


class RelayServer:
    """Own the aiohttp runner serving ``build_app`` on a local port."""

    def __init__(self, controller: McpController, port: int, host: str = RELAY_HOST) -> None:
        self.controller = controller
        self.port = port
        self.host = host
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        if self._runner is not None:
            return
        runner = web.AppRunner(build_app(self.controller), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        logger.info("HTTP relay listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        runner, self._runner = self._runner, None
        if runner is not None:
            await runner.cleanup()
            logger.info("HTTP relay stopped")
