from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Mapping

from aiohttp import web

from common.connection import MessageConnection
from common.protocol import MAX_FRAME_SIZE
from relay.correlator import DispatchError
from relay.service import RelayService, ValidationError

logger = logging.getLogger("relay.web")


def create_web_app(service: RelayService) -> web.Application:
    app = web.Application(client_max_size=MAX_FRAME_SIZE)
    app["relay_service"] = service
    app.router.add_get("/ws", handle_agent_ws)
    setup_api_routes(app)
    return app


def setup_api_routes(app: web.Application) -> None:
    app.router.add_get("/api/agents", api_agents)
    app.router.add_post("/api/exec", api_exec)
    app.router.add_post("/api/read", api_read)
    app.router.add_post("/api/write", api_write)
    app.router.add_post("/api/list", api_list)
    app.router.add_post("/api/run", api_run)


async def handle_agent_ws(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse(max_msg_size=MAX_FRAME_SIZE)
    await ws.prepare(request)
    service: RelayService = request.app["relay_service"]
    conn = MessageConnection(ws, peer=str(request.remote or ""))
    logger.info("agent websocket opened peer=%s", conn.peer)
    await service.handle_connection(conn)
    return ws


async def _read_body(request: web.Request) -> dict[str, Any]:
    try:
        data = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


async def _call(
    request: web.Request,
    op: Callable[[Mapping[str, Any]], Awaitable[dict[str, Any]]],
) -> web.Response:
    body = await _read_body(request)
    try:
        result = await op(body)
    except ValidationError as exc:
        return web.json_response({"error": str(exc)}, status=400)
    except DispatchError as exc:
        return web.json_response({"error": str(exc)}, status=500)
    return web.json_response(result)


async def api_agents(request: web.Request) -> web.Response:
    return web.json_response(request.app["relay_service"].list_agents())


async def api_exec(request: web.Request) -> web.Response:
    return await _call(request, request.app["relay_service"].exec_action)


async def api_read(request: web.Request) -> web.Response:
    return await _call(request, request.app["relay_service"].read_file)


async def api_write(request: web.Request) -> web.Response:
    return await _call(request, request.app["relay_service"].write_file)


async def api_list(request: web.Request) -> web.Response:
    return await _call(request, request.app["relay_service"].list_dir)


async def api_run(request: web.Request) -> web.Response:
    return await _call(request, request.app["relay_service"].run_command)
