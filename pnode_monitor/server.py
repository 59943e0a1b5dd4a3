import asyncio
import datetime
import logging
from typing import Optional

import aiohttp
from aiohttp import web

from .tasks import start_background_tasks, cleanup_background_tasks
from .config import (SERVER_HOST, SERVER_PORT, DATABASE_FILE, CREDITS_URL, CREDITS_TIMEOUT, SEED_IPS,
                     SERVICE_NAME, SERVICE_VERSION, FLEET_HISTORY_LIMIT, NODE_HISTORY_LIMIT)

log = logging.getLogger("PNodeMonitor.Server")

# Query failures are reported as {"error": ...} bodies with a 200 status. The
# dashboard only inspects the body, so no error status codes are used.


def error_response(message: str) -> web.Response:
    return web.json_response({"error": message})


def add_cors_headers(headers):
    headers["Access-Control-Allow-Origin"] = "*"
    headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
    headers["Access-Control-Allow-Headers"] = "*"


@web.middleware
async def cors_middleware(request, handler):
    """Permissive CORS so the dashboard can be served from any origin."""
    if request.method == "OPTIONS":
        response = web.Response()
    else:
        try:
            response = await handler(request)
        except web.HTTPException as exc:
            # 404/405 raised by the router still need the headers
            add_cors_headers(exc.headers)
            raise
    add_cors_headers(response.headers)
    return response


async def handle_pods(request):
    try:
        nodes = await request.app["store"].get_all_nodes()
    except Exception as e:
        log.error("Failed to load nodes:", exc_info=True)
        return error_response(str(e))
    return web.json_response({
        "total_count": len(nodes),
        "pods": [node.to_pod_dto() for node in nodes],
    })


async def handle_node(request):
    node_id = request.match_info["id"]
    try:
        node = await request.app["store"].find_node(node_id)
    except Exception as e:
        log.error(f"Failed to look up node {node_id}:", exc_info=True)
        return error_response(str(e))
    if node is None:
        return error_response("Node not found")
    return web.json_response(node.to_pod_dto())


async def handle_node_history(request):
    node_id = request.match_info["id"]
    try:
        history = await request.app["store"].get_node_history(node_id, NODE_HISTORY_LIMIT)
    except Exception as e:
        log.error(f"Failed to load history for {node_id}:", exc_info=True)
        return error_response(str(e))
    return web.json_response(history)


async def handle_history(request):
    try:
        history = await request.app["store"].get_fleet_history(FLEET_HISTORY_LIMIT)
    except Exception as e:
        log.error("Failed to load fleet history:", exc_info=True)
        # Callers expect a list from this endpoint
        return web.json_response([{"error": str(e)}])
    return web.json_response(history)


async def handle_credits(request):
    """Pass the pod credits document through unchanged."""
    session: aiohttp.ClientSession = request.app["http_session"]
    try:
        async with session.get(CREDITS_URL, timeout=aiohttp.ClientTimeout(total=CREDITS_TIMEOUT)) as resp:
            data = await resp.json(content_type=None)
    except asyncio.TimeoutError:
        log.warning("Credits request timed out")
        return error_response("Credits request timed out")
    except (aiohttp.ClientError, ValueError) as e:
        log.warning(f"Credits request failed: {e}")
        return error_response(str(e))
    return web.json_response(data)


async def handle_health(request):
    refresher = request.app.get("refresher")
    return web.json_response({
        "success": True,
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "seed_ips": SEED_IPS,
        "refresh_state": refresher.state if refresher else None,
        "cycles_completed": refresher.cycles_completed if refresher else 0,
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
    })


def create_app(db_path: Optional[str] = None, with_background_tasks: bool = True) -> web.Application:
    app = web.Application(middlewares=[cors_middleware])
    app["db_path"] = db_path or DATABASE_FILE

    if with_background_tasks:
        app.on_startup.append(start_background_tasks)
        app.on_cleanup.append(cleanup_background_tasks)

    app.router.add_get("/pods", handle_pods)
    app.router.add_get("/node/{id}", handle_node)
    app.router.add_get("/node/{id}/history", handle_node_history)
    app.router.add_get("/history", handle_history)
    app.router.add_get("/credits", handle_credits)
    app.router.add_get("/health", handle_health)
    return app


def run_server(port: int = SERVER_PORT, db_path: Optional[str] = None):
    app = create_app(db_path)
    log.info(f"Server starting on http://{SERVER_HOST}:{port}")
    log.info(f"Database: {app['db_path']}")
    web.run_app(app, host=SERVER_HOST, port=port)
