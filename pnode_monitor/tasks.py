import asyncio
import concurrent.futures
import logging

import aiohttp

from .config import DATABASE_FILE, DB_THREAD_POOL_SIZE
from .database import PodStore
from .geo_cache import GeoCache
from .prpc_client import PrpcClient
from .refresher import FleetRefresher

log = logging.getLogger("PNodeMonitor.Tasks")


async def init_resources(app):
    """Create the shared executor, HTTP session, store and geo cache held on the app."""
    db_path = app.get("db_path", DATABASE_FILE)
    app["db_executor"] = concurrent.futures.ThreadPoolExecutor(max_workers=DB_THREAD_POOL_SIZE)
    log.info(f"Database thread pool initialized with {DB_THREAD_POOL_SIZE} workers")

    app["store"] = PodStore(db_path, app["db_executor"])
    await app["store"].init()

    app["http_session"] = aiohttp.ClientSession()
    app["geo_cache"] = GeoCache(app["http_session"])
    app["prpc_client"] = PrpcClient(app["http_session"])
    app["refresher"] = FleetRefresher(app["prpc_client"], app["store"], app["geo_cache"])


async def release_resources(app):
    if "http_session" in app and not app["http_session"].closed:
        await app["http_session"].close()
        log.info("HTTP client session closed.")

    if app.get("db_executor"):
        app["db_executor"].shutdown(wait=True)
        log.info("db_executor shut down.")


async def start_background_tasks(app):
    log.info("Starting background tasks...")
    await init_resources(app)

    app["stop_event"] = asyncio.Event()
    app["tasks"] = [
        asyncio.create_task(app["refresher"].run_forever(app["stop_event"])),
    ]
    log.info("Refresh task initialized")


async def cleanup_background_tasks(app):
    log.warning("Application cleanup started.")

    if "stop_event" in app:
        app["stop_event"].set()
    # In-flight network calls are abandoned rather than awaited
    for task in app.get("tasks", []):
        task.cancel()
    if "tasks" in app:
        await asyncio.gather(*app["tasks"], return_exceptions=True)
    log.info("Asyncio background tasks cancelled.")

    await release_resources(app)
