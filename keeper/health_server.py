"""
Keeper status HTTP server.

Endpoints:
    GET  /health        overall status, uptime, last cycle, stream state
    GET  /live          liveness probe
    GET  /crank/status  per-market counters
    POST /crank/all     run a crank cycle now
    POST /crank/{slab}  crank one market now

POST routes require ``X-API-Key`` when an API key is configured.
"""

import hmac
import logging
from datetime import datetime
from typing import Optional

from aiohttp import web

from keeper.price_stream import PriceStreamEngine, StreamState
from keeper.scheduler import CrankScheduler

logger = logging.getLogger(__name__)

SCHEDULER_KEY = web.AppKey("scheduler", CrankScheduler)
STREAM_KEY = web.AppKey("stream", object)
API_KEY = web.AppKey("api_key", str)
STARTED_AT_KEY = web.AppKey("started_at", datetime)


def _authorized(request: web.Request) -> bool:
    expected = request.app[API_KEY]
    if not expected:
        return True
    provided = request.headers.get("X-API-Key", "")
    return hmac.compare_digest(provided.encode(), expected.encode())


def _stream_status(stream: Optional[PriceStreamEngine]) -> dict:
    if stream is None:
        return {"status": "disabled"}
    stats = stream.get_stats()
    stats["status"] = "healthy" if stream.state is StreamState.OPEN else "degraded"
    if stream.state is StreamState.STOPPED:
        stats["status"] = "error"
    return stats


async def health_handler(request: web.Request) -> web.Response:
    scheduler = request.app[SCHEDULER_KEY]
    stream = request.app[STREAM_KEY]
    stats = scheduler.get_stats()

    status = "healthy" if scheduler.is_running else "error"
    stream_info = _stream_status(stream)
    if status == "healthy" and stream_info["status"] in ("degraded", "error"):
        status = "degraded"

    uptime = datetime.utcnow() - request.app[STARTED_AT_KEY]
    response = {
        "status": status,
        "timestamp": datetime.utcnow().isoformat(),
        "uptime": str(uptime),
        "scheduler": stats,
        "last_cycle": scheduler.get_last_cycle_result(),
        "stream": stream_info,
    }
    status_code = 200 if status in ("healthy", "degraded") else 503
    return web.json_response(response, status=status_code)


async def live_handler(request: web.Request) -> web.Response:
    return web.Response(text="OK", status=200)


async def crank_status_handler(request: web.Request) -> web.Response:
    scheduler = request.app[SCHEDULER_KEY]
    return web.json_response({
        "running": scheduler.is_running,
        "markets": scheduler.get_status(),
        "last_cycle": scheduler.get_last_cycle_result(),
    })


async def crank_all_handler(request: web.Request) -> web.Response:
    if not _authorized(request):
        return web.json_response({"error": "unauthorized"}, status=401)
    scheduler = request.app[SCHEDULER_KEY]
    result = await scheduler.crank_all()
    return web.json_response(result.to_dict())


async def crank_market_handler(request: web.Request) -> web.Response:
    if not _authorized(request):
        return web.json_response({"error": "unauthorized"}, status=401)
    scheduler = request.app[SCHEDULER_KEY]
    slab = request.match_info["slab"]
    if scheduler.registry.get(slab) is None:
        return web.json_response({"error": f"unknown market {slab}"}, status=404)
    outcome = await scheduler.crank_market_outcome(slab)
    entry = scheduler.registry.get(slab)
    return web.json_response({
        "market_id": slab,
        "outcome": outcome.value,
        "status": entry.to_status() if entry else None,
    })


def create_app(
    scheduler: CrankScheduler,
    stream: Optional[PriceStreamEngine] = None,
    api_key: str = "",
) -> web.Application:
    app = web.Application()
    app[SCHEDULER_KEY] = scheduler
    app[STREAM_KEY] = stream
    app[API_KEY] = api_key
    app[STARTED_AT_KEY] = datetime.utcnow()

    app.router.add_get("/health", health_handler)
    app.router.add_get("/live", live_handler)
    app.router.add_get("/crank/status", crank_status_handler)
    app.router.add_post("/crank/all", crank_all_handler)
    app.router.add_post("/crank/{slab}", crank_market_handler)
    app.router.add_get("/", health_handler)
    return app


async def start_health_server(
    scheduler: CrankScheduler,
    stream: Optional[PriceStreamEngine] = None,
    host: str = "0.0.0.0",
    port: int = 8081,
    api_key: str = "",
) -> web.AppRunner:
    """Start the status server and return its runner (call ``cleanup()`` to stop)."""
    app = create_app(scheduler, stream, api_key)
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"Health server started on http://{host}:{port}")
    return runner
