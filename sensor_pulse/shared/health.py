from typing import Callable

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


def build_health_app(service: str, stats: Callable[[], dict]) -> web.Application:
    """/health returns the service's live counters, /metrics the Prometheus registry."""

    async def health_handler(_request):
        return web.json_response({"status": "healthy", "service": service, **stats()})

    async def metrics_handler(_request):
        return web.Response(body=generate_latest(), content_type=CONTENT_TYPE_LATEST.split(";")[0])

    app = web.Application()
    app.router.add_get("/health", health_handler)
    app.router.add_get("/metrics", metrics_handler)
    return app


async def start_health_server(service: str, stats: Callable[[], dict], port: int) -> web.AppRunner:
    runner = web.AppRunner(build_health_app(service, stats))
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", port)
    await site.start()
    return runner
