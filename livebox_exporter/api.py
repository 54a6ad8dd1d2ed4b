"""
FastAPI application exposing the exporter metrics.

Endpoints
---------
- GET /          -> Short HTML page linking to /metrics
- GET /health   -> Liveness and last poll status
- GET /metrics  -> Prometheus text exposition
"""

from typing import Optional

from fastapi import FastAPI, Response
from fastapi.responses import HTMLResponse
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from livebox_exporter.scheduler import Scheduler
from livebox_exporter.schemas import HealthOut

INDEX_HTML = """<html>
<head><title>Livebox Exporter</title></head>
<body>
<h1>Livebox Exporter</h1>
<p><a href="/metrics">Metrics</a></p>
</body>
</html>
"""


def create_app(registry: CollectorRegistry, scheduler: Optional[Scheduler] = None) -> FastAPI:
    """
    Build the HTTP application.

    `registry` holds every metric served on /metrics. `scheduler`, when
    given, backs the poll status reported by /health.
    """
    app = FastAPI(
        title="Livebox Exporter",
        version="0.1.0",
    )

    @app.get("/", response_class=HTMLResponse)
    async def index() -> str:
        return INDEX_HTML

    @app.get("/health", response_model=HealthOut)
    async def health() -> HealthOut:
        """Simple liveness endpoint used for health checks."""
        if scheduler is None:
            return HealthOut(status="ok")
        return HealthOut(
            status="ok" if scheduler.healthy else "degraded",
            last_success_at=scheduler.last_success_at,
            last_error=scheduler.last_error,
        )

    # Served on the event loop so a scrape never interleaves with a poller
    # updating its metrics.
    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    return app
