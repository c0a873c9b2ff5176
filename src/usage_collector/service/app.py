"""
FastAPI probe and metrics surface for a running output.
"""

from __future__ import annotations

from dataclasses import asdict

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from .. import __version__
from ..output import UsageOutput


def create_app(output: UsageOutput, registry: CollectorRegistry) -> FastAPI:
    """Liveness probe and Prometheus exposition for one output."""
    app = FastAPI(title="usage-collector", version=__version__)

    @app.get("/healthz")
    def healthz():
        health = output.health()
        body = {"status": "ok" if health.healthy else "unhealthy", **asdict(health)}
        return JSONResponse(body, status_code=200 if health.healthy else 503)

    @app.get("/metrics")
    def metrics():
        return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    return app
