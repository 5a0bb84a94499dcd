"""
api/main.py

HTTP shell around the metric registry.

  GET /         plain-text banner
  GET /health   liveness plus capture loop state
  GET /metrics  refresh on-demand collectors, then render the registry

The ExporterContext is attached to app.state by create_app(); handlers
reach it through the get_context dependency.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import PlainTextResponse, Response

from ..context import ExporterContext
from ..metrics import CONTENT_TYPE

logger = logging.getLogger(__name__)


def get_context(request: Request) -> ExporterContext:
    return request.app.state.context


def create_app(context: ExporterContext) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("HTTP server startup")
        yield
        logger.info("HTTP server shutdown")

    app = FastAPI(
        title="routermon — router metrics exporter",
        version="1.0.0",
        description="Prometheus exporter for LAN traffic, ARP, DHCP, DNS and uplink health",
        lifespan=lifespan,
    )
    app.state.context = context

    @app.get("/", response_class=PlainTextResponse)
    async def root() -> str:
        return "routermon exporter — metrics at /metrics\n"

    @app.get("/health")
    async def health(ctx: ExporterContext = Depends(get_context)) -> dict:
        return {
            "status": "ok",
            "capture_state": ctx.capture.state.value,
            "flow_labels": len(ctx.flow_table),
        }

    @app.get("/metrics")
    async def metrics(ctx: ExporterContext = Depends(get_context)) -> Response:
        results = await ctx.refresh_on_demand()
        failed = [name for name, ok in results.items() if not ok]
        if failed:
            logger.debug("Scrape served with stale collectors: %s", failed)
        return Response(content=ctx.registry.encode(), media_type=CONTENT_TYPE)

    return app
