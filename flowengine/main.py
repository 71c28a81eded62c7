"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from flowengine.api.flow import router as flow_router
from flowengine.config import settings
from flowengine.registry.node_registry import get_registry
from flowengine.utils.logger import setup_logger
from flowengine.utils.metrics import get_metrics_summary, to_prometheus_text
from flowengine.utils.tracing import setup_tracing

setup_logger(log_format=settings.LOG_FORMAT, log_level="DEBUG" if settings.DEBUG else settings.LOG_LEVEL)
logger = logging.getLogger("flowengine.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    registry = get_registry()
    logger.info("Node executors loaded: %s", ", ".join(registry.spec_ids()))
    # One connection pool shared by every run served by this process.
    app.state.http_client = httpx.AsyncClient(timeout=settings.NODE_DEFAULT_TIMEOUT_MS / 1000.0)
    try:
        yield
    finally:
        await app.state.http_client.aclose()
        app.state.http_client = None


app = FastAPI(
    title="flowengine",
    description="Workflow graph execution engine",
    version="0.1.0",
    lifespan=lifespan,
)

setup_tracing(app, settings.OTLP_ENDPOINT)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(flow_router, prefix="/api/flow", tags=["flow"])


@app.get("/api/health")
async def health():
    return {"status": "ok"}


@app.get("/api/metrics", response_class=PlainTextResponse, tags=["observability"])
async def prometheus_metrics():
    """Prometheus text exposition, e.g. ``flowengine_run_started_total 42``."""
    return to_prometheus_text()


@app.get("/api/metrics/summary", tags=["observability"])
async def metrics_summary():
    return get_metrics_summary()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
