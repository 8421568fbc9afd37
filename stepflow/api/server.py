"""
server.py - FastAPI application factory for the stepflow API.

Usage:
    from stepflow.api.server import create_app

    app = create_app()
    # uvicorn stepflow.api.server:app --port 5000
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from stepflow import __version__
from stepflow.config.runtime_config import RuntimeSettings, load_runtime_settings
from stepflow.runtime.scheduler import PipelineRunner

from .routes import runs as runs_routes
from .routes import runs_router

logger = logging.getLogger(__name__)


# =============================================================================
# FastAPI Application Factory
# =============================================================================


def create_app(
    settings: Optional[RuntimeSettings] = None,
    runner: Optional[PipelineRunner] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Runtime settings; loaded from env/YAML when omitted.
        runner: Pipeline runner to serve; built from settings when omitted.
        enable_cors: Whether to enable CORS middleware.

    Returns:
        Configured FastAPI application.
    """
    if runner is None:
        runner = PipelineRunner(settings or load_runtime_settings())
    runs_routes.set_runner(runner)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager.

        On shutdown, active runs are stopped and the dispatch pool drained.
        """
        logger.info("stepflow API server starting...")
        yield
        logger.info("stepflow API server shutting down...")
        runner.shutdown()

    app = FastAPI(
        title="stepflow API",
        description="REST API for running LLM step pipelines: start, inspect, pause, resume, cancel and approve.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runner = runner

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
            allow_headers=["*"],
            expose_headers=["ETag", "If-None-Match"],
        )

    app.include_router(runs_router, prefix="/api")

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time
        logger.info(
            "%s %s %s %.3fs",
            request.method,
            request.url.path,
            response.status_code,
            duration,
        )
        return response

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "version": __version__}

    return app


def main(host: str = "127.0.0.1", port: int = 5000) -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(create_app(), host=host, port=port)
