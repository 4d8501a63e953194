"""FastAPI application for the mail pipeline.

Creates the FastAPI app with:
- Lifespan context manager that builds the pipeline and starts the scheduler
- The JSON API router

The auto-sync job runs via APScheduler's BackgroundScheduler in the same
process as uvicorn. The scheduler thread bridges to the async event loop
via run_coroutine_threadsafe.

Usage:
    from mailflow.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from mailflow.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the pipeline on startup, stop the scheduler on shutdown.

    A config or startup failure leaves app.state.pipeline as None: the API
    answers 503 instead of the process refusing to start.
    """
    import anthropic

    from mailflow.config import get_config
    from mailflow.core.errors import ConfigLoadError, ConfigValidationError, DatabaseError
    from mailflow.engine.pipeline import build_pipeline
    from mailflow.engine.scheduler import AutoSyncScheduler

    app.state.pipeline = None
    app.state.scheduler = None

    try:
        config = get_config()
        pipeline = await build_pipeline(config)
    except (ConfigLoadError, ConfigValidationError, DatabaseError, anthropic.AnthropicError) as e:
        logger.error("pipeline_init_failed", error=str(e), error_type=type(e).__name__)
        yield
        return

    app.state.pipeline = pipeline

    scheduler = AutoSyncScheduler(pipeline)
    scheduler.start(asyncio.get_running_loop())
    app.state.scheduler = scheduler

    yield

    scheduler.shutdown()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    from mailflow.web.routes import api_router

    app = FastAPI(
        title="mailflow",
        description="Email ingestion, dedup and automation pipeline",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(api_router)
    return app
