"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
Everything is built once during the FastAPI lifespan and shared by the web
routes and the scheduler bridge.

Usage:
    from mailflow.web.dependencies import get_store

    @router.get("/accounts")
    async def list_accounts(store: DatabaseStore = Depends(get_store)):
        return await store.list_accounts()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from mailflow.config_schema import AppConfig
    from mailflow.core.circuit_breaker import CircuitBreaker
    from mailflow.db.store import DatabaseStore
    from mailflow.detection.financial import FinancialSuggestionDetector
    from mailflow.engine.pipeline import Pipeline
    from mailflow.engine.sync import SyncOrchestrator


def get_pipeline(request: Request) -> Pipeline:
    """Get the running Pipeline; 503 if startup could not build it."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not initialized; check the config")
    return pipeline


def get_store(request: Request) -> DatabaseStore:
    return get_pipeline(request).store


def get_config(request: Request) -> AppConfig:
    return get_pipeline(request).config


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return get_pipeline(request).orchestrator


def get_detector(request: Request) -> FinancialSuggestionDetector:
    return get_pipeline(request).detector


def get_breaker(request: Request) -> CircuitBreaker:
    return get_pipeline(request).breaker
