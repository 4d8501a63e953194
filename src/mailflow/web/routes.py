"""JSON API for the ingestion pipeline.

Endpoints (prefix /api):
- accounts: list, trigger a sync, toggle sync, disconnect
- automation: list configs, rules and logs; create and toggle a rule
- suggestions: list, approve, reject
- health: circuit breaker state, pending suggestions, last sync

All routes use FastAPI dependency injection to access shared state.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from mailflow.automation.rules import validate_rule
from mailflow.core.circuit_breaker import CircuitBreaker, CircuitState
from mailflow.core.errors import (
    DatabaseError,
    RuleValidationError,
    SuggestionConflictError,
    SuggestionNotFoundError,
)
from mailflow.core.logging import get_logger
from mailflow.db.store import (
    AutomationConfig,
    AutomationRuleRecord,
    DatabaseStore,
    FinancialSuggestion,
    MailAccount,
)
from mailflow.detection.financial import FinancialSuggestionDetector
from mailflow.engine.sync import SyncOrchestrator, cursor_key
from mailflow.web.dependencies import (
    get_breaker,
    get_detector,
    get_orchestrator,
    get_store,
)

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class ToggleRequest(BaseModel):
    enabled: bool


class ResolveRequest(BaseModel):
    """Optional body for approve/reject."""

    reason: str | None = Field(default=None, max_length=1000)
    resolved_by: str | None = Field(default=None, max_length=200)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def account_to_dict(account: MailAccount) -> dict[str, Any]:
    """Account view without credentials."""
    return {
        "id": account.id,
        "email": account.email,
        "sync_enabled": account.sync_enabled,
        "sync_status": account.sync_status,
        "last_sync_date": _iso(account.last_sync_date),
        "sync_range_months": account.sync_range_months,
        "error_message": account.error_message,
        "token_expires_at": _iso(account.token_expires_at),
    }


def config_to_dict(config: AutomationConfig) -> dict[str, Any]:
    data = asdict(config)
    data["last_processed_at"] = _iso(config.last_processed_at)
    return data


def rule_to_dict(rule: AutomationRuleRecord) -> dict[str, Any]:
    data = asdict(rule)
    data["created_at"] = _iso(rule.created_at)
    return data


def suggestion_to_dict(suggestion: FinancialSuggestion) -> dict[str, Any]:
    """Suggestion view; amount stays an exact decimal string."""
    data = asdict(suggestion)
    data["amount"] = str(suggestion.amount)
    data["document_date"] = _iso(suggestion.document_date)
    data["resolved_at"] = _iso(suggestion.resolved_at)
    data["created_at"] = _iso(suggestion.created_at)
    return data


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@api_router.get("/accounts")
async def list_accounts(store: DatabaseStore = Depends(get_store)):
    accounts = await store.list_accounts()
    return {"accounts": [account_to_dict(a) for a in accounts]}


@api_router.post("/accounts/{account_id}/sync")
async def trigger_sync(
    account_id: int,
    store: DatabaseStore = Depends(get_store),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Run a sync for one account and return its counters. 409 if one is already running."""
    account = await store.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    if account.sync_status == "syncing":
        raise HTTPException(status_code=409, detail="Sync already in progress")

    await store.log_action("sync_trigger", account_id, triggered_by="user")
    result = await orchestrator.sync(account)
    if result.status == "skipped":
        raise HTTPException(status_code=409, detail="Sync already in progress")
    return asdict(result)


@api_router.post("/accounts/{account_id}/toggle")
async def toggle_sync(
    account_id: int,
    body: ToggleRequest,
    store: DatabaseStore = Depends(get_store),
):
    """Enable/disable scheduled sync. A sync already running is not interrupted."""
    if not await store.set_sync_enabled(account_id, body.enabled):
        raise HTTPException(status_code=404, detail="Account not found")
    await store.log_action(
        "sync_toggle", account_id, details={"enabled": body.enabled}, triggered_by="user"
    )
    return {"account_id": account_id, "sync_enabled": body.enabled}


@api_router.delete("/accounts/{account_id}")
async def delete_account(account_id: int, store: DatabaseStore = Depends(get_store)):
    """Disconnect a mailbox. Its messages and attachments go with it; shared blobs stay."""
    account = await store.get_account(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    if account.sync_status == "syncing":
        raise HTTPException(status_code=409, detail="Sync in progress")

    await store.delete_account(account_id)
    await store.delete_state(cursor_key(account_id))
    await store.log_action(
        "account_delete", account_id, details={"email": account.email}, triggered_by="user"
    )
    return {"account_id": account_id, "deleted": True}


# ---------------------------------------------------------------------------
# Automation
# ---------------------------------------------------------------------------


@api_router.get("/automation/configs")
async def list_configs(store: DatabaseStore = Depends(get_store)):
    configs = await store.list_automation_configs()
    return {"configs": [config_to_dict(c) for c in configs]}


@api_router.get("/automation/rules")
async def list_rules(
    config_id: int | None = None,
    store: DatabaseStore = Depends(get_store),
):
    rules = await store.list_rules(config_id=config_id)
    return {"rules": [rule_to_dict(r) for r in rules]}


@api_router.post("/automation/rules", status_code=201)
async def create_rule(body: dict[str, Any], store: DatabaseStore = Depends(get_store)):
    """Create a rule. Body: {"config_id": 1, "name": ..., "conditions": [...], "actions": [...]}."""
    payload = dict(body)
    config_id = payload.pop("config_id", None)
    if not isinstance(config_id, int):
        raise HTTPException(status_code=422, detail=["config_id: required integer"])

    try:
        rule = validate_rule(payload)
    except RuleValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors) from None

    if await store.get_automation_config(config_id) is None:
        raise HTTPException(status_code=404, detail="Automation config not found")

    conditions, actions = rule.to_storage()
    rule_id = await store.create_rule(
        config_id=config_id,
        name=rule.name,
        conditions=conditions,
        actions=actions,
        priority=rule.priority,
        is_enabled=rule.is_enabled,
        description=rule.description,
    )
    await store.log_action("rule_create", rule_id, details={"name": rule.name})
    created = await store.get_rule(rule_id)
    return rule_to_dict(created)


@api_router.post("/automation/rules/{rule_id}/toggle")
async def toggle_rule(
    rule_id: int,
    body: ToggleRequest,
    store: DatabaseStore = Depends(get_store),
):
    """Enable/disable a rule. Takes effect for the next message evaluated."""
    if not await store.set_rule_enabled(rule_id, body.enabled):
        raise HTTPException(status_code=404, detail="Rule not found")
    await store.log_action(
        "rule_toggle", rule_id, details={"enabled": body.enabled}, triggered_by="user"
    )
    return {"rule_id": rule_id, "is_enabled": body.enabled}


@api_router.get("/automation/logs")
async def list_automation_logs(
    limit: int = Query(default=100, ge=1, le=1000),
    message_id: int | None = None,
    rule_id: int | None = None,
    status: str | None = None,
    store: DatabaseStore = Depends(get_store),
):
    logs = await store.get_automation_logs(
        limit=limit, message_id=message_id, rule_id=rule_id, status=status
    )
    return {
        "logs": [{**asdict(entry), "created_at": _iso(entry.created_at)} for entry in logs]
    }


# ---------------------------------------------------------------------------
# Financial suggestions
# ---------------------------------------------------------------------------


@api_router.get("/suggestions")
async def list_suggestions(
    status: str | None = Query(default="pending"),
    operation_id: int | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
    store: DatabaseStore = Depends(get_store),
):
    if status not in (None, "pending", "approved", "rejected", "all"):
        raise HTTPException(status_code=422, detail="status must be pending, approved, rejected or all")
    suggestions = await store.list_financial_suggestions(
        status=None if status == "all" else status, operation_id=operation_id, limit=limit
    )
    return {"suggestions": [suggestion_to_dict(s) for s in suggestions]}


@api_router.post("/suggestions/{suggestion_id}/approve")
async def approve_suggestion(
    suggestion_id: int,
    body: ResolveRequest | None = None,
    detector: FinancialSuggestionDetector = Depends(get_detector),
):
    """pending -> approved; creates the ledger entry."""
    resolved_by = body.resolved_by if body else None
    try:
        suggestion = await detector.approve(suggestion_id, resolved_by=resolved_by)
    except SuggestionNotFoundError:
        raise HTTPException(status_code=404, detail="Suggestion not found") from None
    except SuggestionConflictError:
        raise HTTPException(status_code=409, detail="Suggestion already resolved") from None
    return {
        "status": "approved",
        "suggestion_id": suggestion_id,
        "ledger_entry_id": suggestion.ledger_entry_id,
    }


@api_router.post("/suggestions/{suggestion_id}/reject")
async def reject_suggestion(
    suggestion_id: int,
    body: ResolveRequest | None = None,
    detector: FinancialSuggestionDetector = Depends(get_detector),
):
    """pending -> rejected, with an optional reason."""
    try:
        await detector.reject(
            suggestion_id,
            reason=body.reason if body else None,
            resolved_by=body.resolved_by if body else None,
        )
    except SuggestionNotFoundError:
        raise HTTPException(status_code=404, detail="Suggestion not found") from None
    except SuggestionConflictError:
        raise HTTPException(status_code=409, detail="Suggestion already resolved") from None
    return {"status": "rejected", "suggestion_id": suggestion_id}


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health_check(
    store: DatabaseStore = Depends(get_store),
    breaker: CircuitBreaker = Depends(get_breaker),
):
    """Health check endpoint for Docker and monitoring."""
    snapshot = breaker.snapshot()
    try:
        stats = await store.get_stats()
    except DatabaseError as e:
        logger.error("health_stats_failed", error=str(e))
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "error": "database unavailable"},
        )

    degraded = snapshot.state != CircuitState.CLOSED or stats["accounts_by_status"].get("error", 0) > 0
    return {
        "status": "degraded" if degraded else "healthy",
        "circuit_breaker": {
            "state": snapshot.state.value,
            "failure_count": snapshot.failure_count,
            "last_error": snapshot.last_error,
        },
        "pending_suggestions": stats["pending_suggestions"],
        "last_sync_date": stats["last_sync_date"],
        "accounts_by_status": stats["accounts_by_status"],
        "messages_total": stats["messages_total"],
        "messages_spam": stats["messages_spam"],
        "blobs_by_backend": stats["blobs_by_backend"],
        "version": "0.1.0",
    }
