"""Periodic sync of all enabled accounts.

The scheduler runs as an APScheduler BackgroundScheduler job in the same
process as uvicorn. The job thread bridges into the app's event loop with
run_coroutine_threadsafe, so the sync itself runs on the loop alongside the
web routes and shares the same store and circuit breaker.

Each tick:
1. Reloads config if the file changed (spam lists, sync and detection settings)
2. Resets accounts stuck in 'syncing' longer than sync.stuck_after_minutes
3. Syncs every enabled account (accounts already syncing are skipped)

Usage:
    from mailflow.engine.scheduler import AutoSyncScheduler

    scheduler = AutoSyncScheduler(pipeline)
    scheduler.start(asyncio.get_running_loop())
    ...
    scheduler.shutdown()
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler

from mailflow.config import get_config, reload_config_if_changed
from mailflow.core.errors import DatabaseError
from mailflow.core.logging import get_logger

if TYPE_CHECKING:
    from mailflow.engine.pipeline import Pipeline
    from mailflow.engine.sync import SyncResult

logger = get_logger(__name__)

JOB_ID = "auto_sync"

# Upper bound for one tick to finish before the bridge gives up waiting
TICK_TIMEOUT_SECONDS = 30 * 60

FIRST_RUN_DELAY_SECONDS = 30


@dataclass
class TickResult:
    """Outcome of one scheduler tick."""

    tick_id: str
    reset_accounts: list[int] = field(default_factory=list)
    results: list[SyncResult] = field(default_factory=list)
    config_reloaded: bool = False
    duration_ms: int = 0


class AutoSyncScheduler:
    """Runs `tick()` every sync.interval_minutes.

    Attributes:
        pipeline: The running pipeline (store, orchestrator, config)
        hot_reload: Check the config file for changes on every tick
    """

    def __init__(self, pipeline: Pipeline, hot_reload: bool = True):
        self.pipeline = pipeline
        self.hot_reload = hot_reload
        self._scheduler: BackgroundScheduler | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def tick(self) -> TickResult:
        """One scheduled pass over all accounts."""
        result = TickResult(tick_id=str(uuid.uuid4()))
        start_time = time.monotonic()

        if self.hot_reload and reload_config_if_changed():
            self.pipeline.apply_config(get_config())
            result.config_reloaded = True

        sync_config = self.pipeline.config.sync
        try:
            result.reset_accounts = await self.pipeline.store.reset_stuck_accounts(
                timedelta(minutes=sync_config.stuck_after_minutes)
            )
        except DatabaseError as e:
            logger.error("stuck_account_reset_failed", error=str(e))

        if result.reset_accounts:
            logger.warning(
                "stuck_accounts_reset",
                account_ids=result.reset_accounts,
                stuck_after_minutes=sync_config.stuck_after_minutes,
            )

        result.results = await self.pipeline.orchestrator.sync_all()
        result.duration_ms = int((time.monotonic() - start_time) * 1000)

        logger.info(
            "auto_sync_tick_complete",
            tick_id=result.tick_id,
            accounts=len(result.results),
            completed=sum(1 for r in result.results if r.status == "completed"),
            errors=sum(1 for r in result.results if r.status == "error"),
            skipped=sum(1 for r in result.results if r.status == "skipped"),
            reset=len(result.reset_accounts),
            duration_ms=result.duration_ms,
        )
        return result

    def _run_tick_threadsafe(self) -> None:
        """Bridge the async tick into the scheduler thread."""
        if self._loop is None:
            return
        try:
            future = asyncio.run_coroutine_threadsafe(self.tick(), self._loop)
            future.result(timeout=TICK_TIMEOUT_SECONDS)
        except Exception as e:
            logger.error("scheduled_sync_failed", error=str(e), error_type=type(e).__name__)

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        if self.running:
            return
        self._loop = loop
        interval = self.pipeline.config.sync.interval_minutes

        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._run_tick_threadsafe,
            "interval",
            minutes=interval,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now() + timedelta(seconds=FIRST_RUN_DELAY_SECONDS),
        )
        self._scheduler.start()
        logger.info("scheduler_started", interval_minutes=interval)

    def shutdown(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("scheduler_stopped")
