"""Tests for the auto-sync scheduler tick and its APScheduler wiring."""

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import aiosqlite
import pytest

from mailflow.config_schema import AppConfig
from mailflow.db.store import DatabaseStore
from mailflow.engine.pipeline import Pipeline, build_pipeline
from mailflow.engine.scheduler import JOB_ID, AutoSyncScheduler
from mailflow.provider.mailbox import MessagePage, ProviderMessage


class OneMessageMailbox:
    async def list_page(self, account, page_token):
        return MessagePage(
            messages=[ProviderMessage(provider_message_id=f"m-{account.id}", subject="ETA update")]
        )

    async def get_attachment(self, account, message_id, attachment_id):
        raise AssertionError("no attachments listed")


@pytest.fixture
async def pipeline(store: DatabaseStore, sample_config: AppConfig) -> Pipeline:
    return await build_pipeline(
        sample_config, store=store, mailbox=OneMessageMailbox(), anthropic_client=MagicMock()
    )


async def _mark_started(store: DatabaseStore, account_id: int, started_at: datetime) -> None:
    async with aiosqlite.connect(store.db_path) as db:
        await db.execute(
            "UPDATE mail_accounts SET sync_started_at = ? WHERE id = ?",
            (started_at.isoformat(), account_id),
        )
        await db.commit()


class TestTick:
    async def test_syncs_enabled_accounts(self, pipeline: Pipeline, store: DatabaseStore, account_id):
        scheduler = AutoSyncScheduler(pipeline, hot_reload=False)

        result = await scheduler.tick()

        assert [r.account_id for r in result.results] == [account_id]
        assert result.results[0].status == "completed"
        assert result.results[0].newly_synced == 1
        assert result.reset_accounts == []
        assert result.config_reloaded is False

    async def test_resets_stuck_account_then_syncs_it(
        self, pipeline: Pipeline, store: DatabaseStore, account_id
    ):
        await store.claim_account_for_sync(account_id)
        await _mark_started(store, account_id, datetime.now(UTC) - timedelta(hours=2))
        scheduler = AutoSyncScheduler(pipeline, hot_reload=False)

        result = await scheduler.tick()

        assert result.reset_accounts == [account_id]
        assert result.results[0].status == "completed"
        assert (await store.get_account(account_id)).sync_status == "completed"

    async def test_recent_sync_is_left_alone(
        self, pipeline: Pipeline, store: DatabaseStore, account_id
    ):
        await store.claim_account_for_sync(account_id)
        scheduler = AutoSyncScheduler(pipeline, hot_reload=False)

        result = await scheduler.tick()

        assert result.reset_accounts == []
        assert result.results[0].status == "skipped"
        assert (await store.get_account(account_id)).sync_status == "syncing"

    async def test_hot_reload_applies_config(
        self, pipeline: Pipeline, sample_config_dict, monkeypatch, account_id
    ):
        sample_config_dict["detection"] = {"duplicate_window_days": 7}
        reloaded = AppConfig(**sample_config_dict)
        monkeypatch.setattr("mailflow.engine.scheduler.reload_config_if_changed", lambda: True)
        monkeypatch.setattr("mailflow.engine.scheduler.get_config", lambda: reloaded)
        scheduler = AutoSyncScheduler(pipeline)

        result = await scheduler.tick()

        assert result.config_reloaded is True
        assert pipeline.config is reloaded
        assert pipeline.detector.settings.duplicate_window_days == 7
        assert pipeline.orchestrator.sync_config is reloaded.sync


class TestLifecycle:
    async def test_start_and_shutdown(self, pipeline: Pipeline):
        scheduler = AutoSyncScheduler(pipeline, hot_reload=False)

        scheduler.start(asyncio.get_running_loop())
        try:
            assert scheduler.running is True
            job = scheduler._scheduler.get_job(JOB_ID)
            assert job is not None
            assert job.trigger.interval == timedelta(minutes=pipeline.config.sync.interval_minutes)
        finally:
            scheduler.shutdown()

        assert scheduler.running is False

    def test_bridge_without_loop_is_noop(self, pipeline: Pipeline):
        scheduler = AutoSyncScheduler(pipeline, hot_reload=False)
        scheduler._run_tick_threadsafe()
        assert scheduler.running is False
