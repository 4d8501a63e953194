"""Construction of the ingestion pipeline from configuration.

Both `mailflow serve` (FastAPI lifespan) and the one-shot CLI commands need
the same object graph: store, blob store, one shared circuit breaker, the
provider adapter, rule engine, detector and sync orchestrator. Building it
here keeps the two entry points identical.

Usage:
    from mailflow.engine.pipeline import build_pipeline

    pipeline = await build_pipeline(get_config())
    result = await pipeline.orchestrator.sync(account)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from mailflow.auth.oauth import AccountTokenProvider
from mailflow.automation.engine import AutomationRuleEngine
from mailflow.classifier.spam_filter import SpamClassifier
from mailflow.core.circuit_breaker import CircuitBreaker
from mailflow.core.logging import get_logger
from mailflow.db.store import DatabaseStore
from mailflow.detection.ai_analyzer import FinancialAnalyzer
from mailflow.detection.financial import FinancialSuggestionDetector
from mailflow.detection.heuristics import HeuristicAnalyzer
from mailflow.engine.sync import SyncOrchestrator
from mailflow.provider.client import ProviderClient
from mailflow.provider.mailbox import GraphMailbox
from mailflow.storage.blob_store import ContentAddressedStore, FilesystemBackend

if TYPE_CHECKING:
    from mailflow.config_schema import AppConfig
    from mailflow.provider.mailbox import Mailbox

logger = get_logger(__name__)


@dataclass
class Pipeline:
    """Every long-lived service of a running instance."""

    config: AppConfig
    store: DatabaseStore
    blobs: ContentAddressedStore
    breaker: CircuitBreaker
    automation: AutomationRuleEngine
    detector: FinancialSuggestionDetector
    orchestrator: SyncOrchestrator

    def apply_config(self, config: AppConfig) -> None:
        """Pick up a hot-reloaded config (spam lists, sync and detection settings)."""
        self.config = config
        self.orchestrator.update_spam_classifier(SpamClassifier(config.spam_policy))
        self.orchestrator.sync_config = config.sync
        self.orchestrator.storage_config = config.storage
        self.detector.settings = config.detection
        logger.info("pipeline_config_applied")


def build_breaker(config: AppConfig) -> CircuitBreaker:
    return CircuitBreaker(
        failure_threshold=config.circuit_breaker.failure_threshold,
        success_threshold=config.circuit_breaker.success_threshold,
        timeout_seconds=config.circuit_breaker.timeout_minutes * 60,
        name="ai_service",
    )


async def build_pipeline(
    config: AppConfig,
    store: DatabaseStore | None = None,
    mailbox: Mailbox | None = None,
    anthropic_client: Any | None = None,
) -> Pipeline:
    """Build and initialize the pipeline.

    Args:
        config: Validated application config
        store: Existing store (a new one at config.database.path otherwise)
        mailbox: Provider adapter (Graph adapter otherwise)
        anthropic_client: Anthropic client (one with max_retries=3 otherwise)
    """
    if store is None:
        db_path = Path(config.database.path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        store = DatabaseStore(db_path)
    await store.initialize()

    blobs = ContentAddressedStore(
        FilesystemBackend(config.storage.root), store, key_prefix=config.storage.key_prefix
    )

    if mailbox is None:
        client = ProviderClient(
            base_url=config.sync.provider_base_url,
            max_retries=config.sync.max_page_retries,
            retry_delays=config.sync.retry_delays,
            timeout=config.sync.request_timeout_seconds,
        )
        mailbox = GraphMailbox(
            client,
            AccountTokenProvider(store, config.oauth),
            page_size=config.sync.page_size,
            default_range_months=config.sync.default_range_months,
        )

    if anthropic_client is None:
        import anthropic

        anthropic_client = anthropic.AsyncAnthropic(max_retries=3)

    breaker = build_breaker(config)
    automation = AutomationRuleEngine(store)
    detector = FinancialSuggestionDetector(
        store=store,
        blobs=blobs,
        analyzer=FinancialAnalyzer(anthropic_client, model=config.models.financial_detection),
        heuristic=HeuristicAnalyzer(default_currency=config.detection.default_currency),
        breaker=breaker,
        settings=config.detection,
    )
    orchestrator = SyncOrchestrator(
        store=store,
        mailbox=mailbox,
        blobs=blobs,
        spam_classifier=SpamClassifier(config.spam_policy),
        sync_config=config.sync,
        storage_config=config.storage,
        automation=automation,
        detector=detector,
        max_text_chars=config.detection.max_text_chars,
    )

    return Pipeline(
        config=config,
        store=store,
        blobs=blobs,
        breaker=breaker,
        automation=automation,
        detector=detector,
        orchestrator=orchestrator,
    )
