"""Financial suggestion detection with duplicate suppression.

For each message that survives spam filtering and belongs to an automation
config with payment/expense detection enabled, the detector:

1. Picks eligible attachments (PDF or image, within the size limit)
2. Flags attachments whose bytes already produced a suggestion
3. Asks the circuit breaker before every AI call; when the breaker is open it
   falls back to the heuristic analyzer (high/medium levels) or skips (low)
4. Drops results below the optimization level's confidence threshold
5. Compares each result against existing pending/approved suggestions of
   the same operation before inserting it (under a per-operation lock)

Duplicates are still created, flagged with is_duplicate and a reason, so a
reviewer sees them instead of the system silently dropping data.

Usage:
    from mailflow.detection.financial import FinancialSuggestionDetector

    detector = FinancialSuggestionDetector(store, blobs, analyzer, heuristic, breaker)
    suggestions = await detector.detect(message, attachments, config, operation_id)
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from mailflow.config_schema import DetectionConfig
from mailflow.core.errors import (
    AnalysisError,
    BlobBackendError,
    BlobNotFoundError,
    SuggestionConflictError,
    SuggestionNotFoundError,
)
from mailflow.core.logging import get_logger
from mailflow.db.store import FinancialSuggestion
from mailflow.detection.ai_analyzer import FinancialExtraction, is_analyzable

if TYPE_CHECKING:
    from mailflow.core.circuit_breaker import CircuitBreaker
    from mailflow.db.store import Attachment, AutomationConfig, DatabaseStore, Message
    from mailflow.detection.ai_analyzer import FinancialAnalyzer
    from mailflow.detection.heuristics import HeuristicAnalyzer
    from mailflow.storage.blob_store import ContentAddressedStore

logger = get_logger(__name__)

# Minimum AI confidence kept per optimization level
CONFIDENCE_THRESHOLDS = {"high": 70, "medium": 60, "low": 50}

# How long an analysis result is reused for identical bytes
CACHE_TTL_MINUTES = {"high": 60, "medium": 30, "low": 15}
MAX_CACHE_ENTRIES = 1000

# Levels that fall back to the heuristic analyzer when the AI is unavailable
HEURISTIC_FALLBACK_LEVELS = frozenset({"high", "medium"})


class FinancialSuggestionDetector:
    """Turns message content into pending FinancialSuggestion rows.

    Attributes:
        store: DatabaseStore for suggestions
        blobs: ContentAddressedStore holding attachment bytes
        analyzer: AI FinancialAnalyzer
        heuristic: Regex fallback analyzer
        breaker: Shared circuit breaker guarding the AI service
        settings: DetectionConfig (window, tolerance, size limits)
    """

    def __init__(
        self,
        store: DatabaseStore,
        blobs: ContentAddressedStore,
        analyzer: FinancialAnalyzer,
        heuristic: HeuristicAnalyzer,
        breaker: CircuitBreaker,
        settings: DetectionConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.blobs = blobs
        self.analyzer = analyzer
        self.heuristic = heuristic
        self.breaker = breaker
        self.settings = settings or DetectionConfig()
        self._clock = clock
        self._cache: dict[tuple[str, str], tuple[float, list[FinancialExtraction]]] = {}
        self._operation_locks: dict[int | None, asyncio.Lock] = {}

    # -------------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------------

    async def detect(
        self,
        message: Message,
        attachments: list[Attachment],
        config: AutomationConfig,
        operation_id: int | None = None,
    ) -> list[FinancialSuggestion]:
        """Analyze one message and persist any suggestions found.

        Returns:
            The suggestions created (duplicates included, flagged)
        """
        if not config.detection_enabled:
            return []

        level = config.ai_optimization_level
        text = self._message_text(message)
        eligible = [a for a in attachments if self._is_eligible(a)]
        created: list[FinancialSuggestion] = []

        for attachment in eligible:
            earlier = await self.store.find_suggestion_by_attachment_hash(attachment.content_hash)
            extractions = await self._analyze_attachment(attachment, text, level)

            for extraction in self._enabled(extractions, config):
                suggestion = self._build(extraction, message, operation_id, attachment)
                if earlier is not None:
                    suggestion.is_duplicate = True
                    suggestion.related_suggestion_id = earlier.id
                    suggestion.duplicate_reason = (
                        f"Same file already processed (suggestion #{earlier.id}, "
                        f"{earlier.suggestion_type} {earlier.amount} {earlier.currency})"
                    )
                created.append(await self._insert_checked(suggestion))

        if not eligible and text:
            for extraction in self._enabled(self.heuristic.analyze(text), config):
                suggestion = self._build(extraction, message, operation_id, None)
                created.append(await self._insert_checked(suggestion))

        if created:
            logger.info(
                "financial_suggestions_created",
                message_id=message.id,
                operation_id=operation_id,
                count=len(created),
                duplicates=sum(1 for s in created if s.is_duplicate),
            )
        return created

    def _is_eligible(self, attachment: Attachment) -> bool:
        return (
            attachment.content_hash is not None
            and is_analyzable(attachment.mime_type)
            and attachment.size <= self.settings.max_document_bytes
        )

    def _message_text(self, message: Message) -> str:
        parts = [message.subject or "", message.body_text or message.snippet or ""]
        return "\n".join(p for p in parts if p)[: self.settings.max_text_chars]

    @staticmethod
    def _enabled(
        extractions: list[FinancialExtraction], config: AutomationConfig
    ) -> list[FinancialExtraction]:
        return [
            e
            for e in extractions
            if (e.kind == "payment" and config.auto_detect_payments)
            or (e.kind == "expense" and config.auto_detect_expenses)
        ]

    async def _analyze_attachment(
        self, attachment: Attachment, text: str, level: str
    ) -> list[FinancialExtraction]:
        """AI analysis through the breaker, with caching and the heuristic fallback."""
        cache_key = (attachment.content_hash, level)
        cached = self._cache.get(cache_key)
        if cached is not None and cached[0] > self._clock():
            logger.debug("financial_analysis_cache_hit", content_hash=attachment.content_hash[:12])
            return cached[1]

        # Read the bytes before asking the breaker so a HALF_OPEN trial call is
        # only ever spent on an actual AI call
        try:
            document = await self.blobs.get(attachment.content_hash)
        except (BlobNotFoundError, BlobBackendError) as e:
            logger.warning(
                "financial_document_unavailable",
                attachment_id=attachment.id,
                error=str(e),
            )
            return []

        if not self.breaker.can_make_request():
            if level in HEURISTIC_FALLBACK_LEVELS:
                logger.info(
                    "financial_analysis_heuristic_fallback",
                    attachment_id=attachment.id,
                    level=level,
                )
                return self.heuristic.analyze(text, filename=attachment.filename)
            logger.info("financial_analysis_skipped_circuit_open", attachment_id=attachment.id)
            return []

        try:
            extractions = await self.analyzer.analyze(
                document, attachment.mime_type, content_hash=attachment.content_hash
            )
        except AnalysisError as e:
            self.breaker.record_failure(e)
            logger.warning(
                "financial_analysis_failed",
                attachment_id=attachment.id,
                breaker_state=self.breaker.get_state().value,
                error=str(e),
            )
            return []
        except Exception as e:
            # Release the breaker before the error propagates to the caller
            self.breaker.record_failure(e)
            logger.error(
                "financial_analysis_unexpected_error",
                attachment_id=attachment.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        self.breaker.record_success()
        threshold = CONFIDENCE_THRESHOLDS.get(level, CONFIDENCE_THRESHOLDS["high"])
        kept = [e for e in extractions if e.confidence >= threshold]
        if len(kept) < len(extractions):
            logger.debug(
                "financial_extractions_below_threshold",
                dropped=len(extractions) - len(kept),
                threshold=threshold,
            )

        ttl = CACHE_TTL_MINUTES.get(level, CACHE_TTL_MINUTES["high"]) * 60
        self._remember(cache_key, kept, ttl)
        return kept

    def _remember(
        self, key: tuple[str, str], extractions: list[FinancialExtraction], ttl: float
    ) -> None:
        """Cache a result, dropping expired entries and then the oldest over the cap."""
        now = self._clock()
        for stale in [k for k, (expires, _) in self._cache.items() if expires <= now]:
            del self._cache[stale]
        self._cache.pop(key, None)
        while len(self._cache) >= MAX_CACHE_ENTRIES:
            del self._cache[next(iter(self._cache))]
        self._cache[key] = (now + ttl, extractions)

    def _build(
        self,
        extraction: FinancialExtraction,
        message: Message,
        operation_id: int | None,
        attachment: Attachment | None,
    ) -> FinancialSuggestion:
        document_date = extraction.date
        if document_date is None:
            received = message.received_at or datetime.now(UTC)
            document_date = received.date()

        return FinancialSuggestion(
            suggestion_type=extraction.kind,
            amount=extraction.amount,
            currency=extraction.currency,
            operation_id=operation_id,
            message_id=message.id,
            attachment_id=attachment.id if attachment else None,
            attachment_hash=attachment.content_hash if attachment else None,
            document_date=document_date,
            description=extraction.description or message.subject,
            reference=extraction.reference,
            payment_method=extraction.payment_method,
            category=extraction.category,
            ai_confidence=extraction.confidence,
            detection_method=extraction.method,
        )

    # -------------------------------------------------------------------------
    # Duplicate detection
    # -------------------------------------------------------------------------

    def _lock_for(self, operation_id: int | None) -> asyncio.Lock:
        lock = self._operation_locks.get(operation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._operation_locks[operation_id] = lock
        return lock

    def amounts_match(self, a: Decimal, b: Decimal) -> bool:
        """Equal amounts, or within amount_tolerance_pct of the larger one."""
        if a == b:
            return True
        tolerance = Decimal(str(self.settings.amount_tolerance_pct))
        if tolerance <= 0:
            return False
        return abs(a - b) <= max(abs(a), abs(b)) * tolerance / Decimal(100)

    async def find_duplicate(self, suggestion: FinancialSuggestion) -> FinancialSuggestion | None:
        """Earliest existing suggestion this one would double-book, if any."""
        window = timedelta(days=self.settings.duplicate_window_days)
        day = suggestion.document_date or date.today()
        candidates = await self.store.find_duplicate_candidates(
            operation_id=suggestion.operation_id,
            suggestion_type=suggestion.suggestion_type,
            currency=suggestion.currency,
            date_from=day - window,
            date_to=day + window,
        )
        for candidate in candidates:
            if self.amounts_match(candidate.amount, suggestion.amount):
                return candidate
        return None

    async def _insert_checked(self, suggestion: FinancialSuggestion) -> FinancialSuggestion:
        """Duplicate check and insert, serialized per operation."""
        async with self._lock_for(suggestion.operation_id):
            if not suggestion.is_duplicate:
                existing = await self.find_duplicate(suggestion)
                if existing is not None:
                    days_apart = abs(
                        ((existing.document_date or date.today()) - suggestion.document_date).days
                    )
                    suggestion.is_duplicate = True
                    suggestion.related_suggestion_id = existing.id
                    suggestion.duplicate_reason = (
                        f"Possible duplicate of suggestion #{existing.id}: same "
                        f"{suggestion.suggestion_type} of {existing.amount} {existing.currency} "
                        f"{days_apart} day(s) apart ({existing.status})"
                    )
                    logger.info(
                        "financial_suggestion_duplicate",
                        related_suggestion_id=existing.id,
                        amount=str(suggestion.amount),
                        currency=suggestion.currency,
                    )
            suggestion.id = await self.store.create_financial_suggestion(suggestion)
        return suggestion

    # -------------------------------------------------------------------------
    # Review transitions
    # -------------------------------------------------------------------------

    async def approve(
        self, suggestion_id: int, resolved_by: str | None = None
    ) -> FinancialSuggestion:
        """pending -> approved, creating the ledger entry.

        Raises:
            SuggestionNotFoundError: Unknown id
            SuggestionConflictError: Suggestion is no longer pending
        """
        approved = await self.store.approve_financial_suggestion(suggestion_id, resolved_by)
        if approved is None:
            await self._raise_not_pending(suggestion_id)
        await self.store.log_action(
            "approve_suggestion",
            str(suggestion_id),
            details={"ledger_entry_id": approved.ledger_entry_id},
            triggered_by=resolved_by or "user",
        )
        return approved

    async def reject(
        self, suggestion_id: int, reason: str | None = None, resolved_by: str | None = None
    ) -> FinancialSuggestion:
        """pending -> rejected.

        Raises:
            SuggestionNotFoundError: Unknown id
            SuggestionConflictError: Suggestion is no longer pending
        """
        rejected = await self.store.reject_financial_suggestion(suggestion_id, reason, resolved_by)
        if rejected is None:
            await self._raise_not_pending(suggestion_id)
        await self.store.log_action(
            "reject_suggestion",
            str(suggestion_id),
            details={"reason": reason} if reason else None,
            triggered_by=resolved_by or "user",
        )
        return rejected

    async def _raise_not_pending(self, suggestion_id: int) -> None:
        current = await self.store.get_financial_suggestion(suggestion_id)
        if current is None:
            raise SuggestionNotFoundError(suggestion_id)
        raise SuggestionConflictError(suggestion_id, current.status)
