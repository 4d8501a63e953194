"""Per-account incremental mailbox sync.

A sync run walks the provider's pages for one account, newest first, and
for every message:

1. Skip it if (account, provider id) is already stored (already_seen)
2. Classify it; spam is recorded with is_spam=1 and goes no further
3. Store the body and each non-ignored attachment in the blob store
4. Hand it to post-processing (automation rules, then financial detection)

Post-processing failures are logged and never abort the sync. The page
continuation token is persisted after every fully consumed page, so an
interrupted or failed run resumes where it stopped.

Account state machine:

    never | completed | error  --sync()-->  syncing  --pages done-->  completed
                                             syncing  --failure-->     error

Only one run per account at a time: the store claims the account with a
conditional UPDATE and a second trigger returns status 'skipped'.

Usage:
    from mailflow.engine.sync import SyncOrchestrator

    orchestrator = SyncOrchestrator(store, mailbox, blobs, spam_classifier, config.sync, config.storage)
    result = await orchestrator.sync(account)
    results = await orchestrator.sync_all()
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from mailflow.classifier.attachment_filter import ignore_reason
from mailflow.classifier.body_text import to_plain_text
from mailflow.config_schema import StorageConfig, SyncConfig
from mailflow.core.errors import (
    AuthenticationError,
    DatabaseError,
    ProviderError,
)
from mailflow.core.logging import get_logger, set_correlation_id
from mailflow.db.store import Attachment, Message

if TYPE_CHECKING:
    from mailflow.automation.engine import AutomationRuleEngine
    from mailflow.classifier.spam_filter import SpamClassifier
    from mailflow.db.store import DatabaseStore, MailAccount
    from mailflow.detection.financial import FinancialSuggestionDetector
    from mailflow.provider.mailbox import Mailbox, ProviderAttachmentRef, ProviderMessage
    from mailflow.storage.blob_store import ContentAddressedStore

logger = get_logger(__name__)

CURSOR_KEY_PREFIX = "sync_cursor:"

SyncRunStatus = Literal["completed", "error", "skipped"]


def cursor_key(account_id: int) -> str:
    return f"{CURSOR_KEY_PREFIX}{account_id}"


@dataclass
class SyncResult:
    """Counters of one sync run.

    processed == newly_synced + spam_filtered + already_seen always holds.
    """

    account_id: int
    run_id: str = ""
    status: SyncRunStatus = "completed"
    processed: int = 0
    newly_synced: int = 0
    spam_filtered: int = 0
    already_seen: int = 0
    attachments_stored: int = 0
    attachments_deduplicated: int = 0
    attachments_skipped: int = 0
    pages: int = 0
    resumed: bool = False
    duration_ms: int = 0
    error: str | None = None


class SyncOrchestrator:
    """Runs incremental syncs for linked mail accounts.

    Attributes:
        store: DatabaseStore for accounts, messages, attachments and cursors
        mailbox: Provider adapter (list_page / get_attachment)
        blobs: Content-addressed store for bodies and attachments
        spam_classifier: Keep/drop policy applied to every new message
        automation: Rule engine run for every kept message (optional)
        detector: Financial suggestion detector (optional)
    """

    def __init__(
        self,
        store: DatabaseStore,
        mailbox: Mailbox,
        blobs: ContentAddressedStore,
        spam_classifier: SpamClassifier,
        sync_config: SyncConfig | None = None,
        storage_config: StorageConfig | None = None,
        automation: AutomationRuleEngine | None = None,
        detector: FinancialSuggestionDetector | None = None,
        max_text_chars: int = 5000,
    ):
        self.store = store
        self.mailbox = mailbox
        self.blobs = blobs
        self.spam_classifier = spam_classifier
        self.sync_config = sync_config or SyncConfig()
        self.storage_config = storage_config or StorageConfig()
        self.automation = automation
        self.detector = detector
        self.max_text_chars = max_text_chars

    def update_spam_classifier(self, spam_classifier: SpamClassifier) -> None:
        """Swap the classifier after a config hot-reload."""
        self.spam_classifier = spam_classifier

    async def sync_all(self) -> list[SyncResult]:
        """Sync every enabled account concurrently (pages stay sequential per account)."""
        accounts = await self.store.list_accounts(enabled_only=True)
        if not accounts:
            logger.info("sync_all_no_accounts")
            return []
        return list(await asyncio.gather(*(self.sync(account) for account in accounts)))

    async def sync(self, account: MailAccount) -> SyncResult:
        """Run one sync for an account.

        Never raises: provider, auth and storage failures, and any
        unexpected exception, put the account in 'error' and are reported
        in the result.
        """
        run_id = str(uuid.uuid4())
        result = SyncResult(account_id=account.id, run_id=run_id)

        if not await self.store.claim_account_for_sync(account.id):
            result.status = "skipped"
            logger.info("sync_already_running", account_id=account.id)
            return result

        set_correlation_id(run_id)
        start_time = time.monotonic()
        logger.info("sync_run_start", account_id=account.id, email=account.email)

        try:
            await self._run_pages(account, result)
            await self.store.delete_state(cursor_key(account.id))
            await self.store.finish_account_sync(account.id, "completed")
            result.status = "completed"
        except (ProviderError, AuthenticationError, DatabaseError) as e:
            result.status = "error"
            result.error = str(e)
            logger.error(
                "sync_run_failed",
                account_id=account.id,
                error=str(e),
                error_type=type(e).__name__,
                pages=result.pages,
            )
            await self._mark_failed(account.id, str(e))
        except Exception as e:
            result.status = "error"
            result.error = f"{type(e).__name__}: {e}"
            logger.error(
                "sync_run_unexpected_error",
                account_id=account.id,
                error=str(e),
                error_type=type(e).__name__,
                pages=result.pages,
                exc_info=True,
            )
            await self._mark_failed(account.id, result.error)
        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "sync_run_complete",
                account_id=account.id,
                status=result.status,
                duration_ms=result.duration_ms,
                pages=result.pages,
                resumed=result.resumed,
                processed=result.processed,
                newly_synced=result.newly_synced,
                spam_filtered=result.spam_filtered,
                already_seen=result.already_seen,
                attachments_stored=result.attachments_stored,
                attachments_deduplicated=result.attachments_deduplicated,
                attachments_skipped=result.attachments_skipped,
            )
            set_correlation_id(None)

        return result

    async def _mark_failed(self, account_id: int, error: str) -> None:
        try:
            await self.store.finish_account_sync(account_id, "error", error)
        except DatabaseError as db_error:
            logger.error("sync_status_update_failed", account_id=account_id, error=str(db_error))

    async def _run_pages(self, account: MailAccount, result: SyncResult) -> None:
        page_token = await self.store.get_state(cursor_key(account.id))
        if page_token:
            result.resumed = True
            logger.info("sync_resuming_from_cursor", account_id=account.id)

        while True:
            page = await self.mailbox.list_page(account, page_token)
            result.pages += 1

            for provider_message in page.messages:
                await self._process_message(account, provider_message, result)

            if not page.next_token:
                break

            # Page fully consumed: a later run can resume from here
            await self.store.set_state(cursor_key(account.id), page.next_token)
            page_token = page.next_token
            if self.sync_config.page_delay_seconds > 0:
                await asyncio.sleep(self.sync_config.page_delay_seconds)

    # -------------------------------------------------------------------------
    # Per-message processing
    # -------------------------------------------------------------------------

    async def _process_message(
        self, account: MailAccount, provider_message: ProviderMessage, result: SyncResult
    ) -> None:
        result.processed += 1

        if await self.store.message_exists(account.id, provider_message.provider_message_id):
            result.already_seen += 1
            return

        message = self._to_message(account.id, provider_message)
        verdict = self.spam_classifier.classify(message)

        if not verdict.keep:
            message.is_spam = True
            message.spam_reason = verdict.reason
            if await self.store.insert_message(message) is None:
                result.already_seen += 1
            else:
                result.spam_filtered += 1
            return

        if provider_message.body:
            stored = await self.blobs.put(provider_message.body.encode("utf-8"))
            message.body_content_hash = stored.content_hash
            message.body_mime_type = provider_message.body_mime_type

        message_id = await self.store.insert_message(message)
        if message_id is None:
            # Lost a race with a concurrent writer of the same message
            result.already_seen += 1
            return
        message.id = message_id
        result.newly_synced += 1

        attachments = await self._store_attachments(account, message, provider_message, result)
        await self._post_process(message, attachments)

    def _to_message(self, account_id: int, provider_message: ProviderMessage) -> Message:
        body_text = to_plain_text(
            provider_message.body,
            is_html=provider_message.body_mime_type == "text/html",
            max_length=self.max_text_chars,
        )
        return Message(
            account_id=account_id,
            provider_message_id=provider_message.provider_message_id,
            thread_id=provider_message.thread_id,
            sender_email=provider_message.sender_email,
            sender_name=provider_message.sender_name,
            recipients=list(provider_message.recipients),
            subject=provider_message.subject,
            snippet=provider_message.snippet,
            received_at=provider_message.received_at,
            is_read=provider_message.is_read,
            is_starred=provider_message.is_starred,
            is_important=provider_message.is_important,
            has_attachments=bool(provider_message.attachments),
            labels=list(provider_message.labels),
            body_text=body_text or None,
        )

    async def _store_attachments(
        self,
        account: MailAccount,
        message: Message,
        provider_message: ProviderMessage,
        result: SyncResult,
    ) -> list[Attachment]:
        stored: list[Attachment] = []
        for ref in provider_message.attachments:
            attachment = await self._store_attachment(account, message, provider_message, ref, result)
            if attachment is not None:
                stored.append(attachment)
        return stored

    async def _store_attachment(
        self,
        account: MailAccount,
        message: Message,
        provider_message: ProviderMessage,
        ref: ProviderAttachmentRef,
        result: SyncResult,
    ) -> Attachment | None:
        reason = ignore_reason(ref.filename, ref.mime_type, ref.size, ref.is_inline)
        if reason:
            result.attachments_skipped += 1
            logger.debug("attachment_ignored", filename=ref.filename[:80], reason=reason)
            return None

        attachment = Attachment(
            message_id=message.id,
            filename=ref.filename,
            mime_type=ref.mime_type,
            size=ref.size,
            provider_attachment_id=ref.provider_attachment_id,
            is_inline=ref.is_inline,
        )

        if ref.size > self.storage_config.max_attachment_bytes:
            # Recorded without bytes; detection skips attachments with no hash
            result.attachments_skipped += 1
            logger.info(
                "attachment_too_large",
                message_id=message.id,
                filename=ref.filename[:80],
                size=ref.size,
                limit=self.storage_config.max_attachment_bytes,
            )
            attachment.id = await self.store.add_attachment(attachment)
            return attachment

        try:
            data = await self.mailbox.get_attachment(
                account, provider_message.provider_message_id, ref.provider_attachment_id
            )
        except ProviderError as e:
            if e.status_code == 401:
                raise
            result.attachments_skipped += 1
            logger.warning(
                "attachment_download_failed",
                message_id=message.id,
                filename=ref.filename[:80],
                error=str(e),
            )
            return None

        put = await self.blobs.put(data)
        if put.stored:
            result.attachments_stored += 1
        else:
            result.attachments_deduplicated += 1

        attachment.content_hash = put.content_hash
        attachment.size = put.size
        attachment.id = await self.store.add_attachment(attachment)
        return attachment

    async def _post_process(self, message: Message, attachments: list[Attachment]) -> None:
        """Automation, then financial detection. Failures never abort the sync."""
        if self.automation is None:
            return

        try:
            automation_result = await self.automation.run_for_message(message, attachments)
        except Exception as e:
            logger.error("automation_failed", message_id=message.id, error=str(e))
            return

        if self.detector is None:
            return

        for config in automation_result.configs:
            if not config.detection_enabled:
                continue
            try:
                await self.detector.detect(
                    message, attachments, config, operation_id=automation_result.operation_id
                )
            except Exception as e:
                logger.error(
                    "financial_detection_failed",
                    message_id=message.id,
                    config_id=config.id,
                    error=str(e),
                )

