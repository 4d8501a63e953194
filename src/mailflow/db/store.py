"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for the mail pipeline. It uses aiosqlite for async access and
returns typed dataclasses.

Usage:
    from mailflow.db.store import DatabaseStore

    store = DatabaseStore("data/mailflow.db")
    await store.initialize()

    account = await store.get_account(1)
    message_id = await store.insert_message(message)   # None if already synced
    suggestion = await store.approve_financial_suggestion(7, resolved_by="ana")
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from mailflow.core.errors import DatabaseError
from mailflow.core.logging import get_correlation_id, get_logger
from mailflow.db.models import init_database

logger = get_logger(__name__)

# Snippets are previews, never full bodies (bodies live in the blob store)
MAX_SNIPPET_LENGTH = 500

SyncStatus = Literal["never", "syncing", "completed", "error"]
LogStatus = Literal["success", "error", "skipped"]
SuggestionType = Literal["payment", "expense"]
SuggestionStatus = Literal["pending", "approved", "rejected"]
AutomationMode = Literal["disabled", "basic", "smart_ai"]
OptimizationLevel = Literal["high", "medium", "low"]


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    # SQLite CURRENT_TIMESTAMP is naive UTC
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _json_list(value: str | None) -> list[Any]:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return []
    return parsed if isinstance(parsed, list) else []


def _json_dict(value: str | None) -> dict[str, Any] | None:
    if not value:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


# ---------------------------------------------------------------------------
# Row dataclasses
# ---------------------------------------------------------------------------


@dataclass
class MailAccount:
    """Linked mailbox with its OAuth credential pair and sync state."""

    id: int
    email: str
    provider_account_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    sync_enabled: bool = True
    sync_status: SyncStatus = "never"
    sync_started_at: datetime | None = None
    last_sync_date: datetime | None = None
    sync_range_months: int = 3
    error_message: str | None = None
    created_at: datetime | None = None


@dataclass
class Message:
    """Synced message metadata.

    body_text is not a column: the body itself lives in the blob store under
    body_content_hash. Sync fills it in so rules can match on the body
    without a second read.
    """

    account_id: int
    provider_message_id: str
    id: int | None = None
    thread_id: str | None = None
    sender_email: str | None = None
    sender_name: str | None = None
    recipients: list[str] = field(default_factory=list)
    subject: str | None = None
    snippet: str | None = None
    received_at: datetime | None = None
    is_read: bool = False
    is_starred: bool = False
    is_important: bool = False
    has_attachments: bool = False
    body_content_hash: str | None = None
    body_mime_type: str | None = None
    labels: list[str] = field(default_factory=list)
    is_spam: bool = False
    spam_reason: str | None = None
    created_at: datetime | None = None
    body_text: str | None = None


@dataclass
class Attachment:
    """Attachment row; content_hash is a weak reference into the blob store."""

    message_id: int
    filename: str
    mime_type: str
    size: int
    id: int | None = None
    provider_attachment_id: str | None = None
    content_hash: str | None = None
    is_inline: bool = False
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class BlobRecord:
    """Presence record for one content hash."""

    content_hash: str
    size: int
    backend: Literal["primary", "inline"]
    storage_key: str | None = None
    data: bytes | None = None


@dataclass
class AutomationConfig:
    """Per-module automation settings."""

    id: int
    module_name: str
    is_enabled: bool = True
    selected_accounts: list[int] = field(default_factory=list)
    default_employees: list[str] = field(default_factory=list)
    process_attachments: bool = True
    auto_create_tasks: AutomationMode = "disabled"
    auto_create_notes: AutomationMode = "disabled"
    ai_optimization_level: OptimizationLevel = "high"
    auto_detect_payments: bool = False
    auto_detect_expenses: bool = False
    last_processed_at: datetime | None = None

    @property
    def detection_enabled(self) -> bool:
        return self.auto_detect_payments or self.auto_detect_expenses

    def selects_account(self, account_id: int) -> bool:
        """Empty selection means every account."""
        return not self.selected_accounts or account_id in self.selected_accounts


@dataclass
class AutomationRuleRecord:
    """Stored rule. conditions/actions are raw JSON, re-validated on load."""

    id: int
    config_id: int
    name: str
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    description: str | None = None
    priority: int = 0
    is_enabled: bool = True
    created_at: datetime | None = None


@dataclass
class AutomationLogEntry:
    """One action execution outcome."""

    id: int
    action_type: str
    status: LogStatus
    rule_id: int | None = None
    message_id: int | None = None
    entity_type: str | None = None
    entity_id: int | None = None
    details: dict[str, Any] | None = None
    error_message: str | None = None
    sync_run_id: str | None = None
    created_at: datetime | None = None


@dataclass
class Operation:
    """Logistics operation (collaborator record)."""

    id: int
    name: str
    category: str | None = None
    operation_type: str | None = None
    shipping_mode: str | None = None
    currency: str | None = None
    status: str = "planning"
    source_message_id: int | None = None
    created_by_automation: bool = False


@dataclass
class FinancialSuggestion:
    """Candidate payment/expense awaiting human review."""

    suggestion_type: SuggestionType
    amount: Decimal
    currency: str
    id: int | None = None
    operation_id: int | None = None
    message_id: int | None = None
    attachment_id: int | None = None
    attachment_hash: str | None = None
    document_date: date | None = None
    description: str | None = None
    reference: str | None = None
    payment_method: str | None = None
    category: str | None = None
    ai_confidence: int = 0
    detection_method: Literal["ai", "heuristic"] = "ai"
    status: SuggestionStatus = "pending"
    is_duplicate: bool = False
    duplicate_reason: str | None = None
    related_suggestion_id: int | None = None
    rejection_reason: str | None = None
    ledger_entry_id: int | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    """Downstream payment/expense record created on approval."""

    id: int
    entry_type: SuggestionType
    amount: Decimal
    currency: str
    operation_id: int | None = None
    entry_date: date | None = None
    description: str | None = None
    suggestion_id: int | None = None


@dataclass
class ActionLogEntry:
    """Audit entry for a user-triggered action."""

    id: int
    timestamp: datetime
    action_type: str
    subject_id: str | None = None
    details_json: dict[str, Any] | None = None
    triggered_by: str | None = None


class DatabaseStore:
    """Database store for all pipeline data.

    Opens one connection per operation through `_db()`, so the store can be
    shared by the web app, the scheduler bridge and concurrent account syncs.

    Attributes:
        db_path: Path to the SQLite database file
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        """Create tables if needed. Must be called before any other operation."""
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        PRAGMAs:
        - busy_timeout: 10s for concurrent writers (sync + web + scheduler)
        - foreign_keys: ON so account deletion cascades to messages
        - synchronous: NORMAL (safe with WAL)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")
            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Mail accounts
    # =========================================================================

    async def create_account(
        self,
        email: str,
        provider_account_id: str | None = None,
        access_token: str | None = None,
        refresh_token: str | None = None,
        token_expires_at: datetime | None = None,
        sync_range_months: int = 3,
        sync_enabled: bool = True,
    ) -> int:
        """Link a mailbox. Returns the new account id."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO mail_accounts (
                        email, provider_account_id, access_token, refresh_token,
                        token_expires_at, sync_range_months, sync_enabled
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        email.lower(),
                        provider_account_id,
                        access_token,
                        refresh_token,
                        _iso(token_expires_at),
                        sync_range_months,
                        int(sync_enabled),
                    ),
                )
                await db.commit()
                logger.info("account_created", account_id=cursor.lastrowid, email=email.lower())
                return cursor.lastrowid
        except aiosqlite.IntegrityError as e:
            raise DatabaseError(f"Mailbox {email} is already linked: {e}") from e
        except aiosqlite.Error as e:
            logger.error("Failed to create account", email=email, error=str(e))
            raise DatabaseError(f"Failed to create account: {e}") from e

    async def get_account(self, account_id: int) -> MailAccount | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM mail_accounts WHERE id = ?", (account_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_account(row) if row else None
        except aiosqlite.Error as e:
            logger.error("Failed to get account", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to get account: {e}") from e

    async def list_accounts(self, enabled_only: bool = False) -> list[MailAccount]:
        """List linked accounts, optionally only those with sync enabled."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM mail_accounts"
                if enabled_only:
                    query += " WHERE sync_enabled = 1"
                query += " ORDER BY id"
                cursor = await db.execute(query)
                rows = await cursor.fetchall()
                return [self._row_to_account(row) for row in rows]
        except aiosqlite.Error as e:
            logger.error("Failed to list accounts", error=str(e))
            raise DatabaseError(f"Failed to list accounts: {e}") from e

    async def claim_account_for_sync(self, account_id: int) -> bool:
        """Atomically move an account into 'syncing'.

        Returns:
            True if this caller now owns the sync; False if another sync is
            already in flight or the account does not exist
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE mail_accounts
                    SET sync_status = 'syncing', sync_started_at = ?, error_message = NULL
                    WHERE id = ? AND sync_status != 'syncing'
                    RETURNING id
                    """,
                    (_now(), account_id),
                )
                row = await cursor.fetchone()
                await db.commit()
                return row is not None
        except aiosqlite.Error as e:
            logger.error("Failed to claim account", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to claim account for sync: {e}") from e

    async def finish_account_sync(
        self,
        account_id: int,
        status: Literal["completed", "error"],
        error_message: str | None = None,
    ) -> None:
        """Leave the 'syncing' state. 'completed' also stamps last_sync_date."""
        try:
            async with self._db() as db:
                if status == "completed":
                    await db.execute(
                        """
                        UPDATE mail_accounts
                        SET sync_status = 'completed', last_sync_date = ?,
                            sync_started_at = NULL, error_message = NULL
                        WHERE id = ?
                        """,
                        (_now(), account_id),
                    )
                else:
                    await db.execute(
                        """
                        UPDATE mail_accounts
                        SET sync_status = 'error', sync_started_at = NULL, error_message = ?
                        WHERE id = ?
                        """,
                        ((error_message or "unknown error")[:1000], account_id),
                    )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("Failed to finish account sync", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to update account sync status: {e}") from e

    async def set_sync_enabled(self, account_id: int, enabled: bool) -> bool:
        """Toggle scheduled sync. Returns False if the account does not exist."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE mail_accounts SET sync_enabled = ? WHERE id = ?",
                    (int(enabled), account_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to toggle sync for account {account_id}: {e}") from e

    async def update_account_credentials(
        self,
        account_id: int,
        access_token: str,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> None:
        """Persist a rotated credential pair.

        A provider that does not rotate refresh tokens returns none; the
        stored one is kept in that case.
        """
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE mail_accounts
                    SET access_token = ?,
                        refresh_token = COALESCE(?, refresh_token),
                        token_expires_at = ?
                    WHERE id = ?
                    """,
                    (access_token, refresh_token, _iso(token_expires_at), account_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("Failed to store credentials", account_id=account_id, error=str(e))
            raise DatabaseError(f"Failed to store rotated credentials: {e}") from e

    async def reset_stuck_accounts(self, stuck_after: timedelta) -> list[int]:
        """Move accounts stuck in 'syncing' past `stuck_after` to 'error'.

        Returns:
            Ids of the accounts that were reset
        """
        cutoff = (datetime.now(UTC) - stuck_after).isoformat()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE mail_accounts
                    SET sync_status = 'error', sync_started_at = NULL,
                        error_message = 'Sync interrupted; reset after timeout'
                    WHERE sync_status = 'syncing'
                      AND (sync_started_at IS NULL OR sync_started_at < ?)
                    RETURNING id
                    """,
                    (cutoff,),
                )
                rows = await cursor.fetchall()
                await db.commit()
                return [row["id"] for row in rows]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to reset stuck accounts: {e}") from e

    async def delete_account(self, account_id: int) -> bool:
        """Disconnect a mailbox. Messages/attachments cascade; blobs stay."""
        try:
            async with self._db() as db:
                cursor = await db.execute("DELETE FROM mail_accounts WHERE id = ?", (account_id,))
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to delete account {account_id}: {e}") from e

    def _row_to_account(self, row: aiosqlite.Row) -> MailAccount:
        return MailAccount(
            id=row["id"],
            email=row["email"],
            provider_account_id=row["provider_account_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_expires_at=_parse_dt(row["token_expires_at"]),
            sync_enabled=bool(row["sync_enabled"]),
            sync_status=row["sync_status"] or "never",
            sync_started_at=_parse_dt(row["sync_started_at"]),
            last_sync_date=_parse_dt(row["last_sync_date"]),
            sync_range_months=row["sync_range_months"] or 3,
            error_message=row["error_message"],
            created_at=_parse_dt(row["created_at"]),
        )

    # =========================================================================
    # Messages
    # =========================================================================

    async def insert_message(self, message: Message) -> int | None:
        """Insert a message once per (account, provider id).

        Returns:
            The new row id, or None if the message was already synced
        """
        snippet = message.snippet
        if snippet and len(snippet) > MAX_SNIPPET_LENGTH:
            snippet = snippet[:MAX_SNIPPET_LENGTH]

        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO messages (
                        account_id, provider_message_id, thread_id, sender_email,
                        sender_name, recipients, subject, snippet, received_at,
                        is_read, is_starred, is_important, has_attachments,
                        body_content_hash, body_mime_type, labels_json, is_spam, spam_reason
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(account_id, provider_message_id) DO NOTHING
                    RETURNING id
                    """,
                    (
                        message.account_id,
                        message.provider_message_id,
                        message.thread_id,
                        message.sender_email,
                        message.sender_name,
                        json.dumps(message.recipients),
                        message.subject,
                        snippet,
                        _iso(message.received_at),
                        int(message.is_read),
                        int(message.is_starred),
                        int(message.is_important),
                        int(message.has_attachments),
                        message.body_content_hash,
                        message.body_mime_type,
                        json.dumps(message.labels),
                        int(message.is_spam),
                        message.spam_reason,
                    ),
                )
                row = await cursor.fetchone()
                await db.commit()
                return row["id"] if row else None
        except aiosqlite.Error as e:
            logger.error(
                "Failed to insert message",
                account_id=message.account_id,
                provider_message_id=message.provider_message_id[:40],
                error=str(e),
            )
            raise DatabaseError(f"Failed to insert message: {e}") from e

    async def message_exists(self, account_id: int, provider_message_id: str) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT 1 FROM messages WHERE account_id = ? AND provider_message_id = ?",
                    (account_id, provider_message_id),
                )
                return await cursor.fetchone() is not None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to check message existence: {e}") from e

    async def get_message(self, message_id: int) -> Message | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM messages WHERE id = ?", (message_id,))
                row = await cursor.fetchone()
                return self._row_to_message(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get message {message_id}: {e}") from e

    async def count_messages(self, account_id: int, is_spam: bool | None = None) -> int:
        try:
            async with self._db() as db:
                query = "SELECT COUNT(*) AS n FROM messages WHERE account_id = ?"
                params: list[Any] = [account_id]
                if is_spam is not None:
                    query += " AND is_spam = ?"
                    params.append(int(is_spam))
                cursor = await db.execute(query, params)
                row = await cursor.fetchone()
                return row["n"]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count messages: {e}") from e

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        return Message(
            id=row["id"],
            account_id=row["account_id"],
            provider_message_id=row["provider_message_id"],
            thread_id=row["thread_id"],
            sender_email=row["sender_email"],
            sender_name=row["sender_name"],
            recipients=_json_list(row["recipients"]),
            subject=row["subject"],
            snippet=row["snippet"],
            received_at=_parse_dt(row["received_at"]),
            is_read=bool(row["is_read"]),
            is_starred=bool(row["is_starred"]),
            is_important=bool(row["is_important"]),
            has_attachments=bool(row["has_attachments"]),
            body_content_hash=row["body_content_hash"],
            body_mime_type=row["body_mime_type"],
            labels=_json_list(row["labels_json"]),
            is_spam=bool(row["is_spam"]),
            spam_reason=row["spam_reason"],
            created_at=_parse_dt(row["created_at"]),
        )

    # =========================================================================
    # Attachments
    # =========================================================================

    async def add_attachment(self, attachment: Attachment) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO attachments (
                        message_id, provider_attachment_id, filename, mime_type,
                        size, content_hash, is_inline
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        attachment.message_id,
                        attachment.provider_attachment_id,
                        attachment.filename,
                        attachment.mime_type,
                        attachment.size,
                        attachment.content_hash,
                        int(attachment.is_inline),
                    ),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error("Failed to add attachment", message_id=attachment.message_id, error=str(e))
            raise DatabaseError(f"Failed to add attachment: {e}") from e

    async def get_attachments(self, message_id: int) -> list[Attachment]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM attachments WHERE message_id = ? ORDER BY id", (message_id,)
                )
                rows = await cursor.fetchall()
                return [self._row_to_attachment(row) for row in rows]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get attachments: {e}") from e

    def _row_to_attachment(self, row: aiosqlite.Row) -> Attachment:
        return Attachment(
            id=row["id"],
            message_id=row["message_id"],
            provider_attachment_id=row["provider_attachment_id"],
            filename=row["filename"] or "",
            mime_type=row["mime_type"] or "application/octet-stream",
            size=row["size"] or 0,
            content_hash=row["content_hash"],
            is_inline=bool(row["is_inline"]),
            created_at=_parse_dt(row["created_at"]),
        )

    # =========================================================================
    # Blobs
    # =========================================================================

    async def record_blob(
        self,
        content_hash: str,
        size: int,
        backend: Literal["primary", "inline"],
        storage_key: str | None = None,
        data: bytes | None = None,
    ) -> bool:
        """Record presence of a blob. Insert-or-ignore on the hash.

        Returns:
            True if this call created the row, False if it already existed
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO blobs (content_hash, size, backend, storage_key, data)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(content_hash) DO NOTHING
                    """,
                    (content_hash, size, backend, storage_key, data),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            logger.error("Failed to record blob", content_hash=content_hash[:12], error=str(e))
            raise DatabaseError(f"Failed to record blob: {e}") from e

    async def get_blob(self, content_hash: str) -> BlobRecord | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM blobs WHERE content_hash = ?", (content_hash,)
                )
                row = await cursor.fetchone()
                if not row:
                    return None
                return BlobRecord(
                    content_hash=row["content_hash"],
                    size=row["size"],
                    backend=row["backend"],
                    storage_key=row["storage_key"],
                    data=row["data"],
                )
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get blob: {e}") from e

    async def count_blobs(self) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT COUNT(*) AS n FROM blobs")
                row = await cursor.fetchone()
                return row["n"]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count blobs: {e}") from e

    # =========================================================================
    # Automation configs and rules
    # =========================================================================

    async def create_automation_config(
        self,
        module_name: str,
        selected_accounts: list[int] | None = None,
        default_employees: list[str] | None = None,
        process_attachments: bool = True,
        auto_create_tasks: AutomationMode = "disabled",
        auto_create_notes: AutomationMode = "disabled",
        ai_optimization_level: OptimizationLevel = "high",
        auto_detect_payments: bool = False,
        auto_detect_expenses: bool = False,
        is_enabled: bool = True,
    ) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO automation_configs (
                        module_name, is_enabled, selected_accounts_json, default_employees_json,
                        process_attachments, auto_create_tasks, auto_create_notes,
                        ai_optimization_level, auto_detect_payments, auto_detect_expenses
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        module_name,
                        int(is_enabled),
                        json.dumps(selected_accounts or []),
                        json.dumps(default_employees or []),
                        int(process_attachments),
                        auto_create_tasks,
                        auto_create_notes,
                        ai_optimization_level,
                        int(auto_detect_payments),
                        int(auto_detect_expenses),
                    ),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.IntegrityError as e:
            raise DatabaseError(f"Automation module '{module_name}' already configured") from e
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to create automation config: {e}") from e

    async def get_automation_config(self, config_id: int) -> AutomationConfig | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM automation_configs WHERE id = ?", (config_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_automation_config(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get automation config: {e}") from e

    async def list_automation_configs(self, enabled_only: bool = False) -> list[AutomationConfig]:
        try:
            async with self._db() as db:
                query = "SELECT * FROM automation_configs"
                if enabled_only:
                    query += " WHERE is_enabled = 1"
                query += " ORDER BY id"
                cursor = await db.execute(query)
                rows = await cursor.fetchall()
                return [self._row_to_automation_config(row) for row in rows]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list automation configs: {e}") from e

    async def touch_automation_config(self, config_id: int) -> None:
        """Stamp last_processed_at after a message went through the module."""
        try:
            async with self._db() as db:
                await db.execute(
                    "UPDATE automation_configs SET last_processed_at = ? WHERE id = ?",
                    (_now(), config_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to update automation config: {e}") from e

    def _row_to_automation_config(self, row: aiosqlite.Row) -> AutomationConfig:
        return AutomationConfig(
            id=row["id"],
            module_name=row["module_name"],
            is_enabled=bool(row["is_enabled"]),
            selected_accounts=[int(x) for x in _json_list(row["selected_accounts_json"])],
            default_employees=[str(x) for x in _json_list(row["default_employees_json"])],
            process_attachments=bool(row["process_attachments"]),
            auto_create_tasks=row["auto_create_tasks"] or "disabled",
            auto_create_notes=row["auto_create_notes"] or "disabled",
            ai_optimization_level=row["ai_optimization_level"] or "high",
            auto_detect_payments=bool(row["auto_detect_payments"]),
            auto_detect_expenses=bool(row["auto_detect_expenses"]),
            last_processed_at=_parse_dt(row["last_processed_at"]),
        )

    async def create_rule(
        self,
        config_id: int,
        name: str,
        conditions: list[dict[str, Any]],
        actions: list[dict[str, Any]],
        priority: int = 0,
        is_enabled: bool = True,
        description: str | None = None,
    ) -> int:
        """Store an already-validated rule definition."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO automation_rules (
                        config_id, name, description, priority, is_enabled,
                        conditions_json, actions_json
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        config_id,
                        name,
                        description,
                        priority,
                        int(is_enabled),
                        json.dumps(conditions),
                        json.dumps(actions),
                    ),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.IntegrityError as e:
            raise DatabaseError(f"Automation config {config_id} does not exist") from e
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to create rule: {e}") from e

    async def get_rule(self, rule_id: int) -> AutomationRuleRecord | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM automation_rules WHERE id = ?", (rule_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_rule(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get rule: {e}") from e

    async def list_rules(
        self, config_id: int | None = None, enabled_only: bool = False
    ) -> list[AutomationRuleRecord]:
        """Rules in evaluation order: priority DESC, then creation order."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM automation_rules WHERE 1=1"
                params: list[Any] = []
                if config_id is not None:
                    query += " AND config_id = ?"
                    params.append(config_id)
                if enabled_only:
                    query += " AND is_enabled = 1"
                query += " ORDER BY priority DESC, id ASC"
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_rule(row) for row in rows]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list rules: {e}") from e

    async def set_rule_enabled(self, rule_id: int, enabled: bool) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE automation_rules SET is_enabled = ?, updated_at = ? WHERE id = ?",
                    (int(enabled), _now(), rule_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to toggle rule {rule_id}: {e}") from e

    def _row_to_rule(self, row: aiosqlite.Row) -> AutomationRuleRecord:
        return AutomationRuleRecord(
            id=row["id"],
            config_id=row["config_id"],
            name=row["name"],
            description=row["description"],
            priority=row["priority"] or 0,
            is_enabled=bool(row["is_enabled"]),
            conditions=_json_list(row["conditions_json"]),
            actions=_json_list(row["actions_json"]),
            created_at=_parse_dt(row["created_at"]),
        )

    async def log_automation(
        self,
        action_type: str,
        status: LogStatus,
        rule_id: int | None = None,
        message_id: int | None = None,
        entity_type: str | None = None,
        entity_id: int | None = None,
        details: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> int:
        """Append one action outcome. Never updates existing rows."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO automation_logs (
                        rule_id, message_id, action_type, status, entity_type,
                        entity_id, details_json, error_message, sync_run_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        rule_id,
                        message_id,
                        action_type,
                        status,
                        entity_type,
                        entity_id,
                        json.dumps(details, default=str) if details else None,
                        error_message[:1000] if error_message else None,
                        get_correlation_id(),
                    ),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error("Failed to log automation", action_type=action_type, error=str(e))
            raise DatabaseError(f"Failed to log automation outcome: {e}") from e

    async def get_automation_logs(
        self,
        limit: int = 100,
        message_id: int | None = None,
        rule_id: int | None = None,
        status: LogStatus | None = None,
    ) -> list[AutomationLogEntry]:
        try:
            async with self._db() as db:
                query = "SELECT * FROM automation_logs WHERE 1=1"
                params: list[Any] = []
                if message_id is not None:
                    query += " AND message_id = ?"
                    params.append(message_id)
                if rule_id is not None:
                    query += " AND rule_id = ?"
                    params.append(rule_id)
                if status:
                    query += " AND status = ?"
                    params.append(status)
                query += " ORDER BY id DESC LIMIT ?"
                params.append(limit)
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [
                    AutomationLogEntry(
                        id=row["id"],
                        rule_id=row["rule_id"],
                        message_id=row["message_id"],
                        action_type=row["action_type"],
                        status=row["status"],
                        entity_type=row["entity_type"],
                        entity_id=row["entity_id"],
                        details=_json_dict(row["details_json"]),
                        error_message=row["error_message"],
                        sync_run_id=row["sync_run_id"],
                        created_at=_parse_dt(row["created_at"]),
                    )
                    for row in rows
                ]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get automation logs: {e}") from e

    # =========================================================================
    # Operations, tasks and notes (collaborator records)
    # =========================================================================

    async def get_operation_by_name(self, name: str) -> Operation | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM operations WHERE name = ?", (name,))
                row = await cursor.fetchone()
                return self._row_to_operation(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get operation: {e}") from e

    async def create_operation(
        self,
        name: str,
        category: str | None = None,
        operation_type: str | None = None,
        shipping_mode: str | None = None,
        currency: str | None = None,
        source_message_id: int | None = None,
    ) -> tuple[int, bool]:
        """Create an operation unless one with this name exists.

        Returns:
            (operation_id, created). created is False when a concurrent or
            earlier creation won.
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO operations (
                        name, category, operation_type, shipping_mode, currency,
                        source_message_id, created_by_automation
                    ) VALUES (?, ?, ?, ?, ?, ?, 1)
                    ON CONFLICT(name) DO NOTHING
                    RETURNING id
                    """,
                    (name, category, operation_type, shipping_mode, currency, source_message_id),
                )
                row = await cursor.fetchone()
                await db.commit()
                if row:
                    return row["id"], True

                cursor = await db.execute("SELECT id FROM operations WHERE name = ?", (name,))
                existing = await cursor.fetchone()
                return existing["id"], False
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to create operation '{name}': {e}") from e

    async def link_message_to_operation(self, operation_id: int, message_id: int) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO operation_messages (operation_id, message_id)
                    VALUES (?, ?) ON CONFLICT DO NOTHING
                    """,
                    (operation_id, message_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to link message to operation: {e}") from e

    async def assign_employees(self, operation_id: int, employee_ids: list[str]) -> int:
        """Assign employees to an operation. Returns how many were newly assigned."""
        if not employee_ids:
            return 0
        try:
            async with self._db() as db:
                assigned = 0
                for employee_id in employee_ids:
                    cursor = await db.execute(
                        """
                        INSERT INTO operation_employees (operation_id, employee_id)
                        VALUES (?, ?) ON CONFLICT DO NOTHING
                        """,
                        (operation_id, employee_id),
                    )
                    assigned += cursor.rowcount
                await db.commit()
                return assigned
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to assign employees: {e}") from e

    async def link_file_to_operation(
        self, operation_id: int, attachment_id: int, category: str
    ) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO operation_files (operation_id, attachment_id, category)
                    VALUES (?, ?, ?) ON CONFLICT DO NOTHING
                    """,
                    (operation_id, attachment_id, category),
                )
                await db.commit()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to link file to operation: {e}") from e

    async def get_operation_files(self, operation_id: int) -> list[tuple[int, str]]:
        """(attachment_id, category) pairs linked to an operation."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT attachment_id, category FROM operation_files "
                    "WHERE operation_id = ? ORDER BY attachment_id",
                    (operation_id,),
                )
                rows = await cursor.fetchall()
                return [(row["attachment_id"], row["category"]) for row in rows]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get operation files: {e}") from e

    async def get_operation_for_message(self, message_id: int) -> int | None:
        """Earliest operation the message is linked to, if any."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT operation_id FROM operation_messages WHERE message_id = ? "
                    "ORDER BY linked_at, operation_id LIMIT 1",
                    (message_id,),
                )
                row = await cursor.fetchone()
                return row["operation_id"] if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get operation for message: {e}") from e

    async def get_operation_employees(self, operation_id: int) -> list[str]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT employee_id FROM operation_employees WHERE operation_id = ? "
                    "ORDER BY employee_id",
                    (operation_id,),
                )
                rows = await cursor.fetchall()
                return [row["employee_id"] for row in rows]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get operation employees: {e}") from e

    async def create_task(
        self,
        title: str,
        description: str | None = None,
        operation_id: int | None = None,
        source_message_id: int | None = None,
    ) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO tasks (title, description, operation_id, source_message_id)
                    VALUES (?, ?, ?, ?)
                    """,
                    (title, description, operation_id, source_message_id),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to create task: {e}") from e

    async def create_note(
        self,
        content: str,
        operation_id: int | None = None,
        source_message_id: int | None = None,
    ) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "INSERT INTO notes (content, operation_id, source_message_id) VALUES (?, ?, ?)",
                    (content, operation_id, source_message_id),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to create note: {e}") from e

    async def get_task_titles(self, operation_id: int) -> list[str]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT title FROM tasks WHERE operation_id = ? ORDER BY id", (operation_id,)
                )
                rows = await cursor.fetchall()
                return [row["title"] for row in rows]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get tasks of operation {operation_id}: {e}") from e

    async def get_note_contents(self, operation_id: int) -> list[str]:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT content FROM notes WHERE operation_id = ? ORDER BY id", (operation_id,)
                )
                rows = await cursor.fetchall()
                return [row["content"] for row in rows]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get notes of operation {operation_id}: {e}") from e

    async def count_rows(self, table: Literal["tasks", "notes", "operations"]) -> int:
        """Row count for collaborator tables (reporting and tests)."""
        if table not in ("tasks", "notes", "operations"):
            raise ValueError(f"Unsupported table: {table}")
        try:
            async with self._db() as db:
                cursor = await db.execute(f"SELECT COUNT(*) AS n FROM {table}")  # noqa: S608
                row = await cursor.fetchone()
                return row["n"]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count {table}: {e}") from e

    def _row_to_operation(self, row: aiosqlite.Row) -> Operation:
        return Operation(
            id=row["id"],
            name=row["name"],
            category=row["category"],
            operation_type=row["operation_type"],
            shipping_mode=row["shipping_mode"],
            currency=row["currency"],
            status=row["status"] or "planning",
            source_message_id=row["source_message_id"],
            created_by_automation=bool(row["created_by_automation"]),
        )

    # =========================================================================
    # Financial suggestions
    # =========================================================================

    async def create_financial_suggestion(self, suggestion: FinancialSuggestion) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO financial_suggestions (
                        operation_id, message_id, attachment_id, attachment_hash,
                        suggestion_type, amount, currency, document_date, description,
                        reference, payment_method, category, ai_confidence,
                        detection_method, status, is_duplicate, duplicate_reason,
                        related_suggestion_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?, ?, ?)
                    """,
                    (
                        suggestion.operation_id,
                        suggestion.message_id,
                        suggestion.attachment_id,
                        suggestion.attachment_hash,
                        suggestion.suggestion_type,
                        str(suggestion.amount),
                        suggestion.currency,
                        suggestion.document_date.isoformat() if suggestion.document_date else None,
                        suggestion.description,
                        suggestion.reference,
                        suggestion.payment_method,
                        suggestion.category,
                        suggestion.ai_confidence,
                        suggestion.detection_method,
                        int(suggestion.is_duplicate),
                        suggestion.duplicate_reason,
                        suggestion.related_suggestion_id,
                    ),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error("Failed to create financial suggestion", error=str(e))
            raise DatabaseError(f"Failed to create financial suggestion: {e}") from e

    async def get_financial_suggestion(self, suggestion_id: int) -> FinancialSuggestion | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM financial_suggestions WHERE id = ?", (suggestion_id,)
                )
                row = await cursor.fetchone()
                return self._row_to_financial_suggestion(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get financial suggestion: {e}") from e

    async def list_financial_suggestions(
        self,
        status: SuggestionStatus | None = None,
        operation_id: int | None = None,
        limit: int = 100,
    ) -> list[FinancialSuggestion]:
        try:
            async with self._db() as db:
                query = "SELECT * FROM financial_suggestions WHERE 1=1"
                params: list[Any] = []
                if status:
                    query += " AND status = ?"
                    params.append(status)
                if operation_id is not None:
                    query += " AND operation_id = ?"
                    params.append(operation_id)
                query += " ORDER BY id DESC LIMIT ?"
                params.append(limit)
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_financial_suggestion(row) for row in rows]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to list financial suggestions: {e}") from e

    async def find_duplicate_candidates(
        self,
        operation_id: int | None,
        suggestion_type: SuggestionType,
        currency: str,
        date_from: date,
        date_to: date,
    ) -> list[FinancialSuggestion]:
        """Pending/approved suggestions in the same operation scope and date range.

        Amount comparison is left to the caller (tolerance is configurable).
        operation_id None matches suggestions not tied to any operation.
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM financial_suggestions
                    WHERE operation_id IS ?
                      AND suggestion_type = ?
                      AND currency = ?
                      AND status IN ('pending', 'approved')
                      AND document_date BETWEEN ? AND ?
                    ORDER BY id
                    """,
                    (
                        operation_id,
                        suggestion_type,
                        currency,
                        date_from.isoformat(),
                        date_to.isoformat(),
                    ),
                )
                rows = await cursor.fetchall()
                return [self._row_to_financial_suggestion(row) for row in rows]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to query duplicate candidates: {e}") from e

    async def find_suggestion_by_attachment_hash(
        self, attachment_hash: str
    ) -> FinancialSuggestion | None:
        """Earliest pending/approved suggestion extracted from identical bytes."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM financial_suggestions
                    WHERE attachment_hash = ? AND status IN ('pending', 'approved')
                    ORDER BY id LIMIT 1
                    """,
                    (attachment_hash,),
                )
                row = await cursor.fetchone()
                return self._row_to_financial_suggestion(row) if row else None
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to query suggestion by attachment hash: {e}") from e

    async def approve_financial_suggestion(
        self, suggestion_id: int, resolved_by: str | None = None
    ) -> FinancialSuggestion | None:
        """Approve a pending suggestion and create its ledger entry.

        The status change is a single conditional UPDATE, so of two racing
        approvals exactly one gets a row back. The ledger entry is written
        in the same transaction.

        Returns:
            The approved suggestion, or None if it was missing or not pending
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE financial_suggestions
                    SET status = 'approved', resolved_by = ?, resolved_at = ?
                    WHERE id = ? AND status = 'pending'
                    RETURNING *
                    """,
                    (resolved_by, _now(), suggestion_id),
                )
                row = await cursor.fetchone()
                if not row:
                    await db.rollback()
                    logger.warning("financial_suggestion_not_pending", suggestion_id=suggestion_id)
                    return None

                suggestion = self._row_to_financial_suggestion(row)
                cursor = await db.execute(
                    """
                    INSERT INTO ledger_entries (
                        entry_type, operation_id, amount, currency, entry_date,
                        description, suggestion_id
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        suggestion.suggestion_type,
                        suggestion.operation_id,
                        str(suggestion.amount),
                        suggestion.currency,
                        suggestion.document_date.isoformat() if suggestion.document_date else None,
                        suggestion.description,
                        suggestion.id,
                    ),
                )
                ledger_entry_id = cursor.lastrowid
                await db.execute(
                    "UPDATE financial_suggestions SET ledger_entry_id = ? WHERE id = ?",
                    (ledger_entry_id, suggestion_id),
                )
                await db.commit()

                suggestion.ledger_entry_id = ledger_entry_id
                logger.info(
                    "financial_suggestion_approved",
                    suggestion_id=suggestion_id,
                    ledger_entry_id=ledger_entry_id,
                )
                return suggestion
        except aiosqlite.Error as e:
            logger.error("Failed to approve suggestion", suggestion_id=suggestion_id, error=str(e))
            raise DatabaseError(f"Failed to approve suggestion: {e}") from e

    async def reject_financial_suggestion(
        self,
        suggestion_id: int,
        reason: str | None = None,
        resolved_by: str | None = None,
    ) -> FinancialSuggestion | None:
        """Reject a pending suggestion.

        Returns:
            The rejected suggestion, or None if it was missing or not pending
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE financial_suggestions
                    SET status = 'rejected', rejection_reason = ?, resolved_by = ?, resolved_at = ?
                    WHERE id = ? AND status = 'pending'
                    RETURNING *
                    """,
                    (reason, resolved_by, _now(), suggestion_id),
                )
                row = await cursor.fetchone()
                await db.commit()
                if not row:
                    logger.warning("financial_suggestion_not_pending", suggestion_id=suggestion_id)
                    return None
                logger.info("financial_suggestion_rejected", suggestion_id=suggestion_id)
                return self._row_to_financial_suggestion(row)
        except aiosqlite.Error as e:
            logger.error("Failed to reject suggestion", suggestion_id=suggestion_id, error=str(e))
            raise DatabaseError(f"Failed to reject suggestion: {e}") from e

    async def get_ledger_entries(self, operation_id: int | None = None) -> list[LedgerEntry]:
        try:
            async with self._db() as db:
                query = "SELECT * FROM ledger_entries"
                params: list[Any] = []
                if operation_id is not None:
                    query += " WHERE operation_id = ?"
                    params.append(operation_id)
                query += " ORDER BY id"
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [
                    LedgerEntry(
                        id=row["id"],
                        entry_type=row["entry_type"],
                        amount=Decimal(row["amount"]),
                        currency=row["currency"],
                        operation_id=row["operation_id"],
                        entry_date=_parse_date(row["entry_date"]),
                        description=row["description"],
                        suggestion_id=row["suggestion_id"],
                    )
                    for row in rows
                ]
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to get ledger entries: {e}") from e

    def _row_to_financial_suggestion(self, row: aiosqlite.Row) -> FinancialSuggestion:
        return FinancialSuggestion(
            id=row["id"],
            operation_id=row["operation_id"],
            message_id=row["message_id"],
            attachment_id=row["attachment_id"],
            attachment_hash=row["attachment_hash"],
            suggestion_type=row["suggestion_type"],
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            document_date=_parse_date(row["document_date"]),
            description=row["description"],
            reference=row["reference"],
            payment_method=row["payment_method"],
            category=row["category"],
            ai_confidence=row["ai_confidence"] or 0,
            detection_method=row["detection_method"] or "ai",
            status=row["status"],
            is_duplicate=bool(row["is_duplicate"]),
            duplicate_reason=row["duplicate_reason"],
            related_suggestion_id=row["related_suggestion_id"],
            rejection_reason=row["rejection_reason"],
            ledger_entry_id=row["ledger_entry_id"],
            resolved_by=row["resolved_by"],
            resolved_at=_parse_dt(row["resolved_at"]),
            created_at=_parse_dt(row["created_at"]),
        )

    # =========================================================================
    # Agent state
    # =========================================================================

    async def get_state(self, key: str) -> str | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT value FROM agent_state WHERE key = ?", (key,))
                row = await cursor.fetchone()
                return row["value"] if row else None
        except aiosqlite.Error as e:
            logger.error("Failed to get state", key=key, error=str(e))
            raise DatabaseError(f"Failed to get state: {e}") from e

    async def set_state(self, key: str, value: str) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO agent_state (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, _now()),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("Failed to set state", key=key, error=str(e))
            raise DatabaseError(f"Failed to set state: {e}") from e

    async def delete_state(self, key: str) -> None:
        try:
            async with self._db() as db:
                await db.execute("DELETE FROM agent_state WHERE key = ?", (key,))
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("Failed to delete state", key=key, error=str(e))
            raise DatabaseError(f"Failed to delete state: {e}") from e

    # =========================================================================
    # Action log
    # =========================================================================

    async def log_action(
        self,
        action_type: str,
        subject_id: str | int | None = None,
        details: dict[str, Any] | None = None,
        triggered_by: str = "user",
    ) -> int:
        """Log a user-triggered action for the audit trail.

        Args:
            action_type: 'sync_trigger', 'sync_toggle', 'approve', 'reject', 'rule_create'
            subject_id: Id of the account/suggestion/rule acted on
            details: Action details dictionary
            triggered_by: 'user', 'scheduler', 'cli'
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO action_log (action_type, subject_id, details_json, triggered_by)
                    VALUES (?, ?, ?, ?)
                    """,
                    (
                        action_type,
                        None if subject_id is None else str(subject_id),
                        json.dumps(details, default=str) if details else None,
                        triggered_by,
                    ),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error("Failed to log action", action_type=action_type, error=str(e))
            raise DatabaseError(f"Failed to log action: {e}") from e

    async def get_action_logs(
        self, limit: int = 100, action_type: str | None = None
    ) -> list[ActionLogEntry]:
        try:
            async with self._db() as db:
                query = "SELECT * FROM action_log WHERE 1=1"
                params: list[Any] = []
                if action_type:
                    query += " AND action_type = ?"
                    params.append(action_type)
                query += " ORDER BY id DESC LIMIT ?"
                params.append(limit)
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [
                    ActionLogEntry(
                        id=row["id"],
                        timestamp=_parse_dt(row["timestamp"]) or datetime.now(UTC),
                        action_type=row["action_type"],
                        subject_id=row["subject_id"],
                        details_json=_json_dict(row["details_json"]),
                        triggered_by=row["triggered_by"],
                    )
                    for row in rows
                ]
        except aiosqlite.Error as e:
            logger.error("Failed to get action logs", error=str(e))
            raise DatabaseError(f"Failed to get action logs: {e}") from e

    # =========================================================================
    # Stats
    # =========================================================================

    async def get_stats(self) -> dict[str, Any]:
        """Counts for the health endpoint and CLI summary."""
        try:
            async with self._db() as db:
                stats: dict[str, Any] = {}

                cursor = await db.execute(
                    "SELECT sync_status, COUNT(*) AS n FROM mail_accounts GROUP BY sync_status"
                )
                stats["accounts_by_status"] = {
                    row["sync_status"]: row["n"] for row in await cursor.fetchall()
                }

                cursor = await db.execute(
                    "SELECT COUNT(*) AS total, COALESCE(SUM(is_spam), 0) AS spam FROM messages"
                )
                row = await cursor.fetchone()
                stats["messages_total"] = row["total"]
                stats["messages_spam"] = row["spam"]

                cursor = await db.execute(
                    "SELECT COUNT(*) AS n FROM financial_suggestions WHERE status = 'pending'"
                )
                stats["pending_suggestions"] = (await cursor.fetchone())["n"]

                cursor = await db.execute(
                    "SELECT backend, COUNT(*) AS n FROM blobs GROUP BY backend"
                )
                stats["blobs_by_backend"] = {
                    row["backend"]: row["n"] for row in await cursor.fetchall()
                }

                cursor = await db.execute("SELECT MAX(last_sync_date) AS last FROM mail_accounts")
                stats["last_sync_date"] = (await cursor.fetchone())["last"]
                return stats
        except aiosqlite.Error as e:
            logger.error("Failed to get stats", error=str(e))
            raise DatabaseError(f"Failed to get stats: {e}") from e
