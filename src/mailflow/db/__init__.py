"""Database layer for the mail pipeline.

This module provides SQLite database access with async operations.

Usage:
    from mailflow.db import DatabaseStore, Message

    store = DatabaseStore("data/mailflow.db")
    await store.initialize()

    account_id = await store.create_account("ops@example.com", refresh_token="...")
    message_id = await store.insert_message(
        Message(account_id=account_id, provider_message_id="AAMk...", subject="NAVI-1234")
    )
"""

from mailflow.db.models import SCHEMA_VERSION, init_database
from mailflow.db.store import (
    MAX_SNIPPET_LENGTH,
    ActionLogEntry,
    Attachment,
    AutomationConfig,
    AutomationLogEntry,
    AutomationRuleRecord,
    BlobRecord,
    DatabaseStore,
    FinancialSuggestion,
    LedgerEntry,
    MailAccount,
    Message,
    Operation,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    # Store
    "DatabaseStore",
    "MAX_SNIPPET_LENGTH",
    # Dataclasses
    "MailAccount",
    "Message",
    "Attachment",
    "BlobRecord",
    "AutomationConfig",
    "AutomationRuleRecord",
    "AutomationLogEntry",
    "Operation",
    "FinancialSuggestion",
    "LedgerEntry",
    "ActionLogEntry",
]
