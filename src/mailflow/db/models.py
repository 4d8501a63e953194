"""SQLite database schema and initialization for the mail pipeline.

Tables, grouped by concern:
- mail_accounts, messages, attachments, blobs: ingestion and content-addressed storage
- automation_configs, automation_rules, automation_logs: user automations
- financial_suggestions, ledger_entries: detected payments/expenses
- operations, operation_messages, operation_employees, operation_files,
  tasks, notes: collaborator records written by automation actions
- agent_state: key-value state (resumable sync cursors)
- action_log: audit trail of user-triggered actions

Usage:
    from mailflow.db.models import init_database

    await init_database("data/mailflow.db")
"""

import stat
from pathlib import Path

import aiosqlite

from mailflow.core.errors import DatabaseError
from mailflow.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

-- Linked mailboxes; credentials are owned by the account row
CREATE TABLE IF NOT EXISTS mail_accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    provider_account_id TEXT,
    email TEXT NOT NULL UNIQUE,
    access_token TEXT,
    refresh_token TEXT,
    token_expires_at DATETIME,
    sync_enabled INTEGER DEFAULT 1,
    sync_status TEXT DEFAULT 'never',       -- 'never', 'syncing', 'completed', 'error'
    sync_started_at DATETIME,
    last_sync_date DATETIME,
    sync_range_months INTEGER DEFAULT 3,
    error_message TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES mail_accounts(id) ON DELETE CASCADE,
    provider_message_id TEXT NOT NULL,
    thread_id TEXT,
    sender_email TEXT,
    sender_name TEXT,
    recipients TEXT,
    subject TEXT,
    snippet TEXT,
    received_at DATETIME,
    is_read INTEGER DEFAULT 0,
    is_starred INTEGER DEFAULT 0,
    is_important INTEGER DEFAULT 0,
    has_attachments INTEGER DEFAULT 0,
    body_content_hash TEXT,                 -- weak reference into blobs(content_hash)
    body_mime_type TEXT,
    labels_json TEXT,
    is_spam INTEGER DEFAULT 0,
    spam_reason TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(account_id, provider_message_id)
);

CREATE INDEX IF NOT EXISTS idx_messages_account_received ON messages(account_id, received_at DESC);
CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id);

CREATE TABLE IF NOT EXISTS attachments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    provider_attachment_id TEXT,
    filename TEXT,
    mime_type TEXT,
    size INTEGER,
    content_hash TEXT,                      -- NULL when the attachment was filtered out
    is_inline INTEGER DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_attachments_message ON attachments(message_id);
CREATE INDEX IF NOT EXISTS idx_attachments_hash ON attachments(content_hash);

-- One row per content hash. data is only set for inline (fallback) blobs.
CREATE TABLE IF NOT EXISTS blobs (
    content_hash TEXT PRIMARY KEY,
    size INTEGER NOT NULL,
    backend TEXT NOT NULL,                  -- 'primary', 'inline'
    storage_key TEXT,
    data BLOB,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS automation_configs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    module_name TEXT NOT NULL UNIQUE,
    is_enabled INTEGER DEFAULT 1,
    selected_accounts_json TEXT,            -- JSON list of account ids; empty = all
    default_employees_json TEXT,            -- JSON list of employee ids
    process_attachments INTEGER DEFAULT 1,
    auto_create_tasks TEXT DEFAULT 'disabled',
    auto_create_notes TEXT DEFAULT 'disabled',
    ai_optimization_level TEXT DEFAULT 'high',
    auto_detect_payments INTEGER DEFAULT 0,
    auto_detect_expenses INTEGER DEFAULT 0,
    last_processed_at DATETIME,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS automation_rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    config_id INTEGER NOT NULL REFERENCES automation_configs(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT,
    priority INTEGER DEFAULT 0,
    is_enabled INTEGER DEFAULT 1,
    conditions_json TEXT NOT NULL,
    actions_json TEXT NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_automation_rules_config ON automation_rules(config_id);

-- Append-only outcome of each action execution
CREATE TABLE IF NOT EXISTS automation_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    rule_id INTEGER,
    message_id INTEGER,
    action_type TEXT NOT NULL,
    status TEXT NOT NULL,                   -- 'success', 'error', 'skipped'
    entity_type TEXT,
    entity_id INTEGER,
    details_json TEXT,
    error_message TEXT,
    sync_run_id TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_automation_logs_message ON automation_logs(message_id);
CREATE INDEX IF NOT EXISTS idx_automation_logs_created ON automation_logs(created_at);

CREATE TABLE IF NOT EXISTS operations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    category TEXT,
    operation_type TEXT,
    shipping_mode TEXT,
    currency TEXT,
    status TEXT DEFAULT 'planning',
    source_message_id INTEGER,
    created_by_automation INTEGER DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS operation_messages (
    operation_id INTEGER NOT NULL REFERENCES operations(id) ON DELETE CASCADE,
    message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
    linked_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (operation_id, message_id)
);

CREATE INDEX IF NOT EXISTS idx_operation_messages_message ON operation_messages(message_id);

CREATE TABLE IF NOT EXISTS operation_employees (
    operation_id INTEGER NOT NULL REFERENCES operations(id) ON DELETE CASCADE,
    employee_id TEXT NOT NULL,
    PRIMARY KEY (operation_id, employee_id)
);

CREATE TABLE IF NOT EXISTS operation_files (
    operation_id INTEGER NOT NULL REFERENCES operations(id) ON DELETE CASCADE,
    attachment_id INTEGER NOT NULL REFERENCES attachments(id) ON DELETE CASCADE,
    category TEXT,                          -- 'invoice', 'payment', 'expense', 'contract', 'image', 'document'
    PRIMARY KEY (operation_id, attachment_id)
);

CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation_id INTEGER REFERENCES operations(id) ON DELETE SET NULL,
    title TEXT NOT NULL,
    description TEXT,
    status TEXT DEFAULT 'pending',
    source_message_id INTEGER,
    created_by_automation INTEGER DEFAULT 1,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS notes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation_id INTEGER REFERENCES operations(id) ON DELETE SET NULL,
    content TEXT NOT NULL,
    source_message_id INTEGER,
    created_by_automation INTEGER DEFAULT 1,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS financial_suggestions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    operation_id INTEGER REFERENCES operations(id) ON DELETE SET NULL,
    message_id INTEGER REFERENCES messages(id) ON DELETE SET NULL,
    attachment_id INTEGER REFERENCES attachments(id) ON DELETE SET NULL,
    attachment_hash TEXT,
    suggestion_type TEXT NOT NULL,          -- 'payment', 'expense'
    amount TEXT NOT NULL,                   -- exact decimal as text
    currency TEXT NOT NULL,
    document_date DATE,                     -- ISO YYYY-MM-DD
    description TEXT,
    reference TEXT,
    payment_method TEXT,
    category TEXT,
    ai_confidence INTEGER,                  -- 0-100
    detection_method TEXT,                  -- 'ai', 'heuristic'
    status TEXT DEFAULT 'pending',          -- 'pending', 'approved', 'rejected'
    is_duplicate INTEGER DEFAULT 0,
    duplicate_reason TEXT,
    related_suggestion_id INTEGER,          -- back-reference, never ownership
    rejection_reason TEXT,
    ledger_entry_id INTEGER,
    resolved_by TEXT,
    resolved_at DATETIME,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_fin_suggestions_dup_lookup
    ON financial_suggestions(operation_id, suggestion_type, currency, status, document_date);
CREATE INDEX IF NOT EXISTS idx_fin_suggestions_hash ON financial_suggestions(attachment_hash);

-- Downstream payment/expense records created on approval
CREATE TABLE IF NOT EXISTS ledger_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_type TEXT NOT NULL,               -- 'payment', 'expense'
    operation_id INTEGER,
    amount TEXT NOT NULL,
    currency TEXT NOT NULL,
    entry_date DATE,
    description TEXT,
    suggestion_id INTEGER UNIQUE REFERENCES financial_suggestions(id),
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS agent_state (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS action_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    action_type TEXT,                       -- 'sync_trigger', 'sync_toggle', 'approve', 'reject', 'rule_create'
    subject_id TEXT,                        -- id of the account/suggestion/rule acted on
    details_json TEXT,
    triggered_by TEXT                       -- 'user', 'scheduler', 'cli'
);

CREATE INDEX IF NOT EXISTS idx_action_log_timestamp ON action_log(timestamp);
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Mailbox tokens and message metadata live here: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("Database initialization failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e
