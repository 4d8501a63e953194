"""Command-line interface for the mail pipeline.

Provides commands for configuration validation, the server, manual syncs,
account and rule management, and reviewing financial suggestions.

Usage:
    python -m mailflow validate-config
    python -m mailflow serve
    python -m mailflow sync --all
    python -m mailflow add-rule rules/navi.yaml --config-id 1
    python -m mailflow suggestions --status pending
    python -m mailflow approve 42
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click
import yaml
from rich.console import Console
from rich.table import Table

from mailflow.config import validate_config_file
from mailflow.core.logging import configure_logging

if TYPE_CHECKING:
    from mailflow.config_schema import AppConfig
    from mailflow.db.store import DatabaseStore
    from mailflow.engine.pipeline import Pipeline
    from mailflow.engine.sync import SyncResult

console = Console()


def _load_config_or_exit() -> AppConfig:
    from mailflow.config import get_config
    from mailflow.core.errors import ConfigLoadError, ConfigValidationError

    try:
        return get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Create config/config.yaml (see config/config.yaml.example) "
            "or point MAILFLOW_CONFIG_PATH at your config file."
        )
        sys.exit(1)


async def _open_store() -> DatabaseStore:
    """Store only, for commands that never call the provider or the AI service."""
    from mailflow.db.store import DatabaseStore

    config = _load_config_or_exit()
    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path)
    await store.initialize()
    return store


async def _init_pipeline() -> Pipeline:
    """Full pipeline. Prints an actionable error and exits on failure."""
    import anthropic

    from mailflow.core.errors import DatabaseError
    from mailflow.engine.pipeline import build_pipeline

    config = _load_config_or_exit()
    try:
        return await build_pipeline(config)
    except anthropic.AnthropicError as e:
        console.print(f"[red]Anthropic client error:[/red] {e}\n\nSet ANTHROPIC_API_KEY in .env.")
        sys.exit(1)
    except DatabaseError as e:
        console.print(f"[red]Database error:[/red] {e}")
        sys.exit(1)


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """mailflow - email ingestion, dedup and automation pipeline."""
    log_level = "DEBUG" if debug else "INFO"
    # Use human-readable output for CLI, JSON for server
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes schema validation, including
    the external spam allow/deny list file when one is configured.
    """
    console.print(f"Validating config: [cyan]{config_path or 'config/config.yaml'}[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("serve")
@click.option(
    "--host",
    default="127.0.0.1",
    help="Host to bind to (default: localhost only for security)",
)
@click.option("--port", default=8000, type=int, help="Port to bind to")
def serve(host: str, port: int) -> None:
    """Start the API server with the auto-sync scheduler."""
    import uvicorn

    from mailflow.config import get_config
    from mailflow.core.errors import ConfigLoadError, ConfigValidationError
    from mailflow.web.app import create_app

    if host == "0.0.0.0":  # noqa: S104
        console.print(
            "[yellow]Warning:[/yellow] Binding to 0.0.0.0 exposes the server to the network.\n"
            "This API has no authentication. Use 127.0.0.1 for local-only access."
        )

    try:
        log_level = get_config().log_level
    except (ConfigLoadError, ConfigValidationError) as e:
        # The lifespan reports the config error again and serves 503s
        console.print(f"[yellow]Warning:[/yellow] {e}")
        log_level = "INFO"
    configure_logging(log_level=log_level, json_output=True)

    app = create_app()
    console.print(f"Starting server on [cyan]http://{host}:{port}[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="info")


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


@cli.command("sync")
@click.option("--account", "account_id", type=int, default=None, help="Sync one account")
@click.option("--all", "sync_all", is_flag=True, default=False, help="Sync every enabled account")
def sync(account_id: int | None, sync_all: bool) -> None:
    """Run a sync now and print the counters."""
    if (account_id is None) == (not sync_all):
        console.print("[red]Error:[/red] pass exactly one of --account ID or --all")
        sys.exit(2)
    asyncio.run(_run_sync(account_id))


async def _run_sync(account_id: int | None) -> None:
    pipeline = await _init_pipeline()

    if account_id is not None:
        account = await pipeline.store.get_account(account_id)
        if account is None:
            console.print(f"[red]Error:[/red] account {account_id} not found")
            sys.exit(1)
        await pipeline.store.log_action("sync_trigger", account_id, triggered_by="cli")
        results = [await pipeline.orchestrator.sync(account)]
    else:
        results = await pipeline.orchestrator.sync_all()

    if not results:
        console.print("No enabled accounts to sync.")
        return
    console.print(_sync_table(results))
    if any(r.status == "error" for r in results):
        sys.exit(1)


def _sync_table(results: list[SyncResult]) -> Table:
    table = Table(title="Sync results", padding=(0, 1))
    table.add_column("Account", justify="right")
    table.add_column("Status")
    table.add_column("Pages", justify="right")
    table.add_column("Processed", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Spam", justify="right")
    table.add_column("Seen", justify="right")
    table.add_column("Att. stored/dedup/skipped", justify="right")
    table.add_column("Error", style="red")

    status_style = {"completed": "green", "error": "red", "skipped": "yellow"}
    for r in results:
        table.add_row(
            str(r.account_id),
            f"[{status_style[r.status]}]{r.status}[/{status_style[r.status]}]",
            str(r.pages),
            str(r.processed),
            str(r.newly_synced),
            str(r.spam_filtered),
            str(r.already_seen),
            f"{r.attachments_stored}/{r.attachments_deduplicated}/{r.attachments_skipped}",
            (r.error or "")[:60],
        )
    return table


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@cli.command("accounts")
def accounts() -> None:
    """List linked mail accounts and their sync state."""
    asyncio.run(_list_accounts())


async def _list_accounts() -> None:
    store = await _open_store()
    rows = await store.list_accounts()
    if not rows:
        console.print("No accounts linked. Use [cyan]add-account[/cyan].")
        return

    table = Table(title="Mail accounts", padding=(0, 1))
    table.add_column("ID", justify="right")
    table.add_column("Email", style="cyan")
    table.add_column("Enabled")
    table.add_column("Status")
    table.add_column("Last sync")
    table.add_column("Messages", justify="right")
    table.add_column("Error", style="red")
    for account in rows:
        table.add_row(
            str(account.id),
            account.email,
            "yes" if account.sync_enabled else "no",
            account.sync_status,
            account.last_sync_date.strftime("%Y-%m-%d %H:%M") if account.last_sync_date else "-",
            str(await store.count_messages(account.id)),
            (account.error_message or "")[:50],
        )
    console.print(table)


@cli.command("add-account")
@click.option("--email", required=True, help="Mailbox address")
@click.option(
    "--refresh-token",
    prompt=True,
    hide_input=True,
    help="OAuth refresh token granted by the mailbox owner",
)
@click.option("--range-months", default=3, type=click.IntRange(1, 120), help="Sync lookback")
@click.option("--disabled", is_flag=True, default=False, help="Link without scheduled sync")
def add_account(email: str, refresh_token: str, range_months: int, disabled: bool) -> None:
    """Link a mailbox by its OAuth refresh token."""
    asyncio.run(_add_account(email, refresh_token, range_months, not disabled))


async def _add_account(email: str, refresh_token: str, range_months: int, enabled: bool) -> None:
    from mailflow.core.errors import DatabaseError

    store = await _open_store()
    try:
        account_id = await store.create_account(
            email=email.strip().lower(),
            refresh_token=refresh_token.strip(),
            sync_range_months=range_months,
            sync_enabled=enabled,
        )
    except DatabaseError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    await store.log_action("account_link", account_id, details={"email": email}, triggered_by="cli")
    console.print(f"[green]✓[/green] Linked {email} as account {account_id}")


# ---------------------------------------------------------------------------
# Automation
# ---------------------------------------------------------------------------


@cli.command("add-config")
@click.argument("module_name")
@click.option("--account", "accounts", type=int, multiple=True, help="Limit to these accounts")
@click.option("--employee", "employees", multiple=True, help="Default employee assigned to operations")
@click.option(
    "--level",
    type=click.Choice(["high", "medium", "low"]),
    default="high",
    help="AI optimization level",
)
@click.option(
    "--tasks",
    "tasks_mode",
    type=click.Choice(["disabled", "basic", "smart_ai"]),
    default="disabled",
    help="Whether create_task actions run",
)
@click.option(
    "--notes",
    "notes_mode",
    type=click.Choice(["disabled", "basic", "smart_ai"]),
    default="disabled",
    help="Whether create_note actions run",
)
@click.option("--detect-payments/--no-detect-payments", default=False)
@click.option("--detect-expenses/--no-detect-expenses", default=False)
def add_config(
    module_name: str,
    accounts: tuple[int, ...],
    employees: tuple[str, ...],
    level: str,
    tasks_mode: str,
    notes_mode: str,
    detect_payments: bool,
    detect_expenses: bool,
) -> None:
    """Create an automation config (rules belong to one)."""
    asyncio.run(
        _add_config(
            module_name,
            list(accounts),
            list(employees),
            level,
            tasks_mode,
            notes_mode,
            detect_payments,
            detect_expenses,
        )
    )


async def _add_config(
    module_name: str,
    accounts: list[int],
    employees: list[str],
    level: str,
    tasks_mode: str,
    notes_mode: str,
    detect_payments: bool,
    detect_expenses: bool,
) -> None:
    store = await _open_store()
    config_id = await store.create_automation_config(
        module_name=module_name,
        selected_accounts=accounts,
        default_employees=employees,
        ai_optimization_level=level,
        auto_create_tasks=tasks_mode,
        auto_create_notes=notes_mode,
        auto_detect_payments=detect_payments,
        auto_detect_expenses=detect_expenses,
    )
    console.print(f"[green]✓[/green] Automation config {config_id} created for {module_name}")


@cli.command("rules")
@click.option("--config-id", type=int, default=None, help="Only rules of this config")
def rules(config_id: int | None) -> None:
    """List automation rules in evaluation order."""
    asyncio.run(_list_rules(config_id))


async def _list_rules(config_id: int | None) -> None:
    store = await _open_store()
    records = await store.list_rules(config_id=config_id)
    if not records:
        console.print("No automation rules.")
        return

    table = Table(title="Automation rules", padding=(0, 1))
    table.add_column("ID", justify="right")
    table.add_column("Config", justify="right")
    table.add_column("Priority", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Enabled")
    table.add_column("Conditions")
    table.add_column("Actions")
    for record in records:
        conditions = ", ".join(
            f"{c.get('field')} {c.get('operator')} {c.get('value')!r}" for c in record.conditions
        )
        actions = ", ".join(str(a.get("type")) for a in record.actions)
        table.add_row(
            str(record.id),
            str(record.config_id),
            str(record.priority),
            record.name,
            "yes" if record.is_enabled else "no",
            conditions[:80],
            actions,
        )
    console.print(table)


@cli.command("add-rule")
@click.argument("rule_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--config-id", type=int, required=True, help="Automation config the rule belongs to")
def add_rule(rule_file: Path, config_id: int) -> None:
    """Validate a rule definition (YAML or JSON) and store it."""
    asyncio.run(_add_rule(rule_file, config_id))


async def _add_rule(rule_file: Path, config_id: int) -> None:
    from mailflow.automation.rules import validate_rule
    from mailflow.core.errors import RuleValidationError

    text = rule_file.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if rule_file.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        console.print(f"[red]✗[/red] Could not parse {rule_file}: {e}")
        sys.exit(1)

    try:
        rule = validate_rule(data)
    except RuleValidationError as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(1)

    store = await _open_store()
    if await store.get_automation_config(config_id) is None:
        console.print(f"[red]Error:[/red] automation config {config_id} not found")
        sys.exit(1)

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
    await store.log_action("rule_create", rule_id, details={"name": rule.name}, triggered_by="cli")
    console.print(f"[green]✓[/green] Rule {rule_id} '{rule.name}' added to config {config_id}")


# ---------------------------------------------------------------------------
# Financial suggestions
# ---------------------------------------------------------------------------


@cli.command("suggestions")
@click.option(
    "--status",
    type=click.Choice(["pending", "approved", "rejected", "all"]),
    default="pending",
)
@click.option("--limit", default=50, type=int)
def suggestions(status: str, limit: int) -> None:
    """List financial suggestions."""
    asyncio.run(_list_suggestions(status, limit))


async def _list_suggestions(status: str, limit: int) -> None:
    store = await _open_store()
    rows = await store.list_financial_suggestions(
        status=None if status == "all" else status, limit=limit
    )
    if not rows:
        console.print(f"No {status} suggestions.")
        return

    table = Table(title=f"Financial suggestions ({status})", padding=(0, 1))
    table.add_column("ID", justify="right")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Date")
    table.add_column("Op", justify="right")
    table.add_column("Conf.", justify="right")
    table.add_column("Method")
    table.add_column("Status")
    table.add_column("Duplicate", style="yellow")
    for s in rows:
        table.add_row(
            str(s.id),
            s.suggestion_type,
            f"{s.amount} {s.currency}",
            s.document_date.isoformat() if s.document_date else "-",
            str(s.operation_id) if s.operation_id else "-",
            str(s.ai_confidence),
            s.detection_method,
            s.status,
            (s.duplicate_reason or "")[:50] if s.is_duplicate else "",
        )
    console.print(table)


@cli.command("approve")
@click.argument("suggestion_id", type=int)
def approve(suggestion_id: int) -> None:
    """Approve a pending suggestion and create its ledger entry."""
    asyncio.run(_resolve(suggestion_id, approve=True, reason=None))


@cli.command("reject")
@click.argument("suggestion_id", type=int)
@click.option("--reason", default=None, help="Why the suggestion is wrong")
def reject(suggestion_id: int, reason: str | None) -> None:
    """Reject a pending suggestion."""
    asyncio.run(_resolve(suggestion_id, approve=False, reason=reason))


async def _resolve(suggestion_id: int, approve: bool, reason: str | None) -> None:
    from mailflow.core.errors import SuggestionConflictError, SuggestionNotFoundError

    pipeline = await _init_pipeline()
    try:
        if approve:
            suggestion = await pipeline.detector.approve(suggestion_id, resolved_by="cli")
            console.print(
                f"[green]✓[/green] Suggestion {suggestion_id} approved "
                f"(ledger entry {suggestion.ledger_entry_id})"
            )
        else:
            await pipeline.detector.reject(suggestion_id, reason=reason, resolved_by="cli")
            console.print(f"[green]✓[/green] Suggestion {suggestion_id} rejected")
    except (SuggestionNotFoundError, SuggestionConflictError) as e:
        console.print(f"[red]✗[/red] {e}")
        sys.exit(1)


def main() -> None:
    """Entry point for the CLI."""
    cli()
