"""Automation rule engine.

Evaluates validated rules against a newly synced message and executes their
actions. Every enabled rule whose conditions all match fires, in priority
order (higher first, then creation order). Each executed action appends one
AutomationLog row with status success, error or skipped; a failing action
never stops the remaining actions or rules.

Task and note actions are skipped when the owning config's auto_create_tasks
or auto_create_notes mode is "disabled", and when the message's operation
already holds a task or note with a similar text.

Usage:
    from mailflow.automation.engine import AutomationRuleEngine

    engine = AutomationRuleEngine(store)
    result = await engine.run_for_message(message, attachments)
    result.operation_id   # operation the message is linked to, if any
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from mailflow.automation.rules import (
    CreateNoteAction,
    CreateOperationAction,
    CreateTaskAction,
    RuleDefinition,
    from_record,
)
from mailflow.classifier.attachment_filter import categorize_file
from mailflow.core.errors import DatabaseError, RuleValidationError
from mailflow.core.logging import get_logger

if TYPE_CHECKING:
    from mailflow.db.store import Attachment, AutomationConfig, DatabaseStore, Message

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ActionOutcome:
    """Result of executing one action of one rule."""

    rule_id: int | None
    action_type: str
    status: Literal["success", "error", "skipped"]
    entity_type: str | None = None
    entity_id: int | None = None
    reason: str | None = None
    error: str | None = None


@dataclass
class AutomationRunResult:
    """Everything automation produced for one message."""

    outcomes: list[ActionOutcome] = field(default_factory=list)
    operation_id: int | None = None
    configs: list[AutomationConfig] = field(default_factory=list)


def message_field(message: Message, name: str) -> str:
    """Text a condition on `name` is evaluated against."""
    if name == "subject":
        return message.subject or ""
    if name == "from":
        return " ".join(filter(None, [message.sender_name, message.sender_email]))
    if name == "to":
        return ", ".join(message.recipients)
    if name == "body":
        return message.body_text or message.snippet or ""
    return ""


def rule_matches(rule: RuleDefinition, message: Message) -> bool:
    """AND over all conditions."""
    return all(c.evaluate(message_field(message, c.field)) for c in rule.conditions)


def render_template(template: str, message: Message) -> str:
    return template.format(
        subject=message.subject or "(no subject)",
        sender=message.sender_email or "unknown sender",
        sender_name=message.sender_name or message.sender_email or "unknown sender",
        snippet=(message.snippet or "")[:200],
    )


def is_similar(candidate: str, existing: str, prefix_length: int = 20) -> bool:
    """Either text contains the other's leading characters, case-insensitively."""
    a = candidate.strip().lower()
    b = existing.strip().lower()
    if not a or not b:
        return False
    return b[:prefix_length] in a or a[:prefix_length] in b


class AutomationRuleEngine:
    """Matches rules and executes their actions against the store.

    Attributes:
        store: DatabaseStore for configs, rules, logs and the records actions create
    """

    def __init__(self, store: DatabaseStore):
        self.store = store

    async def evaluate(
        self,
        message: Message,
        rules: list[RuleDefinition],
        config: AutomationConfig | None = None,
        attachments: list[Attachment] | None = None,
    ) -> list[ActionOutcome]:
        """Run every matching enabled rule's actions.

        Args:
            message: Persisted message (must have an id)
            rules: Validated rules; disabled ones are ignored
            config: Owning automation config (default employees, attachment linking, task/note modes)
            attachments: The message's stored attachments

        Returns:
            One outcome per executed action, in execution order
        """
        ordered = sorted(
            (r for r in rules if r.is_enabled),
            key=lambda r: (-r.priority, r.id if r.id is not None else 0),
        )
        outcomes: list[ActionOutcome] = []

        for rule in ordered:
            if not rule_matches(rule, message):
                continue

            logger.info(
                "automation_rule_matched",
                rule_id=rule.id,
                rule=rule.name,
                message_id=message.id,
            )
            for action in rule.actions:
                outcome = await self._execute(rule, action, message, config, attachments or [])
                outcomes.append(outcome)
                await self._log(outcome, message)

        return outcomes

    async def run_for_message(
        self, message: Message, attachments: list[Attachment] | None = None
    ) -> AutomationRunResult:
        """Evaluate the rules of every enabled config that selects the message's account."""
        result = AutomationRunResult()
        configs = [
            c
            for c in await self.store.list_automation_configs(enabled_only=True)
            if c.selects_account(message.account_id)
        ]
        result.configs = configs

        for config in configs:
            rules = await self._load_rules(config.id)
            outcomes = await self.evaluate(message, rules, config, attachments)
            result.outcomes.extend(outcomes)
            await self.store.touch_automation_config(config.id)

        result.operation_id = await self.store.get_operation_for_message(message.id)
        return result

    async def _load_rules(self, config_id: int) -> list[RuleDefinition]:
        """Stored rules, re-validated. Invalid ones are logged and left out."""
        rules = []
        for record in await self.store.list_rules(config_id=config_id, enabled_only=True):
            try:
                rules.append(from_record(record))
            except RuleValidationError as e:
                logger.error(
                    "stored_rule_invalid",
                    rule_id=record.id,
                    rule=record.name,
                    errors=e.errors[:5],
                )
        return rules

    async def _execute(
        self,
        rule: RuleDefinition,
        action: Any,
        message: Message,
        config: AutomationConfig | None,
        attachments: list[Attachment],
    ) -> ActionOutcome:
        try:
            if isinstance(action, CreateOperationAction):
                return await self._create_operation(rule, action, message, config, attachments)
            if isinstance(action, CreateTaskAction):
                if config is not None and config.auto_create_tasks == "disabled":
                    return ActionOutcome(
                        rule_id=rule.id,
                        action_type=action.type,
                        status="skipped",
                        reason="auto_create_tasks_disabled",
                    )
                return await self._create_task(rule, action, message)
            if isinstance(action, CreateNoteAction):
                if config is not None and config.auto_create_notes == "disabled":
                    return ActionOutcome(
                        rule_id=rule.id,
                        action_type=action.type,
                        status="skipped",
                        reason="auto_create_notes_disabled",
                    )
                return await self._create_note(rule, action, message)
            return ActionOutcome(
                rule_id=rule.id,
                action_type=getattr(action, "type", "unknown"),
                status="skipped",
                reason="unsupported_action",
            )
        except Exception as e:
            # One failing action must not stop the remaining actions or rules
            logger.error(
                "automation_action_failed",
                rule_id=rule.id,
                action_type=action.type,
                message_id=message.id,
                error=str(e),
            )
            return ActionOutcome(
                rule_id=rule.id, action_type=action.type, status="error", error=str(e)
            )

    async def _create_operation(
        self,
        rule: RuleDefinition,
        action: CreateOperationAction,
        message: Message,
        config: AutomationConfig | None,
        attachments: list[Attachment],
    ) -> ActionOutcome:
        name = action.extract_operation_name(message.subject or "")
        if name is None:
            return ActionOutcome(
                rule_id=rule.id,
                action_type=action.type,
                status="skipped",
                reason="no_operation_id_in_subject",
            )

        operation_id, created = await self.store.create_operation(
            name=name,
            category=action.category,
            operation_type=action.operation_type,
            shipping_mode=action.shipping_mode,
            currency=action.currency,
            source_message_id=message.id,
        )
        await self.store.link_message_to_operation(operation_id, message.id)

        if not created:
            return ActionOutcome(
                rule_id=rule.id,
                action_type=action.type,
                status="skipped",
                entity_type="operation",
                entity_id=operation_id,
                reason="operation_already_exists",
            )

        if config is not None:
            await self.store.assign_employees(operation_id, config.default_employees)
            if config.process_attachments:
                for attachment in attachments:
                    if attachment.id is None or attachment.content_hash is None:
                        continue
                    category = categorize_file(attachment.filename, attachment.mime_type)
                    await self.store.link_file_to_operation(
                        operation_id, attachment.id, category or "other"
                    )

        logger.info(
            "operation_created_by_automation",
            operation=name,
            operation_id=operation_id,
            rule_id=rule.id,
        )
        return ActionOutcome(
            rule_id=rule.id,
            action_type=action.type,
            status="success",
            entity_type="operation",
            entity_id=operation_id,
            reason=name,
        )

    async def _create_task(
        self, rule: RuleDefinition, action: CreateTaskAction, message: Message
    ) -> ActionOutcome:
        operation_id = await self.store.get_operation_for_message(message.id)
        title = render_template(action.title_template, message)[:300]
        if operation_id is not None:
            for existing in await self.store.get_task_titles(operation_id):
                if is_similar(title, existing):
                    return ActionOutcome(
                        rule_id=rule.id,
                        action_type=action.type,
                        status="skipped",
                        entity_type="operation",
                        entity_id=operation_id,
                        reason="similar_task_exists",
                    )

        description = (
            render_template(action.description_template, message)
            if action.description_template
            else None
        )
        task_id = await self.store.create_task(
            title=title,
            description=description,
            operation_id=operation_id,
            source_message_id=message.id,
        )
        return ActionOutcome(
            rule_id=rule.id,
            action_type=action.type,
            status="success",
            entity_type="task",
            entity_id=task_id,
        )

    async def _create_note(
        self, rule: RuleDefinition, action: CreateNoteAction, message: Message
    ) -> ActionOutcome:
        operation_id = await self.store.get_operation_for_message(message.id)
        content = render_template(action.content_template, message)
        if operation_id is not None:
            for existing in await self.store.get_note_contents(operation_id):
                if is_similar(content, existing):
                    return ActionOutcome(
                        rule_id=rule.id,
                        action_type=action.type,
                        status="skipped",
                        entity_type="operation",
                        entity_id=operation_id,
                        reason="similar_note_exists",
                    )

        note_id = await self.store.create_note(
            content=content,
            operation_id=operation_id,
            source_message_id=message.id,
        )
        return ActionOutcome(
            rule_id=rule.id,
            action_type=action.type,
            status="success",
            entity_type="note",
            entity_id=note_id,
        )

    async def _log(self, outcome: ActionOutcome, message: Message) -> None:
        details: dict[str, Any] = {}
        if outcome.reason:
            details["reason"] = outcome.reason
        try:
            await self.store.log_automation(
                action_type=outcome.action_type,
                status=outcome.status,
                rule_id=outcome.rule_id,
                message_id=message.id,
                entity_type=outcome.entity_type,
                entity_id=outcome.entity_id,
                details=details or None,
                error_message=outcome.error,
            )
        except DatabaseError as e:
            logger.error(
                "automation_log_write_failed",
                rule_id=outcome.rule_id,
                action_type=outcome.action_type,
                error=str(e),
            )
