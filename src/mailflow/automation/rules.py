"""Typed automation rule definitions.

Rules are closed tagged unions: conditions are discriminated by `operator`
and actions by `type`. A rule is validated when it is created (REST, CLI)
and again whenever it is loaded from the database, so a malformed rule can
never reach the engine.

Example rule (YAML):

    name: New NAVI operations
    priority: 10
    conditions:
      - field: subject
        operator: matches
        value: "NAVI-\\d+"
    actions:
      - type: create_operation
        id_pattern: "NAVI-"
        category: import
        currency: USD
      - type: create_task
        title_template: "Review {subject}"

Usage:
    from mailflow.automation.rules import validate_rule

    rule = validate_rule(yaml.safe_load(text))   # raises RuleValidationError
"""

from __future__ import annotations

import string
from abc import abstractmethod
from typing import TYPE_CHECKING, Annotated, Any, Literal

import regex
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mailflow.core.errors import RuleValidationError
from mailflow.core.logging import get_logger

if TYPE_CHECKING:
    from mailflow.db.store import AutomationRuleRecord

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0

# Placeholders available to task/note templates
TEMPLATE_FIELDS = frozenset({"subject", "sender", "sender_name", "snippet"})

ConditionField = Literal["subject", "from", "to", "body"]


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


class _Condition(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    field: ConditionField
    value: str = Field(min_length=1, max_length=500)

    @abstractmethod
    def evaluate(self, text: str) -> bool: ...


class ContainsCondition(_Condition):
    operator: Literal["contains"]

    def evaluate(self, text: str) -> bool:
        return self.value.lower() in text.lower()


class EqualsCondition(_Condition):
    operator: Literal["equals"]

    def evaluate(self, text: str) -> bool:
        return text.strip().lower() == self.value.strip().lower()


class StartsWithCondition(_Condition):
    operator: Literal["starts_with"]

    def evaluate(self, text: str) -> bool:
        return text.lower().startswith(self.value.lower())


class EndsWithCondition(_Condition):
    operator: Literal["ends_with"]

    def evaluate(self, text: str) -> bool:
        return text.lower().endswith(self.value.lower())


class MatchesCondition(_Condition):
    """Case-insensitive regex search, evaluated with a timeout."""

    operator: Literal["matches"]

    @field_validator("value")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        try:
            regex.compile(v)
        except regex.error as e:
            raise ValueError(f"Invalid regular expression: {e}") from e
        return v

    def evaluate(self, text: str) -> bool:
        try:
            return regex.search(self.value, text, regex.IGNORECASE, timeout=REGEX_TIMEOUT) is not None
        except TimeoutError:
            logger.warning("Regex timeout during rule condition", pattern=self.value[:50])
            return False


Condition = Annotated[
    ContainsCondition | EqualsCondition | StartsWithCondition | EndsWithCondition | MatchesCondition,
    Field(discriminator="operator"),
]


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def _check_template(template: str) -> str:
    """Reject templates with unknown or malformed placeholders."""
    try:
        names = {name for _, name, _, _ in string.Formatter().parse(template) if name is not None}
    except ValueError as e:
        raise ValueError(f"Malformed template: {e}") from e
    unknown = names - TEMPLATE_FIELDS
    if unknown:
        raise ValueError(
            f"Unknown placeholder(s) {sorted(unknown)}; available: {sorted(TEMPLATE_FIELDS)}"
        )
    return template


class CreateOperationAction(BaseModel):
    """Create an operation named after an id found in the subject."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["create_operation"]
    id_pattern: str = Field(default="NAVI-", min_length=1, max_length=50)
    category: str | None = None
    operation_type: str | None = None
    shipping_mode: str | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)

    @field_validator("id_pattern")
    @classmethod
    def validate_id_pattern(cls, v: str) -> str:
        try:
            regex.compile(rf"{v}(\d+)")
        except regex.error as e:
            raise ValueError(f"id_pattern does not form a valid expression: {e}") from e
        return v

    def extract_operation_name(self, subject: str) -> str | None:
        """'NAVI-1234' from a subject containing it (case-insensitive), else None."""
        try:
            match = regex.search(
                rf"{self.id_pattern}(\d+)", subject, regex.IGNORECASE, timeout=REGEX_TIMEOUT
            )
        except TimeoutError:
            logger.warning("Regex timeout extracting operation id", pattern=self.id_pattern[:50])
            return None
        if not match:
            return None
        return match.group(0).upper()


class CreateTaskAction(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["create_task"]
    title_template: str = Field(default="Follow up: {subject}", min_length=1, max_length=300)
    description_template: str | None = Field(default=None, max_length=2000)

    @field_validator("title_template")
    @classmethod
    def validate_title(cls, v: str) -> str:
        return _check_template(v)

    @field_validator("description_template")
    @classmethod
    def validate_description(cls, v: str | None) -> str | None:
        return _check_template(v) if v is not None else None


class CreateNoteAction(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["create_note"]
    content_template: str = Field(
        default="Email from {sender}: {subject}", min_length=1, max_length=2000
    )

    @field_validator("content_template")
    @classmethod
    def validate_content(cls, v: str) -> str:
        return _check_template(v)


Action = Annotated[
    CreateOperationAction | CreateTaskAction | CreateNoteAction,
    Field(discriminator="type"),
]


class RuleDefinition(BaseModel):
    """A validated automation rule."""

    model_config = ConfigDict(extra="forbid")

    id: int | None = None
    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    priority: int = Field(default=0, ge=-1000, le=1000)
    is_enabled: bool = True
    conditions: list[Condition] = Field(min_length=1, max_length=20)
    actions: list[Action] = Field(min_length=1, max_length=10)

    def to_storage(self) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
        """(conditions, actions) as plain JSON-ready dicts."""
        return (
            [c.model_dump() for c in self.conditions],
            [a.model_dump() for a in self.actions],
        )


def _format_errors(error: ValidationError) -> list[str]:
    messages = []
    for err in error.errors():
        location = ".".join(str(loc) for loc in err["loc"]) or "<rule>"
        messages.append(f"{location}: {err['msg']}")
    return messages


def validate_rule(data: dict[str, Any]) -> RuleDefinition:
    """Validate a raw rule definition.

    Raises:
        RuleValidationError: With one entry per problem found
    """
    if not isinstance(data, dict):
        raise RuleValidationError(
            f"Rule definition must be a mapping, got {type(data).__name__}",
            errors=["<rule>: not a mapping"],
        )
    try:
        return RuleDefinition.model_validate(data)
    except ValidationError as e:
        errors = _format_errors(e)
        name = data.get("name", "<unnamed>")
        raise RuleValidationError(
            f"Automation rule '{name}' is invalid:\n  - " + "\n  - ".join(errors),
            errors=errors,
        ) from e


def from_record(record: AutomationRuleRecord) -> RuleDefinition:
    """Re-validate a stored rule.

    Raises:
        RuleValidationError: If the stored JSON no longer validates
    """
    return validate_rule(
        {
            "id": record.id,
            "name": record.name,
            "description": record.description,
            "priority": record.priority,
            "is_enabled": record.is_enabled,
            "conditions": record.conditions,
            "actions": record.actions,
        }
    )
