"""Rule-driven automation.

This package provides:
- Typed rule definitions with validation (conditions and actions)
- The rule engine that applies every matching rule to a synced message
"""

from mailflow.automation.engine import (
    ActionOutcome,
    AutomationRuleEngine,
    AutomationRunResult,
    render_template,
    rule_matches,
)
from mailflow.automation.rules import (
    CreateNoteAction,
    CreateOperationAction,
    CreateTaskAction,
    RuleDefinition,
    from_record,
    validate_rule,
)

__all__ = [
    # Engine
    "ActionOutcome",
    "AutomationRuleEngine",
    "AutomationRunResult",
    "render_template",
    "rule_matches",
    # Rules
    "CreateNoteAction",
    "CreateOperationAction",
    "CreateTaskAction",
    "RuleDefinition",
    "from_record",
    "validate_rule",
]
