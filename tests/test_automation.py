"""Tests for automation rule validation and the rule engine.

Covers the tagged-union rule schema, condition semantics, priority ordering,
all-matching-rules-fire, failure isolation between actions, and the
automation log written for every executed action.
"""

from typing import Any
from unittest.mock import AsyncMock

import pytest

from mailflow.automation.engine import (
    AutomationRuleEngine,
    is_similar,
    message_field,
    render_template,
)
from mailflow.automation.rules import (
    CreateOperationAction,
    MatchesCondition,
    _Condition,
    from_record,
    validate_rule,
)
from mailflow.core.errors import DatabaseError, RuleValidationError
from mailflow.db.store import Attachment, DatabaseStore, Message

# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------


def _rule(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "name": "NAVI operations",
        "priority": 10,
        "conditions": [{"field": "subject", "operator": "matches", "value": r"NAVI-\d+"}],
        "actions": [{"type": "create_operation", "id_pattern": "NAVI-", "currency": "USD"}],
    }
    data.update(overrides)
    return data


async def _seed_message(
    store: DatabaseStore, account_id: int, subject: str = "Arrival notice NAVI-1234", **kwargs: Any
) -> Message:
    message = Message(
        account_id=account_id,
        provider_message_id=kwargs.pop("provider_message_id", "msg-001"),
        subject=subject,
        sender_email=kwargs.pop("sender_email", "agent@maersk.com"),
        sender_name=kwargs.pop("sender_name", "Maersk Agent"),
        **kwargs,
    )
    message.id = await store.insert_message(message)
    return message


async def _store_rule(store: DatabaseStore, config_id: int, data: dict[str, Any]) -> int:
    rule = validate_rule(data)
    conditions, actions = rule.to_storage()
    return await store.create_rule(
        config_id=config_id,
        name=rule.name,
        conditions=conditions,
        actions=actions,
        priority=rule.priority,
        is_enabled=rule.is_enabled,
    )


@pytest.fixture
def engine(store: DatabaseStore) -> AutomationRuleEngine:
    return AutomationRuleEngine(store)


@pytest.fixture
async def config_id(store: DatabaseStore) -> int:
    return await store.create_automation_config(
        module_name="operations", default_employees=["emp-7", "emp-9"]
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidateRule:
    def test_valid_rule(self):
        rule = validate_rule(_rule())
        assert isinstance(rule.conditions[0], MatchesCondition)
        assert isinstance(rule.actions[0], CreateOperationAction)
        assert rule.priority == 10

    def test_unknown_operator(self):
        with pytest.raises(RuleValidationError) as exc_info:
            validate_rule(
                _rule(conditions=[{"field": "subject", "operator": "like", "value": "x"}])
            )
        assert exc_info.value.errors
        assert any("conditions" in err for err in exc_info.value.errors)

    def test_unknown_action_type(self):
        with pytest.raises(RuleValidationError):
            validate_rule(_rule(actions=[{"type": "send_email"}]))

    def test_unknown_field(self):
        with pytest.raises(RuleValidationError):
            validate_rule(
                _rule(conditions=[{"field": "cc", "operator": "contains", "value": "x"}])
            )

    def test_invalid_regex(self):
        with pytest.raises(RuleValidationError) as exc_info:
            validate_rule(
                _rule(conditions=[{"field": "subject", "operator": "matches", "value": "(NAVI"}])
            )
        assert any("Invalid regular expression" in err for err in exc_info.value.errors)

    def test_extra_keys_rejected(self):
        with pytest.raises(RuleValidationError):
            validate_rule(
                _rule(actions=[{"type": "create_task", "title": "typo for title_template"}])
            )

    def test_unknown_template_placeholder(self):
        with pytest.raises(RuleValidationError) as exc_info:
            validate_rule(_rule(actions=[{"type": "create_task", "title_template": "{amount}"}]))
        assert any("Unknown placeholder" in err for err in exc_info.value.errors)

    def test_requires_conditions_and_actions(self):
        with pytest.raises(RuleValidationError) as exc_info:
            validate_rule(_rule(conditions=[], actions=[]))
        assert len(exc_info.value.errors) == 2

    def test_not_a_mapping(self):
        with pytest.raises(RuleValidationError):
            validate_rule(["not", "a", "rule"])  # type: ignore[arg-type]

    async def test_from_record_roundtrip(self, store: DatabaseStore, config_id: int):
        rule_id = await _store_rule(store, config_id, _rule())
        record = await store.get_rule(rule_id)
        rule = from_record(record)
        assert rule.id == rule_id
        assert rule.name == "NAVI operations"


class TestConditions:
    @pytest.mark.parametrize(
        "operator,value,text,expected",
        [
            ("contains", "navi", "Arrival NAVI-1", True),
            ("equals", " Arrival ", "arrival", True),
            ("equals", "arrival", "arrival notice", False),
            ("starts_with", "RE:", "re: booking", True),
            ("ends_with", "@maersk.com", "agent@MAERSK.com", True),
            ("matches", r"BL-\d{4}", "see bl-7781", True),
            ("matches", r"^BL", "see BL-7781", False),
        ],
    )
    def test_operators(self, operator, value, text, expected):
        rule = validate_rule(
            _rule(conditions=[{"field": "subject", "operator": operator, "value": value}])
        )
        assert rule.conditions[0].evaluate(text) is expected

    def test_condition_base_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            _Condition(field="subject", value="NAVI")

    def test_message_fields(self):
        message = Message(
            account_id=1,
            provider_message_id="m",
            subject="S",
            sender_email="a@b.com",
            sender_name="Ana",
            recipients=["ops@navi.mx", "fin@navi.mx"],
            snippet="short",
            body_text="full body",
        )
        assert message_field(message, "subject") == "S"
        assert message_field(message, "from") == "Ana a@b.com"
        assert message_field(message, "to") == "ops@navi.mx, fin@navi.mx"
        assert message_field(message, "body") == "full body"

    def test_body_falls_back_to_snippet(self):
        message = Message(account_id=1, provider_message_id="m", snippet="preview")
        assert message_field(message, "body") == "preview"

    def test_operation_name_extraction(self):
        action = CreateOperationAction(type="create_operation", id_pattern="NAVI-")
        assert action.extract_operation_name("re: navi-0042 docs") == "NAVI-0042"
        assert action.extract_operation_name("no id here") is None

    def test_render_template(self):
        message = Message(account_id=1, provider_message_id="m", sender_email="a@b.com")
        assert render_template("From {sender}: {subject}", message) == "From a@b.com: (no subject)"


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestEvaluate:
    async def test_create_operation(
        self, engine: AutomationRuleEngine, store: DatabaseStore, account_id: int, config_id: int
    ):
        message = await _seed_message(store, account_id)
        config = await store.get_automation_config(config_id)
        rule = validate_rule({**_rule(), "id": 1})

        outcomes = await engine.evaluate(message, [rule], config)

        assert [o.status for o in outcomes] == ["success"]
        assert outcomes[0].reason == "NAVI-1234"
        operation = await store.get_operation_by_name("NAVI-1234")
        assert operation.currency == "USD"
        assert operation.created_by_automation is True
        assert await store.get_operation_for_message(message.id) == operation.id
        assert await store.get_operation_employees(operation.id) == ["emp-7", "emp-9"]

    async def test_existing_operation_is_linked_not_recreated(
        self, engine: AutomationRuleEngine, store: DatabaseStore, account_id: int
    ):
        rule = validate_rule({**_rule(), "id": 1})
        first = await _seed_message(store, account_id, provider_message_id="m1")
        second = await _seed_message(store, account_id, provider_message_id="m2")

        await engine.evaluate(first, [rule])
        outcomes = await engine.evaluate(second, [rule])

        assert outcomes[0].status == "skipped"
        assert outcomes[0].reason == "operation_already_exists"
        assert await store.count_rows("operations") == 1
        assert await store.get_operation_for_message(second.id) == outcomes[0].entity_id

    async def test_no_id_in_subject_is_skipped(
        self, engine: AutomationRuleEngine, store: DatabaseStore, account_id: int
    ):
        rule = validate_rule(
            _rule(
                conditions=[{"field": "from", "operator": "contains", "value": "maersk"}],
            )
        )
        message = await _seed_message(store, account_id, subject="Weekly schedule")
        outcomes = await engine.evaluate(message, [rule])
        assert outcomes[0].status == "skipped"
        assert outcomes[0].reason == "no_operation_id_in_subject"

    async def test_attachments_linked_with_category(
        self, engine: AutomationRuleEngine, store: DatabaseStore, account_id: int, config_id: int
    ):
        message = await _seed_message(store, account_id)
        invoice_id = await store.add_attachment(
            Attachment(
                message_id=message.id,
                filename="Factura_A1.pdf",
                mime_type="application/pdf",
                size=90_000,
                content_hash="a" * 64,
            )
        )
        # Filtered attachment: recorded without a hash, never linked
        await store.add_attachment(
            Attachment(message_id=message.id, filename="image001.png", mime_type="image/png", size=300)
        )
        attachments = await store.get_attachments(message.id)
        config = await store.get_automation_config(config_id)

        outcomes = await engine.evaluate(message, [validate_rule(_rule())], config, attachments)

        assert await store.get_operation_files(outcomes[0].entity_id) == [(invoice_id, "invoice")]

    async def test_all_matching_rules_fire_in_priority_order(
        self, engine: AutomationRuleEngine, store: DatabaseStore, account_id: int
    ):
        low = validate_rule(
            {
                "id": 1,
                "name": "note",
                "priority": 1,
                "conditions": [{"field": "subject", "operator": "contains", "value": "navi"}],
                "actions": [{"type": "create_note"}],
            }
        )
        high = validate_rule({**_rule(), "id": 2, "priority": 50})
        message = await _seed_message(store, account_id)

        outcomes = await engine.evaluate(message, [low, high])

        assert [o.action_type for o in outcomes] == ["create_operation", "create_note"]
        # The note runs after the operation exists and is attached to it
        assert all(o.status == "success" for o in outcomes)

    async def test_disabled_and_non_matching_rules_ignored(
        self, engine: AutomationRuleEngine, store: DatabaseStore, account_id: int
    ):
        disabled = validate_rule({**_rule(), "is_enabled": False})
        other = validate_rule(
            _rule(conditions=[{"field": "subject", "operator": "contains", "value": "BL-"}])
        )
        message = await _seed_message(store, account_id)

        assert await engine.evaluate(message, [disabled, other]) == []

    async def test_failing_action_does_not_stop_others(
        self,
        engine: AutomationRuleEngine,
        store: DatabaseStore,
        account_id: int,
        monkeypatch: pytest.MonkeyPatch,
    ):
        monkeypatch.setattr(store, "create_task", AsyncMock(side_effect=DatabaseError("disk I/O")))
        first = validate_rule(
            {
                **_rule(),
                "id": 1,
                "actions": [
                    {"type": "create_task"},
                    {"type": "create_note", "content_template": "Seen {subject}"},
                ],
            }
        )
        second = validate_rule({**_rule(), "id": 2, "priority": 0})
        message = await _seed_message(store, account_id)

        outcomes = await engine.evaluate(message, [first, second])

        assert [(o.action_type, o.status) for o in outcomes] == [
            ("create_task", "error"),
            ("create_note", "success"),
            ("create_operation", "success"),
        ]
        assert "disk I/O" in outcomes[0].error

    async def test_every_action_logged(
        self, engine: AutomationRuleEngine, store: DatabaseStore, account_id: int
    ):
        rule = validate_rule(
            {
                **_rule(),
                "id": 5,
                "actions": [
                    {"type": "create_operation"},
                    {"type": "create_task", "title_template": "Review {subject}"},
                ],
            }
        )
        message = await _seed_message(store, account_id)

        await engine.evaluate(message, [rule])

        logs = await store.get_automation_logs(message_id=message.id)
        assert sorted(log.action_type for log in logs) == ["create_operation", "create_task"]
        assert all(log.status == "success" and log.rule_id == 5 for log in logs)


class TestRunForMessage:
    async def test_uses_configs_selecting_the_account(
        self, engine: AutomationRuleEngine, store: DatabaseStore, account_id: int
    ):
        selected = await store.create_automation_config(
            module_name="ops", selected_accounts=[account_id]
        )
        other = await store.create_automation_config(
            module_name="finance", selected_accounts=[account_id + 100]
        )
        await _store_rule(store, selected, _rule())
        await _store_rule(
            store,
            other,
            _rule(name="finance note", actions=[{"type": "create_note"}]),
        )
        message = await _seed_message(store, account_id)

        result = await engine.run_for_message(message)

        assert [c.id for c in result.configs] == [selected]
        assert [o.action_type for o in result.outcomes] == ["create_operation"]
        assert result.operation_id is not None
        assert (await store.get_automation_config(selected)).last_processed_at is not None

    async def test_disabled_config_skipped(
        self, engine: AutomationRuleEngine, store: DatabaseStore, account_id: int
    ):
        config_id = await store.create_automation_config(module_name="ops", is_enabled=False)
        await _store_rule(store, config_id, _rule())
        message = await _seed_message(store, account_id)

        result = await engine.run_for_message(message)

        assert result.configs == []
        assert result.outcomes == []
        assert result.operation_id is None


class TestTaskAndNoteModes:
    @staticmethod
    def _followup_rule():
        return validate_rule(
            {
                **_rule(),
                "id": 3,
                "actions": [
                    {"type": "create_operation", "id_pattern": "NAVI-"},
                    {"type": "create_task"},
                    {"type": "create_note"},
                ],
            }
        )

    async def test_disabled_modes_skip_tasks_and_notes(
        self, engine: AutomationRuleEngine, store: DatabaseStore, account_id: int
    ):
        config_id = await store.create_automation_config(module_name="operations")
        config = await store.get_automation_config(config_id)
        message = await _seed_message(store, account_id)

        outcomes = await engine.evaluate(message, [self._followup_rule()], config)

        assert [(o.action_type, o.status, o.reason) for o in outcomes] == [
            ("create_operation", "success", "NAVI-1234"),
            ("create_task", "skipped", "auto_create_tasks_disabled"),
            ("create_note", "skipped", "auto_create_notes_disabled"),
        ]
        assert await store.count_rows("tasks") == 0
        assert await store.count_rows("notes") == 0
        logs = await store.get_automation_logs(message_id=message.id, status="skipped")
        assert sorted(log.action_type for log in logs) == ["create_note", "create_task"]

    async def test_similar_task_and_note_created_once_per_operation(
        self, engine: AutomationRuleEngine, store: DatabaseStore, account_id: int
    ):
        config_id = await store.create_automation_config(
            module_name="operations", auto_create_tasks="basic", auto_create_notes="basic"
        )
        config = await store.get_automation_config(config_id)
        first = await _seed_message(store, account_id, provider_message_id="m1")
        second = await _seed_message(store, account_id, provider_message_id="m2")

        first_outcomes = await engine.evaluate(first, [self._followup_rule()], config)
        second_outcomes = await engine.evaluate(second, [self._followup_rule()], config)

        assert [o.status for o in first_outcomes] == ["success", "success", "success"]
        assert [(o.status, o.reason) for o in second_outcomes[1:]] == [
            ("skipped", "similar_task_exists"),
            ("skipped", "similar_note_exists"),
        ]
        assert await store.count_rows("tasks") == 1
        assert await store.count_rows("notes") == 1

    async def test_different_task_on_same_operation_created(
        self, engine: AutomationRuleEngine, store: DatabaseStore, account_id: int
    ):
        config_id = await store.create_automation_config(
            module_name="operations", auto_create_tasks="basic"
        )
        config = await store.get_automation_config(config_id)
        arrival = await _seed_message(store, account_id, provider_message_id="m1")
        customs = await _seed_message(
            store, account_id, subject="Customs hold NAVI-1234", provider_message_id="m2"
        )

        await engine.evaluate(arrival, [self._followup_rule()], config)
        await engine.evaluate(customs, [self._followup_rule()], config)

        operation = await store.get_operation_by_name("NAVI-1234")
        assert await store.get_task_titles(operation.id) == [
            "Follow up: Arrival notice NAVI-1234",
            "Follow up: Customs hold NAVI-1234",
        ]


@pytest.mark.parametrize(
    "candidate,existing,expected",
    [
        ("Follow up: Arrival notice NAVI-1", "follow up: arrival notice NAVI-1 (2)", True),
        ("Pay freight", "Pay freight invoice for NAVI-1", True),
        ("Follow up: Arrival notice", "Follow up: Customs hold", False),
        ("", "anything", False),
    ],
)
def test_is_similar(candidate, existing, expected):
    assert is_similar(candidate, existing) is expected
