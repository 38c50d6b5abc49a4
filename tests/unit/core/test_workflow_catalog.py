import json

from proposal_lifecycle.core.workflow import WorkflowConfigurationProvider, parse_workflow_catalog
from proposal_lifecycle.infrastructure.workflow_config import InMemoryWorkflowConfigRepository
from tests.factories import approval_step, rule


def _catalog_json() -> str:
    return json.dumps(
        {
            "rules": [
                {
                    "rule_id": "wr_high_value",
                    "name": "High Value Approval",
                    "trigger": "amount_threshold",
                    "conditions": {"min_amount": 5000000},
                    "actions": {"require_approval": True, "notify_manager": True},
                    "priority": 1,
                },
                {"rule_id": "wr_broken", "name": "Broken", "trigger": "nope"},
                {
                    "rule_id": "wr_high_value",
                    "name": "Duplicate",
                    "trigger": "user_action",
                    "conditions": {"action_name": "x"},
                },
                "not-a-rule",
            ],
            "approval_steps": [
                {
                    "step_id": "as_1",
                    "step_name": "Manager Review",
                    "approver_address": "manager@company.com",
                },
                {"step_id": "as_bad"},
            ],
        }
    )


def test_parse_catalog_keeps_valid_entries_and_drops_invalid_or_duplicate():
    catalog = parse_workflow_catalog(_catalog_json())

    assert [item.rule_id for item in catalog.rules] == ["wr_high_value"]
    assert catalog.rules[0].name == "High Value Approval"
    assert catalog.rules[0].actions == ("require_approval", "notify_manager")
    assert [step.step_id for step in catalog.approval_steps] == ["as_1"]


def test_parse_catalog_tolerates_empty_or_malformed_input():
    assert parse_workflow_catalog(None).rules == []
    assert parse_workflow_catalog("   ").rules == []
    assert parse_workflow_catalog("{not json").rules == []
    assert parse_workflow_catalog("[1, 2]").approval_steps == []
    assert parse_workflow_catalog('{"rules": {"a": 1}}').rules == []


def test_provider_snapshot_is_stable_until_reload():
    repository = InMemoryWorkflowConfigRepository()
    repository.upsert_rule(
        rule("wr_b", trigger="user_action", conditions={"action_name": "x"}, actions=[], priority=2)
    )
    provider = WorkflowConfigurationProvider(repository=repository)

    first = provider.current()
    repository.upsert_rule(
        rule("wr_a", trigger="user_action", conditions={"action_name": "x"}, actions=[], priority=1)
    )
    repository.replace_approval_steps([approval_step("manager")])

    assert provider.current() is first
    assert [item.rule_id for item in first.rules] == ["wr_b"]

    reloaded = provider.reload()
    assert [item.rule_id for item in reloaded.rules] == ["wr_a", "wr_b"]
    assert [step.step_id for step in reloaded.approval_steps] == ["manager"]
    assert provider.current() is reloaded


def test_active_rules_excludes_inactive_entries():
    repository = InMemoryWorkflowConfigRepository()
    repository.upsert_rule(
        rule("wr_on", trigger="user_action", conditions={"action_name": "x"}, actions=[])
    )
    repository.upsert_rule(
        rule(
            "wr_off",
            trigger="user_action",
            conditions={"action_name": "x"},
            actions=[],
            active=False,
        )
    )

    snapshot = WorkflowConfigurationProvider(repository=repository).current()

    assert [item.rule_id for item in snapshot.active_rules] == ["wr_on"]
    assert len(snapshot.rules) == 2
