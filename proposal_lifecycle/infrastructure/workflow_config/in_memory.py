from threading import Lock
from typing import Optional

from proposal_lifecycle.core.workflow.approvals import ApprovalStepTemplate
from proposal_lifecycle.core.workflow.catalog import parse_workflow_catalog
from proposal_lifecycle.core.workflow.rules import WorkflowRule


class InMemoryWorkflowConfigRepository:
    def __init__(self, *, catalog_json: Optional[str] = None) -> None:
        catalog = parse_workflow_catalog(catalog_json)
        self._lock = Lock()
        self._rules: dict[str, WorkflowRule] = {rule.rule_id: rule for rule in catalog.rules}
        self._steps: list[ApprovalStepTemplate] = list(catalog.approval_steps)

    def list_rules(self) -> list[WorkflowRule]:
        with self._lock:
            rules = list(self._rules.values())
        return sorted(rules, key=lambda rule: (rule.priority, rule.rule_id))

    def get_rule(self, *, rule_id: str) -> Optional[WorkflowRule]:
        with self._lock:
            return self._rules.get(rule_id)

    def upsert_rule(self, rule: WorkflowRule) -> None:
        with self._lock:
            self._rules[rule.rule_id] = rule

    def delete_rule(self, *, rule_id: str) -> bool:
        with self._lock:
            return self._rules.pop(rule_id, None) is not None

    def list_approval_steps(self) -> list[ApprovalStepTemplate]:
        with self._lock:
            return list(self._steps)

    def replace_approval_steps(self, steps: list[ApprovalStepTemplate]) -> None:
        with self._lock:
            self._steps = list(steps)
