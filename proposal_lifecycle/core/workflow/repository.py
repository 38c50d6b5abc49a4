from typing import Optional, Protocol

from proposal_lifecycle.core.workflow.approvals import ApprovalStepTemplate
from proposal_lifecycle.core.workflow.rules import WorkflowRule


class WorkflowConfigRepository(Protocol):
    def list_rules(self) -> list[WorkflowRule]: ...

    def get_rule(self, *, rule_id: str) -> Optional[WorkflowRule]: ...

    def upsert_rule(self, rule: WorkflowRule) -> None: ...

    def delete_rule(self, *, rule_id: str) -> bool: ...

    def list_approval_steps(self) -> list[ApprovalStepTemplate]: ...

    def replace_approval_steps(self, steps: list[ApprovalStepTemplate]) -> None: ...
