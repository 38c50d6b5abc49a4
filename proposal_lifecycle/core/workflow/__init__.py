from proposal_lifecycle.core.workflow.approvals import (
    ApprovalDecisionResult,
    ApprovalInstance,
    ApprovalStepState,
    ApprovalStepTemplate,
    ApprovalSweepResult,
    decide,
    start_approval,
    sweep_timeouts,
)
from proposal_lifecycle.core.workflow.catalog import (
    WorkflowCatalog,
    WorkflowConfiguration,
    WorkflowConfigurationProvider,
    parse_workflow_catalog,
)
from proposal_lifecycle.core.workflow.repository import WorkflowConfigRepository
from proposal_lifecycle.core.workflow.rules import (
    AmountThresholdEvent,
    RuleFiring,
    StatusChangeEvent,
    TimeBasedEvent,
    UserActionEvent,
    WorkflowRule,
    evaluate_rules,
)

__all__ = [
    "AmountThresholdEvent",
    "ApprovalDecisionResult",
    "ApprovalInstance",
    "ApprovalStepState",
    "ApprovalStepTemplate",
    "ApprovalSweepResult",
    "RuleFiring",
    "StatusChangeEvent",
    "TimeBasedEvent",
    "UserActionEvent",
    "WorkflowCatalog",
    "WorkflowConfigRepository",
    "WorkflowConfiguration",
    "WorkflowConfigurationProvider",
    "WorkflowRule",
    "decide",
    "evaluate_rules",
    "parse_workflow_catalog",
    "start_approval",
    "sweep_timeouts",
]
