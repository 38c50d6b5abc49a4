from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable

from proposal_lifecycle.core.outbox import NotificationSettings
from proposal_lifecycle.core.proposals import (
    LineItem,
    ProposalCreateRequest,
    ProposalLifecycleService,
    VersionSnapshot,
)
from proposal_lifecycle.core.workflow import (
    ApprovalStepTemplate,
    WorkflowConfigurationProvider,
    WorkflowRule,
)
from proposal_lifecycle.infrastructure.proposals import InMemoryProposalRepository
from proposal_lifecycle.infrastructure.workflow_config import InMemoryWorkflowConfigRepository

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class MutableClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def line_item(description: str, quantity: str, unit_price: int) -> LineItem:
    return LineItem(description=description, quantity=Decimal(quantity), unit_price=unit_price)


def snapshot(
    *,
    line_items: Iterable[LineItem] | None = None,
    tax_rate_percent: str = "0",
    discount_minor: int = 0,
    terms: str = "Payment due within 30 days.",
) -> VersionSnapshot:
    return VersionSnapshot(
        line_items=list(line_items if line_items is not None else [line_item("Labor", "1", 10000)]),
        tax_rate_percent=Decimal(tax_rate_percent),
        discount_minor=discount_minor,
        terms=terms,
    )


def create_request(
    *,
    total_unit_price: int = 10000,
    client_email: str = "client@example.com",
    valid_until: datetime | None = None,
    **overrides: Any,
) -> ProposalCreateRequest:
    payload: dict[str, Any] = {
        "created_by": "estimator_1",
        "title": "Kitchen remodel",
        "client_name": "Jane Doe",
        "client_email": client_email,
        "valid_until": valid_until,
        "snapshot": snapshot(line_items=[line_item("Labor", "1", total_unit_price)]),
    }
    payload.update(overrides)
    return ProposalCreateRequest(**payload)


def rule(
    rule_id: str,
    *,
    trigger: str,
    conditions: dict[str, Any],
    actions: Iterable[str],
    priority: int = 100,
    active: bool = True,
) -> WorkflowRule:
    return WorkflowRule.model_validate(
        {
            "rule_id": rule_id,
            "name": rule_id.replace("_", " ").title(),
            "trigger": trigger,
            "conditions": conditions,
            "actions": list(actions),
            "priority": priority,
            "active": active,
        }
    )


def approval_step(
    step_id: str,
    *,
    required: bool = True,
    timeout_hours: int = 24,
    escalation_address: str | None = None,
) -> ApprovalStepTemplate:
    return ApprovalStepTemplate(
        step_id=step_id,
        step_name=f"{step_id.title()} Review",
        approver_role="Administrator",
        approver_address=f"{step_id}@company.com",
        required=required,
        timeout_hours=timeout_hours,
        escalation_address=escalation_address,
    )


def workflow_provider(
    *,
    rules: Iterable[WorkflowRule] = (),
    steps: Iterable[ApprovalStepTemplate] = (),
) -> WorkflowConfigurationProvider:
    repository = InMemoryWorkflowConfigRepository()
    for item in rules:
        repository.upsert_rule(item)
    repository.replace_approval_steps(list(steps))
    return WorkflowConfigurationProvider(repository=repository)


def lifecycle_service(
    *,
    rules: Iterable[WorkflowRule] = (),
    steps: Iterable[ApprovalStepTemplate] = (),
    clock: MutableClock | None = None,
    repository: InMemoryProposalRepository | None = None,
) -> ProposalLifecycleService:
    return ProposalLifecycleService(
        repository=repository or InMemoryProposalRepository(),
        configuration=workflow_provider(rules=rules, steps=steps),
        notification_settings=NotificationSettings(),
        clock=clock or MutableClock(),
    )
