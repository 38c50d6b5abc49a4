"""
Approval chain coordination.

Every operation here is a pure function over an ``ApprovalInstance``: the input
is never mutated and the caller persists the returned copy with a
compare-and-swap on ``revision``. A decision either records the step outcome
(and, where it applies, the overall outcome) in one new instance or raises
without producing one.
"""

import uuid
from datetime import datetime, timedelta
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from proposal_lifecycle.core.common.errors import (
    ProposalConflictError,
    ProposalValidationError,
)

ApprovalStepOutcome = Literal["pending", "approved", "rejected", "skipped"]
ApprovalOverallOutcome = Literal["in_progress", "approved", "rejected"]
ApprovalDecision = Literal["approve", "reject", "skip"]


class ApprovalStepTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    step_id: str = Field(min_length=1, description="Step identifier.", examples=["as_1"])
    step_name: str = Field(min_length=1, description="Step name.", examples=["Manager Review"])
    approver_role: str = Field(
        default="",
        description="Role expected to decide this step.",
        examples=["Administrator"],
    )
    approver_address: str = Field(
        min_length=3,
        description="Email address notified when the step becomes active.",
        examples=["manager@company.com"],
    )
    required: bool = Field(default=True, description="Whether the step may be skipped.")
    timeout_hours: int = Field(
        default=24,
        gt=0,
        description="Hours before the active step is escalated or skipped.",
        examples=[24],
    )
    escalation_address: Optional[str] = Field(
        default=None,
        description="Address re-notified when the step times out.",
        examples=["director@company.com"],
    )


class ApprovalStepState(BaseModel):
    template: ApprovalStepTemplate
    outcome: ApprovalStepOutcome = "pending"
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    comment: Optional[str] = None
    activated_at: Optional[datetime] = None
    escalation_count: int = 0


class ApprovalInstance(BaseModel):
    instance_id: str = Field(description="Approval instance identifier.", examples=["pai_001"])
    proposal_id: str = Field(description="Proposal gated by this chain.", examples=["pp_001"])
    active_step_index: int = Field(ge=0, description="Index of the step awaiting decision.")
    steps: List[ApprovalStepState] = Field(default_factory=list)
    overall: ApprovalOverallOutcome = "in_progress"
    revision: int = Field(default=0, ge=0, description="Compare-and-swap token.")
    created_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def active_step(self) -> Optional[ApprovalStepState]:
        if self.overall != "in_progress" or self.active_step_index >= len(self.steps):
            return None
        return self.steps[self.active_step_index]


class ApprovalEscalation(BaseModel):
    step_index: int
    step_name: str
    escalation_address: str
    escalation_count: int


class ApprovalSweepResult(BaseModel):
    instance: ApprovalInstance
    changed: bool = False
    escalations: List[ApprovalEscalation] = Field(default_factory=list)
    skipped_step_indexes: List[int] = Field(default_factory=list)
    activated_step_index: Optional[int] = None


class ApprovalDecisionResult(BaseModel):
    instance: ApprovalInstance
    activated_step_index: Optional[int] = None


def start_approval(
    *,
    proposal_id: str,
    step_templates: List[ApprovalStepTemplate] | tuple[ApprovalStepTemplate, ...],
    now: datetime,
) -> ApprovalInstance:
    steps = [ApprovalStepState(template=template) for template in step_templates]
    instance = ApprovalInstance(
        instance_id=f"pai_{uuid.uuid4().hex[:12]}",
        proposal_id=proposal_id,
        active_step_index=0,
        steps=steps,
        created_at=now,
    )
    if not steps:
        instance.overall = "approved"
        instance.completed_at = now
        return instance
    instance.steps[0].activated_at = now
    return instance


def decide(
    instance: ApprovalInstance,
    *,
    step_index: int,
    decision: ApprovalDecision,
    actor_id: str,
    now: datetime,
    comment: Optional[str] = None,
) -> ApprovalDecisionResult:
    if instance.overall != "in_progress":
        raise ProposalConflictError("APPROVAL_CONFLICT: chain already decided")
    if step_index != instance.active_step_index:
        raise ProposalConflictError("APPROVAL_CONFLICT: step is not active")
    if instance.steps[step_index].outcome != "pending":
        raise ProposalConflictError("APPROVAL_CONFLICT: step already decided")
    if decision == "skip" and instance.steps[step_index].template.required:
        raise ProposalValidationError("APPROVAL_STEP_REQUIRED: required steps cannot be skipped")

    updated = instance.model_copy(deep=True)
    step = updated.steps[step_index]
    step.decided_by = actor_id
    step.decided_at = now
    step.comment = comment
    updated.revision += 1

    if decision == "reject":
        step.outcome = "rejected"
        updated.overall = "rejected"
        updated.completed_at = now
        return ApprovalDecisionResult(instance=updated)

    step.outcome = "approved" if decision == "approve" else "skipped"
    activated = _advance(updated, now=now)
    return ApprovalDecisionResult(instance=updated, activated_step_index=activated)


def sweep_timeouts(instance: ApprovalInstance, *, now: datetime) -> ApprovalSweepResult:
    step = instance.active_step
    if step is None or step.activated_at is None:
        return ApprovalSweepResult(instance=instance)
    if now - step.activated_at < timedelta(hours=step.template.timeout_hours):
        return ApprovalSweepResult(instance=instance)

    updated = instance.model_copy(deep=True)
    index = updated.active_step_index
    active = updated.steps[index]

    if active.template.escalation_address:
        active.escalation_count += 1
        active.activated_at = now
        updated.revision += 1
        return ApprovalSweepResult(
            instance=updated,
            changed=True,
            escalations=[
                ApprovalEscalation(
                    step_index=index,
                    step_name=active.template.step_name,
                    escalation_address=active.template.escalation_address,
                    escalation_count=active.escalation_count,
                )
            ],
        )

    if active.template.required:
        # Blocks until a manual decision or the proposal's own deadline.
        return ApprovalSweepResult(instance=instance)

    active.outcome = "skipped"
    active.decided_at = now
    active.decided_by = "system:timeout"
    updated.revision += 1
    activated = _advance(updated, now=now)
    return ApprovalSweepResult(
        instance=updated,
        changed=True,
        skipped_step_indexes=[index],
        activated_step_index=activated,
    )


def _advance(instance: ApprovalInstance, *, now: datetime) -> Optional[int]:
    next_index = instance.active_step_index + 1
    if next_index >= len(instance.steps):
        instance.overall = "approved"
        instance.completed_at = now
        return None
    instance.active_step_index = next_index
    instance.steps[next_index].activated_at = now
    return next_index
