"""
Declarative workflow rules and their pure evaluator.

A rule pairs one trigger kind with a typed condition payload and a closed set
of action names. Evaluation never mutates a rule: it selects every active rule
whose trigger matches the event and whose condition holds, ordered by ascending
priority. All matches fire; a rule never suppresses a lower-priority one.
"""

from datetime import datetime, timedelta
from typing import Annotated, Any, Iterable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from proposal_lifecycle.core.common.statuses import ProposalStatus

WorkflowTriggerKind = Literal["status_change", "amount_threshold", "time_based", "user_action"]

WorkflowActionName = Literal[
    "require_approval",
    "notify_manager",
    "send_to_client",
    "track_analytics",
    "send_reminder",
    "escalate",
]

EVENT_RECORDER_ACTIONS: frozenset[str] = frozenset({"track_analytics"})
APPROVAL_ACTIONS: frozenset[str] = frozenset({"require_approval"})


class StatusChangeCondition(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    from_status: Optional[ProposalStatus] = Field(
        default=None,
        description="Previous status required for a match. Any status when omitted.",
        examples=["draft"],
    )
    to_status: ProposalStatus = Field(
        description="Status entered by the transition.",
        examples=["sent"],
    )


class AmountThresholdCondition(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    min_amount: int = Field(
        ge=0,
        description="Inclusive proposal total threshold in minor units.",
        examples=[5000000],
    )


class TimeBasedCondition(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    status: ProposalStatus = Field(
        description="Status the proposal must still be in.",
        examples=["sent"],
    )
    days: int = Field(
        ge=0,
        description="Whole days elapsed since the proposal was sent.",
        examples=[7],
    )


class UserActionCondition(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    action_name: str = Field(
        min_length=1,
        description="User action name to match exactly.",
        examples=["request_revision"],
    )


WorkflowRuleCondition = Union[
    StatusChangeCondition,
    AmountThresholdCondition,
    TimeBasedCondition,
    UserActionCondition,
]

_CONDITION_MODELS: dict[str, type[BaseModel]] = {
    "status_change": StatusChangeCondition,
    "amount_threshold": AmountThresholdCondition,
    "time_based": TimeBasedCondition,
    "user_action": UserActionCondition,
}


class WorkflowRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule_id: str = Field(min_length=1, description="Rule identifier.", examples=["wr_001"])
    name: str = Field(min_length=1, description="Rule name.", examples=["High Value Approval"])
    description: str = Field(
        default="",
        description="Free-text rule description.",
        examples=["Require approval for proposals over $50,000"],
    )
    trigger: WorkflowTriggerKind = Field(
        description="Trigger kind this rule listens to.", examples=["amount_threshold"]
    )
    conditions: WorkflowRuleCondition = Field(
        description="Trigger-specific condition payload.",
        examples=[{"min_amount": 5000000}],
    )
    actions: tuple[WorkflowActionName, ...] = Field(
        default=(),
        description="Actions dispatched when the rule matches.",
        examples=[["require_approval", "notify_manager"]],
    )
    active: bool = Field(default=True, description="Inactive rules never match.")
    priority: int = Field(
        default=100,
        description="Evaluation order; lower values are evaluated first.",
        examples=[1],
    )

    @model_validator(mode="before")
    @classmethod
    def _normalize_action_flags(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = dict(data)
        actions = payload.get("actions")
        if isinstance(actions, dict):
            payload["actions"] = tuple(name for name, enabled in actions.items() if enabled)
        return payload

    @model_validator(mode="after")
    def _validate_conditions_match_trigger(self) -> "WorkflowRule":
        expected = _CONDITION_MODELS[self.trigger]
        if not isinstance(self.conditions, expected):
            raise ValueError(f"RULE_CONDITION_TRIGGER_MISMATCH:{self.trigger}")
        if len(set(self.actions)) != len(self.actions):
            raise ValueError("RULE_DUPLICATE_ACTION")
        return self


class StatusChangeEvent(BaseModel):
    kind: Literal["status_change"] = "status_change"
    from_status: Optional[ProposalStatus] = None
    to_status: ProposalStatus


class AmountThresholdEvent(BaseModel):
    kind: Literal["amount_threshold"] = "amount_threshold"
    proposal_total: int


class TimeBasedEvent(BaseModel):
    kind: Literal["time_based"] = "time_based"
    status: ProposalStatus
    sent_at: datetime
    observed_at: datetime

    @property
    def elapsed_since_sent(self) -> timedelta:
        return self.observed_at - self.sent_at


class UserActionEvent(BaseModel):
    kind: Literal["user_action"] = "user_action"
    action_name: str


WorkflowEvent = Annotated[
    Union[StatusChangeEvent, AmountThresholdEvent, TimeBasedEvent, UserActionEvent],
    Field(discriminator="kind"),
]


class RuleFiring(BaseModel):
    model_config = ConfigDict(frozen=True)

    rule: WorkflowRule
    event: WorkflowEvent


def condition_holds(rule: WorkflowRule, event: WorkflowEvent) -> bool:
    if rule.trigger != event.kind:
        return False
    condition = rule.conditions
    if isinstance(event, AmountThresholdEvent):
        return event.proposal_total >= condition.min_amount
    if isinstance(event, StatusChangeEvent):
        if condition.from_status is not None and event.from_status != condition.from_status:
            return False
        return event.to_status == condition.to_status
    if isinstance(event, TimeBasedEvent):
        if event.status != condition.status:
            return False
        return event.elapsed_since_sent >= timedelta(days=condition.days)
    if isinstance(event, UserActionEvent):
        return event.action_name == condition.action_name
    return False


def evaluate_rules(event: WorkflowEvent, rules: Iterable[WorkflowRule]) -> list[RuleFiring]:
    matched = [rule for rule in rules if rule.active and condition_holds(rule, event)]
    matched.sort(key=lambda rule: (rule.priority, rule.rule_id))
    return [RuleFiring(rule=rule, event=event) for rule in matched]


def requires_approval(firings: list[RuleFiring]) -> bool:
    return any("require_approval" in firing.rule.actions for firing in firings)


def sort_firings(firings: list[RuleFiring]) -> list[RuleFiring]:
    unique: dict[tuple[str, str], RuleFiring] = {}
    for firing in firings:
        unique.setdefault((firing.rule.rule_id, firing.event.kind), firing)
    return sorted(unique.values(), key=lambda item: (item.rule.priority, item.rule.rule_id))
