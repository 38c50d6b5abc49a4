import json
import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from proposal_lifecycle.core.workflow.approvals import ApprovalStepTemplate
from proposal_lifecycle.core.workflow.repository import WorkflowConfigRepository
from proposal_lifecycle.core.workflow.rules import WorkflowRule

logger = logging.getLogger(__name__)


class WorkflowConfiguration(BaseModel):
    """Immutable snapshot of the authored rules and approval steps."""

    model_config = ConfigDict(frozen=True)

    rules: tuple[WorkflowRule, ...] = Field(default=())
    approval_steps: tuple[ApprovalStepTemplate, ...] = Field(default=())
    loaded_at: Optional[datetime] = Field(default=None)

    @property
    def active_rules(self) -> tuple[WorkflowRule, ...]:
        return tuple(rule for rule in self.rules if rule.active)


class WorkflowCatalog(BaseModel):
    rules: list[WorkflowRule] = Field(default_factory=list)
    approval_steps: list[ApprovalStepTemplate] = Field(default_factory=list)


def parse_workflow_catalog(catalog_json: Optional[str]) -> WorkflowCatalog:
    normalized_json = (catalog_json or "").strip()
    if not normalized_json:
        return WorkflowCatalog()
    try:
        raw = json.loads(normalized_json)
    except json.JSONDecodeError:
        logger.warning("workflow catalog is not valid JSON; starting empty")
        return WorkflowCatalog()
    if not isinstance(raw, dict):
        return WorkflowCatalog()

    catalog = WorkflowCatalog()
    seen_rule_ids: set[str] = set()
    for entry in _as_list(raw.get("rules")):
        rule = _parse_entry(WorkflowRule, entry, kind="rule")
        if rule is None or rule.rule_id in seen_rule_ids:
            continue
        seen_rule_ids.add(rule.rule_id)
        catalog.rules.append(rule)

    seen_step_ids: set[str] = set()
    for entry in _as_list(raw.get("approval_steps")):
        step = _parse_entry(ApprovalStepTemplate, entry, kind="approval_step")
        if step is None or step.step_id in seen_step_ids:
            continue
        seen_step_ids.add(step.step_id)
        catalog.approval_steps.append(step)
    return catalog


class WorkflowConfigurationProvider:
    """
    Holds the current configuration snapshot.

    Readers get the same snapshot until ``reload`` is called after an
    administrative change, so one evaluation never sees a half-applied edit.
    """

    def __init__(self, *, repository: WorkflowConfigRepository) -> None:
        self._repository = repository
        self._lock = Lock()
        self._snapshot: Optional[WorkflowConfiguration] = None

    @property
    def repository(self) -> WorkflowConfigRepository:
        return self._repository

    def current(self) -> WorkflowConfiguration:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = self._load()
            return self._snapshot

    def reload(self) -> WorkflowConfiguration:
        snapshot = self._load()
        with self._lock:
            self._snapshot = snapshot
        logger.info(
            "workflow configuration reloaded",
            extra={
                "extra_fields": {
                    "rule_count": len(snapshot.rules),
                    "approval_step_count": len(snapshot.approval_steps),
                }
            },
        )
        return snapshot

    def _load(self) -> WorkflowConfiguration:
        rules = sorted(
            self._repository.list_rules(), key=lambda rule: (rule.priority, rule.rule_id)
        )
        return WorkflowConfiguration(
            rules=tuple(rules),
            approval_steps=tuple(self._repository.list_approval_steps()),
            loaded_at=datetime.now(timezone.utc),
        )


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    return []


def _parse_entry(model: Any, entry: Any, *, kind: str) -> Any:
    if not isinstance(entry, dict):
        return None
    try:
        return model.model_validate(entry)
    except ValidationError as exc:
        logger.warning(
            "skipping invalid workflow catalog entry",
            extra={"extra_fields": {"kind": kind, "errors": exc.error_count()}},
        )
        return None
