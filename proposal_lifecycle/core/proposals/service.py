import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from proposal_lifecycle.core.common.errors import (
    ProposalConflictError,
    ProposalInvalidStateError,
    ProposalNotFoundError,
    ProposalValidationError,
)
from proposal_lifecycle.core.common.statuses import APPROVED_MARKER, ProposalStatus, is_terminal
from proposal_lifecycle.core.outbox.models import NotificationContext, OutboxMessage
from proposal_lifecycle.core.outbox.notifications import (
    EmailTemplate,
    NotificationSettings,
    build_notify_message,
    build_record_event_message,
    render_email,
)
from proposal_lifecycle.core.proposals.models import (
    ApprovalDecisionRequest,
    LifecycleSweepReport,
    ProposalApprovalsResponse,
    ProposalCreateRequest,
    ProposalDeclineRequest,
    ProposalDetailResponse,
    ProposalDetailsUpdateRequest,
    ProposalEventRecord,
    ProposalEventType,
    ProposalListResponse,
    ProposalRecord,
    ProposalSignatureRequest,
    ProposalSubmitRequest,
    ProposalSummary,
    ProposalTimelineResponse,
    ProposalTransitionResponse,
    ProposalUserActionRequest,
    ProposalVersionCommitRequest,
    ProposalVersionHistoryResponse,
    ProposalVersionRecord,
    ProposalViewRequest,
)
from proposal_lifecycle.core.proposals.repository import DETAIL_FIELDS, ProposalRepository
from proposal_lifecycle.core.proposals.state_machine import (
    ProposalTrigger,
    effective_status,
    ensure_actionable,
    is_past_deadline,
    resolve_transition,
)
from proposal_lifecycle.core.proposals.versions import VersionStore, build_version
from proposal_lifecycle.core.workflow.approvals import (
    ApprovalInstance,
    decide,
    start_approval,
    sweep_timeouts,
)
from proposal_lifecycle.core.workflow.catalog import WorkflowConfigurationProvider
from proposal_lifecycle.core.workflow.rules import (
    APPROVAL_ACTIONS,
    EVENT_RECORDER_ACTIONS,
    AmountThresholdEvent,
    RuleFiring,
    StatusChangeEvent,
    TimeBasedEvent,
    UserActionEvent,
    evaluate_rules,
    requires_approval,
    sort_firings,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system:sweep"

_ACTION_TEMPLATES: dict[str, tuple[EmailTemplate, str]] = {
    "notify_manager": ("manager_notice", "manager"),
    "send_to_client": ("proposal_sent", "client"),
    "send_reminder": ("reminder", "client"),
    "escalate": ("escalation", "manager"),
}

_MANAGER_STATUS_TEMPLATES: dict[str, EmailTemplate] = {
    "viewed": "proposal_viewed",
    "signed": "proposal_signed",
    "rejected": "proposal_rejected",
}

# Transition payload keys carried into rule-fired emails.
_MESSAGE_DETAIL_KEYS = ("signer_name", "reason")


class ProposalLifecycleService:
    def __init__(
        self,
        *,
        repository: ProposalRepository,
        configuration: WorkflowConfigurationProvider,
        notification_settings: Optional[NotificationSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._versions = VersionStore(repository=repository)
        self._configuration = configuration
        self._settings = notification_settings or NotificationSettings()
        self._clock = clock or _utc_now

    @property
    def repository(self) -> ProposalRepository:
        return self._repository

    @property
    def configuration(self) -> WorkflowConfigurationProvider:
        return self._configuration

    def create_proposal(self, *, payload: ProposalCreateRequest) -> ProposalDetailResponse:
        now = self._clock()
        proposal_id = f"pp_{uuid.uuid4().hex[:12]}"
        version = build_version(
            proposal_id=proposal_id,
            version_number=1,
            snapshot=payload.snapshot,
            change_summary=payload.change_summary,
            actor_id=payload.created_by,
            now=now,
        )
        proposal = ProposalRecord(
            proposal_id=proposal_id,
            proposal_number=payload.proposal_number or _generate_proposal_number(now),
            title=payload.title,
            client_name=payload.client_name,
            client_email=payload.client_email,
            client_phone=payload.client_phone,
            client_address=payload.client_address,
            status="draft",
            priority=payload.priority,
            currency=payload.currency,
            valid_until=_as_utc(payload.valid_until),
            total=version.pricing.total,
            current_version_id=version.version_id,
            current_version_number=version.version_number,
            created_at=now,
            updated_at=now,
            created_by=payload.created_by,
            updated_by=payload.created_by,
        )
        event = _event(
            proposal_id=proposal_id,
            event_type="created",
            from_status=None,
            to_status="draft",
            actor_id=payload.created_by,
            payload={
                "proposal_number": proposal.proposal_number,
                "version_id": version.version_id,
            },
            now=now,
        )
        self._repository.create_proposal(proposal=proposal, version=version, event=event)
        logger.info(
            "proposal created",
            extra={"extra_fields": {"proposal_id": proposal_id, "total": proposal.total}},
        )
        return ProposalDetailResponse(
            proposal=self._to_summary(proposal, now=now),
            current_version=version,
        )

    def get_proposal(self, *, proposal_id: str) -> ProposalDetailResponse:
        proposal = self._load(proposal_id)
        version = self._versions.current(proposal_id=proposal_id)
        if version is None:
            raise ProposalNotFoundError("PROPOSAL_VERSION_NOT_FOUND")
        return ProposalDetailResponse(
            proposal=self._to_summary(proposal, now=self._clock()),
            current_version=version,
            active_approval=self._repository.get_active_approval(proposal_id=proposal_id),
        )

    def list_proposals(
        self,
        *,
        status: Optional[ProposalStatus],
        created_by: Optional[str],
        limit: int,
        cursor: Optional[str],
    ) -> ProposalListResponse:
        rows, next_cursor = self._repository.list_proposals(
            status=status,
            created_by=created_by,
            limit=limit,
            cursor=cursor,
        )
        now = self._clock()
        return ProposalListResponse(
            items=[self._to_summary(row, now=now) for row in rows],
            next_cursor=next_cursor,
        )

    def commit_version(
        self, *, proposal_id: str, payload: ProposalVersionCommitRequest
    ) -> ProposalVersionRecord:
        return self._versions.commit(
            proposal_id=proposal_id,
            base_version_id=payload.base_version_id,
            snapshot=payload.snapshot,
            change_summary=payload.change_summary,
            actor_id=payload.actor_id,
            now=self._clock(),
        )

    def get_version_history(
        self, *, proposal_id: str, offset: int, limit: int
    ) -> ProposalVersionHistoryResponse:
        items, total_count = self._versions.history(
            proposal_id=proposal_id, offset=offset, limit=limit
        )
        return ProposalVersionHistoryResponse(
            proposal_id=proposal_id,
            items=items,
            offset=offset,
            limit=limit,
            total_count=total_count,
        )

    def peek_version(self, *, version_id: str) -> ProposalVersionRecord:
        return self._versions.peek(version_id=version_id)

    def update_details(
        self, *, proposal_id: str, payload: ProposalDetailsUpdateRequest
    ) -> ProposalDetailResponse:
        """
        Edit the proposal's title, client contact, priority or validity deadline.

        Fields left out of the payload keep their stored values; ``valid_until``
        may be cleared with an explicit null. Terminal and lazily expired
        proposals are read-only. The write is guarded on ``updated_at``: the
        caller's ``expected_updated_at`` when given, otherwise the value just read.
        """
        now = self._clock()
        proposal = self._load(proposal_id)
        ensure_actionable(proposal, now=now)
        if is_terminal(proposal.status):
            raise ProposalInvalidStateError("PROPOSAL_TERMINAL_STATE: cannot update details")
        if (
            payload.expected_updated_at is not None
            and _as_utc(payload.expected_updated_at) != proposal.updated_at
        ):
            raise ProposalConflictError("STATE_CONFLICT: expected_updated_at mismatch")

        requested = {
            field: getattr(payload, field)
            for field in DETAIL_FIELDS
            if field in payload.model_fields_set
            and (getattr(payload, field) is not None or field == "valid_until")
        }
        if "valid_until" in requested:
            requested["valid_until"] = _as_utc(requested["valid_until"])
        if requested.get("valid_until") is not None and requested["valid_until"] <= now:
            raise ProposalValidationError("INVALID_VALID_UNTIL: must be in the future")
        changed = {
            field: value
            for field, value in requested.items()
            if getattr(proposal, field) != value
        }
        if not changed:
            return self.get_proposal(proposal_id=proposal_id)

        updated = proposal.model_copy(
            update={**changed, "updated_at": now, "updated_by": payload.actor_id}
        )
        before = proposal.model_dump(mode="json", include=set(changed))
        after = updated.model_dump(mode="json", include=set(changed))
        event = _event(
            proposal_id=proposal_id,
            event_type="details_updated",
            from_status=proposal.status,
            to_status=proposal.status,
            actor_id=payload.actor_id,
            payload={
                "changes": {
                    field: {"from": before[field], "to": after[field]} for field in sorted(changed)
                }
            },
            now=now,
        )
        self._repository.update_details(
            proposal=updated, expected_updated_at=proposal.updated_at, event=event
        )
        logger.info(
            "proposal details updated",
            extra={"extra_fields": {"proposal_id": proposal_id, "fields": sorted(changed)}},
        )
        return self.get_proposal(proposal_id=proposal_id)

    def submit(
        self, *, proposal_id: str, payload: ProposalSubmitRequest
    ) -> ProposalTransitionResponse:
        now = self._clock()
        proposal = self._load(proposal_id)
        ensure_actionable(proposal, now=now, expected_status=payload.expected_status)
        resolve_transition(current=proposal.status, trigger="submit", target="sent")
        version = self._versions.current(proposal_id=proposal_id)
        _validate_submission(proposal, version)

        configuration = self._configuration.current()
        rules = configuration.rules
        firings = (
            evaluate_rules(AmountThresholdEvent(proposal_total=proposal.total), rules)
            + evaluate_rules(UserActionEvent(action_name="submit"), rules)
            + evaluate_rules(StatusChangeEvent(from_status="draft", to_status="sent"), rules)
        )

        target: ProposalStatus = "sent"
        approval: Optional[ApprovalInstance] = None
        event_payload: dict[str, Any] = {"version_id": version.version_id if version else None}
        extra_events: list[ProposalEventRecord] = []
        extra_outbox: list[OutboxMessage] = []
        if requires_approval(firings):
            approval = start_approval(
                proposal_id=proposal_id,
                step_templates=configuration.approval_steps,
                now=now,
            )
            event_payload["approval_instance_id"] = approval.instance_id
            if approval.overall == "approved":
                event_payload["via"] = APPROVED_MARKER
            else:
                target = "pending_approval"
                firings = [f for f in firings if f.event.kind != "status_change"]
                firings += evaluate_rules(
                    StatusChangeEvent(from_status="draft", to_status="pending_approval"), rules
                )
                extra_events.append(
                    _event(
                        proposal_id=proposal_id,
                        event_type="approval_started",
                        from_status="draft",
                        to_status="pending_approval",
                        actor_id=payload.actor_id,
                        payload={
                            "instance_id": approval.instance_id,
                            "step_count": len(approval.steps),
                        },
                        now=now,
                    )
                )
                extra_outbox.append(
                    self._approval_request_message(proposal, approval, step_index=0, now=now)
                )

        return self._transition(
            proposal,
            trigger="submit",
            target=target,
            actor_id=payload.actor_id,
            event_payload=event_payload,
            now=now,
            firings=sort_firings(firings),
            submission=True,
            extra_events=extra_events,
            extra_outbox=extra_outbox,
            approval=approval,
        )

    def record_view(
        self, *, proposal_id: str, payload: ProposalViewRequest
    ) -> ProposalTransitionResponse:
        now = self._clock()
        proposal = self._load(proposal_id)
        ensure_actionable(proposal, now=now)
        engagement = {
            key: value
            for key, value in (
                ("user_agent", payload.user_agent),
                ("ip_address", payload.ip_address),
            )
            if value is not None
        }
        if payload.engagement == "downloaded" or proposal.status == "viewed":
            if proposal.status not in ("sent", "viewed"):
                raise ProposalInvalidStateError("INVALID_TRANSITION")
            event = _event(
                proposal_id=proposal_id,
                event_type=payload.engagement,
                from_status=proposal.status,
                to_status=proposal.status,
                actor_id=payload.actor_id,
                payload=engagement,
                now=now,
            )
            self._repository.append_events(events=[event])
            return ProposalTransitionResponse(
                proposal=self._to_summary(proposal, now=now), latest_event=event
            )
        return self._transition(
            proposal,
            trigger="opened",
            actor_id=payload.actor_id,
            event_payload=engagement,
            now=now,
        )

    def sign(
        self, *, proposal_id: str, payload: ProposalSignatureRequest
    ) -> ProposalTransitionResponse:
        now = self._clock()
        proposal = self._load(proposal_id)
        ensure_actionable(proposal, now=now, expected_status=payload.expected_status)
        return self._transition(
            proposal,
            trigger="signed",
            actor_id=payload.actor_id,
            event_payload={
                "signer_name": payload.signer_name,
                "signer_email": payload.signer_email,
                "signer_role": payload.signer_role,
                "signature_type": payload.signature_type,
            },
            now=now,
        )

    def decline(
        self, *, proposal_id: str, payload: ProposalDeclineRequest
    ) -> ProposalTransitionResponse:
        now = self._clock()
        proposal = self._load(proposal_id)
        ensure_actionable(proposal, now=now, expected_status=payload.expected_status)
        return self._transition(
            proposal,
            trigger="declined",
            actor_id=payload.actor_id,
            event_payload={"reason": payload.reason},
            now=now,
        )

    def record_user_action(
        self, *, proposal_id: str, payload: ProposalUserActionRequest
    ) -> ProposalTransitionResponse:
        now = self._clock()
        proposal = self._load(proposal_id)
        ensure_actionable(proposal, now=now)
        if is_terminal(proposal.status):
            raise ProposalInvalidStateError("PROPOSAL_TERMINAL_STATE")
        event = _event(
            proposal_id=proposal_id,
            event_type="user_action",
            from_status=proposal.status,
            to_status=proposal.status,
            actor_id=payload.actor_id,
            payload={"action_name": payload.action_name, "details": payload.details},
            now=now,
        )
        firings = evaluate_rules(
            UserActionEvent(action_name=payload.action_name),
            self._configuration.current().rules,
        )
        rule_events, rule_outbox = self._plan_firings(
            proposal, firings, actor_id=payload.actor_id, now=now, submission=False
        )
        self._repository.append_events(events=[event, *rule_events], outbox=rule_outbox)
        return ProposalTransitionResponse(
            proposal=self._to_summary(proposal, now=now),
            latest_event=event,
            fired_rule_ids=[firing.rule.rule_id for firing in firings],
        )

    def decide_approval(
        self, *, instance_id: str, payload: ApprovalDecisionRequest
    ) -> ProposalTransitionResponse:
        now = self._clock()
        instance = self._repository.get_approval(instance_id=instance_id)
        if instance is None:
            raise ProposalNotFoundError("APPROVAL_NOT_FOUND")
        if payload.expected_revision is not None and payload.expected_revision != instance.revision:
            raise ProposalConflictError("APPROVAL_CONFLICT: revision mismatch")
        result = decide(
            instance,
            step_index=payload.step_index,
            decision=payload.decision,
            actor_id=payload.actor_id,
            now=now,
            comment=payload.comment,
        )
        proposal = self._load(instance.proposal_id)
        ensure_actionable(proposal, now=now)
        if proposal.status != "pending_approval":
            raise ProposalInvalidStateError("INVALID_TRANSITION")

        step = result.instance.steps[payload.step_index]
        decided_event = _event(
            proposal_id=proposal.proposal_id,
            event_type="approval_decided",
            from_status=proposal.status,
            to_status=proposal.status,
            actor_id=payload.actor_id,
            payload={
                "instance_id": instance_id,
                "step_index": payload.step_index,
                "step_name": step.template.step_name,
                "decision": payload.decision,
                "comment": payload.comment,
                "overall": result.instance.overall,
            },
            now=now,
        )
        return self._apply_approval_progress(
            proposal,
            before=instance,
            after=result.instance,
            activated_step_index=result.activated_step_index,
            events=[decided_event],
            actor_id=payload.actor_id,
            now=now,
        )

    def get_approval(self, *, instance_id: str) -> ApprovalInstance:
        instance = self._repository.get_approval(instance_id=instance_id)
        if instance is None:
            raise ProposalNotFoundError("APPROVAL_NOT_FOUND")
        return instance

    def list_approvals(self, *, proposal_id: str) -> ProposalApprovalsResponse:
        self._load(proposal_id)
        return ProposalApprovalsResponse(
            proposal_id=proposal_id,
            approvals=self._repository.list_approvals(proposal_id=proposal_id),
        )

    def get_timeline(self, *, proposal_id: str) -> ProposalTimelineResponse:
        self._load(proposal_id)
        return ProposalTimelineResponse(
            proposal_id=proposal_id,
            events=self._repository.list_events(proposal_id=proposal_id),
        )

    def expire_overdue(self, *, now: Optional[datetime] = None) -> list[str]:
        now = now or self._clock()
        expired: list[str] = []
        for proposal in self._repository.list_open_proposals():
            if not is_past_deadline(proposal, now=now):
                continue
            try:
                self._transition(
                    proposal,
                    trigger="expired",
                    actor_id=SYSTEM_ACTOR,
                    event_payload={
                        "valid_until": proposal.valid_until.isoformat()
                        if proposal.valid_until
                        else None
                    },
                    now=now,
                )
            except ProposalConflictError:
                logger.info(
                    "expiry skipped after concurrent change",
                    extra={"extra_fields": {"proposal_id": proposal.proposal_id}},
                )
                continue
            expired.append(proposal.proposal_id)
        return expired

    def sweep_approval_timeouts(self, *, now: Optional[datetime] = None) -> tuple[int, int]:
        now = now or self._clock()
        changed = 0
        completed = 0
        for instance in self._repository.list_active_approvals():
            result = sweep_timeouts(instance, now=now)
            if not result.changed:
                continue
            proposal = self._repository.get_proposal(proposal_id=instance.proposal_id)
            if (
                proposal is None
                or proposal.status != "pending_approval"
                or is_past_deadline(proposal, now=now)
            ):
                continue

            events: list[ProposalEventRecord] = []
            outbox: list[OutboxMessage] = []
            for escalation in result.escalations:
                events.append(
                    _event(
                        proposal_id=proposal.proposal_id,
                        event_type="approval_escalated",
                        from_status=proposal.status,
                        to_status=proposal.status,
                        actor_id=SYSTEM_ACTOR,
                        payload={"instance_id": instance.instance_id, **escalation.model_dump()},
                        now=now,
                    )
                )
                outbox.append(
                    self._email_message(
                        proposal,
                        template="approval_escalation",
                        recipients=[escalation.escalation_address],
                        action="approval_escalation",
                        now=now,
                        extra={
                            "step_name": escalation.step_name,
                            "escalation_count": escalation.escalation_count,
                        },
                    )
                )
            for index in result.skipped_step_indexes:
                events.append(
                    _event(
                        proposal_id=proposal.proposal_id,
                        event_type="approval_decided",
                        from_status=proposal.status,
                        to_status=proposal.status,
                        actor_id=SYSTEM_ACTOR,
                        payload={
                            "instance_id": instance.instance_id,
                            "step_index": index,
                            "step_name": result.instance.steps[index].template.step_name,
                            "decision": "skip",
                            "comment": "timeout",
                            "overall": result.instance.overall,
                        },
                        now=now,
                    )
                )
            try:
                self._apply_approval_progress(
                    proposal,
                    before=instance,
                    after=result.instance,
                    activated_step_index=result.activated_step_index,
                    events=events,
                    outbox=outbox,
                    actor_id=SYSTEM_ACTOR,
                    now=now,
                )
            except ProposalConflictError:
                logger.info(
                    "approval timeout skipped after concurrent decision",
                    extra={"extra_fields": {"instance_id": instance.instance_id}},
                )
                continue
            changed += 1
            if result.instance.overall != "in_progress":
                completed += 1
        return changed, completed

    def sweep_time_based_rules(self, *, now: Optional[datetime] = None) -> int:
        now = now or self._clock()
        rules = [
            rule for rule in self._configuration.current().rules if rule.trigger == "time_based"
        ]
        if not rules:
            return 0
        fired = 0
        for proposal in self._repository.list_open_proposals():
            if proposal.sent_at is None or is_past_deadline(proposal, now=now):
                continue
            event = TimeBasedEvent(
                status=proposal.status, sent_at=proposal.sent_at, observed_at=now
            )
            firings = evaluate_rules(event, rules)
            if not firings:
                continue
            already_fired = self._fired_time_based_keys(proposal.proposal_id)
            firings = [
                firing
                for firing in firings
                if (firing.rule.rule_id, proposal.status) not in already_fired
            ]
            if not firings:
                continue
            events, outbox = self._plan_firings(
                proposal, firings, actor_id=SYSTEM_ACTOR, now=now, submission=False
            )
            self._repository.append_events(events=events, outbox=outbox)
            fired += len(firings)
        return fired

    def run_sweep(self, *, now: Optional[datetime] = None) -> LifecycleSweepReport:
        now = now or self._clock()
        expired = self.expire_overdue(now=now)
        changed, completed = self.sweep_approval_timeouts(now=now)
        fired = self.sweep_time_based_rules(now=now)
        report = LifecycleSweepReport(
            expired_proposal_ids=expired,
            approvals_changed=changed,
            approvals_completed=completed,
            time_based_firings=fired,
        )
        logger.info("lifecycle sweep finished", extra={"extra_fields": report.model_dump()})
        return report

    def _transition(
        self,
        proposal: ProposalRecord,
        *,
        trigger: ProposalTrigger,
        actor_id: str,
        event_payload: dict[str, Any],
        now: datetime,
        target: Optional[ProposalStatus] = None,
        firings: Optional[list[RuleFiring]] = None,
        submission: bool = False,
        extra_events: Sequence[ProposalEventRecord] = (),
        extra_outbox: Sequence[OutboxMessage] = (),
        approval: Optional[ApprovalInstance] = None,
        expected_approval_revision: Optional[int] = None,
    ) -> ProposalTransitionResponse:
        to_status = resolve_transition(current=proposal.status, trigger=trigger, target=target)
        updated = proposal.model_copy(deep=True)
        updated.status = to_status
        updated.updated_at = now
        updated.updated_by = actor_id
        if to_status == "sent":
            updated.sent_at = now

        status_event = _event(
            proposal_id=proposal.proposal_id,
            event_type="status_change",
            from_status=proposal.status,
            to_status=to_status,
            actor_id=actor_id,
            payload={"trigger": trigger, **event_payload},
            now=now,
        )
        if firings is None:
            firings = evaluate_rules(
                StatusChangeEvent(from_status=proposal.status, to_status=to_status),
                self._configuration.current().rules,
            )
        rule_events, rule_outbox = self._plan_firings(
            updated,
            firings,
            actor_id=actor_id,
            now=now,
            submission=submission,
            details={
                key: event_payload[key] for key in _MESSAGE_DETAIL_KEYS if event_payload.get(key)
            },
        )
        self._repository.transition_proposal(
            proposal=updated,
            expected_status=proposal.status,
            events=[status_event, *extra_events, *rule_events],
            approval=approval,
            expected_approval_revision=expected_approval_revision,
            outbox=[*extra_outbox, *rule_outbox],
        )
        logger.info(
            "proposal transitioned",
            extra={
                "extra_fields": {
                    "proposal_id": proposal.proposal_id,
                    "trigger": trigger,
                    "from_status": proposal.status,
                    "to_status": to_status,
                    "fired_rules": len(firings),
                }
            },
        )
        return ProposalTransitionResponse(
            proposal=self._to_summary(updated, now=now),
            latest_event=status_event,
            approval=approval,
            fired_rule_ids=[firing.rule.rule_id for firing in firings],
        )

    def _apply_approval_progress(
        self,
        proposal: ProposalRecord,
        *,
        before: ApprovalInstance,
        after: ApprovalInstance,
        activated_step_index: Optional[int],
        events: list[ProposalEventRecord],
        actor_id: str,
        now: datetime,
        outbox: Sequence[OutboxMessage] = (),
    ) -> ProposalTransitionResponse:
        messages = list(outbox)
        if activated_step_index is not None:
            messages.append(
                self._approval_request_message(
                    proposal, after, step_index=activated_step_index, now=now
                )
            )
        if after.overall in ("approved", "rejected"):
            granted = after.overall == "approved"
            messages.append(
                self._email_message(
                    proposal,
                    template="approval_granted" if granted else "approval_denied",
                    recipients=[self._settings.manager_address],
                    action="approval_granted" if granted else "approval_denied",
                    now=now,
                )
            )
            return self._transition(
                proposal,
                trigger="approval_cleared" if granted else "approval_rejected",
                actor_id=actor_id,
                event_payload={
                    "via": APPROVED_MARKER if granted else "approval_rejected",
                    "approval_instance_id": after.instance_id,
                },
                now=now,
                extra_events=events,
                extra_outbox=messages,
                approval=after,
                expected_approval_revision=before.revision,
            )

        self._repository.save_approval(
            approval=after,
            expected_revision=before.revision,
            events=events,
            outbox=messages,
        )
        return ProposalTransitionResponse(
            proposal=self._to_summary(proposal, now=now),
            latest_event=events[-1],
            approval=after,
        )

    def _plan_firings(
        self,
        proposal: ProposalRecord,
        firings: list[RuleFiring],
        *,
        actor_id: str,
        now: datetime,
        submission: bool,
        details: Optional[dict[str, Any]] = None,
    ) -> tuple[list[ProposalEventRecord], list[OutboxMessage]]:
        events: list[ProposalEventRecord] = []
        outbox: list[OutboxMessage] = []
        for firing in firings:
            rule = firing.rule
            events.append(
                _event(
                    proposal_id=proposal.proposal_id,
                    event_type="rule_fired",
                    from_status=proposal.status,
                    to_status=proposal.status,
                    actor_id=actor_id,
                    payload={
                        "rule_id": rule.rule_id,
                        "rule_name": rule.name,
                        "trigger": rule.trigger,
                        "status": proposal.status,
                        "actions": list(rule.actions),
                        "event": firing.event.model_dump(mode="json"),
                    },
                    now=now,
                )
            )
            for action in rule.actions:
                if action in APPROVAL_ACTIONS:
                    if not submission:
                        logger.warning(
                            "require_approval ignored outside submission",
                            extra={
                                "extra_fields": {
                                    "proposal_id": proposal.proposal_id,
                                    "rule_id": rule.rule_id,
                                    "trigger": rule.trigger,
                                }
                            },
                        )
                    continue
                message = self._action_message(
                    proposal, firing, action=action, now=now, details=details
                )
                if message is not None:
                    outbox.append(message)
        return events, outbox

    def _action_message(
        self,
        proposal: ProposalRecord,
        firing: RuleFiring,
        *,
        action: str,
        now: datetime,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[OutboxMessage]:
        if action in EVENT_RECORDER_ACTIONS:
            return build_record_event_message(
                action=action,
                proposal_id=proposal.proposal_id,
                event_type="analytics",
                payload={
                    "rule_id": firing.rule.rule_id,
                    "trigger": firing.rule.trigger,
                    "status": proposal.status,
                    "total": proposal.total,
                },
                actor_id=None,
                now=now,
            )
        template, audience = _ACTION_TEMPLATES[action]
        if action == "notify_manager":
            template = _MANAGER_STATUS_TEMPLATES.get(proposal.status, template)
        recipient = (
            proposal.client_email if audience == "client" else self._settings.manager_address
        )
        if not recipient:
            logger.warning(
                "rule action skipped without recipient",
                extra={
                    "extra_fields": {
                        "proposal_id": proposal.proposal_id,
                        "rule_id": firing.rule.rule_id,
                        "action": action,
                    }
                },
            )
            return None
        return self._email_message(
            proposal,
            template=template,
            recipients=[recipient],
            action=action,
            now=now,
            extra={"rule_name": firing.rule.name, **(details or {})},
        )

    def _approval_request_message(
        self,
        proposal: ProposalRecord,
        approval: ApprovalInstance,
        *,
        step_index: int,
        now: datetime,
    ) -> OutboxMessage:
        template = approval.steps[step_index].template
        return self._email_message(
            proposal,
            template="approval_request",
            recipients=[template.approver_address],
            action="approval_request",
            now=now,
            extra={"step_name": template.step_name},
        )

    def _email_message(
        self,
        proposal: ProposalRecord,
        *,
        template: EmailTemplate,
        recipients: list[str],
        action: str,
        now: datetime,
        extra: Optional[dict[str, Any]] = None,
    ) -> OutboxMessage:
        email = render_email(
            template,
            context=_notification_context(proposal),
            settings=self._settings,
            recipients=recipients,
            extra=extra,
        )
        return build_notify_message(
            action=action, email=email, proposal_id=proposal.proposal_id, now=now
        )

    def _fired_time_based_keys(self, proposal_id: str) -> set[tuple[str, str]]:
        keys: set[tuple[str, str]] = set()
        for event in self._repository.list_events(proposal_id=proposal_id):
            if event.event_type != "rule_fired" or event.payload.get("trigger") != "time_based":
                continue
            keys.add((str(event.payload.get("rule_id")), str(event.payload.get("status"))))
        return keys

    def _load(self, proposal_id: str) -> ProposalRecord:
        proposal = self._repository.get_proposal(proposal_id=proposal_id)
        if proposal is None:
            raise ProposalNotFoundError("PROPOSAL_NOT_FOUND")
        return proposal

    def _to_summary(self, proposal: ProposalRecord, *, now: datetime) -> ProposalSummary:
        return ProposalSummary(
            proposal_id=proposal.proposal_id,
            proposal_number=proposal.proposal_number,
            title=proposal.title,
            client_name=proposal.client_name,
            client_email=proposal.client_email,
            status=effective_status(proposal, now=now),
            priority=proposal.priority,
            currency=proposal.currency,
            total=proposal.total,
            valid_until=proposal.valid_until,
            sent_at=proposal.sent_at,
            current_version_id=proposal.current_version_id,
            current_version_number=proposal.current_version_number,
            created_by=proposal.created_by,
            created_at=proposal.created_at,
            updated_at=proposal.updated_at,
        )


def _validate_submission(
    proposal: ProposalRecord, version: Optional[ProposalVersionRecord]
) -> None:
    missing = [
        field
        for field in ("title", "client_name", "client_email")
        if not getattr(proposal, field).strip()
    ]
    if missing:
        raise ProposalValidationError(f"SUBMISSION_INCOMPLETE: missing {','.join(missing)}")
    if version is None:
        raise ProposalValidationError("SUBMISSION_INCOMPLETE: no current version")
    if version.pricing.total < 0:
        raise ProposalValidationError("NEGATIVE_TOTAL")


def _notification_context(proposal: ProposalRecord) -> NotificationContext:
    return NotificationContext(
        proposal_id=proposal.proposal_id,
        proposal_number=proposal.proposal_number,
        title=proposal.title,
        client_name=proposal.client_name,
        client_email=proposal.client_email,
        total=proposal.total,
        currency=proposal.currency,
        status=proposal.status,
        valid_until=proposal.valid_until,
    )


def _event(
    *,
    proposal_id: str,
    event_type: ProposalEventType,
    from_status: Optional[ProposalStatus],
    to_status: Optional[ProposalStatus],
    actor_id: Optional[str],
    payload: dict[str, Any],
    now: datetime,
) -> ProposalEventRecord:
    return ProposalEventRecord(
        event_id=f"pev_{uuid.uuid4().hex[:12]}",
        proposal_id=proposal_id,
        event_type=event_type,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        payload=payload,
        occurred_at=now,
    )


def _generate_proposal_number(now: datetime) -> str:
    return f"PROP-{now.strftime('%Y%m%d')}-{uuid.uuid4().hex[:6].upper()}"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)
