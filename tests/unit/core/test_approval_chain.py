from datetime import timedelta

import pytest

from proposal_lifecycle.core.common.errors import ProposalConflictError, ProposalValidationError
from proposal_lifecycle.core.workflow import decide, start_approval, sweep_timeouts
from tests.factories import T0, approval_step


def _two_step_chain(**second_step_kwargs):
    return start_approval(
        proposal_id="pp_001",
        step_templates=[approval_step("manager"), approval_step("director", **second_step_kwargs)],
        now=T0,
    )


def test_two_step_approval_completes_after_both_approvals():
    instance = _two_step_chain()
    assert instance.active_step_index == 0
    assert instance.steps[0].activated_at == T0

    first = decide(instance, step_index=0, decision="approve", actor_id="mgr", now=T0)
    assert first.activated_step_index == 1
    assert first.instance.overall == "in_progress"
    assert first.instance.steps[1].activated_at == T0

    second = decide(first.instance, step_index=1, decision="approve", actor_id="dir", now=T0)
    assert second.instance.overall == "approved"
    assert second.instance.completed_at == T0
    assert second.activated_step_index is None
    assert [step.outcome for step in second.instance.steps] == ["approved", "approved"]


def test_rejection_on_any_step_ends_chain_rejected():
    instance = _two_step_chain()

    result = decide(
        instance, step_index=0, decision="reject", actor_id="mgr", now=T0, comment="Too high"
    )

    assert result.instance.overall == "rejected"
    assert result.instance.steps[0].comment == "Too high"
    assert result.instance.steps[1].outcome == "pending"


def test_decide_does_not_mutate_input_and_bumps_revision():
    instance = _two_step_chain()

    result = decide(instance, step_index=0, decision="approve", actor_id="mgr", now=T0)

    assert instance.steps[0].outcome == "pending"
    assert instance.revision == 0
    assert result.instance.revision == 1


def test_second_decision_on_same_step_is_conflict():
    instance = _two_step_chain()
    approved = decide(instance, step_index=0, decision="approve", actor_id="mgr", now=T0).instance

    with pytest.raises(ProposalConflictError):
        decide(approved, step_index=0, decision="approve", actor_id="mgr", now=T0)


def test_decision_on_inactive_or_completed_chain_is_conflict():
    instance = _two_step_chain()
    with pytest.raises(ProposalConflictError):
        decide(instance, step_index=1, decision="approve", actor_id="dir", now=T0)

    rejected = decide(instance, step_index=0, decision="reject", actor_id="mgr", now=T0).instance
    with pytest.raises(ProposalConflictError):
        decide(rejected, step_index=1, decision="approve", actor_id="dir", now=T0)


def test_required_step_cannot_be_skipped_but_optional_can():
    instance = start_approval(
        proposal_id="pp_001",
        step_templates=[approval_step("finance", required=False), approval_step("manager")],
        now=T0,
    )

    skipped = decide(instance, step_index=0, decision="skip", actor_id="ops", now=T0)
    assert skipped.instance.steps[0].outcome == "skipped"
    assert skipped.activated_step_index == 1

    with pytest.raises(ProposalValidationError):
        decide(skipped.instance, step_index=1, decision="skip", actor_id="ops", now=T0)


def test_empty_template_is_approved_immediately():
    instance = start_approval(proposal_id="pp_001", step_templates=[], now=T0)

    assert instance.overall == "approved"
    assert instance.completed_at == T0
    assert instance.active_step is None


def test_sweep_before_timeout_changes_nothing():
    instance = _two_step_chain()

    result = sweep_timeouts(instance, now=T0 + timedelta(hours=23, minutes=59))

    assert result.changed is False
    assert result.instance is instance


def test_sweep_escalates_step_with_escalation_address_and_restarts_timer():
    instance = start_approval(
        proposal_id="pp_001",
        step_templates=[approval_step("manager", escalation_address="director@company.com")],
        now=T0,
    )
    later = T0 + timedelta(hours=24)

    first = sweep_timeouts(instance, now=later)
    assert first.changed is True
    assert first.escalations[0].escalation_address == "director@company.com"
    assert first.escalations[0].escalation_count == 1
    assert first.instance.steps[0].outcome == "pending"
    assert first.instance.steps[0].activated_at == later

    assert sweep_timeouts(first.instance, now=later + timedelta(hours=1)).changed is False
    second = sweep_timeouts(first.instance, now=later + timedelta(hours=24))
    assert second.escalations[0].escalation_count == 2


def test_sweep_skips_optional_step_and_activates_next():
    instance = start_approval(
        proposal_id="pp_001",
        step_templates=[approval_step("finance", required=False), approval_step("manager")],
        now=T0,
    )

    result = sweep_timeouts(instance, now=T0 + timedelta(hours=25))

    assert result.changed is True
    assert result.skipped_step_indexes == [0]
    assert result.activated_step_index == 1
    assert result.instance.steps[0].decided_by == "system:timeout"
    assert result.instance.overall == "in_progress"


def test_sweep_skipping_last_optional_step_approves_chain():
    instance = start_approval(
        proposal_id="pp_001",
        step_templates=[approval_step("finance", required=False)],
        now=T0,
    )

    result = sweep_timeouts(instance, now=T0 + timedelta(hours=24))

    assert result.instance.overall == "approved"


def test_sweep_leaves_required_step_without_escalation_blocked():
    instance = start_approval(
        proposal_id="pp_001", step_templates=[approval_step("manager")], now=T0
    )

    result = sweep_timeouts(instance, now=T0 + timedelta(days=10))

    assert result.changed is False
    assert result.instance.steps[0].outcome == "pending"
