import pytest

from proposal_lifecycle.core.common.errors import ProposalConflictError
from proposal_lifecycle.core.proposals import ProposalSubmitRequest, ProposalVersionCommitRequest
from proposal_lifecycle.core.workflow import decide, start_approval
from proposal_lifecycle.infrastructure.proposals import InMemoryProposalRepository
from tests.factories import (
    T0,
    approval_step,
    create_request,
    lifecycle_service,
    line_item,
    rule,
    snapshot,
)


def _pending_approval_service():
    service = lifecycle_service(
        rules=[
            rule(
                "wr_high_value",
                trigger="amount_threshold",
                conditions={"min_amount": 0},
                actions=["require_approval"],
            )
        ],
        steps=[approval_step("manager"), approval_step("director")],
    )
    proposal_id = service.create_proposal(payload=create_request()).proposal.proposal_id
    submitted = service.submit(
        proposal_id=proposal_id, payload=ProposalSubmitRequest(actor_id="estimator_1")
    )
    return service, proposal_id, submitted.approval


def test_reads_return_copies():
    service = lifecycle_service()
    proposal_id = service.create_proposal(payload=create_request()).proposal.proposal_id
    repository = service.repository

    loaded = repository.get_proposal(proposal_id=proposal_id)
    loaded.title = "Mutated"

    assert repository.get_proposal(proposal_id=proposal_id).title == "Kitchen remodel"


def test_save_approval_enforces_revision():
    service, _, approval = _pending_approval_service()
    repository = service.repository
    advanced = decide(approval, step_index=0, decision="approve", actor_id="mgr", now=T0).instance

    repository.save_approval(approval=advanced, expected_revision=0)
    with pytest.raises(ProposalConflictError):
        repository.save_approval(approval=advanced, expected_revision=0)

    assert repository.get_approval(instance_id=approval.instance_id).revision == 1


def test_only_one_active_approval_per_proposal():
    service, proposal_id, _ = _pending_approval_service()
    repository = service.repository
    proposal = repository.get_proposal(proposal_id=proposal_id)

    with pytest.raises(ProposalConflictError):
        repository.transition_proposal(
            proposal=proposal,
            expected_status="pending_approval",
            events=[],
            approval=start_approval(
                proposal_id=proposal_id, step_templates=[approval_step("manager")], now=T0
            ),
        )

    assert len(repository.list_approvals(proposal_id=proposal_id)) == 1
    assert len(repository.list_active_approvals()) == 1


def test_transition_with_stale_status_writes_nothing():
    service = lifecycle_service()
    proposal_id = service.create_proposal(payload=create_request()).proposal.proposal_id
    repository = service.repository
    events_before = repository.list_events(proposal_id=proposal_id)
    proposal = repository.get_proposal(proposal_id=proposal_id)

    with pytest.raises(ProposalConflictError):
        repository.transition_proposal(
            proposal=proposal.model_copy(update={"status": "sent"}),
            expected_status="viewed",
            events=events_before,
        )

    assert repository.get_proposal(proposal_id=proposal_id).status == "draft"
    assert len(repository.list_events(proposal_id=proposal_id)) == len(events_before)


def test_empty_repository_listing():
    repository = InMemoryProposalRepository()

    assert repository.list_proposals(status=None, created_by=None, limit=5, cursor=None) == (
        [],
        None,
    )
    assert repository.list_pending_outbox(now=T0, limit=5) == []
    assert repository.get_active_approval(proposal_id="pp_missing") is None


def _commit(service, proposal_id, base_version_id, unit_price):
    return service.commit_version(
        proposal_id=proposal_id,
        payload=ProposalVersionCommitRequest(
            base_version_id=base_version_id,
            actor_id="estimator_2",
            snapshot=snapshot(line_items=[line_item("Labor", "1", unit_price)]),
        ),
    )


def test_commit_landing_inside_submit_keeps_new_version_pointer(monkeypatch):
    service = lifecycle_service()
    repository = service.repository
    created = service.create_proposal(payload=create_request())
    proposal_id = created.proposal.proposal_id
    committed = []
    transition = repository.transition_proposal

    def transition_after_commit(**kwargs):
        committed.append(_commit(service, proposal_id, created.current_version.version_id, 20000))
        transition(**kwargs)

    monkeypatch.setattr(repository, "transition_proposal", transition_after_commit)
    submitted = service.submit(
        proposal_id=proposal_id, payload=ProposalSubmitRequest(actor_id="estimator_1")
    )

    stored = repository.get_proposal(proposal_id=proposal_id)
    assert submitted.proposal.status == "sent"
    assert stored.status == "sent"
    assert stored.sent_at == T0
    assert stored.current_version_id == committed[0].version_id
    assert stored.current_version_number == 2
    assert stored.total == committed[0].pricing.total == 20000

    third = _commit(service, proposal_id, stored.current_version_id, 30000)
    history, total = repository.list_versions(proposal_id=proposal_id, offset=0, limit=10)
    assert third.version_number == 3
    assert total == 3
    assert [item.version_number for item in history] == [3, 2, 1]
    assert [item.version_id for item in history if item.is_current] == [third.version_id]


def test_submit_landing_inside_commit_keeps_sent_status(monkeypatch):
    service = lifecycle_service()
    repository = service.repository
    created = service.create_proposal(payload=create_request())
    proposal_id = created.proposal.proposal_id
    commit = repository.commit_version

    def commit_after_submit(**kwargs):
        service.submit(
            proposal_id=proposal_id, payload=ProposalSubmitRequest(actor_id="estimator_1")
        )
        commit(**kwargs)

    monkeypatch.setattr(repository, "commit_version", commit_after_submit)
    version = _commit(service, proposal_id, created.current_version.version_id, 20000)

    stored = repository.get_proposal(proposal_id=proposal_id)
    assert stored.status == "sent"
    assert stored.sent_at == T0
    assert stored.current_version_id == version.version_id
    assert stored.total == 20000
    assert stored.updated_by == "estimator_2"
