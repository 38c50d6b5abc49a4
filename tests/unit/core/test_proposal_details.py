from datetime import timedelta

import pytest

from proposal_lifecycle.core.common.errors import (
    ProposalConflictError,
    ProposalInvalidStateError,
    ProposalValidationError,
)
from proposal_lifecycle.core.proposals import (
    ProposalDeclineRequest,
    ProposalDetailsUpdateRequest,
    ProposalSubmitRequest,
)
from tests.factories import create_request, lifecycle_service


def _details(**kwargs):
    return ProposalDetailsUpdateRequest(actor_id="estimator_2", **kwargs)


def test_update_details_changes_only_named_fields(clock):
    service = lifecycle_service(clock=clock)
    created = service.create_proposal(payload=create_request())
    proposal_id = created.proposal.proposal_id
    clock.advance(minutes=5)

    updated = service.update_details(
        proposal_id=proposal_id,
        payload=_details(
            expected_updated_at=created.proposal.updated_at,
            title="Kitchen and pantry remodel",
            priority="high",
            client_phone="+1 555 0100",
        ),
    )

    stored = service.repository.get_proposal(proposal_id=proposal_id)
    assert updated.proposal.title == "Kitchen and pantry remodel"
    assert updated.proposal.priority == "high"
    assert updated.proposal.updated_at == clock.now
    assert updated.current_version.version_id == created.current_version.version_id
    assert stored.client_phone == "+1 555 0100"
    assert stored.client_name == "Jane Doe"
    assert stored.updated_by == "estimator_2"
    assert stored.status == "draft"

    event = service.get_timeline(proposal_id=proposal_id).events[-1]
    assert event.event_type == "details_updated"
    assert event.actor_id == "estimator_2"
    assert event.payload["changes"] == {
        "client_phone": {"from": "", "to": "+1 555 0100"},
        "priority": {"from": "normal", "to": "high"},
        "title": {"from": "Kitchen remodel", "to": "Kitchen and pantry remodel"},
    }


def test_update_details_with_stale_timestamp_conflicts(clock):
    service = lifecycle_service(clock=clock)
    created = service.create_proposal(payload=create_request())
    proposal_id = created.proposal.proposal_id
    clock.advance(minutes=1)
    service.update_details(proposal_id=proposal_id, payload=_details(title="First edit"))

    with pytest.raises(ProposalConflictError) as exc:
        service.update_details(
            proposal_id=proposal_id,
            payload=_details(expected_updated_at=created.proposal.updated_at, title="Second"),
        )

    assert "STATE_CONFLICT" in str(exc.value)
    assert service.repository.get_proposal(proposal_id=proposal_id).title == "First edit"


def test_update_details_without_changes_writes_nothing():
    service = lifecycle_service()
    proposal_id = service.create_proposal(payload=create_request()).proposal.proposal_id

    result = service.update_details(
        proposal_id=proposal_id, payload=_details(title="Kitchen remodel", client_name=None)
    )

    assert result.proposal.title == "Kitchen remodel"
    assert [event.event_type for event in service.get_timeline(proposal_id=proposal_id).events] == [
        "created"
    ]


def test_update_details_sets_and_clears_valid_until(clock):
    service = lifecycle_service(clock=clock)
    proposal_id = service.create_proposal(payload=create_request()).proposal.proposal_id
    deadline = clock.now + timedelta(days=14)

    extended = service.update_details(
        proposal_id=proposal_id, payload=_details(valid_until=deadline)
    )
    with pytest.raises(ProposalValidationError):
        service.update_details(
            proposal_id=proposal_id, payload=_details(valid_until=clock.now - timedelta(days=1))
        )
    cleared = service.update_details(proposal_id=proposal_id, payload=_details(valid_until=None))

    assert extended.proposal.valid_until == deadline
    assert cleared.proposal.valid_until is None


def test_update_details_is_rejected_for_terminal_and_expired_proposals(clock):
    service = lifecycle_service(clock=clock)
    declined_id = service.create_proposal(payload=create_request()).proposal.proposal_id
    service.submit(proposal_id=declined_id, payload=ProposalSubmitRequest(actor_id="estimator_1"))
    service.decline(proposal_id=declined_id, payload=ProposalDeclineRequest())
    expiring_id = service.create_proposal(
        payload=create_request(valid_until=clock.now + timedelta(days=1))
    ).proposal.proposal_id
    clock.advance(days=2)

    with pytest.raises(ProposalInvalidStateError) as terminal:
        service.update_details(proposal_id=declined_id, payload=_details(title="Late edit"))
    with pytest.raises(ProposalInvalidStateError) as expired:
        service.update_details(proposal_id=expiring_id, payload=_details(title="Late edit"))

    assert str(terminal.value).startswith("PROPOSAL_TERMINAL_STATE")
    assert str(expired.value) == "PROPOSAL_EXPIRED"


def test_client_email_edit_reaches_submission_checks():
    service = lifecycle_service()
    proposal_id = service.create_proposal(
        payload=create_request(client_email="")
    ).proposal.proposal_id

    with pytest.raises(ProposalValidationError):
        service.submit(
            proposal_id=proposal_id, payload=ProposalSubmitRequest(actor_id="estimator_1")
        )
    service.update_details(
        proposal_id=proposal_id, payload=_details(client_email="jane@example.com")
    )
    submitted = service.submit(
        proposal_id=proposal_id, payload=ProposalSubmitRequest(actor_id="estimator_1")
    )

    assert submitted.proposal.status == "sent"
    assert submitted.proposal.client_email == "jane@example.com"
