import json
from datetime import datetime, timedelta, timezone

from proposal_lifecycle.api.routers.proposals import get_proposal_lifecycle_service
from proposal_lifecycle.core.proposals import ProposalSubmitRequest
from scripts.run_lifecycle_sweep import _parse_now, main
from tests.factories import create_request


def test_parse_now_defaults_to_utc() -> None:
    assert _parse_now("2026-03-02T09:00:00Z") == datetime(2026, 3, 2, 9, tzinfo=timezone.utc)
    assert _parse_now("2026-03-02T09:00:00") == datetime(2026, 3, 2, 9, tzinfo=timezone.utc)
    assert _parse_now(None).tzinfo is not None


def test_sweep_expires_overdue_sent_proposals(capsys) -> None:
    valid_until = datetime.now(timezone.utc) + timedelta(days=1)
    service = get_proposal_lifecycle_service()
    created = service.create_proposal(payload=create_request(valid_until=valid_until))
    proposal_id = created.proposal.proposal_id
    service.submit(proposal_id=proposal_id, payload=ProposalSubmitRequest(actor_id="estimator_1"))

    sweep_at = (valid_until + timedelta(days=1)).isoformat()
    assert main(["--now", sweep_at, "--log-level", "WARNING"]) == 0

    result = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert result["sweep"]["expired_proposal_ids"] == [proposal_id]
    assert result["outbox"]["attempted"] == 0
    stored = service.repository.get_proposal(proposal_id=proposal_id)
    assert stored.status == "expired"


def test_sweep_can_skip_outbox(capsys) -> None:
    assert main(["--skip-outbox", "--log-level", "WARNING"]) == 0

    result = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert "outbox" not in result
    assert result["sweep"]["expired_proposal_ids"] == []
