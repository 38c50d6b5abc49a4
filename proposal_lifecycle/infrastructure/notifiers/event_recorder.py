import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from proposal_lifecycle.core.outbox.models import DeliveryResult
from proposal_lifecycle.core.proposals.models import ProposalEventRecord
from proposal_lifecycle.core.proposals.repository import ProposalRepository


class RepositoryEventRecorder:
    """Writes recorded events into the proposal event log."""

    def __init__(
        self,
        *,
        repository: ProposalRepository,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record(
        self,
        *,
        proposal_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor_id: Optional[str],
    ) -> DeliveryResult:
        proposal = self._repository.get_proposal(proposal_id=proposal_id)
        if proposal is None:
            return DeliveryResult(delivered=False, detail="PROPOSAL_NOT_FOUND")
        event = ProposalEventRecord(
            event_id=f"pev_{uuid.uuid4().hex[:12]}",
            proposal_id=proposal_id,
            event_type=event_type,
            from_status=proposal.status,
            to_status=proposal.status,
            actor_id=actor_id,
            payload=payload,
            occurred_at=self._clock(),
        )
        self._repository.append_events(events=[event])
        return DeliveryResult(delivered=True, provider_message_id=event.event_id)
