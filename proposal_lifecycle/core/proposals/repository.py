from datetime import datetime
from typing import Optional, Protocol, Sequence

from proposal_lifecycle.core.common.statuses import ProposalStatus
from proposal_lifecycle.core.outbox.models import OutboxMessage
from proposal_lifecycle.core.proposals.models import (
    ProposalEventRecord,
    ProposalRecord,
    ProposalVersionRecord,
)
from proposal_lifecycle.core.workflow.approvals import ApprovalInstance

# Fields of the proposal record each kind of write is allowed to change.
VERSION_FIELDS = (
    "current_version_id",
    "current_version_number",
    "total",
    "updated_at",
    "updated_by",
)
STATUS_FIELDS = ("status", "sent_at", "updated_at", "updated_by")
DETAIL_FIELDS = (
    "title",
    "client_name",
    "client_email",
    "client_phone",
    "client_address",
    "priority",
    "valid_until",
    "updated_at",
    "updated_by",
)


def merge_fields(
    stored: ProposalRecord, incoming: ProposalRecord, fields: Sequence[str]
) -> ProposalRecord:
    """Copy ``fields`` from ``incoming`` onto ``stored``; everything else keeps its stored value."""
    return stored.model_copy(update={field: getattr(incoming, field) for field in fields})


class ProposalRepository(Protocol):
    """
    Record store for proposals and everything written alongside them.

    Every mutating method is atomic: either all of its records are written or
    none are. Compare-and-swap failures raise ``ProposalConflictError``. Writes
    to an existing proposal record change only the fields their kind owns
    (``VERSION_FIELDS``, ``STATUS_FIELDS``, ``DETAIL_FIELDS``) so concurrent
    writes of different kinds never undo each other.
    """

    def create_proposal(
        self,
        *,
        proposal: ProposalRecord,
        version: ProposalVersionRecord,
        event: ProposalEventRecord,
    ) -> None: ...

    def get_proposal(self, *, proposal_id: str) -> Optional[ProposalRecord]: ...

    def list_proposals(
        self,
        *,
        status: Optional[ProposalStatus],
        created_by: Optional[str],
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[ProposalRecord], Optional[str]]: ...

    def list_open_proposals(self) -> list[ProposalRecord]: ...

    def commit_version(
        self,
        *,
        proposal: ProposalRecord,
        version: ProposalVersionRecord,
        base_version_id: str,
        event: ProposalEventRecord,
    ) -> None: ...

    def get_version(self, *, version_id: str) -> Optional[ProposalVersionRecord]: ...

    def get_current_version(self, *, proposal_id: str) -> Optional[ProposalVersionRecord]: ...

    def list_versions(
        self, *, proposal_id: str, offset: int, limit: int
    ) -> tuple[list[ProposalVersionRecord], int]: ...

    def transition_proposal(
        self,
        *,
        proposal: ProposalRecord,
        expected_status: ProposalStatus,
        events: Sequence[ProposalEventRecord],
        approval: Optional[ApprovalInstance] = None,
        expected_approval_revision: Optional[int] = None,
        outbox: Sequence[OutboxMessage] = (),
    ) -> None: ...

    def update_details(
        self,
        *,
        proposal: ProposalRecord,
        expected_updated_at: datetime,
        event: ProposalEventRecord,
    ) -> None: ...

    def save_approval(
        self,
        *,
        approval: ApprovalInstance,
        expected_revision: int,
        events: Sequence[ProposalEventRecord] = (),
        outbox: Sequence[OutboxMessage] = (),
    ) -> None: ...

    def get_approval(self, *, instance_id: str) -> Optional[ApprovalInstance]: ...

    def get_active_approval(self, *, proposal_id: str) -> Optional[ApprovalInstance]: ...

    def list_approvals(self, *, proposal_id: str) -> list[ApprovalInstance]: ...

    def list_active_approvals(self) -> list[ApprovalInstance]: ...

    def append_events(
        self,
        *,
        events: Sequence[ProposalEventRecord],
        outbox: Sequence[OutboxMessage] = (),
    ) -> None: ...

    def list_events(self, *, proposal_id: str) -> list[ProposalEventRecord]: ...

    def list_pending_outbox(self, *, now: datetime, limit: int) -> list[OutboxMessage]: ...

    def list_outbox(self, *, proposal_id: str) -> list[OutboxMessage]: ...

    def update_outbox(self, message: OutboxMessage) -> None: ...
