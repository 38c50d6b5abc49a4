from copy import deepcopy
from datetime import datetime
from threading import Lock
from typing import Optional, Sequence

from proposal_lifecycle.core.common.errors import ProposalConflictError
from proposal_lifecycle.core.common.statuses import ProposalStatus, is_terminal
from proposal_lifecycle.core.outbox.models import OutboxMessage
from proposal_lifecycle.core.proposals.models import (
    ProposalEventRecord,
    ProposalRecord,
    ProposalVersionRecord,
)
from proposal_lifecycle.core.proposals.repository import (
    DETAIL_FIELDS,
    STATUS_FIELDS,
    VERSION_FIELDS,
    ProposalRepository,
    merge_fields,
)
from proposal_lifecycle.core.workflow.approvals import ApprovalInstance


class InMemoryProposalRepository(ProposalRepository):
    def __init__(self) -> None:
        self._lock = Lock()
        self._proposals: dict[str, ProposalRecord] = {}
        self._versions: dict[str, ProposalVersionRecord] = {}
        self._versions_by_proposal: dict[str, list[str]] = {}
        self._events: dict[str, list[ProposalEventRecord]] = {}
        self._approvals: dict[str, ApprovalInstance] = {}
        self._approvals_by_proposal: dict[str, list[str]] = {}
        self._outbox: dict[str, OutboxMessage] = {}

    def create_proposal(
        self,
        *,
        proposal: ProposalRecord,
        version: ProposalVersionRecord,
        event: ProposalEventRecord,
    ) -> None:
        with self._lock:
            if proposal.proposal_id in self._proposals:
                raise ProposalConflictError("PROPOSAL_ALREADY_EXISTS")
            self._proposals[proposal.proposal_id] = deepcopy(proposal)
            self._versions[version.version_id] = deepcopy(version)
            self._versions_by_proposal[proposal.proposal_id] = [version.version_id]
            self._events[proposal.proposal_id] = [deepcopy(event)]

    def get_proposal(self, *, proposal_id: str) -> Optional[ProposalRecord]:
        with self._lock:
            proposal = self._proposals.get(proposal_id)
            return deepcopy(proposal) if proposal is not None else None

    def list_proposals(
        self,
        *,
        status: Optional[ProposalStatus],
        created_by: Optional[str],
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[ProposalRecord], Optional[str]]:
        with self._lock:
            rows = list(self._proposals.values())

        rows = sorted(rows, key=lambda x: (x.created_at, x.proposal_id), reverse=True)

        if status is not None:
            rows = [row for row in rows if row.status == status]
        if created_by is not None:
            rows = [row for row in rows if row.created_by == created_by]

        if cursor:
            row_ids = [row.proposal_id for row in rows]
            if cursor not in row_ids:
                return [], None
            rows = rows[row_ids.index(cursor) + 1 :]

        page = rows[:limit]
        next_cursor = page[-1].proposal_id if len(rows) > limit else None
        return [deepcopy(row) for row in page], next_cursor

    def list_open_proposals(self) -> list[ProposalRecord]:
        with self._lock:
            rows = [
                deepcopy(row) for row in self._proposals.values() if not is_terminal(row.status)
            ]
        return sorted(rows, key=lambda x: (x.created_at, x.proposal_id))

    def commit_version(
        self,
        *,
        proposal: ProposalRecord,
        version: ProposalVersionRecord,
        base_version_id: str,
        event: ProposalEventRecord,
    ) -> None:
        with self._lock:
            stored = self._proposals.get(proposal.proposal_id)
            if stored is None or stored.current_version_id != base_version_id:
                raise ProposalConflictError("VERSION_CONFLICT: base_version_id is not current")
            previous = self._versions[base_version_id]
            previous.is_current = False
            self._versions[version.version_id] = deepcopy(version)
            self._versions_by_proposal[proposal.proposal_id].append(version.version_id)
            self._proposals[proposal.proposal_id] = merge_fields(stored, proposal, VERSION_FIELDS)
            self._events.setdefault(proposal.proposal_id, []).append(deepcopy(event))

    def get_version(self, *, version_id: str) -> Optional[ProposalVersionRecord]:
        with self._lock:
            version = self._versions.get(version_id)
            return deepcopy(version) if version is not None else None

    def get_current_version(self, *, proposal_id: str) -> Optional[ProposalVersionRecord]:
        with self._lock:
            for version_id in self._versions_by_proposal.get(proposal_id, []):
                version = self._versions[version_id]
                if version.is_current:
                    return deepcopy(version)
        return None

    def list_versions(
        self, *, proposal_id: str, offset: int, limit: int
    ) -> tuple[list[ProposalVersionRecord], int]:
        with self._lock:
            versions = [
                self._versions[version_id]
                for version_id in self._versions_by_proposal.get(proposal_id, [])
            ]
            versions = sorted(versions, key=lambda x: x.version_number, reverse=True)
            page = versions[offset : offset + limit]
            return [deepcopy(version) for version in page], len(versions)

    def transition_proposal(
        self,
        *,
        proposal: ProposalRecord,
        expected_status: ProposalStatus,
        events: Sequence[ProposalEventRecord],
        approval: Optional[ApprovalInstance] = None,
        expected_approval_revision: Optional[int] = None,
        outbox: Sequence[OutboxMessage] = (),
    ) -> None:
        with self._lock:
            stored = self._proposals.get(proposal.proposal_id)
            if stored is None or stored.status != expected_status:
                raise ProposalConflictError("STATE_CONFLICT: status changed concurrently")
            if approval is not None:
                self._check_approval_revision(approval, expected_approval_revision)
                self._store_approval(approval)
            self._proposals[proposal.proposal_id] = merge_fields(stored, proposal, STATUS_FIELDS)
            self._store_events(events)
            self._store_outbox(outbox)

    def update_details(
        self,
        *,
        proposal: ProposalRecord,
        expected_updated_at: datetime,
        event: ProposalEventRecord,
    ) -> None:
        with self._lock:
            stored = self._proposals.get(proposal.proposal_id)
            if stored is None or stored.updated_at != expected_updated_at:
                raise ProposalConflictError("STATE_CONFLICT: proposal changed concurrently")
            self._proposals[proposal.proposal_id] = merge_fields(stored, proposal, DETAIL_FIELDS)
            self._store_events([event])

    def save_approval(
        self,
        *,
        approval: ApprovalInstance,
        expected_revision: int,
        events: Sequence[ProposalEventRecord] = (),
        outbox: Sequence[OutboxMessage] = (),
    ) -> None:
        with self._lock:
            self._check_approval_revision(approval, expected_revision)
            self._store_approval(approval)
            self._store_events(events)
            self._store_outbox(outbox)

    def get_approval(self, *, instance_id: str) -> Optional[ApprovalInstance]:
        with self._lock:
            approval = self._approvals.get(instance_id)
            return deepcopy(approval) if approval is not None else None

    def get_active_approval(self, *, proposal_id: str) -> Optional[ApprovalInstance]:
        with self._lock:
            for instance_id in self._approvals_by_proposal.get(proposal_id, []):
                approval = self._approvals[instance_id]
                if approval.overall == "in_progress":
                    return deepcopy(approval)
        return None

    def list_approvals(self, *, proposal_id: str) -> list[ApprovalInstance]:
        with self._lock:
            return [
                deepcopy(self._approvals[instance_id])
                for instance_id in self._approvals_by_proposal.get(proposal_id, [])
            ]

    def list_active_approvals(self) -> list[ApprovalInstance]:
        with self._lock:
            rows = [
                deepcopy(approval)
                for approval in self._approvals.values()
                if approval.overall == "in_progress"
            ]
        return sorted(rows, key=lambda x: (x.created_at, x.instance_id))

    def append_events(
        self,
        *,
        events: Sequence[ProposalEventRecord],
        outbox: Sequence[OutboxMessage] = (),
    ) -> None:
        with self._lock:
            self._store_events(events)
            self._store_outbox(outbox)

    def list_events(self, *, proposal_id: str) -> list[ProposalEventRecord]:
        with self._lock:
            return [deepcopy(event) for event in self._events.get(proposal_id, [])]

    def list_pending_outbox(self, *, now: datetime, limit: int) -> list[OutboxMessage]:
        with self._lock:
            rows = [
                deepcopy(message)
                for message in self._outbox.values()
                if message.status == "pending" and message.next_attempt_at <= now
            ]
        rows.sort(key=lambda x: (x.next_attempt_at, x.created_at, x.message_id))
        return rows[:limit]

    def list_outbox(self, *, proposal_id: str) -> list[OutboxMessage]:
        with self._lock:
            rows = [
                deepcopy(message)
                for message in self._outbox.values()
                if message.proposal_id == proposal_id
            ]
        return sorted(rows, key=lambda x: (x.created_at, x.message_id))

    def update_outbox(self, message: OutboxMessage) -> None:
        with self._lock:
            self._outbox[message.message_id] = deepcopy(message)

    def _check_approval_revision(
        self, approval: ApprovalInstance, expected_revision: Optional[int]
    ) -> None:
        stored = self._approvals.get(approval.instance_id)
        if expected_revision is None:
            if stored is not None:
                raise ProposalConflictError("APPROVAL_CONFLICT: instance already exists")
            active = [
                instance_id
                for instance_id in self._approvals_by_proposal.get(approval.proposal_id, [])
                if self._approvals[instance_id].overall == "in_progress"
            ]
            if active:
                raise ProposalConflictError("APPROVAL_CONFLICT: active chain exists")
            return
        if stored is None or stored.revision != expected_revision:
            raise ProposalConflictError("APPROVAL_CONFLICT: revision mismatch")

    def _store_approval(self, approval: ApprovalInstance) -> None:
        if approval.instance_id not in self._approvals:
            self._approvals_by_proposal.setdefault(approval.proposal_id, []).append(
                approval.instance_id
            )
        self._approvals[approval.instance_id] = deepcopy(approval)

    def _store_events(self, events: Sequence[ProposalEventRecord]) -> None:
        for event in events:
            self._events.setdefault(event.proposal_id, []).append(deepcopy(event))

    def _store_outbox(self, outbox: Sequence[OutboxMessage]) -> None:
        for message in outbox:
            self._outbox[message.message_id] = deepcopy(message)
