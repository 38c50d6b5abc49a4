"""
Append-only version store.

A commit is accepted only when it names the current version as its base. The
new version, the flip of the previous current flag, the proposal total and the
``version_created`` event are persisted by the repository in one atomic step.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from proposal_lifecycle.core.common.canonical import hash_model
from proposal_lifecycle.core.common.errors import (
    ProposalConflictError,
    ProposalInvalidStateError,
    ProposalNotFoundError,
    ProposalValidationError,
)
from proposal_lifecycle.core.common.statuses import is_terminal
from proposal_lifecycle.core.proposals.models import (
    PricingBreakdown,
    ProposalEventRecord,
    ProposalRecord,
    ProposalVersionRecord,
    VersionSnapshot,
)
from proposal_lifecycle.core.proposals.pricing import compute_totals
from proposal_lifecycle.core.proposals.repository import ProposalRepository
from proposal_lifecycle.core.proposals.state_machine import effective_status

logger = logging.getLogger(__name__)

MAX_HISTORY_PAGE_SIZE = 100


def price_snapshot(snapshot: VersionSnapshot) -> PricingBreakdown:
    pricing = compute_totals(
        snapshot.line_items,
        snapshot.tax_rate_percent,
        snapshot.discount_minor,
    )
    if pricing.total < 0:
        raise ProposalValidationError("NEGATIVE_TOTAL: discount exceeds subtotal plus tax")
    return pricing


def build_version(
    *,
    proposal_id: str,
    version_number: int,
    snapshot: VersionSnapshot,
    change_summary: str,
    actor_id: str,
    now: datetime,
) -> ProposalVersionRecord:
    return ProposalVersionRecord(
        version_id=f"ppv_{uuid.uuid4().hex[:12]}",
        proposal_id=proposal_id,
        version_number=version_number,
        snapshot=snapshot,
        pricing=price_snapshot(snapshot),
        is_current=True,
        change_summary=change_summary,
        created_by=actor_id,
        created_at=now,
        content_hash=hash_model(snapshot),
    )


class VersionStore:
    def __init__(self, *, repository: ProposalRepository) -> None:
        self._repository = repository

    def commit(
        self,
        *,
        proposal_id: str,
        base_version_id: str,
        snapshot: VersionSnapshot,
        change_summary: str,
        actor_id: str,
        now: datetime,
    ) -> ProposalVersionRecord:
        proposal = self._repository.get_proposal(proposal_id=proposal_id)
        if proposal is None:
            raise ProposalNotFoundError("PROPOSAL_NOT_FOUND")
        status = effective_status(proposal, now=now)
        if status == "expired" and proposal.status != "expired":
            raise ProposalInvalidStateError("PROPOSAL_EXPIRED")
        if is_terminal(status):
            raise ProposalInvalidStateError("PROPOSAL_TERMINAL_STATE: cannot commit version")
        if base_version_id != proposal.current_version_id:
            raise ProposalConflictError("VERSION_CONFLICT: base_version_id is not current")

        version = build_version(
            proposal_id=proposal_id,
            version_number=proposal.current_version_number + 1,
            snapshot=snapshot,
            change_summary=change_summary,
            actor_id=actor_id,
            now=now,
        )
        event = ProposalEventRecord(
            event_id=f"pev_{uuid.uuid4().hex[:12]}",
            proposal_id=proposal_id,
            event_type="version_created",
            from_status=proposal.status,
            to_status=proposal.status,
            actor_id=actor_id,
            payload={
                "version_id": version.version_id,
                "version_number": version.version_number,
                "base_version_id": base_version_id,
                "total": version.pricing.total,
                "content_hash": version.content_hash,
            },
            occurred_at=now,
        )
        updated = _with_current_version(proposal, version=version, actor_id=actor_id, now=now)
        self._repository.commit_version(
            proposal=updated,
            version=version,
            base_version_id=base_version_id,
            event=event,
        )
        logger.info(
            "proposal version committed",
            extra={
                "extra_fields": {
                    "proposal_id": proposal_id,
                    "version_number": version.version_number,
                    "total": version.pricing.total,
                }
            },
        )
        return version

    def history(
        self, *, proposal_id: str, offset: int = 0, limit: int = 20
    ) -> tuple[list[ProposalVersionRecord], int]:
        if self._repository.get_proposal(proposal_id=proposal_id) is None:
            raise ProposalNotFoundError("PROPOSAL_NOT_FOUND")
        if offset < 0 or limit < 1 or limit > MAX_HISTORY_PAGE_SIZE:
            raise ProposalValidationError("INVALID_PAGINATION")
        return self._repository.list_versions(proposal_id=proposal_id, offset=offset, limit=limit)

    def peek(self, *, version_id: str) -> ProposalVersionRecord:
        version = self._repository.get_version(version_id=version_id)
        if version is None:
            raise ProposalNotFoundError("PROPOSAL_VERSION_NOT_FOUND")
        return version

    def current(self, *, proposal_id: str) -> Optional[ProposalVersionRecord]:
        return self._repository.get_current_version(proposal_id=proposal_id)


def _with_current_version(
    proposal: ProposalRecord,
    *,
    version: ProposalVersionRecord,
    actor_id: str,
    now: datetime,
) -> ProposalRecord:
    updated = proposal.model_copy(deep=True)
    updated.current_version_id = version.version_id
    updated.current_version_number = version.version_number
    updated.total = version.pricing.total
    updated.updated_at = now
    updated.updated_by = actor_id
    return updated
