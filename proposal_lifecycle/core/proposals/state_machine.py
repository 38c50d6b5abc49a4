from datetime import datetime
from typing import Literal, Optional

from proposal_lifecycle.core.common.errors import (
    ProposalConflictError,
    ProposalInvalidStateError,
)
from proposal_lifecycle.core.common.statuses import ProposalStatus, is_terminal
from proposal_lifecycle.core.proposals.models import ProposalRecord

ProposalTrigger = Literal[
    "submit",
    "approval_cleared",
    "approval_rejected",
    "opened",
    "signed",
    "declined",
    "expired",
]

TRANSITION_MAP: dict[tuple[ProposalStatus, ProposalTrigger], frozenset[ProposalStatus]] = {
    ("draft", "submit"): frozenset({"pending_approval", "sent"}),
    ("pending_approval", "approval_cleared"): frozenset({"sent"}),
    ("pending_approval", "approval_rejected"): frozenset({"rejected"}),
    ("sent", "opened"): frozenset({"viewed"}),
    ("sent", "signed"): frozenset({"signed"}),
    ("viewed", "signed"): frozenset({"signed"}),
    ("sent", "declined"): frozenset({"rejected"}),
    ("viewed", "declined"): frozenset({"rejected"}),
}


def resolve_transition(
    *,
    current: ProposalStatus,
    trigger: ProposalTrigger,
    target: Optional[ProposalStatus] = None,
) -> ProposalStatus:
    if trigger == "expired":
        if is_terminal(current):
            raise ProposalInvalidStateError("INVALID_TRANSITION")
        return "expired"
    allowed = TRANSITION_MAP.get((current, trigger))
    if not allowed:
        raise ProposalInvalidStateError("INVALID_TRANSITION")
    if target is None:
        if len(allowed) != 1:
            raise ProposalInvalidStateError("INVALID_TRANSITION: target status required")
        return next(iter(allowed))
    if target not in allowed:
        raise ProposalInvalidStateError("INVALID_TRANSITION")
    return target


def is_past_deadline(proposal: ProposalRecord, *, now: datetime) -> bool:
    return proposal.valid_until is not None and now > proposal.valid_until


def effective_status(proposal: ProposalRecord, *, now: datetime) -> ProposalStatus:
    if not is_terminal(proposal.status) and is_past_deadline(proposal, now=now):
        return "expired"
    return proposal.status


def ensure_actionable(
    proposal: ProposalRecord,
    *,
    now: datetime,
    expected_status: Optional[ProposalStatus] = None,
) -> None:
    if effective_status(proposal, now=now) == "expired" and proposal.status != "expired":
        raise ProposalInvalidStateError("PROPOSAL_EXPIRED")
    if expected_status is not None and expected_status != proposal.status:
        raise ProposalConflictError("STATE_CONFLICT: expected_status mismatch")
