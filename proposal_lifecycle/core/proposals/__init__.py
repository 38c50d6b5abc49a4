from proposal_lifecycle.core.common.errors import (
    CollaboratorError,
    ProposalConflictError,
    ProposalInvalidStateError,
    ProposalLifecycleError,
    ProposalNotFoundError,
    ProposalValidationError,
)
from proposal_lifecycle.core.proposals.models import (
    ApprovalDecisionRequest,
    LineItem,
    ProposalCreateRequest,
    ProposalDeclineRequest,
    ProposalDetailResponse,
    ProposalDetailsUpdateRequest,
    ProposalEventRecord,
    ProposalRecord,
    ProposalSignatureRequest,
    ProposalSubmitRequest,
    ProposalTransitionResponse,
    ProposalUserActionRequest,
    ProposalVersionCommitRequest,
    ProposalVersionRecord,
    ProposalViewRequest,
    VersionSnapshot,
)
from proposal_lifecycle.core.proposals.pricing import compute_totals
from proposal_lifecycle.core.proposals.repository import ProposalRepository
from proposal_lifecycle.core.proposals.service import ProposalLifecycleService
from proposal_lifecycle.core.proposals.versions import VersionStore

__all__ = [
    "ApprovalDecisionRequest",
    "CollaboratorError",
    "LineItem",
    "ProposalConflictError",
    "ProposalCreateRequest",
    "ProposalDeclineRequest",
    "ProposalDetailResponse",
    "ProposalDetailsUpdateRequest",
    "ProposalEventRecord",
    "ProposalInvalidStateError",
    "ProposalLifecycleError",
    "ProposalLifecycleService",
    "ProposalNotFoundError",
    "ProposalRecord",
    "ProposalRepository",
    "ProposalSignatureRequest",
    "ProposalSubmitRequest",
    "ProposalTransitionResponse",
    "ProposalUserActionRequest",
    "ProposalValidationError",
    "ProposalVersionCommitRequest",
    "ProposalVersionRecord",
    "ProposalViewRequest",
    "VersionSnapshot",
    "VersionStore",
    "compute_totals",
]
