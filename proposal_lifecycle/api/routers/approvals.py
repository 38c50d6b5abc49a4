from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, Path, status

from proposal_lifecycle.api.routers.proposal_http_errors import raise_proposal_http_exception
from proposal_lifecycle.api.routers.proposals import (
    get_proposal_lifecycle_service,
    schedule_outbox_drain,
)
from proposal_lifecycle.core.common.errors import ProposalLifecycleError
from proposal_lifecycle.core.proposals import (
    ApprovalDecisionRequest,
    ProposalLifecycleService,
    ProposalTransitionResponse,
)
from proposal_lifecycle.core.workflow import ApprovalInstance

router = APIRouter(tags=["Proposal Approvals"])


@router.get(
    "/approvals/{instance_id}",
    response_model=ApprovalInstance,
    status_code=status.HTTP_200_OK,
    summary="Get Approval Chain",
    description="Returns an approval instance with per-step state.",
)
def get_approval(
    instance_id: Annotated[
        str, Path(description="Approval instance identifier.", examples=["pai_001"])
    ],
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ApprovalInstance:
    try:
        return service.get_approval(instance_id=instance_id)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)


@router.post(
    "/approvals/{instance_id}/decisions",
    response_model=ProposalTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Decide Approval Step",
    description=(
        "Records a decision on the active step. Completing the chain moves the "
        "proposal to sent; a rejection moves it to rejected."
    ),
)
def decide_approval(
    instance_id: Annotated[
        str, Path(description="Approval instance identifier.", examples=["pai_001"])
    ],
    payload: ApprovalDecisionRequest,
    background_tasks: BackgroundTasks,
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalTransitionResponse:
    try:
        response = service.decide_approval(instance_id=instance_id, payload=payload)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    schedule_outbox_drain(background_tasks)
    return response
