import logging
from datetime import datetime, timezone
from typing import Annotated, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Path, Query, status

from proposal_lifecycle.api.routers.proposal_http_errors import raise_proposal_http_exception
from proposal_lifecycle.api.routers.proposals_config import (
    build_notifier,
    build_outbox_dispatcher,
    build_repository,
    notification_settings_from_env,
)
from proposal_lifecycle.api.routers.runtime_utils import assert_feature_enabled, env_flag
from proposal_lifecycle.api.routers.workflow_config import (
    get_workflow_configuration_provider,
    reset_workflow_configuration_for_tests,
)
from proposal_lifecycle.core.common.errors import ProposalLifecycleError
from proposal_lifecycle.core.common.statuses import ProposalStatus
from proposal_lifecycle.core.outbox import (
    DispatchSummary,
    Notifier,
    OutboxDispatcher,
    OutboxMessage,
)
from proposal_lifecycle.core.proposals import (
    ProposalCreateRequest,
    ProposalDeclineRequest,
    ProposalDetailResponse,
    ProposalDetailsUpdateRequest,
    ProposalLifecycleService,
    ProposalRepository,
    ProposalSignatureRequest,
    ProposalSubmitRequest,
    ProposalTransitionResponse,
    ProposalUserActionRequest,
    ProposalVersionCommitRequest,
    ProposalVersionRecord,
    ProposalViewRequest,
)
from proposal_lifecycle.core.proposals.models import (
    ProposalApprovalsResponse,
    ProposalListResponse,
    ProposalTimelineResponse,
    ProposalVersionHistoryResponse,
)
from proposal_lifecycle.core.proposals.versions import MAX_HISTORY_PAGE_SIZE

router = APIRouter(tags=["Proposal Lifecycle"])
logger = logging.getLogger(__name__)

_REPOSITORY: Optional[ProposalRepository] = None
_NOTIFIER: Optional[Notifier] = None
_SERVICE: Optional[ProposalLifecycleService] = None
_DISPATCHER: Optional[OutboxDispatcher] = None


def get_proposal_repository() -> ProposalRepository:
    global _REPOSITORY
    if _REPOSITORY is None:
        _REPOSITORY = build_repository()
    return _REPOSITORY


def get_notifier() -> Notifier:
    global _NOTIFIER
    if _NOTIFIER is None:
        _NOTIFIER = build_notifier()
    return _NOTIFIER


def get_proposal_lifecycle_service() -> ProposalLifecycleService:
    global _SERVICE
    if _SERVICE is None:
        _SERVICE = ProposalLifecycleService(
            repository=get_proposal_repository(),
            configuration=get_workflow_configuration_provider(),
            notification_settings=notification_settings_from_env(),
        )
    return _SERVICE


def get_outbox_dispatcher() -> OutboxDispatcher:
    global _DISPATCHER
    if _DISPATCHER is None:
        _DISPATCHER = build_outbox_dispatcher(
            repository=get_proposal_repository(), notifier=get_notifier()
        )
    return _DISPATCHER


def reset_proposal_lifecycle_for_tests() -> None:
    global _REPOSITORY
    global _NOTIFIER
    global _SERVICE
    global _DISPATCHER
    _REPOSITORY = None
    _NOTIFIER = None
    _SERVICE = None
    _DISPATCHER = None
    reset_workflow_configuration_for_tests()


def drain_outbox(dispatcher: OutboxDispatcher) -> DispatchSummary:
    summary = dispatcher.dispatch_pending(now=datetime.now(timezone.utc))
    if summary.attempted:
        logger.info(
            "outbox drained",
            extra={"extra_fields": summary.model_dump()},
        )
    return summary


def schedule_outbox_drain(background_tasks: BackgroundTasks) -> None:
    if env_flag("PROPOSAL_OUTBOX_INLINE_DISPATCH_ENABLED", True):
        background_tasks.add_task(drain_outbox, get_outbox_dispatcher())


def _assert_support_apis_enabled() -> None:
    assert_feature_enabled(
        name="PROPOSAL_SUPPORT_APIS_ENABLED",
        default=True,
        detail="PROPOSAL_SUPPORT_APIS_DISABLED",
    )


@router.post(
    "/proposals",
    response_model=ProposalDetailResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create Proposal",
    description="Creates a draft proposal with version 1 and a created event.",
)
def create_proposal(
    payload: ProposalCreateRequest,
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalDetailResponse:
    try:
        return service.create_proposal(payload=payload)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)


@router.get(
    "/proposals",
    response_model=ProposalListResponse,
    status_code=status.HTTP_200_OK,
    summary="List Proposals",
    description="Lists proposals with optional filters and cursor pagination.",
)
def list_proposals(
    status_filter: Annotated[
        Optional[ProposalStatus],
        Query(alias="status", description="Stored status filter.", examples=["sent"]),
    ] = None,
    created_by: Annotated[
        Optional[str],
        Query(description="Creator actor id filter.", examples=["estimator_1"]),
    ] = None,
    limit: Annotated[
        int,
        Query(description="Page size.", ge=1, le=100, examples=[20]),
    ] = 20,
    cursor: Annotated[
        Optional[str],
        Query(description="Opaque cursor from previous list response.", examples=["pp_123"]),
    ] = None,
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalListResponse:
    return service.list_proposals(
        status=status_filter,
        created_by=created_by,
        limit=limit,
        cursor=cursor,
    )


@router.get(
    "/proposals/{proposal_id}",
    response_model=ProposalDetailResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Proposal",
    description="Returns the proposal summary, current version, and active approval chain.",
)
def get_proposal(
    proposal_id: Annotated[
        str, Path(description="Proposal identifier.", examples=["pp_001"])
    ],
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalDetailResponse:
    try:
        return service.get_proposal(proposal_id=proposal_id)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)


@router.patch(
    "/proposals/{proposal_id}",
    response_model=ProposalDetailResponse,
    status_code=status.HTTP_200_OK,
    summary="Update Proposal Details",
    description=(
        "Edits title, client contact, priority, or validity deadline. Fails with 409 "
        "when expected_updated_at no longer matches the stored record."
    ),
)
def update_proposal_details(
    proposal_id: Annotated[
        str, Path(description="Proposal identifier.", examples=["pp_001"])
    ],
    payload: ProposalDetailsUpdateRequest,
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalDetailResponse:
    try:
        return service.update_details(proposal_id=proposal_id, payload=payload)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)


@router.post(
    "/proposals/{proposal_id}/versions",
    response_model=ProposalVersionRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Commit Proposal Version",
    description=(
        "Commits a new immutable version. Fails with 409 when base_version_id "
        "is no longer the current version."
    ),
)
def commit_version(
    proposal_id: Annotated[
        str, Path(description="Proposal identifier.", examples=["pp_001"])
    ],
    payload: ProposalVersionCommitRequest,
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalVersionRecord:
    try:
        return service.commit_version(proposal_id=proposal_id, payload=payload)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)


@router.get(
    "/proposals/{proposal_id}/versions",
    response_model=ProposalVersionHistoryResponse,
    status_code=status.HTTP_200_OK,
    summary="List Proposal Versions",
    description="Returns version history, newest first.",
)
def get_version_history(
    proposal_id: Annotated[
        str, Path(description="Proposal identifier.", examples=["pp_001"])
    ],
    offset: Annotated[int, Query(description="Rows to skip.", ge=0, examples=[0])] = 0,
    limit: Annotated[
        int,
        Query(description="Page size.", ge=1, le=MAX_HISTORY_PAGE_SIZE, examples=[20]),
    ] = 20,
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalVersionHistoryResponse:
    try:
        return service.get_version_history(proposal_id=proposal_id, offset=offset, limit=limit)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)


@router.get(
    "/proposal-versions/{version_id}",
    response_model=ProposalVersionRecord,
    status_code=status.HTTP_200_OK,
    summary="Get Proposal Version",
    description="Returns one immutable version by id.",
)
def peek_version(
    version_id: Annotated[
        str, Path(description="Version identifier.", examples=["ppv_001"])
    ],
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalVersionRecord:
    try:
        return service.peek_version(version_id=version_id)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)


@router.post(
    "/proposals/{proposal_id}/submit",
    response_model=ProposalTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Submit Proposal",
    description=(
        "Submits a draft. Routes to pending_approval when an approval rule fires, "
        "otherwise sends the proposal to the client."
    ),
)
def submit_proposal(
    proposal_id: Annotated[
        str, Path(description="Proposal identifier.", examples=["pp_001"])
    ],
    payload: ProposalSubmitRequest,
    background_tasks: BackgroundTasks,
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalTransitionResponse:
    try:
        response = service.submit(proposal_id=proposal_id, payload=payload)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    schedule_outbox_drain(background_tasks)
    return response


@router.post(
    "/proposals/{proposal_id}/views",
    response_model=ProposalTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Record Client View",
    description=(
        "Records a client open or download. The first open moves a sent proposal to viewed."
    ),
)
def record_view(
    proposal_id: Annotated[
        str, Path(description="Proposal identifier.", examples=["pp_001"])
    ],
    payload: ProposalViewRequest,
    background_tasks: BackgroundTasks,
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalTransitionResponse:
    try:
        response = service.record_view(proposal_id=proposal_id, payload=payload)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    schedule_outbox_drain(background_tasks)
    return response


@router.post(
    "/proposals/{proposal_id}/signature",
    response_model=ProposalTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Sign Proposal",
    description="Records the client signature and moves the proposal to signed.",
)
def sign_proposal(
    proposal_id: Annotated[
        str, Path(description="Proposal identifier.", examples=["pp_001"])
    ],
    payload: ProposalSignatureRequest,
    background_tasks: BackgroundTasks,
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalTransitionResponse:
    try:
        response = service.sign(proposal_id=proposal_id, payload=payload)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    schedule_outbox_drain(background_tasks)
    return response


@router.post(
    "/proposals/{proposal_id}/decline",
    response_model=ProposalTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Decline Proposal",
    description="Records a client decline and moves the proposal to rejected.",
)
def decline_proposal(
    proposal_id: Annotated[
        str, Path(description="Proposal identifier.", examples=["pp_001"])
    ],
    payload: ProposalDeclineRequest,
    background_tasks: BackgroundTasks,
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalTransitionResponse:
    try:
        response = service.decline(proposal_id=proposal_id, payload=payload)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    schedule_outbox_drain(background_tasks)
    return response


@router.post(
    "/proposals/{proposal_id}/actions",
    response_model=ProposalTransitionResponse,
    status_code=status.HTTP_200_OK,
    summary="Record User Action",
    description="Records a named user action and evaluates user_action rules.",
)
def record_user_action(
    proposal_id: Annotated[
        str, Path(description="Proposal identifier.", examples=["pp_001"])
    ],
    payload: ProposalUserActionRequest,
    background_tasks: BackgroundTasks,
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalTransitionResponse:
    try:
        response = service.record_user_action(proposal_id=proposal_id, payload=payload)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    schedule_outbox_drain(background_tasks)
    return response


@router.get(
    "/proposals/{proposal_id}/events",
    response_model=ProposalTimelineResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Proposal Timeline",
    description="Returns the append-only event log in commit order.",
)
def get_timeline(
    proposal_id: Annotated[
        str, Path(description="Proposal identifier.", examples=["pp_001"])
    ],
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalTimelineResponse:
    try:
        return service.get_timeline(proposal_id=proposal_id)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)


@router.get(
    "/proposals/{proposal_id}/approvals",
    response_model=ProposalApprovalsResponse,
    status_code=status.HTTP_200_OK,
    summary="List Proposal Approval Chains",
    description="Returns every approval instance started for the proposal.",
)
def list_approvals(
    proposal_id: Annotated[
        str, Path(description="Proposal identifier.", examples=["pp_001"])
    ],
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> ProposalApprovalsResponse:
    try:
        return service.list_approvals(proposal_id=proposal_id)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)


@router.get(
    "/proposals/{proposal_id}/outbox",
    response_model=list[OutboxMessage],
    status_code=status.HTTP_200_OK,
    summary="List Proposal Outbox Messages",
    description="Support view of queued and delivered side-effect messages.",
)
def list_outbox(
    proposal_id: Annotated[
        str, Path(description="Proposal identifier.", examples=["pp_001"])
    ],
    service: Annotated[ProposalLifecycleService, Depends(get_proposal_lifecycle_service)] = None,
) -> list[OutboxMessage]:
    _assert_support_apis_enabled()
    try:
        service.get_proposal(proposal_id=proposal_id)
    except ProposalLifecycleError as exc:
        raise_proposal_http_exception(exc)
    return service.repository.list_outbox(proposal_id=proposal_id)
