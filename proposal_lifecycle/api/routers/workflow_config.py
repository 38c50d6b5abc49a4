import os
import warnings
from typing import Annotated, Optional, cast

from fastapi import APIRouter, Depends, HTTPException, Path, status
from pydantic import BaseModel, Field

from proposal_lifecycle.api.routers.proposal_http_errors import HTTP_422_UNPROCESSABLE
from proposal_lifecycle.api.routers.proposals_config import postgres_connection_exception_types
from proposal_lifecycle.api.routers.runtime_utils import assert_feature_enabled
from proposal_lifecycle.core.workflow import (
    ApprovalStepTemplate,
    WorkflowConfigRepository,
    WorkflowConfiguration,
    WorkflowConfigurationProvider,
    WorkflowRule,
)
from proposal_lifecycle.infrastructure.workflow_config import (
    InMemoryWorkflowConfigRepository,
    PostgresWorkflowConfigRepository,
)

router = APIRouter(tags=["Workflow Configuration"])
_PROVIDER: Optional[WorkflowConfigurationProvider] = None


class WorkflowRuleListResponse(BaseModel):
    rules: list[WorkflowRule] = Field(description="Stored rules in evaluation order.")


class WorkflowApprovalStepsRequest(BaseModel):
    steps: list[ApprovalStepTemplate] = Field(
        description="Ordered approval chain template. Replaces the stored chain.",
    )


class WorkflowApprovalStepsResponse(BaseModel):
    steps: list[ApprovalStepTemplate] = Field(description="Stored approval chain template.")


def workflow_config_backend_name() -> str:
    value = os.getenv("WORKFLOW_CONFIG_BACKEND", "IN_MEMORY").strip().upper()
    if value == "POSTGRES":
        return "POSTGRES"
    warnings.warn(
        (
            "WORKFLOW_CONFIG_BACKEND legacy runtime backend "
            "(IN_MEMORY) is deprecated for runtime; use POSTGRES."
        ),
        DeprecationWarning,
        stacklevel=2,
    )
    return "IN_MEMORY"


def workflow_config_postgres_dsn() -> str:
    explicit = os.getenv("WORKFLOW_CONFIG_POSTGRES_DSN", "").strip()
    if explicit:
        return explicit
    return os.getenv("PROPOSAL_POSTGRES_DSN", "").strip()


def build_workflow_config_repository() -> WorkflowConfigRepository:
    if workflow_config_backend_name() == "POSTGRES":
        dsn = workflow_config_postgres_dsn()
        if not dsn:
            raise RuntimeError("WORKFLOW_CONFIG_POSTGRES_DSN_REQUIRED")
        try:
            return cast(WorkflowConfigRepository, PostgresWorkflowConfigRepository(dsn=dsn))
        except RuntimeError:
            raise
        except postgres_connection_exception_types() as exc:
            raise RuntimeError("WORKFLOW_CONFIG_POSTGRES_CONNECTION_FAILED") from exc
    return cast(
        WorkflowConfigRepository,
        InMemoryWorkflowConfigRepository(catalog_json=os.getenv("WORKFLOW_CATALOG_JSON")),
    )


def get_workflow_configuration_provider() -> WorkflowConfigurationProvider:
    global _PROVIDER
    if _PROVIDER is None:
        _PROVIDER = WorkflowConfigurationProvider(repository=build_workflow_config_repository())
    return _PROVIDER


def reset_workflow_configuration_for_tests() -> None:
    global _PROVIDER
    _PROVIDER = None


def _assert_admin_apis_enabled() -> None:
    assert_feature_enabled(
        name="WORKFLOW_ADMIN_APIS_ENABLED",
        default=True,
        detail="WORKFLOW_ADMIN_APIS_DISABLED",
    )


@router.get(
    "/workflow/configuration",
    response_model=WorkflowConfiguration,
    status_code=status.HTTP_200_OK,
    summary="Get Active Workflow Configuration",
    description="Returns the configuration snapshot currently used for rule evaluation.",
)
def get_active_configuration(
    provider: Annotated[
        WorkflowConfigurationProvider, Depends(get_workflow_configuration_provider)
    ] = None,
) -> WorkflowConfiguration:
    _assert_admin_apis_enabled()
    return provider.current()


@router.get(
    "/workflow/rules",
    response_model=WorkflowRuleListResponse,
    status_code=status.HTTP_200_OK,
    summary="List Stored Workflow Rules",
    description="Lists stored rules, including inactive ones and edits not yet reloaded.",
)
def list_rules(
    provider: Annotated[
        WorkflowConfigurationProvider, Depends(get_workflow_configuration_provider)
    ] = None,
) -> WorkflowRuleListResponse:
    _assert_admin_apis_enabled()
    return WorkflowRuleListResponse(rules=provider.repository.list_rules())


@router.put(
    "/workflow/rules/{rule_id}",
    response_model=WorkflowRule,
    status_code=status.HTTP_200_OK,
    summary="Upsert Workflow Rule",
    description="Stores a rule. Takes effect after the next configuration reload.",
)
def upsert_rule(
    rule_id: Annotated[
        str, Path(description="Workflow rule identifier.", examples=["wr_high_value"])
    ],
    payload: WorkflowRule,
    provider: Annotated[
        WorkflowConfigurationProvider, Depends(get_workflow_configuration_provider)
    ] = None,
) -> WorkflowRule:
    _assert_admin_apis_enabled()
    if payload.rule_id != rule_id:
        raise HTTPException(status_code=HTTP_422_UNPROCESSABLE, detail="RULE_ID_MISMATCH")
    provider.repository.upsert_rule(payload)
    return payload


@router.delete(
    "/workflow/rules/{rule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Workflow Rule",
    description="Deletes a stored rule. Takes effect after the next configuration reload.",
)
def delete_rule(
    rule_id: Annotated[
        str, Path(description="Workflow rule identifier.", examples=["wr_high_value"])
    ],
    provider: Annotated[
        WorkflowConfigurationProvider, Depends(get_workflow_configuration_provider)
    ] = None,
) -> None:
    _assert_admin_apis_enabled()
    if not provider.repository.delete_rule(rule_id=rule_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="RULE_NOT_FOUND")


@router.get(
    "/workflow/approval-steps",
    response_model=WorkflowApprovalStepsResponse,
    status_code=status.HTTP_200_OK,
    summary="Get Approval Chain Template",
)
def list_approval_steps(
    provider: Annotated[
        WorkflowConfigurationProvider, Depends(get_workflow_configuration_provider)
    ] = None,
) -> WorkflowApprovalStepsResponse:
    _assert_admin_apis_enabled()
    return WorkflowApprovalStepsResponse(steps=provider.repository.list_approval_steps())


@router.put(
    "/workflow/approval-steps",
    response_model=WorkflowApprovalStepsResponse,
    status_code=status.HTTP_200_OK,
    summary="Replace Approval Chain Template",
    description=(
        "Replaces the approval chain template. Running approval instances keep "
        "the steps they were started with."
    ),
)
def replace_approval_steps(
    payload: WorkflowApprovalStepsRequest,
    provider: Annotated[
        WorkflowConfigurationProvider, Depends(get_workflow_configuration_provider)
    ] = None,
) -> WorkflowApprovalStepsResponse:
    _assert_admin_apis_enabled()
    step_ids = [step.step_id for step in payload.steps]
    if len(set(step_ids)) != len(step_ids):
        raise HTTPException(status_code=HTTP_422_UNPROCESSABLE, detail="DUPLICATE_STEP_ID")
    provider.repository.replace_approval_steps(payload.steps)
    return WorkflowApprovalStepsResponse(steps=payload.steps)


@router.post(
    "/workflow/reload",
    response_model=WorkflowConfiguration,
    status_code=status.HTTP_200_OK,
    summary="Reload Workflow Configuration",
    description="Reloads rules and the approval chain template from storage.",
)
def reload_configuration(
    provider: Annotated[
        WorkflowConfigurationProvider, Depends(get_workflow_configuration_provider)
    ] = None,
) -> WorkflowConfiguration:
    _assert_admin_apis_enabled()
    return provider.reload()
