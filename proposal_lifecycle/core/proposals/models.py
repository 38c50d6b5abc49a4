from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from proposal_lifecycle.core.common.statuses import ProposalStatus
from proposal_lifecycle.core.workflow.approvals import ApprovalDecision, ApprovalInstance

ProposalPriority = Literal["low", "normal", "high", "urgent"]

ProposalEventType = Literal[
    "created",
    "version_created",
    "details_updated",
    "status_change",
    "viewed",
    "downloaded",
    "user_action",
    "rule_fired",
    "approval_started",
    "approval_decided",
    "approval_escalated",
    "analytics",
]

SignatureType = Literal["typed", "drawn", "uploaded"]


class LineItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    description: str = Field(
        min_length=1,
        description="Line item description.",
        examples=["Kitchen cabinet installation"],
    )
    quantity: Decimal = Field(ge=0, description="Quantity; may be fractional.", examples=["2.5"])
    unit_price: int = Field(
        ge=0,
        description="Unit price in integer minor units.",
        examples=[12000],
    )

    @property
    def line_total(self) -> Decimal:
        return self.quantity * Decimal(self.unit_price)


class ClientInfoSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["client_info"] = "client_info"
    name: str = Field(default="", examples=["Jane Doe"])
    email: str = Field(default="", examples=["jane@example.com"])
    phone: str = Field(default="", examples=["+1 555 0100"])
    address: str = Field(default="", examples=["1 Main St"])


class NarrativeSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["narrative"] = "narrative"
    heading: str = Field(default="", examples=["Project overview"])
    body: str = Field(default="", examples=["Full remodel of the ground floor kitchen."])


class ScopeSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["scope"] = "scope"
    heading: str = Field(default="", examples=["Scope of work"])
    items: List[str] = Field(default_factory=list, examples=[["Demolition", "Cabinetry"]])


VersionSection = Annotated[
    Union[ClientInfoSection, NarrativeSection, ScopeSection],
    Field(discriminator="kind"),
]


class VersionContent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    schema_version: Literal[1] = Field(default=1, description="Content schema version.")
    sections: List[VersionSection] = Field(
        default_factory=list,
        description="Ordered content sections, tagged by kind.",
        examples=[[{"kind": "narrative", "heading": "Overview", "body": "Kitchen remodel."}]],
    )


class VersionSnapshot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content: VersionContent = Field(
        default_factory=VersionContent,
        description="Structured editable proposal content.",
    )
    line_items: List[LineItem] = Field(
        default_factory=list,
        description="Ordered priced line items.",
        examples=[[{"description": "Labor", "quantity": "2", "unit_price": 5000}]],
    )
    tax_rate_percent: Decimal = Field(
        default=Decimal("0"),
        ge=0,
        description="Tax rate applied to the rounded subtotal.",
        examples=["8.25"],
    )
    discount_minor: int = Field(
        default=0,
        ge=0,
        description="Flat discount in integer minor units.",
        examples=[0],
    )
    terms: str = Field(
        default="",
        description="Terms and conditions text.",
        examples=["Payment due within 30 days."],
    )


class PricingBreakdown(BaseModel):
    subtotal: int = Field(description="Rounded subtotal in minor units.", examples=[10000])
    tax: int = Field(description="Rounded tax in minor units.", examples=[825])
    discount: int = Field(description="Discount in minor units.", examples=[0])
    total: int = Field(description="Subtotal plus tax minus discount.", examples=[10825])
    tax_rate_percent: Decimal = Field(description="Applied tax rate.", examples=["8.25"])


class ProposalRecord(BaseModel):
    proposal_id: str = Field(description="Proposal identifier.", examples=["pp_001"])
    proposal_number: str = Field(
        description="Human readable proposal number.", examples=["PROP-20260219-1A2B3C"]
    )
    title: str = Field(default="", description="Proposal title.", examples=["Kitchen remodel"])
    client_name: str = Field(default="", examples=["Jane Doe"])
    client_email: str = Field(default="", examples=["jane@example.com"])
    client_phone: str = Field(default="", examples=["+1 555 0100"])
    client_address: str = Field(default="", examples=["1 Main St"])
    status: ProposalStatus = Field(description="Stored lifecycle status.", examples=["draft"])
    priority: ProposalPriority = Field(default="normal", examples=["normal"])
    currency: str = Field(description="ISO-4217 currency code.", examples=["USD"])
    valid_until: Optional[datetime] = Field(
        default=None, description="Deadline after which the proposal expires."
    )
    total: int = Field(description="Current version total in minor units.", examples=[10825])
    current_version_id: str = Field(description="Current version id.", examples=["ppv_001"])
    current_version_number: int = Field(description="Current version number.", examples=[1])
    sent_at: Optional[datetime] = Field(default=None, description="Timestamp of entering sent.")
    created_at: datetime
    updated_at: datetime
    created_by: str = Field(examples=["estimator_1"])
    updated_by: str = Field(examples=["estimator_1"])


class ProposalVersionRecord(BaseModel):
    version_id: str = Field(description="Version identifier.", examples=["ppv_001"])
    proposal_id: str = Field(description="Proposal identifier.", examples=["pp_001"])
    version_number: int = Field(ge=1, description="Contiguous version number.", examples=[1])
    snapshot: VersionSnapshot = Field(description="Immutable editable content snapshot.")
    pricing: PricingBreakdown = Field(description="Totals computed at commit time.")
    is_current: bool = Field(description="Whether this is the proposal's current version.")
    change_summary: str = Field(default="", examples=["Added electrical scope"])
    created_by: str = Field(examples=["estimator_1"])
    created_at: datetime
    content_hash: str = Field(description="Canonical snapshot hash.", examples=["sha256:abc"])


class ProposalEventRecord(BaseModel):
    event_id: str = Field(description="Event identifier.", examples=["pev_001"])
    proposal_id: str = Field(description="Proposal identifier.", examples=["pp_001"])
    event_type: ProposalEventType = Field(examples=["status_change"])
    from_status: Optional[ProposalStatus] = Field(default=None, examples=["draft"])
    to_status: Optional[ProposalStatus] = Field(default=None, examples=["sent"])
    actor_id: Optional[str] = Field(default=None, examples=["estimator_1"])
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime


class ProposalCreateRequest(BaseModel):
    created_by: str = Field(min_length=1, description="Actor creating the proposal.")
    proposal_number: Optional[str] = Field(
        default=None,
        description="Optional human readable number; generated when omitted.",
        examples=["PROP-2026-0001"],
    )
    title: str = Field(default="", examples=["Kitchen remodel"])
    client_name: str = Field(default="", examples=["Jane Doe"])
    client_email: str = Field(default="", examples=["jane@example.com"])
    client_phone: str = Field(default="", examples=["+1 555 0100"])
    client_address: str = Field(default="", examples=["1 Main St"])
    priority: ProposalPriority = Field(default="normal")
    currency: str = Field(
        default="USD", pattern=r"^[A-Z]{3}$", description="ISO-4217 code.", examples=["USD"]
    )
    valid_until: Optional[datetime] = Field(
        default=None,
        description="Validity deadline.",
        examples=["2026-03-31T23:59:59+00:00"],
    )
    snapshot: VersionSnapshot = Field(
        default_factory=VersionSnapshot,
        description="Initial version content.",
    )
    change_summary: str = Field(default="Initial version")


class ProposalVersionCommitRequest(BaseModel):
    base_version_id: str = Field(
        description="Version the edit was based on; must be the current version.",
        examples=["ppv_001"],
    )
    actor_id: str = Field(min_length=1, examples=["estimator_1"])
    snapshot: VersionSnapshot
    change_summary: str = Field(default="", examples=["Added electrical scope"])


class ProposalDetailsUpdateRequest(BaseModel):
    actor_id: str = Field(min_length=1, examples=["estimator_1"])
    expected_updated_at: Optional[datetime] = Field(
        default=None,
        description="Optimistic concurrency check against the stored updated_at.",
        examples=["2026-02-19T09:00:00+00:00"],
    )
    title: Optional[str] = Field(default=None, examples=["Kitchen and pantry remodel"])
    client_name: Optional[str] = Field(default=None, examples=["Jane Doe"])
    client_email: Optional[str] = Field(default=None, examples=["jane@example.com"])
    client_phone: Optional[str] = Field(default=None, examples=["+1 555 0100"])
    client_address: Optional[str] = Field(default=None, examples=["1 Main St"])
    priority: Optional[ProposalPriority] = Field(default=None, examples=["high"])
    valid_until: Optional[datetime] = Field(
        default=None,
        description="New validity deadline; an explicit null clears it.",
        examples=["2026-04-30T23:59:59+00:00"],
    )


class ProposalSubmitRequest(BaseModel):
    actor_id: str = Field(min_length=1, examples=["estimator_1"])
    expected_status: Optional[ProposalStatus] = Field(
        default=None,
        description="Optimistic concurrency check against the stored status.",
        examples=["draft"],
    )


class ProposalViewRequest(BaseModel):
    actor_id: str = Field(default="client", examples=["client"])
    engagement: Literal["viewed", "downloaded"] = Field(default="viewed")
    user_agent: Optional[str] = Field(default=None)
    ip_address: Optional[str] = Field(default=None)


class ProposalSignatureRequest(BaseModel):
    actor_id: str = Field(default="client", examples=["client"])
    signer_name: str = Field(min_length=1, examples=["Jane Doe"])
    signer_email: str = Field(min_length=3, examples=["jane@example.com"])
    signer_role: Optional[str] = Field(default=None, examples=["Homeowner"])
    signature_type: SignatureType = Field(default="typed")
    expected_status: Optional[ProposalStatus] = Field(default=None)


class ProposalDeclineRequest(BaseModel):
    actor_id: str = Field(default="client", examples=["client"])
    reason: Optional[str] = Field(default=None, examples=["Budget constraints"])
    expected_status: Optional[ProposalStatus] = Field(default=None)


class ProposalUserActionRequest(BaseModel):
    action_name: str = Field(min_length=1, examples=["request_revision"])
    actor_id: str = Field(min_length=1, examples=["estimator_1"])
    details: Dict[str, Any] = Field(default_factory=dict)


class ApprovalDecisionRequest(BaseModel):
    step_index: int = Field(ge=0, examples=[0])
    decision: ApprovalDecision = Field(examples=["approve"])
    actor_id: str = Field(min_length=1, examples=["manager_1"])
    comment: Optional[str] = Field(default=None, examples=["Looks good"])
    expected_revision: Optional[int] = Field(
        default=None,
        ge=0,
        description="Optimistic concurrency check against the approval revision.",
    )


class ProposalSummary(BaseModel):
    proposal_id: str
    proposal_number: str
    title: str
    client_name: str
    client_email: str
    status: ProposalStatus = Field(description="Effective status including lazy expiry.")
    priority: ProposalPriority
    currency: str
    total: int
    valid_until: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    current_version_id: str
    current_version_number: int
    created_by: str
    created_at: datetime
    updated_at: datetime


class ProposalDetailResponse(BaseModel):
    proposal: ProposalSummary
    current_version: ProposalVersionRecord
    active_approval: Optional[ApprovalInstance] = None


class ProposalListResponse(BaseModel):
    items: List[ProposalSummary]
    next_cursor: Optional[str] = None


class ProposalVersionHistoryResponse(BaseModel):
    proposal_id: str
    items: List[ProposalVersionRecord]
    offset: int
    limit: int
    total_count: int


class ProposalTransitionResponse(BaseModel):
    proposal: ProposalSummary
    latest_event: ProposalEventRecord
    approval: Optional[ApprovalInstance] = None
    fired_rule_ids: List[str] = Field(default_factory=list)


class ProposalTimelineResponse(BaseModel):
    proposal_id: str
    events: List[ProposalEventRecord]


class ProposalApprovalsResponse(BaseModel):
    proposal_id: str
    approvals: List[ApprovalInstance]


class LifecycleSweepReport(BaseModel):
    expired_proposal_ids: List[str] = Field(default_factory=list)
    approvals_changed: int = 0
    approvals_completed: int = 0
    time_based_firings: int = 0
