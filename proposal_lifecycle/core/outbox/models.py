from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

OutboxChannel = Literal["notify", "record_event"]
OutboxStatus = Literal["pending", "delivered", "dead"]


class OutboxMessage(BaseModel):
    message_id: str = Field(description="Outbox message identifier.", examples=["pom_001"])
    proposal_id: str = Field(description="Proposal the message belongs to.", examples=["pp_001"])
    channel: OutboxChannel = Field(description="Collaborator channel.", examples=["notify"])
    action: str = Field(
        description="Rule action or notification template that produced the message.",
        examples=["send_to_client"],
    )
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Rendered collaborator payload.",
        examples=[{"recipients": ["client@example.com"], "subject": "New Proposal"}],
    )
    status: OutboxStatus = Field(default="pending", description="Delivery status.")
    attempts: int = Field(default=0, ge=0, description="Delivery attempts so far.")
    next_attempt_at: datetime = Field(description="Earliest time of the next attempt.")
    last_error: Optional[str] = Field(default=None, description="Last delivery error.")
    created_at: datetime = Field(description="Enqueue timestamp.")
    delivered_at: Optional[datetime] = Field(default=None, description="Delivery timestamp.")


class DeliveryResult(BaseModel):
    delivered: bool = Field(description="Whether the collaborator accepted the message.")
    detail: Optional[str] = Field(default=None, description="Collaborator detail or error.")
    provider_message_id: Optional[str] = Field(default=None)


class NotificationContext(BaseModel):
    """Proposal fields exposed to email templates."""

    proposal_id: str
    proposal_number: str
    title: str
    client_name: str
    client_email: str
    total: int
    currency: str
    status: str
    valid_until: Optional[datetime] = None


class EmailMessage(BaseModel):
    sender: str
    recipients: List[str]
    subject: str
    html_body: str
    template: str


class DispatchSummary(BaseModel):
    attempted: int = 0
    delivered: int = 0
    retried: int = 0
    dead: int = 0
