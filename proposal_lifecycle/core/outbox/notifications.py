"""
Email templates and outbox message builders.

Messages are rendered when they are enqueued so that a retry delivers exactly
the content that was current when the triggering transition committed. Bodies
are Jinja2 templates sharing one layout; autoescaping is on for all of them.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal, Optional

from jinja2 import DictLoader, Environment, select_autoescape
from pydantic import BaseModel, Field

from proposal_lifecycle.core.outbox.models import (
    EmailMessage,
    NotificationContext,
    OutboxMessage,
)

EmailTemplate = Literal[
    "proposal_sent",
    "proposal_viewed",
    "proposal_signed",
    "proposal_rejected",
    "reminder",
    "manager_notice",
    "escalation",
    "approval_request",
    "approval_escalation",
    "approval_granted",
    "approval_denied",
]

_SUBJECTS: dict[str, str] = {
    "proposal_sent": "New Proposal: {number}",
    "proposal_viewed": "Proposal Viewed - {number}",
    "proposal_signed": "Proposal Signed - {number}",
    "proposal_rejected": "Proposal Declined - {number}",
    "reminder": "Reminder: Proposal {number} Awaiting Review",
    "manager_notice": "Proposal Update - {number}",
    "escalation": "Escalation: Proposal {number}",
    "approval_request": "Approval Required: Proposal {number}",
    "approval_escalation": "Escalation: Proposal {number} Awaiting Approval",
    "approval_granted": "Proposal {number} Approved",
    "approval_denied": "Proposal {number} Not Approved",
}

_LAYOUT = """\
<div style="font-family: Arial, sans-serif;">
{% block body %}{% endblock %}
<p>Best regards,<br>{{ company_name }}</p>
</div>
"""

_BODIES: dict[str, str] = {
    "proposal_sent": """\
<h2>New Proposal Ready for Review</h2>
<p>Dear {{ client }},</p>
<p>We have prepared a proposal for your review.</p>
<p><a href="{{ url }}">View Proposal</a></p>
<p><strong>Proposal Number:</strong> {{ number }}</p>
<p><strong>Total Amount:</strong> {{ amount }}</p>
<p><strong>Valid Until:</strong> {{ valid_until }}</p>
""",
    "reminder": """\
<h2>Friendly Reminder</h2>
<p>Dear {{ client }},</p>
<p>We wanted to follow up on the proposal we sent you recently.</p>
<p><a href="{{ url }}">Review Proposal</a></p>
<p><strong>Valid Until:</strong> {{ valid_until }}</p>
""",
    "approval_request": """\
<h2>Approval Required</h2>
<p>A proposal requires your approval before it can be sent to the client.</p>
<p><strong>Step:</strong> {{ extra.step_name }}</p>
<p><strong>Client:</strong> {{ client }}</p>
<p><strong>Total Amount:</strong> {{ amount }}</p>
<p><a href="{{ url }}">Review &amp; Approve</a></p>
""",
    "approval_escalation": """\
<h2>Approval Overdue</h2>
<p>Step {{ extra.step_name }} has not been decided in time.</p>
<p><strong>Escalation:</strong> {{ extra.escalation_count | default(1) }}</p>
<p><strong>Total Amount:</strong> {{ amount }}</p>
<p><a href="{{ url }}">Review &amp; Approve</a></p>
""",
    "approval_granted": """\
<h2>Approval Granted</h2>
<p>Proposal {{ number }} for {{ client }} has been approved and sent to the client.</p>
""",
    "approval_denied": """\
<h2>Approval Denied</h2>
<p>Proposal {{ number }} for {{ client }} has been rejected.</p>
""",
    "proposal_viewed": """\
<h2>Proposal Viewed</h2>
<p>{{ client }} opened proposal {{ number }}.</p>
<p><strong>Total Amount:</strong> {{ amount }}</p>
<p><a href="{{ url }}">View Proposal</a></p>
""",
    "proposal_signed": """\
<h2>Proposal Signed</h2>
<p>The proposal {{ number }} has been signed by {{ extra.signer_name or client }}.</p>
<p><strong>Total Amount:</strong> {{ amount }}</p>
""",
    "proposal_rejected": """\
<h2>Proposal Declined</h2>
<p>{{ client }} declined proposal {{ number }}.</p>
<p><strong>Reason:</strong> {{ extra.reason or "Not given" }}</p>
""",
    "escalation": """\
<h2>Proposal Escalated</h2>
<p>Proposal {{ number }} for {{ client }} needs attention.</p>
<p><strong>Status:</strong> {{ status }}</p>
<p><a href="{{ url }}">View Proposal</a></p>
""",
    "manager_notice": """\
<h2>Proposal Update</h2>
<p>There has been an update to proposal {{ number }} for {{ client }}.</p>
<p><strong>Status:</strong> {{ status }}</p>
{% if extra.rule_name %}
<p><strong>Rule:</strong> {{ extra.rule_name }}</p>
{% endif %}
<p><a href="{{ url }}">View Proposal</a></p>
""",
}

_EXTENDS_LAYOUT = '{% extends "layout.html" %}{% block body %}'

_ENVIRONMENT = Environment(
    loader=DictLoader(
        {
            "layout.html": _LAYOUT,
            **{
                f"{name}.html": _EXTENDS_LAYOUT + body + "{% endblock %}"
                for name, body in _BODIES.items()
            },
        }
    ),
    autoescape=select_autoescape(enabled_extensions=("html",), default=True),
    trim_blocks=True,
    lstrip_blocks=True,
)


class NotificationSettings(BaseModel):
    sender: str = Field(default="workflow@company.com")
    manager_address: str = Field(default="manager@company.com")
    portal_base_url: str = Field(default="https://proposals.example.com")
    company_name: str = Field(default="Your Company")


def format_amount(amount_minor: int, currency: str) -> str:
    major = (Decimal(amount_minor) / Decimal(100)).quantize(Decimal("0.01"))
    return f"{currency} {major:,.2f}"


def render_email(
    template: EmailTemplate,
    *,
    context: NotificationContext,
    settings: NotificationSettings,
    recipients: list[str],
    extra: Optional[dict[str, Any]] = None,
) -> EmailMessage:
    html_body = _ENVIRONMENT.get_template(f"{template}.html").render(
        client=context.client_name or "Valued Client",
        number=context.proposal_number,
        amount=format_amount(context.total, context.currency),
        url=f"{settings.portal_base_url.rstrip('/')}/proposals/{context.proposal_id}",
        valid_until=(
            context.valid_until.date().isoformat()
            if context.valid_until is not None
            else "See proposal for details"
        ),
        status=context.status,
        company_name=settings.company_name,
        extra=extra or {},
    )
    return EmailMessage(
        sender=settings.sender,
        recipients=recipients,
        subject=_SUBJECTS[template].format(number=context.proposal_number),
        html_body=html_body,
        template=template,
    )


def build_notify_message(
    *,
    action: str,
    email: EmailMessage,
    proposal_id: str,
    now: datetime,
) -> OutboxMessage:
    return OutboxMessage(
        message_id=f"pom_{uuid.uuid4().hex[:12]}",
        proposal_id=proposal_id,
        channel="notify",
        action=action,
        payload=email.model_dump(mode="json"),
        next_attempt_at=now,
        created_at=now,
    )


def build_record_event_message(
    *,
    action: str,
    proposal_id: str,
    event_type: str,
    payload: dict[str, Any],
    actor_id: Optional[str],
    now: datetime,
) -> OutboxMessage:
    return OutboxMessage(
        message_id=f"pom_{uuid.uuid4().hex[:12]}",
        proposal_id=proposal_id,
        channel="record_event",
        action=action,
        payload={"event_type": event_type, "actor_id": actor_id, "payload": payload},
        next_attempt_at=now,
        created_at=now,
    )
