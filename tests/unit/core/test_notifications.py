from typing import get_args

from proposal_lifecycle.core.outbox import NotificationContext, NotificationSettings, render_email
from proposal_lifecycle.core.outbox.notifications import (
    EmailTemplate,
    build_record_event_message,
    format_amount,
)
from tests.factories import T0


def _context(**overrides) -> NotificationContext:
    payload = {
        "proposal_id": "pp_001",
        "proposal_number": "PROP-20260302-ABC123",
        "title": "Kitchen remodel",
        "client_name": "Jane <Doe>",
        "client_email": "jane@example.com",
        "total": 1234567,
        "currency": "USD",
        "status": "sent",
        "valid_until": T0,
    }
    payload.update(overrides)
    return NotificationContext(**payload)


def test_format_amount_uses_major_units_with_grouping():
    assert format_amount(1234567, "USD") == "USD 12,345.67"
    assert format_amount(5, "EUR") == "EUR 0.05"


def test_proposal_sent_email_links_portal_and_escapes_client_name():
    email = render_email(
        "proposal_sent",
        context=_context(),
        settings=NotificationSettings(portal_base_url="https://portal.example.com/"),
        recipients=["jane@example.com"],
    )

    assert email.subject == "New Proposal: PROP-20260302-ABC123"
    assert email.sender == "workflow@company.com"
    assert "Jane &lt;Doe&gt;" in email.html_body
    assert "https://portal.example.com/proposals/pp_001" in email.html_body
    assert "USD 12,345.67" in email.html_body
    assert "2026-03-02" in email.html_body


def test_status_templates_have_distinct_subjects():
    subjects = {
        template: render_email(
            template,
            context=_context(),
            settings=NotificationSettings(),
            recipients=["manager@company.com"],
        ).subject
        for template in ("proposal_viewed", "proposal_signed", "proposal_rejected", "reminder")
    }

    assert subjects["proposal_viewed"] == "Proposal Viewed - PROP-20260302-ABC123"
    assert subjects["proposal_signed"] == "Proposal Signed - PROP-20260302-ABC123"
    assert subjects["proposal_rejected"] == "Proposal Declined - PROP-20260302-ABC123"
    assert subjects["reminder"].startswith("Reminder:")


def test_approval_request_includes_step_name_and_company_signature():
    email = render_email(
        "approval_request",
        context=_context(valid_until=None),
        settings=NotificationSettings(company_name="Acme Builders"),
        recipients=["manager@company.com"],
        extra={"step_name": "Manager Review"},
    )

    assert email.subject == "Approval Required: Proposal PROP-20260302-ABC123"
    assert "Manager Review" in email.html_body
    assert "Acme Builders" in email.html_body



def test_every_template_renders_inside_the_shared_layout():
    for template in get_args(EmailTemplate):
        email = render_email(
            template,
            context=_context(),
            settings=NotificationSettings(company_name="Acme Builders"),
            recipients=["manager@company.com"],
        )

        assert email.template == template
        assert "PROP-20260302-ABC123" in email.subject
        assert email.html_body.startswith('<div style="font-family: Arial, sans-serif;">')
        assert "<p>Best regards,<br>Acme Builders</p>" in email.html_body
        assert "<Doe>" not in email.html_body


def test_template_values_are_autoescaped():
    declined = render_email(
        "proposal_rejected",
        context=_context(),
        settings=NotificationSettings(company_name="A & B <Builders>"),
        recipients=["manager@company.com"],
        extra={"reason": "<script>alert(1)</script>"},
    )
    signed = render_email(
        "proposal_signed",
        context=_context(),
        settings=NotificationSettings(),
        recipients=["manager@company.com"],
        extra={"signer_name": "Jim <b>Bold</b>"},
    )

    assert "<script>" not in declined.html_body
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in declined.html_body
    assert "A &amp; B &lt;Builders&gt;" in declined.html_body
    assert "signed by Jim &lt;b&gt;Bold&lt;/b&gt;." in signed.html_body


def test_missing_extra_values_fall_back():
    declined = render_email(
        "proposal_rejected",
        context=_context(),
        settings=NotificationSettings(),
        recipients=["manager@company.com"],
    )
    escalated = render_email(
        "approval_escalation",
        context=_context(),
        settings=NotificationSettings(),
        recipients=["director@company.com"],
        extra={"step_name": "Manager Review"},
    )
    signed = render_email(
        "proposal_signed",
        context=_context(client_name=""),
        settings=NotificationSettings(),
        recipients=["manager@company.com"],
    )

    assert "<strong>Reason:</strong> Not given" in declined.html_body
    assert "<strong>Escalation:</strong> 1" in escalated.html_body
    assert "signed by Valued Client." in signed.html_body

def test_record_event_message_wraps_payload():
    message = build_record_event_message(
        action="track_analytics",
        proposal_id="pp_001",
        event_type="analytics",
        payload={"rule_id": "wr_1"},
        actor_id=None,
        now=T0,
    )

    assert message.channel == "record_event"
    assert message.status == "pending"
    assert message.payload == {
        "event_type": "analytics",
        "actor_id": None,
        "payload": {"rule_id": "wr_1"},
    }
