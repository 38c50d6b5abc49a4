from proposal_lifecycle.core.outbox.collaborators import EventRecorder, Notifier
from proposal_lifecycle.core.outbox.dispatcher import OutboxDispatcher, OutboxStore, retry_delay
from proposal_lifecycle.core.outbox.models import (
    DeliveryResult,
    DispatchSummary,
    EmailMessage,
    NotificationContext,
    OutboxMessage,
)
from proposal_lifecycle.core.outbox.notifications import (
    NotificationSettings,
    build_notify_message,
    build_record_event_message,
    render_email,
)

__all__ = [
    "DeliveryResult",
    "DispatchSummary",
    "EmailMessage",
    "EventRecorder",
    "NotificationContext",
    "NotificationSettings",
    "Notifier",
    "OutboxDispatcher",
    "OutboxMessage",
    "OutboxStore",
    "build_notify_message",
    "build_record_event_message",
    "render_email",
    "retry_delay",
]
