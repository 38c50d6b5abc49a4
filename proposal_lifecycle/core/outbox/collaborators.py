from typing import Any, Optional, Protocol

from proposal_lifecycle.core.outbox.models import DeliveryResult


class Notifier(Protocol):
    def send(
        self, *, sender: str, recipients: list[str], subject: str, html_body: str
    ) -> DeliveryResult: ...


class EventRecorder(Protocol):
    def record(
        self,
        *,
        proposal_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor_id: Optional[str],
    ) -> DeliveryResult: ...
