from threading import Lock

from proposal_lifecycle.core.outbox.models import DeliveryResult, EmailMessage


class InMemoryNotifier:
    """Captures sent emails. ``fail_next`` makes the next N sends report a failure."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._sent: list[EmailMessage] = []
        self.fail_next = 0

    @property
    def sent(self) -> list[EmailMessage]:
        with self._lock:
            return list(self._sent)

    def send(
        self, *, sender: str, recipients: list[str], subject: str, html_body: str
    ) -> DeliveryResult:
        with self._lock:
            if self.fail_next > 0:
                self.fail_next -= 1
                return DeliveryResult(delivered=False, detail="NOTIFIER_UNAVAILABLE")
            self._sent.append(
                EmailMessage(
                    sender=sender,
                    recipients=list(recipients),
                    subject=subject,
                    html_body=html_body,
                    template="captured",
                )
            )
            return DeliveryResult(
                delivered=True, provider_message_id=f"mem_{len(self._sent)}"
            )
