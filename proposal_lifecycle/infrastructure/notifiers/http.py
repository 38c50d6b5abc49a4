import logging
from typing import Optional

import httpx

from proposal_lifecycle.core.common.errors import CollaboratorError
from proposal_lifecycle.core.outbox.models import DeliveryResult

logger = logging.getLogger(__name__)


class HttpEmailNotifier:
    """POSTs rendered emails as JSON to an email gateway."""

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not url:
            raise RuntimeError("PROPOSAL_NOTIFIER_URL_REQUIRED")
        self._url = url
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds))

    def send(
        self, *, sender: str, recipients: list[str], subject: str, html_body: str
    ) -> DeliveryResult:
        try:
            response = self._client.post(
                self._url,
                json={
                    "from": sender,
                    "to": recipients,
                    "subject": subject,
                    "html": html_body,
                },
            )
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"NOTIFIER_TRANSPORT_ERROR: {type(exc).__name__}") from exc
        if response.status_code >= 400:
            return DeliveryResult(
                delivered=False, detail=f"NOTIFIER_HTTP_{response.status_code}"
            )
        provider_message_id = None
        if response.headers.get("content-type", "").startswith("application/json"):
            try:
                body = response.json()
            except ValueError:
                logger.warning(
                    "notifier accepted message with unreadable json body",
                    extra={"extra_fields": {"status_code": response.status_code}},
                )
                body = None
            if isinstance(body, dict):
                provider_message_id = body.get("id")
        return DeliveryResult(delivered=True, provider_message_id=provider_message_id)

    def close(self) -> None:
        self._client.close()
