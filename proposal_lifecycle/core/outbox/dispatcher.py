import logging
from datetime import datetime, timedelta
from typing import Protocol

from proposal_lifecycle.core.common.errors import CollaboratorError
from proposal_lifecycle.core.outbox.collaborators import EventRecorder, Notifier
from proposal_lifecycle.core.outbox.models import DeliveryResult, DispatchSummary, OutboxMessage

logger = logging.getLogger(__name__)


class OutboxStore(Protocol):
    def list_pending_outbox(self, *, now: datetime, limit: int) -> list[OutboxMessage]: ...

    def update_outbox(self, message: OutboxMessage) -> None: ...


def retry_delay(
    *, attempts: int, base_delay_seconds: float, max_delay_seconds: float
) -> timedelta:
    exponent = max(attempts - 1, 0)
    seconds = min(base_delay_seconds * (2**exponent), max_delay_seconds)
    return timedelta(seconds=seconds)


class OutboxDispatcher:
    def __init__(
        self,
        *,
        store: OutboxStore,
        notifier: Notifier,
        event_recorder: EventRecorder,
        max_attempts: int = 5,
        base_delay_seconds: float = 30.0,
        max_delay_seconds: float = 3600.0,
        batch_size: int = 100,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self._event_recorder = event_recorder
        self._max_attempts = max_attempts
        self._base_delay_seconds = base_delay_seconds
        self._max_delay_seconds = max_delay_seconds
        self._batch_size = batch_size

    def dispatch_pending(self, *, now: datetime) -> DispatchSummary:
        summary = DispatchSummary()
        for message in self._store.list_pending_outbox(now=now, limit=self._batch_size):
            summary.attempted += 1
            updated = self._deliver(message, now=now)
            self._store.update_outbox(updated)
            if updated.status == "delivered":
                summary.delivered += 1
            elif updated.status == "dead":
                summary.dead += 1
            else:
                summary.retried += 1
        return summary

    def _deliver(self, message: OutboxMessage, *, now: datetime) -> OutboxMessage:
        updated = message.model_copy(deep=True)
        updated.attempts += 1
        try:
            result = self._call_collaborator(message)
            if not result.delivered:
                raise CollaboratorError(result.detail or "COLLABORATOR_REJECTED")
        except CollaboratorError as exc:
            error = str(exc)
            logger.warning(
                "outbox delivery failed",
                extra={
                    "extra_fields": {
                        "message_id": message.message_id,
                        "proposal_id": message.proposal_id,
                        "action": message.action,
                        "attempts": updated.attempts,
                        "error": error,
                    }
                },
            )
        except Exception as exc:
            error = f"COLLABORATOR_UNEXPECTED_ERROR: {type(exc).__name__}"
            logger.exception(
                "outbox delivery raised unexpectedly",
                extra={
                    "extra_fields": {
                        "message_id": message.message_id,
                        "proposal_id": message.proposal_id,
                        "action": message.action,
                    }
                },
            )
        else:
            updated.status = "delivered"
            updated.delivered_at = now
            updated.last_error = None
            return updated

        updated.last_error = error
        if updated.attempts >= self._max_attempts:
            updated.status = "dead"
            logger.error(
                "outbox message dead-lettered",
                extra={
                    "extra_fields": {
                        "message_id": message.message_id,
                        "proposal_id": message.proposal_id,
                        "attempts": updated.attempts,
                    }
                },
            )
        else:
            updated.next_attempt_at = now + retry_delay(
                attempts=updated.attempts,
                base_delay_seconds=self._base_delay_seconds,
                max_delay_seconds=self._max_delay_seconds,
            )
        return updated

    def _call_collaborator(self, message: OutboxMessage) -> DeliveryResult:
        payload = message.payload
        if message.channel == "notify":
            return self._notifier.send(
                sender=str(payload.get("sender", "")),
                recipients=list(payload.get("recipients", [])),
                subject=str(payload.get("subject", "")),
                html_body=str(payload.get("html_body", "")),
            )
        return self._event_recorder.record(
            proposal_id=message.proposal_id,
            event_type=str(payload.get("event_type", "analytics")),
            payload=dict(payload.get("payload") or {}),
            actor_id=payload.get("actor_id"),
        )
