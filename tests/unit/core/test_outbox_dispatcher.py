from datetime import timedelta

from proposal_lifecycle.core.common.errors import CollaboratorError
from proposal_lifecycle.core.outbox import (
    DeliveryResult,
    OutboxDispatcher,
    OutboxMessage,
    retry_delay,
)
from proposal_lifecycle.core.proposals import ProposalUserActionRequest
from proposal_lifecycle.infrastructure.notifiers import InMemoryNotifier, RepositoryEventRecorder
from proposal_lifecycle.infrastructure.proposals import InMemoryProposalRepository
from tests.factories import T0, create_request, lifecycle_service, rule


class _RaisingNotifier:
    def __init__(self, exc: Exception) -> None:
        self._exc = exc

    def send(self, *, sender, recipients, subject, html_body):
        raise self._exc


def _notify_message(message_id: str = "pom_001") -> OutboxMessage:
    return OutboxMessage(
        message_id=message_id,
        proposal_id="pp_001",
        channel="notify",
        action="send_to_client",
        payload={
            "sender": "workflow@company.com",
            "recipients": ["client@example.com"],
            "subject": "New Proposal: PROP-1",
            "html_body": "<p>Hello</p>",
            "template": "proposal_sent",
        },
        next_attempt_at=T0,
        created_at=T0,
    )


def _dispatcher(repository, notifier, *, max_attempts=3):
    return OutboxDispatcher(
        store=repository,
        notifier=notifier,
        event_recorder=RepositoryEventRecorder(repository=repository, clock=lambda: T0),
        max_attempts=max_attempts,
        base_delay_seconds=30,
        max_delay_seconds=3600,
    )


def test_retry_delay_doubles_and_caps():
    assert retry_delay(attempts=1, base_delay_seconds=30, max_delay_seconds=3600) == timedelta(
        seconds=30
    )
    assert retry_delay(attempts=3, base_delay_seconds=30, max_delay_seconds=3600) == timedelta(
        seconds=120
    )
    assert retry_delay(attempts=20, base_delay_seconds=30, max_delay_seconds=3600) == timedelta(
        seconds=3600
    )


def test_pending_message_is_delivered_once():
    repository = InMemoryProposalRepository()
    repository.update_outbox(_notify_message())
    notifier = InMemoryNotifier()
    dispatcher = _dispatcher(repository, notifier)

    summary = dispatcher.dispatch_pending(now=T0)

    assert summary.attempted == 1
    assert summary.delivered == 1
    assert [email.subject for email in notifier.sent] == ["New Proposal: PROP-1"]
    stored = repository.list_outbox(proposal_id="pp_001")[0]
    assert stored.status == "delivered"
    assert stored.delivered_at == T0
    assert dispatcher.dispatch_pending(now=T0 + timedelta(hours=1)).attempted == 0
    assert len(notifier.sent) == 1


def test_failed_delivery_is_retried_after_backoff():
    repository = InMemoryProposalRepository()
    repository.update_outbox(_notify_message())
    notifier = InMemoryNotifier()
    notifier.fail_next = 1
    dispatcher = _dispatcher(repository, notifier)

    first = dispatcher.dispatch_pending(now=T0)
    stored = repository.list_outbox(proposal_id="pp_001")[0]

    assert first.retried == 1
    assert stored.status == "pending"
    assert stored.last_error == "NOTIFIER_UNAVAILABLE"
    assert stored.next_attempt_at == T0 + timedelta(seconds=30)
    assert dispatcher.dispatch_pending(now=T0 + timedelta(seconds=29)).attempted == 0

    second = dispatcher.dispatch_pending(now=T0 + timedelta(seconds=30))
    assert second.delivered == 1
    assert repository.list_outbox(proposal_id="pp_001")[0].attempts == 2


def test_message_is_dead_lettered_after_max_attempts():
    repository = InMemoryProposalRepository()
    repository.update_outbox(_notify_message())
    notifier = InMemoryNotifier()
    notifier.fail_next = 10
    dispatcher = _dispatcher(repository, notifier, max_attempts=2)

    dispatcher.dispatch_pending(now=T0)
    summary = dispatcher.dispatch_pending(now=T0 + timedelta(seconds=30))

    assert summary.dead == 1
    stored = repository.list_outbox(proposal_id="pp_001")[0]
    assert stored.status == "dead"
    assert stored.attempts == 2
    assert dispatcher.dispatch_pending(now=T0 + timedelta(days=1)).attempted == 0


def test_collaborator_errors_and_unexpected_exceptions_are_contained():
    repository = InMemoryProposalRepository()
    repository.update_outbox(_notify_message("pom_a"))
    failing = _RaisingNotifier(CollaboratorError("NOTIFIER_TRANSPORT_ERROR"))
    _dispatcher(repository, failing).dispatch_pending(now=T0)
    assert repository.list_outbox(proposal_id="pp_001")[0].last_error == "NOTIFIER_TRANSPORT_ERROR"

    other = InMemoryProposalRepository()
    other.update_outbox(_notify_message("pom_b"))
    summary = _dispatcher(other, _RaisingNotifier(ValueError("boom"))).dispatch_pending(now=T0)

    assert summary.retried == 1
    assert other.list_outbox(proposal_id="pp_001")[0].last_error == (
        "COLLABORATOR_UNEXPECTED_ERROR: ValueError"
    )


def test_track_analytics_is_recorded_into_timeline():
    analytics = rule(
        "wr_analytics",
        trigger="user_action",
        conditions={"action_name": "request_revision"},
        actions=["track_analytics"],
    )
    service = lifecycle_service(rules=[analytics])
    proposal_id = service.create_proposal(payload=create_request()).proposal.proposal_id
    service.record_user_action(
        proposal_id=proposal_id,
        payload=ProposalUserActionRequest(action_name="request_revision", actor_id="estimator_1"),
    )
    dispatcher = _dispatcher(service.repository, InMemoryNotifier())

    summary = dispatcher.dispatch_pending(now=T0)

    assert summary.delivered == 1
    events = service.get_timeline(proposal_id=proposal_id).events
    assert events[-1].event_type == "analytics"
    assert events[-1].payload["rule_id"] == "wr_analytics"


def test_record_event_for_unknown_proposal_is_not_delivered():
    repository = InMemoryProposalRepository()
    recorder = RepositoryEventRecorder(repository=repository)

    result = recorder.record(
        proposal_id="pp_missing", event_type="analytics", payload={}, actor_id=None
    )

    assert result == DeliveryResult(delivered=False, detail="PROPOSAL_NOT_FOUND")
