import os
import warnings
from typing import cast

from proposal_lifecycle.api.routers.runtime_utils import env_float, env_int
from proposal_lifecycle.core.outbox import Notifier, NotificationSettings, OutboxDispatcher
from proposal_lifecycle.core.proposals.repository import ProposalRepository
from proposal_lifecycle.infrastructure.notifiers import (
    HttpEmailNotifier,
    InMemoryNotifier,
    RepositoryEventRecorder,
)
from proposal_lifecycle.infrastructure.proposals import (
    InMemoryProposalRepository,
    PostgresProposalRepository,
)


def proposal_store_backend_name() -> str:
    backend = os.getenv("PROPOSAL_STORE_BACKEND", "IN_MEMORY").strip().upper()
    if backend == "POSTGRES":
        return "POSTGRES"
    warnings.warn(
        ("PROPOSAL_STORE_BACKEND legacy runtime backend (IN_MEMORY) is deprecated; use POSTGRES."),
        DeprecationWarning,
        stacklevel=2,
    )
    return "IN_MEMORY"


def proposal_postgres_dsn() -> str:
    return os.getenv("PROPOSAL_POSTGRES_DSN", "").strip()


def postgres_connection_exception_types() -> tuple[type[BaseException], ...]:
    types: list[type[BaseException]] = [
        ConnectionError,
        OSError,
        TimeoutError,
        TypeError,
        ValueError,
    ]
    try:
        import psycopg
    except ImportError:
        pass
    else:
        types.append(psycopg.Error)
    return tuple(types)


def build_repository() -> ProposalRepository:
    backend = proposal_store_backend_name()
    if backend == "POSTGRES":
        dsn = proposal_postgres_dsn()
        if not dsn:
            raise RuntimeError("PROPOSAL_POSTGRES_DSN_REQUIRED")
        try:
            return cast(ProposalRepository, PostgresProposalRepository(dsn=dsn))
        except RuntimeError:
            raise
        except postgres_connection_exception_types() as exc:
            raise RuntimeError("PROPOSAL_POSTGRES_CONNECTION_FAILED") from exc
    return cast(ProposalRepository, InMemoryProposalRepository())


def notifier_backend_name() -> str:
    backend = os.getenv("PROPOSAL_NOTIFIER_BACKEND", "IN_MEMORY").strip().upper()
    return "HTTP" if backend == "HTTP" else "IN_MEMORY"


def build_notifier() -> Notifier:
    if notifier_backend_name() == "HTTP":
        return HttpEmailNotifier(
            url=os.getenv("PROPOSAL_NOTIFIER_URL", "").strip(),
            timeout_seconds=env_float("PROPOSAL_NOTIFIER_TIMEOUT_SECONDS", 10.0, minimum=0.1),
        )
    return InMemoryNotifier()


def notification_settings_from_env() -> NotificationSettings:
    defaults = NotificationSettings()
    return NotificationSettings(
        sender=os.getenv("PROPOSAL_NOTIFIER_FROM", defaults.sender).strip(),
        manager_address=os.getenv(
            "PROPOSAL_MANAGER_ADDRESS", defaults.manager_address
        ).strip(),
        portal_base_url=os.getenv(
            "PROPOSAL_PORTAL_BASE_URL", defaults.portal_base_url
        ).strip(),
        company_name=os.getenv("PROPOSAL_COMPANY_NAME", defaults.company_name).strip(),
    )


def build_outbox_dispatcher(
    *, repository: ProposalRepository, notifier: Notifier
) -> OutboxDispatcher:
    return OutboxDispatcher(
        store=repository,
        notifier=notifier,
        event_recorder=RepositoryEventRecorder(repository=repository),
        max_attempts=env_int("PROPOSAL_OUTBOX_MAX_ATTEMPTS", 5),
        base_delay_seconds=env_float("PROPOSAL_OUTBOX_BASE_DELAY_SECONDS", 30.0),
        max_delay_seconds=env_float("PROPOSAL_OUTBOX_MAX_DELAY_SECONDS", 3600.0),
        batch_size=env_int("PROPOSAL_OUTBOX_BATCH_SIZE", 100),
    )
