from __future__ import annotations

import os

from proposal_lifecycle.api.routers.proposals_config import (
    notifier_backend_name,
    proposal_postgres_dsn,
    proposal_store_backend_name,
)
from proposal_lifecycle.api.routers.workflow_config import (
    workflow_config_backend_name,
    workflow_config_postgres_dsn,
)

_PRODUCTION_PROFILE = "PRODUCTION"
_LOCAL_PROFILE = "LOCAL"


def app_persistence_profile_name() -> str:
    profile = os.getenv("APP_PERSISTENCE_PROFILE", _LOCAL_PROFILE).strip().upper()
    return _PRODUCTION_PROFILE if profile == _PRODUCTION_PROFILE else _LOCAL_PROFILE


def validate_persistence_profile_guardrails() -> None:
    if app_persistence_profile_name() != _PRODUCTION_PROFILE:
        return
    if proposal_store_backend_name() != "POSTGRES":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_PROPOSAL_POSTGRES")
    if not proposal_postgres_dsn():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_PROPOSAL_POSTGRES_DSN")
    if workflow_config_backend_name() != "POSTGRES":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_WORKFLOW_CONFIG_POSTGRES")
    if not workflow_config_postgres_dsn():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_WORKFLOW_CONFIG_POSTGRES_DSN")
    if notifier_backend_name() != "HTTP":
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_HTTP_NOTIFIER")
    if not os.getenv("PROPOSAL_NOTIFIER_URL", "").strip():
        raise RuntimeError("PERSISTENCE_PROFILE_REQUIRES_NOTIFIER_URL")
