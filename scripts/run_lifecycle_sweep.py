"""
Run one lifecycle sweep pass and drain the outbox.

Meant to be invoked periodically (cron, k8s CronJob). Expires overdue
proposals, applies approval timeouts, fires time-based rules, then delivers
whatever the sweep enqueued.
"""

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from proposal_lifecycle.api.observability import configure_logging  # noqa: E402
from proposal_lifecycle.api.routers.proposals import (  # noqa: E402
    get_outbox_dispatcher,
    get_proposal_lifecycle_service,
)

logger = logging.getLogger("proposal_lifecycle.sweep")


def _parse_now(value: str | None) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run the proposal lifecycle sweep once.")
    parser.add_argument(
        "--now",
        default=None,
        help="Override the sweep clock with an ISO8601 timestamp.",
    )
    parser.add_argument(
        "--skip-outbox",
        action="store_true",
        help="Do not drain the outbox after the sweep.",
    )
    parser.add_argument("--log-level", default=None, help="Root log level.")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)
    now = _parse_now(args.now)

    service = get_proposal_lifecycle_service()
    report = service.run_sweep(now=now)
    result = {"sweep": report.model_dump(mode="json")}
    if not args.skip_outbox:
        summary = get_outbox_dispatcher().dispatch_pending(now=now)
        result["outbox"] = summary.model_dump(mode="json")
    logger.info("lifecycle sweep run completed", extra={"extra_fields": result})
    print(json.dumps(result, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
