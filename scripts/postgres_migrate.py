import argparse
import os
import sys
from importlib.util import find_spec
from pathlib import Path

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Apply forward-only PostgreSQL migrations for proposal and workflow stores."
    )
    parser.add_argument(
        "--target",
        choices=["proposals", "workflow", "all"],
        default="all",
        help="Migration target namespace.",
    )
    parser.add_argument(
        "--proposals-dsn",
        default=os.getenv("PROPOSAL_POSTGRES_DSN", "").strip(),
        help="PostgreSQL DSN for proposal lifecycle migrations.",
    )
    parser.add_argument(
        "--workflow-dsn",
        default=(
            os.getenv("WORKFLOW_CONFIG_POSTGRES_DSN", "").strip()
            or os.getenv("PROPOSAL_POSTGRES_DSN", "").strip()
        ),
        help="PostgreSQL DSN for workflow configuration migrations.",
    )
    args = parser.parse_args(argv)

    targets = resolve_targets(args.target, args.proposals_dsn, args.workflow_dsn)
    for namespace, dsn in targets:
        if not dsn:
            raise RuntimeError(f"POSTGRES_MIGRATION_DSN_REQUIRED:{namespace}")

    if find_spec("psycopg") is None:
        raise RuntimeError("POSTGRES_MIGRATION_DRIVER_MISSING")
    import psycopg
    from psycopg.rows import dict_row

    from proposal_lifecycle.infrastructure.postgres_migrations import apply_postgres_migrations

    for namespace, dsn in targets:
        with psycopg.connect(dsn, row_factory=dict_row) as connection:
            applied = apply_postgres_migrations(connection=connection, namespace=namespace)
        print(
            f"Applied migrations for namespace={namespace} "
            f"versions={','.join(applied) if applied else 'none'}"
        )
    return 0


def resolve_targets(
    target: str, proposals_dsn: str, workflow_dsn: str
) -> list[tuple[str, str]]:
    if target == "proposals":
        return [("proposals", proposals_dsn)]
    if target == "workflow":
        return [("workflow", workflow_dsn)]
    return [("proposals", proposals_dsn), ("workflow", workflow_dsn)]


if __name__ == "__main__":
    raise SystemExit(main())
