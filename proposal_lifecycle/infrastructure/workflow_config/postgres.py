import json
from contextlib import closing
from datetime import datetime, timezone
from importlib.util import find_spec
from typing import Any, Optional

from proposal_lifecycle.core.workflow.approvals import ApprovalStepTemplate
from proposal_lifecycle.core.workflow.rules import WorkflowRule
from proposal_lifecycle.infrastructure.postgres_migrations import apply_postgres_migrations


class PostgresWorkflowConfigRepository:
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("WORKFLOW_CONFIG_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("WORKFLOW_CONFIG_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._init_db()

    def list_rules(self) -> list[WorkflowRule]:
        query = """
            SELECT rule_json
            FROM workflow_rules
            ORDER BY priority ASC, rule_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query).fetchall()
        return [_row_to_rule(row) for row in rows]

    def get_rule(self, *, rule_id: str) -> Optional[WorkflowRule]:
        query = """
            SELECT rule_json
            FROM workflow_rules
            WHERE rule_id = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (rule_id,)).fetchone()
        if row is None:
            return None
        return _row_to_rule(row)

    def upsert_rule(self, rule: WorkflowRule) -> None:
        query = """
            INSERT INTO workflow_rules (
                rule_id,
                priority,
                active,
                rule_json,
                created_at,
                updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (rule_id) DO UPDATE SET
                priority=excluded.priority,
                active=excluded.active,
                rule_json=excluded.rule_json,
                updated_at=excluded.updated_at
        """
        now = datetime.now(timezone.utc).isoformat()
        with closing(self._connect()) as connection:
            connection.execute(
                query,
                (
                    rule.rule_id,
                    rule.priority,
                    rule.active,
                    _json_dump(rule.model_dump(mode="json")),
                    now,
                    now,
                ),
            )
            connection.commit()

    def delete_rule(self, *, rule_id: str) -> bool:
        query = "DELETE FROM workflow_rules WHERE rule_id = %s"
        with closing(self._connect()) as connection:
            cursor = connection.execute(query, (rule_id,))
            connection.commit()
            return int(cursor.rowcount) > 0

    def list_approval_steps(self) -> list[ApprovalStepTemplate]:
        query = """
            SELECT step_json
            FROM workflow_approval_steps
            ORDER BY position ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query).fetchall()
        return [ApprovalStepTemplate.model_validate(_json_load(row["step_json"])) for row in rows]

    def replace_approval_steps(self, steps: list[ApprovalStepTemplate]) -> None:
        insert_query = """
            INSERT INTO workflow_approval_steps (
                step_id,
                position,
                step_json,
                updated_at
            ) VALUES (%s, %s, %s, %s)
        """
        now = datetime.now(timezone.utc).isoformat()
        with closing(self._connect()) as connection:
            try:
                connection.execute("DELETE FROM workflow_approval_steps")
                for position, step in enumerate(steps):
                    connection.execute(
                        insert_query,
                        (
                            step.step_id,
                            position,
                            _json_dump(step.model_dump(mode="json")),
                            now,
                        ),
                    )
            except Exception:
                connection.rollback()
                raise
            connection.commit()

    def _connect(self) -> Any:
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace="workflow")


def _import_psycopg() -> tuple[Any, Any]:
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _row_to_rule(row: Any) -> WorkflowRule:
    return WorkflowRule.model_validate(_json_load(row["rule_json"]))


def _json_load(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return json.loads(value)


def _json_dump(value: dict[str, Any]) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)
