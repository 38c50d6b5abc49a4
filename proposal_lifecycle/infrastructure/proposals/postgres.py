import json
from contextlib import closing
from datetime import datetime
from importlib.util import find_spec
from typing import Any, Optional, Sequence

from proposal_lifecycle.core.common.errors import ProposalConflictError
from proposal_lifecycle.core.common.statuses import ProposalStatus
from proposal_lifecycle.core.outbox.models import OutboxMessage
from proposal_lifecycle.core.proposals.models import (
    ProposalEventRecord,
    ProposalRecord,
    ProposalVersionRecord,
)
from proposal_lifecycle.core.proposals.repository import (
    DETAIL_FIELDS,
    STATUS_FIELDS,
    VERSION_FIELDS,
    merge_fields,
)
from proposal_lifecycle.core.workflow.approvals import ApprovalInstance
from proposal_lifecycle.infrastructure.postgres_migrations import apply_postgres_migrations


class PostgresProposalRepository:
    def __init__(self, *, dsn: str) -> None:
        if not dsn:
            raise RuntimeError("PROPOSAL_POSTGRES_DSN_REQUIRED")
        if find_spec("psycopg") is None:
            raise RuntimeError("PROPOSAL_POSTGRES_DRIVER_MISSING")
        self._dsn = dsn
        self._init_db()

    def create_proposal(
        self,
        *,
        proposal: ProposalRecord,
        version: ProposalVersionRecord,
        event: ProposalEventRecord,
    ) -> None:
        query = """
            INSERT INTO proposal_records (
                proposal_id,
                status,
                created_by,
                created_at,
                current_version_id,
                proposal_json
            ) VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
        """
        with closing(self._connect()) as connection:
            try:
                _execute_checked(
                    connection,
                    query,
                    (
                        proposal.proposal_id,
                        proposal.status,
                        proposal.created_by,
                        proposal.created_at.isoformat(),
                        proposal.current_version_id,
                        _json_dump(proposal.model_dump(mode="json")),
                    ),
                    error="PROPOSAL_ALREADY_EXISTS",
                )
                self._insert_version(connection=connection, version=version)
                self._insert_events(connection=connection, events=[event])
            except Exception:
                connection.rollback()
                raise
            connection.commit()

    def get_proposal(self, *, proposal_id: str) -> Optional[ProposalRecord]:
        query = """
            SELECT proposal_json
            FROM proposal_records
            WHERE proposal_id = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (proposal_id,)).fetchone()
        return _to_proposal(row)

    def list_proposals(
        self,
        *,
        status: Optional[ProposalStatus],
        created_by: Optional[str],
        limit: int,
        cursor: Optional[str],
    ) -> tuple[list[ProposalRecord], Optional[str]]:
        where_clauses = []
        args: list[str] = []
        if status is not None:
            where_clauses.append("status = %s")
            args.append(status)
        if created_by is not None:
            where_clauses.append("created_by = %s")
            args.append(created_by)
        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
        query = f"""
            SELECT proposal_json
            FROM proposal_records
            {where_sql}
            ORDER BY created_at DESC, proposal_id DESC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, tuple(args)).fetchall()
        proposals = [proposal for proposal in map(_to_proposal, rows) if proposal is not None]
        if cursor:
            cursor_index = next(
                (
                    index
                    for index, proposal in enumerate(proposals)
                    if proposal.proposal_id == cursor
                ),
                None,
            )
            if cursor_index is None:
                return [], None
            proposals = proposals[cursor_index + 1 :]
        page = proposals[:limit]
        next_cursor = page[-1].proposal_id if len(proposals) > limit else None
        return page, next_cursor

    def list_open_proposals(self) -> list[ProposalRecord]:
        query = """
            SELECT proposal_json
            FROM proposal_records
            WHERE status NOT IN ('signed', 'rejected', 'expired')
            ORDER BY created_at ASC, proposal_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query).fetchall()
        return [proposal for proposal in map(_to_proposal, rows) if proposal is not None]

    def commit_version(
        self,
        *,
        proposal: ProposalRecord,
        version: ProposalVersionRecord,
        base_version_id: str,
        event: ProposalEventRecord,
    ) -> None:
        retire_query = """
            UPDATE proposal_versions
            SET is_current = FALSE
            WHERE version_id = %s AND proposal_id = %s AND is_current = TRUE
        """
        with closing(self._connect()) as connection:
            try:
                _execute_checked(
                    connection,
                    retire_query,
                    (base_version_id, proposal.proposal_id),
                    error="VERSION_CONFLICT: base_version_id is not current",
                )
                self._insert_version(connection=connection, version=version)
                self._update_proposal(
                    connection=connection,
                    proposal=proposal,
                    fields=VERSION_FIELDS,
                    guard_field="current_version_id",
                    guard_value=base_version_id,
                    error="VERSION_CONFLICT: base_version_id is not current",
                )
                self._insert_events(connection=connection, events=[event])
            except Exception:
                connection.rollback()
                raise
            connection.commit()

    def get_version(self, *, version_id: str) -> Optional[ProposalVersionRecord]:
        query = """
            SELECT is_current, version_json
            FROM proposal_versions
            WHERE version_id = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (version_id,)).fetchone()
        return _to_version(row)

    def get_current_version(self, *, proposal_id: str) -> Optional[ProposalVersionRecord]:
        query = """
            SELECT is_current, version_json
            FROM proposal_versions
            WHERE proposal_id = %s AND is_current = TRUE
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (proposal_id,)).fetchone()
        return _to_version(row)

    def list_versions(
        self, *, proposal_id: str, offset: int, limit: int
    ) -> tuple[list[ProposalVersionRecord], int]:
        query = """
            SELECT is_current, version_json
            FROM proposal_versions
            WHERE proposal_id = %s
            ORDER BY version_number DESC
            LIMIT %s OFFSET %s
        """
        count_query = """
            SELECT COUNT(*) AS total_count
            FROM proposal_versions
            WHERE proposal_id = %s
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (proposal_id, limit, offset)).fetchall()
            count_row = connection.execute(count_query, (proposal_id,)).fetchone()
        versions = [version for version in map(_to_version, rows) if version is not None]
        return versions, int(count_row["total_count"]) if count_row else 0

    def transition_proposal(
        self,
        *,
        proposal: ProposalRecord,
        expected_status: ProposalStatus,
        events: Sequence[ProposalEventRecord],
        approval: Optional[ApprovalInstance] = None,
        expected_approval_revision: Optional[int] = None,
        outbox: Sequence[OutboxMessage] = (),
    ) -> None:
        with closing(self._connect()) as connection:
            try:
                self._update_proposal(
                    connection=connection,
                    proposal=proposal,
                    fields=STATUS_FIELDS,
                    guard_field="status",
                    guard_value=expected_status,
                    error="STATE_CONFLICT: status changed concurrently",
                )
                if approval is not None:
                    self._write_approval(
                        connection=connection,
                        approval=approval,
                        expected_revision=expected_approval_revision,
                    )
                self._insert_events(connection=connection, events=events)
                self._insert_outbox(connection=connection, messages=outbox)
            except Exception:
                connection.rollback()
                raise
            connection.commit()

    def update_details(
        self,
        *,
        proposal: ProposalRecord,
        expected_updated_at: datetime,
        event: ProposalEventRecord,
    ) -> None:
        with closing(self._connect()) as connection:
            try:
                self._update_proposal(
                    connection=connection,
                    proposal=proposal,
                    fields=DETAIL_FIELDS,
                    guard_field="updated_at",
                    guard_value=expected_updated_at,
                    error="STATE_CONFLICT: proposal changed concurrently",
                )
                self._insert_events(connection=connection, events=[event])
            except Exception:
                connection.rollback()
                raise
            connection.commit()

    def save_approval(
        self,
        *,
        approval: ApprovalInstance,
        expected_revision: int,
        events: Sequence[ProposalEventRecord] = (),
        outbox: Sequence[OutboxMessage] = (),
    ) -> None:
        with closing(self._connect()) as connection:
            try:
                self._write_approval(
                    connection=connection,
                    approval=approval,
                    expected_revision=expected_revision,
                )
                self._insert_events(connection=connection, events=events)
                self._insert_outbox(connection=connection, messages=outbox)
            except Exception:
                connection.rollback()
                raise
            connection.commit()

    def get_approval(self, *, instance_id: str) -> Optional[ApprovalInstance]:
        query = """
            SELECT approval_json
            FROM proposal_approvals
            WHERE instance_id = %s
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (instance_id,)).fetchone()
        return _to_approval(row)

    def get_active_approval(self, *, proposal_id: str) -> Optional[ApprovalInstance]:
        query = """
            SELECT approval_json
            FROM proposal_approvals
            WHERE proposal_id = %s AND overall = 'in_progress'
        """
        with closing(self._connect()) as connection:
            row = connection.execute(query, (proposal_id,)).fetchone()
        return _to_approval(row)

    def list_approvals(self, *, proposal_id: str) -> list[ApprovalInstance]:
        query = """
            SELECT approval_json
            FROM proposal_approvals
            WHERE proposal_id = %s
            ORDER BY created_at ASC, instance_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (proposal_id,)).fetchall()
        return [approval for approval in map(_to_approval, rows) if approval is not None]

    def list_active_approvals(self) -> list[ApprovalInstance]:
        query = """
            SELECT approval_json
            FROM proposal_approvals
            WHERE overall = 'in_progress'
            ORDER BY created_at ASC, instance_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query).fetchall()
        return [approval for approval in map(_to_approval, rows) if approval is not None]

    def append_events(
        self,
        *,
        events: Sequence[ProposalEventRecord],
        outbox: Sequence[OutboxMessage] = (),
    ) -> None:
        with closing(self._connect()) as connection:
            try:
                self._insert_events(connection=connection, events=events)
                self._insert_outbox(connection=connection, messages=outbox)
            except Exception:
                connection.rollback()
                raise
            connection.commit()

    def list_events(self, *, proposal_id: str) -> list[ProposalEventRecord]:
        query = """
            SELECT event_json
            FROM proposal_events
            WHERE proposal_id = %s
            ORDER BY event_seq ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (proposal_id,)).fetchall()
        return [ProposalEventRecord.model_validate(_json_load(row["event_json"])) for row in rows]

    def list_pending_outbox(self, *, now: datetime, limit: int) -> list[OutboxMessage]:
        query = """
            SELECT message_json
            FROM proposal_outbox
            WHERE status = 'pending' AND next_attempt_at <= %s
            ORDER BY next_attempt_at ASC, created_at ASC, message_id ASC
            LIMIT %s
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (now.isoformat(), limit)).fetchall()
        return [_to_outbox(row) for row in rows]

    def list_outbox(self, *, proposal_id: str) -> list[OutboxMessage]:
        query = """
            SELECT message_json
            FROM proposal_outbox
            WHERE proposal_id = %s
            ORDER BY created_at ASC, message_id ASC
        """
        with closing(self._connect()) as connection:
            rows = connection.execute(query, (proposal_id,)).fetchall()
        return [_to_outbox(row) for row in rows]

    def update_outbox(self, message: OutboxMessage) -> None:
        query = """
            UPDATE proposal_outbox
            SET status = %s, attempts = %s, next_attempt_at = %s, message_json = %s
            WHERE message_id = %s
        """
        with closing(self._connect()) as connection:
            connection.execute(
                query,
                (
                    message.status,
                    message.attempts,
                    message.next_attempt_at.isoformat(),
                    _json_dump(message.model_dump(mode="json")),
                    message.message_id,
                ),
            )
            connection.commit()

    def _connect(self) -> Any:
        psycopg, dict_row = _import_psycopg()
        return psycopg.connect(self._dsn, row_factory=dict_row)

    def _init_db(self) -> None:
        with closing(self._connect()) as connection:
            apply_postgres_migrations(connection=connection, namespace="proposals")

    def _update_proposal(
        self,
        *,
        connection: Any,
        proposal: ProposalRecord,
        fields: Sequence[str],
        guard_field: str,
        guard_value: Any,
        error: str,
    ) -> None:
        lock_query = """
            SELECT proposal_json
            FROM proposal_records
            WHERE proposal_id = %s
            FOR UPDATE
        """
        stored = _to_proposal(connection.execute(lock_query, (proposal.proposal_id,)).fetchone())
        if stored is None or getattr(stored, guard_field) != guard_value:
            raise ProposalConflictError(error)
        merged = merge_fields(stored, proposal, fields)
        query = """
            UPDATE proposal_records
            SET status = %s, current_version_id = %s, proposal_json = %s
            WHERE proposal_id = %s
        """
        _execute_checked(
            connection,
            query,
            (
                merged.status,
                merged.current_version_id,
                _json_dump(merged.model_dump(mode="json")),
                merged.proposal_id,
            ),
            error=error,
        )

    def _insert_version(self, *, connection: Any, version: ProposalVersionRecord) -> None:
        query = """
            INSERT INTO proposal_versions (
                version_id,
                proposal_id,
                version_number,
                is_current,
                created_at,
                version_json
            ) VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
        """
        _execute_checked(
            connection,
            query,
            (
                version.version_id,
                version.proposal_id,
                version.version_number,
                version.is_current,
                version.created_at.isoformat(),
                _json_dump(version.model_dump(mode="json", exclude={"is_current"})),
            ),
            error="VERSION_CONFLICT: version number already taken",
        )

    def _write_approval(
        self,
        *,
        connection: Any,
        approval: ApprovalInstance,
        expected_revision: Optional[int],
    ) -> None:
        approval_json = _json_dump(approval.model_dump(mode="json"))
        if expected_revision is None:
            query = """
                INSERT INTO proposal_approvals (
                    instance_id,
                    proposal_id,
                    overall,
                    revision,
                    created_at,
                    approval_json
                ) VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT DO NOTHING
            """
            _execute_checked(
                connection,
                query,
                (
                    approval.instance_id,
                    approval.proposal_id,
                    approval.overall,
                    approval.revision,
                    approval.created_at.isoformat(),
                    approval_json,
                ),
                error="APPROVAL_CONFLICT: active chain exists",
            )
            return
        query = """
            UPDATE proposal_approvals
            SET overall = %s, revision = %s, approval_json = %s
            WHERE instance_id = %s AND revision = %s
        """
        _execute_checked(
            connection,
            query,
            (
                approval.overall,
                approval.revision,
                approval_json,
                approval.instance_id,
                expected_revision,
            ),
            error="APPROVAL_CONFLICT: revision mismatch",
        )

    def _insert_events(self, *, connection: Any, events: Sequence[ProposalEventRecord]) -> None:
        query = """
            INSERT INTO proposal_events (
                event_id,
                proposal_id,
                event_type,
                occurred_at,
                event_json
            ) VALUES (%s, %s, %s, %s, %s)
        """
        for event in events:
            connection.execute(
                query,
                (
                    event.event_id,
                    event.proposal_id,
                    event.event_type,
                    event.occurred_at.isoformat(),
                    _json_dump(event.model_dump(mode="json")),
                ),
            )

    def _insert_outbox(self, *, connection: Any, messages: Sequence[OutboxMessage]) -> None:
        query = """
            INSERT INTO proposal_outbox (
                message_id,
                proposal_id,
                channel,
                status,
                attempts,
                next_attempt_at,
                created_at,
                message_json
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """
        for message in messages:
            connection.execute(
                query,
                (
                    message.message_id,
                    message.proposal_id,
                    message.channel,
                    message.status,
                    message.attempts,
                    message.next_attempt_at.isoformat(),
                    message.created_at.isoformat(),
                    _json_dump(message.model_dump(mode="json")),
                ),
            )


def _import_psycopg() -> tuple[Any, Any]:
    import psycopg
    from psycopg.rows import dict_row

    return psycopg, dict_row


def _execute_checked(connection: Any, query: str, args: tuple[Any, ...], *, error: str) -> None:
    cursor = connection.execute(query, args)
    if int(cursor.rowcount) != 1:
        raise ProposalConflictError(error)


def _json_dump(value: dict[str, Any]) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True)


def _json_load(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return json.loads(value)


def _to_proposal(row: Any) -> Optional[ProposalRecord]:
    if row is None:
        return None
    return ProposalRecord.model_validate(_json_load(row["proposal_json"]))


def _to_version(row: Any) -> Optional[ProposalVersionRecord]:
    if row is None:
        return None
    payload = _json_load(row["version_json"])
    payload["is_current"] = bool(row["is_current"])
    return ProposalVersionRecord.model_validate(payload)


def _to_approval(row: Any) -> Optional[ApprovalInstance]:
    if row is None:
        return None
    return ApprovalInstance.model_validate(_json_load(row["approval_json"]))


def _to_outbox(row: Any) -> OutboxMessage:
    return OutboxMessage.model_validate(_json_load(row["message_json"]))
