from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

MIGRATIONS_ROOT = Path(__file__).with_name("postgres_migrations")
NAMESPACES = ("proposals", "workflow")


@dataclass(frozen=True)
class PostgresMigration:
    version: str
    sql_path: Path
    checksum: str

    def read_sql(self) -> str:
        return self.sql_path.read_text(encoding="utf-8")


def discover_migrations(*, namespace: str) -> list[PostgresMigration]:
    namespace_path = MIGRATIONS_ROOT / namespace
    if not namespace_path.is_dir():
        raise RuntimeError(f"POSTGRES_MIGRATIONS_NAMESPACE_NOT_FOUND:{namespace}")
    migrations = []
    for sql_path in sorted(namespace_path.glob("*.sql")):
        checksum = hashlib.sha256(sql_path.read_bytes()).hexdigest()
        migrations.append(
            PostgresMigration(
                version=sql_path.stem.split("_", maxsplit=1)[0],
                sql_path=sql_path,
                checksum=checksum,
            )
        )
    return migrations


def apply_postgres_migrations(*, connection: Any, namespace: str) -> list[str]:
    """Apply pending forward-only migrations for ``namespace`` under an advisory lock.

    Returns the versions applied by this call. Raises when a recorded checksum
    no longer matches the file on disk.
    """
    lock_key = migration_lock_key(namespace=namespace)
    connection.execute("SELECT pg_advisory_lock(%s::bigint)", (lock_key,))
    try:
        applied = _apply_pending(connection=connection, namespace=namespace)
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.execute("SELECT pg_advisory_unlock(%s::bigint)", (lock_key,))
    return applied


def migration_lock_key(*, namespace: str) -> int:
    digest = hashlib.sha256(f"proposal-lifecycle:{namespace}".encode("utf-8")).digest()[:8]
    return int.from_bytes(digest, byteorder="big", signed=True)


def _apply_pending(*, connection: Any, namespace: str) -> list[str]:
    migrations = discover_migrations(namespace=namespace)
    connection.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            namespace TEXT NOT NULL,
            checksum TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
        """
    )
    recorded = _recorded_checksums(connection=connection, namespace=namespace)
    applied: list[str] = []
    for migration in migrations:
        recorded_checksum = recorded.get(migration.version)
        if recorded_checksum is not None:
            if recorded_checksum != migration.checksum:
                raise RuntimeError(
                    f"POSTGRES_MIGRATION_CHECKSUM_MISMATCH:{namespace}:{migration.version}"
                )
            continue
        for statement in _split_statements(migration.read_sql()):
            connection.execute(statement)
        connection.execute(
            """
            INSERT INTO schema_migrations (
                version,
                namespace,
                checksum,
                applied_at
            ) VALUES (%s, %s, %s, %s)
            """,
            (
                f"{namespace}:{migration.version}",
                namespace,
                migration.checksum,
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        applied.append(migration.version)
    connection.commit()
    return applied


def _recorded_checksums(*, connection: Any, namespace: str) -> dict[str, str]:
    rows = connection.execute(
        """
        SELECT version, checksum
        FROM schema_migrations
        WHERE namespace = %s
        ORDER BY version ASC
        """,
        (namespace,),
    ).fetchall()
    prefix = f"{namespace}:"
    recorded: dict[str, str] = {}
    for row in rows:
        version = str(row["version"]).removeprefix(prefix)
        recorded[version] = str(row["checksum"])
    return recorded


def _split_statements(sql: str) -> list[str]:
    return [statement.strip() for statement in sql.split(";") if statement.strip()]
