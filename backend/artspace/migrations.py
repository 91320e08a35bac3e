"""Apply ``db/schema.sql`` once per content hash at startup."""

from __future__ import annotations

import hashlib
import logging
import os
from pathlib import Path
from typing import Iterable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

LOGGER = logging.getLogger(__name__)


def _detect_schema_path() -> Path:
    """Locate ``db/schema.sql`` in the nearest parent directory that has one."""

    env_override = os.environ.get("APP_SCHEMA_PATH")
    if env_override:
        return Path(env_override)

    current = Path(__file__).resolve()
    for parent in current.parents:
        candidate = parent / "db" / "schema.sql"
        if candidate.exists():
            return candidate
    return current.parents[2] / "db" / "schema.sql"


SCHEMA_PATH = _detect_schema_path()

_MIGRATION_TABLE_SQL = (
    "CREATE TABLE IF NOT EXISTS app_schema_migrations ("
    " schema_hash text PRIMARY KEY,"
    " applied_at timestamptz NOT NULL DEFAULT now()"
    ")"
)


def _load_schema_sql(path: Path = SCHEMA_PATH) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:  # pragma: no cover - developer misconfiguration
        raise RuntimeError(f"Database schema file not found at {path}") from exc


def split_statements(schema_sql: str) -> Iterable[str]:
    """Split a schema file into statements, dropping ``--`` comment lines."""

    lines = (line for line in schema_sql.splitlines() if not line.lstrip().startswith("--"))
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


def schema_hash(schema_sql: str) -> str:
    return hashlib.sha256(schema_sql.encode("utf-8")).hexdigest()


async def ensure_schema(engine: AsyncEngine, path: Path = SCHEMA_PATH) -> tuple[bool, int]:
    """Apply the schema SQL file if this exact version has not been applied yet."""

    schema_sql = _load_schema_sql(path)
    statements = list(split_statements(schema_sql))
    if not statements:
        return False, 0

    digest = schema_hash(schema_sql)

    async with engine.begin() as conn:
        await conn.exec_driver_sql(_MIGRATION_TABLE_SQL)

        result = await conn.execute(
            text("SELECT 1 FROM app_schema_migrations WHERE schema_hash = :schema_hash"),
            {"schema_hash": digest},
        )
        if result.first() is not None:
            LOGGER.debug("Database schema already applied (hash=%s)", digest)
            return False, 0

        for statement in statements:
            await conn.exec_driver_sql(statement)

        insert_result = await conn.execute(
            text(
                "INSERT INTO app_schema_migrations (schema_hash)"
                " VALUES (:schema_hash)"
                " ON CONFLICT DO NOTHING"
            ),
            {"schema_hash": digest},
        )

    if insert_result.rowcount and insert_result.rowcount > 0:
        LOGGER.info("Applied database schema (%d statements, hash=%s)", len(statements), digest)
        return True, len(statements)

    LOGGER.debug("Database schema already applied by another process (hash=%s)", digest)
    return False, 0
