from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction scoped to a firm."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(
        self,
        *,
        tenant_id: str,
        fn: Callable[[Any], Any],
    ) -> Any:
        if not tenant_id.strip():
            raise ValueError("tenant_id must not be empty")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT set_config('app.current_firm', %s, true)", (tenant_id,))
            result = fn(conn)
            conn.commit()
            return result


PIPELINE_TABLES: tuple[str, ...] = (
    "pipeline_runs",
    "pipeline_findings",
    "pipeline_actions",
    "pipeline_dlq_entries",
    "pipeline_documents",
    "pipeline_matters",
    "pipeline_tasks",
    "pipeline_timeline_events",
)

PIPELINE_SCHEMA_SQL: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS pipeline_runs (
        run_id TEXT PRIMARY KEY,
        firm_id TEXT NOT NULL,
        matter_id TEXT NOT NULL,
        document_id TEXT NOT NULL,
        status TEXT NOT NULL,
        document_hash TEXT,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        payload JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS pipeline_runs_matter_hash_idx ON pipeline_runs (firm_id, matter_id, document_hash)",
    """
    CREATE TABLE IF NOT EXISTS pipeline_findings (
        finding_id TEXT PRIMARY KEY,
        firm_id TEXT NOT NULL,
        matter_id TEXT NOT NULL,
        run_id TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        payload JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS pipeline_findings_run_idx ON pipeline_findings (firm_id, run_id)",
    "CREATE INDEX IF NOT EXISTS pipeline_findings_matter_idx ON pipeline_findings (firm_id, matter_id)",
    """
    CREATE TABLE IF NOT EXISTS pipeline_actions (
        action_id TEXT PRIMARY KEY,
        firm_id TEXT NOT NULL,
        run_id TEXT NOT NULL,
        priority INTEGER NOT NULL DEFAULT 0,
        payload JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS pipeline_actions_run_idx ON pipeline_actions (firm_id, run_id)",
    """
    CREATE TABLE IF NOT EXISTS pipeline_dlq_entries (
        seq BIGSERIAL PRIMARY KEY,
        job_id TEXT NOT NULL,
        firm_id TEXT NOT NULL,
        stage TEXT NOT NULL,
        payload JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS pipeline_dlq_entries_stage_idx ON pipeline_dlq_entries (stage, seq)",
    """
    CREATE TABLE IF NOT EXISTS pipeline_documents (
        document_id TEXT PRIMARY KEY,
        firm_id TEXT NOT NULL,
        matter_id TEXT NOT NULL,
        mime_type TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        payload JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS pipeline_documents_matter_idx ON pipeline_documents (firm_id, matter_id)",
    """
    CREATE TABLE IF NOT EXISTS pipeline_matters (
        matter_id TEXT PRIMARY KEY,
        firm_id TEXT NOT NULL,
        practice_area TEXT,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        payload JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pipeline_tasks (
        task_id TEXT PRIMARY KEY,
        firm_id TEXT NOT NULL,
        matter_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        payload JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS pipeline_tasks_matter_idx ON pipeline_tasks (firm_id, matter_id)",
    """
    CREATE TABLE IF NOT EXISTS pipeline_timeline_events (
        seq BIGSERIAL PRIMARY KEY,
        event_id TEXT NOT NULL UNIQUE,
        firm_id TEXT NOT NULL,
        matter_id TEXT NOT NULL,
        occurred_at TEXT NOT NULL,
        payload JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS pipeline_timeline_events_matter_idx ON pipeline_timeline_events (firm_id, matter_id, seq)",
)


class PostgresSchemaManager:
    """Create the pipeline tables; every statement is idempotent."""

    def __init__(self, dsn: str, *, statements: tuple[str, ...] = PIPELINE_SCHEMA_SQL) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()
        self._statements = statements

    def apply(self) -> int:
        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor() as cur:
                for statement in self._statements:
                    cur.execute(statement)
            conn.commit()
        return len(self._statements)
