from __future__ import annotations

import json
import threading
from typing import Any

from docpipe.db.postgres import PostgresTxRunner, _validate_identifier
from docpipe.models import PipelineRun, utcnow_iso


def _copy(run: PipelineRun) -> PipelineRun:
    return PipelineRun.from_dict(run.to_dict())


class InMemoryPipelineRunsRepository:
    def __init__(self, runs: dict[str, PipelineRun] | None = None) -> None:
        self._runs = {} if runs is None else runs
        self._lock = threading.RLock()

    def upsert(self, *, run: PipelineRun) -> PipelineRun:
        run.updated_at = utcnow_iso()
        with self._lock:
            self._runs[run.id] = _copy(run)
        return run

    def get(self, *, firm_id: str, run_id: str) -> PipelineRun | None:
        with self._lock:
            row = self._runs.get(run_id)
        if row is None or row.firm_id != firm_id:
            return None
        return _copy(row)

    def find_completed_by_hash(
        self,
        *,
        firm_id: str,
        matter_id: str,
        document_hash: str,
        exclude_run_id: str,
    ) -> PipelineRun | None:
        with self._lock:
            for row in self._runs.values():
                if (
                    row.firm_id == firm_id
                    and row.matter_id == matter_id
                    and row.document_hash == document_hash
                    and row.status == "completed"
                    and row.id != exclude_run_id
                ):
                    return _copy(row)
        return None

    def list_for_matter(self, *, firm_id: str, matter_id: str) -> list[PipelineRun]:
        with self._lock:
            rows = [_copy(r) for r in self._runs.values() if r.firm_id == firm_id and r.matter_id == matter_id]
        rows.sort(key=lambda r: r.created_at)
        return rows


class PostgresPipelineRunsRepository:
    """Pipeline runs stored as JSONB payloads; every query is scoped to the firm."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "pipeline_runs") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def upsert(self, *, run: PipelineRun) -> PipelineRun:
        run.updated_at = utcnow_iso()
        sql = f"""
            INSERT INTO {self._table_name} (
                run_id, firm_id, matter_id, document_id, status, document_hash, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(run_id) DO UPDATE
            SET status = EXCLUDED.status,
                document_hash = EXCLUDED.document_hash,
                updated_at = now(),
                payload = EXCLUDED.payload
        """

        def _op(conn: Any) -> PipelineRun:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        run.id,
                        run.firm_id,
                        run.matter_id,
                        run.document_id,
                        run.status,
                        run.document_hash,
                        json.dumps(run.to_dict(), ensure_ascii=True, sort_keys=True),
                    ),
                )
            return run

        return self._tx_runner.run_in_tx(tenant_id=run.firm_id, fn=_op)

    def get(self, *, firm_id: str, run_id: str) -> PipelineRun | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE firm_id = %s AND run_id = %s
            LIMIT 1
        """

        def _op(conn: Any) -> PipelineRun | None:
            with conn.cursor() as cur:
                cur.execute(sql, (firm_id, run_id))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return PipelineRun.from_dict(row[0])

        return self._tx_runner.run_in_tx(tenant_id=firm_id, fn=_op)

    def find_completed_by_hash(
        self,
        *,
        firm_id: str,
        matter_id: str,
        document_hash: str,
        exclude_run_id: str,
    ) -> PipelineRun | None:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE firm_id = %s AND matter_id = %s AND document_hash = %s
              AND status = 'completed' AND run_id <> %s
            LIMIT 1
        """

        def _op(conn: Any) -> PipelineRun | None:
            with conn.cursor() as cur:
                cur.execute(sql, (firm_id, matter_id, document_hash, exclude_run_id))
                row = cur.fetchone()
            if row is None or not isinstance(row[0], dict):
                return None
            return PipelineRun.from_dict(row[0])

        return self._tx_runner.run_in_tx(tenant_id=firm_id, fn=_op)

    def list_for_matter(self, *, firm_id: str, matter_id: str) -> list[PipelineRun]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE firm_id = %s AND matter_id = %s
            ORDER BY payload->>'created_at' ASC
        """

        def _op(conn: Any) -> list[PipelineRun]:
            with conn.cursor() as cur:
                cur.execute(sql, (firm_id, matter_id))
                rows = cur.fetchall() or []
            return [PipelineRun.from_dict(row[0]) for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=firm_id, fn=_op)
