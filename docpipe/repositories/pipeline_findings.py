from __future__ import annotations

import json
import threading
from typing import Any

from docpipe.db.postgres import PostgresTxRunner, _validate_identifier
from docpipe.models import PipelineFinding


def _copy(finding: PipelineFinding) -> PipelineFinding:
    return PipelineFinding.from_dict(finding.to_dict())


class InMemoryPipelineFindingsRepository:
    def __init__(self, findings: dict[str, PipelineFinding] | None = None) -> None:
        self._findings = {} if findings is None else findings
        self._lock = threading.RLock()

    def insert_many(self, *, findings: list[PipelineFinding]) -> list[PipelineFinding]:
        with self._lock:
            for finding in findings:
                self._findings[finding.id] = _copy(finding)
        return list(findings)

    def update(self, *, finding: PipelineFinding) -> PipelineFinding:
        with self._lock:
            self._findings[finding.id] = _copy(finding)
        return finding

    def list_for_run(self, *, firm_id: str, run_id: str, status: str | None = None) -> list[PipelineFinding]:
        with self._lock:
            rows = [
                _copy(f)
                for f in self._findings.values()
                if f.firm_id == firm_id and f.run_id == run_id and (status is None or f.status == status)
            ]
        rows.sort(key=lambda f: f.created_at)
        return rows

    def list_for_matter(self, *, firm_id: str, matter_id: str) -> list[PipelineFinding]:
        with self._lock:
            rows = [_copy(f) for f in self._findings.values() if f.firm_id == firm_id and f.matter_id == matter_id]
        rows.sort(key=lambda f: f.created_at)
        return rows


class PostgresPipelineFindingsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "pipeline_findings") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def _upsert_sql(self) -> str:
        return f"""
            INSERT INTO {self._table_name} (
                finding_id, firm_id, matter_id, run_id, status, created_at, payload
            ) VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(finding_id) DO UPDATE
            SET status = EXCLUDED.status,
                payload = EXCLUDED.payload
        """

    @staticmethod
    def _params(finding: PipelineFinding) -> tuple[Any, ...]:
        return (
            finding.id,
            finding.firm_id,
            finding.matter_id,
            finding.run_id,
            finding.status,
            finding.created_at,
            json.dumps(finding.to_dict(), ensure_ascii=True, sort_keys=True),
        )

    def insert_many(self, *, findings: list[PipelineFinding]) -> list[PipelineFinding]:
        if not findings:
            return []
        sql = self._upsert_sql()

        def _op(conn: Any) -> list[PipelineFinding]:
            with conn.cursor() as cur:
                for finding in findings:
                    cur.execute(sql, self._params(finding))
            return list(findings)

        return self._tx_runner.run_in_tx(tenant_id=findings[0].firm_id, fn=_op)

    def update(self, *, finding: PipelineFinding) -> PipelineFinding:
        sql = self._upsert_sql()

        def _op(conn: Any) -> PipelineFinding:
            with conn.cursor() as cur:
                cur.execute(sql, self._params(finding))
            return finding

        return self._tx_runner.run_in_tx(tenant_id=finding.firm_id, fn=_op)

    def _select(self, *, firm_id: str, where: str, params: tuple[Any, ...]) -> list[PipelineFinding]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE firm_id = %s AND {where}
            ORDER BY created_at ASC
        """

        def _op(conn: Any) -> list[PipelineFinding]:
            with conn.cursor() as cur:
                cur.execute(sql, (firm_id, *params))
                rows = cur.fetchall() or []
            return [PipelineFinding.from_dict(row[0]) for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=firm_id, fn=_op)

    def list_for_run(self, *, firm_id: str, run_id: str, status: str | None = None) -> list[PipelineFinding]:
        if status is None:
            return self._select(firm_id=firm_id, where="run_id = %s", params=(run_id,))
        return self._select(firm_id=firm_id, where="run_id = %s AND status = %s", params=(run_id, status))

    def list_for_matter(self, *, firm_id: str, matter_id: str) -> list[PipelineFinding]:
        return self._select(firm_id=firm_id, where="matter_id = %s", params=(matter_id,))
