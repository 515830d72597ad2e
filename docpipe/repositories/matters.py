from __future__ import annotations

import json
import threading
from dataclasses import replace
from typing import Any

from docpipe.db.postgres import PostgresTxRunner, _validate_identifier
from docpipe.models import Matter, utcnow_iso


class InMemoryMattersRepository:
    def __init__(self, matters: dict[str, Matter] | None = None) -> None:
        self._matters = {} if matters is None else matters
        self._lock = threading.RLock()

    def upsert(self, *, matter: Matter) -> Matter:
        with self._lock:
            self._matters[matter.id] = replace(matter)
        return matter

    def get(self, *, firm_id: str, matter_id: str) -> Matter | None:
        with self._lock:
            row = self._matters.get(matter_id)
        if row is None or row.firm_id != firm_id:
            return None
        return replace(row, risk_factors=list(row.risk_factors))

    def update_risk(
        self,
        *,
        firm_id: str,
        matter_id: str,
        score: int,
        factors: list[dict[str, Any]],
    ) -> Matter | None:
        with self._lock:
            row = self._matters.get(matter_id)
            if row is None or row.firm_id != firm_id:
                return None
            row.risk_score = score
            row.risk_factors = [dict(f) for f in factors]
            row.risk_assessed_at = utcnow_iso()
            return replace(row, risk_factors=list(row.risk_factors))


class PostgresMattersRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "pipeline_matters") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def _write(self, cur: Any, matter: Matter) -> None:
        cur.execute(
            f"""
            INSERT INTO {self._table_name} (
                matter_id, firm_id, practice_area, payload
            ) VALUES (%s, %s, %s, %s::jsonb)
            ON CONFLICT(matter_id) DO UPDATE
            SET practice_area = EXCLUDED.practice_area,
                updated_at = now(),
                payload = EXCLUDED.payload
            """,
            (
                matter.id,
                matter.firm_id,
                matter.practice_area,
                json.dumps(matter.to_dict(), ensure_ascii=True, sort_keys=True),
            ),
        )

    def _fetch(self, cur: Any, *, firm_id: str, matter_id: str, lock: bool = False) -> Matter | None:
        cur.execute(
            f"""
            SELECT payload
            FROM {self._table_name}
            WHERE firm_id = %s AND matter_id = %s
            LIMIT 1{" FOR UPDATE" if lock else ""}
            """,
            (firm_id, matter_id),
        )
        row = cur.fetchone()
        if row is None or not isinstance(row[0], dict):
            return None
        return Matter.from_dict(row[0])

    def upsert(self, *, matter: Matter) -> Matter:
        def _op(conn: Any) -> Matter:
            with conn.cursor() as cur:
                self._write(cur, matter)
            return matter

        return self._tx_runner.run_in_tx(tenant_id=matter.firm_id, fn=_op)

    def get(self, *, firm_id: str, matter_id: str) -> Matter | None:
        def _op(conn: Any) -> Matter | None:
            with conn.cursor() as cur:
                return self._fetch(cur, firm_id=firm_id, matter_id=matter_id)

        return self._tx_runner.run_in_tx(tenant_id=firm_id, fn=_op)

    def update_risk(
        self,
        *,
        firm_id: str,
        matter_id: str,
        score: int,
        factors: list[dict[str, Any]],
    ) -> Matter | None:
        def _op(conn: Any) -> Matter | None:
            with conn.cursor() as cur:
                row = self._fetch(cur, firm_id=firm_id, matter_id=matter_id, lock=True)
                if row is None:
                    return None
                row.risk_score = score
                row.risk_factors = [dict(f) for f in factors]
                row.risk_assessed_at = utcnow_iso()
                self._write(cur, row)
            return row

        return self._tx_runner.run_in_tx(tenant_id=firm_id, fn=_op)
