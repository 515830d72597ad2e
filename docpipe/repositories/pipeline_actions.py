from __future__ import annotations

import json
import threading
from typing import Any

from docpipe.db.postgres import PostgresTxRunner, _validate_identifier
from docpipe.models import PipelineAction


class InMemoryPipelineActionsRepository:
    def __init__(self, actions: dict[str, PipelineAction] | None = None) -> None:
        self._actions = {} if actions is None else actions
        self._lock = threading.RLock()

    def insert_many(self, *, actions: list[PipelineAction]) -> list[PipelineAction]:
        with self._lock:
            for action in actions:
                self._actions[action.id] = PipelineAction.from_dict(action.to_dict())
        return list(actions)

    def list_for_run(self, *, firm_id: str, run_id: str) -> list[PipelineAction]:
        with self._lock:
            rows = [
                PipelineAction.from_dict(a.to_dict())
                for a in self._actions.values()
                if a.firm_id == firm_id and a.run_id == run_id
            ]
        rows.sort(key=lambda a: (a.priority, a.created_at))
        return rows


class PostgresPipelineActionsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "pipeline_actions") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def insert_many(self, *, actions: list[PipelineAction]) -> list[PipelineAction]:
        if not actions:
            return []
        sql = f"""
            INSERT INTO {self._table_name} (
                action_id, firm_id, run_id, priority, payload
            ) VALUES (%s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(action_id) DO UPDATE
            SET priority = EXCLUDED.priority,
                payload = EXCLUDED.payload
        """

        def _op(conn: Any) -> list[PipelineAction]:
            with conn.cursor() as cur:
                for action in actions:
                    cur.execute(
                        sql,
                        (
                            action.id,
                            action.firm_id,
                            action.run_id,
                            action.priority,
                            json.dumps(action.to_dict(), ensure_ascii=True, sort_keys=True),
                        ),
                    )
            return list(actions)

        return self._tx_runner.run_in_tx(tenant_id=actions[0].firm_id, fn=_op)

    def list_for_run(self, *, firm_id: str, run_id: str) -> list[PipelineAction]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE firm_id = %s AND run_id = %s
            ORDER BY priority ASC, action_id ASC
        """

        def _op(conn: Any) -> list[PipelineAction]:
            with conn.cursor() as cur:
                cur.execute(sql, (firm_id, run_id))
                rows = cur.fetchall() or []
            return [PipelineAction.from_dict(row[0]) for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=firm_id, fn=_op)
