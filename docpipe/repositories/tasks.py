from __future__ import annotations

import json
import threading
from dataclasses import replace
from typing import Any

from docpipe.db.postgres import PostgresTxRunner, _validate_identifier
from docpipe.models import Task


class InMemoryTasksRepository:
    def __init__(self, tasks: dict[str, Task] | None = None) -> None:
        self._tasks = {} if tasks is None else tasks
        self._lock = threading.RLock()

    def create(self, *, task: Task) -> Task:
        with self._lock:
            self._tasks[task.id] = replace(task)
        return task

    def list_for_matter(self, *, firm_id: str, matter_id: str) -> list[Task]:
        with self._lock:
            rows = [replace(t) for t in self._tasks.values() if t.firm_id == firm_id and t.matter_id == matter_id]
        rows.sort(key=lambda t: t.created_at)
        return rows


class PostgresTasksRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "pipeline_tasks") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def create(self, *, task: Task) -> Task:
        sql = f"""
            INSERT INTO {self._table_name} (
                task_id, firm_id, matter_id, created_at, payload
            ) VALUES (%s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(task_id) DO NOTHING
        """

        def _op(conn: Any) -> Task:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        task.id,
                        task.firm_id,
                        task.matter_id,
                        task.created_at,
                        json.dumps(task.to_dict(), ensure_ascii=True, sort_keys=True),
                    ),
                )
            return task

        return self._tx_runner.run_in_tx(tenant_id=task.firm_id, fn=_op)

    def list_for_matter(self, *, firm_id: str, matter_id: str) -> list[Task]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE firm_id = %s AND matter_id = %s
            ORDER BY created_at ASC
        """

        def _op(conn: Any) -> list[Task]:
            with conn.cursor() as cur:
                cur.execute(sql, (firm_id, matter_id))
                rows = cur.fetchall() or []
            return [Task.from_dict(row[0]) for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=firm_id, fn=_op)
