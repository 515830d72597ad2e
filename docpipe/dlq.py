"""
Dead-letter monitor for jobs that exhausted their queue retries.

The monitor listens to every stage runner's failure event. Failures that
still have attempts left are ignored (the queue retries them); exhausted
jobs land in a bounded store, newest entries evicting the oldest, and the
run is marked permanently failed on a best-effort basis.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import Counter, deque
from typing import Any

from docpipe.db.postgres import PostgresTxRunner, _validate_identifier
from docpipe.models import DlqEntry
from docpipe.worker_runtime import JobFailure

logger = logging.getLogger(__name__)

DEFAULT_DLQ_CAPACITY = 500
SYSTEM_TENANT_ID = "docpipe_system"


class InMemoryDlqStore:
    def __init__(self, *, capacity: int = DEFAULT_DLQ_CAPACITY) -> None:
        self.capacity = max(1, int(capacity))
        self._entries: deque[DlqEntry] = deque(maxlen=self.capacity)
        self._lock = threading.RLock()

    def append(self, entry: DlqEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def list_entries(self, *, stage: str | None = None) -> list[DlqEntry]:
        with self._lock:
            rows = list(reversed(self._entries))
        if stage:
            rows = [e for e in rows if e.stage == stage]
        return rows

    def counts_by_stage(self) -> dict[str, int]:
        with self._lock:
            return dict(Counter(e.stage for e in self._entries))

    def clear(self, *, stage: str | None = None) -> int:
        with self._lock:
            before = len(self._entries)
            if stage:
                kept = [e for e in self._entries if e.stage != stage]
                self._entries.clear()
                self._entries.extend(kept)
            else:
                self._entries.clear()
            return before - len(self._entries)


class PostgresDlqStore:
    """DLQ rows in PostgreSQL; every append trims the table back to ``capacity``."""

    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        capacity: int = DEFAULT_DLQ_CAPACITY,
        table_name: str = "pipeline_dlq_entries",
    ) -> None:
        self._tx_runner = tx_runner
        self.capacity = max(1, int(capacity))
        self._table_name = _validate_identifier(table_name)

    def append(self, entry: DlqEntry) -> None:
        insert_sql = f"""
            INSERT INTO {self._table_name} (job_id, firm_id, stage, payload)
            VALUES (%s, %s, %s, %s::jsonb)
        """
        trim_sql = f"""
            DELETE FROM {self._table_name}
            WHERE seq NOT IN (
                SELECT seq FROM {self._table_name} ORDER BY seq DESC LIMIT %s
            )
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(
                    insert_sql,
                    (
                        entry.job_id,
                        entry.firm_id,
                        entry.stage,
                        json.dumps(entry.to_dict(), ensure_ascii=True, sort_keys=True),
                    ),
                )
                cur.execute(trim_sql, (self.capacity,))

        self._tx_runner.run_in_tx(tenant_id=SYSTEM_TENANT_ID, fn=_op)

    def list_entries(self, *, stage: str | None = None) -> list[DlqEntry]:
        if stage:
            sql = f"SELECT payload FROM {self._table_name} WHERE stage = %s ORDER BY seq DESC"
            params: tuple[Any, ...] = (stage,)
        else:
            sql = f"SELECT payload FROM {self._table_name} ORDER BY seq DESC"
            params = ()

        def _op(conn: Any) -> list[DlqEntry]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall() or []
            return [DlqEntry.from_dict(row[0]) for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=SYSTEM_TENANT_ID, fn=_op)

    def counts_by_stage(self) -> dict[str, int]:
        sql = f"SELECT stage, COUNT(*) FROM {self._table_name} GROUP BY stage"

        def _op(conn: Any) -> dict[str, int]:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall() or []
            return {str(row[0]): int(row[1]) for row in rows}

        return self._tx_runner.run_in_tx(tenant_id=SYSTEM_TENANT_ID, fn=_op)

    def clear(self, *, stage: str | None = None) -> int:
        if stage:
            sql = f"DELETE FROM {self._table_name} WHERE stage = %s"
            params: tuple[Any, ...] = (stage,)
        else:
            sql = f"DELETE FROM {self._table_name}"
            params = ()

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return int(cur.rowcount or 0)

        return self._tx_runner.run_in_tx(tenant_id=SYSTEM_TENANT_ID, fn=_op)


class DlqMonitor:
    def __init__(self, *, store: Any, tracker: Any) -> None:
        self.store = store
        self.tracker = tracker

    def attach(self, runtime: Any) -> None:
        runtime.on_failed(self.handle_failure)

    def handle_failure(self, failure: JobFailure) -> DlqEntry | None:
        if not failure.exhausted:
            return None

        data = failure.data
        entry = DlqEntry(
            job_id=failure.job_id,
            stage=failure.stage,
            run_id=data.run_id,
            matter_id=data.matter_id,
            firm_id=data.firm_id,
            error=failure.error,
            attempts_made=failure.attempts_made,
        )
        self.store.append(entry)
        logger.error(
            "DLQ: job %s for run %s permanently failed at %s after %d attempts: %s",
            failure.job_id,
            data.run_id,
            failure.stage,
            failure.attempts_made,
            failure.error,
        )

        message = (
            f"Permanently failed at stage {failure.stage} after {failure.attempts_made} attempts: {failure.error}"
        )
        try:
            self.tracker.mark_pipeline_failed(
                firm_id=data.firm_id,
                run_id=data.run_id,
                stage=failure.stage,
                error=message,
            )
        except Exception:
            logger.exception("DLQ: could not mark run %s failed", data.run_id)
        return entry

    def list_entries(self, stage: str | None = None) -> list[DlqEntry]:
        return self.store.list_entries(stage=stage)

    def counts_by_stage(self) -> dict[str, int]:
        return self.store.counts_by_stage()

    def clear(self, stage: str | None = None) -> int:
        removed = self.store.clear(stage=stage)
        logger.info("DLQ: cleared %d entries (stage=%s)", removed, stage or "*")
        return removed


def create_dlq_store(*, settings: Any, tx_runner: PostgresTxRunner | None = None) -> Any:
    if settings.store_backend == "postgres":
        if tx_runner is None:
            tx_runner = PostgresTxRunner(settings.postgres_dsn)
        return PostgresDlqStore(tx_runner=tx_runner, capacity=settings.dlq_capacity)
    return InMemoryDlqStore(capacity=settings.dlq_capacity)
