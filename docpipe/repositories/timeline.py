from __future__ import annotations

import json
import threading
from dataclasses import replace
from typing import Any

from docpipe.db.postgres import PostgresTxRunner, _validate_identifier
from docpipe.models import TimelineEvent


class InMemoryTimelineRepository:
    """Append-only matter timeline."""

    def __init__(self, events: list[TimelineEvent] | None = None) -> None:
        self._events = [] if events is None else events
        self._lock = threading.RLock()

    def append(self, *, event: TimelineEvent) -> TimelineEvent:
        with self._lock:
            self._events.append(replace(event, metadata=dict(event.metadata)))
        return event

    def list_for_matter(self, *, firm_id: str, matter_id: str) -> list[TimelineEvent]:
        with self._lock:
            return [replace(e) for e in self._events if e.firm_id == firm_id and e.matter_id == matter_id]


class PostgresTimelineRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "pipeline_timeline_events") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def append(self, *, event: TimelineEvent) -> TimelineEvent:
        sql = f"""
            INSERT INTO {self._table_name} (
                event_id, firm_id, matter_id, occurred_at, payload
            ) VALUES (%s, %s, %s, %s, %s::jsonb)
            ON CONFLICT(event_id) DO NOTHING
        """

        def _op(conn: Any) -> TimelineEvent:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        event.id,
                        event.firm_id,
                        event.matter_id,
                        event.occurred_at,
                        json.dumps(event.to_dict(), ensure_ascii=True, sort_keys=True),
                    ),
                )
            return event

        return self._tx_runner.run_in_tx(tenant_id=event.firm_id, fn=_op)

    def list_for_matter(self, *, firm_id: str, matter_id: str) -> list[TimelineEvent]:
        sql = f"""
            SELECT payload
            FROM {self._table_name}
            WHERE firm_id = %s AND matter_id = %s
            ORDER BY seq ASC
        """

        def _op(conn: Any) -> list[TimelineEvent]:
            with conn.cursor() as cur:
                cur.execute(sql, (firm_id, matter_id))
                rows = cur.fetchall() or []
            return [TimelineEvent.from_dict(row[0]) for row in rows if isinstance(row[0], dict)]

        return self._tx_runner.run_in_tx(tenant_id=firm_id, fn=_op)
