from __future__ import annotations

import asyncio

from conftest import FIRM_ID, MATTER_ID, add_document

from docpipe.dlq import DlqMonitor, InMemoryDlqStore, PostgresDlqStore
from docpipe.models import DlqEntry, JobData
from docpipe.orchestrator import job_payload
from docpipe.worker_runtime import JobFailure


class _Tracker:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[dict] = []

    def mark_pipeline_failed(self, **kwargs):
        self.calls.append(kwargs)
        if self.fail:
            raise RuntimeError("database unavailable")


def _failure(i: int = 0, *, stage: str = "extract", attempts_made: int = 3, max_attempts: int = 3) -> JobFailure:
    return JobFailure(
        job_id=f"msg_{i}",
        stage=stage,
        data=JobData(run_id=f"run_{i}", firm_id=FIRM_ID, matter_id=MATTER_ID, document_id=f"doc_{i}"),
        error="upstream exploded",
        attempts_made=attempts_made,
        max_attempts=max_attempts,
    )


def test_failures_with_attempts_left_are_ignored():
    tracker = _Tracker()
    monitor = DlqMonitor(store=InMemoryDlqStore(), tracker=tracker)

    assert monitor.handle_failure(_failure(attempts_made=1)) is None
    assert monitor.list_entries() == []
    assert tracker.calls == []


def test_exhausted_failure_is_recorded_and_run_marked_failed():
    tracker = _Tracker()
    monitor = DlqMonitor(store=InMemoryDlqStore(), tracker=tracker)

    entry = monitor.handle_failure(_failure(7))

    assert entry is not None
    assert entry.job_id == "msg_7"
    assert entry.run_id == "run_7"
    assert entry.attempts_made == 3
    assert tracker.calls == [
        {
            "firm_id": FIRM_ID,
            "run_id": "run_7",
            "stage": "extract",
            "error": "Permanently failed at stage extract after 3 attempts: upstream exploded",
        }
    ]


def test_status_write_failure_is_swallowed():
    monitor = DlqMonitor(store=InMemoryDlqStore(), tracker=_Tracker(fail=True))

    entry = monitor.handle_failure(_failure())

    assert entry is not None
    assert len(monitor.list_entries()) == 1


def test_dlq_keeps_only_most_recent_entries():
    monitor = DlqMonitor(store=InMemoryDlqStore(capacity=500), tracker=_Tracker())

    for i in range(501):
        monitor.handle_failure(_failure(i))

    entries = monitor.list_entries()
    assert len(entries) == 500
    assert entries[0].job_id == "msg_500"
    assert entries[-1].job_id == "msg_1"


def test_list_counts_and_clear_by_stage():
    monitor = DlqMonitor(store=InMemoryDlqStore(), tracker=_Tracker())
    monitor.handle_failure(_failure(1, stage="ocr"))
    monitor.handle_failure(_failure(2, stage="extract"))
    monitor.handle_failure(_failure(3, stage="extract"))

    assert monitor.counts_by_stage() == {"ocr": 1, "extract": 2}
    assert [e.job_id for e in monitor.list_entries("extract")] == ["msg_3", "msg_2"]
    assert monitor.clear("extract") == 2
    assert [e.stage for e in monitor.list_entries()] == ["ocr"]
    assert monitor.clear() == 1
    assert monitor.counts_by_stage() == {}


def test_runtime_exhaustion_lands_in_dlq_and_fails_run(make_services):
    services = make_services([])
    doc = add_document(services)
    services.blob_storage._path(doc.storage_bucket, doc.storage_path).unlink()
    run = services.orchestrator.submit_document(firm_id=FIRM_ID, matter_id=MATTER_ID, document_id=doc.id)

    # replace the queued intake job with a single-attempt one
    queued = services.queue_backend.dequeue(tenant_id=FIRM_ID, queue_name="pipeline:intake")
    services.queue_backend.ack(tenant_id=FIRM_ID, message_id=queued.message_id)
    payload = job_payload("intake", run.job_data())
    payload["max_attempts"] = 1
    services.queue_backend.enqueue(tenant_id=FIRM_ID, queue_name="pipeline:intake", payload=payload)

    asyncio.run(services.build_runtime(environ={}).drain())

    entries = services.dlq.list_entries()
    assert len(entries) == 1
    assert entries[0].stage == "intake"
    run = services.runs.get(firm_id=FIRM_ID, run_id=run.id)
    assert run.status == "failed"
    assert run.error.startswith("Permanently failed at stage intake after 1 attempts:")
    assert run.stage_statuses["intake"].status == "failed"


class FakeCursor:
    def __init__(self, conn: "FakeConn") -> None:
        self._conn = conn
        self._rows: list[tuple] = []
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql: str, params=()):
        normalized = " ".join(sql.split())
        self._conn.executed.append((normalized, params))
        if normalized.startswith("INSERT INTO pipeline_dlq_entries"):
            self._conn.rows.append((params[2], params[3]))
        elif normalized.startswith("DELETE FROM pipeline_dlq_entries WHERE seq NOT IN"):
            limit = params[0]
            del self._conn.rows[: max(0, len(self._conn.rows) - limit)]
        elif normalized.startswith("SELECT payload"):
            import json

            self._rows = [(json.loads(payload),) for _, payload in reversed(self._conn.rows)]
        elif normalized.startswith("SELECT stage, COUNT(*)"):
            counts: dict[str, int] = {}
            for stage, _ in self._conn.rows:
                counts[stage] = counts.get(stage, 0) + 1
            self._rows = list(counts.items())
        elif normalized.startswith("DELETE FROM pipeline_dlq_entries"):
            self.rowcount = len(self._conn.rows)
            self._conn.rows.clear()

    def fetchall(self):
        return self._rows


class FakeConn:
    def __init__(self) -> None:
        self.executed: list[tuple[str, tuple]] = []
        self.rows: list[tuple[str, str]] = []

    def cursor(self):
        return FakeCursor(self)


class FakeRunner:
    def __init__(self) -> None:
        self.conn = FakeConn()
        self.tenants: list[str] = []

    def run_in_tx(self, *, tenant_id: str, fn):
        self.tenants.append(tenant_id)
        return fn(self.conn)


def test_postgres_dlq_store_trims_to_capacity():
    runner = FakeRunner()
    store = PostgresDlqStore(tx_runner=runner, capacity=2)
    for i in range(3):
        store.append(
            DlqEntry(
                job_id=f"msg_{i}",
                stage="ocr",
                run_id=f"run_{i}",
                matter_id=MATTER_ID,
                firm_id=FIRM_ID,
                error="boom",
                attempts_made=3,
            )
        )

    entries = store.list_entries()
    assert [e.job_id for e in entries] == ["msg_2", "msg_1"]
    assert store.counts_by_stage() == {"ocr": 2}
    assert store.clear() == 2
    assert set(runner.tenants) == {"docpipe_system"}
    trims = [params for sql, params in runner.conn.executed if "NOT IN" in sql]
    assert trims == [(2,), (2,), (2,)]
