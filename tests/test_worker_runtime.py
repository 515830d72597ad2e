from __future__ import annotations

import asyncio

from conftest import FIRM_ID, MATTER_ID, add_document

from docpipe import worker_runtime
from docpipe.models import JobData
from docpipe.orchestrator import job_payload
from docpipe.queue_backend import InMemoryQueueBackend
from docpipe.stages import PIPELINE_STAGES
from docpipe.worker_runtime import PipelineRuntime, StageRunner, WorkerRunStats, create_pipeline_runtime_from_env
from docpipe.workers import WORKER_CLASSES


class _RaisingWorker:
    def __init__(self, exc: Exception) -> None:
        self.exc = exc
        self.calls = 0

    async def process(self, job: JobData) -> None:
        self.calls += 1
        raise self.exc


class _RecordingWorker:
    def __init__(self) -> None:
        self.jobs: list[JobData] = []

    async def process(self, job: JobData) -> None:
        self.jobs.append(job)


def _job() -> JobData:
    return JobData(run_id="run_1", firm_id=FIRM_ID, matter_id=MATTER_ID, document_id="doc_1")


def test_successful_job_is_acked_and_recorded():
    queue = InMemoryQueueBackend()
    worker = _RecordingWorker()
    runner = StageRunner(stage="reconcile", worker=worker, queue_backend=queue)
    completed: list[str] = []
    runner.on_completed(lambda job_id, data: completed.append(job_id))
    msg = queue.enqueue(tenant_id=FIRM_ID, queue_name="pipeline:reconcile", payload=job_payload("reconcile", _job()))

    stats = asyncio.run(runner.run_once())

    assert stats["processed"] == 1
    assert stats["succeeded"] == 1
    assert worker.jobs[0].run_id == "run_1"
    assert completed == [msg.message_id]
    assert queue.inflight_count(queue_name="pipeline:reconcile") == 0
    history = queue.list_finished(queue_name="pipeline:reconcile", outcome="completed")
    assert [h["message_id"] for h in history] == [msg.message_id]


def test_failed_job_is_requeued_with_backoff():
    queue = InMemoryQueueBackend()
    runner = StageRunner(stage="extract", worker=_RaisingWorker(RuntimeError("boom")), queue_backend=queue)
    failures = []
    runner.on_failed(failures.append)
    queue.enqueue(tenant_id=FIRM_ID, queue_name="pipeline:extract", payload=job_payload("extract", _job()))

    stats = asyncio.run(runner.run_once())

    assert stats["requeued"] == 1
    assert stats["failed"] == 0
    assert queue.pending_count(tenant_id=FIRM_ID, queue_name="pipeline:extract") == 1
    # backoff is 3000ms for extract, so the message is not due yet
    assert queue.dequeue(tenant_id=FIRM_ID, queue_name="pipeline:extract") is None
    assert len(failures) == 1
    assert failures[0].attempts_made == 1
    assert failures[0].max_attempts == 3
    assert failures[0].exhausted is False
    assert failures[0].error == "boom"


def test_exhausted_job_is_dropped_and_recorded_as_failed():
    queue = InMemoryQueueBackend()
    runner = StageRunner(stage="actions", worker=_RaisingWorker(RuntimeError("still broken")), queue_backend=queue)
    failures = []
    runner.on_failed(failures.append)
    payload = job_payload("actions", _job())
    payload["max_attempts"] = 1
    queue.enqueue(tenant_id=FIRM_ID, queue_name="pipeline:actions", payload=payload)

    stats = asyncio.run(runner.run_once())

    assert stats["failed"] == 1
    assert queue.pending_count(tenant_id=FIRM_ID, queue_name="pipeline:actions") == 0
    assert failures[0].exhausted is True
    history = queue.list_finished(queue_name="pipeline:actions", outcome="failed")
    assert history[0]["error"] == "still broken"


def test_listener_errors_do_not_break_the_runner():
    queue = InMemoryQueueBackend()
    runner = StageRunner(stage="intake", worker=_RaisingWorker(RuntimeError("x")), queue_backend=queue)

    def _bad_listener(failure):
        raise ValueError("listener failed")

    runner.on_failed(_bad_listener)
    queue.enqueue(tenant_id=FIRM_ID, queue_name="pipeline:intake", payload=job_payload("intake", _job()))

    stats = asyncio.run(runner.run_once())
    assert stats["requeued"] == 1


def test_runner_respects_stage_concurrency():
    queue = InMemoryQueueBackend()
    peak = {"now": 0, "max": 0}

    class _SlowWorker:
        async def process(self, job: JobData) -> None:
            peak["now"] += 1
            peak["max"] = max(peak["max"], peak["now"])
            await asyncio.sleep(0.01)
            peak["now"] -= 1

    runner = StageRunner(stage="extract", worker=_SlowWorker(), queue_backend=queue, tenant_burst_limit=10)
    for i in range(8):
        job = JobData(run_id=f"run_{i}", firm_id=FIRM_ID, matter_id=MATTER_ID, document_id=f"doc_{i}")
        queue.enqueue(tenant_id=FIRM_ID, queue_name="pipeline:extract", payload=job_payload("extract", job))

    stats = asyncio.run(runner.run_once())

    assert stats["succeeded"] == 8
    assert peak["max"] == 3


def test_download_failure_is_retried_not_failed(make_services):
    services = make_services([])
    doc = add_document(services)
    services.blob_storage._path(doc.storage_bucket, doc.storage_path).unlink()
    run = services.orchestrator.submit_document(firm_id=FIRM_ID, matter_id=MATTER_ID, document_id=doc.id)

    stats = asyncio.run(services.build_runtime(environ={}).drain())

    assert stats["requeued"] == 1
    run = services.runs.get(firm_id=FIRM_ID, run_id=run.id)
    assert run.status == "running"
    assert services.queue_backend.pending_count(tenant_id=FIRM_ID, queue_name="pipeline:intake") == 1


def test_runtime_requires_a_worker_per_stage():
    try:
        PipelineRuntime(workers={"intake": _RecordingWorker()}, queue_backend=InMemoryQueueBackend())
    except ValueError as exc:
        assert "missing workers" in str(exc)
    else:
        raise AssertionError("expected ValueError for missing stage workers")


def test_runtime_factory_reads_worker_env(make_services):
    services = make_services([])
    workers = {stage: cls(services) for stage, cls in WORKER_CLASSES.items()}
    runtime = create_pipeline_runtime_from_env(
        workers=workers,
        queue_backend=services.queue_backend,
        environ={"WORKER_POLL_INTERVAL_MS": "50", "WORKER_TENANT_BURST_LIMIT": "4"},
    )
    assert runtime.poll_interval_ms == 50
    assert runtime.runners["ocr"].tenant_burst_limit == 4
    assert runtime.runners["extract"].concurrency == 3
    assert runtime.runners["intake"].concurrency == 10


def test_run_forever_stops_when_time_is_up(make_services):
    services = make_services([])
    runtime = services.build_runtime(environ={"WORKER_POLL_INTERVAL_MS": "1"})
    stats = asyncio.run(runtime.run_forever(run_for_seconds=0.05))
    assert stats["processed"] == 0


def test_stages_progress_independently_of_a_slow_stage():
    queue = InMemoryQueueBackend()
    events: list[str] = []

    class _SlowExtract:
        async def process(self, job: JobData) -> None:
            events.append("extract_started")
            await asyncio.sleep(0.3)
            events.append("extract_done")

    class _FastIntake:
        async def process(self, job: JobData) -> None:
            events.append("intake_done")

    workers = {stage: _RecordingWorker() for stage in PIPELINE_STAGES}
    workers["extract"] = _SlowExtract()
    workers["intake"] = _FastIntake()
    runtime = PipelineRuntime(workers=workers, queue_backend=queue, poll_interval_ms=5)

    async def scenario() -> dict[str, int]:
        queue.enqueue(tenant_id=FIRM_ID, queue_name="pipeline:extract", payload=job_payload("extract", _job()))
        stop = asyncio.Event()
        task = asyncio.create_task(runtime.run_forever(stop=stop))
        await asyncio.sleep(0.05)
        queue.enqueue(tenant_id=FIRM_ID, queue_name="pipeline:intake", payload=job_payload("intake", _job()))
        await asyncio.sleep(0.05)
        stop.set()
        return await task

    stats = asyncio.run(scenario())

    assert events.index("intake_done") < events.index("extract_done")
    assert stats["processed"] == 2
    assert stats["succeeded"] == 2


def test_consumer_refills_free_slots_up_to_stage_concurrency():
    queue = InMemoryQueueBackend()
    peak = {"now": 0, "max": 0, "done": 0}
    runner = StageRunner(stage="extract", worker=None, queue_backend=queue, tenant_burst_limit=10)

    async def scenario() -> WorkerRunStats:
        stop = asyncio.Event()

        class _SlowWorker:
            async def process(self, job: JobData) -> None:
                peak["now"] += 1
                peak["max"] = max(peak["max"], peak["now"])
                await asyncio.sleep(0.01)
                peak["now"] -= 1
                peak["done"] += 1
                if peak["done"] == 8:
                    stop.set()

        runner.worker = _SlowWorker()
        for i in range(8):
            job = JobData(run_id=f"run_{i}", firm_id=FIRM_ID, matter_id=MATTER_ID, document_id=f"doc_{i}")
            queue.enqueue(tenant_id=FIRM_ID, queue_name="pipeline:extract", payload=job_payload("extract", job))
        stats = WorkerRunStats()
        await asyncio.wait_for(runner.consume(stop=stop, poll_interval_ms=5, stats=stats), timeout=5)
        return stats

    stats = asyncio.run(scenario())

    assert stats.succeeded == 8
    assert peak["max"] == 3


def test_next_message_rotates_across_tenants():
    queue = InMemoryQueueBackend()
    for tenant in ("firm_a", "firm_b"):
        for i in range(2):
            job = JobData(run_id=f"{tenant}_{i}", firm_id=tenant, matter_id=MATTER_ID, document_id="doc_1")
            queue.enqueue(tenant_id=tenant, queue_name="pipeline:ocr", payload=job_payload("ocr", job))
    runner = StageRunner(stage="ocr", worker=_RecordingWorker(), queue_backend=queue)

    order = [runner._dequeue_next().tenant_id for _ in range(4)]

    assert order == ["firm_a", "firm_b", "firm_a", "firm_b"]
    assert runner._dequeue_next() is None


def test_malformed_payload_is_dropped_as_failed():
    queue = InMemoryQueueBackend()
    worker = _RecordingWorker()
    runner = StageRunner(stage="classify", worker=worker, queue_backend=queue)
    queue.enqueue(tenant_id=FIRM_ID, queue_name="pipeline:classify", payload={"stage": "classify"})

    stats = asyncio.run(runner.run_once())

    assert stats["failed"] == 1
    assert worker.jobs == []
    assert queue.pending_count(tenant_id=FIRM_ID, queue_name="pipeline:classify") == 0
    history = queue.list_finished(queue_name="pipeline:classify", outcome="failed")
    assert "missing keys" in history[0]["error"]


def test_retry_delay_uses_payload_backoff(monkeypatch):
    calls = []

    def _recording_delay(**kwargs):
        calls.append(kwargs)
        return 0

    monkeypatch.setattr(worker_runtime, "retry_delay_ms", _recording_delay)
    queue = InMemoryQueueBackend()
    runner = StageRunner(stage="ocr", worker=_RaisingWorker(RuntimeError("boom")), queue_backend=queue)
    payload = job_payload("ocr", _job())
    payload["backoff_delay_ms"] = 250
    queue.enqueue(tenant_id=FIRM_ID, queue_name="pipeline:ocr", payload=payload)

    stats = asyncio.run(runner.run_once())

    assert stats["requeued"] == 1
    assert calls == [{"stage": "ocr", "attempts_made": 1, "base_delay_ms": 250}]
