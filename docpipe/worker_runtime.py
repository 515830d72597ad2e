from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from docpipe.models import JobData
from docpipe.queue_backend import QueueMessage
from docpipe.settings import _env_int
from docpipe.stages import PIPELINE_STAGES, STAGE_CONFIG, queue_name_for, retry_delay_ms

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    acked: int = 0
    requeued: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retrying": self.retrying,
            "failed": self.failed,
            "acked": self.acked,
            "requeued": self.requeued,
        }

    def add(self, other: dict[str, int]) -> None:
        for key, value in other.items():
            setattr(self, key, getattr(self, key) + int(value))


@dataclass(frozen=True)
class JobFailure:
    job_id: str
    stage: str
    data: JobData
    error: str
    attempts_made: int
    max_attempts: int

    @property
    def exhausted(self) -> bool:
        return self.attempts_made >= self.max_attempts


FailureListener = Callable[[JobFailure], Any]
CompletedListener = Callable[[str, JobData], Any]


async def _wait_for_stop(stop: asyncio.Event, timeout_ms: int) -> None:
    try:
        await asyncio.wait_for(stop.wait(), timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError:
        pass


def _error_text(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "stage timed out"
    return str(getattr(exc, "message", "") or exc) or exc.__class__.__name__


class StageRunner:
    """Consumes one stage queue; each job body runs under the stage semaphore and timeout."""

    def __init__(
        self,
        *,
        stage: str,
        worker: Any,
        queue_backend: Any,
        tenant_burst_limit: int = 1,
        max_messages_per_iteration: int = 20,
    ) -> None:
        cfg = STAGE_CONFIG[stage]
        self.stage = stage
        self.queue_name = queue_name_for(stage)
        self.worker = worker
        self.queue_backend = queue_backend
        self.concurrency = cfg.concurrency
        self.timeout_ms = cfg.timeout_ms
        self.tenant_burst_limit = max(1, int(tenant_burst_limit))
        self.max_messages_per_iteration = max(1, int(max_messages_per_iteration))
        self.failure_listeners: list[FailureListener] = []
        self.completed_listeners: list[CompletedListener] = []
        self._semaphore: asyncio.Semaphore | None = None
        self._semaphore_loop: asyncio.AbstractEventLoop | None = None
        self._tenant_cursor = 0
        self._burst_used = 0

    def on_failed(self, listener: FailureListener) -> None:
        self.failure_listeners.append(listener)

    def on_completed(self, listener: CompletedListener) -> None:
        self.completed_listeners.append(listener)

    def _slot(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.concurrency)
            self._semaphore_loop = loop
        return self._semaphore

    def _dequeue_batch(self) -> list[QueueMessage]:
        batch: list[QueueMessage] = []
        while len(batch) < self.max_messages_per_iteration:
            tenants = self.queue_backend.list_tenants(queue_name=self.queue_name)
            if not tenants:
                break
            progressed = False
            for tenant_id in tenants:
                for _ in range(self.tenant_burst_limit):
                    if len(batch) >= self.max_messages_per_iteration:
                        break
                    msg = self.queue_backend.dequeue(tenant_id=tenant_id, queue_name=self.queue_name)
                    if msg is None:
                        break
                    batch.append(msg)
                    progressed = True
            if not progressed:
                break
        return batch

    def _dequeue_next(self) -> QueueMessage | None:
        """Take one due message, rotating across tenants after each burst."""
        tenants = self.queue_backend.list_tenants(queue_name=self.queue_name)
        if not tenants:
            return None
        start = self._tenant_cursor % len(tenants)
        for offset in range(len(tenants)):
            index = (start + offset) % len(tenants)
            msg = self.queue_backend.dequeue(tenant_id=tenants[index], queue_name=self.queue_name)
            if msg is None:
                self._burst_used = 0
                continue
            self._burst_used = self._burst_used + 1 if offset == 0 else 1
            if self._burst_used >= self.tenant_burst_limit:
                self._tenant_cursor = index + 1
                self._burst_used = 0
            else:
                self._tenant_cursor = index
            return msg
        return None

    async def run_once(self) -> dict[str, int]:
        stats = WorkerRunStats()
        batch = self._dequeue_batch()
        if batch:
            await asyncio.gather(*(self._handle(msg, stats) for msg in batch))
        return stats.as_dict()

    async def consume(self, *, stop: asyncio.Event, poll_interval_ms: int, stats: WorkerRunStats) -> None:
        """Long-lived consumer: a free slot is refilled as soon as a job finishes.

        Returns once ``stop`` is set and every in-flight job has settled.
        """
        slot = self._slot()
        inflight: set[asyncio.Task[None]] = set()
        try:
            while not stop.is_set():
                await slot.acquire()
                msg = None
                try:
                    msg = self._dequeue_next()
                finally:
                    if msg is None:
                        slot.release()
                if msg is None:
                    await _wait_for_stop(stop, poll_interval_ms)
                    continue
                task = asyncio.create_task(self._process_and_release(msg, stats, slot))
                inflight.add(task)
                task.add_done_callback(inflight.discard)
        finally:
            if inflight:
                await asyncio.gather(*inflight, return_exceptions=True)

    async def _process_and_release(self, msg: QueueMessage, stats: WorkerRunStats, slot: asyncio.Semaphore) -> None:
        try:
            await self._process(msg, stats)
        finally:
            slot.release()

    async def _handle(self, msg: QueueMessage, stats: WorkerRunStats) -> None:
        async with self._slot():
            await self._process(msg, stats)

    async def _process(self, msg: QueueMessage, stats: WorkerRunStats) -> None:
        stats.processed += 1
        try:
            data = JobData.from_payload(msg.payload)
        except ValueError as exc:
            logger.error("%s job %s dropped: %s", self.stage, msg.message_id, exc)
            self.queue_backend.nack(tenant_id=msg.tenant_id, message_id=msg.message_id, requeue=False)
            self.queue_backend.record_finished(message=msg, outcome="failed", error=str(exc))
            stats.failed += 1
            return
        try:
            await asyncio.wait_for(self.worker.process(data), timeout=self.timeout_ms / 1000.0)
        except Exception as exc:
            self._fail(msg, data, exc, stats)
            return

        self.queue_backend.ack(tenant_id=msg.tenant_id, message_id=msg.message_id)
        self.queue_backend.record_finished(message=msg, outcome="completed")
        stats.acked += 1
        stats.succeeded += 1
        for listener in self.completed_listeners:
            try:
                listener(msg.message_id, data)
            except Exception:
                logger.exception("%s: completed listener failed for job %s", self.stage, msg.message_id)

    def _fail(self, msg: QueueMessage, data: JobData, exc: Exception, stats: WorkerRunStats) -> None:
        max_attempts = int(msg.payload.get("max_attempts") or STAGE_CONFIG[self.stage].attempts)
        backoff_ms = int(msg.payload.get("backoff_delay_ms") or STAGE_CONFIG[self.stage].backoff_delay_ms)
        attempts_made = msg.attempt + 1
        error = _error_text(exc)

        if attempts_made < max_attempts:
            delay_ms = retry_delay_ms(stage=self.stage, attempts_made=attempts_made, base_delay_ms=backoff_ms)
            logger.warning(
                "%s job %s failed (attempt %d/%d), retrying in %dms: %s",
                self.stage,
                msg.message_id,
                attempts_made,
                max_attempts,
                delay_ms,
                error,
            )
            self.queue_backend.nack(
                tenant_id=msg.tenant_id,
                message_id=msg.message_id,
                requeue=True,
                delay_ms=delay_ms,
            )
            stats.requeued += 1
            stats.retrying += 1
        else:
            logger.error(
                "%s job %s exhausted %d attempts for run %s: %s",
                self.stage,
                msg.message_id,
                attempts_made,
                data.run_id,
                error,
            )
            self.queue_backend.nack(tenant_id=msg.tenant_id, message_id=msg.message_id, requeue=False)
            self.queue_backend.record_finished(message=msg, outcome="failed", error=error)
            stats.failed += 1

        failure = JobFailure(
            job_id=msg.message_id,
            stage=self.stage,
            data=data,
            error=error,
            attempts_made=attempts_made,
            max_attempts=max_attempts,
        )
        for listener in self.failure_listeners:
            try:
                listener(failure)
            except Exception:
                logger.exception("%s: failure listener failed for job %s", self.stage, msg.message_id)


class PipelineRuntime:
    """One StageRunner per pipeline stage; each stage consumes its own queue."""

    def __init__(
        self,
        *,
        workers: Mapping[str, Any],
        queue_backend: Any,
        tenant_burst_limit: int = 1,
        max_messages_per_iteration: int = 20,
        poll_interval_ms: int = 200,
    ) -> None:
        missing = [stage for stage in PIPELINE_STAGES if stage not in workers]
        if missing:
            raise ValueError(f"missing workers for stages: {', '.join(missing)}")
        self.queue_backend = queue_backend
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self.runners: dict[str, StageRunner] = {
            stage: StageRunner(
                stage=stage,
                worker=workers[stage],
                queue_backend=queue_backend,
                tenant_burst_limit=tenant_burst_limit,
                max_messages_per_iteration=max_messages_per_iteration,
            )
            for stage in PIPELINE_STAGES
        }

    def on_failed(self, listener: FailureListener) -> None:
        for runner in self.runners.values():
            runner.on_failed(listener)

    def on_completed(self, listener: CompletedListener) -> None:
        for runner in self.runners.values():
            runner.on_completed(listener)

    async def run_once(self) -> dict[str, int]:
        """One batch from every stage queue, all stages side by side."""
        stats = WorkerRunStats()
        for current in await asyncio.gather(*(runner.run_once() for runner in self.runners.values())):
            stats.add(current)
        return stats.as_dict()

    async def run_forever(
        self,
        *,
        stop: asyncio.Event | None = None,
        run_for_seconds: float | None = None,
    ) -> dict[str, int]:
        """Run one independent consumer per stage until ``stop`` is set."""
        stop = stop or asyncio.Event()
        if run_for_seconds is not None:
            asyncio.get_running_loop().call_later(max(0.0, run_for_seconds), stop.set)
        per_stage = {stage: WorkerRunStats() for stage in self.runners}
        await asyncio.gather(
            *(
                runner.consume(stop=stop, poll_interval_ms=self.poll_interval_ms, stats=per_stage[stage])
                for stage, runner in self.runners.items()
            )
        )
        aggregate = WorkerRunStats()
        for stats in per_stage.values():
            aggregate.add(stats.as_dict())
        return aggregate.as_dict()

    async def drain(self, *, max_iterations: int = 100) -> dict[str, int]:
        """Run until every queue is idle; delayed retries that are not yet due stay queued."""
        aggregate = WorkerRunStats()
        for _ in range(max(1, max_iterations)):
            current = await self.run_once()
            aggregate.add(current)
            if current["processed"] == 0:
                break
        return aggregate.as_dict()


def create_pipeline_runtime_from_env(
    *,
    workers: Mapping[str, Any],
    queue_backend: Any,
    environ: Mapping[str, str] | None = None,
) -> PipelineRuntime:
    env = os.environ if environ is None else environ
    return PipelineRuntime(
        workers=workers,
        queue_backend=queue_backend,
        tenant_burst_limit=_env_int(env, "WORKER_TENANT_BURST_LIMIT", default=1, minimum=1),
        max_messages_per_iteration=_env_int(env, "WORKER_MAX_MESSAGES_PER_ITERATION", default=20, minimum=1),
        poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
    )
