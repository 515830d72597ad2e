from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from docpipe.errors import ApiError
from docpipe.models import JobData, PipelineRun, StageStatus, new_id, utcnow_iso
from docpipe.queue_backend import QueueMessage
from docpipe.run_state import initial_stage_statuses
from docpipe.stages import PIPELINE_STAGES, STAGE_CONFIG, can_transition, is_terminal, next_stage, queue_name_for

logger = logging.getLogger(__name__)


def job_payload(stage: str, data: JobData) -> dict[str, Any]:
    cfg = STAGE_CONFIG[stage]
    payload = data.to_payload()
    payload.update(
        {
            "stage": stage,
            "max_attempts": cfg.attempts,
            "backoff_delay_ms": cfg.backoff_delay_ms,
        }
    )
    return payload


class PipelineOrchestrator:
    """Moves a run between stage queues; the state machine lives in ``docpipe.stages``."""

    def __init__(self, *, queue_backend: Any, runs: Any) -> None:
        self.queue_backend = queue_backend
        self.runs = runs

    def enqueue_stage(self, stage: str, data: JobData, *, delay_ms: int = 0) -> QueueMessage:
        available_at = None
        if delay_ms > 0:
            available_at = datetime.now(UTC) + timedelta(milliseconds=delay_ms)
        msg = self.queue_backend.enqueue(
            tenant_id=data.firm_id,
            queue_name=queue_name_for(stage),
            payload=job_payload(stage, data),
            available_at=available_at,
        )
        logger.info("enqueued %s job %s for run %s", stage, msg.message_id, data.run_id)
        return msg

    def start_pipeline(self, data: JobData) -> QueueMessage:
        return self.enqueue_stage("intake", data)

    def submit_document(
        self,
        *,
        firm_id: str,
        matter_id: str,
        document_id: str,
        triggered_by: str | None = None,
    ) -> PipelineRun:
        run = PipelineRun(
            id=new_id("run"),
            firm_id=firm_id,
            matter_id=matter_id,
            document_id=document_id,
            status="queued",
            stage_statuses=initial_stage_statuses(),
            triggered_by=triggered_by,
        )
        self.runs.upsert(run=run)
        self.start_pipeline(run.job_data())
        return run

    def advance_to_next_stage(self, current_stage: str, data: JobData) -> QueueMessage | None:
        stage = next_stage(current_stage)
        if stage is None:
            return None
        return self.enqueue_stage(stage, data)

    def _load_run(self, *, firm_id: str, run_id: str) -> PipelineRun:
        run = self.runs.get(firm_id=firm_id, run_id=run_id)
        if run is None:
            raise ApiError(
                code="RUN_NOT_FOUND",
                message="pipeline run not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        return run

    def retry_from_stage(self, stage: str, data: JobData) -> QueueMessage:
        """Re-enqueue a run at ``stage``; a failed run is reopened first."""
        if stage not in PIPELINE_STAGES:
            raise ApiError(
                code="STAGE_UNKNOWN",
                message=f"unknown pipeline stage: {stage}",
                error_class="validation",
                retryable=False,
                http_status=400,
            )
        run = self._load_run(firm_id=data.firm_id, run_id=data.run_id)
        if is_terminal(run.status) and not can_transition(run.status, "queued"):
            raise ApiError(
                code="RUN_NOT_RETRYABLE",
                message=f"run is {run.status} and cannot be retried",
                error_class="validation",
                retryable=False,
                http_status=409,
            )
        if run.status == "failed":
            run.status = "queued"
            run.error = None
            run.completed_at = None
            run.current_stage = stage
            run.stage_statuses[stage] = StageStatus(status="pending")
            self.runs.upsert(run=run)
            logger.info("reopened failed run %s at stage %s", run.id, stage)
        return self.enqueue_stage(stage, run.job_data())

    def cancel_run(self, *, firm_id: str, run_id: str) -> PipelineRun:
        run = self._load_run(firm_id=firm_id, run_id=run_id)
        if is_terminal(run.status):
            raise ApiError(
                code="RUN_ALREADY_TERMINAL",
                message=f"run is already {run.status}",
                error_class="validation",
                retryable=False,
                http_status=409,
            )
        run.status = "cancelled"
        run.completed_at = utcnow_iso()
        logger.info("cancelled run %s", run.id)
        return self.runs.upsert(run=run)
