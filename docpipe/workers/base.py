from __future__ import annotations

import logging
from typing import Any

from docpipe.errors import StageFailure
from docpipe.models import JobData, PipelineRun
from docpipe.stages import is_terminal

logger = logging.getLogger(__name__)


class StageWorker:
    """Body of one pipeline stage.

    ``execute`` raises ``StageFailure`` for terminal conditions; those are
    recorded on the run and swallowed so the queue never retries them. Any
    other exception propagates to the runtime and is retried with backoff.
    """

    stage = ""

    def __init__(self, services: Any) -> None:
        self.services = services

    async def process(self, job: JobData) -> None:
        svc = self.services
        run = svc.runs.get(firm_id=job.firm_id, run_id=job.run_id)
        if run is None:
            logger.warning("%s: pipeline run %s not found; dropping job", self.stage, job.run_id)
            return
        if is_terminal(run.status):
            logger.info("%s: run %s is %s; skipping job", self.stage, job.run_id, run.status)
            return

        run = svc.tracker.mark_stage_running(firm_id=job.firm_id, run_id=job.run_id, stage=self.stage)
        logger.info("%s started for run %s", self.stage, job.run_id)
        try:
            await self.execute(job, run)
        except StageFailure as exc:
            logger.warning("%s failed for run %s: %s", self.stage, job.run_id, exc.message)
            svc.tracker.mark_pipeline_failed(
                firm_id=job.firm_id,
                run_id=job.run_id,
                stage=self.stage,
                error=exc.message,
            )
            return
        logger.info("%s finished for run %s", self.stage, job.run_id)

    async def execute(self, job: JobData, run: PipelineRun) -> None:
        raise NotImplementedError

    def complete(self, job: JobData, **results: Any) -> None:
        self.services.tracker.mark_stage_completed(
            firm_id=job.firm_id,
            run_id=job.run_id,
            stage=self.stage,
            **results,
        )
        self.services.orchestrator.advance_to_next_stage(self.stage, job)

    def skip(self, job: JobData, *, reason: str, taxonomy_pack_id: str | None = None) -> None:
        logger.warning("%s skipped for run %s: %s", self.stage, job.run_id, reason)
        self.services.tracker.mark_stage_skipped(
            firm_id=job.firm_id,
            run_id=job.run_id,
            stage=self.stage,
            reason=reason,
            taxonomy_pack_id=taxonomy_pack_id,
        )
        self.services.orchestrator.advance_to_next_stage(self.stage, job)

    def load_document(self, job: JobData) -> Any:
        return self.services.documents.get(firm_id=job.firm_id, document_id=job.document_id)

    def require_text(self, job: JobData) -> str:
        doc = self.load_document(job)
        text = (doc.extracted_text or "") if doc is not None else ""
        if not text.strip():
            raise StageFailure("No extracted text available")
        return text
