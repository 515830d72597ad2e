"""
Run-state bookkeeping shared by every stage worker.

The run row is the source of truth for pipeline progress. Workers record stage
transitions here; timeline events and the matter risk recalculation that ride
along are best-effort and never fail the run.
"""

from __future__ import annotations

import logging
from typing import Any

from docpipe.models import PipelineRun, StageStatus, TimelineEvent, new_id, utcnow_iso
from docpipe.risk_score import RiskResult, calculate_risk_score
from docpipe.stages import PIPELINE_STAGES, is_terminal

logger = logging.getLogger(__name__)


def initial_stage_statuses() -> dict[str, StageStatus]:
    return {stage: StageStatus(status="pending") for stage in PIPELINE_STAGES}


class RunStateTracker:
    def __init__(
        self,
        *,
        runs: Any,
        findings: Any,
        matters: Any,
        timeline: Any,
    ) -> None:
        self.runs = runs
        self.findings = findings
        self.matters = matters
        self.timeline = timeline

    def _require(self, *, firm_id: str, run_id: str) -> PipelineRun:
        run = self.runs.get(firm_id=firm_id, run_id=run_id)
        if run is None:
            raise LookupError(f"pipeline run {run_id} not found")
        return run

    def _emit(self, run: PipelineRun, *, event_type: str, title: str, metadata: dict[str, Any]) -> None:
        try:
            self.timeline.append(
                event=TimelineEvent(
                    id=new_id("evt"),
                    firm_id=run.firm_id,
                    matter_id=run.matter_id,
                    event_type=event_type,
                    title=title,
                    entity_type="pipeline_run",
                    entity_id=run.id,
                    metadata=metadata,
                )
            )
        except Exception:
            logger.exception("timeline event %s failed for run %s", event_type, run.id)

    def mark_stage_running(self, *, firm_id: str, run_id: str, stage: str) -> PipelineRun:
        run = self._require(firm_id=firm_id, run_id=run_id)
        now = utcnow_iso()
        run.stage_statuses[stage] = StageStatus(status="running", started_at=now)
        run.current_stage = stage
        run.status = "running"
        if stage == "intake":
            run.started_at = now
        return self.runs.upsert(run=run)

    def mark_stage_completed(
        self,
        *,
        firm_id: str,
        run_id: str,
        stage: str,
        classified_doc_type: str | None = None,
        classification_confidence: str | None = None,
        document_hash: str | None = None,
        taxonomy_pack_id: str | None = None,
        findings_count: int | None = None,
        actions_count: int | None = None,
        total_tokens_used: int | None = None,
    ) -> PipelineRun:
        """Close ``stage`` and fold its results into the run.

        Finding and action counts are replaced, so a re-executed stage reports
        its own output once. Token usage accumulates across stages and attempts.
        """
        run = self._require(firm_id=firm_id, run_id=run_id)
        previous = run.stage_statuses.get(stage) or StageStatus(status="running")
        run.stage_statuses[stage] = StageStatus(
            status="completed",
            started_at=previous.started_at,
            completed_at=utcnow_iso(),
        )
        if classified_doc_type:
            run.classified_doc_type = classified_doc_type
        if classification_confidence:
            run.classification_confidence = classification_confidence
        if document_hash:
            run.document_hash = document_hash
        if taxonomy_pack_id:
            run.taxonomy_pack_id = taxonomy_pack_id
        if findings_count is not None:
            run.findings_count = findings_count
        if actions_count is not None:
            run.actions_count = actions_count
        if total_tokens_used is not None:
            run.total_tokens_used += total_tokens_used
        run = self.runs.upsert(run=run)
        self._emit(
            run,
            event_type="pipeline_stage_completed",
            title=f"Pipeline stage completed: {stage}",
            metadata={"stage": stage, "runId": run.id},
        )
        return run

    def mark_stage_skipped(
        self,
        *,
        firm_id: str,
        run_id: str,
        stage: str,
        reason: str,
        taxonomy_pack_id: str | None = None,
    ) -> PipelineRun:
        run = self._require(firm_id=firm_id, run_id=run_id)
        if taxonomy_pack_id:
            run.taxonomy_pack_id = taxonomy_pack_id
        previous = run.stage_statuses.get(stage) or StageStatus(status="running")
        run.stage_statuses[stage] = StageStatus(
            status="skipped",
            started_at=previous.started_at,
            completed_at=utcnow_iso(),
            error=reason,
        )
        return self.runs.upsert(run=run)

    def mark_pipeline_completed(self, *, firm_id: str, run_id: str) -> PipelineRun:
        run = self._require(firm_id=firm_id, run_id=run_id)
        now = utcnow_iso()
        run.status = "completed"
        run.completed_at = now
        run = self.runs.upsert(run=run)
        self._emit(
            run,
            event_type="pipeline_completed",
            title="Document pipeline completed",
            metadata={"runId": run.id},
        )
        try:
            self.recalculate_matter_risk(firm_id=run.firm_id, matter_id=run.matter_id)
        except Exception:
            logger.exception("risk recalculation failed for matter %s", run.matter_id)
        return run

    def mark_pipeline_failed(self, *, firm_id: str, run_id: str, stage: str, error: str) -> PipelineRun | None:
        run = self.runs.get(firm_id=firm_id, run_id=run_id)
        if run is None:
            logger.warning("cannot mark missing run %s failed at %s: %s", run_id, stage, error)
            return None
        if is_terminal(run.status) and run.status != "failed":
            logger.warning("run %s is already %s; not marking failed at %s", run_id, run.status, stage)
            return run
        previous = run.stage_statuses.get(stage) or StageStatus(status="failed")
        run.stage_statuses[stage] = StageStatus(
            status="failed",
            started_at=previous.started_at,
            completed_at=previous.completed_at,
            error=error,
        )
        run.status = "failed"
        run.error = error
        run.completed_at = utcnow_iso()
        run = self.runs.upsert(run=run)
        self._emit(
            run,
            event_type="pipeline_failed",
            title=f"Pipeline failed at stage: {stage}",
            metadata={"stage": stage, "error": error, "runId": run.id},
        )
        return run

    def recalculate_matter_risk(self, *, firm_id: str, matter_id: str) -> RiskResult:
        """Score the matter from all of its findings, across every run."""
        result = calculate_risk_score(self.findings.list_for_matter(firm_id=firm_id, matter_id=matter_id))
        self.matters.update_risk(
            firm_id=firm_id,
            matter_id=matter_id,
            score=result.score,
            factors=result.factors,
        )
        return result
