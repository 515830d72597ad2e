from __future__ import annotations

import logging

from docpipe.models import JobData, PipelineAction, PipelineRun
from docpipe.triggers import (
    action_from_match,
    build_finding_index,
    conflict_actions,
    critical_review_action,
    match_triggers,
)
from docpipe.workers.base import StageWorker

logger = logging.getLogger(__name__)


class ActionsWorker(StageWorker):
    """Final stage: turn findings into work items and close the run."""

    stage = "actions"

    async def execute(self, job: JobData, run: PipelineRun) -> None:
        svc = self.services
        findings = svc.findings.list_for_run(firm_id=job.firm_id, run_id=job.run_id)
        scope = {"run_id": job.run_id, "firm_id": job.firm_id, "matter_id": job.matter_id}

        actions: list[PipelineAction] = []
        if run.taxonomy_pack_id:
            loaded = svc.taxonomy.load_pack_by_id(run.taxonomy_pack_id)
            if loaded is not None and loaded.action_triggers:
                for match in match_triggers(loaded.action_triggers, build_finding_index(findings)):
                    actions.append(action_from_match(match, **scope))

        actions.extend(conflict_actions(findings, **scope))
        review = critical_review_action(findings, **scope)
        if review is not None:
            actions.append(review)

        if actions:
            svc.actions.insert_many(actions=actions)
        logger.info("actions: run %s generated %d actions", job.run_id, len(actions))

        svc.tracker.mark_stage_completed(
            firm_id=job.firm_id,
            run_id=job.run_id,
            stage=self.stage,
            actions_count=len(actions),
        )
        svc.tracker.mark_pipeline_completed(firm_id=job.firm_id, run_id=job.run_id)
