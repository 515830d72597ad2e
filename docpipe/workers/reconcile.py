from __future__ import annotations

import logging

from docpipe.models import JobData, PipelineRun, utcnow_iso
from docpipe.reconciliation import reconcile_finding
from docpipe.taxonomy import ReconciliationRule
from docpipe.workers.base import StageWorker

logger = logging.getLogger(__name__)

SETTLED_STATUSES = frozenset({"accepted", "auto_applied"})


class ReconcileWorker(StageWorker):
    """Compare this run's pending findings against the matter's settled values.

    Conflicts are a domain outcome: the stage always advances.
    """

    stage = "reconcile"

    async def execute(self, job: JobData, run: PipelineRun) -> None:
        svc = self.services
        rule_map: dict[str, ReconciliationRule] = {}
        if run.taxonomy_pack_id:
            loaded = svc.taxonomy.load_pack_by_id(run.taxonomy_pack_id)
            if loaded is not None:
                rule_map = loaded.reconciliation_rule_map

        pending = svc.findings.list_for_run(firm_id=job.firm_id, run_id=job.run_id, status="pending")
        if not pending:
            self.complete(job)
            return

        # Latest settled value per category:field, ignoring this run's own rows.
        existing: dict[str, str] = {}
        for other in svc.findings.list_for_matter(firm_id=job.firm_id, matter_id=job.matter_id):
            if other.run_id == job.run_id or other.status not in SETTLED_STATUSES or not other.value:
                continue
            existing[other.qualified_key] = other.value

        applied = conflicts = 0
        for finding in pending:
            outcome = reconcile_finding(
                finding.value,
                existing.get(finding.qualified_key),
                finding.confidence,
                rule_map.get(finding.field_key),
                semantic_matcher=svc.semantic_matcher,
            )
            if outcome.status == "pending" and outcome.existing_value is None:
                continue
            finding.status = outcome.status
            finding.existing_value = outcome.existing_value
            if outcome.resolved:
                finding.resolved_at = utcnow_iso()
            svc.findings.update(finding=finding)
            if outcome.status == "auto_applied":
                applied += 1
            elif outcome.status == "conflict":
                conflicts += 1

        logger.info(
            "reconcile: run %s auto-applied %d, conflicts %d, pending %d",
            job.run_id,
            applied,
            conflicts,
            len(pending) - applied - conflicts,
        )
        self.complete(job)
