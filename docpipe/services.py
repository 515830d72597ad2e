from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from docpipe.ai_client import create_ai_client_from_env
from docpipe.blob_storage import create_blob_storage_from_env
from docpipe.db.postgres import PostgresTxRunner
from docpipe.dlq import DlqMonitor, InMemoryDlqStore, create_dlq_store
from docpipe.orchestrator import PipelineOrchestrator
from docpipe.queue_backend import InMemoryQueueBackend, create_queue_from_env
from docpipe.reconciliation import SemanticMatcher
from docpipe.repositories import (
    InMemoryDocumentsRepository,
    InMemoryMattersRepository,
    InMemoryPipelineActionsRepository,
    InMemoryPipelineFindingsRepository,
    InMemoryPipelineRunsRepository,
    InMemoryTasksRepository,
    InMemoryTimelineRepository,
    PostgresDocumentsRepository,
    PostgresMattersRepository,
    PostgresPipelineActionsRepository,
    PostgresPipelineFindingsRepository,
    PostgresPipelineRunsRepository,
    PostgresTasksRepository,
    PostgresTimelineRepository,
)
from docpipe.run_state import RunStateTracker
from docpipe.settings import PipelineSettings, load_settings
from docpipe.taxonomy import LoadedPack, TaxonomyLoader
from docpipe.worker_runtime import PipelineRuntime, create_pipeline_runtime_from_env
from docpipe.workers import WORKER_CLASSES

logger = logging.getLogger(__name__)


@dataclass
class PipelineServices:
    """Everything a stage worker or the ops API touches, wired once per process."""

    settings: PipelineSettings
    runs: Any
    findings: Any
    actions: Any
    documents: Any
    matters: Any
    tasks: Any
    timeline: Any
    taxonomy: TaxonomyLoader
    blob_storage: Any
    ai_client: Any
    queue_backend: Any
    tracker: RunStateTracker
    orchestrator: PipelineOrchestrator
    dlq: DlqMonitor
    semantic_matcher: SemanticMatcher | None = None

    def build_workers(self) -> dict[str, Any]:
        return {stage: cls(self) for stage, cls in WORKER_CLASSES.items()}

    def build_runtime(self, *, environ: Mapping[str, str] | None = None) -> PipelineRuntime:
        runtime = create_pipeline_runtime_from_env(
            workers=self.build_workers(),
            queue_backend=self.queue_backend,
            environ=environ,
        )
        self.dlq.attach(runtime)
        return runtime


def _assemble(
    *,
    settings: PipelineSettings,
    runs: Any,
    findings: Any,
    actions: Any,
    documents: Any,
    matters: Any,
    tasks: Any,
    timeline: Any,
    blob_storage: Any,
    ai_client: Any,
    queue_backend: Any,
    dlq_store: Any,
    packs: list[LoadedPack] | None,
    semantic_matcher: SemanticMatcher | None,
) -> PipelineServices:
    tracker = RunStateTracker(runs=runs, findings=findings, matters=matters, timeline=timeline)
    return PipelineServices(
        settings=settings,
        runs=runs,
        findings=findings,
        actions=actions,
        documents=documents,
        matters=matters,
        tasks=tasks,
        timeline=timeline,
        taxonomy=TaxonomyLoader(matters=matters, packs=packs),
        blob_storage=blob_storage,
        ai_client=ai_client,
        queue_backend=queue_backend,
        tracker=tracker,
        orchestrator=PipelineOrchestrator(queue_backend=queue_backend, runs=runs),
        dlq=DlqMonitor(store=dlq_store, tracker=tracker),
        semantic_matcher=semantic_matcher,
    )


def build_in_memory_services(
    *,
    ai_client: Any,
    blob_storage: Any,
    packs: list[LoadedPack] | None = None,
    settings: PipelineSettings | None = None,
    semantic_matcher: SemanticMatcher | None = None,
) -> PipelineServices:
    cfg = settings or PipelineSettings()
    return _assemble(
        settings=cfg,
        runs=InMemoryPipelineRunsRepository(),
        findings=InMemoryPipelineFindingsRepository(),
        actions=InMemoryPipelineActionsRepository(),
        documents=InMemoryDocumentsRepository(),
        matters=InMemoryMattersRepository(),
        tasks=InMemoryTasksRepository(),
        timeline=InMemoryTimelineRepository(),
        blob_storage=blob_storage,
        ai_client=ai_client,
        queue_backend=InMemoryQueueBackend(),
        dlq_store=InMemoryDlqStore(capacity=cfg.dlq_capacity),
        packs=packs,
        semantic_matcher=semantic_matcher,
    )


def build_services_from_env(environ: Mapping[str, str] | None = None) -> PipelineServices:
    env = os.environ if environ is None else environ
    settings = load_settings(env)

    if settings.store_backend == "postgres":
        tx_runner = PostgresTxRunner(settings.postgres_dsn)
        runs: Any = PostgresPipelineRunsRepository(tx_runner=tx_runner)
        findings: Any = PostgresPipelineFindingsRepository(tx_runner=tx_runner)
        actions: Any = PostgresPipelineActionsRepository(tx_runner=tx_runner)
        documents: Any = PostgresDocumentsRepository(tx_runner=tx_runner)
        matters: Any = PostgresMattersRepository(tx_runner=tx_runner)
        tasks: Any = PostgresTasksRepository(tx_runner=tx_runner)
        timeline: Any = PostgresTimelineRepository(tx_runner=tx_runner)
        dlq_store = create_dlq_store(settings=settings, tx_runner=tx_runner)
    else:
        runs = InMemoryPipelineRunsRepository()
        findings = InMemoryPipelineFindingsRepository()
        actions = InMemoryPipelineActionsRepository()
        documents = InMemoryDocumentsRepository()
        matters = InMemoryMattersRepository()
        tasks = InMemoryTasksRepository()
        timeline = InMemoryTimelineRepository()
        dlq_store = create_dlq_store(settings=settings)

    services = _assemble(
        settings=settings,
        runs=runs,
        findings=findings,
        actions=actions,
        documents=documents,
        matters=matters,
        tasks=tasks,
        timeline=timeline,
        blob_storage=create_blob_storage_from_env(env),
        ai_client=create_ai_client_from_env(settings, env),
        queue_backend=create_queue_from_env(env),
        dlq_store=dlq_store,
        packs=None,
        semantic_matcher=None,
    )
    if settings.taxonomy_dir:
        services.taxonomy.load_directory(settings.taxonomy_dir)
    logger.info(
        "pipeline services ready (store=%s, queue=%s)",
        settings.store_backend,
        services.queue_backend.__class__.__name__,
    )
    return services
