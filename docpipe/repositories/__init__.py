from docpipe.repositories.documents import InMemoryDocumentsRepository, PostgresDocumentsRepository
from docpipe.repositories.matters import InMemoryMattersRepository, PostgresMattersRepository
from docpipe.repositories.pipeline_actions import (
    InMemoryPipelineActionsRepository,
    PostgresPipelineActionsRepository,
)
from docpipe.repositories.pipeline_findings import (
    InMemoryPipelineFindingsRepository,
    PostgresPipelineFindingsRepository,
)
from docpipe.repositories.pipeline_runs import InMemoryPipelineRunsRepository, PostgresPipelineRunsRepository
from docpipe.repositories.tasks import InMemoryTasksRepository, PostgresTasksRepository
from docpipe.repositories.timeline import InMemoryTimelineRepository, PostgresTimelineRepository

__all__ = [
    "InMemoryDocumentsRepository",
    "PostgresDocumentsRepository",
    "InMemoryMattersRepository",
    "PostgresMattersRepository",
    "InMemoryPipelineActionsRepository",
    "PostgresPipelineActionsRepository",
    "InMemoryPipelineFindingsRepository",
    "PostgresPipelineFindingsRepository",
    "InMemoryPipelineRunsRepository",
    "PostgresPipelineRunsRepository",
    "InMemoryTasksRepository",
    "PostgresTasksRepository",
    "InMemoryTimelineRepository",
    "PostgresTimelineRepository",
]
