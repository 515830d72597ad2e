from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def _known_kwargs(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class JobData:
    run_id: str
    firm_id: str
    matter_id: str
    document_id: str
    triggered_by: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "pipelineRunId": self.run_id,
            "firmId": self.firm_id,
            "matterId": self.matter_id,
            "documentId": self.document_id,
            "triggeredBy": self.triggered_by,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> JobData:
        missing = [k for k in ("pipelineRunId", "firmId", "matterId", "documentId") if not payload.get(k)]
        if missing:
            raise ValueError(f"job payload missing keys: {', '.join(missing)}")
        return cls(
            run_id=str(payload["pipelineRunId"]),
            firm_id=str(payload["firmId"]),
            matter_id=str(payload["matterId"]),
            document_id=str(payload["documentId"]),
            triggered_by=payload.get("triggeredBy"),
        )


@dataclass
class StageStatus:
    status: str
    started_at: str | None = None
    completed_at: str | None = None
    error: str | None = None


@dataclass
class PipelineRun:
    id: str
    firm_id: str
    matter_id: str
    document_id: str
    status: str = "queued"
    current_stage: str | None = None
    stage_statuses: dict[str, StageStatus] = field(default_factory=dict)
    document_hash: str | None = None
    classified_doc_type: str | None = None
    classification_confidence: str | None = None
    taxonomy_pack_id: str | None = None
    findings_count: int = 0
    actions_count: int = 0
    total_tokens_used: int = 0
    error: str | None = None
    triggered_by: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    started_at: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineRun:
        kwargs = _known_kwargs(cls, data)
        statuses = kwargs.get("stage_statuses") or {}
        kwargs["stage_statuses"] = {
            stage: value if isinstance(value, StageStatus) else StageStatus(**_known_kwargs(StageStatus, value))
            for stage, value in statuses.items()
        }
        return cls(**kwargs)

    def job_data(self) -> JobData:
        return JobData(
            run_id=self.id,
            firm_id=self.firm_id,
            matter_id=self.matter_id,
            document_id=self.document_id,
            triggered_by=self.triggered_by,
        )


@dataclass
class PipelineFinding:
    id: str
    run_id: str
    firm_id: str
    matter_id: str
    document_id: str
    category_key: str
    field_key: str
    label: str
    value: str
    confidence: float
    impact: str = "medium"
    status: str = "pending"
    source_quote: str | None = None
    page_start: int | None = None
    page_end: int | None = None
    char_start: int | None = None
    char_end: int | None = None
    existing_value: str | None = None
    resolved_by: str | None = None
    resolved_at: str | None = None
    created_at: str = field(default_factory=utcnow_iso)

    @property
    def qualified_key(self) -> str:
        return f"{self.category_key}:{self.field_key}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineFinding:
        return cls(**_known_kwargs(cls, data))


@dataclass
class PipelineAction:
    id: str
    run_id: str
    firm_id: str
    matter_id: str
    action_type: str
    title: str
    description: str | None = None
    priority: int = 0
    status: str = "pending"
    is_deterministic: bool = True
    payload: dict[str, Any] = field(default_factory=dict)
    trigger_finding_id: str | None = None
    trigger_rule_id: str | None = None
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineAction:
        return cls(**_known_kwargs(cls, data))


@dataclass
class DlqEntry:
    job_id: str
    stage: str
    run_id: str
    matter_id: str
    firm_id: str
    error: str
    attempts_made: int
    failed_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DlqEntry:
        return cls(**_known_kwargs(cls, data))


@dataclass
class Document:
    id: str
    firm_id: str
    matter_id: str
    filename: str
    mime_type: str
    storage_bucket: str
    storage_path: str
    extracted_text: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Document:
        return cls(**_known_kwargs(cls, data))


@dataclass
class Matter:
    id: str
    firm_id: str
    practice_area: str | None = None
    risk_score: int | None = None
    risk_factors: list[dict[str, Any]] = field(default_factory=list)
    risk_assessed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Matter:
        return cls(**_known_kwargs(cls, data))


@dataclass
class Task:
    id: str
    firm_id: str
    matter_id: str
    title: str
    description: str = ""
    status: str = "pending"
    priority: str = "medium"
    created_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(**_known_kwargs(cls, data))


@dataclass
class TimelineEvent:
    id: str
    firm_id: str
    matter_id: str
    event_type: str
    title: str
    entity_type: str
    entity_id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    occurred_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TimelineEvent:
        return cls(**_known_kwargs(cls, data))
