from __future__ import annotations

from dataclasses import dataclass

PIPELINE_STAGES: tuple[str, ...] = ("intake", "ocr", "classify", "extract", "reconcile", "actions")

RUN_STATUSES = frozenset({"queued", "running", "completed", "failed", "cancelled"})
TERMINAL_RUN_STATUSES = frozenset({"completed", "failed", "cancelled"})
STAGE_STATUSES = frozenset({"pending", "running", "completed", "failed", "skipped"})

# Run lifecycle. A failed run may be reopened for a manual retry from any stage.
RUN_TRANSITIONS: dict[str, set[str]] = {
    "queued": {"running", "failed", "cancelled"},
    "running": {"running", "completed", "failed", "cancelled"},
    "failed": {"queued"},
    "completed": set(),
    "cancelled": set(),
}


@dataclass(frozen=True)
class StageConfig:
    concurrency: int
    attempts: int
    backoff_delay_ms: int
    timeout_ms: int


STAGE_CONFIG: dict[str, StageConfig] = {
    "intake": StageConfig(concurrency=10, attempts=3, backoff_delay_ms=1000, timeout_ms=30_000),
    "ocr": StageConfig(concurrency=5, attempts=3, backoff_delay_ms=2000, timeout_ms=300_000),
    "classify": StageConfig(concurrency=5, attempts=3, backoff_delay_ms=2000, timeout_ms=300_000),
    "extract": StageConfig(concurrency=3, attempts=3, backoff_delay_ms=3000, timeout_ms=300_000),
    "reconcile": StageConfig(concurrency=5, attempts=2, backoff_delay_ms=2000, timeout_ms=60_000),
    "actions": StageConfig(concurrency=5, attempts=2, backoff_delay_ms=2000, timeout_ms=60_000),
}

# Finished-job history kept per queue.
KEEP_COMPLETED_JOBS = 1000
KEEP_FAILED_JOBS = 5000


def queue_name_for(stage: str) -> str:
    return f"pipeline:{_require_stage(stage)}"


def stage_index(stage: str) -> int:
    return PIPELINE_STAGES.index(_require_stage(stage))


def advance(stage: str) -> str:
    """Return the stage after ``stage``, or ``"completed"`` after the last one."""
    idx = stage_index(stage)
    if idx + 1 >= len(PIPELINE_STAGES):
        return "completed"
    return PIPELINE_STAGES[idx + 1]


def next_stage(stage: str) -> str | None:
    nxt = advance(stage)
    return None if nxt == "completed" else nxt


def is_terminal(status: str) -> bool:
    return status in TERMINAL_RUN_STATUSES


def can_transition(current: str, new: str) -> bool:
    return new in RUN_TRANSITIONS.get(current, set())


def retry_delay_ms(*, stage: str, attempts_made: int, base_delay_ms: int | None = None) -> int:
    base = STAGE_CONFIG[_require_stage(stage)].backoff_delay_ms if base_delay_ms is None else base_delay_ms
    return base * (2 ** max(0, attempts_made - 1))


def _require_stage(stage: str) -> str:
    if stage not in STAGE_CONFIG:
        raise ValueError(f"unknown pipeline stage: {stage}")
    return stage
