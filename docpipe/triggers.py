"""
Deterministic action triggers.

A trigger condition names a field (optionally scoped to a category), an
operator and a comparison value::

    {"categoryKey": "deadlines", "fieldKey": "hearing_date",
     "operator": "date_within_days", "value": 7}

Conditions are evaluated against an index of a run's findings keyed by both
``category:field`` and the bare field key. The first satisfying finding wins.
"""

from __future__ import annotations

import hashlib
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from docpipe.models import PipelineAction, PipelineFinding
from docpipe.taxonomy import ActionTrigger

OPERATORS = ("exists", "equals", "contains", "gt", "lt", "date_within_days")

_NUMERIC_NOISE_RE = re.compile(r"[,$%£€¥\s]")

FindingIndex = dict[str, list[PipelineFinding]]


@dataclass
class TriggerMatch:
    trigger: ActionTrigger
    finding: PipelineFinding


def action_id_for(run_id: str, kind: str, *parts: str) -> str:
    """Stable id so a re-executed actions job upserts the same rows."""
    seed = "|".join((run_id, kind, *parts))
    return "act_" + hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16]


def build_finding_index(findings: Iterable[PipelineFinding]) -> FindingIndex:
    index: FindingIndex = {}
    for finding in findings:
        index.setdefault(finding.qualified_key, []).append(finding)
        index.setdefault(finding.field_key, []).append(finding)
    return index


def _number(value: str) -> float | None:
    cleaned = _NUMERIC_NOISE_RE.sub("", value or "")
    try:
        return float(cleaned)
    except ValueError:
        return None


def _parse_datetime(value: str) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _days_until(value: str, now: datetime) -> int | None:
    target = _parse_datetime(value)
    if target is None:
        return None
    return math.ceil((target - now).total_seconds() / 86400)


def condition_matches(
    condition: dict[str, Any],
    finding: PipelineFinding,
    *,
    now: datetime | None = None,
) -> bool:
    operator = condition.get("operator")
    expected = condition.get("value")
    if operator == "exists":
        return True
    if operator == "equals":
        return finding.value == str(expected)
    if operator == "contains":
        return str(expected if expected is not None else "").lower() in finding.value.lower()
    if operator in {"gt", "lt"}:
        actual = _number(finding.value)
        try:
            threshold = float(expected)
        except (TypeError, ValueError):
            return False
        if actual is None:
            return False
        return actual > threshold if operator == "gt" else actual < threshold
    if operator == "date_within_days":
        days = _days_until(finding.value, now or datetime.now(UTC))
        if days is None:
            return False
        try:
            window = float(expected)
        except (TypeError, ValueError):
            return False
        return 0 <= days <= window
    return False


def evaluate_trigger(
    condition: dict[str, Any],
    index: FindingIndex,
    *,
    now: datetime | None = None,
) -> PipelineFinding | None:
    field_key = condition.get("fieldKey")
    if not field_key:
        return None
    category_key = condition.get("categoryKey")
    key = f"{category_key}:{field_key}" if category_key else field_key
    candidates = index.get(key) or index.get(field_key) or []
    for finding in candidates:
        if condition_matches(condition, finding, now=now):
            return finding
    return None


def match_triggers(
    triggers: Iterable[ActionTrigger],
    index: FindingIndex,
    *,
    now: datetime | None = None,
) -> list[TriggerMatch]:
    matches: list[TriggerMatch] = []
    for trigger in triggers:
        if not trigger.is_deterministic:
            continue
        finding = evaluate_trigger(trigger.trigger_condition or {}, index, now=now)
        if finding is not None:
            matches.append(TriggerMatch(trigger=trigger, finding=finding))
    return matches


def action_from_match(
    match: TriggerMatch,
    *,
    run_id: str,
    firm_id: str,
    matter_id: str,
) -> PipelineAction:
    template = match.trigger.action_template or {}
    return PipelineAction(
        id=action_id_for(run_id, "trigger", match.trigger.id, match.finding.id),
        run_id=run_id,
        firm_id=firm_id,
        matter_id=matter_id,
        action_type=str(template.get("actionType") or "ai_recommendation"),
        title=str(template.get("title") or match.trigger.name),
        description=template.get("description") or match.trigger.description,
        priority=int(template.get("priority") or 0),
        is_deterministic=True,
        payload=dict(template.get("payload") or {}),
        trigger_finding_id=match.finding.id,
        trigger_rule_id=match.trigger.id,
    )


def _conflict_priority(impact: str) -> int:
    if impact == "critical":
        return 0
    if impact == "high":
        return 1
    return 2


def conflict_actions(
    findings: Iterable[PipelineFinding],
    *,
    run_id: str,
    firm_id: str,
    matter_id: str,
) -> list[PipelineAction]:
    actions = []
    for finding in findings:
        if finding.status != "conflict":
            continue
        actions.append(
            PipelineAction(
                id=action_id_for(run_id, "conflict", finding.id),
                run_id=run_id,
                firm_id=firm_id,
                matter_id=matter_id,
                action_type="flag_risk",
                title=f"Data conflict: {finding.label}",
                description=(
                    f'Extracted "{finding.value}" conflicts with existing value '
                    f'"{finding.existing_value}". Review required.'
                ),
                priority=_conflict_priority(finding.impact),
                payload={
                    "findingId": finding.id,
                    "fieldKey": finding.field_key,
                    "categoryKey": finding.category_key,
                    "newValue": finding.value,
                    "existingValue": finding.existing_value,
                },
                trigger_finding_id=finding.id,
            )
        )
    return actions


def critical_review_action(
    findings: Iterable[PipelineFinding],
    *,
    run_id: str,
    firm_id: str,
    matter_id: str,
) -> PipelineAction | None:
    critical = [f for f in findings if f.status == "pending" and f.impact == "critical"]
    if not critical:
        return None
    return PipelineAction(
        id=action_id_for(run_id, "critical_review"),
        run_id=run_id,
        firm_id=firm_id,
        matter_id=matter_id,
        action_type="request_review",
        title=f"{len(critical)} critical finding(s) need review",
        description=(
            f"Critical findings extracted: {', '.join(f.label for f in critical)}. Manual review recommended."
        ),
        priority=0,
        payload={"findingIds": [f.id for f in critical]},
        trigger_finding_id=critical[0].id,
    )
