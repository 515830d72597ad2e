from __future__ import annotations

from datetime import UTC, datetime, timedelta

from docpipe.models import PipelineFinding
from docpipe.taxonomy import ActionTrigger
from docpipe.triggers import (
    action_from_match,
    action_id_for,
    build_finding_index,
    condition_matches,
    conflict_actions,
    critical_review_action,
    evaluate_trigger,
    match_triggers,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def _finding(
    field_key: str,
    value: str,
    *,
    category_key: str = "deadlines",
    status: str = "pending",
    impact: str = "medium",
    finding_id: str | None = None,
    existing_value: str | None = None,
) -> PipelineFinding:
    return PipelineFinding(
        id=finding_id or f"fnd_{field_key}",
        run_id="run_1",
        firm_id="firm_a",
        matter_id="matter_1",
        document_id="doc_1",
        category_key=category_key,
        field_key=field_key,
        label=field_key.replace("_", " ").title(),
        value=value,
        confidence=0.9,
        impact=impact,
        status=status,
        existing_value=existing_value,
    )


def test_date_within_days_matches_inside_window_only():
    condition = {"fieldKey": "hearing_date", "operator": "date_within_days", "value": 7}
    soon = _finding("hearing_date", (NOW + timedelta(days=5)).isoformat())
    later = _finding("hearing_date", (NOW + timedelta(days=10)).isoformat())
    past = _finding("hearing_date", (NOW - timedelta(days=1)).isoformat())

    assert condition_matches(condition, soon, now=NOW) is True
    assert condition_matches(condition, later, now=NOW) is False
    assert condition_matches(condition, past, now=NOW) is False
    assert condition_matches(condition, _finding("hearing_date", "next week"), now=NOW) is False


def test_date_within_days_accepts_plain_dates():
    condition = {"fieldKey": "hearing_date", "operator": "date_within_days", "value": 7}
    assert condition_matches(condition, _finding("hearing_date", "2024-06-05"), now=NOW) is True


def test_comparison_operators():
    amount = _finding("claim_value", "$12,500", category_key="damages")

    assert condition_matches({"operator": "exists"}, amount) is True
    assert condition_matches({"operator": "gt", "value": 10000}, amount) is True
    assert condition_matches({"operator": "lt", "value": 10000}, amount) is False
    assert condition_matches({"operator": "gt", "value": "lots"}, amount) is False
    assert condition_matches({"operator": "equals", "value": "$12,500"}, amount) is True
    assert condition_matches({"operator": "equals", "value": "12500"}, amount) is False
    assert condition_matches({"operator": "contains", "value": "12,5"}, amount) is True
    assert condition_matches({"operator": "unknown_op"}, amount) is False


def test_category_scoped_condition_uses_qualified_key():
    index = build_finding_index(
        [
            _finding("date", "2024-06-03", category_key="hearing", finding_id="fnd_hearing"),
            _finding("date", "2024-01-01", category_key="incident", finding_id="fnd_incident"),
        ]
    )
    found = evaluate_trigger({"categoryKey": "incident", "fieldKey": "date", "operator": "exists"}, index)
    assert found is not None
    assert found.id == "fnd_incident"
    assert evaluate_trigger({"operator": "exists"}, index) is None


def test_match_triggers_skips_non_deterministic_and_builds_actions():
    index = build_finding_index([_finding("claimant_name", "Jane Doe", category_key="parties")])
    triggers = [
        ActionTrigger(
            id="trg_1",
            name="Open claimant file",
            trigger_condition={"fieldKey": "claimant_name", "operator": "exists"},
            action_template={"actionType": "create_task", "priority": 2, "payload": {"queue": "intake"}},
        ),
        ActionTrigger(
            id="trg_2",
            name="Model suggestion",
            trigger_condition={"fieldKey": "claimant_name", "operator": "exists"},
            is_deterministic=False,
        ),
    ]

    matches = match_triggers(triggers, index, now=NOW)
    assert [m.trigger.id for m in matches] == ["trg_1"]

    action = action_from_match(matches[0], run_id="run_1", firm_id="firm_a", matter_id="matter_1")
    assert action.action_type == "create_task"
    assert action.title == "Open claimant file"
    assert action.priority == 2
    assert action.payload == {"queue": "intake"}
    assert action.trigger_finding_id == "fnd_claimant_name"
    assert action.trigger_rule_id == "trg_1"
    assert action.is_deterministic is True


def test_conflict_actions_priority_follows_impact():
    findings = [
        _finding("injury_date", "2024-06-01", status="conflict", impact="critical", existing_value="2024-01-01"),
        _finding("claimant_name", "Jane", status="conflict", impact="high", existing_value="Janet"),
        _finding("employer", "Acme", status="conflict", impact="low", existing_value="Acme Ltd"),
        _finding("insurer", "Aviva", status="auto_applied"),
    ]
    actions = conflict_actions(findings, run_id="run_1", firm_id="firm_a", matter_id="matter_1")

    assert [a.priority for a in actions] == [0, 1, 2]
    assert all(a.action_type == "flag_risk" for a in actions)
    assert actions[0].title == "Data conflict: Injury Date"
    assert actions[0].payload["newValue"] == "2024-06-01"
    assert actions[0].payload["existingValue"] == "2024-01-01"


def test_critical_review_action_groups_pending_critical_findings():
    findings = [
        _finding("filing_deadline", "2024-07-01", impact="critical", finding_id="fnd_a"),
        _finding("trial_date", "2024-09-01", impact="critical", finding_id="fnd_b"),
        _finding("statute_date", "2025-01-01", impact="critical", status="auto_applied"),
    ]
    action = critical_review_action(findings, run_id="run_1", firm_id="firm_a", matter_id="matter_1")

    assert action is not None
    assert action.action_type == "request_review"
    assert action.title == "2 critical finding(s) need review"
    assert action.payload == {"findingIds": ["fnd_a", "fnd_b"]}
    assert critical_review_action(findings[2:], run_id="r", firm_id="f", matter_id="m") is None


def test_action_ids_are_stable_per_run_and_source():
    findings = [
        _finding("injury_date", "2024-06-01", status="conflict", impact="critical", existing_value="2024-01-01"),
        _finding("filing_deadline", "2024-07-01", impact="critical"),
    ]
    scope = {"run_id": "run_1", "firm_id": "firm_a", "matter_id": "matter_1"}

    first = conflict_actions(findings, **scope) + [critical_review_action(findings, **scope)]
    second = conflict_actions(findings, **scope) + [critical_review_action(findings, **scope)]

    assert [a.id for a in first] == [a.id for a in second]
    assert len({a.id for a in first}) == 2
    assert action_id_for("run_1", "conflict", "fnd_injury_date") == first[0].id
    assert action_id_for("run_2", "conflict", "fnd_injury_date") != first[0].id
    assert action_id_for("run_1", "trigger", "trg_1", "fnd_x").startswith("act_")
