from __future__ import annotations

from datetime import date

from docpipe.reconciliation import (
    normalize_text,
    parse_date,
    parse_number,
    reconcile_finding,
    values_match,
)
from docpipe.taxonomy import ReconciliationRule


def test_normalize_text_strips_case_punctuation_and_spacing():
    assert normalize_text("  Smith,  John (Jr.) ") == "smith john jr"


def test_parse_number_ignores_currency_and_grouping():
    assert parse_number("£1,200.50") == 1200.50
    assert parse_number("12 %") == 12.0
    assert parse_number("about twelve") is None
    assert parse_number("") is None


def test_parse_date_accepts_iso_and_long_forms():
    assert parse_date("2024-03-01") == date(2024, 3, 1)
    assert parse_date("2024-03-01T23:30:00-05:00") == date(2024, 3, 2)
    assert parse_date("1 March 2024") == date(2024, 3, 1)
    assert parse_date("March 1, 2024") == date(2024, 3, 1)
    assert parse_date("soon") is None


def test_values_match_modes():
    assert values_match("John Smith", " john smith ", "exact") is False
    assert values_match("John Smith", "John Smith ", "exact") is True
    assert values_match("Smith, John.", "smith john", "fuzzy_text") is True
    assert values_match("£1,200.50", "1200.49", "fuzzy_number") is True
    assert values_match("1000", "1020", "fuzzy_number") is False
    assert values_match("2024-03-01", "1 March 2024", "date_range") is True
    assert values_match("2024-03-01", "2024-03-02", "date_range") is False


def test_unparseable_values_conflict_in_numeric_and_date_modes():
    assert values_match("n/a", "1200", "fuzzy_number") is False
    assert values_match("unknown", "2024-03-01", "date_range") is False


def test_semantic_mode_uses_matcher_when_configured():
    aliases = {frozenset({"rta", "road traffic accident"})}

    def matcher(a: str, b: str) -> bool:
        return frozenset({a.lower(), b.lower()}) in aliases

    assert values_match("RTA", "road traffic accident", "semantic", semantic_matcher=matcher) is True
    # without a matcher semantic falls back to normalized text comparison
    assert values_match("RTA", "road traffic accident", "semantic") is False
    assert values_match("R.T.A", "rta", "semantic") is True


def test_new_value_auto_applies_above_threshold():
    outcome = reconcile_finding("Jane Doe", None, 0.9)
    assert outcome.status == "auto_applied"
    assert outcome.resolved is True
    assert outcome.existing_value is None


def test_new_value_below_threshold_stays_pending():
    rule = ReconciliationRule(field_key="claimant_name", auto_apply_threshold=0.95)
    assert reconcile_finding("Jane Doe", None, 0.9, rule).status == "pending"
    assert reconcile_finding("Jane Doe", None, 0.84).status == "pending"


def test_rule_requiring_review_never_auto_applies_new_values():
    rule = ReconciliationRule(field_key="settlement", requires_human_review=True)
    outcome = reconcile_finding("50000", None, 0.99, rule)
    assert outcome.status == "pending"
    assert outcome.resolved is False


def test_matching_existing_value_auto_applies_with_rule_mode():
    rule = ReconciliationRule(field_key="claim_value", conflict_detection_mode="fuzzy_number")
    outcome = reconcile_finding("£1,200.50", "1200.49", 0.4, rule)
    assert outcome.status == "auto_applied"
    assert outcome.existing_value == "1200.49"
    assert outcome.resolved is True


def test_differing_existing_value_conflicts():
    outcome = reconcile_finding("Jane Doe", "John Doe", 0.99)
    assert outcome.status == "conflict"
    assert outcome.existing_value == "John Doe"
    assert outcome.resolved is False
