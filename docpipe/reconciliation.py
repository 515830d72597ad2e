"""
Reconciliation engine.

Compares a newly extracted value with the matter's previously accepted value
for the same field and decides whether the finding can be applied
automatically, stays pending for review, or conflicts. Everything here is pure
and deterministic.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, date, datetime

from docpipe.taxonomy import ReconciliationRule

DEFAULT_AUTO_APPLY_THRESHOLD = 0.85
DEFAULT_CONFLICT_MODE = "fuzzy_text"
NUMBER_TOLERANCE = 0.01

_PUNCT_RE = re.compile(r"[.,;:!?'\"()\-/\\]")
_WS_RE = re.compile(r"\s+")
_NUMERIC_NOISE_RE = re.compile(r"[,$%£€¥\s]")

SemanticMatcher = Callable[[str, str], bool]


@dataclass(frozen=True)
class ReconcileOutcome:
    status: str
    existing_value: str | None = None
    resolved: bool = False


def normalize_text(value: str) -> str:
    text = _PUNCT_RE.sub("", value.strip().lower())
    return _WS_RE.sub(" ", text).strip()


def parse_number(value: str) -> float | None:
    cleaned = _NUMERIC_NOISE_RE.sub("", value or "")
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_date(value: str) -> date | None:
    """Parse ISO-style dates and datetimes; datetimes are compared on their UTC day."""
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is None:
        for fmt in ("%Y/%m/%d", "%d %B %Y", "%B %d, %Y", "%d %b %Y", "%b %d, %Y"):
            try:
                parsed = datetime.strptime(raw, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC)
    return parsed.date()


def values_match(
    a: str,
    b: str,
    mode: str = DEFAULT_CONFLICT_MODE,
    *,
    semantic_matcher: SemanticMatcher | None = None,
) -> bool:
    if mode == "exact":
        return a.strip() == b.strip()
    if mode == "fuzzy_number":
        num_a = parse_number(a)
        num_b = parse_number(b)
        if num_a is None or num_b is None:
            return False
        tolerance = max(abs(num_a), abs(num_b)) * NUMBER_TOLERANCE
        return abs(num_a - num_b) <= tolerance
    if mode == "date_range":
        date_a = parse_date(a)
        date_b = parse_date(b)
        if date_a is None or date_b is None:
            return False
        return date_a == date_b
    if mode == "semantic" and semantic_matcher is not None:
        return semantic_matcher(a, b)
    # fuzzy_text, and semantic when no matcher is configured
    return normalize_text(a) == normalize_text(b)


def reconcile_finding(
    value: str,
    existing_value: str | None,
    confidence: float,
    rule: ReconciliationRule | None = None,
    *,
    semantic_matcher: SemanticMatcher | None = None,
) -> ReconcileOutcome:
    if existing_value is None:
        threshold = rule.auto_apply_threshold if rule is not None else DEFAULT_AUTO_APPLY_THRESHOLD
        needs_review = rule is not None and rule.requires_human_review
        if not needs_review and confidence >= threshold:
            return ReconcileOutcome(status="auto_applied", resolved=True)
        return ReconcileOutcome(status="pending")

    mode = rule.conflict_detection_mode if rule is not None else DEFAULT_CONFLICT_MODE
    if values_match(value, existing_value, mode, semantic_matcher=semantic_matcher):
        return ReconcileOutcome(status="auto_applied", existing_value=existing_value, resolved=True)
    return ReconcileOutcome(status="conflict", existing_value=existing_value)
