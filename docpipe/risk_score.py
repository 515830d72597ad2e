from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

MAX_SCORE = 100


@dataclass
class RiskResult:
    score: int
    factors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"score": self.score, "factors": list(self.factors)}


def _factor(key: str, label: str, contribution: float, detail: str) -> dict[str, Any]:
    return {"key": key, "label": label, "contribution": int(round(contribution)), "detail": detail}


def _plural(n: int, word: str) -> str:
    return f"{n} {word}" if n == 1 else f"{n} {word}s"


def calculate_risk_score(findings: Iterable[Any]) -> RiskResult:
    """Aggregate a matter's findings into a 0-100 risk score.

    Each finding needs ``status``, ``impact`` and ``confidence`` attributes
    (confidence may be a numeric string). Factors that contribute nothing are
    left out.
    """
    rows = list(findings)
    if not rows:
        return RiskResult(score=0, factors=[])

    factors: list[dict[str, Any]] = []
    total = len(rows)

    critical_pending = sum(1 for f in rows if f.status == "pending" and f.impact == "critical")
    if critical_pending:
        factors.append(
            _factor(
                "critical_pending",
                "Critical",
                min(critical_pending * 15, 30),
                f"{critical_pending} critical finding(s) awaiting review",
            )
        )

    conflicts = sum(1 for f in rows if f.status == "conflict")
    if conflicts:
        factors.append(_factor("conflicts", "Conflicts", min(conflicts * 12, 25), _plural(conflicts, "conflict")))

    high_impact = sum(1 for f in rows if f.impact in {"high", "critical"})
    if high_impact:
        factors.append(
            _factor(
                "high_impact_ratio",
                "High impact",
                high_impact / total * 20,
                f"{high_impact} of {total} findings are high or critical impact",
            )
        )

    avg_confidence = sum(float(f.confidence) for f in rows) / total
    if avg_confidence < 0.75:
        factors.append(_factor("low_confidence", "Low confidence", 15, f"average confidence {avg_confidence:.2f}"))
    elif avg_confidence < 0.85:
        factors.append(_factor("low_confidence", "Low confidence", 8, f"average confidence {avg_confidence:.2f}"))

    pending = sum(1 for f in rows if f.status == "pending")
    if pending:
        factors.append(
            _factor("unresolved_pending", "Unresolved", min(pending * 2, 10), f"{pending} finding(s) pending")
        )

    score = min(MAX_SCORE, int(round(sum(f["contribution"] for f in factors))))
    return RiskResult(score=score, factors=factors)
