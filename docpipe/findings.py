"""
Turns per-chunk extraction responses into stored findings.

Entries are located in the document (character offsets and page span),
collapsed across overlapping chunks and tagged with an impact level.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Any

from docpipe.chunking import TextChunk
from docpipe.models import PipelineFinding
from docpipe.reconciliation import normalize_text
from docpipe.taxonomy import TaxonomyCategory, TaxonomyField
from docpipe.text_extraction import page_for_offset

_CRITICAL_KEY_RE = re.compile(
    r"deadline|statute|limitation|filing_date|injury_date|hearing_date|trial_date|due_date|expir"
)
_PARTY_KEY_RE = re.compile(
    r"claimant|plaintiff|defendant|respondent|petitioner|party|employer|insurer"
)


@dataclass
class RawFinding:
    category_key: str
    field_key: str
    value: str
    confidence: float
    source_quote: str | None = None
    chunk_index: int | None = None
    char_start: int | None = None
    char_end: int | None = None


def _category_for_field(field_key: str, categories: list[TaxonomyCategory]) -> str:
    for cat in categories:
        if any(f.key == field_key for f in cat.fields):
            return cat.key
    return ""


def _locate_quote(chunk: TextChunk, quote: str | None) -> tuple[int, int]:
    if quote:
        idx = chunk.text.find(quote)
        if idx < 0:
            idx = chunk.text.lower().find(quote.lower())
        if idx >= 0:
            start = chunk.char_start + idx
            return start, start + len(quote)
    return chunk.char_start, chunk.char_end


def raw_findings_from_entries(
    entries: list[dict[str, Any]],
    *,
    chunk: TextChunk,
    categories: list[TaxonomyCategory],
) -> list[RawFinding]:
    out: list[RawFinding] = []
    for entry in entries:
        field_key = str(entry["fieldKey"]).strip()
        value = str(entry["value"]).strip()
        if not field_key or not value:
            continue
        category_key = str(entry.get("categoryKey") or "").strip() or _category_for_field(field_key, categories)
        quote = entry.get("sourceQuote")
        quote = str(quote).strip() if quote else None
        char_start, char_end = _locate_quote(chunk, quote)
        out.append(
            RawFinding(
                category_key=category_key,
                field_key=field_key,
                value=value,
                confidence=max(0.0, min(1.0, float(entry["confidence"]))),
                source_quote=quote,
                chunk_index=chunk.index,
                char_start=char_start,
                char_end=char_end,
            )
        )
    return out


def deduplicate_findings(findings: list[RawFinding]) -> list[RawFinding]:
    """Collapse findings sharing (category, field, normalized value), keeping the most confident."""
    best: dict[tuple[str, str, str], RawFinding] = {}
    for finding in findings:
        key = (finding.category_key, finding.field_key, normalize_text(finding.value))
        current = best.get(key)
        if current is None or finding.confidence > current.confidence:
            best[key] = finding
    return list(best.values())


def classify_impact(finding: RawFinding, field: TaxonomyField | None = None) -> str:
    key = finding.field_key.lower()
    if _CRITICAL_KEY_RE.search(key):
        return "critical"
    if field is not None and field.requires_human_review:
        return "high"
    if _PARTY_KEY_RE.search(key):
        return "high"
    if finding.confidence < 0.5:
        return "high"
    if field is not None and field.data_type == "boolean":
        return "info"
    if finding.confidence >= 0.9:
        return "low"
    return "medium"


def finding_id_for(run_id: str, finding: RawFinding) -> str:
    """Stable id so a re-executed extract job rewrites the same rows."""
    seed = "|".join((run_id, finding.category_key, finding.field_key, normalize_text(finding.value)))
    return "fnd_" + hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16]


def process_findings(
    findings: list[RawFinding],
    *,
    field_map: dict[str, TaxonomyField],
    run_id: str,
    firm_id: str,
    matter_id: str,
    document_id: str,
    text: str | None = None,
) -> list[PipelineFinding]:
    rows: list[PipelineFinding] = []
    for finding in findings:
        field = field_map.get(f"{finding.category_key}:{finding.field_key}")
        page_start = page_end = None
        if text is not None and finding.char_start is not None:
            page_start = page_for_offset(text, finding.char_start)
            page_end = page_for_offset(text, finding.char_end or finding.char_start)
        rows.append(
            PipelineFinding(
                id=finding_id_for(run_id, finding),
                run_id=run_id,
                firm_id=firm_id,
                matter_id=matter_id,
                document_id=document_id,
                category_key=finding.category_key,
                field_key=finding.field_key,
                label=field.label if field is not None and field.label else finding.field_key,
                value=finding.value,
                confidence=round(finding.confidence, 3),
                impact=classify_impact(finding, field),
                source_quote=finding.source_quote,
                page_start=page_start,
                page_end=page_end,
                char_start=finding.char_start,
                char_end=finding.char_end,
            )
        )
    return rows
