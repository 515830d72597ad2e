from __future__ import annotations

from docpipe import findings as findings_module
from docpipe.chunking import TextChunk
from docpipe.decoding import (
    CLASSIFICATION_RESPONSE_SCHEMA,
    EXTRACTION_RESPONSE_SCHEMA,
    JsonOk,
    JsonParseError,
    decode_json,
    extraction_entries,
)
from docpipe.findings import (
    RawFinding,
    classify_impact,
    deduplicate_findings,
    finding_id_for,
    process_findings,
    raw_findings_from_entries,
)
from docpipe.taxonomy import TaxonomyCategory, TaxonomyField
from docpipe.text_extraction import PAGE_BREAK

CATEGORIES = [
    TaxonomyCategory(
        key="parties",
        label="Parties",
        fields=[TaxonomyField(key="claimant_name", label="Claimant name")],
    ),
    TaxonomyCategory(
        key="medical",
        label="Medical",
        fields=[
            TaxonomyField(key="diagnosis", label="Diagnosis", requires_human_review=True),
            TaxonomyField(key="hospitalised", label="Hospitalised", data_type="boolean"),
        ],
    ),
]


def _raw(field_key: str, value: str = "x", confidence: float = 0.7, category_key: str = "medical") -> RawFinding:
    return RawFinding(category_key=category_key, field_key=field_key, value=value, confidence=confidence)


def test_decode_json_strips_code_fences():
    result = decode_json('```json\n{"documentType": "medical_record", "confidence": 0.8}\n```')
    assert isinstance(result, JsonOk)
    assert result.value["documentType"] == "medical_record"


def test_decode_json_reports_invalid_and_misshapen_bodies():
    empty = decode_json("   ")
    assert isinstance(empty, JsonParseError)
    assert empty.reason == "empty response"

    broken = decode_json("{not json")
    assert isinstance(broken, JsonParseError)
    assert broken.reason.startswith("invalid JSON")

    wrong = decode_json('{"documentType": "x", "confidence": 2}', schema=CLASSIFICATION_RESPONSE_SCHEMA)
    assert isinstance(wrong, JsonParseError)
    assert wrong.reason.startswith("unexpected response shape")


def test_extraction_entries_accepts_bare_arrays_and_drops_bad_entries():
    body = '[{"fieldKey": "diagnosis", "value": "whiplash", "confidence": 0.8}, {"fieldKey": "diagnosis"}]'
    result = decode_json(body, schema=EXTRACTION_RESPONSE_SCHEMA)
    assert isinstance(result, JsonOk)
    assert extraction_entries(result.value) == [{"fieldKey": "diagnosis", "value": "whiplash", "confidence": 0.8}]
    assert extraction_entries({"findings": "nope"}) == []


def test_raw_findings_locate_quotes_and_infer_category():
    chunk = TextChunk(index=1, text="The claimant, Jane Doe, attended A&E.", char_start=1600, char_end=1637)
    entries = [
        {"fieldKey": "claimant_name", "value": "Jane Doe", "confidence": 1.4, "sourceQuote": "jane doe"},
        {"fieldKey": "diagnosis", "value": "  ", "confidence": 0.9},
        {"fieldKey": "hospitalised", "value": True, "confidence": 0.6, "sourceQuote": "not in the text"},
    ]
    found = raw_findings_from_entries(entries, chunk=chunk, categories=CATEGORIES)

    assert len(found) == 2
    assert found[0].category_key == "parties"
    assert found[0].confidence == 1.0
    assert (found[0].char_start, found[0].char_end) == (1614, 1622)
    assert found[1].category_key == "medical"
    assert found[1].value == "True"
    assert (found[1].char_start, found[1].char_end) == (1600, 1637)


def test_deduplicate_keeps_most_confident_of_normalized_duplicates():
    findings = [
        _raw("diagnosis", "Whiplash.", 0.6),
        _raw("diagnosis", "whiplash", 0.9),
        _raw("diagnosis", "fractured wrist", 0.7),
    ]
    deduped = deduplicate_findings(findings)
    assert len(deduped) == 2
    assert {f.confidence for f in deduped} == {0.9, 0.7}


def test_classify_impact_rules():
    fields = {f.key: f for cat in CATEGORIES for f in cat.fields}
    assert classify_impact(_raw("limitation_date")) == "critical"
    assert classify_impact(_raw("diagnosis", confidence=0.95), fields["diagnosis"]) == "high"
    assert classify_impact(_raw("defendant_name", confidence=0.95)) == "high"
    assert classify_impact(_raw("notes", confidence=0.4)) == "high"
    assert classify_impact(_raw("hospitalised", confidence=0.95), fields["hospitalised"]) == "info"
    assert classify_impact(_raw("notes", confidence=0.95)) == "low"
    assert classify_impact(_raw("notes", confidence=0.7)) == "medium"


def test_finding_ids_are_stable_per_run_and_value():
    a = finding_id_for("run_1", _raw("diagnosis", "Whiplash"))
    assert a == finding_id_for("run_1", _raw("diagnosis", "whiplash."))
    assert a != finding_id_for("run_2", _raw("diagnosis", "Whiplash"))
    assert a.startswith("fnd_")


def test_process_findings_fills_labels_impact_and_pages():
    text = f"page one text{PAGE_BREAK}Jane Doe"
    raw = RawFinding(
        category_key="parties",
        field_key="claimant_name",
        value="Jane Doe",
        confidence=0.91234,
        char_start=text.index("Jane"),
        char_end=len(text),
    )
    field_map = {f"{cat.key}:{f.key}": f for cat in CATEGORIES for f in cat.fields}
    [row] = process_findings(
        [raw],
        field_map=field_map,
        run_id="run_1",
        firm_id="firm_a",
        matter_id="matter_1",
        document_id="doc_1",
        text=text,
    )
    assert row.label == "Claimant name"
    assert row.confidence == 0.912
    assert row.impact == "high"
    assert row.status == "pending"
    assert (row.page_start, row.page_end) == (2, 2)


def test_findings_module_is_documented():
    assert findings_module.__doc__
    assert "extraction responses" in findings_module.__doc__
