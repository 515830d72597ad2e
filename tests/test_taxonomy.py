from __future__ import annotations

import json

import pytest
from conftest import FIRM_ID, PRACTICE_AREA, SAMPLE_PACK

from docpipe.models import Matter
from docpipe.repositories import InMemoryMattersRepository
from docpipe.taxonomy import TaxonomyLoader, load_pack_from_dict
from docpipe.workers.extract import active_categories


def _pack(**overrides) -> dict:
    data = json.loads(json.dumps(SAMPLE_PACK))
    data.update(overrides)
    return data


def _loader(*packs) -> TaxonomyLoader:
    matters = InMemoryMattersRepository()
    matters.upsert(matter=Matter(id="matter_1", firm_id=FIRM_ID, practice_area=PRACTICE_AREA))
    matters.upsert(matter=Matter(id="matter_2", firm_id=FIRM_ID))
    return TaxonomyLoader(matters=matters, packs=[load_pack_from_dict(p) for p in packs])


def test_invalid_pack_is_rejected():
    with pytest.raises(ValueError, match="invalid taxonomy pack"):
        load_pack_from_dict({"id": "x", "key": "x", "version": "1", "name": "x"})
    with pytest.raises(ValueError, match="invalid taxonomy pack"):
        load_pack_from_dict(_pack(reconciliation_rules=[{"field_key": "a", "conflict_detection_mode": "vibes"}]))


def test_pack_without_firm_is_a_system_pack():
    loaded = load_pack_from_dict(SAMPLE_PACK)
    assert loaded.pack.is_system is True
    assert list(loaded.field_map) == ["parties:claimant_name"]
    assert loaded.action_triggers[0].trigger_condition["operator"] == "exists"


def test_categories_and_fields_are_sorted():
    loaded = load_pack_from_dict(
        _pack(
            categories=[
                {"key": "b", "label": "B", "sort_order": 2, "fields": [{"key": "y", "label": "Y", "sort_order": 1}]},
                {
                    "key": "a",
                    "label": "A",
                    "sort_order": 1,
                    "fields": [
                        {"key": "z", "label": "Z", "sort_order": 2},
                        {"key": "x", "label": "X", "sort_order": 1},
                    ],
                },
            ]
        )
    )
    assert [c.key for c in loaded.categories] == ["a", "b"]
    assert [f.key for f in loaded.categories[0].fields] == ["x", "z"]


def test_firm_pack_is_preferred_over_system_pack():
    loader = _loader(SAMPLE_PACK, _pack(id="pack_firm", firm_id=FIRM_ID))
    assert loader.load_pack_for_matter(firm_id=FIRM_ID, matter_id="matter_1").pack.id == "pack_firm"


def test_other_firms_and_inactive_packs_are_ignored():
    loader = _loader(_pack(id="pack_other", firm_id="firm_b"), _pack(id="pack_off", is_active=False))
    assert loader.load_pack_for_matter(firm_id=FIRM_ID, matter_id="matter_1") is None


def test_matter_without_practice_area_has_no_pack():
    loader = _loader(SAMPLE_PACK)
    assert loader.load_pack_for_matter(firm_id=FIRM_ID, matter_id="matter_2") is None
    assert loader.load_pack_for_matter(firm_id=FIRM_ID, matter_id="matter_missing") is None
    assert loader.load_pack_by_id(None) is None
    assert loader.load_pack_by_id("pack_pi_v1") is not None


def test_load_directory_registers_json_packs(tmp_path):
    (tmp_path / "pi.json").write_text(json.dumps(SAMPLE_PACK), encoding="utf-8")
    (tmp_path / "notes.txt").write_text("ignored", encoding="utf-8")
    loader = _loader()
    assert loader.load_directory(tmp_path) == 1
    assert loader.load_pack_by_id("pack_pi_v1") is not None


def test_active_categories_follow_document_type():
    loaded = load_pack_from_dict(
        _pack(
            categories=[
                {"key": "parties", "label": "Parties", "fields": [{"key": "claimant_name", "label": "Claimant"}]},
                {"key": "medical", "label": "Medical", "fields": [{"key": "diagnosis", "label": "Diagnosis"}]},
            ],
            document_types=[{"key": "medical_record", "label": "Medical record", "activated_categories": ["medical"]}],
        )
    )
    assert [c.key for c in active_categories(loaded, "medical_record")] == ["medical"]
    assert [c.key for c in active_categories(loaded, "unknown_type")] == ["parties", "medical"]
    assert [c.key for c in active_categories(loaded, None)] == ["parties", "medical"]
