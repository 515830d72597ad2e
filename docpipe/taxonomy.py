"""
Taxonomy packs: the practice-area schema that parameterizes classification,
extraction, reconciliation and action generation.

Packs are registered with a ``TaxonomyLoader`` either directly or from JSON
documents (validated with jsonschema). Resolution for a matter prefers an
active firm-specific pack for the matter's practice area over a system pack.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from jsonschema import ValidationError, validate

logger = logging.getLogger(__name__)

FIELD_DATA_TYPES = ("text", "number", "date", "boolean", "currency", "percentage", "json")
TRIGGER_TYPES = ("deadline", "recommendation", "alert", "status_change")
TEMPLATE_TYPES = ("extraction", "classification", "action_generation", "summarization")
CONFLICT_MODES = ("exact", "fuzzy_text", "fuzzy_number", "date_range", "semantic")


@dataclass
class TaxonomyField:
    key: str
    label: str
    data_type: str = "text"
    description: str | None = None
    examples: list[str] | None = None
    confidence_threshold: float = 0.8
    requires_human_review: bool = False
    sort_order: int = 0


@dataclass
class TaxonomyCategory:
    key: str
    label: str
    description: str | None = None
    sort_order: int = 0
    fields: list[TaxonomyField] = field(default_factory=list)


@dataclass
class DocumentType:
    key: str
    label: str
    activated_categories: list[str] = field(default_factory=list)
    classification_hints: str | None = None
    sort_order: int = 0


@dataclass
class PromptTemplate:
    template_type: str
    system_prompt: str
    user_prompt_template: str
    model_preference: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass
class ReconciliationRule:
    field_key: str
    case_field_mapping: str | None = None
    conflict_detection_mode: str = "fuzzy_text"
    auto_apply_threshold: float = 0.85
    requires_human_review: bool = False


@dataclass
class ActionTrigger:
    id: str
    name: str
    trigger_type: str = "recommendation"
    description: str | None = None
    trigger_condition: dict[str, Any] = field(default_factory=dict)
    action_template: dict[str, Any] = field(default_factory=dict)
    is_deterministic: bool = True


@dataclass
class TaxonomyPack:
    id: str
    key: str
    version: str
    name: str
    practice_area: str
    firm_id: str | None = None
    is_system: bool = False
    is_active: bool = True


@dataclass
class LoadedPack:
    pack: TaxonomyPack
    categories: list[TaxonomyCategory] = field(default_factory=list)
    document_types: list[DocumentType] = field(default_factory=list)
    prompt_templates: list[PromptTemplate] = field(default_factory=list)
    reconciliation_rules: list[ReconciliationRule] = field(default_factory=list)
    action_triggers: list[ActionTrigger] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.categories = sorted(self.categories, key=lambda c: c.sort_order)
        for cat in self.categories:
            cat.fields = sorted(cat.fields, key=lambda f: f.sort_order)
        self.document_types = sorted(self.document_types, key=lambda d: d.sort_order)

    @property
    def field_map(self) -> dict[str, TaxonomyField]:
        return {f"{cat.key}:{f.key}": f for cat in self.categories for f in cat.fields}

    @property
    def reconciliation_rule_map(self) -> dict[str, ReconciliationRule]:
        return {rule.field_key: rule for rule in self.reconciliation_rules}

    def prompt_template(self, template_type: str) -> PromptTemplate | None:
        for template in self.prompt_templates:
            if template.template_type == template_type:
                return template
        return None

    def document_type(self, key: str | None) -> DocumentType | None:
        if not key:
            return None
        for doc_type in self.document_types:
            if doc_type.key == key:
                return doc_type
        return None


_FIELD_SCHEMA = {
    "type": "object",
    "required": ["key", "label"],
    "properties": {
        "key": {"type": "string", "minLength": 1},
        "label": {"type": "string"},
        "data_type": {"enum": list(FIELD_DATA_TYPES)},
        "examples": {"type": ["array", "null"], "items": {"type": "string"}},
        "confidence_threshold": {"type": "number", "minimum": 0, "maximum": 1},
        "requires_human_review": {"type": "boolean"},
        "sort_order": {"type": "integer"},
    },
}

PACK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["id", "key", "version", "name", "practice_area"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "firm_id": {"type": ["string", "null"]},
        "key": {"type": "string"},
        "version": {"type": "string"},
        "name": {"type": "string"},
        "practice_area": {"type": "string", "minLength": 1},
        "is_system": {"type": "boolean"},
        "is_active": {"type": "boolean"},
        "categories": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["key", "label"],
                "properties": {
                    "key": {"type": "string", "minLength": 1},
                    "fields": {"type": "array", "items": _FIELD_SCHEMA},
                },
            },
        },
        "document_types": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["key", "label"],
                "properties": {
                    "activated_categories": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
        "prompt_templates": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["template_type", "system_prompt", "user_prompt_template"],
                "properties": {"template_type": {"enum": list(TEMPLATE_TYPES)}},
            },
        },
        "reconciliation_rules": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["field_key"],
                "properties": {
                    "conflict_detection_mode": {"enum": list(CONFLICT_MODES)},
                    "auto_apply_threshold": {"type": "number", "minimum": 0, "maximum": 1},
                },
            },
        },
        "action_triggers": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "name", "trigger_condition", "action_template"],
                "properties": {
                    "trigger_type": {"enum": list(TRIGGER_TYPES)},
                    "trigger_condition": {"type": "object"},
                    "action_template": {"type": "object"},
                },
            },
        },
    },
}


def _build(cls: type, data: dict[str, Any]) -> Any:
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


def load_pack_from_dict(data: dict[str, Any]) -> LoadedPack:
    try:
        validate(instance=data, schema=PACK_SCHEMA)
    except ValidationError as exc:
        raise ValueError(f"invalid taxonomy pack: {exc.message}") from exc

    pack = TaxonomyPack(
        id=data["id"],
        key=data["key"],
        version=data["version"],
        name=data["name"],
        practice_area=data["practice_area"],
        firm_id=data.get("firm_id"),
        is_system=bool(data.get("is_system", data.get("firm_id") is None)),
        is_active=bool(data.get("is_active", True)),
    )
    categories = [
        TaxonomyCategory(
            key=cat["key"],
            label=cat["label"],
            description=cat.get("description"),
            sort_order=int(cat.get("sort_order", 0)),
            fields=[_build(TaxonomyField, f) for f in cat.get("fields", [])],
        )
        for cat in data.get("categories", [])
    ]
    return LoadedPack(
        pack=pack,
        categories=categories,
        document_types=[_build(DocumentType, d) for d in data.get("document_types", [])],
        prompt_templates=[_build(PromptTemplate, t) for t in data.get("prompt_templates", [])],
        reconciliation_rules=[_build(ReconciliationRule, r) for r in data.get("reconciliation_rules", [])],
        action_triggers=[_build(ActionTrigger, t) for t in data.get("action_triggers", [])],
    )


class TaxonomyLoader:
    """Resolve taxonomy packs by id or by a matter's practice area."""

    def __init__(self, *, matters: Any, packs: list[LoadedPack] | None = None) -> None:
        self._matters = matters
        self._lock = threading.RLock()
        self._packs: dict[str, LoadedPack] = {}
        for loaded in packs or []:
            self.register(loaded)

    def register(self, loaded: LoadedPack) -> LoadedPack:
        with self._lock:
            self._packs[loaded.pack.id] = loaded
        return loaded

    def load_directory(self, path: str | Path) -> int:
        root = Path(path)
        count = 0
        for file in sorted(root.glob("*.json")):
            data = json.loads(file.read_text(encoding="utf-8"))
            self.register(load_pack_from_dict(data))
            count += 1
        logger.info("loaded %d taxonomy packs from %s", count, root)
        return count

    def load_pack_by_id(self, pack_id: str | None) -> LoadedPack | None:
        if not pack_id:
            return None
        with self._lock:
            return self._packs.get(pack_id)

    def load_pack_for_matter(self, *, firm_id: str, matter_id: str) -> LoadedPack | None:
        matter = self._matters.get(firm_id=firm_id, matter_id=matter_id)
        if matter is None or not matter.practice_area:
            return None
        with self._lock:
            candidates = [
                p
                for p in self._packs.values()
                if p.pack.is_active
                and p.pack.practice_area == matter.practice_area
                and (p.pack.firm_id == firm_id or p.pack.firm_id is None)
            ]
        if not candidates:
            return None
        for candidate in candidates:
            if candidate.pack.firm_id == firm_id:
                return candidate
        return candidates[0]
