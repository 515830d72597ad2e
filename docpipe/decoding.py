from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from jsonschema import Draft202012Validator, ValidationError, validate

CLASSIFICATION_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["documentType", "confidence"],
    "properties": {
        "documentType": {"type": "string", "minLength": 1},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
    },
}

EXTRACTION_RESPONSE_SCHEMA: dict[str, Any] = {
    "anyOf": [
        {"type": "array"},
        {
            "type": "object",
            "required": ["findings"],
            "properties": {"findings": {"type": "array"}},
        },
    ]
}

EXTRACTION_ENTRY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["fieldKey", "value", "confidence"],
    "properties": {
        "categoryKey": {"type": ["string", "null"]},
        "fieldKey": {"type": "string", "minLength": 1},
        "value": {"type": ["string", "number", "boolean"]},
        "sourceQuote": {"type": ["string", "null"]},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
    },
}

_entry_validator = Draft202012Validator(EXTRACTION_ENTRY_SCHEMA)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class JsonOk:
    value: Any


@dataclass(frozen=True)
class JsonParseError:
    reason: str
    raw: str


DecodeResult = JsonOk | JsonParseError


def _strip_code_fence(content: str) -> str:
    text = (content or "").strip()
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text


def decode_json(content: str, *, schema: dict[str, Any] | None = None) -> DecodeResult:
    """Decode an LLM response body, optionally checking it against ``schema``."""
    text = _strip_code_fence(content)
    if not text:
        return JsonParseError(reason="empty response", raw=content or "")
    try:
        value = json.loads(text)
    except json.JSONDecodeError as exc:
        return JsonParseError(reason=f"invalid JSON: {exc.msg}", raw=content)
    if schema is not None:
        try:
            validate(instance=value, schema=schema)
        except ValidationError as exc:
            return JsonParseError(reason=f"unexpected response shape: {exc.message}", raw=content)
    return JsonOk(value=value)


def extraction_entries(value: Any) -> list[dict[str, Any]]:
    """Well-formed finding entries from a decoded extraction response."""
    raw = value.get("findings", []) if isinstance(value, dict) else value
    if not isinstance(raw, list):
        return []
    return [entry for entry in raw if _entry_validator.is_valid(entry)]
