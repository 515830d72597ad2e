"""
Prompt construction for the classify and extract stages.

Both builders render a pack-provided prompt template when one exists
(``{{placeholder}}`` substitution) and otherwise fall back to the defaults
below.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from docpipe.taxonomy import DocumentType, PromptTemplate, TaxonomyCategory

CLASSIFICATION_SAMPLE_CHARS = 2000
DEFAULT_TEMPERATURE = 0.1
CLASSIFICATION_MAX_TOKENS = 256
EXTRACTION_MAX_TOKENS = 2048

_CLASSIFY_SYSTEM_PROMPT = (
    "You are a legal document classifier. Given the text content of a document, classify it into "
    'one of the provided document types. Return a JSON object with "documentType" (the key) and '
    '"confidence" (0.0-1.0).'
)

_CLASSIFY_USER_TEMPLATE = """Classify the following document into one of these types:

{document_types}

MIME type: {mime_type}
Filename: {filename}

Document text (first ~2000 characters):
---
{text_sample}
---

Return ONLY a JSON object: {{"documentType": "<key>", "confidence": <0.0-1.0>}}"""

_EXTRACT_SYSTEM_PROMPT = (
    "You are a legal document extraction AI. Extract structured data points from the provided text. "
    "For each finding, provide the field key, extracted value, a direct quote from the source text, "
    "and your confidence (0.0-1.0). Only extract fields you find evidence for. Do not guess."
)

_EXTRACT_USER_TEMPLATE = """Document type: {document_type}
Chunk {chunk_number} of {total_chunks}

Extract values for these fields where present:
{field_descriptions}

Text:
---
{chunk_text}
---

Return ONLY a JSON object of the form:
{{"findings": [{{"categoryKey": "<cat>", "fieldKey": "<field>", "value": "<extracted>", "sourceQuote": "<verbatim quote>", "confidence": <0.0-1.0>}}]}}

If no relevant data is found in this chunk, return {{"findings": []}}"""

OCR_PROMPT = (
    "Extract all text from this document image. Preserve the original structure, paragraphs, "
    "and formatting as closely as possible. Return only the extracted text, nothing else."
)


@dataclass
class PromptSpec:
    system_prompt: str
    user_prompt: str
    model: str
    temperature: float
    max_tokens: int

    def messages(self) -> list[dict[str, Any]]:
        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": self.user_prompt},
        ]


def _render(template: str, values: dict[str, str]) -> str:
    out = template
    for key, value in values.items():
        out = out.replace("{{" + key + "}}", value)
    return out


def _from_template(template: PromptTemplate, *, user_prompt: str, default_model: str, max_tokens: int) -> PromptSpec:
    return PromptSpec(
        system_prompt=template.system_prompt,
        user_prompt=user_prompt,
        model=template.model_preference or default_model,
        temperature=DEFAULT_TEMPERATURE if template.temperature is None else float(template.temperature),
        max_tokens=template.max_tokens or max_tokens,
    )


def format_document_types(document_types: list[DocumentType]) -> str:
    lines = []
    for doc_type in document_types:
        hints = f" ({doc_type.classification_hints})" if doc_type.classification_hints else ""
        lines.append(f'- "{doc_type.key}" [{doc_type.label}]{hints}')
    return "\n".join(lines)


def format_field_descriptions(categories: list[TaxonomyCategory]) -> str:
    lines = []
    for cat in categories:
        for fld in cat.fields:
            examples = f" (examples: {json.dumps(fld.examples)})" if fld.examples else ""
            lines.append(f"- {cat.key}.{fld.key} [{fld.data_type}]: {fld.label}{examples}")
    return "\n".join(lines)


def build_classification_prompt(
    *,
    document_types: list[DocumentType],
    text_sample: str,
    default_model: str,
    template: PromptTemplate | None = None,
    mime_type: str | None = None,
    filename: str | None = None,
) -> PromptSpec:
    values = {
        "document_types": format_document_types(document_types),
        "text_sample": text_sample[:CLASSIFICATION_SAMPLE_CHARS],
        "mime_type": mime_type or "unknown",
        "filename": filename or "unknown",
    }
    if template is not None:
        return _from_template(
            template,
            user_prompt=_render(template.user_prompt_template, values),
            default_model=default_model,
            max_tokens=CLASSIFICATION_MAX_TOKENS,
        )
    return PromptSpec(
        system_prompt=_CLASSIFY_SYSTEM_PROMPT,
        user_prompt=_CLASSIFY_USER_TEMPLATE.format(**values),
        model=default_model,
        temperature=DEFAULT_TEMPERATURE,
        max_tokens=CLASSIFICATION_MAX_TOKENS,
    )


def build_extraction_prompt(
    *,
    categories: list[TaxonomyCategory],
    chunk_text: str,
    chunk_index: int,
    total_chunks: int,
    document_type: str,
    default_model: str,
    template: PromptTemplate | None = None,
) -> PromptSpec:
    values = {
        "field_descriptions": format_field_descriptions(categories),
        "chunk_text": chunk_text,
        "chunk_index": str(chunk_index + 1),
        "total_chunks": str(total_chunks),
        "document_type": document_type,
    }
    if template is not None:
        return _from_template(
            template,
            user_prompt=_render(template.user_prompt_template, values),
            default_model=default_model,
            max_tokens=EXTRACTION_MAX_TOKENS,
        )
    return PromptSpec(
        system_prompt=_EXTRACT_SYSTEM_PROMPT,
        user_prompt=_EXTRACT_USER_TEMPLATE.format(
            document_type=document_type,
            chunk_number=chunk_index + 1,
            total_chunks=total_chunks,
            field_descriptions=values["field_descriptions"],
            chunk_text=chunk_text,
        ),
        model=default_model,
        temperature=DEFAULT_TEMPERATURE,
        max_tokens=EXTRACTION_MAX_TOKENS,
    )


def build_ocr_messages(*, image_bytes_b64: str, mime_type: str) -> list[dict[str, Any]]:
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": OCR_PROMPT},
                {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_bytes_b64}"}},
            ],
        }
    ]
