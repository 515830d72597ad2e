from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

StageName = Literal["intake", "ocr", "classify", "extract", "reconcile", "actions"]


class SubmitDocumentRequest(BaseModel):
    firm_id: str = Field(min_length=1)
    matter_id: str = Field(min_length=1)
    document_id: str = Field(min_length=1)
    triggered_by: str | None = None


class RetryRunRequest(BaseModel):
    stage: StageName


class RegisterMatterRequest(BaseModel):
    practice_area: str | None = None


class RegisterDocumentRequest(BaseModel):
    matter_id: str = Field(min_length=1)
    filename: str = Field(min_length=1)
    mime_type: str = Field(min_length=1)
    storage_bucket: str = Field(min_length=1)
    storage_path: str = Field(min_length=1)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
