from __future__ import annotations

import uuid

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from docpipe.ai_client import get_provider_info, usage_summary
from docpipe.errors import ApiError
from docpipe.models import Document, Matter
from docpipe.schemas import (
    RegisterDocumentRequest,
    RegisterMatterRequest,
    RetryRunRequest,
    SubmitDocumentRequest,
    error_envelope,
    success_envelope,
)
from docpipe.services import PipelineServices
from docpipe.stages import PIPELINE_STAGES


def _trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def _error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=_trace_id_from_request(request),
        ),
    )


def _require_firm(x_firm_id: str | None) -> str:
    firm_id = (x_firm_id or "").strip()
    if not firm_id:
        raise ApiError(
            code="FIRM_ID_REQUIRED",
            message="x-firm-id header is required",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return firm_id


def _validate_stage_filter(stage: str | None) -> str | None:
    if stage and stage not in PIPELINE_STAGES:
        raise ApiError(
            code="STAGE_UNKNOWN",
            message=f"unknown pipeline stage: {stage}",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return stage or None


def create_app(services: PipelineServices) -> FastAPI:
    """Internal ops API over one set of pipeline services."""
    app = FastAPI(title="docpipe ops API", version="0.1.0", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.services = services

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        response = await call_next(request)
        response.headers["x-trace-id"] = request.state.trace_id
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return _error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return _error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return _error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return _error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        llm: dict[str, object] = {"mock": services.settings.mock_llm_enabled, **usage_summary()}
        if not services.settings.mock_llm_enabled:
            llm.update(get_provider_info())
        return success_envelope({"status": "ok", "llm": llm}, _trace_id_from_request(request))

    @app.put("/internal/pipeline/matters/{matter_id}")
    def register_matter(
        matter_id: str,
        payload: RegisterMatterRequest,
        request: Request,
        x_firm_id: str | None = Header(default=None),
    ):
        firm_id = _require_firm(x_firm_id)
        matter = services.matters.get(firm_id=firm_id, matter_id=matter_id)
        if matter is None:
            matter = Matter(id=matter_id, firm_id=firm_id)
        matter.practice_area = payload.practice_area
        services.matters.upsert(matter=matter)
        return success_envelope(matter.to_dict(), _trace_id_from_request(request))

    @app.put("/internal/pipeline/documents/{document_id}")
    def register_document(
        document_id: str,
        payload: RegisterDocumentRequest,
        request: Request,
        x_firm_id: str | None = Header(default=None),
    ):
        firm_id = _require_firm(x_firm_id)
        if services.matters.get(firm_id=firm_id, matter_id=payload.matter_id) is None:
            raise ApiError(
                code="MATTER_NOT_FOUND",
                message="matter not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        existing = services.documents.get(firm_id=firm_id, document_id=document_id)
        same_blob = (
            existing is not None
            and existing.storage_bucket == payload.storage_bucket
            and existing.storage_path == payload.storage_path
        )
        doc = Document(
            id=document_id,
            firm_id=firm_id,
            matter_id=payload.matter_id,
            filename=payload.filename,
            mime_type=payload.mime_type,
            storage_bucket=payload.storage_bucket,
            storage_path=payload.storage_path,
            # extracted text stays valid only while the blob is unchanged
            extracted_text=existing.extracted_text if same_blob else None,
        )
        services.documents.upsert(document=doc)
        data = doc.to_dict()
        data.pop("extracted_text", None)
        return success_envelope(data, _trace_id_from_request(request))

    @app.post("/internal/pipeline/runs")
    def submit_run(payload: SubmitDocumentRequest, request: Request):
        doc = services.documents.get(firm_id=payload.firm_id, document_id=payload.document_id)
        if doc is None or doc.matter_id != payload.matter_id:
            raise ApiError(
                code="DOCUMENT_NOT_FOUND",
                message="document not found for matter",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        run = services.orchestrator.submit_document(
            firm_id=payload.firm_id,
            matter_id=payload.matter_id,
            document_id=payload.document_id,
            triggered_by=payload.triggered_by,
        )
        return JSONResponse(
            status_code=202,
            content=success_envelope(run.to_dict(), _trace_id_from_request(request)),
        )

    @app.get("/internal/pipeline/runs/{run_id}")
    def get_run(run_id: str, request: Request, x_firm_id: str | None = Header(default=None)):
        firm_id = _require_firm(x_firm_id)
        run = services.runs.get(firm_id=firm_id, run_id=run_id)
        if run is None:
            raise ApiError(
                code="RUN_NOT_FOUND",
                message="pipeline run not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        data = run.to_dict()
        data["findings"] = [f.to_dict() for f in services.findings.list_for_run(firm_id=firm_id, run_id=run_id)]
        data["actions"] = [a.to_dict() for a in services.actions.list_for_run(firm_id=firm_id, run_id=run_id)]
        return success_envelope(data, _trace_id_from_request(request))

    @app.post("/internal/pipeline/runs/{run_id}/retry")
    def retry_run(
        run_id: str,
        payload: RetryRunRequest,
        request: Request,
        x_firm_id: str | None = Header(default=None),
    ):
        firm_id = _require_firm(x_firm_id)
        run = services.runs.get(firm_id=firm_id, run_id=run_id)
        if run is None:
            raise ApiError(
                code="RUN_NOT_FOUND",
                message="pipeline run not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            )
        msg = services.orchestrator.retry_from_stage(payload.stage, run.job_data())
        data = {"run_id": run_id, "stage": payload.stage, "message_id": msg.message_id}
        return JSONResponse(status_code=202, content=success_envelope(data, _trace_id_from_request(request)))

    @app.post("/internal/pipeline/runs/{run_id}/cancel")
    def cancel_run(run_id: str, request: Request, x_firm_id: str | None = Header(default=None)):
        firm_id = _require_firm(x_firm_id)
        run = services.orchestrator.cancel_run(firm_id=firm_id, run_id=run_id)
        return success_envelope(run.to_dict(), _trace_id_from_request(request))

    @app.get("/internal/pipeline/dlq")
    def list_dlq(request: Request, stage: str | None = Query(default=None)):
        entries = services.dlq.list_entries(_validate_stage_filter(stage))
        data = {"items": [e.to_dict() for e in entries], "total": len(entries)}
        return success_envelope(data, _trace_id_from_request(request))

    @app.get("/internal/pipeline/dlq/counts")
    def dlq_counts(request: Request):
        return success_envelope(services.dlq.counts_by_stage(), _trace_id_from_request(request))

    @app.delete("/internal/pipeline/dlq")
    def clear_dlq(request: Request, stage: str | None = Query(default=None)):
        removed = services.dlq.clear(_validate_stage_filter(stage))
        return success_envelope({"removed": removed}, _trace_id_from_request(request))

    return app
