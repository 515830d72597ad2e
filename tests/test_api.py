from __future__ import annotations

import asyncio

import pytest
from conftest import FIRM_ID, MATTER_ID, add_document
from fastapi.testclient import TestClient

from docpipe.api import create_app
from docpipe.models import JobData
from docpipe.worker_runtime import JobFailure

HEADERS = {"x-firm-id": FIRM_ID}


@pytest.fixture
def services(make_services):
    return make_services(
        [
            {
                "findings": [
                    {"categoryKey": "parties", "fieldKey": "claimant_name", "value": "Jane Doe", "confidence": 0.95}
                ]
            }
        ]
    )


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def _submit(client: TestClient, document_id: str = "doc_1"):
    return client.post(
        "/internal/pipeline/runs",
        json={"firm_id": FIRM_ID, "matter_id": MATTER_ID, "document_id": document_id},
    )


def _record_dlq(services, stage: str, run_id: str = "run_x") -> None:
    services.dlq.handle_failure(
        JobFailure(
            job_id=f"msg_{stage}_{run_id}",
            stage=stage,
            data=JobData(run_id=run_id, firm_id=FIRM_ID, matter_id=MATTER_ID, document_id="doc_1"),
            error="boom",
            attempts_made=3,
            max_attempts=3,
        )
    )


def test_healthz_echoes_trace_id(client):
    resp = client.get("/healthz", headers={"x-trace-id": "trace_123"})
    assert resp.status_code == 200
    assert resp.headers["x-trace-id"] == "trace_123"
    body = resp.json()
    assert body["success"] is True
    assert body["meta"]["trace_id"] == "trace_123"


def test_submit_and_read_completed_run(client, services):
    add_document(services)

    resp = _submit(client)
    assert resp.status_code == 202
    run_id = resp.json()["data"]["id"]
    assert resp.json()["data"]["status"] == "queued"

    asyncio.run(services.build_runtime(environ={}).drain())

    resp = client.get(f"/internal/pipeline/runs/{run_id}", headers=HEADERS)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == "completed"
    assert [f["value"] for f in data["findings"]] == ["Jane Doe"]
    assert [a["action_type"] for a in data["actions"]] == ["create_task"]


def test_submit_unknown_document_is_404(client):
    resp = _submit(client, "doc_missing")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "DOCUMENT_NOT_FOUND"


def test_submit_invalid_payload_is_400(client):
    resp = client.post("/internal/pipeline/runs", json={"firm_id": FIRM_ID})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "REQ_VALIDATION_FAILED"


def test_run_reads_are_scoped_to_firm(client, services):
    add_document(services)
    run_id = _submit(client).json()["data"]["id"]

    assert client.get(f"/internal/pipeline/runs/{run_id}").json()["error"]["code"] == "FIRM_ID_REQUIRED"
    resp = client.get(f"/internal/pipeline/runs/{run_id}", headers={"x-firm-id": "firm_other"})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "RUN_NOT_FOUND"


def test_retry_and_cancel_endpoints(client, services):
    add_document(services)
    run_id = _submit(client).json()["data"]["id"]
    services.tracker.mark_pipeline_failed(firm_id=FIRM_ID, run_id=run_id, stage="ocr", error="boom")

    resp = client.post(f"/internal/pipeline/runs/{run_id}/retry", json={"stage": "ocr"}, headers=HEADERS)
    assert resp.status_code == 202
    assert resp.json()["data"]["stage"] == "ocr"
    assert resp.json()["data"]["message_id"].startswith("msg_")

    bad = client.post(f"/internal/pipeline/runs/{run_id}/retry", json={"stage": "summarize"}, headers=HEADERS)
    assert bad.status_code == 400

    resp = client.post(f"/internal/pipeline/runs/{run_id}/cancel", headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "cancelled"

    again = client.post(f"/internal/pipeline/runs/{run_id}/cancel", headers=HEADERS)
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "RUN_ALREADY_TERMINAL"


def test_dlq_listing_counts_and_clear(client, services):
    _record_dlq(services, "ocr", "run_1")
    _record_dlq(services, "extract", "run_2")
    _record_dlq(services, "extract", "run_3")

    listing = client.get("/internal/pipeline/dlq", params={"stage": "extract"}).json()["data"]
    assert listing["total"] == 2
    assert [item["run_id"] for item in listing["items"]] == ["run_3", "run_2"]

    counts = client.get("/internal/pipeline/dlq/counts").json()["data"]
    assert counts == {"ocr": 1, "extract": 2}

    resp = client.delete("/internal/pipeline/dlq", params={"stage": "extract"})
    assert resp.json()["data"] == {"removed": 2}
    assert client.get("/internal/pipeline/dlq").json()["data"]["total"] == 1


def test_dlq_rejects_unknown_stage(client):
    resp = client.get("/internal/pipeline/dlq", params={"stage": "summarize"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "STAGE_UNKNOWN"


def test_unknown_route_uses_error_envelope(client):
    resp = client.get("/internal/pipeline/nope")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "REQ_NOT_FOUND"


def test_healthz_reports_llm_usage(client):
    llm = client.get("/healthz").json()["data"]["llm"]
    assert llm["mock"] is False
    assert llm["recent_calls"] == 0
    assert llm["retried_calls"] == 0


def test_registered_matter_and_document_can_be_submitted(client, services):
    services.blob_storage.put_object(
        bucket="documents", path="matter_9/doc_9", content_bytes=b"Claimant Jane Doe", content_type="text/plain"
    )
    resp = client.put("/internal/pipeline/matters/matter_9", json={"practice_area": "personal_injury"}, headers=HEADERS)
    assert resp.status_code == 200
    assert resp.json()["data"]["practice_area"] == "personal_injury"

    resp = client.put(
        "/internal/pipeline/documents/doc_9",
        json={
            "matter_id": "matter_9",
            "filename": "statement.txt",
            "mime_type": "text/plain",
            "storage_bucket": "documents",
            "storage_path": "matter_9/doc_9",
        },
        headers=HEADERS,
    )
    assert resp.status_code == 200
    assert "extracted_text" not in resp.json()["data"]
    assert services.documents.get(firm_id=FIRM_ID, document_id="doc_9").matter_id == "matter_9"

    resp = client.post(
        "/internal/pipeline/runs",
        json={"firm_id": FIRM_ID, "matter_id": "matter_9", "document_id": "doc_9"},
    )
    assert resp.status_code == 202


def test_reregistering_a_moved_document_clears_extracted_text(client, services):
    add_document(services, extracted_text="old text")
    body = {
        "matter_id": MATTER_ID,
        "filename": "doc_1.txt",
        "mime_type": "text/plain",
        "storage_bucket": "documents",
    }

    client.put("/internal/pipeline/documents/doc_1", json={**body, "storage_path": f"{MATTER_ID}/doc_1"}, headers=HEADERS)
    assert services.documents.get(firm_id=FIRM_ID, document_id="doc_1").extracted_text == "old text"

    client.put("/internal/pipeline/documents/doc_1", json={**body, "storage_path": f"{MATTER_ID}/doc_1_v2"}, headers=HEADERS)
    assert services.documents.get(firm_id=FIRM_ID, document_id="doc_1").extracted_text is None


def test_document_registration_requires_known_matter_and_firm(client):
    body = {
        "matter_id": "matter_missing",
        "filename": "a.txt",
        "mime_type": "text/plain",
        "storage_bucket": "documents",
        "storage_path": "a",
    }
    resp = client.put("/internal/pipeline/documents/doc_x", json=body, headers=HEADERS)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "MATTER_NOT_FOUND"

    resp = client.put("/internal/pipeline/documents/doc_x", json=body)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "FIRM_ID_REQUIRED"
