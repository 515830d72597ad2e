import pathlib
import sys

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from docpipe.ai_client import reset_usage_log
from docpipe.blob_storage import LocalBlobStorage
from docpipe.mock_ai import ScriptedAiClient
from docpipe.models import Document, Matter
from docpipe.services import build_in_memory_services
from docpipe.taxonomy import load_pack_from_dict

FIRM_ID = "firm_a"
MATTER_ID = "matter_1"
PRACTICE_AREA = "personal_injury"

SAMPLE_PACK = {
    "id": "pack_pi_v1",
    "key": "personal_injury",
    "version": "1.0.0",
    "name": "Personal injury",
    "practice_area": PRACTICE_AREA,
    "categories": [
        {
            "key": "parties",
            "label": "Parties",
            "fields": [{"key": "claimant_name", "label": "Claimant name", "data_type": "text"}],
        }
    ],
    "action_triggers": [
        {
            "id": "trg_claimant",
            "name": "Open claimant file",
            "trigger_condition": {"fieldKey": "claimant_name", "operator": "exists"},
            "action_template": {"actionType": "create_task", "title": "Open claimant file", "priority": 1},
        }
    ],
}


@pytest.fixture(autouse=True)
def reset_runtime_state(monkeypatch: pytest.MonkeyPatch):
    for name in ("DOCPIPE_QUEUE_BACKEND", "DOCPIPE_STORE_BACKEND", "MOCK_LLM_ENABLED", "DOCPIPE_TAXONOMY_DIR"):
        monkeypatch.delenv(name, raising=False)
    reset_usage_log()
    yield


@pytest.fixture
def sample_pack():
    return load_pack_from_dict(SAMPLE_PACK)


@pytest.fixture
def blob_storage(tmp_path: pathlib.Path) -> LocalBlobStorage:
    return LocalBlobStorage(root=tmp_path / "blobs")


@pytest.fixture
def make_services(blob_storage, sample_pack):
    """Build in-memory services with a scripted AI client and one registered matter."""

    def _make(replies=None, *, packs=None, responder=None):
        ai = ScriptedAiClient(replies, responder=responder)
        services = build_in_memory_services(
            ai_client=ai,
            blob_storage=blob_storage,
            packs=[sample_pack] if packs is None else packs,
        )
        services.matters.upsert(matter=Matter(id=MATTER_ID, firm_id=FIRM_ID, practice_area=PRACTICE_AREA))
        return services

    return _make


def add_document(
    services,
    *,
    document_id: str = "doc_1",
    content: bytes = b"Claimant Jane Doe was injured on 2024-03-01.",
    mime_type: str = "text/plain",
    extracted_text: str | None = None,
) -> Document:
    path = f"{MATTER_ID}/{document_id}"
    services.blob_storage.put_object(bucket="documents", path=path, content_bytes=content, content_type=mime_type)
    doc = Document(
        id=document_id,
        firm_id=FIRM_ID,
        matter_id=MATTER_ID,
        filename=f"{document_id}.txt",
        mime_type=mime_type,
        storage_bucket="documents",
        storage_path=path,
        extracted_text=extracted_text,
    )
    services.documents.upsert(document=doc)
    return doc
