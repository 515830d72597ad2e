from __future__ import annotations

import hashlib

from docpipe.errors import StageFailure
from docpipe.models import JobData, PipelineRun
from docpipe.text_extraction import (
    DOCX_MIME_TYPES,
    IMAGE_MIME_TYPES,
    LEGACY_WORD_MIME_TYPES,
    PDF_MIME_TYPES,
    TEXT_MIME_TYPES,
)
from docpipe.workers.base import StageWorker

SUPPORTED_MIME_TYPES = PDF_MIME_TYPES | DOCX_MIME_TYPES | TEXT_MIME_TYPES | IMAGE_MIME_TYPES


class IntakeWorker(StageWorker):
    """Validate the upload, fingerprint it and reject duplicates within the matter."""

    stage = "intake"

    async def execute(self, job: JobData, run: PipelineRun) -> None:
        doc = self.load_document(job)
        if doc is None:
            raise StageFailure("Document not found")
        if doc.mime_type in LEGACY_WORD_MIME_TYPES:
            raise StageFailure("Unsupported file type: legacy Word .doc; convert to .docx and upload again")
        if doc.mime_type not in SUPPORTED_MIME_TYPES:
            raise StageFailure(f"Unsupported file type: {doc.mime_type}")

        # Download errors propagate; the queue retries them.
        content = await self.services.blob_storage.download(doc.storage_bucket, doc.storage_path)
        digest = hashlib.sha256(content).hexdigest()

        duplicate = self.services.runs.find_completed_by_hash(
            firm_id=job.firm_id,
            matter_id=job.matter_id,
            document_hash=digest,
            exclude_run_id=job.run_id,
        )
        if duplicate is not None:
            raise StageFailure(f"Duplicate document: identical content already processed in run {duplicate.id}")

        self.complete(job, document_hash=digest)
