from __future__ import annotations

import asyncio
import base64
import logging

from docpipe.errors import AiClientError, ApiError, StageFailure
from docpipe.models import JobData, PipelineRun
from docpipe.policy import RETRY_JOB, disposition_for, error_kind_for
from docpipe.prompts import build_ocr_messages
from docpipe.stages import STAGE_CONFIG
from docpipe.text_extraction import IMAGE_MIME_TYPES, extract_text
from docpipe.workers.base import StageWorker

logger = logging.getLogger(__name__)

OCR_MAX_TOKENS = 4096


class OcrWorker(StageWorker):
    stage = "ocr"

    async def execute(self, job: JobData, run: PipelineRun) -> None:
        doc = self.load_document(job)
        if doc is None:
            raise StageFailure("Document not found")

        if (doc.extracted_text or "").strip():
            logger.info("ocr: document %s already has text; nothing to do", doc.id)
            self.complete(job)
            return

        content = await self.services.blob_storage.download(doc.storage_bucket, doc.storage_path)
        mime_type = doc.mime_type or "application/octet-stream"

        tokens_used = 0
        if mime_type in IMAGE_MIME_TYPES:
            text, tokens_used = await self._transcribe_image(content, mime_type)
        else:
            try:
                text = await asyncio.to_thread(extract_text, content, mime_type=mime_type)
            except ApiError as exc:
                raise StageFailure(f"Text extraction failed: {exc.message}") from exc

        if not text.strip():
            raise StageFailure("No text could be extracted from document")

        self.services.documents.update_extracted_text(firm_id=job.firm_id, document_id=doc.id, text=text)
        self.complete(job, total_tokens_used=tokens_used)

    async def _transcribe_image(self, content: bytes, mime_type: str) -> tuple[str, int]:
        svc = self.services
        try:
            result = await svc.ai_client.call(
                model=svc.settings.effective_ocr_model,
                messages=build_ocr_messages(
                    image_bytes_b64=base64.b64encode(content).decode("ascii"),
                    mime_type=mime_type,
                ),
                max_tokens=OCR_MAX_TOKENS,
                timeout_ms=STAGE_CONFIG["ocr"].timeout_ms,
            )
        except AiClientError as exc:
            if disposition_for(stage="ocr", error_kind=error_kind_for(exc)) == RETRY_JOB:
                raise
            raise StageFailure(f"Text extraction failed: {exc.message}") from exc
        return result.content, result.tokens_used
