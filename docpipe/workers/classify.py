from __future__ import annotations

import logging

from docpipe.decoding import CLASSIFICATION_RESPONSE_SCHEMA, JsonParseError, decode_json
from docpipe.errors import AiClientError, StageFailure
from docpipe.models import JobData, PipelineRun, Task, new_id
from docpipe.policy import MALFORMED_RESPONSE, SKIP_STAGE, disposition_for, error_kind_for
from docpipe.prompts import build_classification_prompt
from docpipe.stages import STAGE_CONFIG
from docpipe.workers.base import StageWorker

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_THRESHOLD = 0.6


class ClassifyWorker(StageWorker):
    stage = "classify"

    async def execute(self, job: JobData, run: PipelineRun) -> None:
        svc = self.services
        doc = self.load_document(job)
        text = self.require_text(job)

        loaded = svc.taxonomy.load_pack_for_matter(firm_id=job.firm_id, matter_id=job.matter_id)
        if loaded is None:
            self.skip(job, reason="no taxonomy pack for matter")
            return
        if not loaded.document_types:
            self.skip(job, reason="taxonomy pack has no document types", taxonomy_pack_id=loaded.pack.id)
            return

        prompt = build_classification_prompt(
            document_types=loaded.document_types,
            text_sample=text,
            default_model=svc.settings.effective_classify_model,
            template=loaded.prompt_template("classification"),
            mime_type=doc.mime_type,
            filename=doc.filename,
        )
        try:
            result = await svc.ai_client.call(
                model=prompt.model,
                messages=prompt.messages(),
                temperature=prompt.temperature,
                max_tokens=prompt.max_tokens,
                response_format={"type": "json_object"},
                timeout_ms=STAGE_CONFIG["classify"].timeout_ms,
            )
        except AiClientError as exc:
            if disposition_for(stage=self.stage, error_kind=error_kind_for(exc)) == SKIP_STAGE:
                self.skip(job, reason=f"AI call failed: {exc.message}", taxonomy_pack_id=loaded.pack.id)
                return
            raise StageFailure(exc.message) from exc

        decoded = decode_json(result.content, schema=CLASSIFICATION_RESPONSE_SCHEMA)
        if isinstance(decoded, JsonParseError):
            if disposition_for(stage=self.stage, error_kind=MALFORMED_RESPONSE) == SKIP_STAGE:
                self.skip(job, reason=decoded.reason, taxonomy_pack_id=loaded.pack.id)
                return
            raise StageFailure(f"Malformed classification response: {decoded.reason}")

        doc_type = str(decoded.value["documentType"])
        confidence = float(decoded.value["confidence"])
        if loaded.document_type(doc_type) is None:
            logger.warning("classify: model returned unknown document type %r for run %s", doc_type, job.run_id)

        if confidence < LOW_CONFIDENCE_THRESHOLD:
            self._request_review(job, doc_type=doc_type, confidence=confidence)

        self.complete(
            job,
            classified_doc_type=doc_type,
            classification_confidence=f"{confidence:.3f}",
            taxonomy_pack_id=loaded.pack.id,
            total_tokens_used=result.tokens_used,
        )

    def _request_review(self, job: JobData, *, doc_type: str, confidence: float) -> None:
        try:
            self.services.tasks.create(
                task=Task(
                    id=new_id("task"),
                    firm_id=job.firm_id,
                    matter_id=job.matter_id,
                    title=f"Review document classification (confidence: {confidence * 100:.0f}%)",
                    description=(
                        f'The pipeline classified a document as "{doc_type}" with low confidence '
                        f"({confidence * 100:.1f}%). Please review and correct if needed."
                    ),
                    status="pending",
                    priority="high",
                )
            )
        except Exception:
            logger.exception("classify: review task creation failed for run %s", job.run_id)
