from __future__ import annotations

import logging

from docpipe.chunking import chunk_text_overlapping
from docpipe.decoding import EXTRACTION_RESPONSE_SCHEMA, JsonParseError, decode_json, extraction_entries
from docpipe.errors import AiClientError, StageFailure
from docpipe.findings import RawFinding, deduplicate_findings, process_findings, raw_findings_from_entries
from docpipe.models import JobData, PipelineRun
from docpipe.policy import MALFORMED_RESPONSE, SKIP_CHUNK, disposition_for, error_kind_for
from docpipe.prompts import build_extraction_prompt
from docpipe.stages import STAGE_CONFIG
from docpipe.taxonomy import LoadedPack, TaxonomyCategory
from docpipe.workers.base import StageWorker

logger = logging.getLogger(__name__)

CHUNK_MAX_RETRIES = 1


def active_categories(loaded: LoadedPack, doc_type_key: str | None) -> list[TaxonomyCategory]:
    """Categories activated by the classified type, or all of them when unclassified."""
    doc_type = loaded.document_type(doc_type_key)
    if doc_type is None:
        return list(loaded.categories)
    activated = set(doc_type.activated_categories)
    return [cat for cat in loaded.categories if cat.key in activated]


class ExtractWorker(StageWorker):
    stage = "extract"

    async def execute(self, job: JobData, run: PipelineRun) -> None:
        svc = self.services
        text = self.require_text(job)

        if not run.taxonomy_pack_id:
            self.skip(job, reason="no taxonomy pack on run")
            return
        loaded = svc.taxonomy.load_pack_by_id(run.taxonomy_pack_id)
        if loaded is None:
            raise StageFailure("Taxonomy pack not found")

        categories = active_categories(loaded, run.classified_doc_type)
        if not any(cat.fields for cat in categories):
            self.skip(job, reason="no fields to extract", taxonomy_pack_id=loaded.pack.id)
            return

        chunks = chunk_text_overlapping(text)
        template = loaded.prompt_template("extraction")
        raw: list[RawFinding] = []
        tokens_used = 0
        failed_chunks = 0

        for chunk in chunks:
            prompt = build_extraction_prompt(
                categories=categories,
                chunk_text=chunk.text,
                chunk_index=chunk.index,
                total_chunks=len(chunks),
                document_type=run.classified_doc_type or "unknown",
                default_model=svc.settings.effective_extract_model,
                template=template,
            )
            try:
                result = await svc.ai_client.call(
                    model=prompt.model,
                    messages=prompt.messages(),
                    temperature=prompt.temperature,
                    max_tokens=prompt.max_tokens,
                    response_format={"type": "json_object"},
                    timeout_ms=STAGE_CONFIG["extract"].timeout_ms,
                    max_retries=CHUNK_MAX_RETRIES,
                )
            except AiClientError as exc:
                self._skip_chunk(error_kind_for(exc), chunk.index, len(chunks), exc.message)
                failed_chunks += 1
                continue

            tokens_used += result.tokens_used
            decoded = decode_json(result.content, schema=EXTRACTION_RESPONSE_SCHEMA)
            if isinstance(decoded, JsonParseError):
                self._skip_chunk(MALFORMED_RESPONSE, chunk.index, len(chunks), decoded.reason)
                failed_chunks += 1
                continue
            raw.extend(
                raw_findings_from_entries(extraction_entries(decoded.value), chunk=chunk, categories=categories)
            )

        if chunks and failed_chunks == len(chunks):
            raise StageFailure(f"All {len(chunks)} chunks failed extraction")

        rows = process_findings(
            deduplicate_findings(raw),
            field_map=loaded.field_map,
            run_id=job.run_id,
            firm_id=job.firm_id,
            matter_id=job.matter_id,
            document_id=job.document_id,
            text=text,
        )
        if rows:
            svc.findings.insert_many(findings=rows)
        logger.info(
            "extract: run %s produced %d findings from %d chunks (%d failed)",
            job.run_id,
            len(rows),
            len(chunks),
            failed_chunks,
        )
        self.complete(job, findings_count=len(rows), total_tokens_used=tokens_used)

    def _skip_chunk(self, error_kind: str, index: int, total: int, reason: str) -> None:
        if disposition_for(stage=self.stage, error_kind=error_kind) != SKIP_CHUNK:
            raise StageFailure(f"Chunk {index + 1}/{total} failed: {reason}")
        logger.warning("extract: chunk %d/%d failed: %s", index + 1, total, reason)
