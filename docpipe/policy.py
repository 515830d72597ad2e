from __future__ import annotations

from docpipe.errors import AiClientError

SKIP_CHUNK = "skip_chunk"
SKIP_STAGE = "skip_stage"
FAIL_RUN = "fail_run"
RETRY_JOB = "retry_job"

AI_RETRYABLE = "ai_retryable"
AI_PERMANENT = "ai_permanent"
MALFORMED_RESPONSE = "malformed_response"

STAGE_ERROR_POLICY: dict[str, dict[str, str]] = {
    "ocr": {
        AI_RETRYABLE: RETRY_JOB,
        AI_PERMANENT: FAIL_RUN,
        MALFORMED_RESPONSE: FAIL_RUN,
    },
    "classify": {
        AI_RETRYABLE: SKIP_STAGE,
        AI_PERMANENT: FAIL_RUN,
        MALFORMED_RESPONSE: FAIL_RUN,
    },
    "extract": {
        AI_RETRYABLE: SKIP_CHUNK,
        AI_PERMANENT: SKIP_CHUNK,
        MALFORMED_RESPONSE: SKIP_CHUNK,
    },
}


def error_kind_for(exc: BaseException) -> str:
    if isinstance(exc, AiClientError):
        return AI_RETRYABLE if exc.is_retryable else AI_PERMANENT
    return MALFORMED_RESPONSE


def disposition_for(*, stage: str, error_kind: str) -> str:
    try:
        return STAGE_ERROR_POLICY[stage][error_kind]
    except KeyError:
        return FAIL_RUN
