from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw not in _FALSE_VALUES


def _env_str(env: Mapping[str, str], name: str, *, default: str = "") -> str:
    return str(env.get(name, default)).strip() or default


@dataclass(frozen=True)
class PipelineSettings:
    store_backend: str = "memory"
    postgres_dsn: str = ""
    dlq_capacity: int = 500
    poll_interval_ms: int = 200
    max_concurrent_ai: int = 5
    ai_call_timeout_ms: int = 300_000
    llm_model: str = "gpt-4o-mini"
    classify_model: str = ""
    extract_model: str = ""
    ocr_model: str = ""
    mock_llm_enabled: bool = False
    taxonomy_dir: str = ""
    log_level: str = "INFO"

    @property
    def effective_classify_model(self) -> str:
        return self.classify_model or self.llm_model

    @property
    def effective_extract_model(self) -> str:
        return self.extract_model or self.llm_model

    @property
    def effective_ocr_model(self) -> str:
        return self.ocr_model or self.llm_model


def load_settings(environ: Mapping[str, str] | None = None) -> PipelineSettings:
    env = os.environ if environ is None else environ
    store_backend = _env_str(env, "DOCPIPE_STORE_BACKEND", default="memory").lower()
    if store_backend not in {"memory", "postgres"}:
        raise RuntimeError(f"unsupported store backend: {store_backend}")
    return PipelineSettings(
        store_backend=store_backend,
        postgres_dsn=_env_str(env, "POSTGRES_DSN"),
        dlq_capacity=_env_int(env, "DOCPIPE_DLQ_CAPACITY", default=500, minimum=1),
        poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
        max_concurrent_ai=_env_int(env, "PIPELINE_MAX_CONCURRENT_AI", default=5, minimum=1),
        ai_call_timeout_ms=_env_int(env, "AI_CALL_TIMEOUT_MS", default=300_000, minimum=1),
        llm_model=_env_str(env, "LLM_MODEL", default="gpt-4o-mini"),
        classify_model=_env_str(env, "CLASSIFY_MODEL"),
        extract_model=_env_str(env, "EXTRACT_MODEL"),
        ocr_model=_env_str(env, "OCR_MODEL"),
        mock_llm_enabled=_env_bool(env, "MOCK_LLM_ENABLED", default=False),
        taxonomy_dir=_env_str(env, "DOCPIPE_TAXONOMY_DIR"),
        log_level=_env_str(env, "LOG_LEVEL", default="INFO").upper(),
    )
