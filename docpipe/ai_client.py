"""
AI gateway used by the pipeline stages for every LLM call.

Architecture:
  - ProviderConfig: provider settings (model, api_key, base_url)
  - AiClient.call: awaited chat completion bounded by a timeout, with
    in-client retries for transient failures and a process-wide cap on
    concurrent in-flight calls
  - AiClientError: typed failure exposing ``kind`` and ``is_retryable``
  - Usage tracking: token counts for the most recent calls (bounded)

Configuration via environment variables:
  LLM_PROVIDER          = openai | openrouter | ollama | custom   (default: openai)
  LLM_MODEL             = gpt-4o-mini                            (default model)
  OPENAI_API_KEY        = sk-...
  OPENAI_BASE_URL       = https://api.openai.com/v1              (or custom endpoint)
  OPENROUTER_API_KEY    = sk-or-...
  OPENROUTER_BASE_URL   = https://openrouter.ai/api/v1
  OLLAMA_BASE_URL       = http://localhost:11434/v1
  OLLAMA_MODEL          = qwen2.5:7b
  AI_CALL_TIMEOUT_MS    = 300000
  PIPELINE_MAX_CONCURRENT_AI = 5
  MOCK_LLM_ENABLED      = true                                   (offline scripted client)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import deque
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from docpipe.errors import AiClientError
from docpipe.settings import PipelineSettings, load_settings

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({429, 500, 502, 503, 504})
MAX_RETRY_WAIT_MS = 30_000
_IN_CLIENT_RETRY_KINDS = frozenset({"transient_error", "rate_limited", "network_error"})


@dataclass
class ProviderConfig:
    provider: str = "openai"
    model: str = ""
    api_key: str = ""
    base_url: str = ""

    def __post_init__(self) -> None:
        if not self.model:
            self.model = os.environ.get("LLM_MODEL", "gpt-4o-mini").strip() or "gpt-4o-mini"


@dataclass
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0
    retried: bool = False


@dataclass
class AiCallResult:
    content: str
    tokens_used: int
    model: str
    was_retried: bool = False


USAGE_LOG_MAXLEN = 1000

_call_usage_log: deque[LLMUsage] = deque(maxlen=USAGE_LOG_MAXLEN)


def get_usage_log() -> list[LLMUsage]:
    return list(_call_usage_log)


def usage_summary() -> dict[str, Any]:
    calls = get_usage_log()
    return {
        "recent_calls": len(calls),
        "recent_tokens": sum(int(u.total_tokens or 0) for u in calls),
        "retried_calls": sum(1 for u in calls if u.retried),
    }


def reset_usage_log() -> None:
    _call_usage_log.clear()


def _get_provider_config(environ: Mapping[str, str] | None = None) -> ProviderConfig:
    env = os.environ if environ is None else environ
    provider = env.get("LLM_PROVIDER", "openai").strip().lower() or "openai"
    model = env.get("LLM_MODEL", "").strip()

    if provider == "ollama":
        return ProviderConfig(
            provider="ollama",
            model=env.get("OLLAMA_MODEL", model).strip(),
            api_key=env.get("OPENAI_API_KEY", "ollama").strip() or "ollama",
            base_url=env.get("OLLAMA_BASE_URL", "http://localhost:11434/v1").strip(),
        )

    if provider == "openrouter":
        return ProviderConfig(
            provider="openrouter",
            model=model,
            api_key=env.get("OPENROUTER_API_KEY", "").strip(),
            base_url=env.get("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").strip(),
        )

    return ProviderConfig(
        provider=provider,
        model=model,
        api_key=env.get("OPENAI_API_KEY", "").strip(),
        base_url=env.get("OPENAI_BASE_URL", "").strip(),
    )


def _create_client(config: ProviderConfig) -> Any:
    try:
        import openai
    except ImportError as exc:
        raise RuntimeError("openai package is required. Install with: pip install openai") from exc

    kwargs: dict[str, Any] = {"max_retries": 0}
    if config.api_key:
        kwargs["api_key"] = config.api_key
    if config.base_url:
        kwargs["base_url"] = config.base_url
    return openai.AsyncOpenAI(**kwargs)


def _classify_error(exc: Exception) -> AiClientError:
    import openai

    if isinstance(exc, AiClientError):
        return exc
    if isinstance(exc, openai.APITimeoutError):
        return AiClientError(f"AI call timed out: {exc}", kind="timeout")
    if isinstance(exc, openai.APIConnectionError):
        return AiClientError(f"AI call failed: {exc}", kind="network_error")
    if isinstance(exc, openai.APIStatusError):
        status = int(exc.status_code)
        if status == 429:
            kind = "rate_limited"
        elif status in TRANSIENT_STATUS_CODES:
            kind = "transient_error"
        else:
            kind = "api_error"
        return AiClientError(f"AI API returned {status}: {exc.message}", kind=kind, status_code=status)
    return AiClientError(f"AI call failed: {type(exc).__name__}: {exc}", kind="network_error")


def _retry_after_ms(exc: Exception) -> int | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if headers is None:
        return None
    raw = headers.get("retry-after")
    if not raw:
        return None
    try:
        return int(float(raw) * 1000)
    except ValueError:
        return None


class AiClient:
    """Single gateway for LLM calls: timeout, retries, concurrency cap."""

    def __init__(
        self,
        *,
        config: ProviderConfig | None = None,
        client: Any = None,
        max_concurrent: int = 5,
        default_timeout_ms: int = 300_000,
        retry_delay_ms: int = 1000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or _get_provider_config()
        self._client = client
        self._max_concurrent = max(1, int(max_concurrent))
        self._default_timeout_ms = max(1, int(default_timeout_ms))
        self._retry_delay_ms = max(0, int(retry_delay_ms))
        self._sleep = sleep
        self._semaphore: asyncio.Semaphore | None = None
        self._semaphore_loop: asyncio.AbstractEventLoop | None = None

    def _slot(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self._max_concurrent)
            self._semaphore_loop = loop
        return self._semaphore

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        if self.config.provider != "ollama" and not self.config.api_key:
            raise AiClientError(
                f"no API key configured for provider {self.config.provider}",
                kind="config_error",
            )
        self._client = _create_client(self.config)
        return self._client

    async def call(
        self,
        *,
        model: str | None,
        messages: list[dict[str, Any]],
        temperature: float = 0.1,
        max_tokens: int = 4096,
        response_format: dict[str, Any] | None = None,
        timeout_ms: int | None = None,
        max_retries: int = 2,
    ) -> AiCallResult:
        client = self._ensure_client()
        model_name = model or self.config.model
        timeout = timeout_ms or self._default_timeout_ms
        kwargs: dict[str, Any] = {
            "model": model_name,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format:
            kwargs["response_format"] = response_format

        attempts = 0
        while True:
            retry_after: int | None = None
            t0 = time.monotonic()
            try:
                async with self._slot():
                    response = await asyncio.wait_for(
                        client.chat.completions.create(**kwargs),
                        timeout=timeout / 1000.0,
                    )
            except asyncio.TimeoutError:
                error = AiClientError(f"AI call timed out after {timeout}ms", kind="timeout")
            except Exception as exc:
                error = _classify_error(exc)
                retry_after = _retry_after_ms(exc)
            else:
                return self._result(response, model=model_name, started=t0, retried=attempts > 0)

            if error.kind not in _IN_CLIENT_RETRY_KINDS or attempts >= max_retries:
                raise error
            delay_ms = retry_after if retry_after is not None else self._retry_delay_ms * (2**attempts)
            delay_ms = min(delay_ms, MAX_RETRY_WAIT_MS)
            logger.warning(
                "AI call to %s failed (%s), retrying in %dms (attempt %d/%d)",
                model_name,
                error.kind,
                delay_ms,
                attempts + 1,
                max_retries,
            )
            await self._sleep(delay_ms / 1000.0)
            attempts += 1

    @staticmethod
    def _result(response: Any, *, model: str, started: float, retried: bool) -> AiCallResult:
        elapsed_ms = (time.monotonic() - started) * 1000
        choices = getattr(response, "choices", None) or []
        content = ""
        if choices:
            content = (choices[0].message.content or "").strip()
        usage_data = getattr(response, "usage", None)
        usage = LLMUsage(
            prompt_tokens=getattr(usage_data, "prompt_tokens", 0) if usage_data else 0,
            completion_tokens=getattr(usage_data, "completion_tokens", 0) if usage_data else 0,
            total_tokens=getattr(usage_data, "total_tokens", 0) if usage_data else 0,
            model=getattr(response, "model", None) or model,
            latency_ms=round(elapsed_ms, 1),
            retried=retried,
        )
        _call_usage_log.append(usage)
        return AiCallResult(
            content=content,
            tokens_used=int(usage.total_tokens or 0),
            model=usage.model,
            was_retried=retried,
        )


def create_ai_client_from_env(
    settings: PipelineSettings | None = None,
    environ: Mapping[str, str] | None = None,
) -> Any:
    env = os.environ if environ is None else environ
    cfg = settings or load_settings(env)
    if cfg.mock_llm_enabled:
        from docpipe.mock_ai import MockAiClient

        return MockAiClient()
    return AiClient(
        config=_get_provider_config(env),
        max_concurrent=cfg.max_concurrent_ai,
        default_timeout_ms=cfg.ai_call_timeout_ms,
    )


def get_provider_info(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Return current provider configuration (safe for logging, no secrets)."""
    config = _get_provider_config(environ)
    return {
        "provider": config.provider,
        "model": config.model,
        "base_url": config.base_url or "(default)",
        "has_api_key": bool(config.api_key),
    }
