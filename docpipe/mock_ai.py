"""
Offline AI clients.

ScriptedAiClient replays canned replies (or a responder callable) and records
every call. MockAiClient is enabled with MOCK_LLM_ENABLED=true and produces
deterministic output so the pipeline can run end to end without a provider.
"""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Callable
from typing import Any

from docpipe.ai_client import AiCallResult
from docpipe.errors import AiClientError

_DOC_TYPE_RE = re.compile(r'^- "([^"]+)"', re.MULTILINE)


def _deterministic_float(seed: str, min_val: float = 0.0, max_val: float = 1.0) -> float:
    h = hashlib.sha256(seed.encode()).hexdigest()
    val = int(h[:8], 16) / 0xFFFFFFFF
    return min_val + val * (max_val - min_val)


class ScriptedAiClient:
    def __init__(
        self,
        replies: list[Any] | None = None,
        *,
        responder: Callable[..., Any] | None = None,
        tokens_per_call: int = 10,
    ) -> None:
        self._replies = list(replies or [])
        self._responder = responder
        self.tokens_per_call = tokens_per_call
        self.calls: list[dict[str, Any]] = []

    async def call(self, **kwargs: Any) -> AiCallResult:
        self.calls.append(dict(kwargs))
        if self._responder is not None:
            reply = self._responder(**kwargs)
        elif self._replies:
            reply = self._replies.pop(0)
        else:
            raise AiClientError("no scripted reply left", kind="api_error")

        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, AiCallResult):
            return reply
        if not isinstance(reply, str):
            reply = json.dumps(reply)
        return AiCallResult(
            content=reply,
            tokens_used=self.tokens_per_call,
            model=str(kwargs.get("model") or "scripted"),
        )


def _message_text(messages: list[dict[str, Any]], role: str) -> str:
    parts: list[str] = []
    for msg in messages:
        if msg.get("role") != role:
            continue
        content = msg.get("content")
        if isinstance(content, str):
            parts.append(content)
    return "\n".join(parts)


def _has_image(messages: list[dict[str, Any]]) -> bool:
    for msg in messages:
        content = msg.get("content")
        if isinstance(content, list) and any(p.get("type") == "image_url" for p in content):
            return True
    return False


def mock_reply(*, messages: list[dict[str, Any]], **_: Any) -> str:
    if _has_image(messages):
        return "Mock transcription of a scanned document."
    system = _message_text(messages, "system").lower()
    user = _message_text(messages, "user")
    if "classif" in system:
        keys = _DOC_TYPE_RE.findall(user)
        if not keys:
            return json.dumps({"documentType": "unknown", "confidence": 0.0})
        confidence = round(_deterministic_float(user, 0.6, 0.95), 3)
        return json.dumps({"documentType": keys[0], "confidence": confidence})
    return json.dumps({"findings": []})


class MockAiClient(ScriptedAiClient):
    def __init__(self) -> None:
        super().__init__(responder=mock_reply, tokens_per_call=0)
