from __future__ import annotations


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status


class StageFailure(Exception):
    """Terminal failure of the current run; the queue never retries it."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


RETRYABLE_AI_ERROR_KINDS = frozenset({"transient_error", "rate_limited", "network_error", "timeout"})


class AiClientError(Exception):
    def __init__(
        self,
        message: str,
        *,
        kind: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.status_code = status_code

    @property
    def is_retryable(self) -> bool:
        return self.kind in RETRYABLE_AI_ERROR_KINDS
