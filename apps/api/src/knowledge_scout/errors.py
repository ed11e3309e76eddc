from __future__ import annotations

from typing import Any


class ScoutError(RuntimeError):
    """Base error rendered as ``{"error": code, "detail": message}``."""

    code = "internal_error"
    status_code = 500

    def __init__(self, detail: str, **extra: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.detail, **self.extra}


class InvalidInput(ScoutError):
    code = "invalid_input"
    status_code = 400


class FileTooLarge(InvalidInput):
    code = "file_too_large"
    status_code = 413


class Unauthorized(ScoutError):
    code = "unauthorized"
    status_code = 401


class Forbidden(ScoutError):
    code = "forbidden"
    status_code = 403


class NotFound(ScoutError):
    code = "not_found"
    status_code = 404


class DocumentNotFound(NotFound):
    pass


class JobNotFound(NotFound):
    pass


class UnsupportedFormat(ScoutError):
    code = "unsupported_format"
    status_code = 400


class ExtractionFailed(ScoutError):
    code = "extraction_failed"
    status_code = 400


class ProviderError(ScoutError):
    status_code = 502


class PermanentProviderError(ProviderError):
    """The provider rejected the request (4xx other than 429); never retried."""

    code = "provider_rejected"

    def __init__(self, detail: str, *, status: int | None = None, **extra: Any) -> None:
        super().__init__(detail, **extra)
        self.status = status


class RetryExhausted(ProviderError):
    code = "provider_unavailable"

    def __init__(self, detail: str, *, attempts: int | None = None, **extra: Any) -> None:
        if attempts is not None:
            extra["attempts"] = attempts
        super().__init__(detail, **extra)
        self.attempts = attempts


class EmbeddingFailed(RetryExhausted):
    code = "embedding_failed"


class GenerationFailed(RetryExhausted):
    code = "generation_failed"


class RebuildInProgress(ScoutError):
    code = "rebuild_in_progress"
    status_code = 409

    def __init__(self, existing_job_id: str) -> None:
        super().__init__("index rebuild already queued/running", existing_job_id=existing_job_id)
        self.existing_job_id = existing_job_id
