from __future__ import annotations

from enum import StrEnum


class ErrorCode(StrEnum):
    GENERATION_FAILED = "GENERATION_FAILED"
    PAGE_NOT_FOUND = "PAGE_NOT_FOUND"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    STORE_ERROR = "STORE_ERROR"
    REGENERATION_IN_PROGRESS = "REGENERATION_IN_PROGRESS"
    INVALID_INPUT = "INVALID_INPUT"
    RATE_LIMITED = "RATE_LIMITED"


class AlmanacError(Exception):
    """Base class for all expected failure conditions.

    Caught at the transport boundary (api.py, server.py) and serialised into
    a structured error response. Business logic raises these and lets them
    propagate; batch jobs catch them per item and record the failure.
    """

    code: ErrorCode = ErrorCode.INVALID_INPUT
    status_code: int = 500

    def __init__(
        self,
        message: str,
        suggestion: str = "",
        recoverable: bool = False,
        *,
        code: ErrorCode | None = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.message = message
        self.suggestion = suggestion
        self.recoverable = recoverable

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "suggestion": self.suggestion,
                "recoverable": self.recoverable,
            }
        }


class GenerationError(AlmanacError):
    """Upstream generation failed or timed out on every configured provider."""

    code = ErrorCode.GENERATION_FAILED
    status_code = 500

    def __init__(
        self,
        message: str,
        suggestion: str = "The generation service may be temporarily unavailable.",
        recoverable: bool = True,
        *,
        slug: str | None = None,
        attempts: list[dict] | None = None,
    ) -> None:
        super().__init__(message, suggestion, recoverable)
        self.slug = slug
        self.attempts = attempts or []


class NotFoundError(AlmanacError):
    code = ErrorCode.PAGE_NOT_FOUND
    status_code = 404


class ConfigurationError(AlmanacError):
    """A required setting (usually a secret) is missing. Never ignored."""

    code = ErrorCode.CONFIGURATION_ERROR
    status_code = 500


class StoreError(AlmanacError):
    """Persistence I/O failure. Propagated to the caller, never retried here."""

    code = ErrorCode.STORE_ERROR
    status_code = 500

    def __init__(
        self,
        message: str,
        suggestion: str = "Check that the cache database is reachable and writable.",
        recoverable: bool = True,
    ) -> None:
        super().__init__(message, suggestion, recoverable)


class RegenerationInProgressError(AlmanacError):
    code = ErrorCode.REGENERATION_IN_PROGRESS
    status_code = 409

    def __init__(self, slug: str) -> None:
        super().__init__(
            f"Regeneration already in progress for '{slug}'",
            "Wait for the running regeneration to finish and try again.",
            recoverable=True,
        )
        self.slug = slug


class InvalidInputError(AlmanacError):
    code = ErrorCode.INVALID_INPUT
    status_code = 400


class GenerationThrottledError(AlmanacError):
    """On-demand generation refused by the per-slug cooldown or the rate limit."""

    code = ErrorCode.RATE_LIMITED
    status_code = 429

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(
            message,
            f"Try again in {retry_after} seconds.",
            recoverable=True,
        )
        self.retry_after = retry_after
