"""Error taxonomy shared by all pipeline stages.

Only `AuthError` is allowed to escape a stage. Everything else is caught at the
smallest scope (one image, or one description sub-batch) and turned into a
degraded result.
"""
from typing import Any


class PipelineError(Exception):
    """Base exception for the image pipeline."""

    def __init__(
        self,
        message: str,
        stage: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class ServiceError(PipelineError):
    """An external capability answered with an unexpected, non-retryable status."""

    def __init__(self, message: str, service: str, http_status: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.service = service
        self.http_status = http_status
        self.details["service"] = service
        self.details["http_status"] = http_status


class TransientServiceError(ServiceError):
    """HTTP 429/5xx or a transport failure that persisted through all retries."""


class AuthError(ServiceError):
    """Credentials rejected (401/403). Fatal for the whole run."""


class PollTimeoutError(PipelineError):
    """A job did not reach a terminal state within its attempt budget or deadline."""


class InvalidPayloadError(PipelineError):
    """Malformed URL, empty body or a reply that failed schema validation."""
