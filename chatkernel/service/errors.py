from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error / job_exhausted (500)
    - provider_error (502)
    - provider_timeout (504)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed request; never retried."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """No principal was supplied by the upstream auth layer (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Missing resource, or one owned by someone else (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ProviderError(ServiceError):
    """The upstream LLM call failed. Retryable on the async path only."""
    status_code = 502
    error_code = "provider_error"


class ProviderTimeoutError(ProviderError):
    """The upstream call exceeded its deadline; handled exactly like ProviderError."""
    status_code = 504
    error_code = "provider_timeout"


class JobExhaustedError(ServiceError):
    """An async job used up all of its attempts."""
    status_code = 500
    error_code = "job_exhausted"

    def __init__(self, job_id: str, attempts: int, last_error: str) -> None:
        super().__init__(
            f"job {job_id} failed after {attempts} attempts: {last_error}",
            detail={"job_id": job_id, "attempts": attempts},
        )
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ProviderError",
    "ProviderTimeoutError",
    "JobExhaustedError",
    "ServerError",
]
