from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Account security failure carrying its HTTP status.

    ``message`` becomes the ``message`` field of the JSON body and any
    ``detail`` keys are merged next to it (``retryAfter``,
    ``twoFactorRequired``).
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.detail = detail or {}


class BadRequestError(ServiceError):
    """Missing field, policy violation or 2FA in the wrong state."""


class UnauthorizedError(ServiceError):
    """Missing bearer token or a wrong password or code."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Bearer token present but invalid or expired."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Username or email already registered."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


__all__ = [
    "ServiceError",
    "BadRequestError",
    "UnauthorizedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
]
