from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable machine-readable
    ``error_code`` that clients switch on:

    - validation_error (400)
    - invalid_credentials, unauthorized, token_expired, token_malformed,
      user_not_found, malformed_assertion (401)
    - not_found (404)
    - persistence_error, upstream_failure (500)
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
    """Input failed validation; ``detail`` maps field names to messages (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCredentials(ServiceError):
    """Email/password pair rejected. Never says which half was wrong (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class Unauthenticated(ServiceError):
    """Protected resource reached without a usable bearer token (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenExpired(Unauthenticated):
    error_code = "token_expired"


class TokenMalformed(Unauthenticated):
    error_code = "token_malformed"


class UserNotFound(Unauthenticated):
    """Token verified but its subject no longer exists."""
    error_code = "user_not_found"


class MalformedAssertion(ServiceError):
    """Federated identity assertion failed structure, signature or claim checks (401)."""
    status_code = 401
    error_code = "malformed_assertion"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class PersistenceError(ServiceError):
    """Storage could not complete a write, e.g. a repeated uniqueness race (500)."""
    status_code = 500
    error_code = "persistence_error"


class UpstreamFailure(ServiceError):
    """A dependency outside this process failed or is not configured (500)."""
    status_code = 500
    error_code = "upstream_failure"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredentials",
    "Unauthenticated",
    "TokenExpired",
    "TokenMalformed",
    "UserNotFound",
    "MalformedAssertion",
    "NotFoundError",
    "PersistenceError",
    "UpstreamFailure",
]
