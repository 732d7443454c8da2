from __future__ import annotations

from typing import Any, Optional


class ApiError(Exception):
    """Base class for every failure the API client reports.

    ``status_code`` is the HTTP status (``None`` for transport failures) and
    ``code`` is the server's machine-readable error code when it sent one.
    """

    default_code: str = "api_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code or self.default_code
        self.details = details

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(status_code={self.status_code!r}, "
            f"code={self.code!r}, message={self.message!r})"
        )


class ValidationFailed(ApiError):
    default_code = "validation_error"


class AuthenticationFailed(ApiError):
    """401 from the server: bad credentials or an unusable token."""

    default_code = "unauthorized"


class NotFound(ApiError):
    default_code = "not_found"


class ServerFailure(ApiError):
    default_code = "server_error"


class TransportFailure(ApiError):
    """The request never produced an HTTP response."""

    default_code = "transport_error"


def error_for_status(
    status_code: int, message: str, code: Optional[str] = None, details: Any = None
) -> ApiError:
    if status_code == 401:
        cls: type[ApiError] = AuthenticationFailed
    elif status_code == 404:
        cls = NotFound
    elif status_code >= 500:
        cls = ServerFailure
    elif 400 <= status_code < 500:
        cls = ValidationFailed
    else:
        cls = ApiError
    return cls(message, status_code=status_code, code=code, details=details)


__all__ = [
    "ApiError",
    "ValidationFailed",
    "AuthenticationFailed",
    "NotFound",
    "ServerFailure",
    "TransportFailure",
    "error_for_status",
]
