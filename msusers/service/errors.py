from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on:
    - unauthorized / invalid_token / external_auth_failed / user_inactive (401)
    - forbidden / no_access_to_tenant (403)
    - not_found / grant_not_found (404)
    - validation_error (400)

    Storage constraint and outage errors are mapped separately by the API
    handlers (conflict / server_error).
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ExternalAuthFailure(AuthenticationError):
    """The identity provider rejected the credential or could not be reached."""
    error_code = "external_auth_failed"

    def __init__(self, message: str = "external authentication failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MissingIdentityId(AuthenticationError):
    """The identity provider answered without a stable account id."""
    error_code = "missing_identity_id"

    def __init__(self, message: str = "identity provider returned no account id", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(AuthenticationError):
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserInactiveOrMissing(AuthenticationError):
    error_code = "user_inactive"

    def __init__(self, message: str = "user not found or inactive", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NoAccessToTenant(ForbiddenError):
    error_code = "no_access_to_tenant"

    def __init__(self, message: str = "no access to this hospital", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class GrantNotFound(NotFoundError):
    error_code = "grant_not_found"

    def __init__(self, message: str = "access grant not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ExternalAuthFailure",
    "MissingIdentityId",
    "InvalidToken",
    "UserInactiveOrMissing",
    "ForbiddenError",
    "NoAccessToTenant",
    "NotFoundError",
    "GrantNotFound",
]
