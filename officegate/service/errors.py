from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can branch on. The message is safe to show to callers; the
    ``detail`` dict holds structured extras such as lockout time remaining.
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Wrong email, wrong password or inactive account."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(AuthenticationError):
    """Login refused while a lockout is active."""
    error_code = "account_locked"

    def __init__(self, retry_after_minutes: int) -> None:
        super().__init__(
            f"account locked; try again in {retry_after_minutes} minute(s)",
            detail={"retry_after_minutes": retry_after_minutes},
        )
        self.retry_after_minutes = retry_after_minutes


class InvalidRefreshTokenError(AuthenticationError):
    """Expired, forged or revoked refresh token; never distinguished."""
    error_code = "invalid_refresh_token"

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaRequiredError(AuthenticationError):
    error_code = "mfa_required"


class MfaInvalidCodeError(AuthenticationError):
    error_code = "mfa_invalid_code"

    def __init__(self, message: str = "invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaAlreadyEnabledError(ServiceError):
    status_code = 409
    error_code = "mfa_already_enabled"

    def __init__(self, message: str = "two-factor authentication is already enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaNotEnabledError(ServiceError):
    status_code = 400
    error_code = "mfa_not_enabled"

    def __init__(self, message: str = "two-factor authentication is not enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaNotEnrolledError(ServiceError):
    status_code = 400
    error_code = "mfa_not_enrolled"

    def __init__(self, message: str = "two-factor setup has not been started", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient role or tenant access (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "InvalidRefreshTokenError",
    "MfaRequiredError",
    "MfaInvalidCodeError",
    "MfaAlreadyEnabledError",
    "MfaNotEnabledError",
    "MfaNotEnrolledError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
]
