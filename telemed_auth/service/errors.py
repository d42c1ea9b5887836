from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code; callers translate them at the boundary without inspecting
    the message text.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

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


class AuthErrorKind(str, Enum):
    """Closed set of failure kinds the auth core can report."""

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    SESSION_INVALID = "SESSION_INVALID"
    INVALID_RESET_TOKEN = "INVALID_RESET_TOKEN"
    USER_INACTIVE = "USER_INACTIVE"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


class AuthError(ServiceError):
    """Per-request authentication failure carrying its ``AuthErrorKind``."""

    kind: AuthErrorKind
    status_code = 401
    default_message = "authentication failed"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[dict] = None) -> None:
        super().__init__(
            message or self.default_message,
            detail=detail,
            error_code=self.kind.value,
        )


class InvalidCredentialsError(AuthError):
    kind = AuthErrorKind.INVALID_CREDENTIALS
    status_code = 401
    default_message = "invalid email or password"


class AccountLockedError(AuthError):
    """Too many failed attempts; ``detail['locked_until']`` holds the ISO timestamp."""

    kind = AuthErrorKind.ACCOUNT_LOCKED
    status_code = 423
    default_message = "account is temporarily locked due to too many failed login attempts"


class AccountInactiveError(AuthError):
    kind = AuthErrorKind.ACCOUNT_INACTIVE
    status_code = 403
    default_message = "account is deactivated"


class InvalidTokenError(AuthError):
    kind = AuthErrorKind.INVALID_TOKEN
    status_code = 401
    default_message = "invalid token"


class TokenExpiredError(AuthError):
    kind = AuthErrorKind.TOKEN_EXPIRED
    status_code = 401
    default_message = "token expired"


class SessionInvalidError(AuthError):
    kind = AuthErrorKind.SESSION_INVALID
    status_code = 401
    default_message = "session expired or invalid"


class InvalidResetTokenError(AuthError):
    kind = AuthErrorKind.INVALID_RESET_TOKEN
    status_code = 400
    default_message = "invalid or expired reset token"


class UserInactiveError(AuthError):
    kind = AuthErrorKind.USER_INACTIVE
    status_code = 401
    default_message = "user not found or inactive"


class StoreUnavailableError(AuthError):
    """Transient storage failure; retrying is the caller's decision."""

    kind = AuthErrorKind.STORE_UNAVAILABLE
    status_code = 503
    default_message = "authentication store unavailable"


class ConfigurationError(Exception):
    """Fatal misconfiguration detected at startup (e.g. missing signing secrets)."""


ERRORS_BY_KIND: dict[AuthErrorKind, type[AuthError]] = {
    cls.kind: cls
    for cls in (
        InvalidCredentialsError,
        AccountLockedError,
        AccountInactiveError,
        InvalidTokenError,
        TokenExpiredError,
        SessionInvalidError,
        InvalidResetTokenError,
        UserInactiveError,
        StoreUnavailableError,
    )
}


__all__ = [
    "ServiceError",
    "AuthErrorKind",
    "AuthError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountInactiveError",
    "InvalidTokenError",
    "TokenExpiredError",
    "SessionInvalidError",
    "InvalidResetTokenError",
    "UserInactiveError",
    "StoreUnavailableError",
    "ConfigurationError",
    "ERRORS_BY_KIND",
]
