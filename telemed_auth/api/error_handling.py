from __future__ import annotations

from typing import Any, Dict, Tuple

from pydantic import ValidationError

from telemed_auth.api.schemas import Envelope, ErrorBody
from telemed_auth.logging import get_logger
from telemed_auth.service.errors import AuthError, AuthErrorKind, ServiceError
from telemed_auth.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Every failure kind maps to exactly one HTTP status and stable code.
AUTH_ERROR_STATUS: Dict[AuthErrorKind, Tuple[int, str]] = {
    AuthErrorKind.INVALID_CREDENTIALS: (401, AuthErrorKind.INVALID_CREDENTIALS.value),
    AuthErrorKind.ACCOUNT_LOCKED: (423, AuthErrorKind.ACCOUNT_LOCKED.value),
    AuthErrorKind.ACCOUNT_INACTIVE: (403, AuthErrorKind.ACCOUNT_INACTIVE.value),
    AuthErrorKind.INVALID_TOKEN: (401, AuthErrorKind.INVALID_TOKEN.value),
    AuthErrorKind.TOKEN_EXPIRED: (401, AuthErrorKind.TOKEN_EXPIRED.value),
    AuthErrorKind.SESSION_INVALID: (401, AuthErrorKind.SESSION_INVALID.value),
    AuthErrorKind.INVALID_RESET_TOKEN: (400, AuthErrorKind.INVALID_RESET_TOKEN.value),
    AuthErrorKind.USER_INACTIVE: (401, AuthErrorKind.USER_INACTIVE.value),
    AuthErrorKind.STORE_UNAVAILABLE: (503, AuthErrorKind.STORE_UNAVAILABLE.value),
}

_unmapped = set(AuthErrorKind) - set(AUTH_ERROR_STATUS)
if _unmapped:
    raise RuntimeError(
        f"auth error kinds without an HTTP mapping: {sorted(k.value for k in _unmapped)}"
    )


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str = "SERVER_ERROR",
) -> Tuple[int, Dict[str, Any]]:
    error_body = ErrorBody(code=code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return status_code, envelope.model_dump()


def ok_response(data: Any, status_code: int = 200) -> Tuple[int, Dict[str, Any]]:
    return status_code, Envelope(status="ok", data=data).model_dump(mode="json")


def error_response_for(exc: Exception) -> Tuple[int, Dict[str, Any]]:
    """Translate an exception raised by the auth core into ``(status, envelope)``.

    Anything unrecognised becomes an opaque 500 so internal messages never
    reach the client.
    """
    if isinstance(exc, AuthError):
        status_code, code = AUTH_ERROR_STATUS[exc.kind]
        log_fn = logger.error if status_code >= 500 else logger.info
        log_fn("auth_error", status_code=status_code, error_code=code, detail=exc.detail)
        return _error_response(status_code, exc.message, exc.detail, code=code)

    if isinstance(exc, ConstraintViolation):
        logger.warning("constraint_violation", message=exc.message, detail=exc.detail)
        return _error_response(409, exc.message, exc.detail, code="CONFLICT")

    if isinstance(exc, ValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.info("request_validation_failed", error_count=len(errors))
        return _error_response(400, "invalid request", errors, code="VALIDATION_ERROR")

    if isinstance(exc, ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn("service_error", status_code=exc.status_code, error_code=exc.error_code)
        code = exc.error_code if exc.status_code < 500 else "SERVER_ERROR"
        if code not in {"VALIDATION_ERROR", "CONFLICT", "SERVER_ERROR"}:
            code = "VALIDATION_ERROR"
        return _error_response(exc.status_code, exc.message, exc.detail, code=code)

    logger.error("unhandled_error", error_type=type(exc).__name__, error=str(exc))
    return _error_response(500, "internal server error", code="SERVER_ERROR")
