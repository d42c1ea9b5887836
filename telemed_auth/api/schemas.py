from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from telemed_auth.service.auth import AuthTokens, LoginResult
from telemed_auth.service.errors import AuthErrorKind
from telemed_auth.service.tokens import AccessClaims
from telemed_auth.storage.models import UserRole, normalize_email

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_VALID_ERROR_CODES = frozenset(
    {kind.value for kind in AuthErrorKind} | {"VALIDATION_ERROR", "CONFLICT", "SERVER_ERROR"}
)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _email_format_problem(local: str, domain: str) -> Optional[str]:
    if len(local) > 64:
        return "email local part too long"
    if not _EMAIL_LOCAL_PART.match(local):
        return "invalid email address format"
    labels = domain.split(".")
    if len(labels) < 2 or any(
        len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label) for label in labels
    ):
        return "invalid email address format"
    return None


def _validate_email(value: str) -> str:
    """Return the address in the same form the store keys accounts by."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    # NFKC maps fullwidth letters to ASCII capitals, so lowercasing comes after it.
    email = normalize_email(_normalize_unicode(value))
    if not 3 <= len(email) <= 254:
        raise ValueError("email address must be 3 to 254 characters")
    local, sep, domain = email.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    problem = _email_format_problem(local, domain)
    if problem:
        raise ValueError(problem)
    return email


def _validate_password_strength(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


class LoginRequest(BaseModel):
    # Strength rules apply when a password is set, not when it is presented.
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(BaseModel):
    email: str
    password: str
    full_name: str = Field(default="", max_length=200)
    role: UserRole = UserRole.PATIENT

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("role")
    @classmethod
    def _reject_admin_signup(cls, value: UserRole) -> UserRole:
        if value == UserRole.ADMIN:
            raise ValueError("admin accounts cannot be self-registered")
        return value


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)


class LogoutRequest(BaseModel):
    session_token: str = Field(..., min_length=1, max_length=256)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    session_id: str
    session_token: str

    @classmethod
    def from_tokens(cls, tokens: AuthTokens) -> "TokenResponse":
        return cls(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_in=tokens.expires_in,
            session_id=tokens.session_id,
            session_token=tokens.session_token,
        )


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: str = ""
    role: str
    is_active: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None


class LoginResponse(TokenResponse):
    user: UserResponse

    @classmethod
    def from_result(cls, result: LoginResult) -> "LoginResponse":
        return cls(
            user=UserResponse(**result.user.to_public_dict()),
            **TokenResponse.from_tokens(result.tokens).model_dump(),
        )


class ClaimsResponse(BaseModel):
    user_id: str
    email: str
    role: str
    session_id: str
    issued_at: datetime
    expires_at: datetime

    @classmethod
    def from_claims(cls, claims: AccessClaims) -> "ClaimsResponse":
        return cls(
            user_id=claims.user_id,
            email=claims.email,
            role=claims.role,
            session_id=claims.session_id,
            issued_at=claims.issued_at,
            expires_at=claims.expires_at,
        )
