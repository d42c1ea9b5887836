"""Signed access/refresh token codec.

Access and refresh tokens are HMAC-signed JWTs with separate keys and
separate audiences, so neither can be replayed as the other. Signature,
issuer and audience are checked by PyJWT; expiry is checked against the
injected clock so the whole auth core shares one notion of ``now``.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt

from telemed_auth.config import Settings
from telemed_auth.logging import get_logger
from telemed_auth.service.clock import Clock, SystemClock
from telemed_auth.service.errors import InvalidTokenError, TokenExpiredError

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

_REQUIRED_CLAIMS = ["exp", "iat", "iss", "aud", "sub", "sid", "typ"]


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    email: str
    role: str
    session_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    user_id: str
    session_id: str
    jti: str
    issued_at: datetime
    expires_at: datetime


def _from_timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _expiry_timestamp(expires_at: datetime) -> int:
    # Rounded up so a token never expires before the session minted with it.
    return math.ceil(expires_at.timestamp())


class TokenCodec:
    def __init__(self, settings: Settings, clock: Optional[Clock] = None) -> None:
        # Signing-key problems are fatal here, never per request.
        settings.validate_secrets()
        self.settings = settings
        self.clock = clock or SystemClock()
        self._access_secret: str = settings.jwt_secret
        self._refresh_secret: str = settings.jwt_refresh_secret
        self._algorithm = settings.jwt_algorithm

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def encode_access(
        self, *, user_id: str, email: str, role: str, session_id: str
    ) -> tuple[str, AccessClaims]:
        now = self.clock.now()
        expires_at = now + self.access_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "user_id": user_id,
            "email": email,
            "role": role,
            "sid": session_id,
            "typ": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": _expiry_timestamp(expires_at),
        }
        token = jwt.encode(payload, self._access_secret, algorithm=self._algorithm)
        claims = AccessClaims(
            user_id=user_id,
            email=email,
            role=role,
            session_id=session_id,
            issued_at=_from_timestamp(payload["iat"]),
            expires_at=_from_timestamp(payload["exp"]),
        )
        return token, claims

    def encode_refresh(self, *, user_id: str, session_id: str) -> tuple[str, RefreshClaims]:
        now = self.clock.now()
        expires_at = now + self.refresh_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_refresh_audience,
            "sub": user_id,
            "user_id": user_id,
            "sid": session_id,
            "typ": REFRESH_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": _expiry_timestamp(expires_at),
        }
        token = jwt.encode(payload, self._refresh_secret, algorithm=self._algorithm)
        claims = RefreshClaims(
            user_id=user_id,
            session_id=session_id,
            jti=payload["jti"],
            issued_at=_from_timestamp(payload["iat"]),
            expires_at=_from_timestamp(payload["exp"]),
        )
        return token, claims

    def decode_access(self, token: str, *, verify_exp: bool = True) -> AccessClaims:
        payload = self._decode(
            token,
            secret=self._access_secret,
            audience=self.settings.jwt_audience,
            token_type=ACCESS_TOKEN_TYPE,
            verify_exp=verify_exp,
        )
        try:
            return AccessClaims(
                user_id=str(payload["sub"]),
                email=str(payload["email"]),
                role=str(payload["role"]),
                session_id=str(payload["sid"]),
                issued_at=_from_timestamp(payload["iat"]),
                expires_at=_from_timestamp(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("access_token_claims_malformed", error_type=type(exc).__name__)
            raise InvalidTokenError() from exc

    def decode_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode(
            token,
            secret=self._refresh_secret,
            audience=self.settings.jwt_refresh_audience,
            token_type=REFRESH_TOKEN_TYPE,
            verify_exp=True,
        )
        try:
            return RefreshClaims(
                user_id=str(payload["sub"]),
                session_id=str(payload["sid"]),
                jti=str(payload.get("jti") or ""),
                issued_at=_from_timestamp(payload["iat"]),
                expires_at=_from_timestamp(payload["exp"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("refresh_token_claims_malformed", error_type=type(exc).__name__)
            raise InvalidTokenError("invalid refresh token") from exc

    def _decode(
        self,
        token: str,
        *,
        secret: str,
        audience: str,
        token_type: str,
        verify_exp: bool,
    ) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise InvalidTokenError()
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self._algorithm],
                audience=audience,
                issuer=self.settings.jwt_issuer,
                options={
                    "require": _REQUIRED_CLAIMS,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
        except jwt.InvalidTokenError as exc:
            logger.info("token_rejected", kind=token_type, reason=type(exc).__name__)
            raise InvalidTokenError() from exc

        if payload.get("typ") != token_type:
            logger.info("token_rejected", kind=token_type, reason="wrong_token_type")
            raise InvalidTokenError()

        if verify_exp:
            try:
                exp_ts = float(payload["exp"])
            except (TypeError, ValueError) as exc:
                raise InvalidTokenError() from exc
            if self.clock.now().timestamp() >= exp_ts:
                raise TokenExpiredError()
        return payload
