from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class UserRole(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"
    NURSE = "nurse"


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class User:
    id: str
    email: str
    credential_hash: str
    created_at: datetime
    updated_at: datetime
    full_name: str = ""
    role: str = UserRole.PATIENT.value
    is_active: bool = True
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        email: str,
        credential_hash: str,
        now: datetime,
        *,
        full_name: str = "",
        role: str = UserRole.PATIENT.value,
        is_active: bool = True,
    ) -> "User":
        return cls(
            id=str(uuid.uuid4()),
            email=normalize_email(email),
            credential_hash=credential_hash,
            created_at=now,
            updated_at=now,
            full_name=full_name,
            role=UserRole(role).value,
            is_active=is_active,
        )

    def to_public_dict(self) -> dict:
        """Outward representation; credential, lockout and reset fields are omitted."""
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }


@dataclass
class Session:
    id: str
    session_token: str
    user_id: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    is_active: bool = True
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    refresh_jti: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        now: datetime,
        ttl: timedelta,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            session_token=secrets.token_hex(32),
            user_id=user_id,
            created_at=now,
            updated_at=now,
            expires_at=now + ttl,
            last_activity_at=now,
            user_agent=user_agent,
            ip_address=ip_address,
        )

    def is_usable(self, now: datetime) -> bool:
        return self.is_active and now < self.expires_at
