from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from telemed_auth.config import Settings
from telemed_auth.logging import get_logger
from telemed_auth.service.clock import Clock, SystemClock
from telemed_auth.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    InvalidCredentialsError,
    InvalidResetTokenError,
    SessionInvalidError,
    StoreUnavailableError,
    UserInactiveError,
)
from telemed_auth.service.lockout import LockoutPolicy, LockoutState, is_locked
from telemed_auth.service.passwords import CredentialVerifier
from telemed_auth.service.tokens import AccessClaims, TokenCodec
from telemed_auth.storage.errors import StoreUnavailable
from telemed_auth.storage.models import Session, User, UserRole

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        credential_hash: str,
        now: datetime,
        *,
        full_name: str = "",
        role: str = "patient",
        is_active: bool = True,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_credential_hash(
        self, user_id: str, credential_hash: str, now: datetime
    ) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool, now: datetime) -> Optional[User]: ...

    def record_login_failure(
        self, user_id: str, now: datetime, policy: LockoutPolicy
    ) -> Optional[User]: ...

    def record_login_success(self, user_id: str, now: datetime) -> Optional[User]: ...

    def set_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime, now: datetime
    ) -> Optional[User]: ...

    def consume_reset_token(
        self, token_hash: str, now: datetime, new_credential_hash: str
    ) -> Optional[User]: ...

    def create_session(
        self,
        user_id: str,
        now: datetime,
        ttl: timedelta,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token(self, session_token: str) -> Optional[Session]: ...

    def touch_session(self, session_id: str, now: datetime) -> None: ...

    def extend_session(
        self, session_id: str, now: datetime, ttl: timedelta
    ) -> Optional[Session]: ...

    def set_session_refresh_jti(self, session_id: str, jti: str, now: datetime) -> None: ...

    def deactivate_session(self, session_id: str, now: datetime) -> bool: ...

    def deactivate_session_by_token(self, session_token: str, now: datetime) -> bool: ...

    def deactivate_user_sessions(self, user_id: str, now: datetime) -> int: ...

    def delete_sessions_where(self, predicate: Callable[[Session], bool]) -> int: ...


@dataclass
class AuthTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    session_id: str
    session_token: str
    token_type: str = "bearer"


@dataclass
class LoginResult:
    user: User
    tokens: AuthTokens


@dataclass
class AuthContext:
    claims: AccessClaims
    user: User


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class AuthService:
    """Login, token/session lifecycle, lockout and password reset.

    Holds no locks of its own: every read-modify-write that must be atomic
    (lockout counter, reset-token consumption, session extension) is a single
    store call. Rejections that need no stored state, such as a bad signature
    or an expired token, are decided before the store is touched.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        verifier: Optional[CredentialVerifier] = None,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.codec = codec or TokenCodec(settings, self.clock)
        self.verifier = verifier or CredentialVerifier(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
        )
        self.lockout_policy = LockoutPolicy(
            max_attempts=settings.max_failed_logins,
            lock_window=timedelta(minutes=settings.lockout_minutes),
        )
        self.logger = logger

    def _now(self) -> datetime:
        return self.clock.now()

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def _call_store(self, operation: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a store call, surfacing infrastructure failures as ``StoreUnavailableError``."""
        try:
            return func(*args, **kwargs)
        except (StoreUnavailable, TimeoutError, ConnectionError) as exc:
            self.logger.error(
                "auth_store_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise StoreUnavailableError(detail={"operation": operation}) from exc

    # login / registration
    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        now = self._now()
        user = self._call_store("get_user_by_email", self.store.get_user_by_email, email)
        if not user:
            self.verifier.verify_dummy(password)
            self.logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError()

        state = LockoutState(user.failed_attempts, user.locked_until)
        if is_locked(state, now):
            self.logger.info("login_rejected_locked", user_id=user.id)
            raise AccountLockedError(
                detail={"locked_until": user.locked_until.isoformat()}
            )

        if not self.verifier.verify(user.credential_hash, password):
            updated = self._call_store(
                "record_login_failure",
                self.store.record_login_failure,
                user.id,
                now,
                self.lockout_policy,
            )
            if updated and is_locked(
                LockoutState(updated.failed_attempts, updated.locked_until), now
            ):
                self.logger.warning(
                    "account_locked",
                    user_id=user.id,
                    failed_attempts=updated.failed_attempts,
                    locked_until=updated.locked_until.isoformat(),
                )
            else:
                self.logger.info(
                    "login_failed",
                    reason="bad_credentials",
                    user_id=user.id,
                    failed_attempts=updated.failed_attempts if updated else None,
                )
            raise InvalidCredentialsError()

        if not user.is_active:
            self.logger.info("login_rejected_inactive", user_id=user.id)
            raise AccountInactiveError()

        user = self._call_store(
            "record_login_success", self.store.record_login_success, user.id, now
        ) or user
        if self.verifier.needs_rehash(user.credential_hash):
            self._call_store(
                "set_credential_hash",
                self.store.set_credential_hash,
                user.id,
                self.verifier.hash(password),
                now,
            )
        tokens = await self.issue_tokens(user, user_agent=user_agent, ip_address=ip_address)
        self.logger.info("login_succeeded", user_id=user.id, session_id=tokens.session_id)
        return LoginResult(user=user, tokens=tokens)

    async def register(
        self,
        email: str,
        password: str,
        *,
        full_name: str = "",
        role: UserRole | str = UserRole.PATIENT,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> LoginResult:
        role_value = UserRole(role).value
        user = self._call_store(
            "create_user",
            self.store.create_user,
            email,
            self.verifier.hash(password),
            self._now(),
            full_name=full_name,
            role=role_value,
        )
        tokens = await self.issue_tokens(user, user_agent=user_agent, ip_address=ip_address)
        self.logger.info("user_registered", user_id=user.id, role=role_value)
        return LoginResult(user=user, tokens=tokens)

    # tokens
    async def issue_tokens(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> AuthTokens:
        session = self._call_store(
            "create_session",
            self.store.create_session,
            user.id,
            self._now(),
            self.access_ttl,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        return self._mint_tokens(user, session)

    def _mint_tokens(self, user: User, session: Session) -> AuthTokens:
        access_token, _ = self.codec.encode_access(
            user_id=user.id, email=user.email, role=user.role, session_id=session.id
        )
        refresh_token, refresh_claims = self.codec.encode_refresh(
            user_id=user.id, session_id=session.id
        )
        if self.settings.rotate_refresh_tokens:
            self._call_store(
                "set_session_refresh_jti",
                self.store.set_session_refresh_jti,
                session.id,
                refresh_claims.jti,
                self._now(),
            )
        return AuthTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.settings.access_token_ttl_seconds,
            session_id=session.id,
            session_token=session.session_token,
        )

    async def verify_access_token(self, token: str) -> AccessClaims:
        claims = self.codec.decode_access(token)
        now = self._now()
        session = self._call_store("get_session", self.store.get_session, claims.session_id)
        if not session or session.user_id != claims.user_id or not session.is_usable(now):
            raise SessionInvalidError()
        try:
            self.store.touch_session(session.id, now)
        except Exception as exc:
            self.logger.warning(
                "session_activity_update_failed",
                session_id=session.id,
                error_type=type(exc).__name__,
            )
        return claims

    async def authenticate(self, token: str) -> AuthContext:
        """Verify an access token and resolve its user for a protected request.

        A user deleted or deactivated after the token was issued is rejected
        with ``UserInactive`` even while the session is still live.
        """
        claims = await self.verify_access_token(token)
        user = self._call_store("get_user", self.store.get_user, claims.user_id)
        if not user or not user.is_active:
            self.logger.info("authentication_rejected_inactive_user", user_id=claims.user_id)
            raise UserInactiveError()
        return AuthContext(claims=claims, user=user)

    async def refresh_access_token(self, refresh_token: str) -> AuthTokens:
        claims = self.codec.decode_refresh(refresh_token)
        now = self._now()
        session = self._call_store("get_session", self.store.get_session, claims.session_id)
        if not session or session.user_id != claims.user_id or not session.is_usable(now):
            raise SessionInvalidError()

        if self.settings.rotate_refresh_tokens and session.refresh_jti != claims.jti:
            # A superseded refresh token came back: treat the session as compromised.
            self._call_store(
                "deactivate_session", self.store.deactivate_session, session.id, now
            )
            self.logger.warning(
                "refresh_token_reuse_detected",
                session_id=session.id,
                user_id=session.user_id,
            )
            raise SessionInvalidError()

        user = self._call_store("get_user", self.store.get_user, claims.user_id)
        if not user or not user.is_active:
            raise UserInactiveError()

        extended = self._call_store(
            "extend_session", self.store.extend_session, session.id, now, self.access_ttl
        )
        if not extended:
            raise SessionInvalidError()
        tokens = self._mint_tokens(user, extended)
        self.logger.info("tokens_refreshed", user_id=user.id, session_id=extended.id)
        return tokens

    # sessions
    async def verify_session_token(self, session_token: str) -> Session:
        session = self._call_store(
            "get_session_by_token", self.store.get_session_by_token, session_token
        )
        if not session or not session.is_usable(self._now()):
            raise SessionInvalidError()
        return session

    async def revoke_session(self, session_token: str) -> None:
        """Soft-delete the session; unknown or already revoked tokens are a no-op."""
        revoked = self._call_store(
            "deactivate_session_by_token",
            self.store.deactivate_session_by_token,
            session_token,
            self._now(),
        )
        if revoked:
            self.logger.info("session_revoked")

    async def revoke_session_by_id(self, session_id: str) -> bool:
        revoked = self._call_store(
            "deactivate_session", self.store.deactivate_session, session_id, self._now()
        )
        if revoked:
            self.logger.info("session_revoked", session_id=session_id)
        return bool(revoked)

    async def logout(self, access_token: str) -> bool:
        """Revoke the session behind an access token; expired tokens may still log out."""
        claims = self.codec.decode_access(access_token, verify_exp=False)
        return await self.revoke_session_by_id(claims.session_id)

    async def revoke_all_sessions(self, user_id: str) -> int:
        revoked = self._call_store(
            "deactivate_user_sessions",
            self.store.deactivate_user_sessions,
            user_id,
            self._now(),
        )
        self.logger.info("user_sessions_revoked", user_id=user_id, revoked=revoked)
        return revoked

    async def deactivate_user(self, user_id: str) -> User:
        """Disable an account and revoke every session it holds."""
        user = self._call_store(
            "set_user_active", self.store.set_user_active, user_id, False, self._now()
        )
        if not user:
            raise UserInactiveError()
        revoked = await self.revoke_all_sessions(user_id)
        self.logger.info("user_deactivated", user_id=user_id, sessions_revoked=revoked)
        return user

    async def sweep_expired_sessions(self) -> int:
        """Hard-delete sessions that can no longer be used.

        Removes sessions past ``expires_at`` and revoked sessions untouched
        for longer than the retention window. Both sets already fail the
        usability check, so live verification never sees a row vanish.
        """
        now = self._now()
        cutoff = now - timedelta(days=self.settings.session_retention_days)

        def _stale(sess: Session) -> bool:
            return sess.expires_at < now or (not sess.is_active and sess.updated_at < cutoff)

        deleted = self._call_store(
            "delete_sessions_where", self.store.delete_sessions_where, _stale
        )
        if deleted:
            self.logger.info("session_sweep_completed", deleted=deleted)
        return deleted

    # password reset
    async def request_password_reset(self, user: User) -> str:
        """Create a reset token for a resolved user, replacing any pending one.

        Only the SHA-256 of the token is stored; the plaintext is returned once.
        """
        token = secrets.token_hex(32)
        now = self._now()
        expires_at = now + timedelta(minutes=self.settings.reset_token_ttl_minutes)
        updated = self._call_store(
            "set_reset_token",
            self.store.set_reset_token,
            user.id,
            hash_reset_token(token),
            expires_at,
            now,
        )
        if not updated:
            raise UserInactiveError()
        self.logger.info("password_reset_requested", user_id=user.id)
        return token

    async def request_password_reset_for_email(self, email: str) -> Optional[str]:
        """Resolve ``email`` and issue a reset token, or return None.

        Callers must answer identically in both cases so the endpoint is not
        an account-existence oracle.
        """
        user = self._call_store("get_user_by_email", self.store.get_user_by_email, email)
        if not user:
            return None
        return await self.request_password_reset(user)

    async def consume_password_reset(self, token: str, new_password: str) -> None:
        if not token:
            raise InvalidResetTokenError()
        new_hash = self.verifier.hash(new_password)
        user = self._call_store(
            "consume_reset_token",
            self.store.consume_reset_token,
            hash_reset_token(token),
            self._now(),
            new_hash,
        )
        if not user:
            self.logger.info("password_reset_rejected")
            raise InvalidResetTokenError()
        revoked = await self.revoke_all_sessions(user.id)
        self.logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        user = self._call_store("get_user", self.store.get_user, user_id)
        if not user or not user.is_active:
            raise UserInactiveError()
        if not self.verifier.verify(user.credential_hash, current_password):
            raise InvalidCredentialsError("current password is incorrect")
        self._call_store(
            "set_credential_hash",
            self.store.set_credential_hash,
            user.id,
            self.verifier.hash(new_password),
            self._now(),
        )
        await self.revoke_all_sessions(user.id)
        self.logger.info("password_changed", user_id=user.id)

    # authorization
    @staticmethod
    def role_allows(role: str, *allowed: UserRole | str) -> bool:
        allowed_values = {UserRole(item).value for item in allowed}
        return role in allowed_values
