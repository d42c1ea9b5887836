from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from telemed_auth.logging import get_logger
from telemed_auth.service.lockout import (
    LockoutPolicy,
    LockoutState,
    register_failure,
    register_success,
)
from telemed_auth.storage.errors import ConstraintViolation, StoreUnavailable
from telemed_auth.storage.models import Session, User, normalize_email


class MemoryStore:
    """In-process user and session store.

    Every public method runs under one re-entrant lock, which gives the
    per-document atomic read-modify-write the auth core relies on. Records
    are handed out as copies so callers never mutate stored state directly.
    When ``state_path`` is set the full state is written to a JSON file
    after each mutation and reloaded on start. A mutation whose write fails
    is rolled back, so memory never holds state the file does not.
    """

    def __init__(self, state_path: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        # session_token -> session id
        self._token_index: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if self.state_path is not None:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info(
                    "memory_store_state_loaded",
                    users=len(self.users),
                    sessions=len(self.sessions),
                )

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # users
    def create_user(
        self,
        email: str,
        credential_hash: str,
        now: datetime,
        *,
        full_name: str = "",
        role: str = "patient",
        is_active: bool = True,
    ) -> User:
        normalized = normalize_email(email)
        with self._mutation():
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(
                normalized,
                credential_hash,
                now,
                full_name=full_name,
                role=role,
                is_active=is_active,
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in results[:limit]]

    def update_user_role(self, user_id: str, role: str, now: datetime) -> Optional[User]:
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            user.updated_at = now
            self._persist_state()
            return replace(user)

    def set_user_active(self, user_id: str, is_active: bool, now: datetime) -> Optional[User]:
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = now
            self._persist_state()
            return replace(user)

    def set_credential_hash(
        self, user_id: str, credential_hash: str, now: datetime
    ) -> Optional[User]:
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                return None
            user.credential_hash = credential_hash
            user.updated_at = now
            self._persist_state()
            return replace(user)

    # lockout
    def record_login_failure(
        self, user_id: str, now: datetime, policy: LockoutPolicy
    ) -> Optional[User]:
        """Atomically count a failed attempt and set the lock when the threshold is hit."""
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                return None
            state = register_failure(
                LockoutState(user.failed_attempts, user.locked_until), now, policy
            )
            user.failed_attempts = state.failed_attempts
            user.locked_until = state.locked_until
            user.updated_at = now
            self._persist_state()
            return replace(user)

    def record_login_success(self, user_id: str, now: datetime) -> Optional[User]:
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                return None
            state = register_success()
            user.failed_attempts = state.failed_attempts
            user.locked_until = state.locked_until
            user.last_login_at = now
            user.updated_at = now
            self._persist_state()
            return replace(user)

    # password reset
    def set_reset_token(
        self, user_id: str, token_hash: str, expires_at: datetime, now: datetime
    ) -> Optional[User]:
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                return None
            user.reset_token_hash = token_hash
            user.reset_token_expires_at = expires_at
            user.updated_at = now
            self._persist_state()
            return replace(user)

    def consume_reset_token(
        self, token_hash: str, now: datetime, new_credential_hash: str
    ) -> Optional[User]:
        """Find-and-clear a pending reset token in one step.

        Matches only unexpired tokens. On a match the credential is replaced,
        the reset fields are cleared and lockout is lifted, so a second
        consumer racing on the same token finds nothing.
        """
        with self._mutation():
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.reset_token_hash is not None
                    and u.reset_token_hash == token_hash
                    and u.reset_token_expires_at is not None
                    and u.reset_token_expires_at > now
                ),
                None,
            )
            if not user:
                return None
            user.credential_hash = new_credential_hash
            user.reset_token_hash = None
            user.reset_token_expires_at = None
            user.failed_attempts = 0
            user.locked_until = None
            user.updated_at = now
            self._persist_state()
            return replace(user)

    # sessions
    def create_session(
        self,
        user_id: str,
        now: datetime,
        ttl: timedelta,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> Session:
        with self._mutation():
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                now=now,
                ttl=ttl,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            if sess.session_token in self._token_index:
                raise ConstraintViolation("session token collision", {"field": "session_token"})
            self.sessions[sess.id] = sess
            self._token_index[sess.session_token] = sess.id
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_token(self, session_token: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._token_index.get(session_token)
            sess = self.sessions.get(session_id) if session_id else None
            return replace(sess) if sess else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            return [replace(s) for s in self.sessions.values() if s.user_id == user_id]

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._mutation():
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.last_activity_at = now
            sess.updated_at = now
            self._persist_state()

    def extend_session(
        self, session_id: str, now: datetime, ttl: timedelta
    ) -> Optional[Session]:
        """Push ``expires_at`` out, but only while the session is still usable."""
        with self._mutation():
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_usable(now):
                return None
            sess.expires_at = now + ttl
            sess.last_activity_at = now
            sess.updated_at = now
            self._persist_state()
            return replace(sess)

    def set_session_refresh_jti(self, session_id: str, jti: str, now: datetime) -> None:
        with self._mutation():
            sess = self.sessions.get(session_id)
            if not sess:
                return
            sess.refresh_jti = jti
            sess.updated_at = now
            self._persist_state()

    def deactivate_session(self, session_id: str, now: datetime) -> bool:
        with self._mutation():
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            sess.updated_at = now
            self._persist_state()
            return True

    def deactivate_session_by_token(self, session_token: str, now: datetime) -> bool:
        with self._data_lock:
            session_id = self._token_index.get(session_token)
            if not session_id:
                return False
            return self.deactivate_session(session_id, now)

    def deactivate_user_sessions(self, user_id: str, now: datetime) -> int:
        with self._mutation():
            revoked = 0
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.is_active:
                    sess.is_active = False
                    sess.updated_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def delete_sessions_where(self, predicate: Callable[[Session], bool]) -> int:
        with self._mutation():
            stale = [sid for sid, sess in self.sessions.items() if predicate(sess)]
            for sid in stale:
                sess = self.sessions.pop(sid)
                self._token_index.pop(sess.session_token, None)
            if stale:
                self._persist_state()
            return len(stale)

    # persistence
    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """Hold the lock for one change and undo it if persisting fails."""
        with self._data_lock:
            snapshot = self._snapshot() if self.state_path is not None else None
            try:
                yield
            except StoreUnavailable:
                if snapshot is not None:
                    self.users, self.sessions, self._token_index = snapshot
                raise

    def _snapshot(self) -> Tuple[Dict[str, User], Dict[str, Session], Dict[str, str]]:
        return (
            {uid: replace(u) for uid, u in self.users.items()},
            {sid: replace(s) for sid, s in self.sessions.items()},
            dict(self._token_index),
        )

    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        tmp_path = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(self.state_path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(self.state_path), error=str(exc))
            raise StoreUnavailable("failed to persist state", operation="persist_state") from exc

    def _load_state(self) -> bool:
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self._token_index = {s.session_token: s.id for s in self.sessions.values()}
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "credential_hash": user.credential_hash,
            "full_name": user.full_name,
            "role": user.role,
            "is_active": user.is_active,
            "failed_attempts": user.failed_attempts,
            "locked_until": self._serialize_datetime(user.locked_until),
            "reset_token_hash": user.reset_token_hash,
            "reset_token_expires_at": self._serialize_datetime(user.reset_token_expires_at),
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            credential_hash=data["credential_hash"],
            full_name=data.get("full_name", ""),
            role=data.get("role", "patient"),
            is_active=data.get("is_active", True),
            failed_attempts=int(data.get("failed_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            reset_token_hash=data.get("reset_token_hash"),
            reset_token_expires_at=self._deserialize_datetime(
                data.get("reset_token_expires_at")
            ),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "session_token": session.session_token,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "updated_at": self._serialize_datetime(session.updated_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "last_activity_at": self._serialize_datetime(session.last_activity_at),
            "is_active": session.is_active,
            "user_agent": session.user_agent,
            "ip_address": session.ip_address,
            "refresh_jti": session.refresh_jti,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            session_token=data["session_token"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at") or data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_activity_at=self._deserialize_datetime(
                data.get("last_activity_at") or data["created_at"]
            ),
            is_active=data.get("is_active", True),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
            refresh_jti=data.get("refresh_jti"),
        )
