"""Unit tests for the auth service.

Covers login and lockout, access-token verification against the session,
refresh, revocation, password reset and change, registration and the
session sweep. Time is driven by a FrozenClock throughout.
"""

from datetime import timedelta

import pytest

from conftest import TEST_PASSWORD, make_settings
from telemed_auth.api.schemas import LogoutRequest
from telemed_auth.service.auth import AuthService, hash_reset_token
from telemed_auth.service.errors import (
    AccountInactiveError,
    AccountLockedError,
    InvalidCredentialsError,
    InvalidResetTokenError,
    InvalidTokenError,
    SessionInvalidError,
    StoreUnavailableError,
    TokenExpiredError,
    UserInactiveError,
)
from telemed_auth.storage.errors import ConstraintViolation, StoreUnavailable
from telemed_auth.storage.memory import MemoryStore
from telemed_auth.storage.models import UserRole


async def _fail_logins(auth_service, email, count):
    for _ in range(count):
        with pytest.raises((InvalidCredentialsError, AccountLockedError)):
            await auth_service.login(email, "wrong-password")


class TestLogin:
    async def test_login_returns_tokens_for_full_day(self, auth_service, memory_store, clock, verifier):
        memory_store.create_user("a@b.com", verifier.hash("secret"), clock.now())

        result = await auth_service.login("a@b.com", "secret")

        assert result.tokens.expires_in == 86400
        assert result.tokens.token_type == "bearer"
        claims = await auth_service.verify_access_token(result.tokens.access_token)
        assert claims.user_id == result.user.id
        assert claims.email == "a@b.com"
        assert claims.session_id == result.tokens.session_id

        session = memory_store.get_session(result.tokens.session_id)
        assert session.expires_at == clock.now() + timedelta(hours=24)
        assert session.session_token == result.tokens.session_token

        await auth_service.revoke_session(result.tokens.session_token)
        with pytest.raises(SessionInvalidError):
            await auth_service.verify_access_token(result.tokens.access_token)

    async def test_login_email_is_case_insensitive(self, auth_service, test_user):
        result = await auth_service.login("  Patient@Example.COM ", TEST_PASSWORD)
        assert result.user.id == test_user.id

    async def test_login_records_metadata_and_last_login(self, auth_service, test_user, memory_store, clock):
        result = await auth_service.login(
            test_user.email, TEST_PASSWORD, user_agent="pytest", ip_address="10.0.0.1"
        )
        session = memory_store.get_session(result.tokens.session_id)
        assert session.user_agent == "pytest"
        assert session.ip_address == "10.0.0.1"
        assert memory_store.get_user(test_user.id).last_login_at == clock.now()

    async def test_unknown_email_is_invalid_credentials(self, auth_service):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("nobody@example.com", TEST_PASSWORD)

    async def test_wrong_password_counts_failure(self, auth_service, test_user, memory_store):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(test_user.email, "wrong-password")
        assert memory_store.get_user(test_user.id).failed_attempts == 1

    async def test_inactive_account_rejected_after_password_check(
        self, auth_service, test_user, memory_store, clock
    ):
        memory_store.set_user_active(test_user.id, False, clock.now())

        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(test_user.email, "wrong-password")
        with pytest.raises(AccountInactiveError):
            await auth_service.login(test_user.email, TEST_PASSWORD)

    async def test_success_resets_failed_attempts(self, auth_service, test_user, memory_store):
        await _fail_logins(auth_service, test_user.email, 3)
        await auth_service.login(test_user.email, TEST_PASSWORD)
        assert memory_store.get_user(test_user.id).failed_attempts == 0

    async def test_store_outage_surfaces_as_store_unavailable(self, auth_service, memory_store, monkeypatch):
        def _down(*args, **kwargs):
            raise StoreUnavailable(operation="get_user_by_email")

        monkeypatch.setattr(memory_store, "get_user_by_email", _down)
        with pytest.raises(StoreUnavailableError):
            await auth_service.login("a@b.com", "secret")


class TestLockout:
    async def test_sixth_attempt_locked_even_with_correct_password(self, auth_service, test_user):
        await _fail_logins(auth_service, test_user.email, 5)

        with pytest.raises(AccountLockedError) as exc_info:
            await auth_service.login(test_user.email, TEST_PASSWORD)
        assert "locked_until" in exc_info.value.detail

    async def test_fifth_failure_reports_invalid_credentials(self, auth_service, test_user, memory_store, clock):
        await _fail_logins(auth_service, test_user.email, 4)
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(test_user.email, "wrong-password")

        user = memory_store.get_user(test_user.id)
        assert user.failed_attempts == 5
        assert user.locked_until == clock.now() + timedelta(hours=2)

    async def test_lock_timeline(self, auth_service, test_user, memory_store, clock):
        await _fail_logins(auth_service, test_user.email, 5)

        clock.advance(seconds=1)
        with pytest.raises(AccountLockedError):
            await auth_service.login(test_user.email, TEST_PASSWORD)

        clock.advance(hours=2)
        result = await auth_service.login(test_user.email, TEST_PASSWORD)

        assert result.user.failed_attempts == 0
        assert result.user.locked_until is None
        user = memory_store.get_user(test_user.id)
        assert user.failed_attempts == 0
        assert user.locked_until is None

    async def test_locked_attempts_do_not_extend_lock(self, auth_service, test_user, memory_store, clock):
        await _fail_logins(auth_service, test_user.email, 5)
        locked_until = memory_store.get_user(test_user.id).locked_until

        clock.advance(minutes=30)
        with pytest.raises(AccountLockedError):
            await auth_service.login(test_user.email, "wrong-password")
        assert memory_store.get_user(test_user.id).locked_until == locked_until

    async def test_failure_after_lock_elapsed_starts_new_count(self, auth_service, test_user, memory_store, clock):
        await _fail_logins(auth_service, test_user.email, 5)
        clock.advance(hours=2, seconds=1)

        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(test_user.email, "wrong-password")
        user = memory_store.get_user(test_user.id)
        assert user.failed_attempts == 1
        assert user.locked_until is None


class TestVerifyAccessToken:
    async def test_verify_touches_session_activity(self, auth_service, test_user, memory_store, clock):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        clock.advance(minutes=5)

        await auth_service.verify_access_token(result.tokens.access_token)
        session = memory_store.get_session(result.tokens.session_id)
        assert session.last_activity_at == clock.now()

    async def test_activity_update_failure_does_not_fail_verification(
        self, auth_service, test_user, memory_store, monkeypatch
    ):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)

        def _down(*args, **kwargs):
            raise StoreUnavailable(operation="touch_session")

        monkeypatch.setattr(memory_store, "touch_session", _down)
        claims = await auth_service.verify_access_token(result.tokens.access_token)
        assert claims.user_id == test_user.id

    async def test_expired_token_reports_token_expired(self, auth_service, test_user, clock):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        clock.advance(hours=24)
        with pytest.raises(TokenExpiredError):
            await auth_service.verify_access_token(result.tokens.access_token)

    async def test_garbage_token_rejected(self, auth_service):
        with pytest.raises(InvalidTokenError):
            await auth_service.verify_access_token("not-a-token")

    async def test_deleted_session_invalidates_token(self, auth_service, test_user, memory_store):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        memory_store.delete_sessions_where(lambda s: True)
        with pytest.raises(SessionInvalidError):
            await auth_service.verify_access_token(result.tokens.access_token)

    async def test_verify_session_token(self, auth_service, test_user):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        session = await auth_service.verify_session_token(result.tokens.session_token)
        assert session.id == result.tokens.session_id

        await auth_service.revoke_session(result.tokens.session_token)
        with pytest.raises(SessionInvalidError):
            await auth_service.verify_session_token(result.tokens.session_token)


class TestAuthenticate:
    async def test_authenticate_resolves_user(self, auth_service, test_user):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        context = await auth_service.authenticate(result.tokens.access_token)
        assert context.user.id == test_user.id
        assert context.claims.session_id == result.tokens.session_id

    async def test_deactivated_user_fails_authentication(self, auth_service, test_user, memory_store, clock):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        memory_store.set_user_active(test_user.id, False, clock.now())
        with pytest.raises(UserInactiveError):
            await auth_service.authenticate(result.tokens.access_token)

    async def test_deleted_user_fails_authentication(self, auth_service, test_user, memory_store):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        del memory_store.users[test_user.id]
        with pytest.raises(UserInactiveError):
            await auth_service.authenticate(result.tokens.access_token)

    async def test_deactivate_user_revokes_sessions(self, auth_service, test_user, memory_store):
        first = await auth_service.login(test_user.email, TEST_PASSWORD)
        second = await auth_service.login(test_user.email, TEST_PASSWORD)

        user = await auth_service.deactivate_user(test_user.id)
        assert not user.is_active
        for tokens in (first.tokens, second.tokens):
            with pytest.raises(SessionInvalidError):
                await auth_service.verify_access_token(tokens.access_token)
        with pytest.raises(AccountInactiveError):
            await auth_service.login(test_user.email, TEST_PASSWORD)

    async def test_deactivate_unknown_user(self, auth_service):
        with pytest.raises(UserInactiveError):
            await auth_service.deactivate_user("missing-user")


class TestRefresh:
    async def test_refresh_extends_same_session(self, auth_service, test_user, memory_store, clock):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        clock.advance(hours=12)

        refreshed = await auth_service.refresh_access_token(result.tokens.refresh_token)

        assert refreshed.session_id == result.tokens.session_id
        assert refreshed.session_token == result.tokens.session_token
        assert refreshed.expires_in == 86400
        session = memory_store.get_session(result.tokens.session_id)
        assert session.expires_at == clock.now() + timedelta(hours=24)
        claims = await auth_service.verify_access_token(refreshed.access_token)
        assert claims.session_id == result.tokens.session_id

    async def test_refresh_without_rotation_allows_reuse(self, auth_service, test_user):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        await auth_service.refresh_access_token(result.tokens.refresh_token)
        again = await auth_service.refresh_access_token(result.tokens.refresh_token)
        assert again.session_id == result.tokens.session_id

    async def test_refresh_on_expired_session_fails(self, auth_service, test_user, clock):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        clock.advance(hours=24, seconds=1)
        with pytest.raises(SessionInvalidError):
            await auth_service.refresh_access_token(result.tokens.refresh_token)

    async def test_refresh_on_revoked_session_fails(self, auth_service, test_user):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        await auth_service.revoke_session(result.tokens.session_token)
        with pytest.raises(SessionInvalidError):
            await auth_service.refresh_access_token(result.tokens.refresh_token)

    async def test_refresh_for_deactivated_user_fails(self, auth_service, test_user, memory_store, clock):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        memory_store.set_user_active(test_user.id, False, clock.now())
        with pytest.raises(UserInactiveError):
            await auth_service.refresh_access_token(result.tokens.refresh_token)

    async def test_access_token_cannot_refresh(self, auth_service, test_user):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh_access_token(result.tokens.access_token)

    async def test_refresh_token_cannot_authenticate(self, auth_service, test_user):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        with pytest.raises(InvalidTokenError):
            await auth_service.verify_access_token(result.tokens.refresh_token)

    async def test_rotation_rejects_superseded_token_and_revokes_session(
        self, memory_store, clock, verifier, test_user
    ):
        settings = make_settings(rotate_refresh_tokens=True)
        auth = AuthService(memory_store, settings, clock=clock, verifier=verifier)
        result = await auth.login(test_user.email, TEST_PASSWORD)

        rotated = await auth.refresh_access_token(result.tokens.refresh_token)
        assert rotated.refresh_token != result.tokens.refresh_token

        with pytest.raises(SessionInvalidError):
            await auth.refresh_access_token(result.tokens.refresh_token)
        assert not memory_store.get_session(result.tokens.session_id).is_active
        with pytest.raises(SessionInvalidError):
            await auth.refresh_access_token(rotated.refresh_token)


class TestRevocation:
    async def test_revoke_session_is_idempotent(self, auth_service, test_user, memory_store):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        await auth_service.revoke_session(result.tokens.session_token)
        await auth_service.revoke_session(result.tokens.session_token)
        await auth_service.revoke_session("unknown-session-token")

        session = memory_store.get_session(result.tokens.session_id)
        assert session is not None
        assert not session.is_active

    async def test_revoke_all_sessions(self, auth_service, test_user):
        first = await auth_service.login(test_user.email, TEST_PASSWORD)
        second = await auth_service.login(test_user.email, TEST_PASSWORD)

        assert await auth_service.revoke_all_sessions(test_user.id) == 2
        assert await auth_service.revoke_all_sessions(test_user.id) == 0
        for tokens in (first.tokens, second.tokens):
            with pytest.raises(SessionInvalidError):
                await auth_service.verify_access_token(tokens.access_token)

    async def test_logout_accepts_expired_access_token(self, auth_service, test_user, memory_store, clock):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        clock.advance(hours=25)
        assert await auth_service.logout(result.tokens.access_token) is True
        assert not memory_store.get_session(result.tokens.session_id).is_active

    async def test_logout_request_revokes_session(self, auth_service, test_user):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        request = LogoutRequest(session_token=result.tokens.session_token)
        await auth_service.revoke_session(request.session_token)
        with pytest.raises(SessionInvalidError):
            await auth_service.verify_access_token(result.tokens.access_token)

    async def test_revoke_session_by_id(self, auth_service, test_user):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        assert await auth_service.revoke_session_by_id(result.tokens.session_id) is True
        assert await auth_service.revoke_session_by_id(result.tokens.session_id) is False


class TestPasswordReset:
    async def test_reset_token_stored_hashed(self, auth_service, test_user, memory_store, clock):
        token = await auth_service.request_password_reset(test_user)
        user = memory_store.get_user(test_user.id)

        assert user.reset_token_hash == hash_reset_token(token)
        assert user.reset_token_hash != token
        assert user.reset_token_expires_at == clock.now() + timedelta(minutes=10)

    async def test_reset_changes_password_and_is_single_use(self, auth_service, test_user):
        token = await auth_service.request_password_reset(test_user)
        await auth_service.consume_password_reset(token, "Brand-New-Password-1")

        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(test_user.email, TEST_PASSWORD)
        await auth_service.login(test_user.email, "Brand-New-Password-1")

        with pytest.raises(InvalidResetTokenError):
            await auth_service.consume_password_reset(token, "Another-Password-2")

    async def test_reset_revokes_all_sessions(self, auth_service, test_user):
        first = await auth_service.login(test_user.email, TEST_PASSWORD)
        second = await auth_service.login(test_user.email, TEST_PASSWORD)

        token = await auth_service.request_password_reset(test_user)
        await auth_service.consume_password_reset(token, "Brand-New-Password-1")

        for tokens in (first.tokens, second.tokens):
            with pytest.raises(SessionInvalidError):
                await auth_service.verify_access_token(tokens.access_token)

    async def test_reset_clears_lockout(self, auth_service, test_user, memory_store):
        await _fail_logins(auth_service, test_user.email, 5)
        token = await auth_service.request_password_reset(test_user)
        await auth_service.consume_password_reset(token, "Brand-New-Password-1")

        user = memory_store.get_user(test_user.id)
        assert user.failed_attempts == 0
        assert user.locked_until is None
        assert user.reset_token_hash is None
        await auth_service.login(test_user.email, "Brand-New-Password-1")

    async def test_expired_reset_token_rejected(self, auth_service, test_user, clock):
        token = await auth_service.request_password_reset(test_user)
        clock.advance(minutes=10)
        with pytest.raises(InvalidResetTokenError):
            await auth_service.consume_password_reset(token, "Brand-New-Password-1")

    async def test_new_request_replaces_pending_token(self, auth_service, test_user):
        first = await auth_service.request_password_reset(test_user)
        second = await auth_service.request_password_reset(test_user)

        with pytest.raises(InvalidResetTokenError):
            await auth_service.consume_password_reset(first, "Brand-New-Password-1")
        await auth_service.consume_password_reset(second, "Brand-New-Password-1")

    async def test_unknown_or_empty_token_rejected(self, auth_service):
        for token in ("", "0" * 64):
            with pytest.raises(InvalidResetTokenError):
                await auth_service.consume_password_reset(token, "Brand-New-Password-1")

    async def test_request_for_unknown_email_returns_none(self, auth_service, test_user):
        assert await auth_service.request_password_reset_for_email("ghost@example.com") is None
        token = await auth_service.request_password_reset_for_email(test_user.email)
        assert token is not None
        assert len(token) == 64

    async def test_reset_that_fails_to_persist_can_be_retried(
        self, settings, clock, verifier, codec, tmp_path
    ):
        state_path = tmp_path / "auth.json"
        store = MemoryStore(state_path=str(state_path))
        service = AuthService(store, settings, clock=clock, verifier=verifier, codec=codec)
        user = store.create_user("patient@example.com", verifier.hash(TEST_PASSWORD), clock.now())
        before = await service.login(user.email, TEST_PASSWORD)
        token = await service.request_password_reset(user)

        blocker = tmp_path / "not-a-dir"
        blocker.write_text("")
        store.state_path = blocker / "auth.json"
        with pytest.raises(StoreUnavailableError):
            await service.consume_password_reset(token, "Brand-New-Password-1")
        assert store.get_user(user.id).reset_token_hash == hash_reset_token(token)
        assert verifier.verify(store.get_user(user.id).credential_hash, TEST_PASSWORD)

        store.state_path = state_path
        await service.consume_password_reset(token, "Brand-New-Password-1")
        with pytest.raises(SessionInvalidError):
            await service.verify_access_token(before.tokens.access_token)
        await service.login(user.email, "Brand-New-Password-1")


class TestChangePassword:
    async def test_change_password_requires_current(self, auth_service, test_user):
        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(test_user.id, "wrong-password", "Brand-New-Password-1")

    async def test_change_password_revokes_sessions(self, auth_service, test_user):
        result = await auth_service.login(test_user.email, TEST_PASSWORD)
        await auth_service.change_password(test_user.id, TEST_PASSWORD, "Brand-New-Password-1")

        with pytest.raises(SessionInvalidError):
            await auth_service.verify_access_token(result.tokens.access_token)
        await auth_service.login(test_user.email, "Brand-New-Password-1")


class TestRegister:
    async def test_register_creates_user_and_session(self, auth_service, memory_store):
        result = await auth_service.register(
            "New.Doctor@Example.com", "Doctor-Password-1", full_name="Dr. New", role="doctor"
        )

        assert result.user.email == "new.doctor@example.com"
        assert result.user.role == UserRole.DOCTOR.value
        assert memory_store.get_user(result.user.id).credential_hash != "Doctor-Password-1"
        claims = await auth_service.verify_access_token(result.tokens.access_token)
        assert claims.role == "doctor"

    async def test_register_duplicate_email_conflicts(self, auth_service, test_user):
        with pytest.raises(ConstraintViolation):
            await auth_service.register(test_user.email.upper(), "Another-Password-1")


class TestSweep:
    async def test_sweep_removes_only_dead_sessions(self, auth_service, test_user, memory_store, clock):
        expired = await auth_service.login(test_user.email, TEST_PASSWORD)
        revoked_old = await auth_service.login(test_user.email, TEST_PASSWORD)
        await auth_service.revoke_session(revoked_old.tokens.session_token)

        clock.advance(hours=20)
        live = await auth_service.login(test_user.email, TEST_PASSWORD)
        revoked_recent = await auth_service.login(test_user.email, TEST_PASSWORD)
        await auth_service.revoke_session(revoked_recent.tokens.session_token)

        clock.advance(hours=5)
        # both t0 sessions are past expires_at; the revoked one is swept regardless of retention
        assert await auth_service.sweep_expired_sessions() == 2
        assert memory_store.get_session(expired.tokens.session_id) is None
        assert memory_store.get_session(revoked_old.tokens.session_id) is None
        assert memory_store.get_session(live.tokens.session_id) is not None
        assert memory_store.get_session(revoked_recent.tokens.session_id) is not None

    async def test_sweep_keeps_recently_revoked_unexpired_sessions(
        self, memory_store, clock, verifier, test_user
    ):
        settings = make_settings(access_token_ttl_minutes=60 * 24 * 30)
        auth = AuthService(memory_store, settings, clock=clock, verifier=verifier)
        result = await auth.login(test_user.email, TEST_PASSWORD)
        await auth.revoke_session(result.tokens.session_token)

        clock.advance(days=7)
        assert await auth.sweep_expired_sessions() == 0

        clock.advance(seconds=1)
        assert await auth.sweep_expired_sessions() == 1
        assert memory_store.get_session(result.tokens.session_id) is None

    async def test_sweep_with_nothing_to_do(self, auth_service, test_user):
        await auth_service.login(test_user.email, TEST_PASSWORD)
        assert await auth_service.sweep_expired_sessions() == 0


def test_role_allows():
    assert AuthService.role_allows("doctor", "doctor", UserRole.NURSE)
    assert not AuthService.role_allows("patient", "doctor", "nurse")
    assert not AuthService.role_allows("admin", "doctor")
