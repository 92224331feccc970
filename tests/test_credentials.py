from datetime import timedelta

import pytest

from authkernel.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    SessionNotFoundError,
    ValidationError,
)
from authkernel.storage.models import AuditAction, RevokeReason, SessionStatus

PASSWORD = "correct horse battery"
NEW_PASSWORD = "tr0ub4dor and three"


async def _login(services, email="alice@example.com", password=PASSWORD):
    return await services.sessions.login(email, password)


class TestSignup:
    async def test_signup_opens_first_session(self, services):
        credential, result = await services.credentials.signup(
            " Alice@Example.com", PASSWORD, name="Alice"
        )
        assert credential.email == "alice@example.com"
        assert credential.password_hash != PASSWORD
        assert result.session.user_id == credential.id
        assert services.store.sessions[result.session.id].status == SessionStatus.ACTIVE
        assert services.store.audit_entries[0].action == AuditAction.SIGNUP

    async def test_duplicate_email_conflicts(self, services):
        await services.credentials.signup("alice@example.com", PASSWORD)
        with pytest.raises(ConflictError):
            await services.credentials.signup("ALICE@example.com", PASSWORD)

    async def test_weak_password_rejected(self, services):
        with pytest.raises(ValidationError) as excinfo:
            await services.credentials.signup("alice@example.com", "short")
        assert excinfo.value.detail == {"field": "password"}
        assert services.store.users == {}

    async def test_invalid_email_rejected(self, services):
        with pytest.raises(ValidationError):
            await services.credentials.signup("not-an-email", PASSWORD)

    async def test_signup_without_session(self, services):
        credential, result = await services.credentials.signup(
            "alice@example.com", PASSWORD, start_session=False
        )
        assert result is None
        assert services.store.sessions == {}
        assert await services.credentials.authenticate("alice@example.com", PASSWORD) == credential


class TestPasswordChange:
    async def test_change_revokes_other_sessions_only(self, services):
        credential, first = await services.credentials.signup("alice@example.com", PASSWORD)
        second = await _login(services)

        revoked = await services.credentials.change_password(
            credential.id,
            PASSWORD,
            NEW_PASSWORD,
            current_session_id=first.session.id,
        )

        assert revoked == 1
        assert services.store.sessions[first.session.id].status == SessionStatus.ACTIVE
        other = services.store.sessions[second.session.id]
        assert other.status == SessionStatus.REVOKED
        assert other.revoke_reason == RevokeReason.PASSWORD_CHANGE
        with pytest.raises(InvalidCredentialsError):
            await _login(services)
        assert (await _login(services, password=NEW_PASSWORD)).session.user_id == credential.id

    async def test_wrong_current_password(self, services):
        credential, _ = await services.credentials.signup("alice@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError):
            await services.credentials.change_password(credential.id, "nope nope", NEW_PASSWORD)

    async def test_unknown_user(self, services):
        with pytest.raises(NotFoundError):
            await services.credentials.change_password("missing", PASSWORD, NEW_PASSWORD)


class TestDisable:
    async def test_disable_revokes_and_blocks(self, services):
        credential, signup = await services.credentials.signup("alice@example.com", PASSWORD)

        assert await services.credentials.disable(credential.id) == 1

        assert services.store.sessions[signup.session.id].revoke_reason == RevokeReason.ADMIN_ACTION
        with pytest.raises(InvalidCredentialsError):
            await _login(services)
        with pytest.raises(SessionNotFoundError):
            await services.sessions.refresh(signup.tokens.refresh.token)

    async def test_disable_unknown_user(self, services):
        with pytest.raises(NotFoundError):
            await services.credentials.disable("missing")


class TestPasswordReset:
    async def test_unknown_email_returns_nothing(self, services):
        assert await services.credentials.request_password_reset("ghost@example.com") is None
        assert services.store.reset_tokens == {}
        assert services.store.audit_entries[-1].action == AuditAction.PASSWORD_RESET_REQUEST

    async def test_reset_replaces_password_and_revokes_sessions(self, services):
        credential, signup = await services.credentials.signup("alice@example.com", PASSWORD)
        raw = await services.credentials.request_password_reset("alice@example.com")

        assert raw not in services.store.reset_tokens
        user_id = await services.credentials.complete_password_reset(raw, NEW_PASSWORD)

        assert user_id == credential.id
        assert services.store.sessions[signup.session.id].status == SessionStatus.REVOKED
        await _login(services, password=NEW_PASSWORD)

    async def test_reset_token_is_single_use(self, services):
        await services.credentials.signup("alice@example.com", PASSWORD)
        raw = await services.credentials.request_password_reset("alice@example.com")
        await services.credentials.complete_password_reset(raw, NEW_PASSWORD)

        with pytest.raises(ValidationError):
            await services.credentials.complete_password_reset(raw, "another password")

    async def test_newer_request_replaces_older_token(self, services):
        await services.credentials.signup("alice@example.com", PASSWORD)
        older = await services.credentials.request_password_reset("alice@example.com")
        newer = await services.credentials.request_password_reset("alice@example.com")

        with pytest.raises(ValidationError):
            await services.credentials.complete_password_reset(older, NEW_PASSWORD)
        await services.credentials.complete_password_reset(newer, NEW_PASSWORD)

    async def test_expired_token_rejected(self, services):
        await services.credentials.signup("alice@example.com", PASSWORD)
        services.credentials.reset_ttl = timedelta(seconds=-1)
        raw = await services.credentials.request_password_reset("alice@example.com")

        with pytest.raises(ValidationError):
            await services.credentials.complete_password_reset(raw, NEW_PASSWORD)
        await _login(services)

    async def test_weak_new_password_keeps_token(self, services):
        await services.credentials.signup("alice@example.com", PASSWORD)
        raw = await services.credentials.request_password_reset("alice@example.com")

        with pytest.raises(ValidationError):
            await services.credentials.complete_password_reset(raw, "short")
        await services.credentials.complete_password_reset(raw, NEW_PASSWORD)
