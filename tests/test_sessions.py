"""Session lifecycle: login, rotation, reuse detection and revocation."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from functools import partial

import pytest
from conftest import FakeClock, FakePool, build_services

from authkernel.service.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    MalformedTokenError,
    SessionNotFoundError,
    SessionUserMismatchError,
    TokenReuseDetectedError,
    WrongTokenKindError,
)
from authkernel.service.tokens import TokenKind, hash_jti
from authkernel.service.validation_cache import SessionVerification
from authkernel.storage.memory import MemoryStore
from authkernel.storage.memory_cache import MemoryCache
from authkernel.storage.models import AuditAction, RevokeReason, SessionStatus
from authkernel.storage.unit_of_work import Database, current_unit

PASSWORD = "correct horse battery"


async def _signup(services, email="alice@example.com", password=PASSWORD):
    credential, _ = await services.credentials.signup(email, password, start_session=False)
    return credential


def _actions(store):
    return [entry.action for entry in store.audit_entries]


class YieldingStore(MemoryStore):
    """Yields to the event loop after the refresh lookup so two refreshes interleave."""

    async def find_active_session_by_refresh_hash(self, refresh_jti_hash):
        found = await super().find_active_session_by_refresh_hash(refresh_jti_hash)
        await asyncio.sleep(0)
        return found



class UnitBoundStore(MemoryStore):
    """Session reads go through the unit of work bound to the calling task."""

    def __init__(self, db):
        super().__init__()
        self.db = db
        self.gate = asyncio.Event()
        self.gate.set()

    def unit_of_work(self):
        return self.db.unit_of_work()

    def detached(self):
        return self.db.detached()

    async def get_session(self, session_id):
        await self.gate.wait()
        unit = current_unit()
        if unit is not None:
            await unit.execute("SELECT session")
        return await super().get_session(session_id)

    async def touch_session(self, session_id, now):
        unit = current_unit()
        if unit is not None:
            await unit.execute("UPDATE last_seen_at")
        await super().touch_session(session_id, now)


class CommitVisibleStore(MemoryStore):
    """Revocations stay invisible to readers until the enclosing unit commits."""

    def __init__(self):
        super().__init__()
        self._staged = None
        self._on_commit = []

    @asynccontextmanager
    async def unit_of_work(self):
        self._staged, self._on_commit = [], []
        try:
            yield self
        except BaseException:
            self._staged = None
            raise
        staged, self._staged = self._staged, None
        for write in staged:
            await write()
        for callback in self._on_commit:
            await callback()

    async def revoke_session(self, session_id, reason, now):
        if self._staged is None:
            return await super().revoke_session(session_id, reason, now)
        session = self.sessions.get(session_id)
        if session is None or not session.is_active:
            return False
        self._staged.append(
            partial(MemoryStore.revoke_session, self, session_id, reason, now)
        )
        return True

    async def after_commit(self, callback):
        if self._staged is None:
            await callback()
        else:
            self._on_commit.append(callback)

class TestLogin:
    async def test_login_opens_active_session(self, services):
        credential = await _signup(services)
        result = await services.sessions.login("Alice@Example.com ", PASSWORD, ip_address="10.0.0.1")

        stored = services.store.sessions[result.session.id]
        assert stored.status == SessionStatus.ACTIVE
        assert stored.user_id == credential.id
        assert stored.refresh_jti_hash == hash_jti(result.tokens.refresh_jti)
        assert result.tokens.refresh_jti not in stored.refresh_jti_hash
        assert result.tokens.identity is not None
        assert AuditAction.LOGIN_SUCCESS in _actions(services.store)

    async def test_wrong_password_rejected(self, services):
        await _signup(services)
        with pytest.raises(InvalidCredentialsError):
            await services.sessions.login("alice@example.com", "wrong password")
        assert services.store.sessions == {}
        assert _actions(services.store)[-1] == AuditAction.LOGIN_FAILED

    async def test_unknown_email_rejected_like_wrong_password(self, services):
        with pytest.raises(InvalidCredentialsError) as excinfo:
            await services.sessions.login("nobody@example.com", PASSWORD)
        assert excinfo.value.message == "invalid email or password"

    async def test_disabled_credential_rejected(self, services):
        credential = await _signup(services)
        await services.store.set_credential_disabled(credential.id, True)
        with pytest.raises(InvalidCredentialsError):
            await services.sessions.login("alice@example.com", PASSWORD)

    async def test_lockout_after_threshold(self, services):
        await _signup(services)
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await services.sessions.login("alice@example.com", "nope")
        with pytest.raises(AccountLockedError) as excinfo:
            await services.sessions.login("alice@example.com", "nope")
        assert excinfo.value.detail["scope"] == "email"
        assert excinfo.value.detail["retry_after_seconds"] == 1800
        # Correct password still refused while locked
        with pytest.raises(AccountLockedError):
            await services.sessions.login("alice@example.com", PASSWORD)
        assert AuditAction.ACCOUNT_LOCKED in _actions(services.store)

    async def test_successful_login_clears_email_counter(self, services):
        await _signup(services)
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await services.sessions.login("alice@example.com", "nope")
        await services.sessions.login("alice@example.com", PASSWORD)
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await services.sessions.login("alice@example.com", "nope")


class TestRefresh:
    async def test_rotation_replaces_refresh_identifier(self, services):
        await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)

        refreshed = await services.sessions.refresh(login.tokens.refresh.token)

        assert refreshed.session.id == login.session.id
        assert refreshed.tokens.refresh_jti != login.tokens.refresh_jti
        assert refreshed.tokens.identity is None
        stored = services.store.sessions[login.session.id]
        assert stored.refresh_jti_hash == hash_jti(refreshed.tokens.refresh_jti)
        assert stored.rotated_at is not None
        claims = services.tokens.verify(refreshed.tokens.access.token, TokenKind.ACCESS)
        assert claims.session_id == login.session.id

    async def test_each_rotation_yields_unique_identifier(self, services):
        await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)
        token = login.tokens.refresh.token
        seen = {login.tokens.refresh_jti}
        for _ in range(5):
            result = await services.sessions.refresh(token)
            assert result.tokens.refresh_jti not in seen
            seen.add(result.tokens.refresh_jti)
            token = result.tokens.refresh.token

    async def test_replayed_token_revokes_every_session(self, services):
        credential = await _signup(services)
        first = await services.sessions.login("alice@example.com", PASSWORD)
        second = await services.sessions.login("alice@example.com", PASSWORD)
        r0 = first.tokens.refresh.token

        r1 = (await services.sessions.refresh(r0)).tokens.refresh.token

        with pytest.raises(TokenReuseDetectedError):
            await services.sessions.refresh(r0)

        for sid in (first.session.id, second.session.id):
            stored = services.store.sessions[sid]
            assert stored.status == SessionStatus.REVOKED
            assert stored.revoke_reason == RevokeReason.TOKEN_REUSE
        # The legitimately rotated token dies with the session
        with pytest.raises(SessionNotFoundError):
            await services.sessions.refresh(r1)
        reuse = [e for e in services.store.audit_entries if e.action == AuditAction.TOKEN_REUSE_DETECTED]
        assert len(reuse) == 1
        assert reuse[0].user_id == credential.id
        assert reuse[0].metadata["revoked_sessions"] == 2

    async def test_reuse_leaves_other_users_alone(self, services):
        await _signup(services)
        await _signup(services, email="bob@example.com")
        alice = await services.sessions.login("alice@example.com", PASSWORD)
        bob = await services.sessions.login("bob@example.com", PASSWORD)
        await services.sessions.refresh(alice.tokens.refresh.token)

        with pytest.raises(TokenReuseDetectedError):
            await services.sessions.refresh(alice.tokens.refresh.token)

        assert services.store.sessions[bob.session.id].status == SessionStatus.ACTIVE

    async def test_concurrent_refresh_single_winner(self, clock):
        from authkernel.storage.memory_cache import MemoryCache

        services = build_services(store=YieldingStore(), cache=MemoryCache(clock=clock))
        await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)
        token = login.tokens.refresh.token

        results = await asyncio.gather(
            services.sessions.refresh(token),
            services.sessions.refresh(token),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], TokenReuseDetectedError)
        assert services.store.sessions[login.session.id].status == SessionStatus.REVOKED

    async def test_access_token_not_accepted_for_refresh(self, services):
        await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)
        with pytest.raises(WrongTokenKindError):
            await services.sessions.refresh(login.tokens.access.token)

    async def test_non_refresh_claims_rejected(self, services, monkeypatch):
        await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)
        access_claims = services.tokens.verify(login.tokens.access.token, TokenKind.ACCESS)
        monkeypatch.setattr(services.tokens, "verify", lambda token, kind: access_claims)

        with pytest.raises(MalformedTokenError):
            await services.sessions.refresh(login.tokens.refresh.token)

    async def test_unknown_session(self, services):
        credential = await _signup(services)
        token = services.tokens.issue(
            TokenKind.REFRESH, session_id="00000000-0000-0000-0000-000000000000", subject=credential.id
        ).token
        with pytest.raises(SessionNotFoundError):
            await services.sessions.refresh(token)

    async def test_session_owned_by_someone_else(self, services):
        alice = await _signup(services)
        await _signup(services, email="bob@example.com")
        bob_login = await services.sessions.login("bob@example.com", PASSWORD)
        forged = services.tokens.issue(
            TokenKind.REFRESH, session_id=bob_login.session.id, subject=alice.id
        ).token

        with pytest.raises(SessionUserMismatchError):
            await services.sessions.refresh(forged)
        assert services.store.sessions[bob_login.session.id].status == SessionStatus.ACTIVE

    async def test_expired_session_not_refreshed(self, services):
        await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)
        stored = services.store.sessions[login.session.id]
        services.store.sessions[login.session.id] = stored.copy(
            expires_at=datetime.now(timezone.utc) - timedelta(seconds=1)
        )
        with pytest.raises(SessionNotFoundError):
            await services.sessions.refresh(login.tokens.refresh.token)

    async def test_logged_out_session_not_refreshed_and_not_treated_as_reuse(self, services):
        await _signup(services)
        first = await services.sessions.login("alice@example.com", PASSWORD)
        second = await services.sessions.login("alice@example.com", PASSWORD)
        await services.sessions.logout(first.session.id)

        with pytest.raises(SessionNotFoundError):
            await services.sessions.refresh(first.tokens.refresh.token)
        assert services.store.sessions[second.session.id].status == SessionStatus.ACTIVE


class TestRevocation:
    async def test_logout_is_idempotent(self, services):
        credential = await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)

        assert await services.sessions.logout(login.session.id, user_id=credential.id) is True
        assert await services.sessions.logout(login.session.id, user_id=credential.id) is False
        assert await services.sessions.logout("missing-session") is False

        stored = services.store.sessions[login.session.id]
        assert stored.status == SessionStatus.REVOKED
        assert stored.revoke_reason == RevokeReason.LOGOUT
        assert _actions(services.store).count(AuditAction.LOGOUT) == 1

    async def test_logout_refuses_foreign_session(self, services):
        alice = await _signup(services)
        await _signup(services, email="bob@example.com")
        bob_login = await services.sessions.login("bob@example.com", PASSWORD)
        with pytest.raises(SessionUserMismatchError):
            await services.sessions.logout(bob_login.session.id, user_id=alice.id)
        assert services.store.sessions[bob_login.session.id].is_active

    async def test_revoke_all_can_keep_current(self, services):
        credential = await _signup(services)
        keep = await services.sessions.login("alice@example.com", PASSWORD)
        await services.sessions.login("alice@example.com", PASSWORD)
        await services.sessions.login("alice@example.com", PASSWORD)

        count = await services.sessions.revoke_all(
            credential.id, RevokeReason.ADMIN_ACTION, except_session_id=keep.session.id
        )

        assert count == 2
        statuses = {sid: s.status for sid, s in services.store.sessions.items()}
        assert statuses.pop(keep.session.id) == SessionStatus.ACTIVE
        assert set(statuses.values()) == {SessionStatus.REVOKED}
        assert await services.sessions.revoke_all(credential.id, RevokeReason.ADMIN_ACTION, except_session_id=keep.session.id) == 0

    async def test_expire_stale_marks_only_past_sessions(self, services):
        await _signup(services)
        stale = await services.sessions.login("alice@example.com", PASSWORD)
        fresh = await services.sessions.login("alice@example.com", PASSWORD)
        stored = services.store.sessions[stale.session.id]
        services.store.sessions[stale.session.id] = stored.copy(
            expires_at=datetime.now(timezone.utc) - timedelta(minutes=1)
        )

        assert await services.sessions.expire_stale() == 1
        assert await services.sessions.expire_stale() == 0
        assert services.store.sessions[stale.session.id].status == SessionStatus.EXPIRED
        assert services.store.sessions[fresh.session.id].status == SessionStatus.ACTIVE


class TestAuthenticate:
    async def test_valid_access_token(self, services):
        credential = await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)

        ctx = await services.sessions.authenticate(login.tokens.access.token)

        assert ctx.user_id == credential.id
        assert ctx.session_id == login.session.id
        assert ctx.email == "alice@example.com"
        assert ctx.role == "member"

    async def test_revoked_session_rejected_immediately(self, services):
        await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)
        await services.sessions.authenticate(login.tokens.access.token)

        await services.sessions.logout(login.session.id)

        with pytest.raises(SessionNotFoundError):
            await services.sessions.authenticate(login.tokens.access.token)
        assert _actions(services.store)[-1] == AuditAction.ACCESS_DENIED

    async def test_refresh_token_rejected_as_bearer(self, services):
        await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)
        with pytest.raises(WrongTokenKindError):
            await services.sessions.authenticate(login.tokens.refresh.token)

    async def test_cached_owner_mismatch(self, services):
        await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)
        await services.validation_cache.put(
            login.session.id,
            SessionVerification(
                session_id=login.session.id,
                user_id="someone-else",
                expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            ),
        )
        with pytest.raises(SessionUserMismatchError):
            await services.sessions.authenticate(login.tokens.access.token)

    async def test_works_without_cache(self, store):
        services = build_services(store=store, cache=None)
        await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)
        ctx = await services.sessions.authenticate(login.tokens.access.token)
        assert ctx.session_id == login.session.id

    async def test_cancelled_request_does_not_break_shared_session_check(self):
        pool = FakePool(fresh_connections=True)
        store = UnitBoundStore(Database("postgresql://unused", pool=pool))
        services = build_services(store=store, cache=MemoryCache(clock=FakeClock()))
        await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)
        token = login.tokens.access.token
        store.gate.clear()

        async def request():
            async with store.unit_of_work():
                return await services.sessions.authenticate(token)

        first = asyncio.ensure_future(request())
        second = asyncio.ensure_future(request())
        for _ in range(3):
            await asyncio.sleep(0)
        assert services.validation_cache.inflight_count() == 1

        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first
        store.gate.set()

        ctx = await second
        assert ctx.session_id == login.session.id
        assert [
            "BEGIN",
            "SELECT session",
            "UPDATE last_seen_at",
            "COMMIT",
        ] in [conn.control for conn in pool.connections]

    async def test_check_racing_uncommitted_logout_is_not_cached(self):
        store = CommitVisibleStore()
        services = build_services(store=store, cache=MemoryCache(clock=FakeClock()))
        await _signup(services)
        login = await services.sessions.login("alice@example.com", PASSWORD)
        token = login.tokens.access.token

        async with store.unit_of_work():
            assert await services.sessions.logout(login.session.id) is True
            # Still active to everyone else until the logout commits
            await services.sessions.authenticate(token)

        assert store.sessions[login.session.id].status == SessionStatus.REVOKED
        with pytest.raises(SessionNotFoundError):
            await services.sessions.authenticate(token)
