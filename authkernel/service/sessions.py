"""Session lifecycle: login, refresh rotation, reuse response and revocation.

A session is ``active`` until it becomes ``revoked`` or ``expired``; both are
terminal. Each refresh token is single-use: rotation swaps the stored jti
hash with a conditional update, and presenting a rotated-away token revokes
every session of its owner.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import (
    Any,
    AsyncContextManager,
    Awaitable,
    Callable,
    List,
    Optional,
    Protocol,
    Tuple,
)

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.audit import AuditRecorder
from authkernel.service.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    InvalidTokenError,
    MalformedTokenError,
    SessionNotFoundError,
    SessionUserMismatchError,
    TokenReuseDetectedError,
)
from authkernel.service.lockout import LockoutGuard
from authkernel.service.passwords import PasswordService
from authkernel.service.tokens import (
    RefreshClaims,
    TokenKind,
    TokenService,
    TokenSet,
    hash_jti,
)
from authkernel.service.validation_cache import SessionVerification, ValidationCache
from authkernel.storage.models import (
    AuditAction,
    Credential,
    RevokeReason,
    Session,
)

logger = get_logger(__name__)


class SessionStore(Protocol):
    def detached(self) -> AsyncContextManager[Any]: ...

    async def after_commit(self, callback: Callable[[], Awaitable[None]]) -> None: ...

    async def get_credential(self, user_id: str) -> Optional[Credential]: ...

    async def get_credential_by_email(self, email: str) -> Optional[Credential]: ...

    async def update_password_hash(self, user_id: str, password_hash: str) -> bool: ...

    async def create_session(self, session: Session) -> Session: ...

    async def get_session(self, session_id: str) -> Optional[Session]: ...

    async def find_active_session_by_refresh_hash(
        self, refresh_jti_hash: str
    ) -> Optional[Session]: ...

    async def rotate_refresh_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        expires_at: datetime,
        now: datetime,
    ) -> Optional[Session]: ...

    async def touch_session(self, session_id: str, now: datetime) -> None: ...

    async def revoke_session(
        self, session_id: str, reason: RevokeReason, now: datetime
    ) -> bool: ...

    async def revoke_user_sessions(
        self,
        user_id: str,
        reason: RevokeReason,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> List[str]: ...

    async def expire_stale_sessions(self, now: datetime) -> List[str]: ...


@dataclass
class AuthContext:
    user_id: str
    session_id: str
    role: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class LoginResult:
    credential: Credential
    session: Session
    tokens: TokenSet


@dataclass(frozen=True)
class RefreshResult:
    session: Session
    tokens: TokenSet


class SessionManager:
    """Orchestrates the lockout guard, token service, ledger, cache and audit trail."""

    def __init__(
        self,
        store: SessionStore,
        tokens: TokenService,
        lockout: LockoutGuard,
        validation_cache: ValidationCache,
        audit: AuditRecorder,
        passwords: PasswordService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.lockout = lockout
        self.validation_cache = validation_cache
        self.audit = audit
        self.passwords = passwords
        self.refresh_ttl = timedelta(seconds=settings.refresh_token_ttl_seconds)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # ------------------------------------------------------------------
    # login
    # ------------------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        normalized = email.strip().lower()
        status = await self.lockout.check_locked(normalized, ip_address)
        if status.locked:
            await self.audit.record(
                AuditAction.LOGIN_FAILED,
                email=normalized,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"reason": "locked", "scope": status.scope},
            )
            raise AccountLockedError(
                "too many failed login attempts", detail=status.detail()
            )

        credential, valid = await self.check_password(normalized, password)
        if credential is None or not valid:
            failure = await self.lockout.record_failure(normalized, ip_address)
            await self.audit.record(
                AuditAction.LOGIN_FAILED,
                user_id=credential.id if credential else None,
                email=normalized,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"reason": "invalid_credentials"},
            )
            if failure.locked:
                await self.audit.record(
                    AuditAction.ACCOUNT_LOCKED,
                    user_id=credential.id if credential else None,
                    email=normalized,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    metadata=failure.detail(),
                )
                raise AccountLockedError(
                    "too many failed login attempts", detail=failure.detail()
                )
            raise InvalidCredentialsError("invalid email or password")

        await self.lockout.clear_on_success(normalized)
        session, tokens = await self.issue_token_set(
            credential, ip_address=ip_address, user_agent=user_agent
        )
        await self.audit.record(
            AuditAction.LOGIN_SUCCESS,
            user_id=credential.id,
            email=credential.email,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"session_id": session.id},
        )
        self.logger.info("login_succeeded", user_id=credential.id, session_id=session.id)
        return LoginResult(credential=credential, session=session, tokens=tokens)

    async def check_password(
        self, email: str, password: str
    ) -> Tuple[Optional[Credential], bool]:
        """Look up and verify a credential; disabled accounts never verify.

        A valid password stored under outdated hashing parameters is rehashed.
        """
        credential = await self.store.get_credential_by_email(email.strip().lower())
        if credential is None or credential.disabled:
            return credential, False
        if not await self.passwords.verify(credential.password_hash, password):
            return credential, False
        if self.passwords.needs_rehash(credential.password_hash):
            await self.store.update_password_hash(
                credential.id, await self.passwords.hash(password)
            )
        return credential, True

    async def issue_token_set(
        self,
        credential: Credential,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Session, TokenSet]:
        """Open a new active session for ``credential`` and mint its first token triple."""
        now = self._now()
        session_id = str(uuid.uuid4())
        tokens = self.tokens.issue_token_set(session_id, credential, now=now)
        session = Session.new(
            credential.id,
            hash_jti(tokens.refresh_jti),
            int(self.refresh_ttl.total_seconds()),
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            now=now,
        )
        session = await self.store.create_session(session)
        return session, tokens

    # ------------------------------------------------------------------
    # refresh / reuse detection
    # ------------------------------------------------------------------

    async def refresh(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RefreshResult:
        claims = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        if not isinstance(claims, RefreshClaims):
            raise MalformedTokenError("invalid token")
        presented = hash_jti(claims.jti)

        session = await self.store.find_active_session_by_refresh_hash(presented)
        if session is None:
            await self._refresh_without_current_match(
                claims, presented, ip_address=ip_address, user_agent=user_agent
            )
            raise SessionNotFoundError("invalid session")

        if session.id != claims.session_id or session.user_id != claims.subject:
            self.logger.warning(
                "refresh_session_owner_mismatch",
                session_id=claims.session_id,
                user_id=claims.subject,
            )
            raise SessionUserMismatchError("invalid session")

        now = self._now()
        if session.is_expired(now):
            raise SessionNotFoundError("session expired")
        credential = await self.store.get_credential(session.user_id)
        if credential is None or credential.disabled:
            raise SessionNotFoundError("invalid session")

        tokens = self.tokens.issue_token_set(
            session.id, credential, include_identity=False, now=now
        )
        rotated = await self.store.rotate_refresh_hash(
            session.id,
            presented,
            hash_jti(tokens.refresh_jti),
            expires_at=now + self.refresh_ttl,
            now=now,
        )
        if rotated is None:
            # Lost the conditional update: a concurrent request already
            # consumed this refresh token.
            await self._respond_to_reuse(
                session.user_id,
                session.id,
                detected_by="rotation_conflict",
                ip_address=ip_address,
                user_agent=user_agent,
            )

        await self.audit.record(
            AuditAction.TOKEN_REFRESH,
            user_id=session.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"session_id": session.id},
        )
        return RefreshResult(session=rotated, tokens=tokens)

    async def _refresh_without_current_match(
        self,
        claims: RefreshClaims,
        presented: str,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        """Tell a never-existing session apart from a replayed, rotated-away token."""
        session = await self.store.get_session(claims.session_id)
        if session is None:
            raise SessionNotFoundError("invalid session")
        if session.user_id != claims.subject:
            self.logger.warning(
                "refresh_session_owner_mismatch",
                session_id=claims.session_id,
                user_id=claims.subject,
            )
            raise SessionUserMismatchError("invalid session")
        if session.refresh_jti_hash != presented:
            await self._respond_to_reuse(
                session.user_id,
                session.id,
                detected_by="stale_identifier",
                ip_address=ip_address,
                user_agent=user_agent,
            )
        # Current identifier but the session is revoked or expired
        raise SessionNotFoundError("session is no longer active")

    async def _respond_to_reuse(
        self,
        user_id: str,
        session_id: str,
        *,
        detected_by: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        # Independent unit: the mass revocation must survive the failed request
        async with self.store.detached():
            revoked = await self.store.revoke_user_sessions(
                user_id, RevokeReason.TOKEN_REUSE, self._now()
            )
        for sid in revoked:
            await self.validation_cache.invalidate(sid)
        await self.validation_cache.invalidate_user(user_id)
        self.logger.warning(
            "refresh_token_reuse_detected",
            user_id=user_id,
            session_id=session_id,
            revoked_sessions=len(revoked),
            detected_by=detected_by,
        )
        await self.audit.record(
            AuditAction.TOKEN_REUSE_DETECTED,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={
                "session_id": session_id,
                "revoked_sessions": len(revoked),
                "detected_by": detected_by,
            },
        )
        raise TokenReuseDetectedError(
            "refresh token reuse detected; all sessions revoked"
        )

    # ------------------------------------------------------------------
    # revocation
    # ------------------------------------------------------------------

    async def logout(
        self,
        session_id: str,
        *,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Revoke one session; returns False when it was already terminal or unknown."""
        if user_id is not None:
            session = await self.store.get_session(session_id)
            if session is not None and session.user_id != user_id:
                raise SessionUserMismatchError("cannot revoke another user's session")
        revoked = await self.store.revoke_session(
            session_id, RevokeReason.LOGOUT, self._now()
        )
        await self._invalidate_after_commit([session_id])
        if revoked:
            await self.audit.record(
                AuditAction.LOGOUT,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"session_id": session_id},
            )
        return revoked

    async def revoke_all(
        self,
        user_id: str,
        reason: RevokeReason,
        *,
        except_session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        revoked = await self.store.revoke_user_sessions(
            user_id, reason, self._now(), except_session_id=except_session_id
        )
        await self._invalidate_after_commit(revoked)
        if revoked:
            await self.audit.record(
                AuditAction.SESSION_REVOKED,
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata={"reason": reason.value, "count": len(revoked)},
            )
        self.logger.info(
            "user_sessions_revoked",
            user_id=user_id,
            reason=reason.value,
            count=len(revoked),
        )
        return len(revoked)

    async def expire_stale(self) -> int:
        expired = await self.store.expire_stale_sessions(self._now())
        await self._invalidate_after_commit(expired)
        if expired:
            self.logger.info("sessions_expired", count=len(expired))
        return len(expired)

    async def _invalidate_after_commit(self, session_ids: List[str]) -> None:
        """Drop cached verifications only after the status change commits."""
        if not session_ids:
            return

        async def invalidate() -> None:
            for sid in session_ids:
                await self.validation_cache.invalidate(sid)

        await self.store.after_commit(invalidate)

    # ------------------------------------------------------------------
    # resource requests
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        access_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthContext:
        """Verify a bearer access token and confirm its session is still active."""
        try:
            claims = self.tokens.verify(access_token, TokenKind.ACCESS)
        except InvalidTokenError as exc:
            await self._record_denied(exc.reason, ip_address, user_agent)
            raise

        async def load() -> SessionVerification:
            # Shared by every concurrent caller, so it must not run in any
            # one caller's transaction
            async with self.store.detached():
                now = self._now()
                session = await self.store.get_session(claims.session_id)
                if session is None or not session.is_active or session.is_expired(now):
                    raise SessionNotFoundError("invalid session")
                await self.store.touch_session(session.id, now)
            return SessionVerification(
                session_id=session.id,
                user_id=session.user_id,
                expires_at=session.expires_at,
            )

        try:
            verification = await self.validation_cache.resolve(claims.session_id, load)
        except SessionNotFoundError:
            await self._record_denied(
                "invalid_session", ip_address, user_agent, user_id=claims.subject
            )
            raise
        if verification.user_id != claims.subject:
            await self._record_denied(
                "session_user_mismatch", ip_address, user_agent, user_id=claims.subject
            )
            raise SessionUserMismatchError("invalid session")
        return AuthContext(
            user_id=claims.subject,
            session_id=claims.session_id,
            role=getattr(claims, "role", None),
            email=getattr(claims, "email", None),
        )

    async def _record_denied(
        self,
        reason: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        *,
        user_id: Optional[str] = None,
    ) -> None:
        await self.audit.record(
            AuditAction.ACCESS_DENIED,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"reason": reason},
        )
