from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.audit import AuditRecorder
from authkernel.service.errors import (
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from authkernel.service.passwords import PasswordPolicy, PasswordService, default_password_policy
from authkernel.service.sessions import LoginResult, SessionManager
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    AuditAction,
    Credential,
    PasswordResetToken,
    RevokeReason,
)

logger = get_logger(__name__)


def _hash_reset_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


class CredentialService:
    """Account-level operations built on the session manager.

    Password changes and resets revoke the user's other sessions so a leaked
    refresh token cannot outlive the credential it was issued under.
    """

    def __init__(
        self,
        store: Any,
        passwords: PasswordService,
        sessions: SessionManager,
        audit: AuditRecorder,
        settings: Settings,
        *,
        policy: PasswordPolicy = default_password_policy,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.sessions = sessions
        self.audit = audit
        self.policy = policy
        self.reset_ttl = timedelta(seconds=settings.password_reset_ttl_seconds)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _require_policy(self, password: str) -> None:
        if not self.policy(password):
            raise ValidationError(
                "password does not meet requirements", detail={"field": "password"}
            )

    async def signup(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        start_session: bool = True,
    ) -> tuple[Credential, Optional[LoginResult]]:
        normalized = (email or "").strip().lower()
        if "@" not in normalized:
            raise ValidationError("invalid email", detail={"field": "email"})
        self._require_policy(password)
        if await self.store.get_credential_by_email(normalized):
            raise ConflictError("email already exists", detail={"field": "email"})
        credential = Credential.new(
            normalized, await self.passwords.hash(password), name=name
        )
        try:
            credential = await self.store.create_credential(credential)
        except ConstraintViolation as exc:
            raise ConflictError("email already exists", detail={"field": "email"}) from exc
        await self.audit.record(
            AuditAction.SIGNUP,
            user_id=credential.id,
            email=credential.email,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info("signup_completed", user_id=credential.id)
        if not start_session:
            return credential, None
        session, tokens = await self.sessions.issue_token_set(
            credential, ip_address=ip_address, user_agent=user_agent
        )
        return credential, LoginResult(credential=credential, session=session, tokens=tokens)

    async def authenticate(self, email: str, password: str) -> Credential:
        """Verify an email/password pair without opening a session."""
        credential, valid = await self.sessions.check_password(email, password)
        if not valid or credential is None:
            raise InvalidCredentialsError("invalid email or password")
        return credential

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Returns the number of other sessions revoked."""
        credential = await self.store.get_credential(user_id)
        if credential is None:
            raise NotFoundError("user not found")
        if not await self.passwords.verify(credential.password_hash, current_password):
            raise InvalidCredentialsError("current password is incorrect")
        self._require_policy(new_password)
        await self.store.update_password_hash(
            user_id, await self.passwords.hash(new_password)
        )
        revoked = await self.sessions.revoke_all(
            user_id,
            RevokeReason.PASSWORD_CHANGE,
            except_session_id=current_session_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.audit.record(
            AuditAction.PASSWORD_CHANGE,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"revoked_sessions": revoked},
        )
        return revoked

    async def disable(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        if not await self.store.set_credential_disabled(user_id, True):
            raise NotFoundError("user not found")
        revoked = await self.sessions.revoke_all(
            user_id,
            RevokeReason.ADMIN_ACTION,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.audit.record(
            AuditAction.ACCOUNT_DISABLED,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"revoked_sessions": revoked},
        )
        return revoked

    async def request_password_reset(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[str]:
        """Issue a single-use reset secret.

        Callers always see success; ``None`` means no account matched and the
        caller must not reveal that to the client.
        """
        normalized = (email or "").strip().lower()
        credential = await self.store.get_credential_by_email(normalized)
        await self.audit.record(
            AuditAction.PASSWORD_RESET_REQUEST,
            user_id=credential.id if credential else None,
            email=normalized,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        if credential is None or credential.disabled:
            return None
        raw = secrets.token_urlsafe(32)
        now = self._now()
        await self.store.replace_reset_token(
            PasswordResetToken(
                token_hash=_hash_reset_token(raw),
                user_id=credential.id,
                expires_at=now + self.reset_ttl,
                created_at=now,
            )
        )
        return raw

    async def complete_password_reset(
        self,
        raw_token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        self._require_policy(new_password)
        password_hash = await self.passwords.hash(new_password)
        async with self.store.savepoint("password_reset"):
            user_id = await self.store.consume_reset_token(
                _hash_reset_token(raw_token or ""), self._now()
            )
            if user_id is None:
                raise ValidationError(
                    "invalid or expired reset token", detail={"field": "token"}
                )
            if not await self.store.update_password_hash(user_id, password_hash):
                raise NotFoundError("user not found")
            revoked = await self.sessions.revoke_all(
                user_id,
                RevokeReason.PASSWORD_CHANGE,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        await self.audit.record(
            AuditAction.PASSWORD_RESET_COMPLETE,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"revoked_sessions": revoked},
        )
        return user_id
