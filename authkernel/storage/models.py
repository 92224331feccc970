from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class RevokeReason(str, Enum):
    LOGOUT = "logout"
    TOKEN_REUSE = "token_reuse"
    ADMIN_ACTION = "admin_action"
    PASSWORD_CHANGE = "password_change"


class AuditAction(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    SIGNUP = "signup"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_COMPLETE = "password_reset_complete"
    SESSION_REVOKED = "session_revoked"
    TOKEN_REFRESH = "token_refresh"
    TOKEN_REUSE_DETECTED = "token_reuse_detected"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_DISABLED = "account_disabled"
    ACCESS_DENIED = "access_denied"


@dataclass
class Credential:
    id: str
    email: str
    password_hash: str
    name: Optional[str] = None
    role: str = "member"
    disabled: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        *,
        name: Optional[str] = None,
        role: str = "member",
    ) -> "Credential":
        return cls(
            id=str(uuid.uuid4()),
            email=email.strip().lower(),
            password_hash=password_hash,
            name=name,
            role=role,
        )


@dataclass
class Session:
    """Durable session ledger row.

    ``refresh_jti_hash`` is the SHA-256 of the current refresh token's jti;
    the clear identifier is never stored. Status only moves out of ``active``.
    """

    id: str
    user_id: str
    refresh_jti_hash: str
    created_at: datetime
    expires_at: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    last_seen_at: Optional[datetime] = None
    rotated_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[RevokeReason] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_jti_hash: str,
        ttl_seconds: int,
        *,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or _utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            refresh_jti_hash=refresh_jti_hash,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            last_seen_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or _utcnow())

    def copy(self, **changes: Any) -> "Session":
        return replace(self, **changes)


@dataclass
class AuditEntry:
    action: AuditAction
    user_id: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    id: Optional[int] = None


@dataclass
class ErrorLogEntry:
    message: str
    error_code: Optional[str] = None
    status_code: Optional[int] = None
    path: Optional[str] = None
    method: Optional[str] = None
    request_id: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    id: Optional[int] = None


@dataclass
class PasswordResetToken:
    token_hash: str
    user_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    used_at: Optional[datetime] = None

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.used_at is None and self.expires_at > (now or _utcnow())
