from __future__ import annotations

import threading
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from authkernel.logging import get_logger
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    AuditAction,
    AuditEntry,
    Credential,
    ErrorLogEntry,
    PasswordResetToken,
    RevokeReason,
    Session,
    SessionStatus,
)


class MemoryStore:
    """In-process store with the same async surface as :class:`PostgresStore`.

    Rows are replaced rather than mutated so returned objects never alias
    stored state. Savepoints snapshot the tables and restore them on error.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, Credential] = {}
        self.sessions: Dict[str, Session] = {}
        self.audit_entries: List[AuditEntry] = []
        self.error_logs: List[ErrorLogEntry] = []
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self._audit_seq = 0
        self._error_seq = 0
        # RLock for all data operations; nested acquisitions happen in savepoints
        self._data_lock = threading.RLock()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator["MemoryStore"]:
        yield self

    @asynccontextmanager
    async def detached(self) -> AsyncIterator["MemoryStore"]:
        yield self

    async def after_commit(self, callback: Callable[[], Awaitable[None]]) -> None:
        # Writes are visible immediately
        await callback()

    @asynccontextmanager
    async def savepoint(self, name: Optional[str] = None) -> AsyncIterator[str]:
        with self._data_lock:
            snapshot = (
                dict(self.users),
                dict(self.sessions),
                dict(self.reset_tokens),
            )
        try:
            yield name or "sp"
        except BaseException:
            with self._data_lock:
                self.users, self.sessions, self.reset_tokens = snapshot
            raise

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # -- credentials ---------------------------------------------------

    async def create_credential(self, credential: Credential) -> Credential:
        with self._data_lock:
            email = credential.email.lower()
            if any(user.email.lower() == email for user in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            self.users[credential.id] = credential
            return credential

    async def get_credential(self, user_id: str) -> Optional[Credential]:
        with self._data_lock:
            return self.users.get(user_id)

    async def get_credential_by_email(self, email: str) -> Optional[Credential]:
        email = email.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email.lower() == email:
                    return user
        return None

    async def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            self.users[user_id] = replace(
                user, password_hash=password_hash, updated_at=datetime.now(timezone.utc)
            )
            return True

    async def set_credential_disabled(self, user_id: str, disabled: bool) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            self.users[user_id] = replace(
                user, disabled=disabled, updated_at=datetime.now(timezone.utc)
            )
            return True

    # -- session ledger ------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"sid": session.id})
            self.sessions[session.id] = session.copy()
            return session.copy()

    async def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return sess.copy() if sess else None

    async def find_active_session_by_refresh_hash(
        self, refresh_jti_hash: str
    ) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.is_active and sess.refresh_jti_hash == refresh_jti_hash:
                    return sess.copy()
        return None

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            found = [s.copy() for s in self.sessions.values() if s.user_id == user_id]
        return sorted(found, key=lambda s: s.created_at, reverse=True)

    async def rotate_refresh_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        expires_at: datetime,
        now: datetime,
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active or sess.refresh_jti_hash != expected_hash:
                return None
            updated = sess.copy(
                refresh_jti_hash=new_hash,
                rotated_at=now,
                last_seen_at=now,
                expires_at=expires_at,
            )
            self.sessions[session_id] = updated
            return updated.copy()

    async def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess and sess.is_active:
                self.sessions[session_id] = sess.copy(last_seen_at=now)

    async def revoke_session(
        self, session_id: str, reason: RevokeReason, now: datetime
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            self.sessions[session_id] = sess.copy(
                status=SessionStatus.REVOKED, revoked_at=now, revoke_reason=reason
            )
            return True

    async def revoke_user_sessions(
        self,
        user_id: str,
        reason: RevokeReason,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> List[str]:
        revoked: List[str] = []
        with self._data_lock:
            for sid, sess in list(self.sessions.items()):
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_session_id and sid == except_session_id:
                    continue
                self.sessions[sid] = sess.copy(
                    status=SessionStatus.REVOKED, revoked_at=now, revoke_reason=reason
                )
                revoked.append(sid)
        return revoked

    async def expire_stale_sessions(self, now: datetime) -> List[str]:
        expired: List[str] = []
        with self._data_lock:
            for sid, sess in list(self.sessions.items()):
                if sess.is_active and sess.expires_at < now:
                    self.sessions[sid] = sess.copy(status=SessionStatus.EXPIRED)
                    expired.append(sid)
        return expired

    # -- audit / error log ---------------------------------------------

    async def append_audit_entry(self, entry: AuditEntry) -> None:
        with self._data_lock:
            self._audit_seq += 1
            entry.id = self._audit_seq
            self.audit_entries.append(entry)

    async def list_audit_entries(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        with self._data_lock:
            entries = [
                e
                for e in self.audit_entries
                if (user_id is None or e.user_id == user_id)
                and (action is None or e.action == action)
            ]
        entries.sort(key=lambda e: (e.created_at, e.id or 0), reverse=True)
        return entries[:limit]

    async def append_error_log(self, entry: ErrorLogEntry) -> None:
        with self._data_lock:
            self._error_seq += 1
            entry.id = self._error_seq
            self.error_logs.append(entry)

    # -- password reset tokens -----------------------------------------

    async def replace_reset_token(self, token: PasswordResetToken) -> None:
        with self._data_lock:
            for token_hash, existing in list(self.reset_tokens.items()):
                if existing.user_id == token.user_id:
                    del self.reset_tokens[token_hash]
            self.reset_tokens[token.token_hash] = token

    async def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            return self.reset_tokens.get(token_hash)

    async def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[str]:
        with self._data_lock:
            token = self.reset_tokens.get(token_hash)
            if not token or not token.is_usable(now):
                return None
            self.reset_tokens[token_hash] = replace(token, used_at=now)
            return token.user_id

    # -- retention -----------------------------------------------------

    async def purge_error_logs(self, before: datetime) -> int:
        with self._data_lock:
            kept = [e for e in self.error_logs if e.created_at >= before]
            removed = len(self.error_logs) - len(kept)
            self.error_logs = kept
        return removed

    async def purge_audit_entries(self, before: datetime) -> int:
        with self._data_lock:
            kept = [e for e in self.audit_entries if e.created_at >= before]
            removed = len(self.audit_entries) - len(kept)
            self.audit_entries = kept
        return removed

    async def purge_revoked_sessions(self, before: datetime) -> int:
        return self._purge_sessions(
            lambda s: s.status == SessionStatus.REVOKED
            and s.revoked_at is not None
            and s.revoked_at < before
        )

    async def purge_expired_sessions(self, before: datetime) -> int:
        return self._purge_sessions(
            lambda s: s.status == SessionStatus.EXPIRED and s.expires_at < before
        )

    def _purge_sessions(self, predicate) -> int:
        with self._data_lock:
            doomed = [sid for sid, sess in self.sessions.items() if predicate(sess)]
            for sid in doomed:
                del self.sessions[sid]
        return len(doomed)

    async def purge_reset_tokens(self, now: datetime) -> int:
        with self._data_lock:
            doomed = [
                h
                for h, t in self.reset_tokens.items()
                if t.used_at is not None or t.expires_at < now
            ]
            for token_hash in doomed:
                del self.reset_tokens[token_hash]
        return len(doomed)
