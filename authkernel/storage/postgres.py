from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

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
from authkernel.storage.unit_of_work import Database, UnitOfWork, current_unit

logger = get_logger(__name__)

_SESSION_COLUMNS = (
    "sid, user_id, refresh_jti_hash, status, created_at, expires_at, last_seen_at, "
    "rotated_at, revoked_at, revoke_reason, ip_address, user_agent"
)


def _session_from_row(row: Dict[str, Any]) -> Session:
    reason = row.get("revoke_reason")
    return Session(
        id=str(row["sid"]),
        user_id=str(row["user_id"]),
        refresh_jti_hash=row["refresh_jti_hash"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        status=SessionStatus(row["status"]),
        last_seen_at=row.get("last_seen_at"),
        rotated_at=row.get("rotated_at"),
        revoked_at=row.get("revoked_at"),
        revoke_reason=RevokeReason(reason) if reason else None,
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
    )


def _credential_from_row(row: Dict[str, Any]) -> Credential:
    return Credential(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        name=row.get("name"),
        role=row.get("role") or "member",
        disabled=bool(row.get("disabled")),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _reset_token_from_row(row: Dict[str, Any]) -> PasswordResetToken:
    return PasswordResetToken(
        token_hash=row["token_hash"],
        user_id=str(row["user_id"]),
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        used_at=row.get("used_at"),
    )


def _audit_from_row(row: Dict[str, Any]) -> AuditEntry:
    metadata = row.get("metadata") or {}
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return AuditEntry(
        id=row.get("id"),
        action=AuditAction(row["action"]),
        user_id=str(row["user_id"]) if row.get("user_id") else None,
        email=row.get("email"),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        metadata=metadata,
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed credential store, session ledger, audit and error log.

    Every method runs inside the unit of work bound to the current task, or
    opens a short one of its own when called outside a request.
    """

    def __init__(self, database: Database) -> None:
        self.db = database

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[UnitOfWork]:
        async with self.db.unit_of_work() as uow:
            yield uow

    @asynccontextmanager
    async def detached(self) -> AsyncIterator[UnitOfWork]:
        async with self.db.detached() as uow:
            yield uow

    @asynccontextmanager
    async def savepoint(self, name: Optional[str] = None) -> AsyncIterator[str]:
        async with self.db.unit_of_work() as uow:
            async with uow.savepoint(name) as sp:
                yield sp

    async def after_commit(self, callback: Callable[[], Awaitable[None]]) -> None:
        """Defer ``callback`` until the enclosing unit commits; run it now outside one."""
        unit = current_unit()
        if unit is None or not unit.in_transaction:
            await callback()
            return
        unit.on_commit(callback)

    async def open(self) -> None:
        await self.db.open()

    async def close(self) -> None:
        await self.db.close()

    # -- credentials ---------------------------------------------------

    async def create_credential(self, credential: Credential) -> Credential:
        async with self.unit_of_work() as uow:
            try:
                row = await uow.insert(
                    "users",
                    {
                        "id": credential.id,
                        "email": credential.email,
                        "password_hash": credential.password_hash,
                        "name": credential.name,
                        "role": credential.role,
                        "disabled": credential.disabled,
                        "created_at": credential.created_at,
                        "updated_at": credential.updated_at,
                    },
                )
            except ConstraintViolation as exc:
                raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return _credential_from_row(row)

    async def get_credential(self, user_id: str) -> Optional[Credential]:
        async with self.unit_of_work() as uow:
            row = await uow.find_one("users", {"id": user_id})
        return _credential_from_row(row) if row else None

    async def get_credential_by_email(self, email: str) -> Optional[Credential]:
        async with self.unit_of_work() as uow:
            row = await uow.fetch_one(
                "SELECT * FROM users WHERE lower(email) = lower(%s) LIMIT 1",
                (email.strip(),),
            )
        return _credential_from_row(row) if row else None

    async def update_password_hash(self, user_id: str, password_hash: str) -> bool:
        async with self.unit_of_work() as uow:
            count = await uow.update(
                "users",
                {"password_hash": password_hash, "updated_at": datetime.now(timezone.utc)},
                {"id": user_id},
            )
        return count > 0

    async def set_credential_disabled(self, user_id: str, disabled: bool) -> bool:
        async with self.unit_of_work() as uow:
            count = await uow.update(
                "users",
                {"disabled": disabled, "updated_at": datetime.now(timezone.utc)},
                {"id": user_id},
            )
        return count > 0

    # -- session ledger ------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        async with self.unit_of_work() as uow:
            row = await uow.insert(
                "user_sessions",
                {
                    "sid": session.id,
                    "user_id": session.user_id,
                    "refresh_jti_hash": session.refresh_jti_hash,
                    "status": session.status.value,
                    "created_at": session.created_at,
                    "expires_at": session.expires_at,
                    "last_seen_at": session.last_seen_at,
                    "ip_address": session.ip_address,
                    "user_agent": session.user_agent,
                },
            )
        return _session_from_row(row)

    async def get_session(self, session_id: str) -> Optional[Session]:
        async with self.unit_of_work() as uow:
            row = await uow.fetch_one(
                f"SELECT {_SESSION_COLUMNS} FROM user_sessions WHERE sid = %s",
                (session_id,),
            )
        return _session_from_row(row) if row else None

    async def find_active_session_by_refresh_hash(
        self, refresh_jti_hash: str
    ) -> Optional[Session]:
        async with self.unit_of_work() as uow:
            row = await uow.fetch_one(
                f"SELECT {_SESSION_COLUMNS} FROM user_sessions "
                "WHERE refresh_jti_hash = %s AND status = 'active' LIMIT 1",
                (refresh_jti_hash,),
            )
        return _session_from_row(row) if row else None

    async def list_user_sessions(self, user_id: str) -> List[Session]:
        async with self.unit_of_work() as uow:
            rows = await uow.fetch_all(
                f"SELECT {_SESSION_COLUMNS} FROM user_sessions "
                "WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            )
        return [_session_from_row(row) for row in rows]

    async def rotate_refresh_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        expires_at: datetime,
        now: datetime,
    ) -> Optional[Session]:
        """Swap the refresh hash only if it still equals ``expected_hash``.

        The row lock taken by the UPDATE serializes concurrent rotations; the
        loser re-evaluates the predicate after the winner commits and matches
        nothing.
        """
        async with self.unit_of_work() as uow:
            row = await uow.fetch_one(
                "UPDATE user_sessions "
                "SET refresh_jti_hash = %s, rotated_at = %s, last_seen_at = %s, expires_at = %s "
                "WHERE sid = %s AND status = 'active' AND refresh_jti_hash = %s "
                f"RETURNING {_SESSION_COLUMNS}",
                (new_hash, now, now, expires_at, session_id, expected_hash),
            )
        return _session_from_row(row) if row else None

    async def touch_session(self, session_id: str, now: datetime) -> None:
        async with self.unit_of_work() as uow:
            await uow.execute(
                "UPDATE user_sessions SET last_seen_at = %s WHERE sid = %s AND status = 'active'",
                (now, session_id),
            )

    async def revoke_session(
        self, session_id: str, reason: RevokeReason, now: datetime
    ) -> bool:
        async with self.unit_of_work() as uow:
            count = await uow.execute_rowcount(
                "UPDATE user_sessions SET status = 'revoked', revoked_at = %s, revoke_reason = %s "
                "WHERE sid = %s AND status = 'active'",
                (now, reason.value, session_id),
            )
        return count > 0

    async def revoke_user_sessions(
        self,
        user_id: str,
        reason: RevokeReason,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> List[str]:
        async with self.unit_of_work() as uow:
            rows = await uow.fetch_all(
                "UPDATE user_sessions SET status = 'revoked', revoked_at = %s, revoke_reason = %s "
                "WHERE user_id = %s AND status = 'active' "
                "AND (%s::uuid IS NULL OR sid <> %s::uuid) RETURNING sid",
                (now, reason.value, user_id, except_session_id, except_session_id),
            )
        return [str(row["sid"]) for row in rows]

    async def expire_stale_sessions(self, now: datetime) -> List[str]:
        async with self.unit_of_work() as uow:
            rows = await uow.fetch_all(
                "UPDATE user_sessions SET status = 'expired' "
                "WHERE status = 'active' AND expires_at < %s RETURNING sid",
                (now,),
            )
        return [str(row["sid"]) for row in rows]

    # -- audit / error log ---------------------------------------------

    async def append_audit_entry(self, entry: AuditEntry) -> None:
        async with self.detached() as uow:
            await uow.insert(
                "audit_logs",
                {
                    "action": entry.action.value,
                    "user_id": entry.user_id,
                    "email": entry.email,
                    "ip_address": entry.ip_address,
                    "user_agent": entry.user_agent,
                    "metadata": json.dumps(entry.metadata or {}),
                    "created_at": entry.created_at,
                },
            )

    async def list_audit_entries(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        clauses = ["TRUE"]
        params: List[Any] = []
        if user_id:
            clauses.append("user_id = %s")
            params.append(user_id)
        if action:
            clauses.append("action = %s")
            params.append(action.value)
        params.append(limit)
        async with self.unit_of_work() as uow:
            rows = await uow.fetch_all(
                "SELECT * FROM audit_logs WHERE "
                + " AND ".join(clauses)
                + " ORDER BY created_at DESC LIMIT %s",
                params,
            )
        return [_audit_from_row(row) for row in rows]

    async def append_error_log(self, entry: ErrorLogEntry) -> None:
        async with self.detached() as uow:
            await uow.insert(
                "error_logs",
                {
                    "message": entry.message,
                    "error_code": entry.error_code,
                    "status_code": entry.status_code,
                    "path": entry.path,
                    "method": entry.method,
                    "request_id": entry.request_id,
                    "user_id": entry.user_id,
                    "created_at": entry.created_at,
                },
            )

    # -- password reset tokens -----------------------------------------

    async def replace_reset_token(self, token: PasswordResetToken) -> None:
        async with self.unit_of_work() as uow:
            await uow.delete("password_reset_tokens", {"user_id": token.user_id})
            await uow.insert(
                "password_reset_tokens",
                {
                    "token_hash": token.token_hash,
                    "user_id": token.user_id,
                    "expires_at": token.expires_at,
                    "created_at": token.created_at,
                },
            )

    async def get_reset_token(self, token_hash: str) -> Optional[PasswordResetToken]:
        async with self.unit_of_work() as uow:
            row = await uow.find_one("password_reset_tokens", {"token_hash": token_hash})
        return _reset_token_from_row(row) if row else None

    async def consume_reset_token(self, token_hash: str, now: datetime) -> Optional[str]:
        """Mark an unused, unexpired token used; returns its user id on success."""
        async with self.unit_of_work() as uow:
            row = await uow.fetch_one(
                "UPDATE password_reset_tokens SET used_at = %s "
                "WHERE token_hash = %s AND used_at IS NULL AND expires_at > %s "
                "RETURNING user_id",
                (now, token_hash, now),
            )
        return str(row["user_id"]) if row else None

    # -- retention -----------------------------------------------------

    async def purge_error_logs(self, before: datetime) -> int:
        async with self.unit_of_work() as uow:
            return await uow.execute_rowcount(
                "DELETE FROM error_logs WHERE created_at < %s", (before,)
            )

    async def purge_audit_entries(self, before: datetime) -> int:
        async with self.unit_of_work() as uow:
            return await uow.execute_rowcount(
                "DELETE FROM audit_logs WHERE created_at < %s", (before,)
            )

    async def purge_revoked_sessions(self, before: datetime) -> int:
        async with self.unit_of_work() as uow:
            return await uow.execute_rowcount(
                "DELETE FROM user_sessions WHERE status = 'revoked' AND revoked_at < %s",
                (before,),
            )

    async def purge_expired_sessions(self, before: datetime) -> int:
        async with self.unit_of_work() as uow:
            return await uow.execute_rowcount(
                "DELETE FROM user_sessions WHERE status = 'expired' AND expires_at < %s",
                (before,),
            )

    async def purge_reset_tokens(self, now: datetime) -> int:
        async with self.unit_of_work() as uow:
            return await uow.execute_rowcount(
                "DELETE FROM password_reset_tokens WHERE used_at IS NOT NULL OR expires_at < %s",
                (now,),
            )
