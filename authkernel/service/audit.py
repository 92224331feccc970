from __future__ import annotations

from typing import Any, Dict, Optional

from authkernel.logging import get_logger, sanitize_error_message
from authkernel.storage.models import AuditAction, AuditEntry, ErrorLogEntry

logger = get_logger(__name__)

MAX_USER_AGENT_LENGTH = 500


class AuditRecorder:
    """Best-effort writer for the audit trail and the error log.

    A failed write is logged locally and swallowed; it never becomes the
    error of the operation being audited.
    """

    def __init__(self, store: Any) -> None:
        self.store = store

    async def record(
        self,
        action: AuditAction,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        entry = AuditEntry(
            action=action,
            user_id=user_id,
            email=email.strip().lower() if email else None,
            ip_address=ip_address,
            user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
            metadata=dict(metadata or {}),
        )
        try:
            await self.store.append_audit_entry(entry)
        except Exception as exc:
            logger.error(
                "audit_write_failed",
                action=action.value,
                user_id=user_id,
                error_type=type(exc).__name__,
            )
            return False
        return True

    async def record_error(
        self,
        message: str,
        *,
        error_code: Optional[str] = None,
        status_code: Optional[int] = None,
        path: Optional[str] = None,
        method: Optional[str] = None,
        request_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> bool:
        entry = ErrorLogEntry(
            message=sanitize_error_message(message),
            error_code=error_code,
            status_code=status_code,
            path=path,
            method=method,
            request_id=request_id,
            user_id=user_id,
        )
        try:
            await self.store.append_error_log(entry)
        except Exception as exc:
            logger.error(
                "error_log_write_failed",
                error_code=error_code,
                error_type=type(exc).__name__,
            )
            return False
        return True
