"""Counter-based brute-force throttle keyed by email and by client address.

Counters live in the cache with bounded expiry. When the cache cannot be
reached the guard fails open: login availability takes priority over
throttling during an outage, and every such decision is logged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.storage.redis_cache import CACHE_ERRORS

logger = get_logger(__name__)

EMAIL_SCOPE = "email"
IP_SCOPE = "ip"


@dataclass(frozen=True)
class LockoutPolicy:
    max_attempts: int
    window_seconds: int
    lock_seconds: int


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    scope: str
    remaining_attempts: int
    retry_after_seconds: int = 0

    @classmethod
    def open(cls, scope: str, policy: LockoutPolicy) -> "LockoutStatus":
        return cls(locked=False, scope=scope, remaining_attempts=policy.max_attempts)

    def detail(self) -> dict:
        return {
            "scope": self.scope,
            "retry_after_seconds": self.retry_after_seconds,
            "remaining_attempts": self.remaining_attempts,
        }


def most_restrictive(first: LockoutStatus, second: Optional[LockoutStatus]) -> LockoutStatus:
    """A lock beats no lock, the longer lock beats the shorter, else fewer attempts left wins."""
    if second is None:
        return first
    if first.locked != second.locked:
        return first if first.locked else second
    if first.locked:
        return first if first.retry_after_seconds >= second.retry_after_seconds else second
    return first if first.remaining_attempts <= second.remaining_attempts else second


class LockoutGuard:
    def __init__(
        self,
        cache: Any,
        *,
        email_policy: LockoutPolicy,
        ip_policy: LockoutPolicy,
    ) -> None:
        self.cache = cache
        self.email_policy = email_policy
        self.ip_policy = ip_policy

    @classmethod
    def from_settings(cls, cache: Any, settings: Settings) -> "LockoutGuard":
        return cls(
            cache,
            email_policy=LockoutPolicy(
                settings.lockout_email_max_attempts,
                settings.lockout_email_window_seconds,
                settings.lockout_email_lock_seconds,
            ),
            ip_policy=LockoutPolicy(
                settings.lockout_ip_max_attempts,
                settings.lockout_ip_window_seconds,
                settings.lockout_ip_lock_seconds,
            ),
        )

    def _policy(self, scope: str) -> LockoutPolicy:
        return self.email_policy if scope == EMAIL_SCOPE else self.ip_policy

    async def _record(self, scope: str, identifier: str) -> LockoutStatus:
        policy = self._policy(scope)
        if self.cache is None:
            return LockoutStatus.open(scope, policy)
        try:
            locked, attempts, lock_ttl = await self.cache.record_lockout_failure(
                scope,
                identifier,
                max_attempts=policy.max_attempts,
                window_seconds=policy.window_seconds,
                lock_seconds=policy.lock_seconds,
            )
        except CACHE_ERRORS as exc:
            logger.warning(
                "lockout_cache_unavailable",
                operation="record_failure",
                scope=scope,
                error_type=type(exc).__name__,
                fail_open=True,
            )
            return LockoutStatus.open(scope, policy)
        if locked:
            if attempts >= policy.max_attempts:
                logger.warning("lockout_triggered", scope=scope, lock_seconds=lock_ttl)
            return LockoutStatus(True, scope, 0, lock_ttl)
        return LockoutStatus(False, scope, max(0, policy.max_attempts - attempts))

    async def _check(self, scope: str, identifier: str) -> LockoutStatus:
        policy = self._policy(scope)
        if self.cache is None:
            return LockoutStatus.open(scope, policy)
        try:
            attempts, lock_ttl = await self.cache.get_lockout_state(scope, identifier)
        except CACHE_ERRORS as exc:
            logger.warning(
                "lockout_cache_unavailable",
                operation="check",
                scope=scope,
                error_type=type(exc).__name__,
                fail_open=True,
            )
            return LockoutStatus.open(scope, policy)
        if lock_ttl > 0:
            return LockoutStatus(True, scope, 0, lock_ttl)
        return LockoutStatus(False, scope, max(0, policy.max_attempts - attempts))

    async def record_failure(self, email: str, ip: Optional[str] = None) -> LockoutStatus:
        email_status = await self._record(EMAIL_SCOPE, email)
        ip_status = await self._record(IP_SCOPE, ip) if ip else None
        return most_restrictive(email_status, ip_status)

    async def check_locked(self, email: str, ip: Optional[str] = None) -> LockoutStatus:
        email_status = await self._check(EMAIL_SCOPE, email)
        ip_status = await self._check(IP_SCOPE, ip) if ip else None
        return most_restrictive(email_status, ip_status)

    async def clear_on_success(self, email: str) -> None:
        """Reset the email-scoped counter and lock; ip-scoped state is left alone."""
        if self.cache is None:
            return
        try:
            await self.cache.clear_lockout(EMAIL_SCOPE, email)
        except CACHE_ERRORS as exc:
            logger.warning(
                "lockout_cache_unavailable",
                operation="clear",
                scope=EMAIL_SCOPE,
                error_type=type(exc).__name__,
            )
