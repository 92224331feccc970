from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional

from authkernel.logging import get_logger
from authkernel.storage.redis_cache import CACHE_ERRORS

logger = get_logger(__name__)


@dataclass(frozen=True)
class SessionVerification:
    """Last-known-good result of checking a session against the ledger."""

    session_id: str
    user_id: str
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionVerification":
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


Loader = Callable[[], Awaitable[SessionVerification]]


class ValidationCache:
    """Read-through cache in front of the session ledger.

    Concurrent misses for one session collapse into a single in-flight load.
    The ledger stays authoritative: cache errors are treated as misses, and a
    ``None`` backend simply disables the fast path.
    """

    def __init__(self, cache: Any, ttl_seconds: int) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._inflight: Dict[str, asyncio.Future] = {}
        self._inflight_lock = threading.Lock()
        # Bumped by every invalidation; a load that straddles one is not cached
        self._epoch = 0

    async def get(self, session_id: str) -> Optional[SessionVerification]:
        if self.cache is None:
            return None
        try:
            raw = await self.cache.get_verification(session_id)
        except CACHE_ERRORS as exc:
            logger.warning(
                "validation_cache_unavailable",
                operation="get",
                error_type=type(exc).__name__,
            )
            return None
        if not raw:
            return None
        try:
            result = SessionVerification.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            logger.warning("validation_cache_entry_corrupt", session_id=session_id)
            return None
        if result.expires_at <= datetime.now(timezone.utc):
            return None
        return result

    async def put(
        self,
        session_id: str,
        result: SessionVerification,
        ttl: Optional[int] = None,
    ) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set_verification(
                session_id, result.user_id, result.to_dict(), ttl or self.ttl_seconds
            )
        except CACHE_ERRORS as exc:
            logger.warning(
                "validation_cache_unavailable",
                operation="put",
                error_type=type(exc).__name__,
            )

    async def invalidate(self, session_id: str) -> None:
        self._epoch += 1
        with self._inflight_lock:
            self._inflight.pop(session_id, None)
        if self.cache is None:
            return
        try:
            await self.cache.delete_verification(session_id)
        except CACHE_ERRORS as exc:
            logger.warning(
                "validation_cache_unavailable",
                operation="invalidate",
                error_type=type(exc).__name__,
            )

    async def invalidate_user(self, user_id: str) -> int:
        self._epoch += 1
        if self.cache is None:
            return 0
        try:
            return await self.cache.delete_user_verifications(user_id)
        except CACHE_ERRORS as exc:
            logger.warning(
                "validation_cache_unavailable",
                operation="invalidate_user",
                error_type=type(exc).__name__,
            )
            return 0

    def inflight_count(self) -> int:
        with self._inflight_lock:
            return len(self._inflight)

    async def resolve(self, session_id: str, loader: Loader) -> SessionVerification:
        """Return the cached result or run ``loader`` once for all concurrent callers."""
        cached = await self.get(session_id)
        if cached is not None:
            return cached

        with self._inflight_lock:
            pending = self._inflight.get(session_id)
            if pending is None:
                pending = asyncio.ensure_future(
                    self._load(session_id, loader, self._epoch)
                )
                self._inflight[session_id] = pending
                pending.add_done_callback(partial(self._forget, session_id))
        # One caller cancelling must not cancel the load the others await
        return await asyncio.shield(pending)

    def _forget(self, session_id: str, future: asyncio.Future) -> None:
        with self._inflight_lock:
            if self._inflight.get(session_id) is future:
                del self._inflight[session_id]
        if not future.cancelled():
            # Mark the exception retrieved; every waiter already received it
            future.exception()

    async def _load(
        self, session_id: str, loader: Loader, epoch: int
    ) -> SessionVerification:
        result = await loader()
        if epoch == self._epoch:
            await self.put(session_id, result)
        return result
