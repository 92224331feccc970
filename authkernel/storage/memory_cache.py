from __future__ import annotations

import threading
import time
from typing import Any, Dict, Optional, Set, Tuple

from authkernel.storage.redis_cache import lockout_key


class MemoryCache:
    """Process-local stand-in for :class:`RedisCache` (tests and dev fallback).

    Mirrors the Redis key layout and expiry semantics; state is lost on
    restart and not shared between workers.
    """

    def __init__(self, *, clock=time.monotonic) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._lock = threading.Lock()

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._values.clear()

    def _get(self, key: str) -> Any:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._values[key]
            return None
        return value

    def _set(self, key: str, value: Any, ttl: Optional[int]) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._values[key] = (value, expires_at)

    def _ttl(self, key: str) -> int:
        if self._get(key) is None:
            return 0
        _, expires_at = self._values[key]
        if expires_at is None:
            return 0
        return max(1, int(round(expires_at - self._clock())))

    # -- session verification results ----------------------------------

    async def get_verification(self, session_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._get(f"auth:verify:{session_id}")
            return dict(value) if value else None

    async def set_verification(
        self,
        session_id: str,
        user_id: str,
        payload: Dict[str, Any],
        ttl_seconds: int,
    ) -> None:
        ttl = max(1, int(ttl_seconds))
        with self._lock:
            self._set(f"auth:verify:{session_id}", dict(payload), ttl)
            index_key = f"auth:user_verify:{user_id}"
            members: Set[str] = set(self._get(index_key) or ())
            members.add(session_id)
            self._set(index_key, members, ttl)

    async def delete_verification(self, session_id: str) -> None:
        with self._lock:
            self._values.pop(f"auth:verify:{session_id}", None)

    async def delete_user_verifications(self, user_id: str) -> int:
        with self._lock:
            members = self._get(f"auth:user_verify:{user_id}") or set()
            for session_id in members:
                self._values.pop(f"auth:verify:{session_id}", None)
            self._values.pop(f"auth:user_verify:{user_id}", None)
            return len(members)

    # -- lockout counters -----------------------------------------------

    async def record_lockout_failure(
        self,
        scope: str,
        identifier: str,
        *,
        max_attempts: int,
        window_seconds: int,
        lock_seconds: int,
    ) -> Tuple[bool, int, int]:
        key = lockout_key(scope, identifier)
        with self._lock:
            lock_ttl = self._ttl(f"{key}:locked")
            if lock_ttl > 0:
                return True, -1, lock_ttl
            current = self._get(key)
            if current is None:
                attempts = 1
                self._set(key, attempts, window_seconds)
            else:
                attempts = current + 1
                # INCR keeps the existing expiry
                self._values[key] = (attempts, self._values[key][1])
            if attempts >= max_attempts:
                self._set(f"{key}:locked", 1, lock_seconds)
                self._values.pop(key, None)
                return True, attempts, lock_seconds
            return False, attempts, 0

    async def get_lockout_state(self, scope: str, identifier: str) -> Tuple[int, int]:
        key = lockout_key(scope, identifier)
        with self._lock:
            return int(self._get(key) or 0), self._ttl(f"{key}:locked")

    async def clear_lockout(self, scope: str, identifier: str) -> None:
        key = lockout_key(scope, identifier)
        with self._lock:
            self._values.pop(key, None)
            self._values.pop(f"{key}:locked", None)
