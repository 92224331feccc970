from __future__ import annotations

import asyncio
import hashlib
import json
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

# Failures a cache consumer degrades on instead of propagating
CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


def lockout_key(scope: str, identifier: str) -> str:
    """Collision-resistant lockout counter key.

    Identifiers (emails, client addresses) are hashed so keys never carry
    personal data and cannot contain delimiter characters.
    """
    digest = hashlib.sha256(identifier.strip().lower().encode()).hexdigest()
    return f"lockout:{scope}:{digest}"


class RedisCache:
    """Thin Redis wrapper for session verification results and lockout counters."""

    # Atomic failed-attempt bookkeeping: honour an existing lock, count the
    # failure, start the window on the first attempt, and on reaching the
    # threshold set the lock and clear the running counter.
    _LOCKOUT_FAILURE_SCRIPT = """
local lock_ttl = redis.call('TTL', KEYS[1])
if lock_ttl > 0 then
  return {1, -1, lock_ttl}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end

if attempts >= tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], '1', 'EX', ARGV[3])
  redis.call('DEL', KEYS[2])
  return {1, attempts, tonumber(ARGV[3])}
end

return {0, attempts, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._lockout_failure = self.client.register_script(self._LOCKOUT_FAILURE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived synchronous client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()

    # -- session verification results ----------------------------------

    async def get_verification(self, session_id: str) -> Optional[Dict[str, Any]]:
        raw = await self.client.get(f"auth:verify:{session_id}")
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None

    async def set_verification(
        self,
        session_id: str,
        user_id: str,
        payload: Dict[str, Any],
        ttl_seconds: int,
    ) -> None:
        ttl = max(1, int(ttl_seconds))
        pipe = self.client.pipeline()
        pipe.set(f"auth:verify:{session_id}", json.dumps(payload), ex=ttl)
        # Per-user index for bulk invalidation on revokeAll / reuse
        pipe.sadd(f"auth:user_verify:{user_id}", session_id)
        pipe.expire(f"auth:user_verify:{user_id}", ttl)
        await pipe.execute()

    async def delete_verification(self, session_id: str) -> None:
        await self.client.delete(f"auth:verify:{session_id}")

    async def delete_user_verifications(self, user_id: str) -> int:
        index_key = f"auth:user_verify:{user_id}"
        session_ids = await self.client.smembers(index_key)
        pipe = self.client.pipeline()
        for session_id in session_ids:
            pipe.delete(f"auth:verify:{session_id}")
        pipe.delete(index_key)
        await pipe.execute()
        return len(session_ids)

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
        """Returns ``(locked, attempts, lock_ttl_seconds)``; attempts is -1 when already locked."""
        key = lockout_key(scope, identifier)
        locked, attempts, lock_ttl = await self._lockout_failure(
            keys=[f"{key}:locked", key],
            args=[max_attempts, window_seconds, lock_seconds],
        )
        return bool(int(locked)), int(attempts), int(lock_ttl)

    async def get_lockout_state(self, scope: str, identifier: str) -> Tuple[int, int]:
        """Returns ``(attempts, lock_ttl_seconds)`` without mutating anything."""
        key = lockout_key(scope, identifier)
        pipe = self.client.pipeline()
        pipe.get(key)
        pipe.ttl(f"{key}:locked")
        attempts, lock_ttl = await pipe.execute()
        return int(attempts or 0), max(0, int(lock_ttl or 0))

    async def clear_lockout(self, scope: str, identifier: str) -> None:
        key = lockout_key(scope, identifier)
        await self.client.delete(key, f"{key}:locked")
