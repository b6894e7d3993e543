from __future__ import annotations

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for second-factor attempt tracking."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Atomic check-and-increment with lockout trigger
    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])

local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client keeps the async client off a temporary event loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _lockout_key(user_id: str) -> str:
        return f"mfa:lockout:{user_id}"

    @staticmethod
    def _attempts_key(user_id: str) -> str:
        return f"mfa:attempts:{user_id}"

    async def check_mfa_lockout(self, user_id: str) -> bool:
        """Return True while the user is locked out of second-factor checks."""
        return bool(await self.client.exists(self._lockout_key(user_id)))

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Record a failed attempt and trigger the lockout once the limit is hit.

        Returns:
            Tuple of (is_now_locked_out, current_attempts). ``current_attempts``
            is -1 when the user was already locked out.
        """
        result = await self.client.eval(
            self._MFA_ATTEMPT_SCRIPT,
            2,
            self._lockout_key(user_id),
            self._attempts_key(user_id),
            max_attempts,
            lockout_seconds,
        )
        return (bool(result[0]), int(result[1]))

    async def clear_mfa_attempts(self, user_id: str) -> None:
        """Clear the failed-attempt counter after a successful verification."""
        await self.client.delete(self._attempts_key(user_id))

    async def close(self) -> None:
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
