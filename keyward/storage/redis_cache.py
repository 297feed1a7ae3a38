from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis

from keyward.storage.models import ConsumeOutcome, CsrfToken


class RedisCache:
    """Thin Redis wrapper holding CSRF tokens with a native TTL."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic compare-and-delete: the token is removed only when it belongs to
    # the presented session and has not lapsed.
    _CSRF_CONSUME_SCRIPT = """
local data = redis.call('HMGET', KEYS[1], 'session_id', 'expires_at')
if not data[1] then
  return 0
end
if data[1] ~= ARGV[1] then
  return -1
end
if tonumber(data[2]) <= tonumber(ARGV[2]) then
  return -2
end
redis.call('DEL', KEYS[1])
return 1
"""

    _CONSUME_RESULTS = {
        1: ConsumeOutcome.CONSUMED,
        0: ConsumeOutcome.NOT_FOUND,
        -1: ConsumeOutcome.SESSION_MISMATCH,
        -2: ConsumeOutcome.EXPIRED,
    }

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client=None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._csrf_consume = self.client.register_script(self._CSRF_CONSUME_SCRIPT)

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Compute a TTL from an absolute expiry, clamped to at least one second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return max(1, int((expires_at - now).total_seconds()))

    @staticmethod
    def _csrf_key(token: str) -> str:
        return f"security:csrf:{token}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def save_csrf_token(self, token: CsrfToken) -> CsrfToken:
        key = self._csrf_key(token.token)
        pipe = self.client.pipeline()
        pipe.hset(
            key,
            mapping={
                "session_id": token.session_id,
                "expires_at": str(token.expires_at.timestamp()),
            },
        )
        pipe.expire(key, self._ttl_seconds(token.expires_at, token.created_at))
        await pipe.execute()
        return token

    async def consume_csrf_token(
        self, token: str, session_id: str, now: datetime
    ) -> ConsumeOutcome:
        result = await self._csrf_consume(
            keys=[self._csrf_key(token)], args=[session_id, str(now.timestamp())]
        )
        return self._CONSUME_RESULTS.get(int(result), ConsumeOutcome.NOT_FOUND)

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
