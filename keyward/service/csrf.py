from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.codec import random_token
from keyward.storage.models import ConsumeOutcome, CsrfToken
from keyward.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class CsrfStore(Protocol):
    def save_csrf_token(self, token: CsrfToken) -> CsrfToken: ...

    def consume_csrf_token(
        self, token: str, session_id: str, now: datetime
    ) -> ConsumeOutcome: ...

    def delete_expired_csrf_tokens(self, now: datetime) -> int: ...


@dataclass
class IssuedCsrfToken:
    token: str
    expires_at: datetime


class CsrfService:
    """Session-bound one-time CSRF tokens.

    Tokens live in Redis when a cache is configured and in the record store
    otherwise. Either way validation is a single compare-and-delete.
    """

    def __init__(
        self,
        store: CsrfStore,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.logger = logger
        self._now_fn = now_fn

    def _now(self) -> datetime:
        if self._now_fn is not None:
            return self._now_fn()
        return datetime.now(timezone.utc)

    async def generate(self, session_id: str) -> IssuedCsrfToken:
        now = self._now()
        record = CsrfToken(
            token=random_token(32),
            session_id=session_id,
            created_at=now,
            expires_at=now + self.settings.csrf_token_ttl,
        )
        if self.cache:
            await self.cache.save_csrf_token(record)
        else:
            self.store.save_csrf_token(record)
        return IssuedCsrfToken(token=record.token, expires_at=record.expires_at)

    async def validate(self, token: str, session_id: str) -> bool:
        if not token or not session_id:
            return False
        now = self._now()
        if self.cache:
            outcome = await self.cache.consume_csrf_token(token, session_id, now)
        else:
            outcome = self.store.consume_csrf_token(token, session_id, now)
        if outcome != ConsumeOutcome.CONSUMED:
            self.logger.warning(
                "csrf_token_rejected",
                reason=outcome.value,
                session_id=session_id,
                token_prefix=token[:8],
            )
            return False
        return True

    def purge_expired(self) -> int:
        # Redis expires its keys natively; only the record store needs sweeping.
        return self.store.delete_expired_csrf_tokens(self._now())
