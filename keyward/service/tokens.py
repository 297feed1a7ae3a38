from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol

from keyward.logging import get_logger
from keyward.service.codec import hash_token, random_token
from keyward.service.errors import AlreadyUsedError, ExpiredError, NotFoundError
from keyward.storage.models import (
    ConsumeOutcome,
    ConsumeResult,
    EphemeralToken,
    TokenPurpose,
)

logger = get_logger(__name__)


class EphemeralTokenStore(Protocol):
    def issue_ephemeral_token(self, token: EphemeralToken) -> EphemeralToken: ...

    def consume_ephemeral_token(
        self, purpose: TokenPurpose, token_key: str, now: datetime
    ) -> ConsumeResult: ...

    def has_pending_ephemeral_token(
        self, subject_id: str, purpose: TokenPurpose, now: datetime
    ) -> bool: ...

    def delete_expired_ephemeral_tokens(self, now: datetime) -> int: ...


@dataclass
class ConsumedToken:
    subject_id: str
    payload: Dict


class EphemeralTokenManager:
    """Single-use, time-boxed tokens bound to one subject and purpose.

    ``hash_at_rest`` selects whether the store keeps a sha256 digest of the
    token (password resets) or the token itself (email verification, where
    the row also carries the pending address).
    """

    def __init__(
        self,
        store: EphemeralTokenStore,
        purpose: TokenPurpose,
        *,
        ttl: timedelta,
        token_bytes: int = 32,
        hash_at_rest: bool = True,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.purpose = purpose
        self.ttl = ttl
        self.token_bytes = token_bytes
        self.hash_at_rest = hash_at_rest
        self.logger = logger
        self._now_fn = now_fn

    def _now(self) -> datetime:
        if self._now_fn is not None:
            return self._now_fn()
        return datetime.now(timezone.utc)

    def _key(self, raw_token: str) -> str:
        return hash_token(raw_token) if self.hash_at_rest else raw_token

    def issue(self, subject_id: str, payload: Optional[Dict] = None) -> str:
        """Invalidate pending tokens for the subject and mint a new one."""

        now = self._now()
        raw = random_token(self.token_bytes)
        self.store.issue_ephemeral_token(
            EphemeralToken(
                subject_id=subject_id,
                purpose=self.purpose,
                token_key=self._key(raw),
                payload=dict(payload or {}),
                created_at=now,
                expires_at=now + self.ttl,
            )
        )
        self.logger.info(
            "ephemeral_token_issued", purpose=self.purpose.value, subject_id=subject_id
        )
        return raw

    def consume(self, raw_token: str) -> ConsumedToken:
        if not raw_token:
            raise NotFoundError("token not found")
        result = self.store.consume_ephemeral_token(
            self.purpose, self._key(raw_token), self._now()
        )
        if result.outcome != ConsumeOutcome.CONSUMED:
            self.logger.warning(
                "ephemeral_token_rejected",
                purpose=self.purpose.value,
                reason=result.outcome.value,
                token_prefix=raw_token[:8],
            )
        if result.outcome == ConsumeOutcome.NOT_FOUND:
            raise NotFoundError("token not found")
        if result.outcome == ConsumeOutcome.ALREADY_USED:
            raise AlreadyUsedError("token has already been used")
        if result.outcome == ConsumeOutcome.EXPIRED:
            raise ExpiredError("token has expired")
        token = result.token
        self.logger.info(
            "ephemeral_token_consumed",
            purpose=self.purpose.value,
            subject_id=token.subject_id,
        )
        return ConsumedToken(subject_id=token.subject_id, payload=dict(token.payload))

    def has_pending(self, subject_id: str) -> bool:
        return self.store.has_pending_ephemeral_token(
            subject_id, self.purpose, self._now()
        )

    def purge_expired(self) -> int:
        # Rows are shared by every purpose; the delete covers all of them.
        return self.store.delete_expired_ephemeral_tokens(self._now())
