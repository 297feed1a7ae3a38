from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.codec import hash_token, random_token
from keyward.service.errors import ValidationError
from keyward.storage.models import RefreshToken

logger = get_logger(__name__)


class RefreshTokenStore(Protocol):
    def save_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> bool: ...

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...


@dataclass
class IssuedRefreshToken:
    token: str
    token_hash: str
    expires_at: datetime


class RefreshTokenService:
    """Device-scoped refresh token records, kept only as hashes."""

    def __init__(
        self,
        store: RefreshTokenStore,
        settings: Settings,
        *,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.records = store
        self.settings = settings
        self.logger = logger
        self._now_fn = now_fn

    def _now(self) -> datetime:
        if self._now_fn is not None:
            return self._now_fn()
        return datetime.now(timezone.utc)

    def issue(
        self,
        user_id: str,
        *,
        device_info: Optional[str] = None,
        origin_addr: Optional[str] = None,
    ) -> IssuedRefreshToken:
        """Mint a raw token, persist its hash and return both."""

        raw = random_token(32)
        expires_at = self._now() + self.settings.refresh_token_ttl
        record = self.store(
            user_id,
            hash_token(raw),
            device_info=device_info,
            origin_addr=origin_addr,
            expires_at=expires_at,
        )
        return IssuedRefreshToken(
            token=raw, token_hash=record.token_hash, expires_at=record.expires_at
        )

    def store(
        self,
        user_id: str,
        token_hash: str,
        *,
        device_info: Optional[str] = None,
        origin_addr: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> RefreshToken:
        if not token_hash:
            raise ValidationError("token hash is required", detail={"field": "token_hash"})
        now = self._now()
        record = self.records.save_refresh_token(
            RefreshToken(
                token_hash=token_hash,
                user_id=user_id,
                device_info=device_info,
                origin_addr=origin_addr,
                created_at=now,
                expires_at=expires_at or now + self.settings.refresh_token_ttl,
            )
        )
        self.logger.info("refresh_token_stored", user_id=user_id, device=device_info)
        return record

    def validate(self, token_hash: str) -> Optional[str]:
        """Owning user id, or None for any unknown, revoked or expired token."""

        record = self.records.get_refresh_token(token_hash) if token_hash else None
        if record is None:
            reason = "not_found"
        elif record.revoked_at is not None:
            reason = "revoked"
        elif record.expires_at <= self._now():
            reason = "expired"
        else:
            return record.user_id
        self.logger.info(
            "refresh_token_rejected", reason=reason, token_prefix=(token_hash or "")[:8]
        )
        return None

    def revoke(self, token_hash: str) -> None:
        if self.records.revoke_refresh_token(token_hash, self._now()):
            self.logger.info("refresh_token_revoked", token_prefix=token_hash[:8])

    def revoke_all(self, user_id: str) -> int:
        revoked = self.records.revoke_user_refresh_tokens(user_id, self._now())
        self.logger.info("refresh_tokens_revoked", user_id=user_id, count=revoked)
        return revoked

    def purge_expired(self) -> int:
        return self.records.delete_expired_refresh_tokens(self._now())
