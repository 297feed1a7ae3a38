from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.codec import hash_token, random_token
from keyward.service.email import Notifier
from keyward.service.errors import (
    ConflictError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from keyward.service.hashing import SecretHasher
from keyward.service.tokens import EphemeralTokenManager, EphemeralTokenStore
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import TokenPurpose, User

logger = get_logger(__name__)

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 100
_PASSWORD_CLASSES = (
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"\d"), "a digit"),
    (re.compile(r"[^A-Za-z0-9]"), "a special character"),
)


class AccountStore(EphemeralTokenStore, Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def mark_email_verified(self, user_id: str, email: str) -> Optional[User]: ...

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int: ...


def validate_password_strength(password: str) -> None:
    if not password or not (
        PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH
    ):
        raise ValidationError(
            f"password must be {PASSWORD_MIN_LENGTH}-{PASSWORD_MAX_LENGTH} characters",
            detail={"field": "password"},
        )
    missing = [label for pattern, label in _PASSWORD_CLASSES if not pattern.search(password)]
    if missing:
        raise ValidationError(
            "password must contain " + ", ".join(missing),
            detail={"field": "password"},
        )


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]


class AccountSecurityService:
    """Password reset, password change and email verification flows."""

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        *,
        hasher: SecretHasher,
        notifier: Optional[Notifier] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.notifier = notifier
        self.logger = logger
        self._now_fn = now_fn
        self.reset_tokens = EphemeralTokenManager(
            store,
            TokenPurpose.PASSWORD_RESET,
            ttl=settings.password_reset_ttl,
            token_bytes=settings.ephemeral_token_bytes,
            hash_at_rest=True,
            now_fn=now_fn,
        )
        self.verification_tokens = EphemeralTokenManager(
            store,
            TokenPurpose.EMAIL_VERIFICATION,
            ttl=settings.email_verification_ttl,
            token_bytes=settings.ephemeral_token_bytes,
            hash_at_rest=False,
            now_fn=now_fn,
        )

    def _now(self) -> datetime:
        if self._now_fn is not None:
            return self._now_fn()
        return datetime.now(timezone.utc)

    def _hash_password(self, password: str) -> tuple[str, str]:
        return self.hasher.hash(password), self.hasher.algorithm

    def request_password_reset(self, email: str) -> None:
        """Issue a reset token for a known address; silently do nothing otherwise."""

        user = self.store.get_user_by_email(email.strip())
        if not user:
            # Mint and hash a throwaway token so both branches do comparable work.
            hash_token(random_token(self.settings.ephemeral_token_bytes))
            self.logger.info(
                "password_reset_requested",
                email_hash=_email_hash(email),
                known_account=False,
            )
            return None
        token = self.reset_tokens.issue(user.id)
        self.logger.info(
            "password_reset_requested", email_hash=_email_hash(email), known_account=True
        )
        if self.notifier:
            self.notifier.send_password_reset(user.email, token)
        return None

    def reset_password(self, raw_token: str, new_password: str) -> None:
        validate_password_strength(new_password)
        consumed = self.reset_tokens.consume(raw_token)
        user_id = consumed.subject_id
        pwd_hash, algo = self._hash_password(new_password)
        try:
            self.store.save_password(user_id, pwd_hash, algo)
        except ConstraintViolation as exc:
            raise NotFoundError("user not found", detail=exc.detail) from exc
        revoked = self.store.revoke_user_refresh_tokens(user_id, self._now())
        self.logger.info(
            "password_reset_completed", user_id=user_id, refresh_tokens_revoked=revoked
        )
        if self.notifier:
            user = self.store.get_user(user_id)
            if user:
                self.notifier.send_password_changed(user.email, sessions_revoked=True)

    def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        record = self.store.get_password_record(user_id)
        if not record or record[1] != self.hasher.algorithm:
            self.logger.warning("password_record_missing", user_id=user_id)
            raise UnauthorizedError("current password is incorrect")
        if not self.hasher.verify(record[0], current_password or ""):
            self.logger.warning("password_change_rejected", user_id=user_id)
            raise UnauthorizedError("current password is incorrect")
        validate_password_strength(new_password)
        pwd_hash, algo = self._hash_password(new_password)
        self.store.save_password(user_id, pwd_hash, algo)
        self.logger.info("password_changed", user_id=user_id)
        if self.notifier:
            self.notifier.send_password_changed(user.email)

    def send_email_verification(
        self, user_id: str, target_email: Optional[str] = None
    ) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        email = (target_email or user.email).strip()
        owner = self.store.get_user_by_email(email)
        if owner and owner.id != user_id:
            raise ConflictError("email already in use", detail={"field": "email"})
        token = self.verification_tokens.issue(user_id, {"email": email})
        self.logger.info(
            "email_verification_sent",
            user_id=user_id,
            email_hash=_email_hash(email),
            changes_address=email != user.email,
        )
        if self.notifier:
            self.notifier.send_email_verification(email, token)

    def verify_email(self, raw_token: str) -> User:
        consumed = self.verification_tokens.consume(raw_token)
        user = self.store.get_user(consumed.subject_id)
        if not user:
            raise NotFoundError("user not found")
        email = consumed.payload.get("email") or user.email
        try:
            updated = self.store.mark_email_verified(user.id, email)
        except ConstraintViolation as exc:
            raise ConflictError("email already in use", detail=exc.detail) from exc
        if not updated:
            raise NotFoundError("user not found")
        self.logger.info("email_verified", user_id=user.id)
        return updated

    def email_verification_status(self, user_id: str) -> dict:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return {
            "is_verified": user.is_email_verified,
            "email": user.email,
            "pending_verification": self.verification_tokens.has_pending(user_id),
        }
