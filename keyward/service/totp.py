"""TOTP two-factor enrollment, verification and backup codes.

Code derivation is delegated to :mod:`pyotp` (RFC 6238, HMAC-SHA1). The seed
is stored only through the injected :class:`SecretCipher`, and backup codes
only as adaptive hashes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol, Union

import pyotp

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.codec import base32_encode, random_bytes
from keyward.service.crypto import SecretCipher, SecretDecryptError
from keyward.service.errors import (
    AlreadyEnabledError,
    InvalidCodeError,
    NoPendingEnrollmentError,
    NotEnabledError,
    NotFoundError,
    ValidationError,
)
from keyward.service.hashing import SecretHasher
from keyward.storage.models import TwoFactorCredential, User

logger = get_logger(__name__)

_BACKUP_CODE_RE = re.compile(r"^([0-9A-F]{4})-?([0-9A-F]{4})$")
BACKUP_CODE_BYTES = 4


class TwoFactorStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorCredential]: ...

    def begin_two_factor_enrollment(
        self,
        user_id: str,
        secret_blob: str,
        secret_version: int,
        backup_code_hashes: List[str],
        now: datetime,
    ) -> Optional[TwoFactorCredential]: ...

    def enable_two_factor(self, user_id: str, secret_blob: str, now: datetime) -> bool: ...

    def remove_backup_code(self, user_id: str, code_hash: str, now: datetime) -> bool: ...

    def replace_backup_codes(
        self, user_id: str, backup_code_hashes: List[str], now: datetime
    ) -> bool: ...

    def disable_two_factor(self, user_id: str, now: datetime) -> bool: ...


@dataclass
class Enrollment:
    secret: str
    enrollment_uri: str
    backup_codes: List[str]


def derive_code(
    secret: str,
    for_time: Union[datetime, int, float],
    *,
    digits: int = 6,
    interval: int = 30,
) -> str:
    """Return the code for the time step containing ``for_time``."""

    if not isinstance(for_time, datetime):
        for_time = datetime.fromtimestamp(int(for_time), tz=timezone.utc)
    return pyotp.TOTP(secret, digits=digits, interval=interval).at(for_time)


def generate_backup_code() -> str:
    raw = random_bytes(BACKUP_CODE_BYTES).hex().upper()
    return f"{raw[:4]}-{raw[4:]}"


def normalize_backup_code(code: str) -> Optional[str]:
    """Canonical ``XXXX-XXXX`` form, or None if the input cannot be a backup code."""

    match = _BACKUP_CODE_RE.match(code.strip().replace(" ", "").upper())
    if not match:
        return None
    return f"{match.group(1)}-{match.group(2)}"


class TwoFactorService:
    def __init__(
        self,
        store: TwoFactorStore,
        settings: Settings,
        *,
        cipher: SecretCipher,
        hasher: SecretHasher,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cipher = cipher
        self.hasher = hasher
        self.logger = logger
        self._now_fn = now_fn

    def _now(self) -> datetime:
        if self._now_fn is not None:
            return self._now_fn()
        return datetime.now(timezone.utc)

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(
            secret,
            digits=self.settings.totp_digits,
            interval=self.settings.totp_interval_seconds,
            issuer=self.settings.totp_issuer,
        )

    def _looks_like_totp(self, code: str) -> bool:
        return len(code) == self.settings.totp_digits and code.isdigit()

    def _check_totp(self, cred: TwoFactorCredential, code: str) -> bool:
        if cred.secret_version != self.cipher.version:
            self.logger.error(
                "two_factor_secret_version_mismatch",
                user_id=cred.user_id,
                secret_version=cred.secret_version,
                cipher_version=self.cipher.version,
            )
            raise SecretDecryptError("stored secret was sealed by another cipher version")
        secret = self.cipher.decrypt(cred.secret_blob)
        return self._totp(secret).verify(
            code, for_time=self._now(), valid_window=self.settings.totp_valid_window
        )

    def _new_backup_codes(self) -> tuple[List[str], List[str]]:
        codes = [generate_backup_code() for _ in range(self.settings.backup_code_count)]
        return codes, [self.hasher.hash(code) for code in codes]

    def _consume_backup_code(self, cred: TwoFactorCredential, canonical: str) -> bool:
        for digest in cred.backup_code_hashes:
            if self.hasher.verify(digest, canonical):
                # Only the caller whose removal lands may use the code.
                if self.store.remove_backup_code(cred.user_id, digest, self._now()):
                    self.logger.info(
                        "backup_code_consumed",
                        user_id=cred.user_id,
                        remaining=len(cred.backup_code_hashes) - 1,
                    )
                    return True
                self.logger.warning("backup_code_consume_lost_race", user_id=cred.user_id)
                return False
        return False

    def _verify_enabled(self, cred: TwoFactorCredential, code: str) -> bool:
        cleaned = code.strip().replace(" ", "")
        if self._looks_like_totp(cleaned) and cred.secret_blob:
            if self._check_totp(cred, cleaned):
                return True
        canonical = normalize_backup_code(cleaned)
        if canonical is not None:
            return self._consume_backup_code(cred, canonical)
        return False

    def _require_code_shape(self, code: str) -> None:
        cleaned = (code or "").strip().replace(" ", "")
        if not self._looks_like_totp(cleaned) and normalize_backup_code(cleaned) is None:
            raise ValidationError(
                "code must be a one-time code or a backup code",
                detail={"field": "code"},
            )

    def _require_enabled(self, user_id: str) -> TwoFactorCredential:
        cred = self.store.get_two_factor(user_id)
        if not cred or not cred.enabled:
            raise NotEnabledError("two-factor authentication is not enabled")
        return cred

    def enroll(self, user_id: str) -> Enrollment:
        """Start (or restart) enrollment; the secret and codes are shown once."""

        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        existing = self.store.get_two_factor(user_id)
        if existing and existing.enabled:
            raise AlreadyEnabledError("two-factor authentication is already enabled")

        secret = base32_encode(random_bytes(self.settings.totp_secret_bytes))
        codes, hashes = self._new_backup_codes()
        stored = self.store.begin_two_factor_enrollment(
            user_id,
            self.cipher.encrypt(secret),
            self.cipher.version,
            hashes,
            self._now(),
        )
        if stored is None:
            raise AlreadyEnabledError("two-factor authentication is already enabled")
        uri = self._totp(secret).provisioning_uri(
            name=user.email, issuer_name=self.settings.totp_issuer
        )
        self.logger.info(
            "two_factor_enrollment_started",
            user_id=user_id,
            restarted=bool(existing),
        )
        return Enrollment(secret=secret, enrollment_uri=uri, backup_codes=codes)

    def confirm_enrollment(self, user_id: str, code: str) -> bool:
        cred = self.store.get_two_factor(user_id)
        if not cred or not cred.pending:
            raise NoPendingEnrollmentError("no two-factor enrollment is pending")
        cleaned = (code or "").strip().replace(" ", "")
        if not self._looks_like_totp(cleaned):
            raise ValidationError(
                f"code must be {self.settings.totp_digits} digits",
                detail={"field": "code"},
            )
        if not self._check_totp(cred, cleaned):
            self.logger.warning("two_factor_confirm_failed", user_id=user_id)
            raise InvalidCodeError("invalid verification code")
        if not self.store.enable_two_factor(user_id, cred.secret_blob, self._now()):
            # enrollment was restarted or confirmed by a concurrent request
            raise NoPendingEnrollmentError("no two-factor enrollment is pending")
        self.logger.info("two_factor_enabled", user_id=user_id)
        return True

    def verify(self, user_id: str, code: str) -> bool:
        cred = self.store.get_two_factor(user_id)
        if not cred or not cred.enabled:
            self.logger.info("two_factor_verify_rejected", user_id=user_id, reason="not_enabled")
            return False
        if not code:
            return False
        ok = self._verify_enabled(cred, code)
        if not ok:
            self.logger.warning("two_factor_verify_rejected", user_id=user_id, reason="invalid_code")
        return ok

    def disable(self, user_id: str, code: str) -> bool:
        cred = self._require_enabled(user_id)
        self._require_code_shape(code)
        if not self._verify_enabled(cred, code):
            self.logger.warning("two_factor_disable_rejected", user_id=user_id)
            raise InvalidCodeError("invalid verification code")
        if not self.store.disable_two_factor(user_id, self._now()):
            raise NotEnabledError("two-factor authentication is not enabled")
        self.logger.info("two_factor_disabled", user_id=user_id)
        return True

    def regenerate_backup_codes(self, user_id: str, code: str) -> List[str]:
        cred = self._require_enabled(user_id)
        self._require_code_shape(code)
        if not self._verify_enabled(cred, code):
            self.logger.warning("backup_code_regeneration_rejected", user_id=user_id)
            raise InvalidCodeError("invalid verification code")
        codes, hashes = self._new_backup_codes()
        if not self.store.replace_backup_codes(user_id, hashes, self._now()):
            raise NotEnabledError("two-factor authentication is not enabled")
        self.logger.info("backup_codes_regenerated", user_id=user_id, count=len(codes))
        return codes

    def status(self, user_id: str) -> dict:
        cred = self.store.get_two_factor(user_id)
        remaining = len(cred.backup_code_hashes) if cred and cred.enabled else 0
        return {
            "enabled": bool(cred and cred.enabled),
            "pending": bool(cred and cred.pending),
            "has_backup_codes": remaining > 0,
            "backup_codes_remaining": remaining,
        }
