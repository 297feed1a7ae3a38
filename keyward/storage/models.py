from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    role: str = "user"
    is_email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: str
    password_algo: str
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


class TwoFactorStatus(str, Enum):
    PENDING = "pending"
    ENABLED = "enabled"
    DISABLED = "disabled"


@dataclass
class TwoFactorCredential:
    """Per-user TOTP seed (encrypted) plus the digests of unused backup codes."""

    user_id: str
    secret_blob: Optional[str]
    secret_version: int = 1
    backup_code_hashes: List[str] = field(default_factory=list)
    status: TwoFactorStatus = TwoFactorStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def enabled(self) -> bool:
        return self.status == TwoFactorStatus.ENABLED

    @property
    def pending(self) -> bool:
        return self.status == TwoFactorStatus.PENDING and bool(self.secret_blob)


class TokenPurpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"


@dataclass
class EphemeralToken:
    subject_id: str
    purpose: TokenPurpose
    # sha256 digest for password resets, the raw value for email verification
    token_key: str
    expires_at: datetime
    payload: Dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None

    def is_pending(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now


class ConsumeOutcome(str, Enum):
    CONSUMED = "consumed"
    NOT_FOUND = "not_found"
    ALREADY_USED = "already_used"
    EXPIRED = "expired"
    SESSION_MISMATCH = "session_mismatch"


@dataclass
class ConsumeResult:
    outcome: ConsumeOutcome
    token: Optional[EphemeralToken] = None

    @property
    def ok(self) -> bool:
        return self.outcome == ConsumeOutcome.CONSUMED


@dataclass
class CsrfToken:
    token: str
    session_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshToken:
    token_hash: str
    user_id: str
    expires_at: datetime
    device_info: Optional[str] = None
    origin_addr: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None


@dataclass
class AdminSession:
    id: str
    admin_id: str
    token_hash: str
    expires_at: datetime
    origin_addr: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_active_at: datetime = field(default_factory=utcnow)
