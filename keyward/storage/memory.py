from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from keyward.logging import get_logger
from keyward.storage.errors import ConstraintViolation
from keyward.storage.models import (
    AdminSession,
    ConsumeOutcome,
    ConsumeResult,
    CsrfToken,
    EphemeralToken,
    RefreshToken,
    TokenPurpose,
    TwoFactorCredential,
    TwoFactorStatus,
    User,
    UserAuthCredential,
    utcnow,
)


class MemoryStore:
    """In-process record store for development and tests.

    Every conditional operation runs entirely under ``_data_lock`` so the
    check and the write are one step. When ``fs_root`` is given the state is
    written to ``<fs_root>/state/security_store.json`` after each mutation and
    reloaded on start.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserAuthCredential] = {}
        self.two_factor: Dict[str, TwoFactorCredential] = {}
        self.ephemeral_tokens: Dict[str, EphemeralToken] = {}
        self.csrf_tokens: Dict[str, CsrfToken] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.admin_sessions: Dict[str, AdminSession] = {}
        # RLock so helpers can re-enter while a public method holds it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "security_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # -- users ---------------------------------------------------------------

    def _email_owner(self, email: str) -> Optional[User]:
        # Same matching as the citext column in Postgres.
        folded = email.lower()
        return next(
            (u for u in self.users.values() if u.email.lower() == folded), None
        )

    def create_user(self, email: str, *, role: str = "user") -> User:
        with self._data_lock:
            if self._email_owner(email) is not None:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(id=str(uuid.uuid4()), email=email, role=role)
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return self._email_owner(email)

    def mark_email_verified(self, user_id: str, email: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            owner = self._email_owner(email)
            if owner is not None and owner.id != user_id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user.email = email
            user.is_email_verified = True
            self._persist_state()
            return user

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            existing = self.credentials.get(user_id)
            self.credentials[user_id] = UserAuthCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=existing.created_at if existing else utcnow(),
                last_updated_at=utcnow() if existing else None,
            )
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred:
                return None
            return cred.password_hash, cred.password_algo

    # -- two-factor ----------------------------------------------------------

    def get_two_factor(self, user_id: str) -> Optional[TwoFactorCredential]:
        with self._data_lock:
            cred = self.two_factor.get(user_id)
            return _copy_two_factor(cred) if cred else None

    def begin_two_factor_enrollment(
        self,
        user_id: str,
        secret_blob: str,
        secret_version: int,
        backup_code_hashes: List[str],
        now: datetime,
    ) -> Optional[TwoFactorCredential]:
        """Store a pending credential unless one is already enabled."""

        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for two-factor", {"user_id": user_id}
                )
            existing = self.two_factor.get(user_id)
            if existing and existing.status == TwoFactorStatus.ENABLED:
                return None
            cred = TwoFactorCredential(
                user_id=user_id,
                secret_blob=secret_blob,
                secret_version=secret_version,
                backup_code_hashes=list(backup_code_hashes),
                status=TwoFactorStatus.PENDING,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self.two_factor[user_id] = cred
            self._persist_state()
            return _copy_two_factor(cred)

    def enable_two_factor(self, user_id: str, secret_blob: str, now: datetime) -> bool:
        with self._data_lock:
            cred = self.two_factor.get(user_id)
            if (
                not cred
                or cred.status != TwoFactorStatus.PENDING
                or cred.secret_blob != secret_blob
            ):
                return False
            cred.status = TwoFactorStatus.ENABLED
            cred.updated_at = now
            self._persist_state()
            return True

    def remove_backup_code(self, user_id: str, code_hash: str, now: datetime) -> bool:
        with self._data_lock:
            cred = self.two_factor.get(user_id)
            if (
                not cred
                or cred.status != TwoFactorStatus.ENABLED
                or code_hash not in cred.backup_code_hashes
            ):
                return False
            cred.backup_code_hashes.remove(code_hash)
            cred.updated_at = now
            self._persist_state()
            return True

    def replace_backup_codes(
        self, user_id: str, backup_code_hashes: List[str], now: datetime
    ) -> bool:
        with self._data_lock:
            cred = self.two_factor.get(user_id)
            if not cred or cred.status != TwoFactorStatus.ENABLED:
                return False
            cred.backup_code_hashes = list(backup_code_hashes)
            cred.updated_at = now
            self._persist_state()
            return True

    def disable_two_factor(self, user_id: str, now: datetime) -> bool:
        with self._data_lock:
            cred = self.two_factor.get(user_id)
            if not cred or cred.status != TwoFactorStatus.ENABLED:
                return False
            cred.status = TwoFactorStatus.DISABLED
            cred.secret_blob = None
            cred.backup_code_hashes = []
            cred.updated_at = now
            self._persist_state()
            return True

    # -- ephemeral tokens ----------------------------------------------------

    def issue_ephemeral_token(self, token: EphemeralToken) -> EphemeralToken:
        with self._data_lock:
            if any(
                existing.purpose == token.purpose
                and existing.token_key == token.token_key
                for existing in self.ephemeral_tokens.values()
            ):
                raise ConstraintViolation("token collision", {"field": "token_key"})
            for existing in self.ephemeral_tokens.values():
                if (
                    existing.subject_id == token.subject_id
                    and existing.purpose == token.purpose
                    and existing.used_at is None
                ):
                    existing.used_at = token.created_at
            self.ephemeral_tokens[token.id] = token
            self._persist_state()
            return token

    def consume_ephemeral_token(
        self, purpose: TokenPurpose, token_key: str, now: datetime
    ) -> ConsumeResult:
        with self._data_lock:
            token = next(
                (
                    t
                    for t in self.ephemeral_tokens.values()
                    if t.purpose == purpose and t.token_key == token_key
                ),
                None,
            )
            if token is None:
                return ConsumeResult(ConsumeOutcome.NOT_FOUND)
            if token.used_at is not None:
                return ConsumeResult(ConsumeOutcome.ALREADY_USED, token)
            if token.expires_at <= now:
                return ConsumeResult(ConsumeOutcome.EXPIRED, token)
            token.used_at = now
            self._persist_state()
            return ConsumeResult(ConsumeOutcome.CONSUMED, token)

    def has_pending_ephemeral_token(
        self, subject_id: str, purpose: TokenPurpose, now: datetime
    ) -> bool:
        with self._data_lock:
            return any(
                t.subject_id == subject_id and t.purpose == purpose and t.is_pending(now)
                for t in self.ephemeral_tokens.values()
            )

    def delete_expired_ephemeral_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                token_id
                for token_id, t in self.ephemeral_tokens.items()
                if t.expires_at <= now
            ]
            for token_id in expired:
                self.ephemeral_tokens.pop(token_id, None)
            if expired:
                self._persist_state()
            return len(expired)

    # -- csrf ----------------------------------------------------------------

    def save_csrf_token(self, token: CsrfToken) -> CsrfToken:
        with self._data_lock:
            if token.token in self.csrf_tokens:
                raise ConstraintViolation("token collision", {"field": "token"})
            self.csrf_tokens[token.token] = token
            self._persist_state()
            return token

    def consume_csrf_token(
        self, token: str, session_id: str, now: datetime
    ) -> ConsumeOutcome:
        with self._data_lock:
            record = self.csrf_tokens.get(token)
            if record is None:
                return ConsumeOutcome.NOT_FOUND
            if record.session_id != session_id:
                return ConsumeOutcome.SESSION_MISMATCH
            if record.expires_at <= now:
                return ConsumeOutcome.EXPIRED
            self.csrf_tokens.pop(token, None)
            self._persist_state()
            return ConsumeOutcome.CONSUMED

    def delete_expired_csrf_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [k for k, t in self.csrf_tokens.items() if t.expires_at <= now]
            for key in expired:
                self.csrf_tokens.pop(key, None)
            if expired:
                self._persist_state()
            return len(expired)

    # -- refresh tokens ------------------------------------------------------

    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token_hash in self.refresh_tokens:
                raise ConstraintViolation("token collision", {"field": "token_hash"})
            self.refresh_tokens[token.token_hash] = token
            self._persist_state()
            return token

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token_hash)

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            if not token or token.revoked_at is not None:
                return False
            token.revoked_at = now
            self._persist_state()
            return True

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and token.revoked_at is None:
                    token.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                k for k, t in self.refresh_tokens.items() if t.expires_at <= now
            ]
            for key in expired:
                self.refresh_tokens.pop(key, None)
            if expired:
                self._persist_state()
            return len(expired)

    # -- admin sessions ------------------------------------------------------

    def create_admin_session(self, session: AdminSession) -> AdminSession:
        with self._data_lock:
            if any(
                s.token_hash == session.token_hash for s in self.admin_sessions.values()
            ):
                raise ConstraintViolation("token collision", {"field": "token_hash"})
            self.admin_sessions[session.id] = session
            self._persist_state()
            return _copy_admin_session(session)

    def touch_admin_session(
        self, token_hash: str, now: datetime, expires_at: datetime
    ) -> Optional[AdminSession]:
        """Slide the expiry of a live session; returns None if gone or lapsed."""

        with self._data_lock:
            session = next(
                (s for s in self.admin_sessions.values() if s.token_hash == token_hash),
                None,
            )
            if session is None or session.expires_at <= now:
                return None
            session.last_active_at = now
            session.expires_at = expires_at
            self._persist_state()
            return _copy_admin_session(session)

    def list_admin_sessions(self, admin_id: str, now: datetime) -> List[AdminSession]:
        with self._data_lock:
            live = [
                _copy_admin_session(s)
                for s in self.admin_sessions.values()
                if s.admin_id == admin_id and s.expires_at > now
            ]
            return sorted(live, key=lambda s: s.last_active_at, reverse=True)

    def delete_admin_session(
        self, session_id: str, admin_id: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            session = self.admin_sessions.get(session_id)
            if session is None or (admin_id is not None and session.admin_id != admin_id):
                return False
            self.admin_sessions.pop(session_id, None)
            self._persist_state()
            return True

    def delete_admin_sessions(self, admin_id: str) -> int:
        with self._data_lock:
            doomed = [
                sid for sid, s in self.admin_sessions.items() if s.admin_id == admin_id
            ]
            for sid in doomed:
                self.admin_sessions.pop(sid, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def delete_expired_admin_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                sid for sid, s in self.admin_sessions.items() if s.expires_at <= now
            ]
            for sid in expired:
                self.admin_sessions.pop(sid, None)
            if expired:
                self._persist_state()
            return len(expired)

    # -- persistence ---------------------------------------------------------

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                self._serialize_credential(c) for c in self.credentials.values()
            ],
            "two_factor": [
                self._serialize_two_factor(c) for c in self.two_factor.values()
            ],
            "ephemeral_tokens": [
                self._serialize_ephemeral_token(t)
                for t in self.ephemeral_tokens.values()
            ],
            "csrf_tokens": [
                self._serialize_csrf_token(t) for t in self.csrf_tokens.values()
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "admin_sessions": [
                self._serialize_admin_session(s) for s in self.admin_sessions.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            c["user_id"]: self._deserialize_credential(c)
            for c in data.get("credentials", [])
        }
        self.two_factor = {
            c["user_id"]: self._deserialize_two_factor(c)
            for c in data.get("two_factor", [])
        }
        self.ephemeral_tokens = {
            t["id"]: self._deserialize_ephemeral_token(t)
            for t in data.get("ephemeral_tokens", [])
        }
        self.csrf_tokens = {
            t["token"]: self._deserialize_csrf_token(t)
            for t in data.get("csrf_tokens", [])
        }
        self.refresh_tokens = {
            t["token_hash"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        self.admin_sessions = {
            s["id"]: self._deserialize_admin_session(s)
            for s in data.get("admin_sessions", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            admin_sessions=len(self.admin_sessions),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "is_email_verified": user.is_email_verified,
            "created_at": self._serialize_datetime(user.created_at),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            role=data.get("role", "user"),
            is_email_verified=data.get("is_email_verified", False),
            created_at=self._deserialize_datetime(data["created_at"]),
            meta=data.get("meta"),
        )

    def _serialize_credential(self, cred: UserAuthCredential) -> dict:
        return {
            "user_id": cred.user_id,
            "password_hash": cred.password_hash,
            "password_algo": cred.password_algo,
            "created_at": self._serialize_datetime(cred.created_at),
            "last_updated_at": self._serialize_datetime(cred.last_updated_at),
        }

    def _deserialize_credential(self, data: dict) -> UserAuthCredential:
        return UserAuthCredential(
            user_id=data["user_id"],
            password_hash=data["password_hash"],
            password_algo=data.get("password_algo", ""),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_updated_at=self._deserialize_datetime(data.get("last_updated_at")),
        )

    def _serialize_two_factor(self, cred: TwoFactorCredential) -> dict:
        return {
            "user_id": cred.user_id,
            "secret_blob": cred.secret_blob,
            "secret_version": cred.secret_version,
            "backup_code_hashes": list(cred.backup_code_hashes),
            "status": cred.status.value,
            "created_at": self._serialize_datetime(cred.created_at),
            "updated_at": self._serialize_datetime(cred.updated_at),
        }

    def _deserialize_two_factor(self, data: dict) -> TwoFactorCredential:
        return TwoFactorCredential(
            user_id=data["user_id"],
            secret_blob=data.get("secret_blob"),
            secret_version=data.get("secret_version", 1),
            backup_code_hashes=list(data.get("backup_code_hashes", [])),
            status=TwoFactorStatus(data.get("status", TwoFactorStatus.PENDING.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_ephemeral_token(self, token: EphemeralToken) -> dict:
        return {
            "id": token.id,
            "subject_id": token.subject_id,
            "purpose": token.purpose.value,
            "token_key": token.token_key,
            "payload": token.payload,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
            "used_at": self._serialize_datetime(token.used_at),
        }

    def _deserialize_ephemeral_token(self, data: dict) -> EphemeralToken:
        return EphemeralToken(
            id=data["id"],
            subject_id=data["subject_id"],
            purpose=TokenPurpose(data["purpose"]),
            token_key=data["token_key"],
            payload=data.get("payload") or {},
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            used_at=self._deserialize_datetime(data.get("used_at")),
        )

    def _serialize_csrf_token(self, token: CsrfToken) -> dict:
        return {
            "token": token.token,
            "session_id": token.session_id,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_csrf_token(self, data: dict) -> CsrfToken:
        return CsrfToken(
            token=data["token"],
            session_id=data["session_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "token_hash": token.token_hash,
            "user_id": token.user_id,
            "device_info": token.device_info,
            "origin_addr": token.origin_addr,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
            "revoked_at": self._serialize_datetime(token.revoked_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            token_hash=data["token_hash"],
            user_id=data["user_id"],
            device_info=data.get("device_info"),
            origin_addr=data.get("origin_addr"),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
        )

    def _serialize_admin_session(self, session: AdminSession) -> dict:
        return {
            "id": session.id,
            "admin_id": session.admin_id,
            "token_hash": session.token_hash,
            "origin_addr": session.origin_addr,
            "user_agent": session.user_agent,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "last_active_at": self._serialize_datetime(session.last_active_at),
        }

    def _deserialize_admin_session(self, data: dict) -> AdminSession:
        return AdminSession(
            id=data["id"],
            admin_id=data["admin_id"],
            token_hash=data["token_hash"],
            origin_addr=data.get("origin_addr"),
            user_agent=data.get("user_agent"),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            last_active_at=self._deserialize_datetime(data["last_active_at"]),
        )


def _copy_two_factor(cred: TwoFactorCredential) -> TwoFactorCredential:
    return TwoFactorCredential(
        user_id=cred.user_id,
        secret_blob=cred.secret_blob,
        secret_version=cred.secret_version,
        backup_code_hashes=list(cred.backup_code_hashes),
        status=cred.status,
        created_at=cred.created_at,
        updated_at=cred.updated_at,
    )


def _copy_admin_session(session: AdminSession) -> AdminSession:
    return AdminSession(
        id=session.id,
        admin_id=session.admin_id,
        token_hash=session.token_hash,
        expires_at=session.expires_at,
        origin_addr=session.origin_addr,
        user_agent=session.user_agent,
        created_at=session.created_at,
        last_active_at=session.last_active_at,
    )
