from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from keyward.logging import get_logger
from keyward.storage.errors import ConstraintViolation, SchemaMissingError
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
)


REQUIRED_TABLES = [
    "app_user",
    "user_auth_credential",
    "two_factor_credential",
    "ephemeral_token",
    "csrf_token",
    "refresh_token",
    "admin_session",
]


def _is_uuid(value: Optional[str]) -> bool:
    """Ids arrive from headers and paths; anything that is not a UUID matches no row."""

    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed record store.

    Each single-use or sliding operation is one conditional statement, or one
    transaction holding an advisory lock, so concurrent callers never both win.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Ensure the security tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise SchemaMissingError(missing_tables)

    # users
    def create_user(self, email: str, *, role: str = "user") -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, role)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, email, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str, email: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE app_user
                    SET email = %s, is_email_verified = TRUE, updated_at = now()
                    WHERE id = %s
                    RETURNING *
                    """,
                    (email, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        if not _is_uuid(user_id):
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # two-factor
    def get_two_factor(self, user_id: str) -> Optional[TwoFactorCredential]:
        if not _is_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._row_to_two_factor(row) if row else None

    def begin_two_factor_enrollment(
        self,
        user_id: str,
        secret_blob: str,
        secret_version: int,
        backup_code_hashes: List[str],
        now: datetime,
    ) -> Optional[TwoFactorCredential]:
        if not _is_uuid(user_id):
            raise ConstraintViolation(
                "user not found for two-factor", {"user_id": user_id}
            )
        try:
            with self._connect() as conn:
                # The conflict branch skips enabled rows, so no row comes back
                # when two-factor is already active.
                row = conn.execute(
                    """
                    INSERT INTO two_factor_credential
                        (user_id, secret_blob, secret_version, backup_code_hashes, status, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, 'pending', %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET secret_blob = EXCLUDED.secret_blob,
                        secret_version = EXCLUDED.secret_version,
                        backup_code_hashes = EXCLUDED.backup_code_hashes,
                        status = 'pending',
                        updated_at = EXCLUDED.updated_at
                    WHERE two_factor_credential.status <> 'enabled'
                    RETURNING *
                    """,
                    (user_id, secret_blob, secret_version, list(backup_code_hashes), now, now),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for two-factor", {"user_id": user_id}
            )
        return self._row_to_two_factor(row) if row else None

    def enable_two_factor(self, user_id: str, secret_blob: str, now: datetime) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_credential
                SET status = 'enabled', updated_at = %s
                WHERE user_id = %s AND status = 'pending' AND secret_blob = %s
                RETURNING user_id
                """,
                (now, user_id, secret_blob),
            ).fetchone()
        return row is not None

    def remove_backup_code(self, user_id: str, code_hash: str, now: datetime) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_credential
                SET backup_code_hashes = array_remove(backup_code_hashes, %s),
                    updated_at = %s
                WHERE user_id = %s AND status = 'enabled' AND %s = ANY(backup_code_hashes)
                RETURNING user_id
                """,
                (code_hash, now, user_id, code_hash),
            ).fetchone()
        return row is not None

    def replace_backup_codes(
        self, user_id: str, backup_code_hashes: List[str], now: datetime
    ) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_credential
                SET backup_code_hashes = %s, updated_at = %s
                WHERE user_id = %s AND status = 'enabled'
                RETURNING user_id
                """,
                (list(backup_code_hashes), now, user_id),
            ).fetchone()
        return row is not None

    def disable_two_factor(self, user_id: str, now: datetime) -> bool:
        if not _is_uuid(user_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_credential
                SET status = 'disabled', secret_blob = NULL,
                    backup_code_hashes = '{}', updated_at = %s
                WHERE user_id = %s AND status = 'enabled'
                RETURNING user_id
                """,
                (now, user_id),
            ).fetchone()
        return row is not None

    # ephemeral tokens
    def issue_ephemeral_token(self, token: EphemeralToken) -> EphemeralToken:
        try:
            with self._connect() as conn:
                with conn.transaction():
                    # Serialises issuers for the same subject and purpose.
                    conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext(%s))",
                        (f"{token.purpose.value}:{token.subject_id}",),
                    )
                    conn.execute(
                        """
                        UPDATE ephemeral_token
                        SET used_at = %s
                        WHERE subject_id = %s AND purpose = %s AND used_at IS NULL
                        """,
                        (token.created_at, token.subject_id, token.purpose.value),
                    )
                    conn.execute(
                        """
                        INSERT INTO ephemeral_token
                            (id, subject_id, purpose, token_key, payload, expires_at, created_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            token.id,
                            token.subject_id,
                            token.purpose.value,
                            token.token_key,
                            json.dumps(token.payload or {}),
                            token.expires_at,
                            token.created_at,
                        ),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("token collision", {"field": "token_key"})
        return token

    def consume_ephemeral_token(
        self, purpose: TokenPurpose, token_key: str, now: datetime
    ) -> ConsumeResult:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE ephemeral_token
                SET used_at = %s
                WHERE purpose = %s AND token_key = %s
                  AND used_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, purpose.value, token_key, now),
            ).fetchone()
            if row:
                return ConsumeResult(
                    ConsumeOutcome.CONSUMED, self._row_to_ephemeral_token(row)
                )
            row = conn.execute(
                "SELECT * FROM ephemeral_token WHERE purpose = %s AND token_key = %s",
                (purpose.value, token_key),
            ).fetchone()
        if not row:
            return ConsumeResult(ConsumeOutcome.NOT_FOUND)
        token = self._row_to_ephemeral_token(row)
        if token.used_at is not None:
            return ConsumeResult(ConsumeOutcome.ALREADY_USED, token)
        return ConsumeResult(ConsumeOutcome.EXPIRED, token)

    def has_pending_ephemeral_token(
        self, subject_id: str, purpose: TokenPurpose, now: datetime
    ) -> bool:
        if not _is_uuid(subject_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS pending FROM ephemeral_token
                WHERE subject_id = %s AND purpose = %s
                  AND used_at IS NULL AND expires_at > %s
                LIMIT 1
                """,
                (subject_id, purpose.value, now),
            ).fetchone()
        return row is not None

    def delete_expired_ephemeral_tokens(self, now: datetime) -> int:
        return self._delete_expired("ephemeral_token", now)

    # csrf
    def save_csrf_token(self, token: CsrfToken) -> CsrfToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO csrf_token (token, session_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (token.token, token.session_id, token.expires_at, token.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token collision", {"field": "token"})
        return token

    def consume_csrf_token(
        self, token: str, session_id: str, now: datetime
    ) -> ConsumeOutcome:
        with self._connect() as conn:
            row = conn.execute(
                """
                DELETE FROM csrf_token
                WHERE token = %s AND session_id = %s AND expires_at > %s
                RETURNING token
                """,
                (token, session_id, now),
            ).fetchone()
            if row:
                return ConsumeOutcome.CONSUMED
            row = conn.execute(
                "SELECT session_id, expires_at FROM csrf_token WHERE token = %s",
                (token,),
            ).fetchone()
        if not row:
            return ConsumeOutcome.NOT_FOUND
        if row["session_id"] != session_id:
            return ConsumeOutcome.SESSION_MISMATCH
        return ConsumeOutcome.EXPIRED

    def delete_expired_csrf_tokens(self, now: datetime) -> int:
        return self._delete_expired("csrf_token", now)

    # refresh tokens
    def save_refresh_token(self, token: RefreshToken) -> RefreshToken:
        if not _is_uuid(token.user_id):
            raise ConstraintViolation(
                "user not found for refresh token", {"user_id": token.user_id}
            )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token
                        (token_hash, user_id, device_info, origin_addr, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.token_hash,
                        token.user_id,
                        token.device_info,
                        token.origin_addr,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token collision", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for refresh token", {"user_id": token.user_id}
            )
        return token

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def revoke_refresh_token(self, token_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s
                WHERE token_hash = %s AND revoked_at IS NULL
                RETURNING token_hash
                """,
                (now, token_hash),
            ).fetchone()
        return row is not None

    def revoke_user_refresh_tokens(self, user_id: str, now: datetime) -> int:
        if not _is_uuid(user_id):
            return 0
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s
                WHERE user_id = %s AND revoked_at IS NULL
                """,
                (now, user_id),
            )
            return result.rowcount

    def delete_expired_refresh_tokens(self, now: datetime) -> int:
        return self._delete_expired("refresh_token", now)

    # admin sessions
    def create_admin_session(self, session: AdminSession) -> AdminSession:
        if not _is_uuid(session.admin_id):
            raise ConstraintViolation(
                "admin not found for session", {"admin_id": session.admin_id}
            )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO admin_session
                        (id, admin_id, token_hash, origin_addr, user_agent,
                         created_at, last_active_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.admin_id,
                        session.token_hash,
                        session.origin_addr,
                        session.user_agent,
                        session.created_at,
                        session.last_active_at,
                        session.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("token collision", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "admin not found for session", {"admin_id": session.admin_id}
            )
        return session

    def touch_admin_session(
        self, token_hash: str, now: datetime, expires_at: datetime
    ) -> Optional[AdminSession]:
        # A concurrent DELETE leaves nothing to update, so termination wins.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE admin_session
                SET last_active_at = %s, expires_at = %s
                WHERE token_hash = %s AND expires_at > %s
                RETURNING *
                """,
                (now, expires_at, token_hash, now),
            ).fetchone()
        return self._row_to_admin_session(row) if row else None

    def list_admin_sessions(self, admin_id: str, now: datetime) -> List[AdminSession]:
        if not _is_uuid(admin_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM admin_session
                WHERE admin_id = %s AND expires_at > %s
                ORDER BY last_active_at DESC
                """,
                (admin_id, now),
            ).fetchall()
        return [self._row_to_admin_session(row) for row in rows]

    def delete_admin_session(
        self, session_id: str, admin_id: Optional[str] = None
    ) -> bool:
        if not _is_uuid(session_id) or (admin_id is not None and not _is_uuid(admin_id)):
            return False
        with self._connect() as conn:
            if admin_id is None:
                result = conn.execute(
                    "DELETE FROM admin_session WHERE id = %s", (session_id,)
                )
            else:
                result = conn.execute(
                    "DELETE FROM admin_session WHERE id = %s AND admin_id = %s",
                    (session_id, admin_id),
                )
            return result.rowcount > 0

    def delete_admin_sessions(self, admin_id: str) -> int:
        if not _is_uuid(admin_id):
            return 0
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM admin_session WHERE admin_id = %s", (admin_id,)
            )
            return result.rowcount

    def delete_expired_admin_sessions(self, now: datetime) -> int:
        return self._delete_expired("admin_session", now)

    def _delete_expired(self, table: str, now: datetime) -> int:
        if table not in REQUIRED_TABLES:
            raise ValueError(f"unknown table {table}")
        with self._connect() as conn:
            result = conn.execute(
                f"DELETE FROM {table} WHERE expires_at <= %s", (now,)
            )
            deleted = result.rowcount
        if deleted:
            self.logger.info("expired_rows_deleted", table=table, count=deleted)
        return deleted

    # row mapping
    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            role=row.get("role", "user"),
            is_email_verified=bool(row.get("is_email_verified", False)),
            created_at=row["created_at"],
            meta=row.get("meta"),
        )

    @staticmethod
    def _row_to_two_factor(row: dict[str, Any]) -> TwoFactorCredential:
        return TwoFactorCredential(
            user_id=str(row["user_id"]),
            secret_blob=row.get("secret_blob"),
            secret_version=int(row.get("secret_version") or 1),
            backup_code_hashes=list(row.get("backup_code_hashes") or []),
            status=TwoFactorStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_ephemeral_token(row: dict[str, Any]) -> EphemeralToken:
        payload = row.get("payload") or {}
        if isinstance(payload, str):
            payload = json.loads(payload)
        return EphemeralToken(
            id=str(row["id"]),
            subject_id=str(row["subject_id"]),
            purpose=TokenPurpose(row["purpose"]),
            token_key=row["token_key"],
            payload=payload,
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            used_at=row.get("used_at"),
        )

    @staticmethod
    def _row_to_refresh_token(row: dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token_hash=row["token_hash"],
            user_id=str(row["user_id"]),
            device_info=row.get("device_info"),
            origin_addr=row.get("origin_addr"),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            revoked_at=row.get("revoked_at"),
        )

    @staticmethod
    def _row_to_admin_session(row: dict[str, Any]) -> AdminSession:
        return AdminSession(
            id=str(row["id"]),
            admin_id=str(row["admin_id"]),
            token_hash=row["token_hash"],
            origin_addr=row.get("origin_addr"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
            last_active_at=row["last_active_at"],
            expires_at=row["expires_at"],
        )
