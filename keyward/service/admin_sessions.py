from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol

from keyward.config import Settings
from keyward.logging import get_logger
from keyward.service.codec import hash_token, random_token
from keyward.storage.models import AdminSession

logger = get_logger(__name__)


class AdminSessionStore(Protocol):
    def create_admin_session(self, session: AdminSession) -> AdminSession: ...

    def touch_admin_session(
        self, token_hash: str, now: datetime, expires_at: datetime
    ) -> Optional[AdminSession]: ...

    def list_admin_sessions(self, admin_id: str, now: datetime) -> List[AdminSession]: ...

    def delete_admin_session(
        self, session_id: str, admin_id: Optional[str] = None
    ) -> bool: ...

    def delete_admin_sessions(self, admin_id: str) -> int: ...

    def delete_expired_admin_sessions(self, now: datetime) -> int: ...


@dataclass
class AdminSessionView:
    id: str
    origin_addr: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    last_active_at: datetime
    expires_at: datetime
    is_current: bool = False


@dataclass
class AdminSessionList:
    sessions: List[AdminSessionView] = field(default_factory=list)
    current_session_id: Optional[str] = None


class AdminSessionManager:
    """Administrator sessions with a sliding inactivity timeout.

    Only the sha256 of the session token is stored; every successful
    ``validate`` moves the expiry to ``now + timeout``.
    """

    def __init__(
        self,
        store: AdminSessionStore,
        settings: Settings,
        *,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger
        self._now_fn = now_fn

    def _now(self) -> datetime:
        if self._now_fn is not None:
            return self._now_fn()
        return datetime.now(timezone.utc)

    def create(
        self,
        admin_id: str,
        origin_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        raw = random_token(32)
        now = self._now()
        session = self.store.create_admin_session(
            AdminSession(
                id=str(uuid.uuid4()),
                admin_id=admin_id,
                token_hash=hash_token(raw),
                origin_addr=origin_addr,
                user_agent=user_agent,
                created_at=now,
                last_active_at=now,
                expires_at=now + self.settings.admin_session_timeout,
            )
        )
        self.logger.info(
            "admin_session_created", admin_id=admin_id, session_id=session.id
        )
        return raw

    def validate(self, session_token: str) -> Optional[str]:
        if not session_token:
            return None
        now = self._now()
        session = self.store.touch_admin_session(
            hash_token(session_token), now, now + self.settings.admin_session_timeout
        )
        if session is None:
            self.logger.info(
                "admin_session_rejected", token_prefix=session_token[:8]
            )
            return None
        return session.admin_id

    def list(
        self, admin_id: str, current_token: Optional[str] = None
    ) -> AdminSessionList:
        current_hash = hash_token(current_token) if current_token else None
        result = AdminSessionList()
        for session in self.store.list_admin_sessions(admin_id, self._now()):
            is_current = session.token_hash == current_hash
            if is_current:
                result.current_session_id = session.id
            result.sessions.append(
                AdminSessionView(
                    id=session.id,
                    origin_addr=session.origin_addr,
                    user_agent=session.user_agent,
                    created_at=session.created_at,
                    last_active_at=session.last_active_at,
                    expires_at=session.expires_at,
                    is_current=is_current,
                )
            )
        return result

    def terminate(self, session_id: str, admin_id: Optional[str] = None) -> bool:
        deleted = self.store.delete_admin_session(session_id, admin_id)
        self.logger.info(
            "admin_session_terminated",
            session_id=session_id,
            admin_id=admin_id,
            deleted=deleted,
        )
        return deleted

    def terminate_all(self, admin_id: str) -> int:
        deleted = self.store.delete_admin_sessions(admin_id)
        self.logger.info("admin_sessions_terminated", admin_id=admin_id, count=deleted)
        return deleted

    def purge_expired(self) -> int:
        return self.store.delete_expired_admin_sessions(self._now())
