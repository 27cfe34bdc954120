"""
Identity Context
================

Resolves a session token to an immutable Identity. The lookup is pure:
it never opens, extends or closes sessions. Unknown, expired and
revoked sessions are rejected with AuthenticationError.

Session stores:
- InMemorySessionStore: development and tests
- SQLSessionStore: SQLAlchemy table ``user_sessions``
"""

import logging
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.orm import sessionmaker

from models.database import get_session
from models.domain import Identity, Role
from models.entities import UserSession
from .errors import AuthenticationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionInfo:
    """Storage-level view of a session, decoupled from the ORM row."""
    token: str
    user_id: str
    role: Role
    department: Optional[str]
    started_at: datetime
    expires_at: datetime
    revoked: bool = False

    def to_identity(self) -> Identity:
        return Identity(
            id=self.user_id,
            role=self.role,
            department=self.department,
            session_start=self.started_at
        )


class SessionStore(ABC):
    """External session store port."""

    @abstractmethod
    def get(self, token: str) -> Optional[SessionInfo]:
        ...

    @abstractmethod
    def open(
        self,
        user_id: str,
        role: Role,
        department: Optional[str] = None,
        ttl: timedelta = timedelta(hours=8),
        now: Optional[datetime] = None
    ) -> SessionInfo:
        ...

    @abstractmethod
    def revoke(self, token: str) -> bool:
        ...


def _new_token() -> str:
    return secrets.token_urlsafe(32)


class InMemorySessionStore(SessionStore):

    def __init__(self):
        self._sessions: Dict[str, SessionInfo] = {}
        self._lock = threading.Lock()

    def get(self, token: str) -> Optional[SessionInfo]:
        with self._lock:
            return self._sessions.get(token)

    def open(self, user_id, role, department=None, ttl=timedelta(hours=8), now=None) -> SessionInfo:
        started = now or datetime.utcnow()
        info = SessionInfo(
            token=_new_token(),
            user_id=user_id,
            role=role,
            department=department,
            started_at=started,
            expires_at=started + ttl
        )
        with self._lock:
            self._sessions[info.token] = info
        return info

    def revoke(self, token: str) -> bool:
        with self._lock:
            info = self._sessions.get(token)
            if info is None:
                return False
            self._sessions[token] = replace(info, revoked=True)
            return True


class SQLSessionStore(SessionStore):
    """Sessions persisted in the ``user_sessions`` table."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    @staticmethod
    def _from_row(row: UserSession) -> SessionInfo:
        return SessionInfo(
            token=row.token,
            user_id=row.user_id,
            role=row.role,
            department=row.department,
            started_at=row.started_at,
            expires_at=row.expires_at,
            revoked=bool(row.revoked)
        )

    def get(self, token: str) -> Optional[SessionInfo]:
        with get_session(self.session_factory) as session:
            row = session.query(UserSession).filter(UserSession.token == token).first()
            return self._from_row(row) if row else None

    def open(self, user_id, role, department=None, ttl=timedelta(hours=8), now=None) -> SessionInfo:
        started = now or datetime.utcnow()
        with get_session(self.session_factory) as session:
            row = UserSession(
                token=_new_token(),
                user_id=user_id,
                role=role,
                department=department,
                started_at=started,
                expires_at=started + ttl,
                revoked=False
            )
            session.add(row)
            session.flush()
            return self._from_row(row)

    def revoke(self, token: str) -> bool:
        with get_session(self.session_factory) as session:
            updated = session.query(UserSession).filter(
                UserSession.token == token
            ).update({UserSession.revoked: True})
            return updated > 0


class IdentityContext:
    """
    Resolves session tokens to identities.

    Args:
        sessions: Session store to read
        clock: Source of the current time used for expiry checks
    """

    def __init__(self, sessions: SessionStore, clock: Callable[[], datetime] = datetime.utcnow):
        self.sessions = sessions
        self.clock = clock

    def resolve(self, token: str) -> Identity:
        """
        Resolve a token to the session's identity.

        Raises:
            AuthenticationError: If the token is unknown, expired or revoked
        """
        if not token:
            raise AuthenticationError("Missing session token")
        info = self.sessions.get(token)
        if info is None:
            raise AuthenticationError("Unknown session")
        if info.revoked:
            raise AuthenticationError(f"Session for {info.user_id} was revoked")
        if self.clock() >= info.expires_at:
            raise AuthenticationError(f"Session for {info.user_id} expired at {info.expires_at}")
        return info.to_identity()
