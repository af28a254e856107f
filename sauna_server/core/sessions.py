"""
sauna_server/core/sessions.py - In-memory bearer sessions
"""
from __future__ import annotations

import secrets
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from sauna_server.models import Session, User


def get_token_from_header(authorization: Optional[str]) -> Optional[str]:
    """Extract the token from an 'Authorization: Bearer <token>' header value."""
    if not authorization:
        return None
    scheme, _, value = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class SessionStore:
    def __init__(
        self,
        ttl: timedelta = timedelta(days=7),
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.ttl = ttl
        self._now = now or datetime.utcnow
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, user: User) -> Session:
        created_at = self._now()
        session = Session(
            token=secrets.token_urlsafe(48),
            user_id=user.id,
            client_id=user.client_id,
            username=user.username,
            created_at=created_at,
            expires_at=created_at + self.ttl,
        )
        with self._lock:
            self._sessions[session.token] = session
        return session

    def get(self, token: Optional[str]) -> Optional[Session]:
        """Return a live session. Expired sessions are dropped on read."""
        if not token:
            return None
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return None
            if session.expires_at <= self._now():
                del self._sessions[token]
                return None
            return session

    def delete(self, token: Optional[str]) -> None:
        if not token:
            return
        with self._lock:
            self._sessions.pop(token, None)
