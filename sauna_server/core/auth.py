"""
sauna_server/core/auth.py - Authentication dependencies
Resolves the process-wide throttle, user directory and session store from
app.state, and guards routes with bearer sessions.
"""
from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from sauna_server.core.login_throttle import LoginThrottle
from sauna_server.core.sessions import SessionStore, get_token_from_header
from sauna_server.models import Session, User
from sauna_server.services.users import UserDirectory


def get_login_throttle(request: Request) -> LoginThrottle:
    return request.app.state.login_throttle


def get_user_directory(request: Request) -> UserDirectory:
    return request.app.state.users


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_bearer_token(
    authorization: Optional[str] = Header(None),
) -> str:
    token = get_token_from_header(authorization)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return token


async def auth_required(
    token: str = Depends(get_bearer_token),
    sessions: SessionStore = Depends(get_session_store),
    users: UserDirectory = Depends(get_user_directory),
) -> tuple[Session, User]:
    """Return the caller's live session and user, or 401."""
    session = sessions.get(token)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = users.get_user_by_id(session.user_id)
    if user is None:
        sessions.delete(token)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User no longer exists",
        )
    return session, user
