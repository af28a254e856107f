"""
sauna_server/services/users.py - In-memory user directory
Usernames are unique per client (tenant). Lookups are case-insensitive.
"""
from __future__ import annotations

import itertools
import threading
from typing import Optional

from loguru import logger

from sauna_server.config import Settings
from sauna_server.core.passwords import hash_password, verify_password
from sauna_server.models import User, UserRole

DEFAULT_CLIENT_ID = "default"


def normalize_client_id(client_id: Optional[str]) -> str:
    return (client_id or "").strip().lower() or DEFAULT_CLIENT_ID


def _user_key(client_id: Optional[str], username: str) -> tuple[str, str]:
    return normalize_client_id(client_id), username.strip().lower()


class UserExistsError(ValueError):
    pass


class UserDirectory:
    def __init__(self) -> None:
        self._users: dict[tuple[str, str], User] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._users)

    def add_user(
        self,
        username: str,
        password: Optional[str] = None,
        *,
        password_hash: Optional[str] = None,
        client_id: Optional[str] = None,
        role: UserRole = UserRole.USER,
        full_name: str = "",
        email: str = "",
    ) -> User:
        """Register a user from a plain password or an existing scrypt digest."""
        username = username.strip()
        if not username:
            raise ValueError("Username cannot be empty")
        if password_hash is None:
            if not password:
                raise ValueError("Password or password_hash is required")
            password_hash = hash_password(password)

        key = _user_key(client_id, username)
        with self._lock:
            if key in self._users:
                raise UserExistsError(f"Username {username!r} already exists for client {key[0]!r}")
            user = User(
                id=next(self._ids),
                client_id=key[0],
                username=username,
                password_hash=password_hash,
                role=role,
                full_name=full_name,
                email=email,
            )
            self._users[key] = user
        return user

    def get_user(self, client_id: Optional[str], username: str) -> Optional[User]:
        with self._lock:
            return self._users.get(_user_key(client_id, username))

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        with self._lock:
            return next((u for u in self._users.values() if u.id == user_id), None)

    def authenticate(self, client_id: Optional[str], username: str, password: str) -> Optional[User]:
        """Return the user when the password matches, else None."""
        user = self.get_user(client_id, username)
        if user is None or not verify_password(password, user.password_hash):
            return None
        return user


def build_user_directory(settings: Settings) -> UserDirectory:
    """Directory seeded with the bootstrap admin account, when configured."""
    directory = UserDirectory()
    if settings.admin_username and settings.admin_password_hash:
        directory.add_user(
            settings.admin_username,
            password_hash=settings.admin_password_hash,
            client_id=settings.admin_client_id,
            role=UserRole.ADMIN,
        )
        logger.info(f"Seeded admin account {settings.admin_username!r}.")
    elif settings.admin_username or settings.admin_password_hash:
        logger.warning("ADMIN_USERNAME and ADMIN_PASSWORD_HASH must both be set. No admin seeded.")
    return directory
