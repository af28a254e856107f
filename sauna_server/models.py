"""
sauna_server/models.py - Pydantic data schemas
Throttle records, throttle status, users, sessions and auth request/response bodies.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ──────────────────────────────────────────────────────────────────────────────
# Enumerations
# ──────────────────────────────────────────────────────────────────────────────

class UserRole(str, Enum):
    ADMIN = "admin"
    USER = "user"


class LoginOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    THROTTLED = "throttled"


# ──────────────────────────────────────────────────────────────────────────────
# Login throttle
# ──────────────────────────────────────────────────────────────────────────────

class AttemptRecord(BaseModel):
    """Failure bookkeeping for one tracking key. All timestamps are epoch ms."""

    first_failure_at: int = 0
    last_failure_at: int = 0
    failures: int = 0
    blocked_until: int = 0  # 0 = not blocked


class ThrottleStatus(BaseModel):
    blocked: bool = False
    retry_after_ms: int = Field(default=0, ge=0)
    retry_after_seconds: int = Field(default=0, ge=0)

    @classmethod
    def from_blocked_until(cls, blocked_until: int, now_ms: int) -> "ThrottleStatus":
        """Status as seen at `now_ms`. Never reports "retry in 0 seconds" while blocked."""
        if blocked_until <= now_ms:
            return cls()
        retry_after_ms = blocked_until - now_ms
        return cls(
            blocked=True,
            retry_after_ms=retry_after_ms,
            retry_after_seconds=max(1, -(-retry_after_ms // 1000)),
        )


# ──────────────────────────────────────────────────────────────────────────────
# Users & sessions
# ──────────────────────────────────────────────────────────────────────────────

class User(BaseModel):
    id: int
    client_id: str = "default"
    username: str
    password_hash: str
    role: UserRole = UserRole.USER
    full_name: str = ""
    email: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def safe_dict(self) -> dict[str, Any]:
        """Public view of the user: never includes the password hash."""
        return {
            "id": self.id,
            "clientId": self.client_id,
            "username": self.username,
            "role": self.role.value,
            "fullName": self.full_name,
            "email": self.email,
        }


class Session(BaseModel):
    token: str
    user_id: int
    client_id: str
    username: str
    created_at: datetime
    expires_at: datetime


# ──────────────────────────────────────────────────────────────────────────────
# Auth API bodies
# ──────────────────────────────────────────────────────────────────────────────

class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str = ""
    password: str = ""
    client_id: Optional[str] = Field(default=None, alias="clientId")

    @field_validator("username", "password", "client_id", mode="before")
    @classmethod
    def coerce_to_str(cls, v: Any) -> str:
        """Loose JSON from clients: null, false and containers read as empty."""
        if not v or isinstance(v, (dict, list)):
            return ""
        return str(v)


class LoginResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str
    expires_at: datetime = Field(alias="expiresAt")
    user: dict[str, Any]
