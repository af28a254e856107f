"""
sauna_server/config.py - Pydantic BaseSettings configuration
Every value can be overridden from the environment or a local .env file.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Any, Optional

from pydantic import ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sauna_server.utils.validators import parse_bounded_int

_MINUTE_MS = 60 * 1000
_DAY_MS = 24 * 60 * _MINUTE_MS

# field name -> (default, min, max)
THROTTLE_BOUNDS: dict[str, tuple[int, int, int]] = {
    "auth_login_window_ms": (10 * _MINUTE_MS, 10_000, _DAY_MS),
    "auth_login_block_ms": (15 * _MINUTE_MS, 10_000, _DAY_MS),
    "auth_login_max_attempts": (8, 1, 100),
    "auth_login_ip_max_attempts": (30, 1, 500),
    "auth_login_rate_limit_max_keys": (20_000, 1_000, 200_000),
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ────────────────────────────────────────────────────────────
    environment: str = "development"
    log_level: str = "INFO"
    port: int = 8000

    # ── Login throttle ────────────────────────────────────────────────────────
    # Sliding window in which failures accumulate toward a lockout
    auth_login_window_ms: int = THROTTLE_BOUNDS["auth_login_window_ms"][0]
    # Lockout length once a key reaches its threshold
    auth_login_block_ms: int = THROTTLE_BOUNDS["auth_login_block_ms"][0]
    # Failures per (ip, client, username) before lockout
    auth_login_max_attempts: int = THROTTLE_BOUNDS["auth_login_max_attempts"][0]
    # Failures per ip before lockout (catches spraying across usernames)
    auth_login_ip_max_attempts: int = THROTTLE_BOUNDS["auth_login_ip_max_attempts"][0]
    # Hard cap on tracked throttle keys
    auth_login_rate_limit_max_keys: int = THROTTLE_BOUNDS["auth_login_rate_limit_max_keys"][0]

    # Honour X-Forwarded-For when running behind a reverse proxy
    trust_proxy: bool = False

    # ── Coarse request limiter (slowapi) ──────────────────────────────────────
    request_rate_limit_enabled: bool = True
    login_requests_per_minute: int = 60

    # ── Sessions & bootstrap account ──────────────────────────────────────────
    session_ttl_hours: int = 24 * 7
    admin_username: Optional[str] = None
    admin_password_hash: Optional[str] = None  # scrypt "salt:hash"
    admin_client_id: str = "default"

    # ── CORS ──────────────────────────────────────────────────────────────────
    cors_origins: list[str] = []

    @field_validator(*THROTTLE_BOUNDS, mode="before")
    @classmethod
    def clamp_throttle_value(cls, v: Any, info: ValidationInfo) -> int:
        default, min_val, max_val = THROTTLE_BOUNDS[info.field_name]
        return parse_bounded_int(v, default, min_val, max_val)

    @field_validator("environment")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "production", "testing"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


@lru_cache()
def get_settings() -> Settings:
    """Return cached Settings instance. Use this everywhere."""
    return Settings()
