"""
sauna_server/core/login_throttle.py - Brute-force guard for the login endpoint
Tracks failed logins per ip and per (ip, client, username), locks keys out once
a threshold is reached inside the sliding window, and keeps memory bounded with
opportunistic cleanup on every call (no background thread).
"""
from __future__ import annotations

import re
import threading
import time
from collections.abc import Mapping
from typing import Any, Callable, NamedTuple, Optional

from sauna_server.config import Settings, THROTTLE_BOUNDS
from sauna_server.core.logging import log_throttle_cleanup
from sauna_server.models import AttemptRecord, ThrottleStatus
from sauna_server.utils.validators import safe_number

Clock = Callable[[], int]

CLEANUP_INTERVAL_MS = 60_000

DEFAULT_WINDOW_MS = THROTTLE_BOUNDS["auth_login_window_ms"][0]
DEFAULT_BLOCK_MS = THROTTLE_BOUNDS["auth_login_block_ms"][0]
DEFAULT_MAX_ATTEMPTS_PER_USER = THROTTLE_BOUNDS["auth_login_max_attempts"][0]
DEFAULT_MAX_ATTEMPTS_PER_IP = THROTTLE_BOUNDS["auth_login_ip_max_attempts"][0]
DEFAULT_MAX_TRACKED_KEYS = THROTTLE_BOUNDS["auth_login_rate_limit_max_keys"][0]

UNKNOWN_IP = "unknown"
DEFAULT_CLIENT = "default"
UNKNOWN_USER = "unknown"

_MAPPED_V4_PREFIX = re.compile(r"^::ffff:", re.IGNORECASE)


def wall_clock_ms() -> int:
    return int(time.time() * 1000)


# ──────────────────────────────────────────────────────────────────────────────
# Identity normalization
# ──────────────────────────────────────────────────────────────────────────────

class ThrottleKeys(NamedTuple):
    ip_key: str
    user_key: str


def normalize_segment(value: Any, max_length: int = 128) -> str:
    """Trim, lower-case and truncate an identity segment. None -> ''."""
    if value is None:
        return ""
    return str(value).strip().lower()[:max_length]


def _header(request: Any, name: str) -> str:
    headers = getattr(request, "headers", None)
    if headers is None and isinstance(request, Mapping):
        headers = request.get("headers")
    if not hasattr(headers, "get"):
        return ""
    value = headers.get(name) or headers.get(name.title())
    return value if isinstance(value, str) else ""


def _peer_address(request: Any) -> str:
    ip = getattr(request, "ip", None)
    if isinstance(ip, str) and ip.strip():
        return ip

    # Starlette / FastAPI Request
    client = getattr(request, "client", None)
    host = getattr(client, "host", None)
    if isinstance(host, str) and host.strip():
        return host

    sock = getattr(request, "socket", None)
    remote = getattr(sock, "remote_address", None)
    if isinstance(remote, str) and remote.strip():
        return remote

    if isinstance(request, Mapping):
        ip = request.get("ip")
        if isinstance(ip, str):
            return ip
    return ""


def get_client_ip(request: Any, trust_forwarded: bool = False) -> str:
    """
    Resolve the address a login attempt is attributed to.
    IPv4-mapped IPv6 addresses collapse onto their IPv4 form so both spellings
    share one bucket. Anything unresolvable lands in the shared 'unknown' bucket.
    """
    raw = ""
    if request is not None:
        if trust_forwarded:
            # First hop of the proxy chain is the client
            raw = _header(request, "x-forwarded-for").split(",")[0].strip()
        if not raw:
            raw = _peer_address(request)
    value = _MAPPED_V4_PREFIX.sub("", str(raw).strip()).strip().lower()
    return value or UNKNOWN_IP


def build_keys(
    request: Any,
    client_id: Any,
    username: Any,
    trust_forwarded: bool = False,
) -> ThrottleKeys:
    ip = get_client_ip(request, trust_forwarded)
    client = normalize_segment(client_id, 64) or DEFAULT_CLIENT
    user = normalize_segment(username, 128) or UNKNOWN_USER
    return ThrottleKeys(
        ip_key=f"ip:{ip}",
        user_key=f"user:{ip}:{client}:{user}",
    )


# ──────────────────────────────────────────────────────────────────────────────
# Throttle
# ──────────────────────────────────────────────────────────────────────────────

class LoginThrottle:
    """
    In-process login throttle. Construct one per process and inject it into the
    login handler; tests construct their own with a fake clock.

    State per key:
        no record -> accumulating (failures < threshold)
        accumulating -> blocked (failures reach threshold; counter resets to 0)
        blocked -> expired (blocked_until passes; reads as unblocked)
        expired -> accumulating (next failure starts a fresh window)
        any -> no record (clear_attempts, stale cleanup, cap eviction)
    """

    def __init__(
        self,
        window_ms: int = DEFAULT_WINDOW_MS,
        block_ms: int = DEFAULT_BLOCK_MS,
        max_attempts_per_user: int = DEFAULT_MAX_ATTEMPTS_PER_USER,
        max_attempts_per_ip: int = DEFAULT_MAX_ATTEMPTS_PER_IP,
        max_tracked_keys: int = DEFAULT_MAX_TRACKED_KEYS,
        clock: Optional[Clock] = None,
        trust_forwarded: bool = False,
    ) -> None:
        self.window_ms = window_ms
        self.block_ms = block_ms
        self.max_attempts_per_user = max_attempts_per_user
        self.max_attempts_per_ip = max_attempts_per_ip
        self.max_tracked_keys = max_tracked_keys
        self.trust_forwarded = trust_forwarded
        self._clock: Clock = clock or wall_clock_ms
        self._records: dict[str, AttemptRecord] = {}
        self._last_cleanup_at = 0
        # Guards the read-check-write in _register_failure against the thread pool
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, clock: Optional[Clock] = None) -> "LoginThrottle":
        return cls(
            window_ms=settings.auth_login_window_ms,
            block_ms=settings.auth_login_block_ms,
            max_attempts_per_user=settings.auth_login_max_attempts,
            max_attempts_per_ip=settings.auth_login_ip_max_attempts,
            max_tracked_keys=settings.auth_login_rate_limit_max_keys,
            clock=clock,
            trust_forwarded=settings.trust_proxy,
        )

    def __len__(self) -> int:
        return len(self._records)

    @property
    def tracked_keys(self) -> list[str]:
        with self._lock:
            return list(self._records)

    def get_record(self, key: str) -> Optional[AttemptRecord]:
        with self._lock:
            record = self._records.get(key)
            return record.model_copy() if record is not None else None

    def keys_for(self, request: Any, client_id: Any, username: Any) -> ThrottleKeys:
        return build_keys(request, client_id, username, self.trust_forwarded)

    def reset(self) -> None:
        """Drop all tracked state."""
        with self._lock:
            self._records.clear()
            self._last_cleanup_at = 0

    # ── Public operations ─────────────────────────────────────────────────────

    def get_throttle_status(self, request: Any, client_id: Any = None, username: Any = None) -> ThrottleStatus:
        """Current lockout for this identity: the later of the ip and user blocks."""
        now_ms = self._clock()
        keys = self.keys_for(request, client_id, username)
        with self._lock:
            self._cleanup(now_ms)
            blocked_until = max(
                self._read_blocked_until(keys.ip_key, now_ms),
                self._read_blocked_until(keys.user_key, now_ms),
            )
        return ThrottleStatus.from_blocked_until(blocked_until, now_ms)

    def record_failed_attempt(self, request: Any, client_id: Any = None, username: Any = None) -> ThrottleStatus:
        """
        Register one failed credential check against both keys.
        The returned status reflects the records written by this very call.
        """
        now_ms = self._clock()
        keys = self.keys_for(request, client_id, username)
        with self._lock:
            self._cleanup(now_ms)
            user_blocked_until = self._register_failure(keys.user_key, self.max_attempts_per_user, now_ms)
            ip_blocked_until = self._register_failure(keys.ip_key, self.max_attempts_per_ip, now_ms)
        return ThrottleStatus.from_blocked_until(max(user_blocked_until, ip_blocked_until), now_ms)

    def clear_attempts(self, request: Any, client_id: Any = None, username: Any = None) -> None:
        """Forget both keys after a successful login. Missing keys are fine."""
        keys = self.keys_for(request, client_id, username)
        with self._lock:
            self._records.pop(keys.user_key, None)
            self._records.pop(keys.ip_key, None)

    def cleanup(self, now_ms: Optional[int] = None) -> int:
        """Run an eviction pass if one is due. Returns the number of records removed."""
        with self._lock:
            return self._cleanup(self._clock() if now_ms is None else now_ms)

    # ── Internals (caller holds the lock) ─────────────────────────────────────

    def _read_blocked_until(self, key: str, now_ms: int) -> int:
        record = self._records.get(key)
        if record is None:
            return 0
        blocked_until = safe_number(record.blocked_until)
        return blocked_until if blocked_until > now_ms else 0

    def _register_failure(self, key: str, max_attempts: int, now_ms: int) -> int:
        current = self._records.get(key)
        if current is None or now_ms - safe_number(current.first_failure_at) > self.window_ms:
            record = AttemptRecord(
                first_failure_at=now_ms,
                last_failure_at=now_ms,
                failures=1,
                blocked_until=0,
            )
        else:
            record = AttemptRecord(
                first_failure_at=safe_number(current.first_failure_at, now_ms) or now_ms,
                last_failure_at=now_ms,
                failures=safe_number(current.failures) + 1,
                blocked_until=safe_number(current.blocked_until),
            )

        if record.failures >= max_attempts:
            # Restart the window at the block so an expired block does not re-trigger instantly
            record.blocked_until = now_ms + self.block_ms
            record.first_failure_at = now_ms
            record.failures = 0

        self._records[key] = record
        return record.blocked_until

    def _cleanup(self, now_ms: int) -> int:
        over_cap = len(self._records) > self.max_tracked_keys
        if now_ms - self._last_cleanup_at < CLEANUP_INTERVAL_MS and not over_cap:
            return 0
        self._last_cleanup_at = now_ms

        stale_after_ms = max(self.window_ms, self.block_ms) * 2
        stale = [
            key for key, record in self._records.items()
            if safe_number(record.blocked_until) <= now_ms
            and now_ms - safe_number(record.last_failure_at) > stale_after_ms
        ]
        for key in stale:
            del self._records[key]

        evicted = len(stale) + self._trim_oldest()
        if evicted:
            log_throttle_cleanup(evicted, len(self._records), forced=over_cap)
        return evicted

    def _trim_oldest(self) -> int:
        """Hard cap: drop the least recently failed keys, blocked or not."""
        overflow = len(self._records) - self.max_tracked_keys
        if overflow <= 0:
            return 0
        oldest = sorted(
            self._records,
            key=lambda k: safe_number(self._records[k].last_failure_at),
        )
        for key in oldest[:overflow]:
            del self._records[key]
        return overflow
