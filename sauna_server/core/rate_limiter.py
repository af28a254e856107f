"""
sauna_server/core/rate_limiter.py - slowapi request rate limiting configuration
Coarse per-address request caps. Credential brute-force protection lives in
login_throttle.py; this only keeps a single client from hammering endpoints.
"""
from __future__ import annotations

from typing import Any

from slowapi import Limiter

from sauna_server.config import get_settings
from sauna_server.core.login_throttle import get_client_ip

settings = get_settings()


def client_address(request: Any) -> str:
    """Limiter key: the same address the login throttle attributes attempts to."""
    return get_client_ip(request, get_settings().trust_proxy)


# Single shared limiter instance, imported by main.py and routers
limiter = Limiter(
    key_func=client_address,
    enabled=settings.request_rate_limit_enabled,
)

RATE_LIMITS = {
    # Login: generous, the login throttle does the real work
    "login": f"{settings.login_requests_per_minute}/minute",
    # Health check
    "ping": "60/minute",
}
