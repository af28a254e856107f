"""
sauna_server/routers/auth.py - Login, logout and current-user endpoints
Endpoints: /api/auth/login, /api/auth/logout, /api/auth/me
Every login goes through the login throttle before and after the credential check.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from sauna_server.core.auth import (
    auth_required,
    get_bearer_token,
    get_login_throttle,
    get_session_store,
    get_user_directory,
)
from sauna_server.core.logging import log_login_attempt, log_login_blocked
from sauna_server.core.login_throttle import LoginThrottle, get_client_ip
from sauna_server.core.rate_limiter import RATE_LIMITS, limiter
from sauna_server.core.sessions import SessionStore
from sauna_server.models import LoginOutcome, LoginRequest, LoginResponse, ThrottleStatus
from sauna_server.services.users import UserDirectory, normalize_client_id

router = APIRouter()


def _throttled_response(throttle_status: ThrottleStatus) -> JSONResponse:
    """429 with the lockout surfaced both as Retry-After and in the body."""
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": "Too many failed login attempts. Try again later.",
            "retryAfterSeconds": throttle_status.retry_after_seconds,
        },
        headers={"Retry-After": str(throttle_status.retry_after_seconds)},
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST /api/auth/login
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/login", response_model=LoginResponse)
@limiter.limit(RATE_LIMITS["login"])
def login(
    request: Request,
    body: Optional[LoginRequest] = None,
    throttle: LoginThrottle = Depends(get_login_throttle),
    users: UserDirectory = Depends(get_user_directory),
    sessions: SessionStore = Depends(get_session_store),
) -> Any:
    """
    Exchange username/password for a bearer session.
    Locked-out identities get 429 without their credentials being checked.
    """
    body = body or LoginRequest()
    username = body.username.strip()
    password = body.password
    client_id = normalize_client_id(body.client_id)

    if not username or not password:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username and password are required",
        )

    ip = get_client_ip(request, throttle.trust_forwarded)

    precheck = throttle.get_throttle_status(request, client_id, username)
    if precheck.blocked:
        log_login_blocked(ip, client_id, username, precheck.retry_after_seconds, "precheck")
        return _throttled_response(precheck)

    user = users.authenticate(client_id, username, password)
    if user is None:
        log_login_attempt(LoginOutcome.FAILURE.value, ip, client_id, username)
        after_failure = throttle.record_failed_attempt(request, client_id, username)
        if after_failure.blocked:
            log_login_blocked(ip, client_id, username, after_failure.retry_after_seconds, "after_failure")
            return _throttled_response(after_failure)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )

    throttle.clear_attempts(request, client_id, username)
    session = sessions.create(user)
    log_login_attempt(LoginOutcome.SUCCESS.value, ip, client_id, username)
    return LoginResponse(
        token=session.token,
        expires_at=session.expires_at,
        user=user.safe_dict(),
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST /api/auth/logout, GET /api/auth/me
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/logout")
async def logout(
    _auth=Depends(auth_required),
    token: str = Depends(get_bearer_token),
    sessions: SessionStore = Depends(get_session_store),
) -> dict[str, bool]:
    sessions.delete(token)
    return {"success": True}


@router.get("/me")
async def me(auth=Depends(auth_required)) -> dict[str, Any]:
    _session, user = auth
    return {"user": user.safe_dict()}
