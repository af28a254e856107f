"""
sauna_server/main.py - FastAPI application entry point
Includes: lifespan management, CORS, request rate limiting, security headers,
          process-wide login throttle / users / sessions, ping endpoint.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from sauna_server.config import get_settings
from sauna_server.core.logging import log_error, setup_logging
from sauna_server.core.login_throttle import LoginThrottle
from sauna_server.core.rate_limiter import RATE_LIMITS, limiter
from sauna_server.core.sessions import SessionStore
from sauna_server.routers import auth
from sauna_server.services.users import build_user_directory

settings = get_settings()

VERSION = "1.0.0"


# ──────────────────────────────────────────────────────────────────────────────
# Application Lifespan
# ──────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    setup_logging(settings.log_level)
    logger.info("Smart Sauna server starting up...")
    throttle: LoginThrottle = app.state.login_throttle
    logger.info(
        f"Login throttle: window={throttle.window_ms}ms block={throttle.block_ms}ms "
        f"user_max={throttle.max_attempts_per_user} ip_max={throttle.max_attempts_per_ip} "
        f"max_keys={throttle.max_tracked_keys} trust_proxy={throttle.trust_forwarded}"
    )
    if not len(app.state.users):
        logger.warning("No users configured. Set ADMIN_USERNAME and ADMIN_PASSWORD_HASH.")
    yield
    logger.info("Shutting down Smart Sauna server.")


# ──────────────────────────────────────────────────────────────────────────────
# FastAPI App
# ──────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Smart Sauna Server",
    description="Authentication backend for the Smart Sauna dashboard.",
    version=VERSION,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url=None,
    lifespan=lifespan,
)

# ── Process-wide state, injected into routes via app.state ────────────────────
app.state.login_throttle = LoginThrottle.from_settings(settings)
app.state.users = build_user_directory(settings)
app.state.sessions = SessionStore(ttl=timedelta(hours=settings.session_ttl_hours))

# ── Rate limiting - fastapi/slowapi ───────────────────────────────────────────
app.state.limiter = limiter
app.add_exception_handler(
    RateLimitExceeded,
    lambda req, exc: JSONResponse(
        status_code=429,
        content={"error": "Rate limit exceeded. Slow down."},
    ),
)
app.add_middleware(SlowAPIMiddleware)

# ── CORS ──────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.is_development else settings.cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)


# ── Error bodies: {"error": ...} ──────────────────────────────────────────────
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log_error("api", f"{request.method} {request.url.path}", exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ── Security headers middleware ───────────────────────────────────────────────
@app.middleware("http")
async def add_security_headers(request: Request, call_next) -> Response:
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if settings.is_production:
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
    return response


# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(auth.router, prefix="/api/auth", tags=["auth"])


@app.get("/api/ping", tags=["health"])
@limiter.limit(RATE_LIMITS["ping"])
async def ping(request: Request):
    """Liveness probe. Touches no state."""
    return {"status": "ok", "version": VERSION}
