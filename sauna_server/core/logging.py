"""
sauna_server/core/logging.py - loguru structured JSON logging setup
Login events, throttle lockouts and cleanup passes are logged as JSON records.
"""
from __future__ import annotations

import json
import sys
import traceback
from datetime import datetime
from typing import Any, Optional

from loguru import logger

from sauna_server.models import LoginOutcome


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure loguru for structured JSON output to stdout.
    """
    # Remove default loguru handler
    logger.remove()

    logger.add(
        sys.stdout,
        level=log_level.upper(),
        format="{message}",
        serialize=True,       # loguru built-in JSON serialization
        backtrace=True,
        diagnose=False,       # Never dump locals (may hold passwords)
        colorize=False,
    )


def _build_log_record(
    component: str,
    operation: str,
    extra: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Build a base structured log record."""
    record: dict[str, Any] = {
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "component": component,
        "operation": operation,
    }
    if extra:
        record.update(extra)
    return record


# ──────────────────────────────────────────────────────────────────────────────
# Auth events
# ──────────────────────────────────────────────────────────────────────────────

def log_login_attempt(
    outcome: str,  # LoginOutcome.SUCCESS | LoginOutcome.FAILURE
    ip: str,
    client_id: str,
    username: str,
) -> None:
    """Every credential check is logged. Passwords never reach this function."""
    record = _build_log_record("auth", "login_attempt", {
        "outcome": outcome,
        "ip": ip,
        "client_id": client_id,
        "username": username,
    })
    if outcome == "success":
        logger.info(json.dumps(record))
    else:
        logger.warning(json.dumps(record))


def log_login_blocked(
    ip: str,
    client_id: str,
    username: str,
    retry_after_seconds: int,
    phase: str,  # precheck | after_failure
) -> None:
    """A login was rejected because its ip or user key is locked out."""
    record = _build_log_record("login_throttle", "login_blocked", {
        "outcome": LoginOutcome.THROTTLED.value,
        "ip": ip,
        "client_id": client_id,
        "username": username,
        "retry_after_seconds": retry_after_seconds,
        "phase": phase,
    })
    logger.warning(json.dumps(record))


def log_throttle_cleanup(evicted: int, remaining: int, forced: bool) -> None:
    """Only called when a cleanup pass actually removed records."""
    record = _build_log_record("login_throttle", "cleanup", {
        "evicted": evicted,
        "remaining": remaining,
        "forced": forced,
    })
    logger.debug(json.dumps(record))


def log_error(
    component: str,
    operation: str,
    error: Exception,
    context: Optional[dict[str, Any]] = None,
) -> None:
    """Every unexpected error is logged with full context."""
    tb = traceback.format_exc()
    record = _build_log_record(component, operation, {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "stack_trace": tb[:2000] if tb else "",
        "context": context or {},
    })
    logger.error(json.dumps(record))
