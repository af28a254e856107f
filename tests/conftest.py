"""
tests/conftest.py - Shared pytest fixtures
"""
from __future__ import annotations

import os

# Must be set before sauna_server.config is first imported
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("REQUEST_RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from sauna_server.core.login_throttle import LoginThrottle
from sauna_server.core.rate_limiter import limiter
from sauna_server.core.sessions import SessionStore
from sauna_server.services.users import UserDirectory

START_MS = 1_700_000_000_000

TEST_USERNAME = "sauna-admin"
TEST_PASSWORD = "correct horse battery staple"


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start_ms: int = START_MS) -> None:
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def throttle(clock) -> LoginThrottle:
    return LoginThrottle(clock=clock)


@pytest.fixture
def credentials() -> dict[str, str]:
    return {"username": TEST_USERNAME, "password": TEST_PASSWORD}


@pytest.fixture
def users() -> UserDirectory:
    directory = UserDirectory()
    directory.add_user(TEST_USERNAME, TEST_PASSWORD)
    return directory


@pytest.fixture
def app_client(throttle, users, monkeypatch):
    from sauna_server.main import app

    monkeypatch.setattr(limiter, "enabled", False)
    monkeypatch.setattr(app.state, "login_throttle", throttle)
    monkeypatch.setattr(app.state, "users", users)
    monkeypatch.setattr(app.state, "sessions", SessionStore())
    with TestClient(app) as client:
        yield client
