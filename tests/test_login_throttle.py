"""
tests/test_login_throttle.py - Unit tests for the login throttle state machine
"""
from __future__ import annotations

import threading
from types import SimpleNamespace

import pytest

from sauna_server.core.login_throttle import (
    CLEANUP_INTERVAL_MS,
    DEFAULT_BLOCK_MS,
    DEFAULT_WINDOW_MS,
    LoginThrottle,
    build_keys,
    get_client_ip,
)
from sauna_server.models import AttemptRecord, ThrottleStatus

IP = "192.0.2.10"
START_MS = 1_700_000_000_000


def req(ip: str = IP) -> SimpleNamespace:
    return SimpleNamespace(ip=ip)


def fail(throttle: LoginThrottle, times: int, username: str = "alice", ip: str = IP, client: str = "web"):
    status = None
    for _ in range(times):
        status = throttle.record_failed_attempt(req(ip), client, username)
    return status


# ──────────────────────────────────────────────────────────────────────────────
# Thresholds
# ──────────────────────────────────────────────────────────────────────────────

def test_user_threshold_blocks_on_eighth_failure(throttle):
    statuses = [throttle.record_failed_attempt(req(), "web", "alice") for _ in range(8)]
    assert not any(s.blocked for s in statuses[:7])
    last = statuses[-1]
    assert last.blocked
    assert last.retry_after_ms == DEFAULT_BLOCK_MS
    assert last.retry_after_seconds == DEFAULT_BLOCK_MS // 1000


def test_below_threshold_stays_open(throttle):
    status = fail(throttle, 7)
    assert status.blocked is False
    assert throttle.get_throttle_status(req(), "web", "alice") == ThrottleStatus()


def test_block_visible_to_status_check(throttle):
    fail(throttle, 8)
    status = throttle.get_throttle_status(req(), "web", "alice")
    assert status.blocked
    assert status.retry_after_seconds == 900


def test_user_block_does_not_affect_other_usernames(throttle):
    fail(throttle, 8, username="alice")
    assert not throttle.get_throttle_status(req(), "web", "bob").blocked


def test_ip_ceiling_blocks_across_usernames(throttle):
    statuses = [
        throttle.record_failed_attempt(req(), "web", f"user-{i}")
        for i in range(30)
    ]
    assert not any(s.blocked for s in statuses[:29])
    assert statuses[-1].blocked
    # Every username on that ip is now locked, even one never tried
    assert throttle.get_throttle_status(req(), "web", "fresh-user").blocked
    # Another ip is unaffected
    assert not throttle.get_throttle_status(req("198.51.100.1"), "web", "fresh-user").blocked


def test_block_resets_failure_counter(throttle):
    fail(throttle, 8)
    keys = throttle.keys_for(req(), "web", "alice")
    record = throttle.get_record(keys.user_key)
    assert record.failures == 0
    assert record.blocked_until == START_MS + DEFAULT_BLOCK_MS
    assert record.first_failure_at == START_MS


# ──────────────────────────────────────────────────────────────────────────────
# Clearing
# ──────────────────────────────────────────────────────────────────────────────

def test_clear_attempts_unblocks(throttle):
    fail(throttle, 8)
    throttle.clear_attempts(req(), "web", "alice")
    status = throttle.get_throttle_status(req(), "web", "alice")
    assert status.blocked is False
    assert status.retry_after_ms == 0
    assert len(throttle) == 0


def test_clear_attempts_on_unknown_identity_is_noop(throttle):
    throttle.clear_attempts(req("203.0.113.99"), "nobody", "ghost")
    throttle.clear_attempts(None, None, None)
    assert len(throttle) == 0


# ──────────────────────────────────────────────────────────────────────────────
# Time-based transitions
# ──────────────────────────────────────────────────────────────────────────────

def test_window_expiry_restarts_count(throttle, clock):
    fail(throttle, 3)
    clock.advance(DEFAULT_WINDOW_MS + 1)
    status = fail(throttle, 1)
    keys = throttle.keys_for(req(), "web", "alice")
    assert throttle.get_record(keys.user_key).failures == 1
    assert throttle.get_record(keys.ip_key).failures == 1
    assert not status.blocked


def test_failures_within_window_accumulate(throttle, clock):
    fail(throttle, 3)
    clock.advance(DEFAULT_WINDOW_MS)  # boundary is inclusive
    fail(throttle, 1)
    keys = throttle.keys_for(req(), "web", "alice")
    assert throttle.get_record(keys.user_key).failures == 4


def test_block_expiry_allows_fresh_accumulation(throttle, clock):
    fail(throttle, 8)
    clock.advance(DEFAULT_BLOCK_MS + 1)
    assert not throttle.get_throttle_status(req(), "web", "alice").blocked

    status = fail(throttle, 1)
    assert not status.blocked
    keys = throttle.keys_for(req(), "web", "alice")
    assert throttle.get_record(keys.user_key).failures == 1


def test_short_block_counts_from_block_moment(clock):
    # Block shorter than window: the post-block window starts at the block itself
    throttle = LoginThrottle(window_ms=600_000, block_ms=10_000, clock=clock)
    fail(throttle, 8)
    clock.advance(10_001)
    assert not fail(throttle, 1).blocked
    keys = throttle.keys_for(req(), "web", "alice")
    record = throttle.get_record(keys.user_key)
    assert record.failures == 1
    assert record.first_failure_at == clock() - 10_001
    assert not fail(throttle, 6).blocked
    assert fail(throttle, 1).blocked


def test_retry_after_seconds_never_zero_while_blocked(throttle, clock):
    fail(throttle, 8)
    clock.advance(DEFAULT_BLOCK_MS - 500)
    status = throttle.get_throttle_status(req(), "web", "alice")
    assert status.blocked
    assert status.retry_after_ms == 500
    assert status.retry_after_seconds == 1


@pytest.mark.parametrize("remaining_ms,expected", [(1, 1), (999, 1), (1000, 1), (1001, 2)])
def test_retry_after_seconds_rounds_up(remaining_ms, expected):
    status = ThrottleStatus.from_blocked_until(10_000 + remaining_ms, 10_000)
    assert status.retry_after_seconds == expected


# ──────────────────────────────────────────────────────────────────────────────
# Cleanup & eviction
# ──────────────────────────────────────────────────────────────────────────────

def test_stale_records_are_evicted(throttle, clock):
    fail(throttle, 2, ip="203.0.113.1")
    stale_after = max(DEFAULT_WINDOW_MS, DEFAULT_BLOCK_MS) * 2
    clock.advance(stale_after - CLEANUP_INTERVAL_MS)
    fail(throttle, 1, ip="203.0.113.2")
    assert len(throttle) == 4

    clock.advance(CLEANUP_INTERVAL_MS + 1)
    throttle.get_throttle_status(req("203.0.113.3"), "web", "x")
    assert len(throttle) == 2
    assert all("203.0.113.2" in key for key in throttle.tracked_keys)


def test_cleanup_waits_for_interval(throttle, clock):
    throttle.cleanup()
    fail(throttle, 1)
    clock.advance(max(DEFAULT_WINDOW_MS, DEFAULT_BLOCK_MS) * 2 + 1)
    assert throttle.cleanup() == 2

    fail(throttle, 1)
    clock.advance(CLEANUP_INTERVAL_MS - 1)
    assert throttle.cleanup() == 0


def test_cap_evicts_oldest_first(clock):
    throttle = LoginThrottle(max_tracked_keys=10, clock=clock)
    for i in range(8):
        throttle.record_failed_attempt(req(f"10.0.0.{i}"), "web", f"user-{i}")
        clock.advance(1)
    # Store may overshoot between calls
    assert len(throttle) == 12

    throttle.cleanup()
    assert len(throttle) == 10
    tracked = throttle.tracked_keys
    for i in range(3):
        assert f"ip:10.0.0.{i}" not in tracked
    for i in range(3, 8):
        assert f"ip:10.0.0.{i}" in tracked


def test_cap_evicts_blocked_records_too(clock):
    throttle = LoginThrottle(max_attempts_per_user=1, max_tracked_keys=4, clock=clock)
    first = throttle.record_failed_attempt(req("10.0.0.1"), "web", "alice")
    assert first.blocked
    for i in range(2, 5):
        clock.advance(1)
        throttle.record_failed_attempt(req(f"10.0.0.{i}"), "web", "alice")
    throttle.cleanup()
    assert len(throttle) == 4
    assert not throttle.get_throttle_status(req("10.0.0.1"), "web", "alice").blocked


# ──────────────────────────────────────────────────────────────────────────────
# Normalization & robustness
# ──────────────────────────────────────────────────────────────────────────────

def test_ipv4_mapped_ipv6_shares_bucket():
    assert build_keys(req("::ffff:192.0.2.1"), "web", "alice") == build_keys(req("192.0.2.1"), "web", "alice")
    assert get_client_ip(req("::FFFF:192.0.2.1")) == "192.0.2.1"


def test_mapped_and_plain_ip_accumulate_together(throttle):
    for i in range(8):
        ip = "::ffff:192.0.2.1" if i % 2 else "192.0.2.1"
        status = throttle.record_failed_attempt(req(ip), "web", "alice")
    assert status.blocked


def test_missing_identity_uses_default_buckets():
    keys = build_keys(None, None, "")
    assert keys.ip_key == "ip:unknown"
    assert keys.user_key == "user:unknown:default:unknown"
    assert build_keys(SimpleNamespace(), "  ", None).user_key == "user:unknown:default:unknown"


def test_segments_are_trimmed_lowercased_and_truncated():
    keys = build_keys(req("  2001:DB8::1 "), " Web-App ", "  Alice ")
    assert keys.user_key == "user:2001:db8::1:web-app:alice"

    long_keys = build_keys(req(), "c" * 100, "u" * 200)
    _, _, client, user = long_keys.user_key.split(":")
    assert len(client) == 64
    assert len(user) == 128


def test_starlette_style_client_host():
    request = SimpleNamespace(client=SimpleNamespace(host="::ffff:198.51.100.7", port=5555), headers={})
    assert get_client_ip(request) == "198.51.100.7"


def test_forwarded_for_only_when_trusted():
    request = SimpleNamespace(
        client=SimpleNamespace(host="10.0.0.1", port=80),
        headers={"x-forwarded-for": "203.0.113.7, 10.0.0.1"},
    )
    assert get_client_ip(request) == "10.0.0.1"
    assert get_client_ip(request, trust_forwarded=True) == "203.0.113.7"


def test_corrupted_record_reads_as_unblocked(throttle):
    throttle.cleanup()
    keys = throttle.keys_for(req(), "web", "alice")
    throttle._records[keys.user_key] = AttemptRecord.model_construct(
        first_failure_at="junk", last_failure_at=None, failures=float("nan"), blocked_until="soon",
    )
    assert not throttle.get_throttle_status(req(), "web", "alice").blocked
    throttle.record_failed_attempt(req(), "web", "alice")
    assert throttle.get_record(keys.user_key).failures == 1


def test_concurrent_failures_are_all_counted(clock):
    throttle = LoginThrottle(max_attempts_per_user=10_000, max_attempts_per_ip=10_000, clock=clock)
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        for _ in range(25):
            throttle.record_failed_attempt(req(), "web", "alice")

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    keys = throttle.keys_for(req(), "web", "alice")
    assert throttle.get_record(keys.user_key).failures == 200
    assert throttle.get_record(keys.ip_key).failures == 200


def test_instances_are_isolated(clock):
    a = LoginThrottle(clock=clock)
    b = LoginThrottle(clock=clock)
    fail(a, 8)
    assert a.get_throttle_status(req(), "web", "alice").blocked
    assert not b.get_throttle_status(req(), "web", "alice").blocked
