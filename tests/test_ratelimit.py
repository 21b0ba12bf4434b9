"""Unit tests for auth/ratelimit.py -- sliding window and failure lockout.

Covers:
- 10 calls inside 60 s are allowed, the 11th is denied with retry_after_ms
- a denied call does not consume a slot; the key is allowed again once the
  oldest request leaves the window
- 5 record_failure() calls lock on the 5th; check_lockout() stays locked
  until the duration elapses, then reports unlocked with a zero count
- reset_failures() after fewer than 5 failures restarts counting at 1
- reset_failures() never clears an active lock, even when racing failures
  on a file-backed database
- a failure after an expired lock starts counting from 1
- purge_stale() removes only rows that can no longer affect a decision
- store failures surface as StoreUnavailableError
- concurrent check_rate_limit() calls on one key never admit more than
  max_requests (threads on a file-backed SQLite database)
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from auth.errors import StoreUnavailableError
from auth.ratelimit import RateLimiter
from core.db import create_db_engine

WINDOW_MS = 60_000
LOCKOUT_MS = 15 * 60 * 1000


@pytest.fixture
def limiter(engine, clock):
    return RateLimiter(engine, clock=clock, max_failures=5, lockout_seconds=15 * 60)


# ---------------------------------------------------------------------------
# Sliding window
# ---------------------------------------------------------------------------


def test_window_allows_ten_then_denies(limiter, clock):
    results = []
    for _ in range(10):
        results.append(limiter.check_rate_limit("login:203.0.113.5", 10, WINDOW_MS))
        clock.advance(1)
    assert all(r.allowed for r in results)
    assert [r.remaining for r in results] == list(range(9, -1, -1))

    denied = limiter.check_rate_limit("login:203.0.113.5", 10, WINDOW_MS)
    assert not denied.allowed
    # Oldest request was 10 s ago; it leaves the window in 50 s.
    assert denied.retry_after_ms == 50_000


def test_window_reopens_when_oldest_expires(limiter, clock):
    for _ in range(10):
        assert limiter.check_rate_limit("k", 10, WINDOW_MS).allowed
    clock.advance(59)
    assert not limiter.check_rate_limit("k", 10, WINDOW_MS).allowed
    clock.advance(1)
    assert limiter.check_rate_limit("k", 10, WINDOW_MS).allowed


def test_denied_calls_do_not_consume_slots(limiter, clock):
    for _ in range(3):
        assert limiter.check_rate_limit("k", 3, WINDOW_MS).allowed
    for _ in range(20):
        assert not limiter.check_rate_limit("k", 3, WINDOW_MS).allowed
    clock.advance(60)
    results = [limiter.check_rate_limit("k", 3, WINDOW_MS).allowed for _ in range(4)]
    assert results == [True, True, True, False]


def test_keys_are_independent(limiter):
    assert limiter.check_rate_limit("login:a", 1, WINDOW_MS).allowed
    assert not limiter.check_rate_limit("login:a", 1, WINDOW_MS).allowed
    assert limiter.check_rate_limit("login:b", 1, WINDOW_MS).allowed


def test_window_rejects_nonsense_limits(limiter):
    with pytest.raises(ValueError):
        limiter.check_rate_limit("k", 0, WINDOW_MS)
    with pytest.raises(ValueError):
        limiter.check_rate_limit("k", 5, 0)


# ---------------------------------------------------------------------------
# Failure lockout
# ---------------------------------------------------------------------------


def test_unknown_key_is_not_locked(limiter):
    state = limiter.check_lockout("user:nobody")
    assert not state.locked
    assert state.failure_count == 0


def test_fifth_failure_locks(limiter, clock):
    for expected in range(1, 5):
        result = limiter.record_failure("user:alice123")
        assert not result.locked
        assert result.failure_count == expected
    fifth = limiter.record_failure("user:alice123")
    assert fifth.locked
    assert fifth.remaining_ms == LOCKOUT_MS

    clock.advance(14 * 60)
    state = limiter.check_lockout("user:alice123")
    assert state.locked
    assert state.remaining_ms == 60_000

    clock.advance(60)
    state = limiter.check_lockout("user:alice123")
    assert not state.locked
    assert state.failure_count == 0


def test_failures_while_locked_do_not_extend_lock(limiter, clock):
    for _ in range(5):
        limiter.record_failure("user:alice123")
    clock.advance(10 * 60)
    again = limiter.record_failure("user:alice123")
    assert again.locked
    assert again.remaining_ms == 5 * 60 * 1000


def test_reset_restarts_count(limiter):
    for _ in range(3):
        limiter.record_failure("user:alice123")
    limiter.reset_failures("user:alice123")
    assert limiter.check_lockout("user:alice123").failure_count == 0
    assert limiter.record_failure("user:alice123").failure_count == 1


def test_failure_after_expired_lock_counts_from_one(limiter, clock):
    for _ in range(5):
        limiter.record_failure("user:alice123")
    clock.advance(15 * 60)
    result = limiter.record_failure("user:alice123")
    assert not result.locked
    assert result.failure_count == 1


def test_reset_keeps_active_lock(limiter, clock):
    for _ in range(5):
        limiter.record_failure("user:alice123")
    clock.advance(60)
    kept = limiter.reset_failures("user:alice123")
    assert kept.locked
    assert kept.remaining_ms == LOCKOUT_MS - 60_000
    assert limiter.check_lockout("user:alice123").locked

    clock.advance(15 * 60)
    cleared = limiter.reset_failures("user:alice123")
    assert not cleared.locked
    assert limiter.check_lockout("user:alice123").failure_count == 0


def test_reset_of_unknown_key_is_noop(limiter):
    limiter.reset_failures("user:ghost")
    assert limiter.check_lockout("user:ghost").failure_count == 0


# ---------------------------------------------------------------------------
# Housekeeping and failure policy
# ---------------------------------------------------------------------------


def test_purge_stale_keeps_live_state(limiter, clock):
    limiter.check_rate_limit("old", 5, WINDOW_MS)
    for _ in range(5):
        limiter.record_failure("user:expired")
    limiter.record_failure("user:counting")
    clock.advance(16 * 60)
    limiter.check_rate_limit("fresh", 5, WINDOW_MS)

    removed = limiter.purge_stale(WINDOW_MS)

    assert removed == 2  # "old" window row and the expired lock
    assert limiter.check_lockout("user:counting").failure_count == 1
    assert limiter.check_rate_limit("fresh", 5, WINDOW_MS).remaining == 3


def test_store_error_raises_unavailable(limiter):
    with patch.object(limiter.engine, "begin", side_effect=OperationalError("BEGIN", {}, Exception("locked"))):
        with pytest.raises(StoreUnavailableError):
            limiter.check_rate_limit("k", 5, WINDOW_MS)
        with pytest.raises(StoreUnavailableError):
            limiter.record_failure("user:alice123")


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_concurrent_calls_never_exceed_limit(tmp_path):
    """Parallel callers on one key: exactly max_requests are admitted.

    Uses a file database because shared-cache in-memory SQLite reports lock
    conflicts immediately instead of waiting on the busy timeout.
    """
    engine = create_db_engine(f"sqlite:///{tmp_path / 'limits.db'}")
    try:
        limiter = RateLimiter(engine)
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: limiter.check_rate_limit("login:shared", 10, WINDOW_MS), range(40)))
        assert sum(r.allowed for r in results) == 10
    finally:
        engine.dispose()


def test_concurrent_failures_and_success_never_clear_lock(tmp_path):
    """Seven wrong passwords and one right one race on a key with 4 failures.

    Whatever the interleaving, the key ends up locked. A reset that ran
    before any failure landed saw no lock and every failure counts after it;
    otherwise the reset reported the lock and left every failure in place.
    """
    engine = create_db_engine(f"sqlite:///{tmp_path / 'lockout.db'}")
    try:
        limiter = RateLimiter(engine, max_failures=5)
        key = "user:alice123"
        for _ in range(4):
            limiter.record_failure(key)

        barrier = threading.Barrier(8)

        def attempt(i):
            barrier.wait()
            return limiter.reset_failures(key) if i == 3 else limiter.record_failure(key)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(8)))

        cleared = results[3]
        state = limiter.check_lockout(key)
        assert state.locked
        assert state.failure_count == (11 if cleared.locked else 7)
    finally:
        engine.dispose()
