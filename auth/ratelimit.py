"""
auth/ratelimit.py -- Store-backed sliding-window limiter and login lockout.

Two independent mechanisms share one persistence layer, both keyed by string:

  Sliding window (check_rate_limit): throttles a key such as "login:<ip>".
      Each key keeps the millisecond timestamps of its admitted requests
      inside the window. Broad and cheap -- stops scripted abuse from one
      address.

  Failure lockout (check_lockout / record_failure / reset_failures): protects
      one account ("user:<username>") even when the attacker rotates IPs. After
      max_failures consecutive failures the key is locked for lockout_seconds
      and every attempt is refused, correct password or not. reset_failures
      runs under the same row lock as record_failure and never clears an
      active lock, so a correct password whose check finishes after a
      concurrent failure set the lock is refused too.

Concurrency:
  State lives only in the shared SQL store, never in process memory, so limits
  hold across restarts and across instances. Every operation is one
  read-modify-write transaction on one row:
    1. INSERT ... ON CONFLICT DO NOTHING makes sure the row exists.
    2. SELECT ... FOR UPDATE re-reads it under a row lock (PostgreSQL); on
       SQLite the transaction already holds the write lock (BEGIN IMMEDIATE,
       see core/db.py).
    3. UPDATE writes the new state; COMMIT releases the lock.
  Two concurrent requests for the same key therefore serialize, and the last
  free slot can be taken only once.

  check_lockout is the one read-only step: it takes no row lock and its only
  write is a conditional delete of an expired lock. On SQLite it still opens
  its transaction with BEGIN IMMEDIATE like every other transaction, so a
  login holds the database write lock briefly three times (window, lockout
  check, failure or reset), never across the bcrypt check.

Failure policy:
  Any SQLAlchemyError is logged with its traceback and re-raised as
  StoreUnavailableError. Callers on the login path deny the request.

Layer rule: no imports from api/ or projects/.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Table, Text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import StoreUnavailableError
from auth.models import LoginFailureRecord, RateLimitRecord
from core.db import insert_if_absent, metadata

logger = logging.getLogger("smartval.auth.ratelimit")

DEFAULT_MAX_FAILURES = 5
DEFAULT_LOCKOUT_SECONDS = 15 * 60

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_rate_limits = Table(
    "rate_limits",
    metadata,
    Column("key", String(255), primary_key=True),
    Column("timestamps", Text, nullable=False, server_default="[]"),  # JSON list of epoch ms
    Column("updated_at", String(32), nullable=False),
)

_login_failures = Table(
    "login_failures",
    metadata,
    Column("key", String(255), primary_key=True),
    Column("failure_count", Integer, nullable=False, server_default="0"),
    Column("last_failure_at", String(32)),
    Column("locked_until", String(32)),  # NULL = not locked
)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    retry_after_ms: int
    remaining: int


@dataclass(frozen=True)
class LockoutResult:
    locked: bool
    remaining_ms: int
    failure_count: int


# ---------------------------------------------------------------------------
# Time helpers -- the store keeps ISO 8601 UTC text, the logic works in epoch ms
# ---------------------------------------------------------------------------


def _iso_from_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat(timespec="milliseconds")


def _ms_from_iso(value: str | None) -> int | None:
    if not value:
        return None
    return int(round(datetime.fromisoformat(value).timestamp() * 1000))


def _load_timestamps(raw: str | None, key: str) -> list[int]:
    try:
        values = json.loads(raw or "[]")
    except ValueError:
        logger.warning("Discarding unreadable rate-limit state for key %s", key)
        return []
    return sorted(int(v) for v in values if isinstance(v, (int, float)))


def _row_to_rate_limit(row) -> RateLimitRecord:
    return RateLimitRecord(key=row.key, timestamps=_load_timestamps(row.timestamps, row.key), updated_at=row.updated_at)


def _row_to_failure(row) -> LoginFailureRecord:
    return LoginFailureRecord(
        key=row.key,
        failure_count=row.failure_count or 0,
        last_failure_at=row.last_failure_at,
        locked_until=row.locked_until,
    )


# ---------------------------------------------------------------------------
# Limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Sliding-window counter and failure lockout over the shared store.

    Usage:
        limiter = RateLimiter(engine)
        if not limiter.check_rate_limit(f"login:{ip}", 10, 60_000).allowed: ...
        if limiter.check_lockout(f"user:{name}").locked: ...
        limiter.record_failure(f"user:{name}")
        limiter.reset_failures(f"user:{name}")

    clock returns epoch seconds; tests inject a fake one.
    """

    def __init__(
        self,
        engine: Engine,
        clock: Callable[[], float] = time.time,
        max_failures: int = DEFAULT_MAX_FAILURES,
        lockout_seconds: int = DEFAULT_LOCKOUT_SECONDS,
    ) -> None:
        self.engine = engine
        self.max_failures = max_failures
        self.lockout_ms = lockout_seconds * 1000
        self._clock = clock
        metadata.create_all(engine, tables=[_rate_limits, _login_failures])

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @contextmanager
    def _transaction(self, op: str, key: str) -> Iterator[Connection]:
        try:
            with self.engine.begin() as conn:
                yield conn
        except SQLAlchemyError as exc:
            logger.exception("Rate limiter %s failed for key %s", op, key)
            raise StoreUnavailableError(f"rate limiter store unavailable ({op})") from exc

    @staticmethod
    def _lock_row(conn: Connection, table: Table, key: str, defaults: dict):
        insert_if_absent(conn, table, {"key": key, **defaults})
        return conn.execute(table.select().where(table.c.key == key).with_for_update()).fetchone()

    # ------------------------------------------------------------------
    # Sliding window
    # ------------------------------------------------------------------

    def check_rate_limit(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        """Admit one request for key if fewer than max_requests fell in the last window_ms.

        Denied calls do not consume a slot. retry_after_ms is how long until the
        oldest admitted request leaves the window.
        """
        if max_requests < 1 or window_ms < 1:
            raise ValueError("max_requests and window_ms must be positive")
        now = self._now_ms()
        cutoff = now - window_ms
        with self._transaction("check_rate_limit", key) as conn:
            record = _row_to_rate_limit(
                self._lock_row(conn, _rate_limits, key, {"timestamps": "[]", "updated_at": _iso_from_ms(now)})
            )
            timestamps = [t for t in record.timestamps if t > cutoff]
            if len(timestamps) >= max_requests:
                result = RateLimitResult(
                    allowed=False,
                    retry_after_ms=max(window_ms - (now - timestamps[0]), 0),
                    remaining=0,
                )
            else:
                timestamps.append(now)
                result = RateLimitResult(allowed=True, retry_after_ms=0, remaining=max_requests - len(timestamps))
            conn.execute(
                _rate_limits.update()
                .where(_rate_limits.c.key == key)
                .values(timestamps=json.dumps(timestamps), updated_at=_iso_from_ms(now))
            )
        if not result.allowed:
            logger.warning("Rate limit exceeded for %s (retry in %d ms)", key, result.retry_after_ms)
        return result

    # ------------------------------------------------------------------
    # Failure lockout
    # ------------------------------------------------------------------

    @staticmethod
    def _lockout_state(record: LoginFailureRecord | None, now: int) -> LockoutResult:
        if record is None:
            return LockoutResult(locked=False, remaining_ms=0, failure_count=0)
        locked_until = _ms_from_iso(record.locked_until)
        if locked_until is not None and locked_until > now:
            return LockoutResult(locked=True, remaining_ms=locked_until - now, failure_count=record.failure_count)
        if locked_until is not None:
            return LockoutResult(locked=False, remaining_ms=0, failure_count=0)
        return LockoutResult(locked=False, remaining_ms=0, failure_count=record.failure_count)

    def check_lockout(self, key: str) -> LockoutResult:
        """Report whether key is locked. An expired lock is cleared here, lazily.

        Advisory: the answer can be stale by the time the password check ends.
        reset_failures re-checks under the row lock before a login succeeds.
        """
        now = self._now_ms()
        with self._transaction("check_lockout", key) as conn:
            row = conn.execute(_login_failures.select().where(_login_failures.c.key == key)).fetchone()
            record = _row_to_failure(row) if row is not None else None
            state = self._lockout_state(record, now)
            if record is not None and record.locked_until is not None and not state.locked:
                conn.execute(
                    _login_failures.delete().where(
                        (_login_failures.c.key == key) & (_login_failures.c.locked_until <= _iso_from_ms(now))
                    )
                )
        return state

    def record_failure(self, key: str) -> LockoutResult:
        """Count one failed attempt; lock the key when the threshold is reached.

        A failure after an expired lock starts a fresh count at 1. Failures
        recorded while a lock is active are counted but do not extend it.
        """
        now = self._now_ms()
        with self._transaction("record_failure", key) as conn:
            record = _row_to_failure(self._lock_row(conn, _login_failures, key, {"failure_count": 0}))
            count = record.failure_count
            locked_until = _ms_from_iso(record.locked_until)
            if locked_until is not None and locked_until <= now:
                count, locked_until = 0, None
            count += 1
            if locked_until is None and count >= self.max_failures:
                locked_until = now + self.lockout_ms
            conn.execute(
                _login_failures.update()
                .where(_login_failures.c.key == key)
                .values(
                    failure_count=count,
                    last_failure_at=_iso_from_ms(now),
                    locked_until=_iso_from_ms(locked_until) if locked_until is not None else None,
                )
            )
        locked = locked_until is not None and locked_until > now
        if locked and count == self.max_failures:
            logger.warning("Lockout triggered for %s after %d failures", key, count)
        return LockoutResult(locked=locked, remaining_ms=(locked_until - now) if locked else 0, failure_count=count)

    def reset_failures(self, key: str) -> LockoutResult:
        """Forget the recorded failures for key unless it is locked right now.

        Called after a correct password. The row is re-read under the same lock
        record_failure takes, so a lock set by a concurrent failure is kept and
        returned (locked=True); the caller must then refuse the login.
        """
        now = self._now_ms()
        with self._transaction("reset_failures", key) as conn:
            row = conn.execute(
                _login_failures.select().where(_login_failures.c.key == key).with_for_update()
            ).fetchone()
            state = self._lockout_state(_row_to_failure(row) if row is not None else None, now)
            if state.locked:
                logger.warning("Keeping active lock on %s despite a correct password", key)
                return state
            if row is not None:
                conn.execute(_login_failures.delete().where(_login_failures.c.key == key))
        return LockoutResult(locked=False, remaining_ms=0, failure_count=0)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def purge_stale(self, window_ms: int) -> int:
        """Delete rows that can no longer affect any decision. Returns rows removed.

        Rate-limit rows untouched for longer than window_ms hold only expired
        timestamps; failure rows whose lock has expired would be reset on
        their next read anyway. Unlocked failure counts are kept.
        """
        now = self._now_ms()
        with self._transaction("purge_stale", "*") as conn:
            limits = conn.execute(
                _rate_limits.delete().where(_rate_limits.c.updated_at < _iso_from_ms(now - window_ms))
            )
            locks = conn.execute(
                _login_failures.delete().where(
                    _login_failures.c.locked_until.is_not(None) & (_login_failures.c.locked_until <= _iso_from_ms(now))
                )
            )
        return limits.rowcount + locks.rowcount
