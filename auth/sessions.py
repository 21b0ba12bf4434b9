"""
auth/sessions.py -- Session persistence and the session lifecycle.

A session has two observable states:

  Active     -- a row keyed by SHA-256(token) exists and expires_at is in the future.
  Destroyed  -- the row was deleted (logout, password change, purge) or has
                expired. Expiry is checked lazily on lookup; to callers an
                expired session and a deleted one look the same.

Cookie contract: "<64-hex token>.<64-hex HMAC-SHA256(secret, token)>",
HttpOnly, SameSite=Lax, Secure when configured, Path=/, Expires = session
expiry. The raw token exists only in the outgoing response and in the client;
the server stores its hash.

verify_session() answers None for every failure -- bad signature, unknown
token, expired row, deleted user, store error. The caller cannot tell these
apart, so the response leaks nothing about which check failed. The reason
is logged at DEBUG.

Layer rule: no imports from api/ or projects/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import Column, String, Table
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.crypto import generate_token, hash_token, pack_cookie, unpack_cookie, verify_cookie
from auth.errors import StoreUnavailableError
from auth.models import AuthContext, SessionRecord
from auth.store import UserStore
from core.db import metadata

logger = logging.getLogger("smartval.auth.sessions")

DEFAULT_TTL_SECONDS = 7 * 24 * 3600
DEFAULT_COOKIE_NAME = "session"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_sessions = Table(
    "sessions",
    metadata,
    Column("token_hash", String(64), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for SessionRecord rows. Knows nothing about cookies or expiry rules."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(engine, tables=[_sessions])

    def create(self, record: SessionRecord) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    token_hash=record.token_hash,
                    user_id=record.user_id,
                    expires_at=record.expires_at,
                    created_at=record.created_at,
                )
            )
            conn.commit()

    def find(self, token_hash: str) -> SessionRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_hash == token_hash)).fetchone()
        if row is None:
            return None
        return SessionRecord(
            token_hash=row.token_hash,
            user_id=row.user_id,
            expires_at=row.expires_at,
            created_at=row.created_at,
        )

    def delete(self, token_hash: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.token_hash == token_hash))
            conn.commit()
        return result.rowcount > 0

    def delete_for_user(self, user_id: str, keep: str | None = None) -> int:
        """Delete every session of user_id, optionally sparing the token hash `keep`."""
        condition = _sessions.c.user_id == user_id
        if keep is not None:
            condition = condition & (_sessions.c.token_hash != keep)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(condition))
            conn.commit()
        return result.rowcount

    def purge_expired(self, now: datetime) -> int:
        """Physically remove expired rows. Returns the number deleted."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= _iso(now)))
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IssuedSession:
    """A freshly created session. cookie_value carries the raw token -- send it, never store it."""

    cookie_value: str
    token_hash: str
    user_id: str
    expires_at: datetime


class SessionManager:
    """Issues, verifies, and destroys sessions.

    Usage:
        manager = SessionManager(SessionStore(engine), UserStore(engine), secret=settings.secret_key)
        issued = manager.create_session(user.id)
        manager.set_cookie(response, issued)
        ctx = manager.verify_session(request.cookies.get(manager.cookie_name))
    """

    def __init__(
        self,
        session_store: SessionStore,
        user_store: UserStore,
        secret: str,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        cookie_name: str = DEFAULT_COOKIE_NAME,
        secure_cookies: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("SessionManager requires a signing secret")
        self.sessions = session_store
        self.users = user_store
        self.cookie_name = cookie_name
        self.secure_cookies = secure_cookies
        self.ttl = timedelta(seconds=ttl_seconds)
        self._secret = secret
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_session(self, user_id: str) -> IssuedSession:
        """Persist a new session for user_id and return the cookie to send.

        Raises StoreUnavailableError if the row cannot be written; login must
        then fail rather than hand out a cookie the store does not know.
        """
        token = generate_token()
        token_hash = hash_token(token)
        now = self._now()
        expires_at = now + self.ttl
        try:
            self.sessions.create(
                SessionRecord(
                    token_hash=token_hash,
                    user_id=user_id,
                    expires_at=_iso(expires_at),
                    created_at=_iso(now),
                )
            )
        except SQLAlchemyError as exc:
            logger.exception("Could not persist session for user %s", user_id)
            raise StoreUnavailableError("session store unavailable") from exc
        return IssuedSession(
            cookie_value=pack_cookie(token, self._secret),
            token_hash=token_hash,
            user_id=user_id,
            expires_at=expires_at,
        )

    def verify_session(self, cookie_value: str | None) -> AuthContext | None:
        """Full verification: signature, stored row, expiry, and owning user.

        Returns the caller's AuthContext, or None for any failure.
        """
        token = verify_cookie(cookie_value, self._secret)
        if token is None:
            if cookie_value:
                logger.debug("Session rejected: malformed or forged cookie")
            return None
        try:
            record = self.sessions.find(hash_token(token))
            if record is None:
                logger.debug("Session rejected: unknown token")
                return None
            if datetime.fromisoformat(record.expires_at) <= self._now():
                logger.debug("Session rejected: expired")
                return None
            user = self.users.get_by_id(record.user_id)
        except SQLAlchemyError:
            logger.exception("Session verification failed on store access")
            return None
        if user is None:
            logger.debug("Session rejected: user %s no longer exists", record.user_id)
            return None
        return AuthContext(
            user_id=user.id,
            username=user.username,
            role=user.role,
            tenant_id=user.tenant_id,
        )

    def destroy_session(self, cookie_value: str | None) -> bool:
        """Delete the session behind cookie_value. Idempotent.

        A malformed, unknown, or already-destroyed cookie is a no-op. The
        signature is not checked: deleting by the hash of an unsigned token
        can only remove a row whose raw token the caller already holds.
        Returns True if a row was removed.
        """
        parts = unpack_cookie(cookie_value)
        if parts is None:
            return False
        token, _signature = parts
        try:
            return self.sessions.delete(hash_token(token))
        except SQLAlchemyError:
            logger.exception("Could not delete session during logout")
            return False

    def revoke_other_sessions(self, user_id: str, cookie_value: str | None) -> int:
        """Delete every session of user_id except the one behind cookie_value."""
        parts = unpack_cookie(cookie_value)
        keep = hash_token(parts[0]) if parts is not None else None
        try:
            return self.sessions.delete_for_user(user_id, keep=keep)
        except SQLAlchemyError as exc:
            logger.exception("Could not revoke sessions for user %s", user_id)
            raise StoreUnavailableError("session store unavailable") from exc

    def purge_expired(self) -> int:
        return self.sessions.purge_expired(self._now())

    # ------------------------------------------------------------------
    # Cookie helpers
    # ------------------------------------------------------------------

    def set_cookie(self, response, issued: IssuedSession) -> None:
        """Write the session cookie on a Starlette/FastAPI response.

        httponly=True: JS cannot read the cookie (XSS mitigation).
        samesite="lax": not sent on cross-site POST -- CSRF mitigation.
        secure: only sent over HTTPS when SECURE_COOKIES=true (production).
        expires/max_age: match the stored expiry so both end together.
        """
        response.set_cookie(
            self.cookie_name,
            value=issued.cookie_value,
            httponly=True,
            samesite="lax",
            secure=self.secure_cookies,
            path="/",
            expires=issued.expires_at,
            max_age=int(self.ttl.total_seconds()),
        )

    def clear_cookie(self, response) -> None:
        response.delete_cookie(
            self.cookie_name,
            path="/",
            secure=self.secure_cookies,
            httponly=True,
            samesite="lax",
        )
