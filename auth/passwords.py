"""
auth/passwords.py -- Password hashing and credential verification.

Security design decisions:
  Passwords: bcrypt, used directly. Bcrypt is the right choice for
       low-entropy secrets (passwords) because its cost factor makes brute-force
       expensive. The _DUMMY_HASH constant enables timing equalization in
       authenticate_user() so response time does not reveal whether a username
       exists.

  Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
  wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
  rejects with an explicit error.

Layer rule: no imports from api/ or projects/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("smartval.auth")

_BCRYPT_ROUNDS = 10


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. validators.py caps
    passwords at 128 chars; the first 72 bytes carry far more entropy than any
    brute-force budget, so the truncation is accepted.
    """
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in the store
        logger.warning("Unreadable password hash encountered during verification")
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("smartval_timing_dummy")


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Authenticate a username/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_username(username)
    if user is None:
        # Equalize timing -- do NOT return early before running bcrypt
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user
