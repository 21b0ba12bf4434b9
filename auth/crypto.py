"""
auth/crypto.py -- Token generation, hashing, and HMAC cookie signing.

Security design decisions:
  Tokens: secrets.token_hex(32) gives 256 bits from the OS CSPRNG. A
       predictable token is a total compromise, so nothing else (random,
       uuid, time) is ever used here.

  Storage: the store keys sessions by SHA-256(token). A leaked database dump
       yields hashes that cannot be replayed as cookies.

  Signing: cookie value is "<token>.<HMAC-SHA256(secret, token)>". The
       signature lets the edge guard reject forged cookies without a store
       lookup. Comparison uses hmac.compare_digest -- a short-circuiting ==
       leaks signature bytes through timing over many requests.

  Parsing: every malformed cookie maps to None. Nothing in this module raises
       on attacker-controlled input.

Layer rule: stdlib only. No imports from api/, projects/, or other auth/ modules.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets

TOKEN_BYTES = 32
_HEX64 = re.compile(r"[0-9a-f]{64}")
SEPARATOR = "."


def generate_token() -> str:
    """Return a new 64-char hex session token from the CSPRNG."""
    return secrets.token_hex(TOKEN_BYTES)


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest used as the session storage key."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def sign(token: str, secret: str) -> str:
    """Return HMAC-SHA256(secret, token) as lower-case hex."""
    return hmac.new(secret.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def verify(token: str, signature: str, secret: str) -> bool:
    """Return True if signature is the HMAC of token under secret.

    Constant-time comparison. Non-ASCII input cannot match a hex digest and
    returns False rather than raising.
    """
    if not isinstance(token, str) or not isinstance(signature, str):
        return False
    expected = sign(token, secret)
    try:
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("ascii"))
    except UnicodeEncodeError:
        return False


def pack_cookie(token: str, secret: str) -> str:
    """Build the cookie value "<token>.<signature>"."""
    return f"{token}{SEPARATOR}{sign(token, secret)}"


def unpack_cookie(value: str | None) -> tuple[str, str] | None:
    """Split a cookie value into (token, signature), or None if malformed.

    Splits on the last separator. Rejects a missing separator, empty parts,
    and anything that is not exactly 64 lower-case hex chars on either side.
    """
    if not value or SEPARATOR not in value:
        return None
    token, _, signature = value.rpartition(SEPARATOR)
    if not token or not signature:
        return None
    if not _HEX64.fullmatch(token) or not _HEX64.fullmatch(signature):
        return None
    return token, signature


def verify_cookie(value: str | None, secret: str) -> str | None:
    """Return the raw token if the cookie is well-formed and correctly signed."""
    parts = unpack_cookie(value)
    if parts is None:
        return None
    token, signature = parts
    if not verify(token, signature, secret):
        return None
    return token
