"""Unit tests for auth/crypto.py -- tokens, HMAC signing, and cookie parsing.

Covers:
- generate_token() is 64 lower-case hex chars and never repeats
- hash_token() is deterministic SHA-256 hex
- verify(t, sign(t, s), s) holds; any single-bit flip of the signature fails
- pack/unpack cookie round trip; malformed values map to None
- verify_cookie() rejects a cookie signed with another secret
"""

import hashlib

import pytest

from auth.crypto import (
    generate_token,
    hash_token,
    pack_cookie,
    sign,
    unpack_cookie,
    verify,
    verify_cookie,
)

SECRET = "unit-test-secret-0123456789abcdef0123456789"


def _flip_bit(hex_str: str, bit: int) -> str:
    raw = bytearray(bytes.fromhex(hex_str))
    raw[bit // 8] ^= 1 << (bit % 8)
    return raw.hex()


def test_generate_token_shape_and_uniqueness():
    tokens = {generate_token() for _ in range(50)}
    assert len(tokens) == 50
    for t in tokens:
        assert len(t) == 64
        assert t == t.lower()
        int(t, 16)


def test_hash_token_is_sha256_hex():
    token = generate_token()
    assert hash_token(token) == hashlib.sha256(token.encode()).hexdigest()
    assert hash_token(token) != token


def test_verify_accepts_own_signature():
    token = generate_token()
    assert verify(token, sign(token, SECRET), SECRET)


@pytest.mark.parametrize("bit", [0, 7, 100, 255])
def test_verify_rejects_single_bit_flip(bit):
    token = generate_token()
    assert not verify(token, _flip_bit(sign(token, SECRET), bit), SECRET)


def test_verify_rejects_wrong_secret_and_garbage():
    token = generate_token()
    signature = sign(token, SECRET)
    assert not verify(token, signature, SECRET + "x")
    assert not verify(token, "not-hex", SECRET)
    assert not verify(token, "é" * 64, SECRET)
    assert not verify(token, None, SECRET)  # type: ignore[arg-type]


def test_pack_unpack_round_trip():
    token = generate_token()
    cookie = pack_cookie(token, SECRET)
    assert unpack_cookie(cookie) == (token, sign(token, SECRET))
    assert verify_cookie(cookie, SECRET) == token


@pytest.mark.parametrize(
    "value",
    [
        None,
        "",
        "no-separator",
        "." + "a" * 64,
        "a" * 64 + ".",
        "a" * 63 + "." + "b" * 64,
        "a" * 64 + "." + "B" * 64,
        "a" * 64 + "." + "b" * 64 + "\n",
        "a" * 64 + ".." + "b" * 64,
    ],
)
def test_unpack_rejects_malformed(value):
    assert unpack_cookie(value) is None
    assert verify_cookie(value, SECRET) is None


def test_verify_cookie_rejects_other_secret():
    cookie = pack_cookie(generate_token(), "another-secret-0123456789abcdef0123")
    assert unpack_cookie(cookie) is not None
    assert verify_cookie(cookie, SECRET) is None
