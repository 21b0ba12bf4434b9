"""
auth/validators.py -- Shape rules for usernames and passwords.

Each validator returns an error message, or None when the value is acceptable.
The API models call these from field validators so a bad value surfaces as a
400 with a field-level message. Messages never mention whether an account
exists.
"""

from __future__ import annotations

import re

USERNAME_RE = re.compile(r"[A-Za-z0-9]{6,64}")
MIN_USERNAME_LENGTH = 6
MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_LENGTH = 128


def normalize_username(username: str) -> str:
    return username.strip().lower()


def validate_username(username: object) -> str | None:
    """Letters and digits only, 6 to 64 characters."""
    if not isinstance(username, str) or not username.strip():
        return "Username is required."
    trimmed = username.strip()
    if len(trimmed) < MIN_USERNAME_LENGTH:
        return f"Username must be at least {MIN_USERNAME_LENGTH} characters."
    if not USERNAME_RE.fullmatch(trimmed):
        return "Username may contain only letters and digits (max 64)."
    return None


def validate_password(password: object) -> str | None:
    if not isinstance(password, str) or not password:
        return "Password is required."
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
    if len(password) > MAX_PASSWORD_LENGTH:
        return f"Password must be at most {MAX_PASSWORD_LENGTH} characters."
    return None
