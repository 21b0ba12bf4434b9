"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in projects/models.py -- dataclasses own domain shape; stores and routes do
the work.

Layer rule: no imports from api/ or projects/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    """Closed set of roles. Every role check in the codebase goes through this enum.

    Adding a member here is the only way to introduce a role; with_auth()
    rejects anything that is not a Role when a route is declared.
    """

    admin = "admin"
    manager = "manager"
    reviewer = "reviewer"
    valuer = "valuer"


@dataclass
class Tenant:
    """A company or team. All business data is owned by exactly one tenant."""

    id: str
    name: str
    created_at: str = ""


@dataclass
class User:
    """An identity belonging to exactly one tenant.

    username is stored lower-case; lookups normalize before querying, which is
    what makes usernames case-insensitive.
    """

    username: str
    password_hash: str
    role: Role
    tenant_id: str
    id: str = ""
    created_at: str = ""
    last_login: str | None = None


@dataclass
class SessionRecord:
    """A stored session. Only the SHA-256 of the raw token is ever persisted."""

    token_hash: str
    user_id: str
    expires_at: str  # ISO 8601 UTC
    created_at: str = ""


@dataclass
class RateLimitRecord:
    """Sliding-window state for one key, e.g. "login:203.0.113.5"."""

    key: str
    timestamps: list[int] = field(default_factory=list)  # epoch milliseconds, oldest first
    updated_at: str = ""


@dataclass
class LoginFailureRecord:
    """Consecutive login failures for one key, e.g. "user:alice123"."""

    key: str
    failure_count: int = 0
    last_failure_at: str | None = None
    locked_until: str | None = None


@dataclass(frozen=True)
class AuthContext:
    """The verified identity of the caller, threaded into every handler.

    tenant_id here is the only tenant identifier business logic may use.
    Anything a client sends in a body or query string is ignored.
    """

    user_id: str
    username: str
    role: Role
    tenant_id: str

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "role": self.role.value,
            "tenant_id": self.tenant_id,
        }
