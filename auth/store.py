"""
auth/store.py -- SQLAlchemy Core persistence layer for identity entities.

Pattern: Repository + Data Mapper (same as projects/store.py).
UserStore and TenantStore are the repositories; _row_to_user / _row_to_tenant
are the mappers. Route and dependency code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Tenant scoping: every method that lists, mutates, or deletes users on
  behalf of a caller takes tenant_id and puts it in the WHERE clause. A user
  id alone never reaches another tenant's row.

  Usernames are stored lower-case and looked up lower-case, so the UNIQUE
  constraint on username is case-insensitive in effect.

Layer rule: no imports from api/ or projects/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, String, Table, Text
from sqlalchemy.engine import Engine

from auth.models import Role, Tenant, User
from auth.validators import normalize_username
from core.db import insert_if_absent, metadata

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_tenants = Table(
    "tenants",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_users = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("username", String(64), nullable=False, unique=True),  # lower-case
    Column("password_hash", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default=Role.valuer.value),
    Column("tenant_id", String(64), ForeignKey("tenants.id"), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class TenantStore:
    """Repository for Tenant records.

    Tenants are created lazily on the first registration that names them and
    are never deleted in normal operation.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(engine, tables=[_tenants])

    def create(self, name: str, tenant_id: str | None = None) -> Tenant:
        tenant = Tenant(id=tenant_id or new_id(), name=name, created_at=_now_iso())
        with self.engine.connect() as conn:
            conn.execute(_tenants.insert().values(id=tenant.id, name=tenant.name, created_at=tenant.created_at))
            conn.commit()
        return tenant

    def get(self, tenant_id: str) -> Tenant | None:
        with self.engine.connect() as conn:
            row = conn.execute(_tenants.select().where(_tenants.c.id == tenant_id)).fetchone()
        return _row_to_tenant(row) if row is not None else None

    def ensure(self, tenant_id: str, name: str) -> Tenant:
        """Return the tenant, creating it first if it does not exist yet.

        Safe under concurrent callers: the insert is ON CONFLICT DO NOTHING and
        the row is re-read inside the same transaction.
        """
        with self.engine.connect() as conn:
            insert_if_absent(conn, _tenants, {"id": tenant_id, "name": name, "created_at": _now_iso()})
            row = conn.execute(_tenants.select().where(_tenants.c.id == tenant_id)).fetchone()
            conn.commit()
        return _row_to_tenant(row)


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore(engine)
        store.create_user(User(username="alice123", password_hash=hash_password("secret"),
                               role=Role.admin, tenant_id=tenant.id))
        user = store.get_by_username("Alice123")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(engine, tables=[_tenants, _users])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        Callers (registration, admin create) catch it and answer 409.
        """
        with self.engine.connect() as conn:
            user_id = _insert_user(conn, user)
            conn.commit()
        return user_id

    def create_user_in_new_tenant(self, user: User, tenant_name: str) -> Tenant:
        """Create a tenant and its first user in one transaction.

        Sets user.id and user.tenant_id. If the user insert fails (for example
        IntegrityError on a taken username) the tenant is rolled back with it,
        so no empty tenant is left behind.
        """
        tenant = Tenant(id=new_id(), name=tenant_name, created_at=_now_iso())
        with self.engine.begin() as conn:
            conn.execute(_tenants.insert().values(id=tenant.id, name=tenant.name, created_at=tenant.created_at))
            user.tenant_id = tenant.id
            user.id = _insert_user(conn, user)
        return tenant

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by username, case-insensitively. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == normalize_username(username))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a user by primary key. Returns None if not found.

        Not tenant-scoped: used only by session verification, where the user id
        comes from the server-side session record, never from the client.
        """
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_in_tenant(self, user_id: str, tenant_id: str) -> User | None:
        """Look up a user by id, but only if it belongs to tenant_id."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.id == user_id) & (_users.c.tenant_id == tenant_id))
            ).fetchone()
        if row is None or row.tenant_id != tenant_id:
            return None
        return _row_to_user(row)

    def list_users(self, tenant_id: str) -> list[User]:
        """Return the tenant's users ordered by username."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().where(_users.c.tenant_id == tenant_id).order_by(_users.c.username)
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_role(self, user_id: str, tenant_id: str, role: Role) -> bool:
        """Change a user's role. Returns False if no such user in this tenant."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & (_users.c.tenant_id == tenant_id))
                .values(role=Role(role).value)
            )
            conn.commit()
        return result.rowcount > 0

    def update_password(self, user_id: str, password_hash: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(password_hash=password_hash))
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, user_id: str, tenant_id: str) -> bool:
        """Permanently delete a user of this tenant. Returns True if deleted.

        Sessions still pointing at the user become invalid on their next
        lookup, because verification requires the user to exist. Callers
        normally revoke them eagerly as well.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.delete().where((_users.c.id == user_id) & (_users.c.tenant_id == tenant_id))
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: str) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()


def _insert_user(conn, user: User) -> str:
    user_id = user.id or new_id()
    conn.execute(
        _users.insert().values(
            id=user_id,
            username=normalize_username(user.username),
            password_hash=user.password_hash,
            role=Role(user.role).value,
            tenant_id=user.tenant_id,
            created_at=_now_iso(),
        )
    )
    return user_id


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        password_hash=row.password_hash,
        role=Role(row.role),
        tenant_id=row.tenant_id,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_tenant(row) -> Tenant:
    return Tenant(id=row.id, name=row.name, created_at=row.created_at)
