"""Unit tests for auth/store.py, auth/passwords.py, and auth/audit.py.

Covers:
- usernames are unique case-insensitively
- tenant-scoped lookups, role updates, and deletes never cross tenants
- a tenant and its first user are created together or not at all
- TenantStore.ensure() is idempotent
- authenticate_user() for right, wrong, and unknown credentials
- audit entries are tenant-scoped, newest first, and a write failure is swallowed
"""

from unittest.mock import patch

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError

from auth.audit import AuditAction, AuditLog
from auth.models import AuthContext, Role, User
from auth.passwords import authenticate_user, hash_password, verify_password
from auth.store import TenantStore, UserStore


@pytest.fixture
def users(engine):
    return UserStore(engine)


@pytest.fixture
def tenants(engine):
    return TenantStore(engine)


def test_username_unique_case_insensitive(users, tenants):
    t = tenants.create("Acme")
    users.create_user(User(username="Alice123", password_hash="x", role=Role.admin, tenant_id=t.id))
    with pytest.raises(IntegrityError):
        users.create_user(User(username="ALICE123", password_hash="y", role=Role.valuer, tenant_id=t.id))
    assert users.get_by_username("aLiCe123").username == "alice123"


def test_tenant_scoped_operations(users, tenants):
    a, b = tenants.create("A"), tenants.create("B")
    uid = users.create_user(User(username="valuer01", password_hash="x", role=Role.valuer, tenant_id=a.id))

    assert users.get_in_tenant(uid, b.id) is None
    assert users.update_role(uid, b.id, Role.admin) is False
    assert users.delete_user(uid, b.id) is False
    assert users.get_by_id(uid).role is Role.valuer

    assert users.update_role(uid, a.id, Role.reviewer) is True
    assert users.get_in_tenant(uid, a.id).role is Role.reviewer
    assert [u.id for u in users.list_users(a.id)] == [uid]
    assert users.list_users(b.id) == []


def test_last_login(users, tenants):
    t = tenants.create("A")
    first = users.create_user(User(username="admin001", password_hash="x", role=Role.admin, tenant_id=t.id))
    assert users.get_by_id(first).last_login is None
    users.update_last_login(first)
    assert users.get_by_id(first).last_login is not None


def _tenant_count(engine) -> int:
    with engine.connect() as conn:
        return conn.execute(text("SELECT COUNT(*) FROM tenants")).scalar()


def test_create_user_in_new_tenant(users, tenants):
    user = User(username="Founder01", password_hash="x", role=Role.admin, tenant_id="")
    tenant = users.create_user_in_new_tenant(user, "Harbour Valuers")
    assert tenants.get(tenant.id).name == "Harbour Valuers"
    stored = users.get_in_tenant(user.id, tenant.id)
    assert stored.username == "founder01"
    assert stored.role is Role.admin


def test_create_user_in_new_tenant_rolls_back_tenant_on_taken_name(engine, users, tenants):
    users.create_user_in_new_tenant(User(username="alice123", password_hash="x", role=Role.admin, tenant_id=""), "A")
    before = _tenant_count(engine)
    with pytest.raises(IntegrityError):
        users.create_user_in_new_tenant(
            User(username="ALICE123", password_hash="y", role=Role.admin, tenant_id=""), "B"
        )
    assert _tenant_count(engine) == before


def test_tenant_ensure_is_idempotent(tenants):
    first = tenants.ensure("tenant-fixed", "Acme")
    again = tenants.ensure("tenant-fixed", "Renamed")
    assert first.id == again.id == "tenant-fixed"
    assert again.name == "Acme"


def test_authenticate_user(users, tenants):
    t = tenants.create("A")
    users.create_user(
        User(username="alice123", password_hash=hash_password("rightpass"), role=Role.valuer, tenant_id=t.id)
    )
    assert authenticate_user(users, "Alice123", "rightpass").username == "alice123"
    assert authenticate_user(users, "alice123", "wrongpass") is None
    assert authenticate_user(users, "nobody99", "rightpass") is None


def test_verify_password_handles_garbage_hash():
    assert verify_password("secret123", "not-a-bcrypt-hash") is False
    assert verify_password("secret123", hash_password("secret123")) is True


def test_audit_recent_is_tenant_scoped(engine):
    audit = AuditLog(engine)
    ctx_a = AuthContext(user_id="u1", username="admin001", role=Role.admin, tenant_id="tenant-a")
    ctx_b = AuthContext(user_id="u2", username="admin002", role=Role.admin, tenant_id="tenant-b")
    audit.record_for(ctx_a, AuditAction.PROJECT_CREATE, target_id="p1", target_type="project")
    audit.record_for(ctx_a, AuditAction.PROJECT_DELETE, target_id="p1", target_type="project")
    audit.record_for(ctx_b, AuditAction.USER_LOGIN, ip="203.0.113.5")

    entries = audit.recent("tenant-a")
    assert [e.action for e in entries] == ["project.delete", "project.create"]
    assert audit.recent("tenant-a", limit=1)[0].action == "project.delete"
    assert audit.recent("tenant-b")[0].ip == "203.0.113.5"


def test_audit_write_failure_is_swallowed(engine, caplog):
    audit = AuditLog(engine)
    with patch.object(engine, "connect", side_effect=OperationalError("INSERT", {}, Exception("disk full"))):
        audit.record(AuditAction.USER_LOGIN, user_id="u1", username="admin001", tenant_id="tenant-a")
    assert "Failed to persist audit entry" in caplog.text
