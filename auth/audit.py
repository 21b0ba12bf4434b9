"""
auth/audit.py -- Append-only audit trail for security-relevant events.

Every event is written twice: as a row in audit_logs (queryable per tenant by
admins) and as an INFO line on the "smartval.audit" logger (shipped with the
rest of the process logs). The logger line is emitted first, so an event is
never lost silently even if the row cannot be written.

A failed row write is logged with its traceback and swallowed: auditing must
not turn a successful login or role change into a 500.

Layer rule: no imports from api/ or projects/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, Table, Text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuthContext
from core.db import metadata

logger = logging.getLogger("smartval.audit")


class AuditAction:
    USER_LOGIN = "user.login"
    USER_LOGIN_FAILED = "user.login_failed"
    USER_LOCKOUT = "user.lockout"
    USER_LOGOUT = "user.logout"
    USER_REGISTER = "user.register"
    USER_CREATE = "user.create"
    PASSWORD_CHANGE = "user.password_change"
    USER_ROLE_CHANGE = "user.role_change"
    USER_DELETE = "user.delete"
    PROJECT_CREATE = "project.create"
    PROJECT_DELETE = "project.delete"


_audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("timestamp", String(32), nullable=False),
    Column("action", String(50), nullable=False),
    Column("user_id", String(64), nullable=False),
    Column("username", String(64), nullable=False),
    Column("tenant_id", String(64), nullable=False, index=True),
    Column("target_id", String(64)),
    Column("target_type", String(30)),
    Column("detail", Text),
    Column("ip", String(45)),
)


@dataclass
class AuditEntry:
    timestamp: str
    action: str
    user_id: str
    username: str
    tenant_id: str
    target_id: str | None = None
    target_type: str | None = None
    detail: str | None = None
    ip: str | None = None
    id: int | None = None


class AuditLog:
    """Writer and tenant-scoped reader for audit entries."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(engine, tables=[_audit_logs])

    def record(
        self,
        action: str,
        *,
        user_id: str,
        username: str,
        tenant_id: str,
        target_id: str | None = None,
        target_type: str | None = None,
        detail: str | None = None,
        ip: str | None = None,
    ) -> None:
        logger.info(
            "%s actor=%s(%s) tenant=%s target=%s:%s ip=%s %s",
            action,
            username,
            user_id,
            tenant_id,
            target_type or "-",
            target_id or "-",
            ip or "-",
            detail or "",
        )
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _audit_logs.insert().values(
                        timestamp=datetime.now(timezone.utc).isoformat(),
                        action=action,
                        user_id=user_id,
                        username=username,
                        tenant_id=tenant_id,
                        target_id=target_id,
                        target_type=target_type,
                        detail=detail,
                        ip=ip,
                    )
                )
                conn.commit()
        except SQLAlchemyError:
            logger.exception("Failed to persist audit entry %s for tenant %s", action, tenant_id)

    def record_for(self, ctx: AuthContext, action: str, **fields) -> None:
        """Shorthand for events whose actor is the signed-in caller."""
        self.record(action, user_id=ctx.user_id, username=ctx.username, tenant_id=ctx.tenant_id, **fields)

    def recent(self, tenant_id: str, limit: int = 100) -> list[AuditEntry]:
        """Return the tenant's newest entries first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_logs.select()
                .where(_audit_logs.c.tenant_id == tenant_id)
                .order_by(_audit_logs.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [
            AuditEntry(
                id=r.id,
                timestamp=r.timestamp,
                action=r.action,
                user_id=r.user_id,
                username=r.username,
                tenant_id=r.tenant_id,
                target_id=r.target_id,
                target_type=r.target_type,
                detail=r.detail,
                ip=r.ip,
            )
            for r in rows
        ]
