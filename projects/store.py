"""
projects/store.py -- SQLAlchemy-backed, tenant-scoped persistence for projects.

Pattern: Repository + Data Mapper. ProjectStore is the repository;
_row_to_project is the mapper. Route handlers never touch SQL directly.

Tenant scoping:
  Every method takes tenant_id as its first argument and puts it in the
  WHERE clause. get_project() additionally compares the fetched row's own
  tenant_id before returning it -- a matching id alone is never proof of
  ownership. Callers pass AuthContext.tenant_id, never a client value.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = ProjectStore(engine)
    project = store.create_project(ctx.tenant_id, Project(name="Harbour Tower"), created_by=ctx.user_id)
    store.list_projects(ctx.tenant_id)
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, Table, Text
from sqlalchemy.engine import Engine

from core.db import metadata
from projects.models import Project

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_projects = Table(
    "projects",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("tenant_id", String(64), nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("address", Text),
    Column("created_by", String(64), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

# Fields a client may change. id, tenant_id, created_by, created_at are fixed.
_MUTABLE_FIELDS = frozenset({"name", "address"})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProjectStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(engine, tables=[_projects])

    def list_projects(self, tenant_id: str) -> list[Project]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _projects.select().where(_projects.c.tenant_id == tenant_id).order_by(_projects.c.created_at)
            ).fetchall()
        return [_row_to_project(r) for r in rows]

    def get_project(self, tenant_id: str, project_id: str) -> Optional[Project]:
        """Return the project only if it exists AND belongs to tenant_id."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _projects.select().where((_projects.c.id == project_id) & (_projects.c.tenant_id == tenant_id))
            ).fetchone()
        if row is None or row.tenant_id != tenant_id:
            return None
        return _row_to_project(row)

    def create_project(self, tenant_id: str, project: Project, created_by: str) -> Project:
        """Insert a project owned by tenant_id. Any tenant_id on `project` is ignored."""
        now = _now_iso()
        created = Project(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            name=project.name,
            address=project.address,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        with self.engine.connect() as conn:
            conn.execute(
                _projects.insert().values(
                    id=created.id,
                    tenant_id=created.tenant_id,
                    name=created.name,
                    address=created.address,
                    created_by=created.created_by,
                    created_at=created.created_at,
                    updated_at=created.updated_at,
                )
            )
            conn.commit()
        return created

    def update_project(self, tenant_id: str, project_id: str, **fields) -> Optional[Project]:
        """Apply a partial update. Unknown or immutable fields raise ValueError.

        Returns the updated project, or None if it does not exist in this tenant.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Immutable or unknown project fields: {sorted(unknown)!r}")
        if self.get_project(tenant_id, project_id) is None:
            return None
        with self.engine.connect() as conn:
            conn.execute(
                _projects.update()
                .where((_projects.c.id == project_id) & (_projects.c.tenant_id == tenant_id))
                .values(updated_at=_now_iso(), **fields)
            )
            conn.commit()
        return self.get_project(tenant_id, project_id)

    def delete_project(self, tenant_id: str, project_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _projects.delete().where((_projects.c.id == project_id) & (_projects.c.tenant_id == tenant_id))
            )
            conn.commit()
        return result.rowcount > 0


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_project(row) -> Project:
    return Project(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        address=row.address,
        created_by=row.created_by,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
