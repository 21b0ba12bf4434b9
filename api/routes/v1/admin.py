"""
api/routes/v1/admin.py -- Tenant administration REST endpoints.

Routes:
  GET    /api/v1/admin/users          -- list the tenant's users (admin, manager)
  POST   /api/v1/admin/users          -- create a user in the caller's tenant (admin)
  PATCH  /api/v1/admin/users/{id}     -- change a user's role (admin)
  DELETE /api/v1/admin/users/{id}     -- delete a user and its sessions (admin)
  GET    /api/v1/admin/audit-logs     -- the tenant's recent audit entries (admin)

Security:
  Every store call is scoped by ctx.tenant_id. A user id from another tenant
  is answered with 404, exactly like an id that does not exist.
  Role edit and deletion refuse to act on the caller's own account.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import AuditEntryResponse, UserCreate, UserResponse, UserRolePatch
from api.routes.v1.auth import client_ip
from auth.audit import AuditAction, AuditLog
from auth.dependencies import forbid_self_target, with_auth
from auth.models import AuthContext, Role, User
from auth.passwords import hash_password
from auth.sessions import SessionManager
from auth.store import UserStore

# Auth policy:
# - GET    /api/v1/admin/users:        admin or manager
# - POST   /api/v1/admin/users:        admin
# - PATCH  /api/v1/admin/users/{id}:   admin, never on self
# - DELETE /api/v1/admin/users/{id}:   admin, never on self
# - GET    /api/v1/admin/audit-logs:   admin
router = APIRouter()

_require_admin = with_auth(Role.admin)
_require_staff = with_auth(Role.admin, Role.manager)


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        username=user.username,
        role=user.role,
        tenant_id=user.tenant_id,
        created_at=user.created_at or "",
        last_login=user.last_login,
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/admin/users", response_model=list[UserResponse])
def list_users(request: Request, ctx: AuthContext = Depends(_require_staff)) -> list[UserResponse]:
    users: UserStore = request.app.state.user_store
    return [_user_to_response(u) for u in users.list_users(ctx.tenant_id)]


@router.post("/admin/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    ctx: AuthContext = Depends(_require_admin),
) -> UserResponse:
    """Create a user in the caller's tenant."""
    users: UserStore = request.app.state.user_store
    new_user = User(
        username=body.username,
        password_hash=hash_password(body.password),
        role=body.role,
        tenant_id=ctx.tenant_id,
    )
    try:
        user_id = users.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "That username is already taken."},
        ) from exc

    created = users.get_in_tenant(user_id, ctx.tenant_id)
    if created is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    request.app.state.audit.record_for(
        ctx,
        AuditAction.USER_CREATE,
        target_id=user_id,
        target_type="user",
        detail=f"role={created.role.value}",
        ip=client_ip(request),
    )
    return _user_to_response(created)


@router.patch("/admin/users/{user_id}", response_model=UserResponse)
def update_user_role(
    request: Request,
    user_id: str,
    body: UserRolePatch,
    ctx: AuthContext = Depends(_require_admin),
) -> UserResponse:
    """Change another user's role.

    The change applies to the user's live sessions at once: verification
    reads the role from the user row on every request.
    """
    forbid_self_target(ctx, user_id)
    users: UserStore = request.app.state.user_store
    target = users.get_in_tenant(user_id, ctx.tenant_id)
    if target is None:
        raise _not_found()

    if target.role != body.role:
        users.update_role(user_id, ctx.tenant_id, body.role)
        request.app.state.audit.record_for(
            ctx,
            AuditAction.USER_ROLE_CHANGE,
            target_id=user_id,
            target_type="user",
            detail=f"{target.role.value} -> {body.role.value}",
            ip=client_ip(request),
        )

    updated = users.get_in_tenant(user_id, ctx.tenant_id)
    if updated is None:
        raise _not_found()
    return _user_to_response(updated)


@router.delete("/admin/users/{user_id}", status_code=204)
def delete_user(
    request: Request,
    user_id: str,
    ctx: AuthContext = Depends(_require_admin),
) -> Response:
    """Delete another user of the tenant and end all of its sessions."""
    forbid_self_target(ctx, user_id)
    users: UserStore = request.app.state.user_store
    manager: SessionManager = request.app.state.session_manager

    target = users.get_in_tenant(user_id, ctx.tenant_id)
    if target is None or not users.delete_user(user_id, ctx.tenant_id):
        raise _not_found()
    manager.sessions.delete_for_user(user_id)

    request.app.state.audit.record_for(
        ctx,
        AuditAction.USER_DELETE,
        target_id=user_id,
        target_type="user",
        detail=f"username={target.username}",
        ip=client_ip(request),
    )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


@router.get("/admin/audit-logs", response_model=list[AuditEntryResponse])
def audit_logs(
    request: Request,
    limit: int = Query(default=100, ge=1, le=500),
    ctx: AuthContext = Depends(_require_admin),
) -> list[AuditEntryResponse]:
    audit: AuditLog = request.app.state.audit
    return [
        AuditEntryResponse(
            id=e.id,
            timestamp=e.timestamp,
            action=e.action,
            user_id=e.user_id,
            username=e.username,
            target_id=e.target_id,
            target_type=e.target_type,
            detail=e.detail,
            ip=e.ip,
        )
        for e in audit.recent(ctx.tenant_id, limit=limit)
    ]
