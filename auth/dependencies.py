"""
auth/dependencies.py -- FastAPI Depends() helpers: the authorization gate.

Every protected handler receives an AuthContext through one of these:

  try_get_session(request)   -- soft variant; AuthContext or None, never raises.
  get_session(request)       -- 401 if there is no valid session.
  with_auth(*roles)          -- dependency factory: 401 without a session, 403
                                when roles are given and the caller's role is
                                not among them. With no roles, any signed-in
                                user passes.
  forbid_self_target(ctx, id) -- 403 when a mutating admin operation targets
                                the caller's own account.

Usage:
    @router.patch("/admin/users/{user_id}")
    def edit(user_id: str, ctx: AuthContext = Depends(with_auth(Role.admin))): ...

Tenant rule: ctx.tenant_id is the only tenant identifier a handler may
pass to a store. Tenant ids in request bodies or query strings are never read.

All failures raise HTTPException with a structured detail; the exception
handlers in api/main.py turn them into the standard error envelope, so no
internal exception text reaches the client.

Layer rule: no imports from api/ or projects/. fastapi is allowed because
this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.models import AuthContext, Role
from auth.sessions import SessionManager


def try_get_session(request: Request) -> AuthContext | None:
    """Return the caller's AuthContext from the session cookie, or None.

    Runs the full store-backed verification (signature, stored row, expiry,
    owning user). Never raises.
    """
    manager: SessionManager = request.app.state.session_manager
    return manager.verify_session(request.cookies.get(manager.cookie_name))


def get_session(request: Request) -> AuthContext:
    """Require a valid session. Raises HTTP 401 otherwise.

    The message is the same for a missing, forged, expired, or orphaned
    session.
    """
    ctx = try_get_session(request)
    if ctx is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return ctx


def with_auth(*allowed_roles: Role) -> Callable[[Request], AuthContext]:
    """Build a dependency that requires a session and, optionally, a role.

    Roles are checked against the Role enum here, when the route is declared,
    so a misspelled or retired role fails at import time rather than silently
    denying (or allowing) at request time.
    """
    for role in allowed_roles:
        if not isinstance(role, Role):
            raise TypeError(f"with_auth() expects Role members, got {role!r}")
    allowed = frozenset(allowed_roles)

    def dependency(request: Request) -> AuthContext:
        ctx = get_session(request)
        if allowed and ctx.role not in allowed:
            raise HTTPException(
                status_code=403,
                detail={
                    "code": "forbidden",
                    "message": "Insufficient role: requires " + " or ".join(sorted(r.value for r in allowed)) + ".",
                },
            )
        return ctx

    return dependency


def forbid_self_target(ctx: AuthContext, target_user_id: str) -> None:
    """Raise HTTP 403 when the caller is the target of a mutating admin operation.

    Blocks self role-edit and self-deletion even for admins, so an admin can
    never lock themselves out or silently escalate.
    """
    if target_user_id == ctx.user_id:
        raise HTTPException(
            status_code=403,
            detail={"code": "self_target", "message": "You cannot perform this action on your own account."},
        )
