"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login            -- password login; sets the session cookie
  POST /api/v1/auth/register         -- new tenant + admin user; sets the session cookie
  POST /api/v1/auth/logout           -- destroys the session, clears the cookie; always 200
  GET  /api/v1/auth/me               -- current identity (requires a session)
  POST /api/v1/auth/change-password  -- requires a session; revokes the user's other sessions

Login order of checks:
  1. Sliding window on "login:<ip>"      -> 429 + Retry-After (seconds, rounded up)
  2. Lockout on "user:<username>"        -> 423 + retry_after_minutes
  3. authenticate_user()                 -> on failure record_failure():
                                              locked now -> 423, else 401 + remaining_attempts
  4. reset_failures()                    -> locked meanwhile by a concurrent failure -> 423
  5. create_session()                    -> 200 + Set-Cookie

Security:
  authenticate_user() provides timing equalization -- use it, never inline.
  Failures are counted for unknown usernames too, so the responses for
  "no such user" and "wrong password" are identical, lockout included.
  Cache-Control: no-store on every response that carries identity.
  StoreUnavailableError is not caught here; api/main.py answers it with 503.
"""

from __future__ import annotations

import logging
import math

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.models import AuthUserResponse, ChangePasswordRequest, LoginRequest, MessageResponse, RegisterRequest
from auth.audit import AuditAction, AuditLog
from auth.dependencies import get_session, try_get_session
from auth.models import AuthContext, Role, User
from auth.passwords import authenticate_user, hash_password, verify_password
from auth.ratelimit import RateLimiter
from auth.sessions import SessionManager
from auth.store import UserStore

logger = logging.getLogger("smartval.api.auth")

# Auth policy:
# - POST /api/v1/auth/login:            public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/register:         public -- creates the caller's tenant
# - POST /api/v1/auth/logout:           public -- ending a session needs no valid session
# - GET  /api/v1/auth/me:               requires a session (get_session)
# - POST /api/v1/auth/change-password:  requires a session (get_session)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _error(status_code: int, code: str, message: str, headers: dict | None = None, **extra) -> JSONResponse:
    return _no_store(
        JSONResponse(
            status_code=status_code,
            content={"error": {"code": code, "message": message, **extra}},
            headers=headers,
        )
    )


def _rate_limited(retry_after_ms: int) -> JSONResponse:
    seconds = max(math.ceil(retry_after_ms / 1000), 1)
    return _error(
        429,
        "rate_limited",
        "Too many requests. Try again later.",
        headers={"Retry-After": str(seconds)},
    )


def _locked(remaining_ms: int) -> JSONResponse:
    minutes = max(math.ceil(remaining_ms / 60_000), 1)
    return _error(
        423,
        "account_locked",
        f"Too many failed attempts. Try again in {minutes} minute(s).",
        retry_after_minutes=minutes,
    )


def _identity(user: User | AuthContext) -> AuthUserResponse:
    if isinstance(user, AuthContext):
        return AuthUserResponse(**user.as_dict())
    return AuthUserResponse(user_id=user.id, username=user.username, role=user.role, tenant_id=user.tenant_id)


def _signed_in(request: Request, user: User, status_code: int = 200) -> JSONResponse:
    """Issue a session for user and return its identity with the cookie set."""
    manager: SessionManager = request.app.state.session_manager
    issued = manager.create_session(user.id)
    resp = JSONResponse(status_code=status_code, content=_identity(user).model_dump(mode="json"))
    manager.set_cookie(resp, issued)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=AuthUserResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie.

    A correct password does not get past an active lockout. The attempt that
    reaches the failure threshold is itself answered with 423.
    """
    settings = request.app.state.settings
    limiter: RateLimiter = request.app.state.rate_limiter
    users: UserStore = request.app.state.user_store
    audit: AuditLog = request.app.state.audit
    ip = client_ip(request)

    window = limiter.check_rate_limit(
        f"login:{ip}", settings.login_rate_limit, settings.login_rate_window_seconds * 1000
    )
    if not window.allowed:
        return _rate_limited(window.retry_after_ms)

    lock_key = f"user:{body.username}"
    lockout = limiter.check_lockout(lock_key)
    if lockout.locked:
        logger.warning("Login refused for locked key %s from %s", lock_key, ip)
        return _locked(lockout.remaining_ms)

    user = authenticate_user(users, body.username, body.password)
    if user is None:
        failure = limiter.record_failure(lock_key)
        known = users.get_by_username(body.username)
        if known is not None:
            audit.record(
                AuditAction.USER_LOCKOUT if failure.locked else AuditAction.USER_LOGIN_FAILED,
                user_id=known.id,
                username=known.username,
                tenant_id=known.tenant_id,
                detail=f"failures={failure.failure_count}",
                ip=ip,
            )
        if failure.locked:
            return _locked(failure.remaining_ms)
        return _error(
            401,
            "bad_credentials",
            "Invalid username or password.",
            remaining_attempts=max(limiter.max_failures - failure.failure_count, 0),
        )

    cleared = limiter.reset_failures(lock_key)
    if cleared.locked:
        # A concurrent failure locked the account while this password was checked.
        logger.warning("Login refused for %s: lock set during the password check", lock_key)
        return _locked(cleared.remaining_ms)
    resp = _signed_in(request, user)
    users.update_last_login(user.id)
    audit.record(AuditAction.USER_LOGIN, user_id=user.id, username=user.username, tenant_id=user.tenant_id, ip=ip)
    return resp


@router.post("/auth/register", response_model=AuthUserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a new tenant with the caller as its first admin, then sign in.

    Further users of the tenant are created by its admins through
    POST /api/v1/admin/users.
    """
    settings = request.app.state.settings
    limiter: RateLimiter = request.app.state.rate_limiter
    users: UserStore = request.app.state.user_store
    audit: AuditLog = request.app.state.audit
    ip = client_ip(request)

    window = limiter.check_rate_limit(
        f"register:{ip}", settings.register_rate_limit, settings.register_rate_window_seconds * 1000
    )
    if not window.allowed:
        return _rate_limited(window.retry_after_ms)

    taken = _error(409, "conflict", "That username is already taken.")
    if users.get_by_username(body.username) is not None:
        return taken

    user = User(
        username=body.username,
        password_hash=hash_password(body.password),
        role=Role.admin,
        tenant_id="",
    )
    try:
        tenant = users.create_user_in_new_tenant(user, body.company or body.username)
    except IntegrityError:
        # Lost a race with a concurrent registration of the same name; the
        # tenant insert was rolled back with the user's.
        return taken

    audit.record(
        AuditAction.USER_REGISTER,
        user_id=user.id,
        username=user.username,
        tenant_id=tenant.id,
        target_id=tenant.id,
        target_type="tenant",
        ip=ip,
    )
    return _signed_in(request, user, status_code=201)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Destroy the session behind the cookie (if any) and clear the cookie.

    Idempotent: a missing, malformed, or already-destroyed cookie still gets 200.
    """
    manager: SessionManager = request.app.state.session_manager
    cookie = request.cookies.get(manager.cookie_name)
    ctx = try_get_session(request)
    manager.destroy_session(cookie)
    if ctx is not None:
        request.app.state.audit.record_for(ctx, AuditAction.USER_LOGOUT, ip=client_ip(request))
    resp = JSONResponse(content={"message": "Logged out."})
    manager.clear_cookie(resp)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=AuthUserResponse)
def me(ctx: AuthContext = Depends(get_session)) -> JSONResponse:
    """Return identity information for the current session."""
    return _no_store(JSONResponse(content=_identity(ctx).model_dump(mode="json")))


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    ctx: AuthContext = Depends(get_session),
) -> MessageResponse:
    """Change the caller's password after re-checking the current one.

    Every other session of the user is revoked; the session making this
    request stays valid.
    """
    users: UserStore = request.app.state.user_store
    manager: SessionManager = request.app.state.session_manager

    user = users.get_by_id(ctx.user_id)
    if user is None or not verify_password(body.current_password, user.password_hash):
        return _error(
            400,
            "validation_error",
            "Request validation failed.",
            detail={"current_password": "Current password is incorrect."},
        )

    users.update_password(ctx.user_id, hash_password(body.new_password))
    revoked = manager.revoke_other_sessions(ctx.user_id, request.cookies.get(manager.cookie_name))
    request.app.state.audit.record_for(
        ctx, AuditAction.PASSWORD_CHANGE, detail=f"revoked_sessions={revoked}", ip=client_ip(request)
    )
    return MessageResponse(message="Password changed.")
