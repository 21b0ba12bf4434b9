"""
auth/edge.py -- Store-less request filter that runs before routing.

The edge guard is the cheap first tier of a two-tier check. It sees only the
cookie and the signing secret -- no database -- so it can run in a CDN worker
or a thin proxy as well as in-process. It answers one question: does this
request to a protected path carry a structurally valid, correctly signed
session cookie? Whether that session still exists, has expired, or belongs to
a deleted user is left to SessionManager.verify_session() at the route layer.

Path classes:
  public     -- login, registration, password-reset entry, the auth API.
                Always passed through (checked first).
  protected  -- page areas that need a session. A missing, malformed, or
                forged cookie is redirected to the login page with ?next=.
  other      -- static assets, health checks, the rest of the API. Passed
                through untouched; the authorization gate handles the API.

Prefix matching is segment-aware: "/projects" covers "/projects" and
"/projects/42", never "/projectsfoo".

Failure policy: any unexpected error while evaluating a protected path
redirects to login. The guard never crashes the pipeline and never lets an
unevaluated request through to a protected area.

Layer rule: imports only auth.crypto and Starlette. No store access.
"""

from __future__ import annotations

import logging
from enum import Enum
from urllib.parse import quote

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import RedirectResponse

from auth.crypto import verify_cookie

logger = logging.getLogger("smartval.auth.edge")


class EdgeDecision(str, Enum):
    PASS = "pass"
    REDIRECT = "redirect"


def _matches(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/") or "/"
    if prefix == "/":
        return True
    return path == prefix or path.startswith(prefix + "/")


class EdgeGuard:
    """Signature-only cookie check plus the public/protected path policy."""

    def __init__(
        self,
        secret: str,
        protected_prefixes: list[str] | tuple[str, ...],
        public_paths: list[str] | tuple[str, ...],
        cookie_name: str = "session",
        login_path: str = "/login",
    ) -> None:
        if not secret:
            raise ValueError("EdgeGuard requires a signing secret")
        self._secret = secret
        self.protected_prefixes = tuple(protected_prefixes)
        self.public_paths = tuple(public_paths)
        self.cookie_name = cookie_name
        self.login_path = login_path

    def is_public(self, path: str) -> bool:
        return any(_matches(path, p) for p in self.public_paths)

    def is_protected(self, path: str) -> bool:
        return any(_matches(path, p) for p in self.protected_prefixes)

    def decide(self, path: str, cookie_value: str | None) -> EdgeDecision:
        if self.is_public(path) or not self.is_protected(path):
            return EdgeDecision.PASS
        if verify_cookie(cookie_value, self._secret) is None:
            return EdgeDecision.REDIRECT
        return EdgeDecision.PASS

    def login_redirect(self, path: str) -> RedirectResponse:
        """302 to the login page, remembering the original path (relative only)."""
        return RedirectResponse(f"{self.login_path}?next={quote(path, safe='/')}", status_code=302)


class EdgeGuardMiddleware(BaseHTTPMiddleware):
    """Starlette wrapper around EdgeGuard.

    Sits inside TrustedHost and CORS and ahead of routing, so a forged
    cookie on a protected page never reaches a handler.
    """

    def __init__(self, app, guard: EdgeGuard) -> None:
        super().__init__(app)
        self.guard = guard

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        try:
            decision = self.guard.decide(path, request.cookies.get(self.guard.cookie_name))
        except Exception:
            logger.exception("Edge guard failed on %s; redirecting to login", path)
            decision = EdgeDecision.REDIRECT
        if decision is EdgeDecision.REDIRECT:
            logger.info("Edge guard redirect: %s", path)
            return self.guard.login_redirect(path)
        return await call_next(request)
