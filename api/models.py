"""
API request and response models for SmartVal REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
projects/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.

Shape rules for usernames and passwords are not repeated here: the field
validators call auth.validators so the API and the CLI reject exactly the
same inputs.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Role
from auth.validators import normalize_username, validate_password, validate_username


def _check_username(value: object) -> str:
    error = validate_username(value)
    if error:
        raise ValueError(error)
    return normalize_username(value)


def _check_password(value: object) -> str:
    error = validate_password(value)
    if error:
        raise ValueError(error)
    return value


# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    username is normalized to lower case here, so the lockout key
    "user:<username>" is the same for "Alice123" and "alice123".
    """

    username: str
    password: str

    @field_validator("username", mode="before")
    @classmethod
    def check_username(cls, v: object) -> str:
        return _check_username(v)

    @field_validator("password", mode="before")
    @classmethod
    def check_password(cls, v: object) -> str:
        return _check_password(v)


class RegisterRequest(LoginRequest):
    """Request body for POST /api/v1/auth/register.

    company becomes the new tenant's name. When omitted the tenant is named
    after the registering user.
    """

    company: Optional[str] = Field(default=None, max_length=255)


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    current_password: str = Field(min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password", mode="before")
    @classmethod
    def check_new_password(cls, v: object) -> str:
        return _check_password(v)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class AuthUserResponse(BaseModel):
    """The signed-in identity. Returned by login, register, and GET /auth/me."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    role: Role
    tenant_id: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Admin -- user management
# ---------------------------------------------------------------------------


class UserCreate(LoginRequest):
    """Request body for POST /api/v1/admin/users.

    The new user always joins the calling admin's tenant; there is no
    tenant_id field and any sent by the client is ignored.
    """

    model_config = ConfigDict(extra="ignore")

    role: Role = Role.valuer


class UserRolePatch(BaseModel):
    """Request body for PATCH /api/v1/admin/users/{id}."""

    role: Role


class UserResponse(BaseModel):
    """A user as seen by admins and managers. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    username: str
    role: Role
    tenant_id: str
    created_at: str
    last_login: Optional[str] = None


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    timestamp: str
    action: str
    user_id: str
    username: str
    target_id: Optional[str] = None
    target_type: Optional[str] = None
    detail: Optional[str] = None
    ip: Optional[str] = None


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


class ProjectCreate(BaseModel):
    """Request body for POST /api/v1/projects.

    extra="ignore" drops unknown keys, tenant_id included. The owning tenant
    always comes from the caller's session.
    """

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    name: str = Field(min_length=1, max_length=255)
    address: Optional[str] = Field(default=None, max_length=1000)


class ProjectPatch(BaseModel):
    """Request body for PATCH /api/v1/projects/{id}. Only fields sent are changed."""

    model_config = ConfigDict(str_strip_whitespace=True, extra="ignore")

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    address: Optional[str] = Field(default=None, max_length=1000)


class ProjectResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    name: str
    address: Optional[str] = None
    created_by: str
    created_at: str
    updated_at: str


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload.

    detail is a free-form string, or a field -> message mapping for
    validation errors.
    """

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
