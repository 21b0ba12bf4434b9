"""
api/routes/v1/projects.py -- Tenant-scoped project REST endpoints.

Routes:
  GET    /api/v1/projects          -- list the caller's tenant's projects
  POST   /api/v1/projects          -- create a project in the caller's tenant
  GET    /api/v1/projects/{id}     -- project detail
  PATCH  /api/v1/projects/{id}     -- partial update (name, address)
  DELETE /api/v1/projects/{id}     -- delete (admin, manager)

The owning tenant is always ctx.tenant_id. A tenant_id in the request body is
dropped by the request model, and another tenant's project id gets 404.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response

from api.models import ProjectCreate, ProjectPatch, ProjectResponse
from api.routes.v1.auth import client_ip
from auth.audit import AuditAction
from auth.dependencies import get_session, with_auth
from auth.models import AuthContext, Role
from projects.models import Project
from projects.store import ProjectStore

# Auth policy:
# - GET/POST        /api/v1/projects:       requires a session
# - GET/PATCH       /api/v1/projects/{id}:  requires a session
# - DELETE          /api/v1/projects/{id}:  admin or manager
router = APIRouter()


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "Project not found."})


def _to_response(p: Project) -> ProjectResponse:
    return ProjectResponse(
        id=p.id,
        tenant_id=p.tenant_id,
        name=p.name,
        address=p.address,
        created_by=p.created_by,
        created_at=p.created_at,
        updated_at=p.updated_at,
    )


@router.get("/projects", response_model=list[ProjectResponse])
def list_projects(request: Request, ctx: AuthContext = Depends(get_session)) -> list[ProjectResponse]:
    store: ProjectStore = request.app.state.projects
    return [_to_response(p) for p in store.list_projects(ctx.tenant_id)]


@router.post("/projects", response_model=ProjectResponse, status_code=201)
def create_project(
    request: Request,
    body: ProjectCreate,
    ctx: AuthContext = Depends(get_session),
) -> ProjectResponse:
    store: ProjectStore = request.app.state.projects
    project = store.create_project(
        ctx.tenant_id,
        Project(name=body.name, address=body.address),
        created_by=ctx.user_id,
    )
    request.app.state.audit.record_for(
        ctx,
        AuditAction.PROJECT_CREATE,
        target_id=project.id,
        target_type="project",
        detail=f"name={project.name}",
        ip=client_ip(request),
    )
    return _to_response(project)


@router.get("/projects/{project_id}", response_model=ProjectResponse)
def get_project(request: Request, project_id: str, ctx: AuthContext = Depends(get_session)) -> ProjectResponse:
    store: ProjectStore = request.app.state.projects
    project = store.get_project(ctx.tenant_id, project_id)
    if project is None:
        raise _not_found()
    return _to_response(project)


@router.patch("/projects/{project_id}", response_model=ProjectResponse)
def update_project(
    request: Request,
    project_id: str,
    body: ProjectPatch,
    ctx: AuthContext = Depends(get_session),
) -> ProjectResponse:
    store: ProjectStore = request.app.state.projects
    changes = body.model_dump(exclude_unset=True)
    if changes.get("name", "") is None:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "validation_error",
                "message": "Request validation failed.",
                "detail": {"name": "Name cannot be empty."},
            },
        )
    if not changes:
        project = store.get_project(ctx.tenant_id, project_id)
    else:
        project = store.update_project(ctx.tenant_id, project_id, **changes)
    if project is None:
        raise _not_found()
    return _to_response(project)


@router.delete("/projects/{project_id}", status_code=204)
def delete_project(
    request: Request,
    project_id: str,
    ctx: AuthContext = Depends(with_auth(Role.admin, Role.manager)),
) -> Response:
    store: ProjectStore = request.app.state.projects
    if not store.delete_project(ctx.tenant_id, project_id):
        raise _not_found()
    request.app.state.audit.record_for(
        ctx, AuditAction.PROJECT_DELETE, target_id=project_id, target_type="project", ip=client_ip(request)
    )
    return Response(status_code=204)
