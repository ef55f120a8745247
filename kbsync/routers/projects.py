"""API router for project records."""
from __future__ import annotations

import logging
from typing import Optional

import aiosqlite
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field, field_validator

from kbsync.db.factory import get_organization_repository, get_project_repository
from kbsync.db.sync_engine import record_from_row
from kbsync.events.emitter import mutation
from kbsync.models import MutationKind, ProjectRecord
from kbsync.status_constants import DbStatus, db_to_display, is_db_status

logger = logging.getLogger("kbsync")

projects_router = APIRouter(prefix="/api/projects", tags=["projects"])


def _check_status(value: Optional[str]) -> Optional[str]:
    if value is not None and not is_db_status(value):
        raise ValueError(f"Unknown status {value!r}")
    return value


class ProjectCreate(BaseModel):
    slug: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    org: Optional[str] = None
    status: Optional[str] = DbStatus.PENDING.value
    priority: Optional[int] = Field(default=None, ge=1, le=4)
    parentId: Optional[int] = None
    description: Optional[str] = None

    @field_validator("status")
    @classmethod
    def known_status(cls, value: Optional[str]) -> Optional[str]:
        return _check_status(value)


class ProjectUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    status: Optional[str] = None
    priority: Optional[int] = Field(default=None, ge=1, le=4)
    parentId: Optional[int] = None
    description: Optional[str] = None

    @field_validator("status")
    @classmethod
    def known_status(cls, value: Optional[str]) -> Optional[str]:
        return _check_status(value)


def _get_db(request: Request):
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise HTTPException(status_code=503, detail="Database not initialized")
    return db


def _after_mutation(request: Request, path: str, result) -> None:
    emitter = getattr(request.app.state, "emitter", None)
    if emitter is not None:
        emitter.after_mutation(path, result)


@projects_router.get("", response_model=list[ProjectRecord])
async def list_projects(request: Request):
    repo = get_project_repository(_get_db(request))
    return [record_from_row(row) for row in await repo.list_all()]


@projects_router.get("/statuses")
def list_statuses():
    """Display emoji and label for every database status."""
    return [
        {"status": status.value, **db_to_display(status.value).model_dump()}
        for status in DbStatus
    ]


@projects_router.get("/{project_id}", response_model=ProjectRecord)
async def get_project(request: Request, project_id: int):
    row = await get_project_repository(_get_db(request)).get_by_id(project_id)
    if not row:
        raise HTTPException(status_code=404, detail="Project not found")
    return record_from_row(row)


@projects_router.post("", response_model=ProjectRecord, status_code=201)
@mutation("projects.create", MutationKind.CREATE)
async def create_project(request: Request, body: ProjectCreate):
    db = _get_db(request)
    org_id = None
    if body.org:
        org_id, created = await get_organization_repository(db).get_or_create(body.org)
        if created:
            _after_mutation(request, "organizations.create", {"id": org_id})

    repo = get_project_repository(db)
    existing = await repo.find_in_scope(body.slug, org_id, body.parentId)
    if existing:
        raise HTTPException(
            status_code=409,
            detail=f"Project {body.slug} already exists in this scope (id {existing['id']})",
        )
    try:
        project_id = await repo.create(
            {
                "slug": body.slug,
                "name": body.name,
                "org_id": org_id,
                "status": body.status,
                "priority": body.priority,
                "parent_id": body.parentId,
                "description": body.description,
            }
        )
    except aiosqlite.IntegrityError as e:
        raise HTTPException(status_code=409, detail=f"Project {body.slug} conflicts: {e}")
    _after_mutation(request, "projects.create", {"id": project_id})
    return record_from_row(await repo.get_by_id(project_id))


@projects_router.patch("/{project_id}", response_model=ProjectRecord)
@mutation("projects.update", MutationKind.UPDATE)
async def update_project(request: Request, project_id: int, body: ProjectUpdate):
    repo = get_project_repository(_get_db(request))
    fields = body.model_dump(exclude_unset=True)
    if "parentId" in fields:
        if fields["parentId"] == project_id:
            raise HTTPException(status_code=400, detail="A project cannot be its own parent")
        fields["parent_id"] = fields.pop("parentId")
    if not fields:
        return await get_project(request, project_id)
    try:
        updated = await repo.update(project_id, fields)
    except aiosqlite.IntegrityError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not updated:
        raise HTTPException(status_code=404, detail="Project not found")
    _after_mutation(request, "projects.update", {"id": project_id})
    return record_from_row(await repo.get_by_id(project_id))


@projects_router.delete("/{project_id}")
@mutation("projects.delete", MutationKind.DELETE)
async def delete_project(request: Request, project_id: int):
    repo = get_project_repository(_get_db(request))
    if not await repo.delete(project_id):
        raise HTTPException(status_code=404, detail="Project not found")
    _after_mutation(request, "projects.delete", {"id": project_id})
    return {"status": "ok", "id": project_id}


@projects_router.post("/{project_id}/write-back")
async def write_status_back(request: Request, project_id: int):
    """Write the project's database status into its markdown frontmatter."""
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine:
        raise HTTPException(status_code=503, detail="Sync engine not initialized")
    try:
        return await sync_engine.write_status_to_file(project_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Status write-back failed for project {project_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
