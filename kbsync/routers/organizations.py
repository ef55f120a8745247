"""API router for organizations."""
from __future__ import annotations

from typing import Optional

import aiosqlite
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from kbsync.db.factory import get_organization_repository
from kbsync.events.emitter import mutation
from kbsync.models import MutationKind, Organization

organizations_router = APIRouter(prefix="/api/organizations", tags=["organizations"])


class OrganizationCreate(BaseModel):
    slug: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    shortName: Optional[str] = None
    description: Optional[str] = None


class OrganizationUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    shortName: Optional[str] = None
    description: Optional[str] = None


def _to_model(row: dict) -> Organization:
    return Organization(
        id=int(row["id"]),
        slug=row["slug"],
        name=row["name"],
        shortName=row.get("short_name"),
        description=row.get("description"),
    )


def _repo(request: Request):
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise HTTPException(status_code=503, detail="Database not initialized")
    return get_organization_repository(db)


def _after_mutation(request: Request, path: str, result) -> None:
    emitter = getattr(request.app.state, "emitter", None)
    if emitter is not None:
        emitter.after_mutation(path, result)


@organizations_router.get("", response_model=list[Organization])
async def list_organizations(request: Request):
    return [_to_model(row) for row in await _repo(request).list_all()]


@organizations_router.post("", response_model=Organization, status_code=201)
@mutation("organizations.create", MutationKind.CREATE)
async def create_organization(request: Request, body: OrganizationCreate):
    repo = _repo(request)
    try:
        org_id = await repo.create(body.slug, body.name, body.shortName, body.description)
    except aiosqlite.IntegrityError:
        raise HTTPException(status_code=409, detail=f"Organization {body.slug} already exists")
    _after_mutation(request, "organizations.create", {"id": org_id})
    return _to_model(await repo.get_by_id(org_id))


@organizations_router.patch("/{org_id}", response_model=Organization)
@mutation("organizations.update", MutationKind.UPDATE)
async def update_organization(request: Request, org_id: int, body: OrganizationUpdate):
    repo = _repo(request)
    fields = body.model_dump(exclude_unset=True)
    if "shortName" in fields:
        fields["short_name"] = fields.pop("shortName")
    if fields and await repo.update(org_id, fields):
        _after_mutation(request, "organizations.update", {"id": org_id})
    row = await repo.get_by_id(org_id)
    if not row:
        raise HTTPException(status_code=404, detail="Organization not found")
    return _to_model(row)
