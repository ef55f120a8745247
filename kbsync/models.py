"""Pydantic models shared by the sync engine, event pipeline and API."""
from __future__ import annotations

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

# ── Knowledge-base models ──────────────────────────────────────────


class ProjectInfo(BaseModel):
    """A project descriptor scanned from the knowledge base."""

    slug: str
    name: str
    org: str
    status: str = ""  # raw file-status from frontmatter
    priority: Optional[int] = None
    description: Optional[str] = None
    isSubProject: bool = False
    parentSlug: Optional[str] = None
    # Ancestor slugs from the top-level project down, e.g. "alpha/docs"
    parentPath: Optional[str] = None
    sourcePath: str = ""

    @property
    def parent_path(self) -> str:
        return self.parentPath or self.parentSlug or ""

    @property
    def path(self) -> str:
        return f"{self.parent_path}/{self.slug}" if self.parent_path else self.slug

    @property
    def scope(self) -> tuple[str, str, str]:
        return (self.org, self.parent_path, self.slug)

    @property
    def display_key(self) -> str:
        return f"{self.org}/{self.path}"


class ScanResult(BaseModel):
    projects: list[ProjectInfo] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# ── Database models ────────────────────────────────────────────────


class Organization(BaseModel):
    id: int
    slug: str
    name: str
    shortName: Optional[str] = None
    description: Optional[str] = None


class ProjectRecord(BaseModel):
    id: int
    slug: str
    name: str
    orgId: Optional[int] = None
    org: Optional[str] = None  # organization slug
    status: Optional[str] = None  # database-status
    priority: Optional[int] = None
    parentId: Optional[int] = None
    parentSlug: Optional[str] = None
    description: Optional[str] = None
    updatedAt: str = ""


# ── Sync results ───────────────────────────────────────────────────

SyncAction = Literal["created", "updated", "unchanged", "error"]


class SyncItemOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    action: SyncAction
    detail: str = ""
    fields: list[str] = Field(default_factory=list)
    id: Optional[int] = None


class SyncResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    projects_found: int = 0
    projects_created: int = 0
    projects_updated: int = 0
    projects_unchanged: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    items: list[SyncItemOutcome] = Field(default_factory=list)
    operation_id: str = ""


# ── Change notifications ───────────────────────────────────────────


class EntityType(str, Enum):
    ITEMS = "items"
    PEOPLE = "people"
    PROJECTS = "projects"
    ORGANIZATIONS = "organizations"
    ROUTINES = "routines"
    CHECKINS = "checkins"
    MEETINGS = "meetings"


class MutationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class DataChangeEvent(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    entity: EntityType
    mutation: MutationKind
    id: Optional[int] = None
    ids: Optional[list[int]] = None

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)


class ContentType(str, Enum):
    DOCUMENT = "document"
    WORKSTREAM = "workstream"
    PROJECT = "project"
    MEETING_NOTES = "meeting-notes"
    OTHER = "other"


class AIContentEvent(BaseModel):
    """Asks connected clients to review knowledge-base content an agent wrote."""

    model_config = ConfigDict(frozen=True, use_enum_values=True, validate_default=True)

    contentType: ContentType = ContentType.OTHER
    title: str = Field(..., min_length=1)
    filePath: str = Field(..., min_length=1)  # relative to the KB root
    message: Optional[str] = None

    def to_wire(self) -> dict:
        return self.model_dump(exclude_none=True)
