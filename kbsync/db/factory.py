"""Repository factory to abstract the DB backend."""
from __future__ import annotations

from typing import Any

import aiosqlite

from kbsync.db.repositories.organizations import SqliteOrganizationRepository
from kbsync.db.repositories.projects import SqliteProjectRepository


def get_project_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteProjectRepository(db)
    raise TypeError(f"No project repository for {type(db)!r}")


def get_organization_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteOrganizationRepository(db)
    raise TypeError(f"No organization repository for {type(db)!r}")
