"""SQLite implementation of ProjectRepository."""
from __future__ import annotations

from datetime import datetime, timezone

import aiosqlite

_SELECT = """
    SELECT p.id, p.slug, p.name, p.org_id, o.slug AS org,
           p.status, p.priority, p.parent_id, parent.slug AS parent_slug,
           p.description, p.created_at, p.updated_at
    FROM projects p
    LEFT JOIN organizations o ON o.id = p.org_id
    LEFT JOIN projects parent ON parent.id = p.parent_id
"""

_UPDATABLE = ("slug", "name", "org_id", "status", "priority", "parent_id", "description")


class SqliteProjectRepository:
    """SQLite-backed project storage."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def list_all(self) -> list[dict]:
        async with self.db.execute(
            _SELECT + " ORDER BY o.slug, p.name, p.id"
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def get_by_id(self, project_id: int) -> dict | None:
        async with self.db.execute(_SELECT + " WHERE p.id = ?", (project_id,)) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def find_in_scope(self, slug: str, org_id: int | None, parent_id: int | None) -> dict | None:
        async with self.db.execute(
            _SELECT
            + " WHERE p.slug = ? AND COALESCE(p.org_id, 0) = ? AND COALESCE(p.parent_id, 0) = ?",
            (slug, org_id or 0, parent_id or 0),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def create(self, project_data: dict) -> int:
        now = datetime.now(timezone.utc).isoformat()
        cursor = await self.db.execute(
            """INSERT INTO projects (
                slug, name, org_id, status, priority, parent_id, description,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                project_data["slug"],
                project_data["name"],
                project_data.get("org_id"),
                project_data.get("status"),
                project_data.get("priority"),
                project_data.get("parent_id"),
                project_data.get("description"),
                now,
                now,
            ),
        )
        await self.db.commit()
        return int(cursor.lastrowid)

    async def update(self, project_id: int, fields: dict) -> bool:
        """Update only the given columns. Returns False when nothing matched."""
        changes = {k: v for k, v in fields.items() if k in _UPDATABLE}
        if not changes:
            return False
        assignments = ", ".join(f"{column} = ?" for column in changes)
        params = [*changes.values(), datetime.now(timezone.utc).isoformat(), project_id]
        cursor = await self.db.execute(
            f"UPDATE projects SET {assignments}, updated_at = ? WHERE id = ?",
            params,
        )
        await self.db.commit()
        return cursor.rowcount > 0

    async def delete(self, project_id: int) -> bool:
        cursor = await self.db.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        await self.db.commit()
        return cursor.rowcount > 0
