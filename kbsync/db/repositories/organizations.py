"""SQLite implementation of OrganizationRepository."""
from __future__ import annotations

from datetime import datetime, timezone

import aiosqlite

_UPDATABLE = ("name", "short_name", "description")


class SqliteOrganizationRepository:
    """SQLite-backed organization storage."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def list_all(self) -> list[dict]:
        async with self.db.execute("SELECT * FROM organizations ORDER BY slug") as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def get_by_id(self, org_id: int) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM organizations WHERE id = ?", (org_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def get_by_slug(self, slug: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM organizations WHERE slug = ?", (slug,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def create(
        self,
        slug: str,
        name: str,
        short_name: str | None = None,
        description: str | None = None,
    ) -> int:
        now = datetime.now(timezone.utc).isoformat()
        cursor = await self.db.execute(
            """INSERT INTO organizations (slug, name, short_name, description, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)""",
            (slug, name, short_name, description, now, now),
        )
        await self.db.commit()
        return int(cursor.lastrowid)

    async def get_or_create(self, slug: str, name: str | None = None) -> tuple[int, bool]:
        """Return (id, created)."""
        existing = await self.get_by_slug(slug)
        if existing:
            return int(existing["id"]), False
        return await self.create(slug, name or slug), True

    async def update(self, org_id: int, fields: dict) -> bool:
        changes = {k: v for k, v in fields.items() if k in _UPDATABLE}
        if not changes:
            return False
        assignments = ", ".join(f"{column} = ?" for column in changes)
        params = [*changes.values(), datetime.now(timezone.utc).isoformat(), org_id]
        cursor = await self.db.execute(
            f"UPDATE organizations SET {assignments}, updated_at = ? WHERE id = ?",
            params,
        )
        await self.db.commit()
        return cursor.rowcount > 0

    async def delete(self, org_id: int) -> bool:
        cursor = await self.db.execute("DELETE FROM organizations WHERE id = ?", (org_id,))
        await self.db.commit()
        return cursor.rowcount > 0
