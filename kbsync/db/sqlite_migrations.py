"""Database schema creation and versioning.

All CREATE TABLE statements for the project store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("kbsync.db")

SCHEMA_VERSION = 2

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Organizations ───────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS organizations (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    slug        TEXT NOT NULL UNIQUE,
    name        TEXT NOT NULL,
    short_name  TEXT,
    description TEXT,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

-- ── 2. Projects ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS projects (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    slug        TEXT NOT NULL,
    name        TEXT NOT NULL,
    org_id      INTEGER REFERENCES organizations(id) ON DELETE SET NULL,
    status      TEXT CHECK (status IS NULL OR status IN (
        'pending', 'in_progress', 'active', 'blocked',
        'complete', 'cancelled', 'paused', 'deferred'
    )),
    priority    INTEGER CHECK (priority IS NULL OR priority BETWEEN 1 AND 4),
    parent_id   INTEGER REFERENCES projects(id) ON DELETE SET NULL,
    description TEXT,
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_projects_org    ON projects(org_id);
CREATE INDEX IF NOT EXISTS idx_projects_status ON projects(status);
CREATE INDEX IF NOT EXISTS idx_projects_parent ON projects(parent_id);
"""

# NULL never collides in a plain UNIQUE index, so scope on COALESCE.
_SCOPE_INDEX = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_projects_scope
    ON projects(COALESCE(org_id, 0), COALESCE(parent_id, 0), slug)
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def _ensure_index(db: aiosqlite.Connection, ddl: str) -> None:
    await db.execute(ddl)


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    await db.executescript(_TABLES)

    # v2: free-text description on projects
    await _ensure_column(db, "projects", "description", "TEXT")
    await _ensure_index(db, _SCOPE_INDEX)

    if current_version < SCHEMA_VERSION:
        await db.execute(
            "INSERT INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
    await db.commit()
    logger.info(f"Migrations complete — schema version {SCHEMA_VERSION}")
