"""Database migration dispatcher."""
from __future__ import annotations

import logging
from typing import Any

import aiosqlite

from kbsync.db import sqlite_migrations

logger = logging.getLogger("kbsync.db")


async def run_migrations(db: Any) -> None:
    """Run migrations on the provided database connection."""
    if isinstance(db, aiosqlite.Connection):
        logger.info("Running SQLite migrations...")
        await sqlite_migrations.run_migrations(db)
        return

    raise TypeError(f"Unsupported database connection type: {type(db)!r}")
