#!/usr/bin/env python3
"""Scan the knowledge base and sync projects into the database.

Usage:
  python -m kbsync.scripts.project_sync scan
  python -m kbsync.scripts.project_sync scan --json
  python -m kbsync.scripts.project_sync sync --kb ~/notes
  python -m kbsync.scripts.project_sync list
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path

from kbsync import config
from kbsync.db import connection, migrations
from kbsync.db.sync_engine import SyncEngine
from kbsync.events import ChangeEmitter, EventBus
from kbsync.parsers.projects import scan_projects
from kbsync.status_constants import db_to_display, file_to_db


def _print_scan(kb_root: Path, as_json: bool) -> int:
    result = scan_projects(kb_root)
    if as_json:
        print(json.dumps(result.model_dump(), indent=2))
        return 0

    print(f"Knowledge base: {kb_root}")
    print(f"Projects: {len(result.projects)}")
    print("")
    for project in result.projects:
        indent = "    " if project.isSubProject else ""
        print(
            f"{indent}{project.org}/{project.slug}  status={project.status or '-'}"
            f" -> {file_to_db(project.status)}  priority={project.priority or '-'}"
        )
    for warning in result.warnings:
        print(f"WARNING: {warning}")
    return 0


async def _run_sync(kb_root: Path, as_json: bool) -> int:
    db = await connection.get_connection()
    try:
        await migrations.run_migrations(db)
        bus = EventBus()
        engine = SyncEngine(db, ChangeEmitter(bus), kb_root=kb_root)
        result = await engine.sync_projects(trigger="cli")
    finally:
        await connection.close_connection()

    if as_json:
        print(json.dumps(result.model_dump(), indent=2))
    else:
        print(
            f"found={result.projects_found} created={result.projects_created} "
            f"updated={result.projects_updated} unchanged={result.projects_unchanged} "
            f"events={len(bus.recent())}"
        )
        for error in result.errors:
            print(f"ERROR: {error}")
        for warning in result.warnings:
            print(f"WARNING: {warning}")
    return 1 if result.errors else 0


async def _run_list(as_json: bool) -> int:
    db = await connection.get_connection()
    try:
        await migrations.run_migrations(db)
        records = await SyncEngine(db).get_db_projects()
    finally:
        await connection.close_connection()

    if as_json:
        print(json.dumps([record.model_dump() for record in records], indent=2))
        return 0
    for record in records:
        display = db_to_display(record.status)
        badge = f"{display.emoji} {display.label}" if display else record.status or "-"
        parent = f" (under {record.parentSlug})" if record.parentSlug else ""
        print(f"{record.id:>4}  {record.org or '-'}/{record.slug}{parent}  {badge}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("command", choices=["scan", "sync", "list"])
    parser.add_argument("--kb", default="", help="Knowledge base root (default: KNOWLEDGE_BASE_PATH)")
    parser.add_argument("--json", action="store_true")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    kb_root = Path(args.kb).expanduser() if args.kb else config.KNOWLEDGE_BASE_PATH

    if args.command == "scan":
        if not kb_root.exists():
            print(f"Knowledge base not found: {kb_root}")
            return 1
        return _print_scan(kb_root, args.json)
    if args.command == "sync":
        return asyncio.run(_run_sync(kb_root, args.json))
    return asyncio.run(_run_list(args.json))


if __name__ == "__main__":
    raise SystemExit(main())
