"""Knowledge base → database project synchronization.

``reconcile`` is a pure function that compares scanned descriptors with the
current project rows and plans create / update / unchanged / error actions.
``SyncEngine`` runs the scan, applies the plan through the repositories and
reports every committed write to the change emitter, one event per project.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal, Optional

import aiosqlite

from kbsync import config
from kbsync.db.factory import get_organization_repository, get_project_repository
from kbsync.events.emitter import ChangeEmitter
from kbsync.models import (
    MutationKind,
    ProjectInfo,
    ProjectRecord,
    ScanResult,
    SyncItemOutcome,
    SyncResult,
)
from kbsync.observability import record_sync_run, start_span
from kbsync.parsers.frontmatter import update_frontmatter_field
from kbsync.parsers.projects import scan_projects
from kbsync.status_constants import db_to_file, file_to_db

logger = logging.getLogger("kbsync.sync")

ActionKind = Literal["create", "update", "unchanged", "error"]
Scope = tuple[str, str, str]


class ReconciliationConflict(Exception):
    """A descriptor claims an (org, parent, slug) scope that is already taken."""

    def __init__(self, project: ProjectInfo, reason: str):
        self.project = project
        self.reason = reason
        super().__init__(
            f"Duplicate project slug '{project.slug}' in "
            f"{project.org}/{project.parent_path or '-'} ({project.sourcePath}): {reason}"
        )


@dataclass
class ReconcileAction:
    kind: ActionKind
    project: ProjectInfo
    record: Optional[ProjectRecord] = None
    # Column → desired value. The parent is carried as "parent_path" and
    # resolved to an id when the action is applied.
    changes: dict[str, Any] = field(default_factory=dict)
    message: str = ""


@dataclass
class ReconcilePlan:
    actions: list[ReconcileAction] = field(default_factory=list)

    def count(self, kind: ActionKind) -> int:
        return sum(1 for action in self.actions if action.kind == kind)

    @property
    def errors(self) -> list[str]:
        return [action.message for action in self.actions if action.kind == "error"]


def record_from_row(row: dict) -> ProjectRecord:
    return ProjectRecord(
        id=int(row["id"]),
        slug=row["slug"],
        name=row["name"],
        orgId=row.get("org_id"),
        org=row.get("org"),
        status=row.get("status"),
        priority=row.get("priority"),
        parentId=row.get("parent_id"),
        parentSlug=row.get("parent_slug"),
        description=row.get("description"),
        updatedAt=row.get("updated_at") or "",
    )


def record_parent_paths(records: list[ProjectRecord]) -> dict[int, str]:
    """Map each record id to its ancestor slug chain ("" at the top level).

    A parent missing from ``records`` falls back to the record's parent slug.
    """
    by_id = {record.id: record for record in records}
    paths: dict[int, str] = {}

    def resolve(record: ProjectRecord, visiting: frozenset[int]) -> str:
        if record.id in paths:
            return paths[record.id]
        visiting = visiting | {record.id}
        parent = by_id.get(record.parentId) if record.parentId is not None else None
        if parent is None or parent.id in visiting:
            value = record.parentSlug or ""
        else:
            above = resolve(parent, visiting)
            value = f"{above}/{parent.slug}" if above else parent.slug
        paths[record.id] = value
        return value

    for record in records:
        resolve(record, frozenset())
    return paths


def _record_scope(record: ProjectRecord, parent_paths: dict[int, str]) -> Scope:
    return (record.org or "", parent_paths.get(record.id, record.parentSlug or ""), record.slug)


def _record_path(record: ProjectRecord, parent_paths: dict[int, str]) -> str:
    parent = parent_paths.get(record.id, record.parentSlug or "")
    return f"{parent}/{record.slug}" if parent else record.slug


def _desired_fields(project: ProjectInfo) -> dict[str, Any]:
    return {
        "name": project.name,
        "status": file_to_db(project.status),
        "priority": project.priority,
        "parent_path": project.parent_path or None,
    }


def _diff(record: ProjectRecord, parent_path: str, desired: dict[str, Any]) -> dict[str, Any]:
    current = {
        "name": record.name,
        "status": record.status,
        "priority": record.priority,
        "parent_path": parent_path or None,
    }
    return {key: value for key, value in desired.items() if current[key] != value}


def reconcile(
    projects: list[ProjectInfo],
    snapshot: list[ProjectRecord],
    parent_match: str | None = None,
) -> ReconcilePlan:
    """Plan the minimal set of writes that makes ``snapshot`` match ``projects``.

    Top-level projects are planned before sub-projects. A scope is the org,
    the full ancestor slug chain and the slug, so ``alpha/docs/notes`` and
    ``beta/docs/notes`` never collide. A second descriptor in an already
    claimed scope becomes an error action and is skipped.
    """
    mode = (parent_match or config.PARENT_MATCH or "slug").lower()
    parent_paths = record_parent_paths(snapshot)
    by_scope: dict[Scope, ProjectRecord] = {}
    by_org_slug: dict[tuple[str, str], list[ProjectRecord]] = {}
    for record in snapshot:
        by_scope.setdefault(_record_scope(record, parent_paths), record)
        by_org_slug.setdefault((record.org or "", record.slug), []).append(record)

    scan_scopes = {project.scope for project in projects}
    # Shallower projects first so a parent is always applied before its children
    ordered = sorted(projects, key=lambda p: (p.isSubProject, p.parent_path.count("/")))

    plan = ReconcilePlan()
    seen: dict[Scope, str] = {}
    claimed: set[int] = set()

    for project in ordered:
        scope = project.scope
        if scope in seen:
            conflict = ReconciliationConflict(project, f"already claimed by {seen[scope]}; skipped")
            plan.actions.append(ReconcileAction(kind="error", project=project, message=str(conflict)))
            continue
        seen[scope] = project.sourcePath or project.display_key

        record = by_scope.get(scope)
        if record is not None and record.id in claimed:
            record = None
        if record is None and mode == "slug":
            candidates = [
                candidate
                for candidate in by_org_slug.get((project.org, project.slug), [])
                if candidate.id not in claimed and _record_scope(candidate, parent_paths) not in scan_scopes
            ]
            if len(candidates) == 1:
                record = candidates[0]

        desired = _desired_fields(project)
        if record is None:
            plan.actions.append(ReconcileAction(kind="create", project=project, changes=desired))
            continue

        claimed.add(record.id)
        changes = _diff(record, parent_paths.get(record.id, ""), desired)
        plan.actions.append(
            ReconcileAction(
                kind="update" if changes else "unchanged",
                project=project,
                record=record,
                changes=changes,
            )
        )

    return plan


class SyncEngine:
    """Applies knowledge-base project descriptors to the project tables.

    Only one sync runs at a time; a second caller waits for the first.
    """

    def __init__(
        self,
        db: Any,
        emitter: ChangeEmitter | None = None,
        kb_root: Path | None = None,
        parent_match: str | None = None,
    ):
        self.db = db
        self.emitter = emitter
        self.kb_root = Path(kb_root) if kb_root is not None else config.KNOWLEDGE_BASE_PATH
        self.parent_match = parent_match or config.PARENT_MATCH
        self.project_repo = get_project_repository(db)
        self.org_repo = get_organization_repository(db)
        self._sync_lock = asyncio.Lock()
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40

    @property
    def is_syncing(self) -> bool:
        return self._sync_lock.locked()

    # ── Operations ──────────────────────────────────────────────────

    async def start_operation(
        self,
        kind: str,
        trigger: str = "api",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create an observable operation and return its ID."""
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "stats": {},
            "metadata": metadata or {},
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (trigger=%s)", op_id, kind, trigger)
        return op_id

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            return copy.deepcopy(op) if op else None

    async def get_observability_snapshot(self) -> dict[str, Any]:
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
            return {
                "activeOperationCount": len(active),
                "activeOperations": active,
                "trackedOperationCount": len(self._operations),
                "syncing": self.is_syncing,
            }

    async def _finish_operation(
        self,
        operation_id: str,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
    ) -> None:
        now = datetime.now(timezone.utc)
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["updatedAt"] = now.isoformat()
            operation["finishedAt"] = now.isoformat()
            if stats:
                operation["stats"].update(stats)
            if error:
                operation["error"] = error
            started_at = datetime.fromisoformat(operation["startedAt"])
            operation["durationMs"] = max(0, int((now - started_at).total_seconds() * 1000))
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)

    # ── Read side ───────────────────────────────────────────────────

    async def get_db_projects(self) -> list[ProjectRecord]:
        """Current project rows, ordered by organization then name."""
        return [record_from_row(row) for row in await self.project_repo.list_all()]

    async def scan(self) -> ScanResult:
        return await asyncio.to_thread(scan_projects, self.kb_root)

    async def preview(self) -> dict[str, Any]:
        """Scan and plan without writing anything."""
        scan = await self.scan()
        plan = reconcile(scan.projects, await self.get_db_projects(), self.parent_match)
        return {
            "total": len(scan.projects),
            "wouldCreate": plan.count("create"),
            "wouldUpdate": plan.count("update"),
            "unchanged": plan.count("unchanged"),
            "errors": plan.errors,
            "warnings": scan.warnings,
            "projects": [
                {
                    "slug": action.project.slug,
                    "name": action.project.name,
                    "org": action.project.org,
                    "status": action.project.status,
                    "dbStatus": file_to_db(action.project.status),
                    "isSubProject": action.project.isSubProject,
                    "parentSlug": action.project.parentSlug,
                    "parentPath": action.project.parentPath,
                    "action": action.kind,
                    "fields": sorted(action.changes) if action.kind == "update" else [],
                }
                for action in plan.actions
            ],
        }

    # ── Write side ──────────────────────────────────────────────────

    async def sync_projects(self, trigger: str = "api", operation_id: str | None = None) -> SyncResult:
        """Scan the knowledge base and bring the project tables in line with it.

        Per-project failures land in ``errors``; only failures before any
        result exists (e.g. the database is unreachable) propagate.
        """
        async with self._sync_lock:
            if not operation_id:
                operation_id = await self.start_operation(
                    "project_sync", trigger, {"kbRoot": str(self.kb_root)}
                )
            t0 = time.monotonic()
            try:
                with start_span("kbsync.sync_projects", {"trigger": trigger}):
                    result = await self._run_sync(operation_id)
            except Exception as exc:
                elapsed = (time.monotonic() - t0) * 1000
                record_sync_run(trigger, "failed", elapsed)
                await self._finish_operation(operation_id, status="failed", error=str(exc))
                raise

            elapsed = (time.monotonic() - t0) * 1000
            record_sync_run(
                trigger,
                "completed",
                elapsed,
                created=result.projects_created,
                updated=result.projects_updated,
                unchanged=result.projects_unchanged,
                errors=len(result.errors),
            )
            await self._finish_operation(
                operation_id,
                status="completed",
                stats=result.model_dump(exclude={"items", "operation_id"}),
            )
            logger.info(
                f"Project sync complete: {result.projects_found} found, "
                f"{result.projects_created} created, "
                f"{result.projects_updated} updated, "
                f"{len(result.errors)} errors in {int(elapsed)}ms"
            )
            return result

    async def _run_sync(self, operation_id: str) -> SyncResult:
        scan = await self.scan()
        snapshot = await self.get_db_projects()
        plan = reconcile(scan.projects, snapshot, self.parent_match)

        errors: list[str] = []
        warnings: list[str] = list(scan.warnings)
        items: list[SyncItemOutcome] = []
        counts = {"created": 0, "updated": 0, "unchanged": 0}

        org_ids = await self._ensure_organizations({p.org for p in scan.projects}, errors)
        # (org, "alpha/docs") → record id, from the snapshot and from this run
        parent_paths = record_parent_paths(snapshot)
        resolved: dict[tuple[str, str], int] = {}
        for record in snapshot:
            resolved.setdefault((record.org or "", _record_path(record, parent_paths)), record.id)
        applied: dict[tuple[str, str], int] = {}

        for action in plan.actions:
            project = action.project
            key = project.display_key
            if action.kind == "error":
                errors.append(action.message)
                items.append(SyncItemOutcome(key=key, action="error", detail=action.message))
                continue

            if action.kind == "unchanged":
                counts["unchanged"] += 1
                applied.setdefault((project.org, project.path), action.record.id)
                items.append(SyncItemOutcome(key=key, action="unchanged", id=action.record.id))
                continue

            parent_id = self._resolve_parent(project, applied, resolved, warnings)
            try:
                if action.kind == "create":
                    project_id = await self._create_project(project, action.changes, org_ids, parent_id)
                    counts["created"] += 1
                    items.append(SyncItemOutcome(key=key, action="created", id=project_id))
                else:
                    project_id = action.record.id
                    fields = self._update_fields(action, parent_id)
                    if not fields:
                        counts["unchanged"] += 1
                        items.append(SyncItemOutcome(key=key, action="unchanged", id=project_id))
                    else:
                        await self.project_repo.update(project_id, fields)
                        self._emit("projects.update", project_id, MutationKind.UPDATE)
                        counts["updated"] += 1
                        items.append(
                            SyncItemOutcome(key=key, action="updated", id=project_id, fields=sorted(fields))
                        )
                applied.setdefault((project.org, project.path), project_id)
            except aiosqlite.IntegrityError as exc:
                # The scope index caught a row this run's snapshot did not claim
                conflict = ReconciliationConflict(project, str(exc))
                logger.warning(str(conflict))
                errors.append(str(conflict))
                items.append(SyncItemOutcome(key=key, action="error", detail=conflict.reason))
            except Exception as exc:
                label = "sub-project" if project.isSubProject else "project"
                message = f"Failed to sync {label} {project.slug}: {exc}"
                logger.error(message)
                errors.append(message)
                items.append(SyncItemOutcome(key=key, action="error", detail=str(exc)))

        return SyncResult(
            projects_found=len(scan.projects),
            projects_created=counts["created"],
            projects_updated=counts["updated"],
            projects_unchanged=counts["unchanged"],
            errors=errors,
            warnings=warnings,
            items=items,
            operation_id=operation_id,
        )

    async def _ensure_organizations(self, slugs: set[str], errors: list[str]) -> dict[str, int]:
        org_ids: dict[str, int] = {}
        for slug in sorted(slugs):
            try:
                org_id, created = await self.org_repo.get_or_create(slug, config.ORG_NAMES.get(slug))
            except Exception as exc:
                errors.append(f"Failed to resolve organization {slug}: {exc}")
                continue
            org_ids[slug] = org_id
            if created:
                self._emit("organizations.create", org_id, MutationKind.CREATE)
        return org_ids

    def _resolve_parent(
        self,
        project: ProjectInfo,
        applied: dict[tuple[str, str], int],
        resolved: dict[tuple[str, str], int],
        warnings: list[str],
    ) -> Optional[int]:
        if not project.parent_path:
            return None
        key = (project.org, project.parent_path)
        parent_id = applied.get(key) or resolved.get(key)
        if parent_id is None:
            warnings.append(
                f"Parent '{project.parent_path}' not found for sub-project {project.display_key}"
            )
        return parent_id

    async def _create_project(
        self,
        project: ProjectInfo,
        desired: dict[str, Any],
        org_ids: dict[str, int],
        parent_id: Optional[int],
    ) -> int:
        project_id = await self.project_repo.create(
            {
                "slug": project.slug,
                "name": desired["name"],
                "org_id": org_ids.get(project.org),
                "status": desired["status"],
                "priority": desired["priority"],
                "parent_id": parent_id,
                "description": project.description,
            }
        )
        self._emit("projects.create", project_id, MutationKind.CREATE)
        return project_id

    @staticmethod
    def _update_fields(action: ReconcileAction, parent_id: Optional[int]) -> dict[str, Any]:
        fields = {key: value for key, value in action.changes.items() if key != "parent_path"}
        if "parent_path" in action.changes and parent_id != action.record.parentId:
            fields["parent_id"] = parent_id
        return fields

    def _emit(self, path: str, record_id: int, kind: MutationKind) -> None:
        if self.emitter is not None:
            self.emitter.after_mutation(path, {"id": record_id}, kind=kind)

    async def write_status_to_file(self, project_id: int) -> dict[str, Any]:
        """Write a project's database status back into its markdown file.

        Raises LookupError if the project or its source file cannot be found.
        """
        row = await self.project_repo.get_by_id(project_id)
        if not row:
            raise LookupError(f"Project {project_id} not found")
        record = record_from_row(row)

        parent_paths = record_parent_paths(await self.get_db_projects())
        scope = _record_scope(record, parent_paths)
        scan = await self.scan()
        source = next((p.sourcePath for p in scan.projects if p.scope == scope), "")
        if not source:
            raise LookupError(f"No knowledge-base file found for project {record.slug}")

        file_status = db_to_file(record.status)
        written = await asyncio.to_thread(update_frontmatter_field, Path(source), "status", file_status)
        logger.info("Wrote status %s to %s (changed=%s)", file_status, source, written)
        return {"id": record.id, "path": source, "status": file_status, "written": written}


