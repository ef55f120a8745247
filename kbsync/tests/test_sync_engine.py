import asyncio
import shutil
import tempfile
import unittest
from pathlib import Path

import aiosqlite

from kbsync.db.sqlite_migrations import run_migrations
from kbsync.db.sync_engine import SyncEngine, reconcile
from kbsync.events import ChangeEmitter, EventBus
from kbsync.models import ProjectInfo, ProjectRecord, ScanResult
from kbsync.parsers.frontmatter import read_frontmatter


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _info(slug: str, **extra) -> ProjectInfo:
    data = {"slug": slug, "name": slug.title(), "org": "acme-corp", "status": "active"}
    data.update(extra)
    return ProjectInfo(**data)


def _record(id: int, slug: str, **extra) -> ProjectRecord:
    data = {"id": id, "slug": slug, "name": slug.title(), "org": "acme-corp", "status": "active"}
    data.update(extra)
    return ProjectRecord(**data)


class ReconcileTests(unittest.TestCase):
    def test_new_descriptor_plans_create(self) -> None:
        plan = reconcile([_info("website", status="maintenance")], [])

        self.assertEqual([a.kind for a in plan.actions], ["create"])
        self.assertEqual(plan.actions[0].changes["status"], "active")

    def test_matching_record_is_unchanged(self) -> None:
        plan = reconcile([_info("website")], [_record(1, "website")])
        self.assertEqual(plan.actions[0].kind, "unchanged")

    def test_changed_fields_are_listed(self) -> None:
        plan = reconcile(
            [_info("website", name="Site", priority=1, status="paused")],
            [_record(1, "website", name="Website", priority=2)],
        )

        action = plan.actions[0]
        self.assertEqual(action.kind, "update")
        self.assertEqual(action.changes, {"name": "Site", "status": "paused", "priority": 1})

    def test_duplicate_scope_becomes_error(self) -> None:
        plan = reconcile(
            [_info("website", sourcePath="a/README.md"), _info("website", sourcePath="a.md")],
            [],
        )

        self.assertEqual([a.kind for a in plan.actions], ["create", "error"])
        self.assertIn("a.md", plan.errors[0])

    def test_same_slug_under_different_parents_is_not_a_collision(self) -> None:
        projects = [
            _info("alpha"),
            _info("beta"),
            _info("docs", isSubProject=True, parentSlug="alpha"),
            _info("docs", isSubProject=True, parentSlug="beta"),
        ]

        plan = reconcile(projects, [])

        self.assertEqual(plan.count("create"), 4)
        self.assertEqual(plan.errors, [])

    def test_same_slug_under_same_named_parents_in_different_trees(self) -> None:
        projects = [
            _info("alpha"),
            _info("beta"),
            _info("docs", isSubProject=True, parentSlug="alpha", parentPath="alpha"),
            _info("docs", isSubProject=True, parentSlug="beta", parentPath="beta"),
            _info("notes", isSubProject=True, parentSlug="docs", parentPath="alpha/docs"),
            _info("notes", isSubProject=True, parentSlug="docs", parentPath="beta/docs"),
        ]

        plan = reconcile(projects, [])

        self.assertEqual(plan.count("create"), 6)
        self.assertEqual(plan.errors, [])

    def test_record_scope_follows_the_parent_chain(self) -> None:
        projects = [
            _info("alpha"),
            _info("beta"),
            _info("docs", isSubProject=True, parentSlug="alpha", parentPath="alpha"),
            _info("docs", isSubProject=True, parentSlug="beta", parentPath="beta"),
            _info("notes", isSubProject=True, parentSlug="docs", parentPath="beta/docs"),
        ]
        snapshot = [
            _record(1, "alpha"),
            _record(2, "beta"),
            _record(3, "docs", parentId=1, parentSlug="alpha"),
            _record(4, "docs", parentId=2, parentSlug="beta"),
            _record(5, "notes", parentId=4, parentSlug="docs"),
        ]

        plan = reconcile(projects, snapshot, parent_match="strict")
        notes = next(a for a in plan.actions if a.project.slug == "notes")

        self.assertEqual(plan.count("unchanged"), 5)
        self.assertEqual(notes.record.id, 5)

    def test_top_level_projects_are_planned_before_sub_projects(self) -> None:
        plan = reconcile(
            [_info("child", isSubProject=True, parentSlug="parent"), _info("parent")],
            [],
        )
        self.assertEqual([a.project.slug for a in plan.actions], ["parent", "child"])

    def test_reparented_descriptor_adopts_record_in_slug_mode(self) -> None:
        projects = [_info("core"), _info("billing", isSubProject=True, parentSlug="core")]
        snapshot = [
            _record(1, "platform"),
            _record(2, "billing", parentId=1, parentSlug="platform"),
        ]

        plan = reconcile(projects, snapshot, parent_match="slug")
        actions = {a.project.slug: a for a in plan.actions}

        self.assertEqual(actions["billing"].kind, "update")
        self.assertEqual(actions["billing"].record.id, 2)
        self.assertEqual(actions["billing"].changes, {"parent_path": "core"})

    def test_reparented_descriptor_is_new_in_strict_mode(self) -> None:
        projects = [_info("billing", isSubProject=True, parentSlug="core")]
        snapshot = [_record(2, "billing", parentId=1, parentSlug="platform")]

        plan = reconcile(projects, snapshot, parent_match="strict")

        self.assertEqual(plan.actions[0].kind, "create")


class SyncEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.bus = EventBus(buffer_size=100)
        self.engine = SyncEngine(self.db, ChangeEmitter(self.bus), kb_root=self.root, parent_match="slug")

    async def asyncTearDown(self) -> None:
        await self.db.close()
        self._tmp.cleanup()

    def _events(self) -> list[tuple[str, str, int | None]]:
        return [(e.entity, e.mutation, e.id) for e in self.bus.recent()]

    async def _by_slug(self) -> dict[str, ProjectRecord]:
        return {r.slug: r for r in await self.engine.get_db_projects()}

    async def test_first_sync_creates_projects_and_emits_events(self) -> None:
        _write(self.root / "acme-corp/projects/website/README.md", "---\nstatus: active\npriority: 2\n---\n")
        _write(self.root / "personal/projects/garden.md", "---\nstatus: planning\n---\n")

        result = await self.engine.sync_projects(trigger="test")

        self.assertEqual(result.projects_found, 2)
        self.assertEqual(result.projects_created, 2)
        self.assertEqual(result.errors, [])
        records = await self._by_slug()
        self.assertEqual(records["website"].status, "active")
        self.assertEqual(records["website"].org, "acme-corp")
        self.assertEqual(records["garden"].status, "pending")

        events = self._events()
        self.assertEqual(sum(1 for e in events if e[0] == "organizations"), 2)
        project_events = [e for e in events if e[0] == "projects"]
        self.assertEqual(
            sorted(project_events, key=lambda e: e[2]),
            sorted([("projects", "create", r.id) for r in records.values()], key=lambda e: e[2]),
        )

    async def test_second_sync_without_changes_is_a_no_op(self) -> None:
        _write(self.root / "acme-corp/projects/website/README.md", "---\nstatus: active\n---\n")
        await self.engine.sync_projects()
        before = len(self.bus.recent())

        result = await self.engine.sync_projects()

        self.assertEqual(result.projects_created, 0)
        self.assertEqual(result.projects_updated, 0)
        self.assertEqual(result.projects_unchanged, 1)
        self.assertEqual(len(self.bus.recent()), before)

    async def test_maintenance_project_is_created_active(self) -> None:
        _write(self.root / "consulting/projects/ops/README.md", "---\nstatus: maintenance\n---\n")

        result = await self.engine.sync_projects()

        self.assertEqual(result.projects_created, 1)
        self.assertEqual((await self._by_slug())["ops"].status, "active")

    async def test_unknown_file_status_maps_deterministically(self) -> None:
        org_id, _ = await self.engine.org_repo.get_or_create("acme-corp")
        await self.engine.project_repo.create(
            {"slug": "website", "name": "Website", "org_id": org_id, "status": "blocked"}
        )
        _write(self.root / "acme-corp/projects/website/README.md", "---\ntitle: Website\nstatus: blocked\n---\n")

        first = await self.engine.sync_projects()
        second = await self.engine.sync_projects()

        self.assertEqual(first.projects_updated, 1)
        self.assertEqual(second.projects_updated, 0)
        self.assertEqual((await self._by_slug())["website"].status, "pending")

    async def test_status_change_emits_one_update_for_that_project(self) -> None:
        readme = self.root / "acme-corp/projects/website/README.md"
        _write(readme, "---\nstatus: active\n---\n")
        _write(self.root / "acme-corp/projects/other.md", "---\nstatus: active\n---\n")
        await self.engine.sync_projects()
        website_id = (await self._by_slug())["website"].id
        before = len(self.bus.recent())

        _write(readme, "---\nstatus: completed\n---\n")
        result = await self.engine.sync_projects()

        self.assertEqual(result.projects_updated, 1)
        self.assertEqual(self._events()[before:], [("projects", "update", website_id)])
        self.assertEqual((await self._by_slug())["website"].status, "complete")

    async def test_sub_project_is_linked_to_parent(self) -> None:
        base = self.root / "acme-corp/projects/platform"
        _write(base / "README.md", "---\nstatus: active\n---\n")
        _write(base / "billing.md", "---\ntype: sub-project\nstatus: paused\n---\n")

        await self.engine.sync_projects()
        records = await self._by_slug()

        self.assertEqual(records["billing"].parentId, records["platform"].id)
        self.assertEqual(records["billing"].status, "paused")

    async def test_nested_sub_project_links_to_parent_in_its_own_tree(self) -> None:
        base = self.root / "acme-corp/projects"
        _write(base / "alpha/README.md", "# Alpha\n")
        _write(base / "alpha/docs/README.md", "# Alpha Docs\n")
        _write(base / "beta/README.md", "# Beta\n")
        _write(base / "beta/docs/README.md", "# Beta Docs\n")
        _write(base / "beta/docs/notes/README.md", "# Notes\n")

        result = await self.engine.sync_projects()
        records = await self.engine.get_db_projects()
        by_id = {r.id: r for r in records}
        notes = next(r for r in records if r.slug == "notes")
        docs = by_id[notes.parentId]

        self.assertEqual(result.errors, [])
        self.assertEqual(result.warnings, [])
        self.assertEqual(docs.slug, "docs")
        self.assertEqual(by_id[docs.parentId].slug, "beta")

    async def test_same_slug_under_same_named_parents_syncs_both(self) -> None:
        base = self.root / "acme-corp/projects"
        for tree in ("alpha", "beta"):
            _write(base / tree / "README.md", f"# {tree.title()}\n")
            _write(base / tree / "docs/README.md", "# Docs\n")
            _write(base / tree / "docs/notes/README.md", "# Notes\n")

        first = await self.engine.sync_projects()
        second = await self.engine.sync_projects()
        records = await self.engine.get_db_projects()
        by_id = {r.id: r for r in records}
        note_roots = sorted(
            by_id[by_id[r.parentId].parentId].slug for r in records if r.slug == "notes"
        )

        self.assertEqual(first.errors, [])
        self.assertEqual(first.projects_created, 6)
        self.assertEqual(second.projects_unchanged, 6)
        self.assertEqual(second.projects_updated, 0)
        self.assertEqual(note_roots, ["alpha", "beta"])

    async def test_overlapping_syncs_create_each_project_once(self) -> None:
        _write(self.root / "acme-corp/projects/website/README.md", "---\nstatus: active\n---\n")

        first, second = await asyncio.gather(self.engine.sync_projects(), self.engine.sync_projects())
        records = await self.engine.get_db_projects()
        creates = [e for e in self._events() if e[:2] == ("projects", "create")]

        self.assertEqual(first.projects_created + second.projects_created, 1)
        self.assertEqual(first.errors + second.errors, [])
        self.assertEqual([r.slug for r in records], ["website"])
        self.assertEqual(len(creates), 1)

    async def test_duplicate_scope_is_reported_and_others_still_sync(self) -> None:
        _write(self.root / "acme-corp/projects/website/README.md", "---\nstatus: active\n---\n")
        _write(self.root / "acme-corp/projects/website.md", "---\nstatus: paused\n---\n")
        _write(self.root / "acme-corp/projects/blog.md", "---\nstatus: active\n---\n")

        result = await self.engine.sync_projects()

        self.assertEqual(result.projects_created, 2)
        self.assertEqual(len(result.errors), 1)
        self.assertIn("website", result.errors[0])
        self.assertEqual((await self._by_slug())["website"].status, "active")

    async def test_per_project_failure_does_not_abort_run(self) -> None:
        _write(self.root / "acme-corp/projects/alpha.md", "# Alpha\n")
        _write(self.root / "acme-corp/projects/beta.md", "# Beta\n")
        original = self.engine.project_repo.create

        async def flaky_create(data):
            if data["slug"] == "beta":
                raise RuntimeError("disk full")
            return await original(data)

        self.engine.project_repo.create = flaky_create
        result = await self.engine.sync_projects()

        self.assertEqual(result.projects_created, 1)
        self.assertEqual(len(result.errors), 1)
        self.assertIn("beta", result.errors[0])

    async def test_scope_collision_in_database_is_reported(self) -> None:
        engine = SyncEngine(self.db, ChangeEmitter(self.bus), kb_root=self.root, parent_match="strict")
        org_id, _ = await engine.org_repo.get_or_create("acme-corp")
        await engine.project_repo.create(
            {"slug": "billing", "name": "Billing", "org_id": org_id, "status": "active"}
        )

        async def orphan_scan():
            return ScanResult(
                projects=[
                    ProjectInfo(
                        slug="billing",
                        name="Billing",
                        org="acme-corp",
                        status="active",
                        isSubProject=True,
                        parentSlug="ghost",
                        sourcePath="acme-corp/projects/ghost/billing.md",
                    )
                ]
            )

        engine.scan = orphan_scan
        result = await engine.sync_projects()

        self.assertEqual(result.projects_created, 0)
        self.assertEqual(len(result.errors), 1)
        self.assertIn("Duplicate project slug 'billing'", result.errors[0])
        self.assertIn("Parent 'ghost' not found", result.warnings[0])
        self.assertEqual(self.bus.recent(), [])

    async def test_moved_sub_project_is_reparented(self) -> None:
        base = self.root / "acme-corp/projects"
        _write(base / "platform/README.md", "# Platform\n")
        _write(base / "platform/billing.md", "---\ntype: sub-project\n---\n# Billing\n")
        await self.engine.sync_projects()
        billing_id = (await self._by_slug())["billing"].id

        _write(base / "core/README.md", "# Core\n")
        shutil.move(str(base / "platform/billing.md"), str(base / "core/billing.md"))
        result = await self.engine.sync_projects()
        records = await self._by_slug()

        self.assertEqual(result.projects_created, 1)
        self.assertEqual(result.projects_updated, 1)
        self.assertEqual(records["billing"].id, billing_id)
        self.assertEqual(records["billing"].parentId, records["core"].id)

    async def test_preview_does_not_write(self) -> None:
        _write(self.root / "acme-corp/projects/website/README.md", "---\nstatus: planning\n---\n")

        preview = await self.engine.preview()

        self.assertEqual(preview["wouldCreate"], 1)
        self.assertEqual(preview["projects"][0]["dbStatus"], "pending")
        self.assertEqual(await self.engine.get_db_projects(), [])
        self.assertEqual(self.bus.recent(), [])

    async def test_write_status_to_file(self) -> None:
        readme = self.root / "acme-corp/projects/website/README.md"
        _write(readme, "---\ntitle: Website\nstatus: active\n---\n# Website\n")
        await self.engine.sync_projects()
        project_id = (await self._by_slug())["website"].id
        await self.engine.project_repo.update(project_id, {"status": "complete"})

        outcome = await self.engine.write_status_to_file(project_id)
        fm, _ = read_frontmatter(readme.read_text(encoding="utf-8"), readme)

        self.assertTrue(outcome["written"])
        self.assertEqual(fm["status"], "completed")
        self.assertEqual((await self.engine.sync_projects()).projects_updated, 0)

    async def test_write_status_to_file_unknown_project(self) -> None:
        with self.assertRaises(LookupError):
            await self.engine.write_status_to_file(404)

    async def test_operations_are_tracked(self) -> None:
        _write(self.root / "acme-corp/projects/website.md", "# Website\n")
        result = await self.engine.sync_projects(trigger="test")

        operations = await self.engine.list_operations()
        operation = await self.engine.get_operation(result.operation_id)

        self.assertEqual(operations[0]["id"], result.operation_id)
        self.assertEqual(operation["status"], "completed")
        self.assertEqual(operation["trigger"], "test")
        self.assertEqual(operation["stats"]["projects_created"], 1)


if __name__ == "__main__":
    unittest.main()
