import types
import unittest

import aiosqlite
from fastapi import HTTPException
from pydantic import ValidationError

from kbsync.db.sqlite_migrations import run_migrations
from kbsync.events import ChangeEmitter, EventBus
from kbsync.routers import organizations as organizations_router
from kbsync.routers import projects as projects_router


class ProjectsRouterTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.bus = EventBus()
        self.request = types.SimpleNamespace(
            app=types.SimpleNamespace(
                state=types.SimpleNamespace(db=self.db, emitter=ChangeEmitter(self.bus), sync_engine=None)
            )
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    def _events(self) -> list[tuple]:
        return [(e.entity, e.mutation, e.id) for e in self.bus.recent()]

    async def test_create_emits_after_commit(self) -> None:
        body = projects_router.ProjectCreate(slug="website", name="Website", org="acme-corp", status="active")

        record = await projects_router.create_project(self.request, body)

        self.assertEqual(record.org, "acme-corp")
        self.assertEqual(
            self._events(),
            [("organizations", "create", record.orgId), ("projects", "create", record.id)],
        )

    async def test_duplicate_create_is_409_and_emits_nothing_more(self) -> None:
        body = projects_router.ProjectCreate(slug="website", name="Website", org="acme-corp")
        await projects_router.create_project(self.request, body)
        emitted = len(self.bus.recent())

        with self.assertRaises(HTTPException) as ctx:
            await projects_router.create_project(self.request, body)

        self.assertEqual(ctx.exception.status_code, 409)
        self.assertIn("already exists", ctx.exception.detail)
        self.assertEqual(len(self.bus.recent()), emitted)

    async def test_same_slug_under_another_parent_is_allowed(self) -> None:
        alpha = await projects_router.create_project(
            self.request, projects_router.ProjectCreate(slug="alpha", name="Alpha", org="acme-corp")
        )
        beta = await projects_router.create_project(
            self.request, projects_router.ProjectCreate(slug="beta", name="Beta", org="acme-corp")
        )

        first = await projects_router.create_project(
            self.request,
            projects_router.ProjectCreate(slug="docs", name="Docs", org="acme-corp", parentId=alpha.id),
        )
        second = await projects_router.create_project(
            self.request,
            projects_router.ProjectCreate(slug="docs", name="Docs", org="acme-corp", parentId=beta.id),
        )

        self.assertNotEqual(first.id, second.id)
        self.assertEqual(second.parentSlug, "beta")

    async def test_update_and_delete(self) -> None:
        record = await projects_router.create_project(
            self.request, projects_router.ProjectCreate(slug="blog", name="Blog")
        )

        updated = await projects_router.update_project(
            self.request, record.id, projects_router.ProjectUpdate(status="blocked", priority=1)
        )
        await projects_router.delete_project(self.request, record.id)

        self.assertEqual(updated.status, "blocked")
        self.assertEqual(updated.priority, 1)
        self.assertEqual(
            self._events(),
            [
                ("projects", "create", record.id),
                ("projects", "update", record.id),
                ("projects", "delete", record.id),
            ],
        )
        with self.assertRaises(HTTPException) as ctx:
            await projects_router.get_project(self.request, record.id)
        self.assertEqual(ctx.exception.status_code, 404)

    async def test_failed_update_emits_nothing(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await projects_router.update_project(
                self.request, 999, projects_router.ProjectUpdate(status="paused")
            )
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(self.bus.recent(), [])

    async def test_unknown_status_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            projects_router.ProjectCreate(slug="x", name="X", status="completed")

    async def test_statuses_lists_display_badges(self) -> None:
        statuses = {row["status"]: row for row in projects_router.list_statuses()}
        self.assertEqual(statuses["blocked"]["emoji"], "🔴")
        self.assertEqual(len(statuses), 8)

    async def test_write_back_without_engine_is_503(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await projects_router.write_status_back(self.request, 1)
        self.assertEqual(ctx.exception.status_code, 503)

    async def test_organization_update_emits(self) -> None:
        org = await organizations_router.create_organization(
            self.request, organizations_router.OrganizationCreate(slug="personal", name="Personal")
        )

        updated = await organizations_router.update_organization(
            self.request, org.id, organizations_router.OrganizationUpdate(shortName="P")
        )

        self.assertEqual(updated.shortName, "P")
        self.assertEqual(
            self._events(),
            [("organizations", "create", org.id), ("organizations", "update", org.id)],
        )


if __name__ == "__main__":
    unittest.main()
