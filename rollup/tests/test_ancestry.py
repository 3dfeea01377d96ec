import unittest
from unittest.mock import patch

import aiosqlite

from rollup.db.repositories import SqliteDocumentStore
from rollup.db.sqlite_migrations import run_migrations
from rollup.models import TestCase as TestCaseRecord
from rollup.services.ancestry import AncestryResolver


class AncestryResolverTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.store = SqliteDocumentStore(self.db)
        await self.store.set("projects", "P", {"tenant_id": "t1", "name": "Alpha"})
        await self.store.set("features", "A", {"tenant_id": "t1", "project_id": "P"})
        await self.store.set("stories", "S1", {"tenant_id": "t1", "feature_id": "A"})
        await self.store.set("stories", "S-orphan", {"tenant_id": "t1", "feature_id": "gone"})
        self.resolver = AncestryResolver(self.store)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_denormalized_project_id_needs_no_reads(self) -> None:
        test_case = TestCaseRecord(id="TC1", tenant_id="t1", story_id="S1", project_id="P")

        with patch.object(self.store, "get_by_id") as get_by_id:
            project_id = await self.resolver.resolve_project_id(test_case, "t1")

        self.assertEqual(project_id, "P")
        get_by_id.assert_not_called()

    async def test_legacy_record_walks_story_then_feature(self) -> None:
        test_case = TestCaseRecord(id="TC1", tenant_id="t1", story_id="S1")
        self.assertEqual(await self.resolver.resolve_project_id(test_case, "t1"), "P")

    async def test_missing_story_resolves_nothing(self) -> None:
        test_case = TestCaseRecord(id="TC1", tenant_id="t1", story_id="S-missing")
        self.assertIsNone(await self.resolver.resolve_project_id(test_case, "t1"))

    async def test_missing_feature_resolves_nothing(self) -> None:
        test_case = TestCaseRecord(id="TC1", tenant_id="t1", story_id="S-orphan")
        self.assertIsNone(await self.resolver.resolve_project_id(test_case, "t1"))

    async def test_empty_story_id_resolves_nothing(self) -> None:
        test_case = TestCaseRecord(id="TC1", tenant_id="t1", story_id="")

        with patch.object(self.store, "get_by_id") as get_by_id:
            self.assertIsNone(await self.resolver.resolve_project_id(test_case, "t1"))
        get_by_id.assert_not_called()

    async def test_ancestors_from_another_tenant_are_ignored(self) -> None:
        test_case = TestCaseRecord(id="TC1", tenant_id="t2", story_id="S1")
        self.assertIsNone(await self.resolver.resolve_project_id(test_case, "t2"))


if __name__ == "__main__":
    unittest.main()
