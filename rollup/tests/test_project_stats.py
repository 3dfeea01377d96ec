import unittest
from unittest.mock import patch

import aiosqlite

from rollup.db.repositories import SqliteDocumentStore
from rollup.db.sqlite_migrations import run_migrations
from rollup.errors import StoreError
from rollup.models import ProjectStats
from rollup.services.project_stats import ProjectStatsEngine


class ProjectStatsEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.store = SqliteDocumentStore(self.db, in_query_limit=10)
        self.engine = ProjectStatsEngine(self.store)
        await self.store.set("projects", "P", {"tenant_id": "t1", "name": "Alpha"})

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _seed_large_project(self) -> dict[str, int]:
        """25 features, 1-3 stories each, 0-2 test cases per story."""
        features = stories = test_cases = 0
        for f in range(25):
            feature_id = f"F{f:02d}"
            await self.store.set("features", feature_id, {"tenant_id": "t1", "project_id": "P"})
            features += 1
            for s in range(1 + f % 3):
                story_id = f"{feature_id}-S{s}"
                await self.store.set("stories", story_id, {"tenant_id": "t1", "feature_id": feature_id})
                stories += 1
                for t in range((f + s) % 3):
                    await self.store.set(
                        "test_cases",
                        f"{story_id}-TC{t}",
                        {"tenant_id": "t1", "story_id": story_id, "project_id": "P"},
                    )
                    test_cases += 1
        # Same parent ids in another tenant must not be counted.
        await self.store.set("features", "F-x", {"tenant_id": "t2", "project_id": "P"})
        await self.store.set("stories", "F00-S-x", {"tenant_id": "t2", "feature_id": "F00"})
        return {"features": features, "stories": stories, "test_cases": test_cases}

    async def test_chunked_count_matches_naive_count(self) -> None:
        expected = await self._seed_large_project()

        stats = await self.engine.recompute("P", "t1")

        self.assertEqual(stats.to_document(), expected)
        project = await self.store.get_by_id("projects", "P")
        self.assertEqual(project["stats"], expected)
        self.assertEqual(project["name"], "Alpha")
        self.assertTrue(project["updated_at"])

    async def test_recompute_is_idempotent(self) -> None:
        await self._seed_large_project()

        first = await self.engine.recompute("P", "t1")
        second = await self.engine.recompute("P", "t1")

        self.assertEqual(first, second)

    async def test_queries_never_exceed_ceiling(self) -> None:
        await self._seed_large_project()
        real_query_in = self.store.query_in
        sizes: list[int] = []

        async def _tracking(collection, field, values, tenant_id):
            sizes.append(len(values))
            return await real_query_in(collection, field, values, tenant_id)

        with patch.object(self.store, "query_in", side_effect=_tracking):
            await self.engine.recompute("P", "t1")

        self.assertTrue(sizes)
        self.assertLessEqual(max(sizes), 10)

    async def test_project_without_features_gets_zero_stats(self) -> None:
        with patch.object(self.store, "query_in") as query_in:
            stats = await self.engine.recompute("P", "t1")

        query_in.assert_not_called()
        self.assertEqual(stats, ProjectStats())
        project = await self.store.get_by_id("projects", "P")
        self.assertEqual(project["stats"], {"features": 0, "stories": 0, "test_cases": 0})

    async def test_failed_chunk_query_writes_nothing(self) -> None:
        await self._seed_large_project()
        await self.store.update("projects", "P", {"stats": {"features": 1, "stories": 1, "test_cases": 1}})
        real_query_in = self.store.query_in
        calls = {"n": 0}

        async def _flaky(collection, field, values, tenant_id):
            calls["n"] += 1
            if calls["n"] == 2:
                raise StoreError("query rejected")
            return await real_query_in(collection, field, values, tenant_id)

        with patch.object(self.store, "query_in", side_effect=_flaky):
            with self.assertRaises(StoreError):
                await self.engine.recompute("P", "t1")

        project = await self.store.get_by_id("projects", "P")
        self.assertEqual(project["stats"], {"features": 1, "stories": 1, "test_cases": 1})

    async def test_missing_project_is_not_created(self) -> None:
        await self.store.set("features", "F1", {"tenant_id": "t1", "project_id": "P-gone"})

        self.assertIsNone(await self.engine.recompute("P-gone", "t1"))
        self.assertIsNone(await self.store.get_by_id("projects", "P-gone"))

    def test_ceiling_is_capped_by_store_limit(self) -> None:
        self.assertEqual(ProjectStatsEngine(self.store, ceiling=50).ceiling, 10)
        self.assertEqual(ProjectStatsEngine(self.store, ceiling=4).ceiling, 4)


if __name__ == "__main__":
    unittest.main()
