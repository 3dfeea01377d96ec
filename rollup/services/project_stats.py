"""Full recount of a project's features, stories and test cases."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Iterable, Optional

from rollup.db.repositories.base import DocumentStore
from rollup.errors import DocumentNotFoundError, StoreError
from rollup.models import FEATURES, PROJECTS, STORIES, TEST_CASES, ProjectStats
from rollup.observability import record_recompute, start_span

logger = logging.getLogger("rollup.stats")


def partition(ids: Iterable[str], ceiling: int) -> list[list[str]]:
    """Split ids into disjoint chunks of at most ``ceiling`` values.

    Repeated ids are dropped (first occurrence wins) so no id can land in two
    chunks. Empty input yields no chunks.
    """
    if ceiling < 1:
        raise ValueError(f"ceiling must be positive, got {ceiling}")
    unique = list(dict.fromkeys(ids))
    return [unique[i : i + ceiling] for i in range(0, len(unique), ceiling)]


class ProjectStatsEngine:
    """Recomputes ``Project.stats`` from ground truth.

    Counts are always rebuilt from fresh queries, never adjusted by deltas,
    so repeated or reordered runs converge on the same value.
    """

    def __init__(self, store: DocumentStore, ceiling: int | None = None):
        self.store = store
        self.ceiling = min(ceiling or store.in_query_limit, store.in_query_limit)

    async def _count_children(
        self,
        collection: str,
        parent_field: str,
        parent_ids: list[str],
        tenant_id: str,
    ) -> tuple[int, list[str]]:
        total = 0
        child_ids: list[str] = []
        for chunk in partition(parent_ids, self.ceiling):
            rows = await self.store.query_in(collection, parent_field, chunk, tenant_id)
            total += len(rows)
            child_ids.extend(str(row["id"]) for row in rows)
        return total, child_ids

    async def count(self, project_id: str, tenant_id: str) -> ProjectStats:
        features = await self.store.query_equals(FEATURES, "project_id", project_id, tenant_id)
        feature_ids = [str(row["id"]) for row in features]
        if not feature_ids:
            return ProjectStats()

        story_count, story_ids = await self._count_children(
            STORIES, "feature_id", feature_ids, tenant_id
        )
        test_case_count, _ = await self._count_children(
            TEST_CASES, "story_id", story_ids, tenant_id
        )
        return ProjectStats(
            feature_count=len(features),
            story_count=story_count,
            test_case_count=test_case_count,
        )

    async def recompute(self, project_id: str, tenant_id: str) -> Optional[ProjectStats]:
        """Recount and write stats; returns None when the project is gone."""
        t0 = time.monotonic()
        with start_span("rollup.recompute", {"project_id": project_id, "tenant_id": tenant_id}):
            try:
                stats = await self.count(project_id, tenant_id)
                await self.store.update(
                    PROJECTS,
                    project_id,
                    {
                        "stats": stats.to_document(),
                        "updated_at": datetime.now(timezone.utc).isoformat(),
                    },
                )
            except DocumentNotFoundError:
                record_recompute("missing", (time.monotonic() - t0) * 1000)
                logger.warning("Project %s not found, stats not written", project_id)
                return None
            except StoreError:
                record_recompute("failed", (time.monotonic() - t0) * 1000)
                raise

        record_recompute("ok", (time.monotonic() - t0) * 1000)
        logger.info(
            "Updated stats for project %s: Features=%s, Stories=%s, TestCases=%s",
            project_id,
            stats.feature_count,
            stats.story_count,
            stats.test_case_count,
        )
        return stats
