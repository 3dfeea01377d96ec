"""Remove deleted test cases from the test plans that reference them."""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from rollup.db.repositories.base import ArrayRemove, BatchUpdate, DocumentStore
from rollup.errors import StoreError
from rollup.models import TEST_PLANS
from rollup.observability import record_cascade

logger = logging.getLogger("rollup.cascade")


class CascadeCleanup:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def remove_test_case(self, test_case_id: str, tenant_id: str) -> int:
        """Strip ``test_case_id`` from every plan in the tenant.

        All affected plans are rewritten in one atomic batch. The removal is
        applied by the store to each plan as read inside that batch, with
        ``test_cases_count`` reset to the new list length. Returns the number
        of plans updated; a failed batch is re-raised.
        """
        rows = await self.store.query_array_contains(
            TEST_PLANS, "test_case_ids", test_case_id, tenant_id
        )
        if not rows:
            logger.info("Test case %s not found in any test plans", test_case_id)
            return 0

        now = datetime.now(timezone.utc).isoformat()
        removal = ArrayRemove("test_case_ids", test_case_id, count_field="test_cases_count")
        updates = [
            BatchUpdate(TEST_PLANS, str(row["id"]), {"updated_at": now}, array_remove=removal)
            for row in rows
        ]

        try:
            await self.store.atomic_batch_update(updates)
        except StoreError as exc:
            logger.error("Error removing test case %s from test plans: %s", test_case_id, exc)
            raise

        record_cascade(len(updates))
        logger.info("Removed test case %s from %s test plan(s)", test_case_id, len(updates))
        return len(updates)
