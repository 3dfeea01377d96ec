"""Resolve the project a test case rolls up into."""
from __future__ import annotations

import logging
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from rollup.db.repositories.base import DocumentStore
from rollup.models import FEATURES, STORIES, Feature, Story, TestCase

logger = logging.getLogger("rollup.ancestry")

_RecordT = TypeVar("_RecordT", bound=BaseModel)


def _load(model: type[_RecordT], row: Optional[dict[str, Any]], tenant_id: str) -> Optional[_RecordT]:
    # Rows from another tenant are treated as absent.
    if row is None or str(row.get("tenant_id") or "") != tenant_id:
        return None
    try:
        return model.model_validate(row)
    except ValidationError as exc:
        logger.warning("Malformed %s record %s: %s", model.__name__, row.get("id"), exc)
        return None


class AncestryResolver:
    """Maps a test case to its project id.

    Uses the denormalized ``project_id`` when the record has one; legacy
    records fall back to two point reads (story, then feature).
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    async def resolve_project_id(self, test_case: TestCase, tenant_id: str) -> Optional[str]:
        if test_case.project_id:
            return test_case.project_id

        if not test_case.story_id:
            logger.info("Test case %s has no story_id and no project_id, skipping", test_case.id)
            return None

        story = _load(Story, await self.store.get_by_id(STORIES, test_case.story_id), tenant_id)
        if story is None:
            logger.info(
                "Story %s not found and no project_id in test case %s, skipping stats update",
                test_case.story_id,
                test_case.id,
            )
            return None

        feature = _load(Feature, await self.store.get_by_id(FEATURES, story.feature_id), tenant_id)
        if feature is None:
            logger.info("Feature not found: %s", story.feature_id)
            return None

        return feature.project_id or None
