"""Typed records for the project hierarchy and change events."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# ── Stored documents ───────────────────────────────────────────────


class _Record(BaseModel):
    # Collaborator-owned fields (descriptions, timestamps, ...) ride along.
    model_config = ConfigDict(extra="allow")

    id: str
    tenant_id: str = ""


class ProjectStats(BaseModel):
    """Cached descendant counts, stored as {features, stories, test_cases}."""

    model_config = ConfigDict(populate_by_name=True)

    feature_count: int = Field(0, alias="features")
    story_count: int = Field(0, alias="stories")
    test_case_count: int = Field(0, alias="test_cases")

    def to_document(self) -> dict[str, int]:
        return self.model_dump(by_alias=True)


class Project(_Record):
    name: str = ""
    stats: Optional[ProjectStats] = None
    updated_at: str = ""


class Feature(_Record):
    project_id: str
    name: str = ""


class Story(_Record):
    feature_id: str
    name: str = ""


class TestCase(_Record):
    __test__: ClassVar[bool] = False

    story_id: str
    # Denormalized pointer; missing on records written before it existed.
    project_id: Optional[str] = None
    name: str = ""


class TestPlan(_Record):
    __test__: ClassVar[bool] = False

    project_id: str = ""
    name: str = ""
    test_case_ids: list[str] = Field(default_factory=list)
    test_cases_count: int = 0
    updated_at: str = ""


# ── Change events ──────────────────────────────────────────────────


@dataclass(frozen=True)
class ChangeRecord:
    """Raw write notification emitted by the document store."""

    collection: str
    document_id: str
    before: Optional[dict[str, Any]]
    after: Optional[dict[str, Any]]


@dataclass(frozen=True)
class Created:
    kind: ClassVar[str] = "create"
    document_id: str
    after: TestCase

    @property
    def source(self) -> TestCase:
        return self.after


@dataclass(frozen=True)
class Updated:
    kind: ClassVar[str] = "update"
    document_id: str
    before: TestCase
    after: TestCase

    @property
    def source(self) -> TestCase:
        return self.after

    def moves_between_parents(self) -> bool:
        return (
            self.before.story_id != self.after.story_id
            or (self.before.project_id or "") != (self.after.project_id or "")
            or self.before.tenant_id != self.after.tenant_id
        )


@dataclass(frozen=True)
class Deleted:
    kind: ClassVar[str] = "delete"
    document_id: str
    before: TestCase

    @property
    def source(self) -> TestCase:
        return self.before


TestCaseChange = Union[Created, Updated, Deleted]

DispatchOutcome = Literal[
    "recomputed",
    "unresolved",
    "unchanged",
    "skipped",
    "ignored",
    "failed",
    "cancelled",
]


@dataclass
class DispatchResult:
    outcome: DispatchOutcome
    kind: str = ""
    document_id: str = ""
    tenant_id: str = ""
    project_ids: list[str] = field(default_factory=list)
    plans_updated: int = 0
    stats: dict[str, dict[str, int]] = field(default_factory=dict)


# ── Collections ────────────────────────────────────────────────────

PROJECTS = "projects"
FEATURES = "features"
STORIES = "stories"
TEST_CASES = "test_cases"
TEST_PLANS = "test_plans"
