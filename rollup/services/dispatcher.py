"""Test case change dispatcher.

Entry point for every observed write to ``test_cases``. Classifies the
write, cascades deletions into test plans, resolves the owning project and
recomputes its stats.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError

from rollup import config
from rollup.db.repositories.base import DocumentStore
from rollup.errors import StoreError
from rollup.models import (
    ChangeRecord,
    Created,
    Deleted,
    DispatchResult,
    TestCase,
    TestCaseChange,
    Updated,
)
from rollup.observability import record_change_event, start_span
from rollup.services.ancestry import AncestryResolver
from rollup.services.cascade import CascadeCleanup
from rollup.services.project_stats import ProjectStatsEngine

logger = logging.getLogger("rollup.dispatch")


def classify_change(
    document_id: str,
    before: Optional[dict[str, Any]],
    after: Optional[dict[str, Any]],
) -> Optional[TestCaseChange]:
    """Turn a (before, after) snapshot pair into a typed change.

    Returns None when neither snapshot exists. Raises ValidationError for
    snapshots that are not test case shaped.
    """
    if before is None and after is None:
        return None
    if before is None:
        return Created(document_id, TestCase.model_validate({"id": document_id, **after}))
    if after is None:
        return Deleted(document_id, TestCase.model_validate({"id": document_id, **before}))
    return Updated(
        document_id,
        TestCase.model_validate({"id": document_id, **before}),
        TestCase.model_validate({"id": document_id, **after}),
    )


class ChangeDispatcher:
    """Best-effort handler for one test case write at a time.

    Not-found conditions end an invocation quietly. Store failures are
    logged and re-raised so the delivery mechanism can redeliver.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        resolver: AncestryResolver | None = None,
        cascade: CascadeCleanup | None = None,
        engine: ProjectStatsEngine | None = None,
        skip_noop_updates: bool | None = None,
        history_size: int | None = None,
    ):
        self.store = store
        self.resolver = resolver or AncestryResolver(store)
        self.cascade = cascade or CascadeCleanup(store)
        self.engine = engine or ProjectStatsEngine(store)
        self.skip_noop_updates = (
            config.SKIP_NOOP_UPDATES if skip_noop_updates is None else skip_noop_updates
        )
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._max_operation_history = history_size or config.OPERATION_HISTORY

    # ── Operation history ──────────────────────────────────────────

    async def _start_operation(self, document_id: str) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        payload = {
            "id": op_id,
            "documentId": document_id,
            "kind": "",
            "tenantId": "",
            "status": "running",
            "outcome": "",
            "projectIds": [],
            "plansUpdated": 0,
            "stats": {},
            "startedAt": datetime.now(timezone.utc).isoformat(),
            "finishedAt": "",
            "durationMs": 0,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history :]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
        return op_id

    async def _finish_operation(
        self,
        operation_id: str,
        result: DispatchResult,
        t0: float,
        error: str = "",
        status: str = "",
    ) -> None:
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation.update(
                {
                    "kind": result.kind,
                    "tenantId": result.tenant_id,
                    "status": status or ("failed" if error else "completed"),
                    "outcome": result.outcome,
                    "projectIds": list(result.project_ids),
                    "plansUpdated": result.plans_updated,
                    "stats": dict(result.stats),
                    "finishedAt": datetime.now(timezone.utc).isoformat(),
                    "durationMs": max(0, int((time.monotonic() - t0) * 1000)),
                    "error": error,
                }
            )

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        async with self._ops_lock:
            return [dict(self._operations[op_id]) for op_id in self._operation_order[:limit]]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            return dict(operation) if operation else None

    # ── Dispatch ───────────────────────────────────────────────────

    async def handle_record(self, record: ChangeRecord) -> DispatchResult:
        return await self.handle_change(record.document_id, record.before, record.after)

    async def handle_change(
        self,
        document_id: str,
        before: Optional[dict[str, Any]],
        after: Optional[dict[str, Any]],
    ) -> DispatchResult:
        """Process one observed write to a test case document."""
        t0 = time.monotonic()
        op_id = await self._start_operation(document_id)
        result = DispatchResult(outcome="failed", document_id=document_id)
        with start_span("rollup.dispatch", {"document_id": document_id}):
            try:
                result = await self._dispatch(document_id, before, after, result)
            except StoreError as exc:
                result.outcome = "failed"
                logger.error("Error updating project stats for test case %s: %s", document_id, exc)
                record_change_event(result.kind, result.outcome)
                await self._finish_operation(op_id, result, t0, error=str(exc))
                raise
            except asyncio.CancelledError:
                result.outcome = "cancelled"
                logger.warning("Dispatch of test case %s cancelled", document_id)
                record_change_event(result.kind, result.outcome)
                await self._finish_operation(op_id, result, t0, status="cancelled")
                raise

        record_change_event(result.kind, result.outcome)
        await self._finish_operation(op_id, result, t0)
        return result

    async def _dispatch(
        self,
        document_id: str,
        before: Optional[dict[str, Any]],
        after: Optional[dict[str, Any]],
        result: DispatchResult,
    ) -> DispatchResult:
        try:
            change = classify_change(document_id, before, after)
        except ValidationError as exc:
            logger.warning("Malformed test case snapshot %s, skipping: %s", document_id, exc)
            result.outcome = "skipped"
            return result

        if change is None:
            logger.info("No test case data found for %s", document_id)
            result.outcome = "ignored"
            return result

        source = change.source
        result.kind = change.kind
        result.tenant_id = source.tenant_id

        if (
            isinstance(change, Updated)
            and self.skip_noop_updates
            and not change.moves_between_parents()
        ):
            logger.debug("Test case %s updated without moving, stats unchanged", document_id)
            result.outcome = "unchanged"
            return result

        if isinstance(change, Deleted):
            result.plans_updated = await self.cascade.remove_test_case(
                document_id, source.tenant_id
            )

        targets: list[tuple[str, str]] = []
        project_id = await self.resolver.resolve_project_id(source, source.tenant_id)
        if project_id:
            targets.append((project_id, source.tenant_id))
        if isinstance(change, Updated) and change.moves_between_parents():
            previous_id = await self.resolver.resolve_project_id(
                change.before, change.before.tenant_id
            )
            if previous_id and (previous_id, change.before.tenant_id) not in targets:
                targets.append((previous_id, change.before.tenant_id))

        if not targets:
            logger.info("No project resolved for test case %s, skipping stats update", document_id)
            result.outcome = "unresolved"
            return result

        for target_project_id, tenant_id in targets:
            stats = await self.engine.recompute(target_project_id, tenant_id)
            if stats is not None:
                result.project_ids.append(target_project_id)
                result.stats[target_project_id] = stats.to_document()

        result.outcome = "recomputed" if result.project_ids else "skipped"
        logger.info(
            "Handled %s of test case %s: outcome=%s projects=%s",
            change.kind,
            document_id,
            result.outcome,
            result.project_ids,
        )
        return result


def result_payload(result: DispatchResult) -> dict[str, Any]:
    payload = asdict(result)
    return {
        "outcome": payload["outcome"],
        "kind": payload["kind"],
        "documentId": payload["document_id"],
        "tenantId": payload["tenant_id"],
        "projectIds": payload["project_ids"],
        "plansUpdated": payload["plans_updated"],
        "stats": payload["stats"],
    }
