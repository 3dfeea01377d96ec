import types
import unittest

from fastapi import HTTPException

from rollup.errors import StoreError
from rollup.models import DispatchResult
from rollup.routers import triggers as triggers_router


class _FakeDispatcher:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[dict] = []

    async def handle_change(self, document_id, before, after):
        self.calls.append({"document_id": document_id, "before": before, "after": after})
        if self.error:
            raise self.error
        return DispatchResult(
            outcome="recomputed",
            kind="create",
            document_id=document_id,
            tenant_id="t1",
            project_ids=["P"],
            stats={"P": {"features": 2, "stories": 2, "test_cases": 5}},
        )

    async def list_operations(self, limit=20):
        return [{"id": "OP-1", "status": "completed"}][:limit]

    async def get_operation(self, operation_id):
        if operation_id == "OP-404":
            return None
        return {"id": operation_id, "status": "completed"}


class TriggersRouterTests(unittest.IsolatedAsyncioTestCase):
    def _request(self, dispatcher):
        return types.SimpleNamespace(
            app=types.SimpleNamespace(state=types.SimpleNamespace(dispatcher=dispatcher))
        )

    async def test_delivery_returns_dispatch_result(self) -> None:
        dispatcher = _FakeDispatcher()
        body = triggers_router.ChangeDeliveryRequest(
            documentId="TC5", after={"tenant_id": "t1", "story_id": "S1"}
        )

        payload = await triggers_router.handle_test_case_change(self._request(dispatcher), body)

        self.assertEqual(payload["status"], "ok")
        self.assertEqual(payload["outcome"], "recomputed")
        self.assertEqual(payload["projectIds"], ["P"])
        self.assertEqual(dispatcher.calls[0]["before"], None)

    async def test_store_failure_maps_to_500(self) -> None:
        dispatcher = _FakeDispatcher(error=StoreError("write rejected"))
        body = triggers_router.ChangeDeliveryRequest(documentId="TC5", before={"story_id": "S1"})

        with self.assertRaises(HTTPException) as ctx:
            await triggers_router.handle_test_case_change(self._request(dispatcher), body)

        self.assertEqual(ctx.exception.status_code, 500)

    async def test_missing_dispatcher_maps_to_503(self) -> None:
        body = triggers_router.ChangeDeliveryRequest(documentId="TC5")

        with self.assertRaises(HTTPException) as ctx:
            await triggers_router.handle_test_case_change(self._request(None), body)

        self.assertEqual(ctx.exception.status_code, 503)

    async def test_list_and_get_operations(self) -> None:
        request = self._request(_FakeDispatcher())

        listing = await triggers_router.list_trigger_operations(request, limit=5)
        operation = await triggers_router.get_trigger_operation(request, "OP-1")

        self.assertEqual(listing["count"], 1)
        self.assertEqual(operation["id"], "OP-1")
        with self.assertRaises(HTTPException) as ctx:
            await triggers_router.get_trigger_operation(request, "OP-404")
        self.assertEqual(ctx.exception.status_code, 404)


if __name__ == "__main__":
    unittest.main()
