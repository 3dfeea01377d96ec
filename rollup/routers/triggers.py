"""Change trigger API: webhook delivery of test case writes + dispatch history."""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from rollup.errors import StoreError
from rollup.services.dispatcher import result_payload

logger = logging.getLogger("rollup.triggers")

triggers_router = APIRouter(prefix="/api/triggers", tags=["triggers"])


class ChangeDeliveryRequest(BaseModel):
    documentId: str = Field(..., min_length=1)
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None


def _get_dispatcher(request: Request):
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if not dispatcher:
        raise HTTPException(status_code=503, detail="Dispatcher not initialized")
    return dispatcher


@triggers_router.post("/test-cases")
async def handle_test_case_change(request: Request, body: ChangeDeliveryRequest):
    """Dispatch one test case write delivered by an external change stream.

    Store failures answer 500 so the sender redelivers.
    """
    dispatcher = _get_dispatcher(request)
    try:
        result = await dispatcher.handle_change(body.documentId, body.before, body.after)
    except StoreError as exc:
        logger.warning("Trigger delivery for test case %s failed: %s", body.documentId, exc)
        raise HTTPException(status_code=500, detail=str(exc))
    return {"status": "ok", **result_payload(result)}


@triggers_router.get("/operations")
async def list_trigger_operations(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent dispatcher invocations."""
    dispatcher = _get_dispatcher(request)
    operations = await dispatcher.list_operations(limit=limit)
    return {"status": "ok", "count": len(operations), "items": operations}


@triggers_router.get("/operations/{operation_id}")
async def get_trigger_operation(request: Request, operation_id: str):
    """Get one dispatcher invocation by ID."""
    dispatcher = _get_dispatcher(request)
    operation = await dispatcher.get_operation(operation_id)
    if not operation:
        raise HTTPException(status_code=404, detail=f"Operation {operation_id} not found")
    return operation
