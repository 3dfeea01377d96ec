"""API router for project stats."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query, Request

from rollup.errors import StoreError
from rollup.models import PROJECTS, Project

logger = logging.getLogger("rollup.projects")

projects_router = APIRouter(prefix="/api/projects", tags=["projects"])


def _get_dispatcher(request: Request):
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if not dispatcher:
        raise HTTPException(status_code=503, detail="Dispatcher not initialized")
    return dispatcher


async def _load_project(dispatcher, project_id: str) -> Project:
    row = await dispatcher.store.get_by_id(PROJECTS, project_id)
    if not row:
        raise HTTPException(status_code=404, detail=f"Project {project_id} not found")
    return Project.model_validate(row)


@projects_router.get("/{project_id}/stats")
async def get_project_stats(request: Request, project_id: str):
    """Return the cached stats of one project."""
    dispatcher = _get_dispatcher(request)
    project = await _load_project(dispatcher, project_id)
    return {
        "projectId": project.id,
        "tenantId": project.tenant_id,
        "stats": project.stats.to_document() if project.stats else None,
        "updatedAt": project.updated_at,
    }


@projects_router.post("/{project_id}/recompute")
async def recompute_project(request: Request, project_id: str):
    """Recount one project from scratch."""
    dispatcher = _get_dispatcher(request)
    project = await _load_project(dispatcher, project_id)
    try:
        stats = await dispatcher.engine.recompute(project.id, project.tenant_id)
    except StoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    if stats is None:
        raise HTTPException(status_code=404, detail=f"Project {project_id} not found")
    return {"status": "ok", "projectId": project.id, "stats": stats.to_document()}


@projects_router.post("/recompute")
async def recompute_tenant_projects(request: Request, tenant_id: str = Query(..., min_length=1)):
    """Recount every project of a tenant (backfill after missed events)."""
    dispatcher = _get_dispatcher(request)
    try:
        rows = await dispatcher.store.list_by_tenant(PROJECTS, tenant_id)
        results = {}
        for row in rows:
            stats = await dispatcher.engine.recompute(str(row["id"]), tenant_id)
            if stats is not None:
                results[str(row["id"])] = stats.to_document()
    except StoreError as exc:
        raise HTTPException(status_code=500, detail=str(exc))
    logger.info("Recomputed %s project(s) for tenant %s", len(results), tenant_id)
    return {"status": "ok", "count": len(results), "items": results}
