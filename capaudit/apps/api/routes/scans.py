from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from capaudit.apps.api.deps import Principal, get_db, get_rbac_provider, require_admin
from capaudit.apps.api.response import success_response
from capaudit.providers.rbac.base import RbacProvider
from capaudit.services.scan.orchestrator import ScanConfiguration, ScanOrchestrator
from capaudit.services.scan.report import get_scan_run, list_scan_runs, scan_run_to_dict


router = APIRouter(prefix="/scans", tags=["scans"])


class ScanRequest(BaseModel):
    mode: Literal["full", "users", "overlap"] = "full"
    root_context_id: int | None = None
    user_ids: list[int] = Field(default_factory=list)
    include_parents: bool | None = None
    # Ints or level names; unknown entries are dropped.
    levels: list[int | str] | None = None


class ScanRunsPage(BaseModel):
    items: list[dict[str, Any]]
    next_offset: int | None


@router.post("")
async def trigger_scan(
    request: Request,
    payload: ScanRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    provider: RbacProvider = Depends(get_rbac_provider),
) -> dict:
    config = ScanConfiguration.from_settings(include_parents=payload.include_parents, levels=payload.levels)
    orchestrator = ScanOrchestrator(db, provider, config)
    if payload.mode == "users":
        result = await orchestrator.run_scan_for_users(
            payload.user_ids, payload.root_context_id, initiated_by=principal.user_id
        )
        if result is None:
            return success_response(request=request, data={"scan": None, "skipped": True})
    elif payload.mode == "overlap":
        result = await orchestrator.run_overlap_only_scan(
            payload.root_context_id, payload.user_ids, initiated_by=principal.user_id
        )
    else:
        result = await orchestrator.run_full_scan(payload.root_context_id, initiated_by=principal.user_id)
    run = await get_scan_run(db, result.scan_id)
    return success_response(request=request, data={"scan": scan_run_to_dict(run), "skipped": False})


@router.get("")
async def get_scan_runs(
    request: Request,
    status: str | None = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    runs = await list_scan_runs(db, status=status, offset=offset, limit=limit + 1)
    next_offset = None
    if len(runs) > limit:
        runs = runs[:limit]
        next_offset = offset + limit
    page = ScanRunsPage(items=[scan_run_to_dict(run) for run in runs], next_offset=next_offset)
    return success_response(request=request, data=page.model_dump())


@router.get("/{scan_id}")
async def get_scan(
    request: Request,
    scan_id: int,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return success_response(request=request, data=scan_run_to_dict(await get_scan_run(db, scan_id)))
