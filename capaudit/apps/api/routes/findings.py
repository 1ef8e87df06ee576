from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from capaudit.apps.api.deps import Principal, get_db, get_rbac_provider, require_admin
from capaudit.apps.api.response import success_response
from capaudit.providers.rbac.base import RbacProvider
from capaudit.services.scan.report import (
    finding_stats,
    finding_to_dict,
    get_finding_detail,
    list_findings,
)
from capaudit.services.scan.resolution import get_resolution_form, resolve_finding


router = APIRouter(prefix="/findings", tags=["findings"])


class FindingsPage(BaseModel):
    items: list[dict[str, Any]]
    next_offset: int | None


class ResolveRequest(BaseModel):
    issue_state: str
    # role id -> permission value or label (inherit, allow, prevent, prohibit)
    overrides: dict[int, int | str] = Field(default_factory=dict)
    rescan: bool = True


@router.get("")
async def get_findings(
    request: Request,
    user_id: int | None = None,
    context_id: int | None = None,
    type: str | None = None,
    state: str | None = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    findings = await list_findings(
        db,
        user_id=user_id,
        context_id=context_id,
        finding_type=type,
        issue_state=state,
        offset=offset,
        limit=limit + 1,
    )
    next_offset = None
    if len(findings) > limit:
        findings = findings[:limit]
        next_offset = offset + limit
    page = FindingsPage(items=[finding_to_dict(item) for item in findings], next_offset=next_offset)
    return success_response(request=request, data=page.model_dump())


@router.get("/stats")
async def get_finding_stats(
    request: Request,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return success_response(request=request, data=await finding_stats(db))


@router.get("/{finding_id}")
async def get_finding(
    request: Request,
    finding_id: int,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return success_response(request=request, data=await get_finding_detail(db, finding_id))


@router.get("/{finding_id}/resolution")
async def get_finding_resolution_form(
    request: Request,
    finding_id: int,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    provider: RbacProvider = Depends(get_rbac_provider),
) -> dict:
    return success_response(request=request, data=await get_resolution_form(db, provider, finding_id))


@router.post("/{finding_id}/resolve")
async def post_finding_resolution(
    request: Request,
    finding_id: int,
    payload: ResolveRequest,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    provider: RbacProvider = Depends(get_rbac_provider),
) -> dict:
    result = await resolve_finding(
        db,
        provider,
        finding_id,
        payload.issue_state,
        actor_id=principal.user_id,
        overrides=payload.overrides,
        rescan=payload.rescan,
    )
    data = {
        "finding_id": result.finding_id,
        "issue_state": result.issue_state,
        "overrides_applied": {str(role_id): value for role_id, value in result.overrides_applied.items()},
        "scan_id": result.scan_id,
        "removed": result.removed,
    }
    return success_response(request=request, data=data)
