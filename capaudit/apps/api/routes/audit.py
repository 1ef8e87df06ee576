from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from capaudit.apps.api.deps import Principal, get_db, require_admin
from capaudit.apps.api.response import success_response
from capaudit.persistence.repos import audit as audit_repo
from capaudit.services.audit import RESOURCE_FINDING, RESOURCE_SCAN_RUN
from capaudit.services.scan.report import get_scan_run


router = APIRouter(prefix="/audit", tags=["audit"])


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: str
    actor_type: str
    actor_id: str | None
    event_type: str
    outcome: str
    resource_type: str | None
    resource_id: str | None
    request_id: str | None
    metadata_json: dict[str, Any] | None
    error_code: str | None


class AuditEventsPage(BaseModel):
    items: list[AuditEventResponse]
    next_offset: int | None


def _to_response(event) -> AuditEventResponse:
    return AuditEventResponse(
        id=event.id,
        occurred_at=event.occurred_at.isoformat(),
        actor_type=event.actor_type,
        actor_id=event.actor_id,
        event_type=event.event_type,
        outcome=event.outcome,
        resource_type=event.resource_type,
        resource_id=event.resource_id,
        request_id=event.request_id,
        metadata_json=event.metadata_json,
        error_code=event.error_code,
    )


@router.get("/events")
async def list_audit_events(
    request: Request,
    event_type: str | None = None,
    event_family: str | None = Query(default=None, alias="family"),
    outcome: str | None = None,
    actor_type: str | None = None,
    actor_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    error_code: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    events = await audit_repo.list_events(
        db,
        event_type=event_type,
        event_family=event_family,
        outcome=outcome,
        actor_type=actor_type,
        actor_id=actor_id,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        error_code=error_code,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        offset=offset,
        limit=limit + 1,
    )
    next_offset = None
    if len(events) > limit:
        events = events[:limit]
        next_offset = offset + limit
    page = AuditEventsPage(items=[_to_response(event) for event in events], next_offset=next_offset)
    return success_response(request=request, data=page.model_dump())


@router.get("/scans/{scan_id}/events")
async def get_scan_run_events(
    request: Request,
    scan_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await get_scan_run(db, scan_id)
    events = await audit_repo.list_resource_events(
        db, resource_type=RESOURCE_SCAN_RUN, resource_id=scan_id, limit=limit
    )
    return success_response(request=request, data={"items": [_to_response(event).model_dump() for event in events]})


@router.get("/findings/{finding_id}/events")
async def get_finding_events(
    request: Request,
    finding_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # No existence check: reconciliation deletes findings but not their history.
    events = await audit_repo.list_resource_events(
        db, resource_type=RESOURCE_FINDING, resource_id=finding_id, limit=limit
    )
    return success_response(request=request, data={"items": [_to_response(event).model_dump() for event in events]})


@router.get("/events/{event_id}")
async def get_audit_event(
    request: Request,
    event_id: int,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        event = await audit_repo.get_event_by_id(db, event_id=event_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit event") from exc
    if event is None:
        raise HTTPException(status_code=404, detail="Audit event not found")
    return success_response(request=request, data=_to_response(event).model_dump())
