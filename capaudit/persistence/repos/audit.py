from __future__ import annotations

from datetime import datetime

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from capaudit.domain.models import AuditEvent


def _apply_filters(
    stmt: Select,
    *,
    event_type: str | None = None,
    event_family: str | None = None,
    outcome: str | None = None,
    actor_type: str | None = None,
    actor_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    error_code: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
) -> Select:
    if event_type:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    if event_family:
        # "scan.run" matches scan.run.started/completed/failed but not scan.runner.*.
        stmt = stmt.where(AuditEvent.event_type.like(f"{event_family.rstrip('.')}.%"))
    if outcome:
        stmt = stmt.where(AuditEvent.outcome == outcome)
    if actor_type:
        stmt = stmt.where(AuditEvent.actor_type == actor_type)
    if actor_id:
        stmt = stmt.where(AuditEvent.actor_id == actor_id)
    if resource_type:
        stmt = stmt.where(AuditEvent.resource_type == resource_type)
    if resource_id:
        stmt = stmt.where(AuditEvent.resource_id == resource_id)
    if request_id:
        stmt = stmt.where(AuditEvent.request_id == request_id)
    if error_code:
        stmt = stmt.where(AuditEvent.error_code == error_code)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= occurred_to)
    return stmt


async def list_events(
    session: AsyncSession,
    *,
    event_type: str | None = None,
    event_family: str | None = None,
    outcome: str | None = None,
    actor_type: str | None = None,
    actor_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    error_code: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    # Newest first for the operator feed; id breaks ties within one timestamp.
    stmt = _apply_filters(
        select(AuditEvent),
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
    )
    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_resource_events(
    session: AsyncSession,
    *,
    resource_type: str,
    resource_id: int | str,
    limit: int = 100,
) -> list[AuditEvent]:
    """Lifecycle of one scan run or finding, oldest event first.

    Events outlive their resource: a finding removed by reconciliation keeps
    its state-change history.
    """
    stmt = _apply_filters(select(AuditEvent), resource_type=resource_type, resource_id=str(resource_id))
    stmt = stmt.order_by(AuditEvent.occurred_at.asc(), AuditEvent.id.asc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_event_by_id(session: AsyncSession, *, event_id: int) -> AuditEvent | None:
    # Callers map None to a 404.
    result = await session.execute(select(AuditEvent).where(AuditEvent.id == event_id))
    return result.scalar_one_or_none()
