from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from capaudit.domain.models import ScanRun


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_scan_run(
    session: AsyncSession,
    *,
    status: str,
    initiated_by: int | None,
    scope_context_id: int | None,
    meta: dict[str, Any] | None = None,
    started_at: datetime | None = None,
    finished_at: datetime | None = None,
) -> ScanRun:
    run = ScanRun(
        started_at=started_at or _utc_now(),
        finished_at=finished_at,
        status=status,
        initiated_by=initiated_by,
        scope_context_id=scope_context_id,
        meta=meta or {},
    )
    session.add(run)
    # Flush so the run id is available as finding provenance.
    await session.flush()
    return run


async def finish_scan_run(
    session: AsyncSession,
    run: ScanRun,
    *,
    status: str,
    meta: dict[str, Any],
) -> ScanRun:
    run.status = status
    run.finished_at = _utc_now()
    # Reassign so the JSON column change is tracked.
    run.meta = {**(run.meta or {}), **meta}
    await session.flush()
    return run


async def get_scan_run(session: AsyncSession, scan_id: int) -> ScanRun | None:
    result = await session.execute(select(ScanRun).where(ScanRun.id == scan_id))
    return result.scalar_one_or_none()


async def list_scan_runs(
    session: AsyncSession,
    *,
    status: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ScanRun]:
    # Newest first; id orders runs started within the same instant.
    stmt = select(ScanRun)
    if status:
        stmt = stmt.where(ScanRun.status == status)
    stmt = stmt.order_by(ScanRun.started_at.desc(), ScanRun.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
