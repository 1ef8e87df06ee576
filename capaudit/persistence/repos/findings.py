from __future__ import annotations

from typing import Iterable

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from capaudit.domain.models import Finding, FindingCapability
from capaudit.domain.rbac import FINDING_TYPE_OVERLAP, ISSUE_STATE_RESOLVED


async def get_finding(session: AsyncSession, finding_id: int) -> Finding | None:
    result = await session.execute(select(Finding).where(Finding.id == finding_id))
    return result.scalar_one_or_none()


async def get_by_fingerprint(session: AsyncSession, fingerprint: str) -> Finding | None:
    # Fingerprint is unique, so at most one row matches.
    result = await session.execute(select(Finding).where(Finding.fingerprint == fingerprint))
    return result.scalar_one_or_none()


async def list_findings(
    session: AsyncSession,
    *,
    user_id: int | None = None,
    context_id: int | None = None,
    finding_type: str | None = None,
    issue_state: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Finding]:
    stmt = select(Finding)
    if user_id is not None:
        stmt = stmt.where(Finding.user_id == user_id)
    if context_id is not None:
        stmt = stmt.where(Finding.context_id == context_id)
    if finding_type:
        stmt = stmt.where(Finding.type == finding_type)
    if issue_state:
        stmt = stmt.where(Finding.issue_state == issue_state)
    # Highest severity first, then most recently observed.
    stmt = stmt.order_by(Finding.severity.desc(), Finding.last_seen_at.desc(), Finding.id.desc())
    result = await session.execute(stmt.offset(offset).limit(limit))
    return list(result.scalars().all())


async def list_scope_findings(
    session: AsyncSession,
    *,
    user_id: int,
    context_id: int,
    states: Iterable[str],
) -> list[Finding]:
    # Reconciliation candidates for one (user, context) pair.
    result = await session.execute(
        select(Finding).where(
            Finding.user_id == user_id,
            Finding.context_id == context_id,
            Finding.issue_state.in_(list(states)),
        )
    )
    return list(result.scalars().all())


async def list_details(session: AsyncSession, finding_id: int) -> list[FindingCapability]:
    # allow, prevent, prohibit in label order, then by role id.
    result = await session.execute(
        select(FindingCapability)
        .where(FindingCapability.finding_id == finding_id)
        .order_by(FindingCapability.label, FindingCapability.role_id)
    )
    return list(result.scalars().all())


async def replace_details(
    session: AsyncSession,
    *,
    finding_id: int,
    capability: str,
    rows: Iterable[tuple[str, int, int]],
) -> None:
    # Detail rows are a snapshot of the latest observation, never merged.
    await session.execute(delete(FindingCapability).where(FindingCapability.finding_id == finding_id))
    for label, role_id, permission in rows:
        session.add(
            FindingCapability(
                finding_id=finding_id,
                role_id=role_id,
                permission=permission,
                capability=capability,
                label=label,
            )
        )


async def delete_findings(session: AsyncSession, finding_ids: list[int]) -> int:
    if not finding_ids:
        return 0
    # Detail rows go first; no ON DELETE CASCADE is assumed.
    await session.execute(delete(FindingCapability).where(FindingCapability.finding_id.in_(finding_ids)))
    result = await session.execute(delete(Finding).where(Finding.id.in_(finding_ids)))
    return int(result.rowcount or 0)


async def count_findings(
    session: AsyncSession,
    *,
    exclude_type: str | None = None,
    issue_state: str | None = None,
    unresolved: bool | None = None,
) -> int:
    # unresolved filters on the resolved flag, not on issue_state.
    stmt = select(func.count()).select_from(Finding)
    if exclude_type:
        stmt = stmt.where(Finding.type != exclude_type)
    if issue_state:
        stmt = stmt.where(Finding.issue_state == issue_state)
    if unresolved is not None:
        stmt = stmt.where(Finding.resolved == (not unresolved))
    result = await session.execute(stmt)
    return int(result.scalar() or 0)


async def finding_stats(session: AsyncSession) -> dict[str, object]:
    """Dashboard counters; unresolved counts exclude overlaps since they are advisory."""
    total = await count_findings(session)
    unresolved = await count_findings(session, exclude_type=FINDING_TYPE_OVERLAP, unresolved=True)
    resolved = await count_findings(session, issue_state=ISSUE_STATE_RESOLVED)
    users_result = await session.execute(select(func.count(distinct(Finding.user_id))))
    severity_rows = await session.execute(
        select(Finding.severity, func.count()).group_by(Finding.severity).order_by(Finding.severity)
    )
    type_rows = await session.execute(select(Finding.type, func.count()).group_by(Finding.type))
    state_rows = await session.execute(select(Finding.issue_state, func.count()).group_by(Finding.issue_state))
    return {
        "total": total,
        "unresolved": unresolved,
        "resolved": resolved,
        "affected_users": int(users_result.scalar() or 0),
        "by_severity": {str(severity): int(count) for severity, count in severity_rows.all()},
        "by_type": {str(kind): int(count) for kind, count in type_rows.all()},
        "by_state": {str(state): int(count) for state, count in state_rows.all()},
    }
