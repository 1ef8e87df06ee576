from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from capaudit.core.errors import FindingNotFoundError, ScanRunNotFoundError
from capaudit.domain.models import Finding, FindingCapability, ScanRun
from capaudit.domain.rbac import ContextNode, UserIssueReport
from capaudit.persistence.repos import findings as findings_repo
from capaudit.persistence.repos import scans as scans_repo
from capaudit.providers.rbac.base import RbacProvider
from capaudit.services.scan.analyzer import PermissionMatrixAnalyzer
from capaudit.services.scan.orchestrator import ScanConfiguration


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


def finding_to_dict(finding: Finding, details: list[FindingCapability] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": finding.id,
        "fingerprint": finding.fingerprint,
        "scan_id": finding.scan_id,
        "type": finding.type,
        "severity": finding.severity,
        "user_id": finding.user_id,
        "context_id": finding.context_id,
        "capability": finding.capability,
        "issue_state": finding.issue_state,
        "resolved": bool(finding.resolved),
        "resolved_by": finding.resolved_by,
        "resolved_at": _iso(finding.resolved_at),
        "first_seen_at": _iso(finding.first_seen_at),
        "last_seen_at": _iso(finding.last_seen_at),
        "details": finding.details or {},
    }
    if details is not None:
        payload["roles"] = [
            {"role_id": row.role_id, "label": row.label, "permission": row.permission} for row in details
        ]
    return payload


def scan_run_to_dict(run: ScanRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "status": run.status,
        "started_at": _iso(run.started_at),
        "finished_at": _iso(run.finished_at),
        "initiated_by": run.initiated_by,
        "scope_context_id": run.scope_context_id,
        "meta": run.meta or {},
    }


async def get_issue_report(
    provider: RbacProvider,
    user_id: int,
    context: ContextNode | int | None = None,
    include_parents: bool | None = None,
    *,
    config: ScanConfiguration | None = None,
) -> UserIssueReport:
    """Read-only overlap/conflict breakdown for one user, defaulting to the system context."""
    config = config or ScanConfiguration.from_settings()
    if context is None:
        node = await provider.get_system_context()
    elif isinstance(context, ContextNode):
        node = context
    else:
        node = await provider.get_context(int(context))
    analyzer = PermissionMatrixAnalyzer(provider, inherit_role_assignments=config.inherit_role_assignments)
    parents = config.include_parents if include_parents is None else include_parents
    return await analyzer.report(user_id, node, include_parents=parents)


async def get_finding(session: AsyncSession, finding_id: int) -> Finding:
    finding = await findings_repo.get_finding(session, finding_id)
    if finding is None:
        raise FindingNotFoundError(f"finding {finding_id} not found")
    return finding


async def get_finding_detail(session: AsyncSession, finding_id: int) -> dict[str, Any]:
    finding = await get_finding(session, finding_id)
    details = await findings_repo.list_details(session, finding.id)
    return finding_to_dict(finding, details)


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
    # Clamp paging so operator input cannot request unbounded pages.
    limit = max(1, min(int(limit), 500))
    offset = max(0, int(offset))
    return await findings_repo.list_findings(
        session,
        user_id=user_id,
        context_id=context_id,
        finding_type=finding_type,
        issue_state=issue_state,
        offset=offset,
        limit=limit,
    )


async def get_scan_run(session: AsyncSession, scan_id: int) -> ScanRun:
    run = await scans_repo.get_scan_run(session, scan_id)
    if run is None:
        raise ScanRunNotFoundError(f"scan run {scan_id} not found")
    return run


async def list_scan_runs(
    session: AsyncSession,
    *,
    status: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[ScanRun]:
    # Same clamp as list_findings.
    limit = max(1, min(int(limit), 500))
    offset = max(0, int(offset))
    return await scans_repo.list_scan_runs(session, status=status, offset=offset, limit=limit)


async def finding_stats(session: AsyncSession) -> dict[str, Any]:
    return await findings_repo.finding_stats(session)
