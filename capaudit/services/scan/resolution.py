from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from capaudit.core.errors import ConfigurationError, PersistenceError
from capaudit.domain.rbac import (
    CAP_INHERIT,
    ISSUE_STATE_RESOLVED,
    ISSUE_STATES,
    LABEL_PERMISSIONS,
    PERMISSION_LABELS,
)
from capaudit.persistence.repos import findings as findings_repo
from capaudit.providers.rbac.base import RbacProvider
from capaudit.services.audit import (
    EVENT_FINDING_OVERRIDES_APPLIED,
    EVENT_FINDING_STATE_CHANGED,
    RESOURCE_FINDING,
    actor_for,
    record_event,
)
from capaudit.services.scan.analyzer import context_display_name
from capaudit.services.scan.orchestrator import ScanConfiguration, ScanOrchestrator
from capaudit.services.scan.report import get_finding


logger = logging.getLogger(__name__)


@dataclass
class ResolutionResult:
    finding_id: int
    issue_state: str
    overrides_applied: dict[int, int] = field(default_factory=dict)
    scan_id: int | None = None
    # True when the follow-up scan reconciled the finding away.
    removed: bool = False


def normalize_permission(value: Any) -> int:
    # Accepts permission labels or their numeric values; anything else is rejected.
    if isinstance(value, str):
        text = value.strip().lower()
        if text in LABEL_PERMISSIONS:
            return LABEL_PERMISSIONS[text]
        try:
            value = int(text)
        except ValueError as exc:
            raise ConfigurationError(f"unknown permission: {value}") from exc
    permission = int(value)
    if permission not in PERMISSION_LABELS:
        raise ConfigurationError(f"unknown permission: {value}")
    return permission


def normalize_state(value: str) -> str:
    state = str(value).strip().lower()
    if state not in ISSUE_STATES:
        raise ConfigurationError(f"unknown issue state: {value}")
    return state


async def get_resolution_form(
    session: AsyncSession,
    provider: RbacProvider,
    finding_id: int,
) -> dict[str, Any]:
    """Roles the user holds at the finding's context with their direct override there."""
    finding = await get_finding(session, finding_id)
    context = await provider.get_context(finding.context_id)
    role_ids = await provider.get_user_role_ids(context, finding.user_id, include_inherited=True)
    names = await provider.get_role_names(role_ids)
    roles: list[dict[str, Any]] = []
    for role_id in role_ids:
        overrides = await provider.get_direct_capability_overrides(role_id, context.id)
        current = overrides.get(finding.capability, CAP_INHERIT)
        roles.append(
            {
                "role_id": role_id,
                "name": names.get(role_id) or f"role:{role_id}",
                "current": current,
                "current_label": PERMISSION_LABELS.get(current, str(current)),
            }
        )
    return {
        "finding_id": finding.id,
        "capability": finding.capability,
        "context_id": context.id,
        "context_name": context_display_name(context),
        "issue_state": finding.issue_state,
        "roles": roles,
        "permission_options": {str(value): label for value, label in PERMISSION_LABELS.items()},
        "state_options": list(ISSUE_STATES),
    }


async def resolve_finding(
    session: AsyncSession,
    provider: RbacProvider,
    finding_id: int,
    issue_state: str,
    *,
    actor_id: int | None = None,
    overrides: Mapping[Any, Any] | None = None,
    rescan: bool = True,
    config: ScanConfiguration | None = None,
) -> ResolutionResult:
    """Apply an operator decision to a finding and optionally rescan its scope.

    ``overrides`` maps role ids to permissions (ints or labels) written at the
    finding's context; INHERIT removes the override.
    """
    state = normalize_state(issue_state)
    applied = {int(role_id): normalize_permission(value) for role_id, value in (overrides or {}).items()}
    finding = await get_finding(session, finding_id)
    user_id = int(finding.user_id)
    context_id = int(finding.context_id)
    capability = finding.capability
    previous_state = finding.issue_state

    try:
        for role_id, permission in applied.items():
            await provider.set_capability_override(
                role_id=role_id,
                context_id=context_id,
                capability=capability,
                permission=permission,
                modified_by=actor_id,
            )
        finding.issue_state = state
        finding.resolved = state == ISSUE_STATE_RESOLVED
        if finding.resolved:
            finding.resolved_by = actor_id
            finding.resolved_at = datetime.now(timezone.utc)
        else:
            finding.resolved_by = None
            finding.resolved_at = None
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError(f"failed to resolve finding {finding_id}") from exc

    logger.info(
        "finding_resolved finding_id=%s state=%s previous=%s overrides=%s actor_id=%s",
        finding_id,
        state,
        previous_state,
        len(applied),
        actor_id,
    )
    actor_type, actor = actor_for(actor_id)
    if applied:
        await record_event(
            session=session,
            actor_type=actor_type,
            actor_id=actor,
            event_type=EVENT_FINDING_OVERRIDES_APPLIED,
            outcome="success",
            resource_type=RESOURCE_FINDING,
            resource_id=str(finding_id),
            metadata={
                "capability": capability,
                "context_id": context_id,
                "overrides": {str(role_id): PERMISSION_LABELS[value] for role_id, value in applied.items()},
            },
            commit=True,
        )
    await record_event(
        session=session,
        actor_type=actor_type,
        actor_id=actor,
        event_type=EVENT_FINDING_STATE_CHANGED,
        outcome="success",
        resource_type=RESOURCE_FINDING,
        resource_id=str(finding_id),
        metadata={"from": previous_state, "to": state},
        commit=True,
    )

    result = ResolutionResult(finding_id=finding_id, issue_state=state, overrides_applied=applied)
    if rescan:
        orchestrator = ScanOrchestrator(session, provider, config)
        scan = await orchestrator.run_scan_for_users([user_id], context_id, initiated_by=actor_id)
        result.scan_id = scan.scan_id if scan is not None else None
        result.removed = await findings_repo.get_finding(session, finding_id) is None
    return result
