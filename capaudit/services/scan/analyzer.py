from __future__ import annotations

import logging

from capaudit.domain.rbac import (
    ContextAnalysis,
    ContextNode,
    ContextStats,
    RoleCapabilitySets,
    UserIssueReport,
)
from capaudit.providers.rbac.base import RbacProvider


logger = logging.getLogger(__name__)


def context_display_name(context: ContextNode) -> str:
    # Unnamed contexts still need a stable label in reports.
    return context.name or f"context:{context.id}"


class PermissionMatrixAnalyzer:
    """Classify a user's direct role overrides per context into overlaps and conflicts.

    Only overrides defined at exactly the analyzed context are considered.
    Values inherited from ancestor contexts are a separate concern and never
    produce a conflict at a descendant.
    """

    def __init__(self, provider: RbacProvider, *, inherit_role_assignments: bool = False) -> None:
        self._provider = provider
        self._inherit_role_assignments = inherit_role_assignments

    async def analyze(
        self,
        user_id: int,
        context: ContextNode | int,
        *,
        include_parents: bool = False,
        include_inherited: bool | None = None,
    ) -> dict[int, ContextAnalysis]:
        # Missing contexts raise; a dangling reference is never skipped.
        node = context if isinstance(context, ContextNode) else await self._provider.get_context(context)
        targets = [node]
        if include_parents:
            targets.extend(await self._provider.get_ancestor_contexts(node))
        results: dict[int, ContextAnalysis] = {}
        for target in targets:
            results[target.id] = await self.analyze_context(user_id, target, include_inherited=include_inherited)
        return results

    async def report(
        self,
        user_id: int,
        context: ContextNode | int,
        *,
        include_parents: bool = False,
    ) -> UserIssueReport:
        # Read-only view for operators; nothing here touches stored findings.
        contexts = await self.analyze(user_id, context, include_parents=include_parents)
        return UserIssueReport(user_id=user_id, contexts=contexts)

    async def analyze_context(
        self, user_id: int, context: ContextNode, *, include_inherited: bool | None = None
    ) -> ContextAnalysis:
        # None falls back to the analyzer-wide setting; overrides are still read
        # only at this exact context either way.
        inherited = self._inherit_role_assignments if include_inherited is None else include_inherited
        role_ids = await self._provider.get_user_role_ids(context, user_id, include_inherited=inherited)
        role_ids = sorted(set(role_ids))
        if not role_ids:
            return ContextAnalysis(context_id=context.id, context_name=context_display_name(context))

        names = await self._provider.get_role_names(role_ids)
        roles = {role_id: names.get(role_id) or f"role:{role_id}" for role_id in role_ids}

        # capability -> {role_id: permission}
        permissions: dict[str, dict[int, int]] = {}
        for role_id in role_ids:
            overrides = await self._provider.get_direct_capability_overrides(role_id, context.id)
            for capability, permission in overrides.items():
                permissions.setdefault(capability, {})[role_id] = permission

        matrix = {
            capability: RoleCapabilitySets.from_role_permissions(by_role)
            for capability, by_role in sorted(permissions.items())
        }
        overlaps = {capability: sets.allow for capability, sets in matrix.items() if sets.is_overlap}
        conflicts = {capability: sets for capability, sets in matrix.items() if sets.is_conflict}
        stats = ContextStats(
            roles=len(role_ids),
            caps_checked=len(matrix),
            overlap_caps=len(overlaps),
            conflict_caps=len(conflicts),
        )
        logger.debug(
            "context_analyzed user_id=%s context_id=%s roles=%s caps=%s overlaps=%s conflicts=%s",
            user_id,
            context.id,
            stats.roles,
            stats.caps_checked,
            stats.overlap_caps,
            stats.conflict_caps,
        )
        return ContextAnalysis(
            context_id=context.id,
            context_name=context_display_name(context),
            roles=roles,
            matrix=matrix,
            overlaps=overlaps,
            conflicts=conflicts,
            stats=stats,
        )
