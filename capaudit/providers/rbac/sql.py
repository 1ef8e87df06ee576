from __future__ import annotations

from typing import Iterable

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from capaudit.core.errors import ContextNotFoundError, RoleNotFoundError
from capaudit.domain.models import Context, Role, RoleAssignment, RoleCapability
from capaudit.domain.rbac import CAP_INHERIT, CONTEXT_SYSTEM, ContextNode


def _node(row: Context) -> ContextNode:
    return ContextNode(
        id=int(row.id),
        level=int(row.contextlevel),
        path=row.path,
        parent_id=int(row.parent_id) if row.parent_id is not None else None,
        name=row.name or "",
    )


def _subtree_clause(root: ContextNode):
    # Trailing slash keeps /1/2 from matching /1/23.
    return or_(Context.id == root.id, Context.path.like(f"{root.path.rstrip('/')}/%"))


class SqlRbacProvider:
    """RBAC graph and assignment lookups over the contexts/roles tables."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_context(self, context_id: int) -> ContextNode:
        # Unknown ids raise so scan roots and resolution targets fail fast.
        result = await self._session.execute(select(Context).where(Context.id == int(context_id)))
        row = result.scalar_one_or_none()
        if row is None:
            raise ContextNotFoundError(f"context {context_id} not found")
        return _node(row)

    async def get_system_context(self) -> ContextNode:
        result = await self._session.execute(
            select(Context).where(Context.contextlevel == CONTEXT_SYSTEM).order_by(Context.id).limit(1)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise ContextNotFoundError("system context not found")
        return _node(row)

    async def get_ancestor_contexts(self, context: ContextNode) -> list[ContextNode]:
        # A path naming a missing row means a corrupt tree; fail instead of skipping it.
        ancestor_ids = context.ancestor_ids
        if not ancestor_ids:
            return []
        result = await self._session.execute(select(Context).where(Context.id.in_(ancestor_ids)))
        by_id = {int(row.id): _node(row) for row in result.scalars().all()}
        missing = [ancestor_id for ancestor_id in ancestor_ids if ancestor_id not in by_id]
        if missing:
            raise ContextNotFoundError(f"ancestor contexts {missing} of context {context.id} not found")
        return [by_id[ancestor_id] for ancestor_id in ancestor_ids]

    async def get_descendant_contexts_at_level(self, context: ContextNode, level: int) -> list[ContextNode]:
        result = await self._session.execute(
            select(Context)
            .where(
                Context.contextlevel == level,
                Context.path.like(f"{context.path.rstrip('/')}/%"),
            )
            .order_by(Context.id)
        )
        return [_node(row) for row in result.scalars().all()]

    async def get_user_role_ids(
        self, context: ContextNode, user_id: int, *, include_inherited: bool = False
    ) -> list[int]:
        # DISTINCT collapses one role assigned at several ancestors.
        context_ids = [context.id]
        if include_inherited:
            context_ids.extend(context.ancestor_ids)
        result = await self._session.execute(
            select(RoleAssignment.role_id)
            .where(RoleAssignment.user_id == user_id, RoleAssignment.context_id.in_(context_ids))
            .distinct()
        )
        return sorted(int(role_id) for role_id in result.scalars().all())

    async def get_direct_capability_overrides(self, role_id: int, context_id: int) -> dict[str, int]:
        result = await self._session.execute(
            select(RoleCapability.capability, RoleCapability.permission).where(
                RoleCapability.role_id == role_id,
                RoleCapability.context_id == context_id,
                RoleCapability.permission != CAP_INHERIT,
            )
        )
        return {capability: int(permission) for capability, permission in result.all()}

    async def get_role_names(self, role_ids: Iterable[int]) -> dict[int, str]:
        # Shortname stands in for roles created without a display name.
        ids = list(role_ids)
        if not ids:
            return {}
        result = await self._session.execute(select(Role).where(Role.id.in_(ids)))
        return {int(role.id): role.name or role.shortname for role in result.scalars().all()}

    async def list_assignment_pairs(
        self,
        *,
        user_ids: Iterable[int] | None = None,
        root_context: ContextNode | None = None,
        levels: Iterable[int] | None = None,
    ) -> list[tuple[int, ContextNode]]:
        # One row per (user, context) however many roles the user holds there.
        stmt = (
            select(RoleAssignment.user_id, Context)
            .join(Context, Context.id == RoleAssignment.context_id)
            .distinct()
        )
        if user_ids is not None:
            stmt = stmt.where(RoleAssignment.user_id.in_(list(user_ids)))
        if root_context is not None:
            stmt = stmt.where(_subtree_clause(root_context))
        wanted_levels = list(levels or [])
        if wanted_levels:
            stmt = stmt.where(Context.contextlevel.in_(wanted_levels))
        stmt = stmt.order_by(RoleAssignment.user_id, Context.id)
        result = await self._session.execute(stmt)
        return [(int(user_id), _node(row)) for user_id, row in result.all()]

    async def set_capability_override(
        self,
        *,
        role_id: int,
        context_id: int,
        capability: str,
        permission: int,
        modified_by: int | None = None,
    ) -> None:
        # Flushes without committing; the caller owns the transaction.
        role = await self._session.get(Role, role_id)
        if role is None:
            raise RoleNotFoundError(f"role {role_id} not found")
        await self.get_context(context_id)
        if permission == CAP_INHERIT:
            await self._session.execute(
                delete(RoleCapability).where(
                    RoleCapability.role_id == role_id,
                    RoleCapability.context_id == context_id,
                    RoleCapability.capability == capability,
                )
            )
            return
        result = await self._session.execute(
            select(RoleCapability).where(
                RoleCapability.role_id == role_id,
                RoleCapability.context_id == context_id,
                RoleCapability.capability == capability,
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            self._session.add(
                RoleCapability(
                    role_id=role_id,
                    context_id=context_id,
                    capability=capability,
                    permission=permission,
                    modified_by=modified_by,
                )
            )
        else:
            row.permission = permission
            row.modified_by = modified_by
        await self._session.flush()
