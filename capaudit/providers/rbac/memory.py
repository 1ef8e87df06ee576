from __future__ import annotations

from typing import Iterable

from capaudit.core.errors import ContextNotFoundError, RoleNotFoundError
from capaudit.domain.rbac import CAP_INHERIT, CONTEXT_SYSTEM, ContextNode


class InMemoryRbacProvider:
    """Dictionary backed RBAC graph for tests, fixtures and dry runs."""

    def __init__(self) -> None:
        self._contexts: dict[int, ContextNode] = {}
        self._roles: dict[int, str] = {}
        self._assignments: set[tuple[int, int, int]] = set()
        self._overrides: dict[tuple[int, int], dict[str, int]] = {}

    def add_context(self, context_id: int, level: int, parent_id: int | None = None, name: str = "") -> ContextNode:
        # Parents must exist first; paths are built from the parent chain.
        if parent_id is None:
            path = f"/{context_id}"
        else:
            parent = self._contexts.get(parent_id)
            if parent is None:
                raise ContextNotFoundError(f"context {parent_id} not found")
            path = f"{parent.path}/{context_id}"
        node = ContextNode(id=context_id, level=level, path=path, parent_id=parent_id, name=name)
        self._contexts[context_id] = node
        return node

    def add_role(self, role_id: int, name: str) -> None:
        self._roles[role_id] = name

    def assign_role(self, user_id: int, role_id: int, context_id: int) -> None:
        if role_id not in self._roles:
            raise RoleNotFoundError(f"role {role_id} not found")
        if context_id not in self._contexts:
            raise ContextNotFoundError(f"context {context_id} not found")
        self._assignments.add((user_id, role_id, context_id))

    def unassign_role(self, user_id: int, role_id: int, context_id: int) -> None:
        self._assignments.discard((user_id, role_id, context_id))

    def override(self, role_id: int, context_id: int, capability: str, permission: int) -> None:
        # Mirrors the host store: an INHERIT override is the absence of a row.
        caps = self._overrides.setdefault((role_id, context_id), {})
        if permission == CAP_INHERIT:
            caps.pop(capability, None)
        else:
            caps[capability] = permission

    async def get_context(self, context_id: int) -> ContextNode:
        node = self._contexts.get(int(context_id))
        if node is None:
            raise ContextNotFoundError(f"context {context_id} not found")
        return node

    async def get_system_context(self) -> ContextNode:
        # Lowest id wins if a fixture registers more than one system context.
        system = [node for node in self._contexts.values() if node.level == CONTEXT_SYSTEM]
        if not system:
            raise ContextNotFoundError("system context not found")
        return min(system, key=lambda node: node.id)

    async def get_ancestor_contexts(self, context: ContextNode) -> list[ContextNode]:
        return [await self.get_context(ancestor_id) for ancestor_id in context.ancestor_ids]

    async def get_descendant_contexts_at_level(self, context: ContextNode, level: int) -> list[ContextNode]:
        return sorted(
            (
                node
                for node in self._contexts.values()
                if node.level == level and node.id != context.id and context.contains(node)
            ),
            key=lambda node: node.id,
        )

    async def get_user_role_ids(
        self, context: ContextNode, user_id: int, *, include_inherited: bool = False
    ) -> list[int]:
        # Ancestor ids are read off the path; no tree walk.
        context_ids = {context.id}
        if include_inherited:
            context_ids.update(context.ancestor_ids)
        return sorted(
            {role_id for uid, role_id, ctx_id in self._assignments if uid == user_id and ctx_id in context_ids}
        )

    async def get_direct_capability_overrides(self, role_id: int, context_id: int) -> dict[str, int]:
        caps = self._overrides.get((role_id, context_id), {})
        return {capability: permission for capability, permission in caps.items() if permission != CAP_INHERIT}

    async def get_role_names(self, role_ids: Iterable[int]) -> dict[int, str]:
        return {role_id: self._roles[role_id] for role_id in role_ids if role_id in self._roles}

    async def list_assignment_pairs(
        self,
        *,
        user_ids: Iterable[int] | None = None,
        root_context: ContextNode | None = None,
        levels: Iterable[int] | None = None,
    ) -> list[tuple[int, ContextNode]]:
        # Sorted by (user, context) id to match the SQL provider's ordering.
        wanted_users = set(user_ids) if user_ids is not None else None
        wanted_levels = set(levels or [])
        pairs: set[tuple[int, int]] = set()
        for user_id, _role_id, context_id in self._assignments:
            if wanted_users is not None and user_id not in wanted_users:
                continue
            node = self._contexts[context_id]
            if root_context is not None and not root_context.contains(node):
                continue
            if wanted_levels and node.level not in wanted_levels:
                continue
            pairs.add((user_id, context_id))
        return [(user_id, self._contexts[context_id]) for user_id, context_id in sorted(pairs)]

    async def set_capability_override(
        self,
        *,
        role_id: int,
        context_id: int,
        capability: str,
        permission: int,
        modified_by: int | None = None,
    ) -> None:
        # Validates like the SQL provider so resolution tests see the same errors.
        if role_id not in self._roles:
            raise RoleNotFoundError(f"role {role_id} not found")
        await self.get_context(context_id)
        self.override(role_id, context_id, capability, permission)
