from __future__ import annotations

from typing import Iterable, Protocol

from capaudit.domain.rbac import ContextNode


class RbacGraphProvider(Protocol):
    # Read-only view of the context tree; ids and paths come from the host RBAC store.
    async def get_context(self, context_id: int) -> ContextNode:
        """Return the context or raise ContextNotFoundError."""
        ...

    async def get_system_context(self) -> ContextNode:
        # Root of every path; the fallback when a scan has no explicit root.
        ...

    async def get_ancestor_contexts(self, context: ContextNode) -> list[ContextNode]:
        """Ancestors of ``context``, nearest first, excluding the context itself."""
        ...

    async def get_descendant_contexts_at_level(self, context: ContextNode, level: int) -> list[ContextNode]:
        # Whole-segment path match, so context 15 never claims context 150.
        ...


class RoleAssignmentProvider(Protocol):
    # Role assignments and overrides; the only surface that may write back.
    async def get_user_role_ids(
        self, context: ContextNode, user_id: int, *, include_inherited: bool = False
    ) -> list[int]:
        # Direct assignments only unless include_inherited adds ancestor contexts.
        ...

    async def get_direct_capability_overrides(self, role_id: int, context_id: int) -> dict[str, int]:
        """Non-INHERIT overrides defined for the role at exactly this context."""
        ...

    async def get_role_names(self, role_ids: Iterable[int]) -> dict[int, str]:
        # Missing roles are left out rather than raising.
        ...

    async def list_assignment_pairs(
        self,
        *,
        user_ids: Iterable[int] | None = None,
        root_context: ContextNode | None = None,
        levels: Iterable[int] | None = None,
    ) -> list[tuple[int, ContextNode]]:
        """Distinct (user_id, context) pairs holding a role assignment.

        ``root_context`` restricts to its subtree (inclusive); empty ``levels``
        means any level.
        """
        ...

    async def set_capability_override(
        self,
        *,
        role_id: int,
        context_id: int,
        capability: str,
        permission: int,
        modified_by: int | None = None,
    ) -> None:
        """Write a direct override; INHERIT removes it."""
        ...


class RbacProvider(RbacGraphProvider, RoleAssignmentProvider, Protocol):
    # Full surface the scan engine depends on.
    pass
