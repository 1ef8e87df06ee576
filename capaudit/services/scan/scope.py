from __future__ import annotations

from dataclasses import dataclass, replace
import logging
from typing import Any, Iterable

from capaudit.domain.rbac import (
    CONTEXT_LEVEL_NAMES,
    CONTEXT_MODULE,
    KNOWN_CONTEXT_LEVELS,
    ContextNode,
    split_list,
)
from capaudit.providers.rbac.base import RbacProvider


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanPair:
    user_id: int
    context: ContextNode
    # Pairs added by expansion or as the explicit root carry no direct assignment,
    # so their roles are resolved through ancestor contexts.
    inherit_roles: bool = False

    @property
    def key(self) -> tuple[int, int]:
        return (self.user_id, self.context.id)


def _as_items(values: str | int | Iterable[Any] | None) -> list[Any]:
    # Comma or whitespace separated strings and bare ints are accepted like lists.
    if values is None:
        return []
    if isinstance(values, str):
        return split_list(values)
    if isinstance(values, int):
        return [values]
    return list(values)


def normalize_levels(values: str | int | Iterable[Any] | None) -> list[int]:
    """Context levels from operator input; unknown or malformed entries are dropped."""
    levels: list[int] = []
    for item in _as_items(values):
        level: int | None = None
        if isinstance(item, bool):
            continue
        if isinstance(item, int):
            level = item
        else:
            text = str(item).strip().lower()
            if text.lstrip("-").isdigit():
                level = int(text)
            else:
                level = CONTEXT_LEVEL_NAMES.get(text)
        if level is None or level not in KNOWN_CONTEXT_LEVELS:
            logger.debug("scope_level_dropped value=%r", item)
            continue
        if level not in levels:
            levels.append(level)
    return levels


def normalize_ids(values: str | int | Iterable[Any] | None) -> list[int]:
    """Positive integer ids, deduplicated in input order."""
    ids: list[int] = []
    for item in _as_items(values):
        if isinstance(item, bool):
            continue
        try:
            value = int(str(item).strip())
        except ValueError:
            continue
        if value > 0 and value not in ids:
            ids.append(value)
    return ids


class ScopeResolver:
    """Expand a scan request into the distinct (user, context) pairs to analyze."""

    def __init__(self, provider: RbacProvider) -> None:
        self._provider = provider

    async def select_pairs(
        self,
        root_context: ContextNode | None,
        user_ids: Iterable[Any] | None,
        levels: Iterable[Any] | None,
    ) -> tuple[list[ScanPair], dict[str, Any]]:
        # Any explicit user switches to users mode; otherwise every assignment in scope.
        users = normalize_ids(user_ids)
        wanted_levels = normalize_levels(levels)
        if users:
            return await self._select_for_users(root_context, users, wanted_levels)

        pairs = await self._provider.list_assignment_pairs(root_context=root_context, levels=wanted_levels)
        if root_context is not None:
            meta: dict[str, Any] = {"scope": "ctx", "context_id": root_context.id}
        else:
            meta = {"scope": "all"}
        return _dedupe(ScanPair(user_id, context) for user_id, context in pairs), meta

    async def _select_for_users(
        self,
        root_context: ContextNode | None,
        users: list[int],
        levels: list[int],
    ) -> tuple[list[ScanPair], dict[str, Any]]:
        # Base assignments are fetched without the level filter so parents can
        # still expand into module contexts below them.
        base = await self._provider.list_assignment_pairs(user_ids=users, root_context=root_context)
        need_modules = CONTEXT_MODULE in levels
        module_cache: dict[int, list[ContextNode]] = {}
        candidates: list[ScanPair] = []

        async def modules_under(context: ContextNode) -> list[ContextNode]:
            if context.id not in module_cache:
                module_cache[context.id] = await self._provider.get_descendant_contexts_at_level(
                    context, CONTEXT_MODULE
                )
            return module_cache[context.id]

        for user_id, context in base:
            if not levels or context.level in levels:
                candidates.append(ScanPair(user_id, context))
            if need_modules:
                for module in await modules_under(context):
                    candidates.append(ScanPair(user_id, module, inherit_roles=True))

        if root_context is not None:
            # The root is always examined, even when roles are only held in its parents.
            for user_id in users:
                candidates.append(ScanPair(user_id, root_context, inherit_roles=True))
                if need_modules:
                    for module in await modules_under(root_context):
                        candidates.append(ScanPair(user_id, module, inherit_roles=True))

        meta = {"scope": "users+ctx" if root_context is not None else "users", "users": len(users)}
        return _dedupe(candidates), meta


def _dedupe(pairs: Iterable[ScanPair]) -> list[ScanPair]:
    # First occurrence keeps its position; a pair reached both directly and by
    # expansion keeps inherited role resolution so ancestor roles are not lost.
    index: dict[tuple[int, int], int] = {}
    unique: list[ScanPair] = []
    for pair in pairs:
        position = index.get(pair.key)
        if position is None:
            index[pair.key] = len(unique)
            unique.append(pair)
        elif pair.inherit_roles and not unique[position].inherit_roles:
            unique[position] = replace(unique[position], inherit_roles=True)
    return unique
