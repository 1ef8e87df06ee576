from __future__ import annotations

import pytest

from capaudit.domain.rbac import CONTEXT_COURSE, CONTEXT_MODULE, CONTEXT_SYSTEM
from capaudit.services.scan.scope import ScopeResolver, normalize_ids, normalize_levels
from capaudit.tests.utils.rbac import (
    CATEGORY_ID,
    COURSE_ID,
    MODULE_IDS,
    OTHER_USER,
    SIBLING_COURSE_ID,
    SIBLING_MODULE_ID,
    STUDENT,
    TEACHER,
    USER,
    build_memory_provider,
)


def test_normalize_levels_accepts_numbers_and_names() -> None:
    assert normalize_levels("10, course module") == [CONTEXT_SYSTEM, CONTEXT_COURSE, CONTEXT_MODULE]
    assert normalize_levels(["70", 50, "70"]) == [CONTEXT_MODULE, CONTEXT_COURSE]


def test_normalize_levels_drops_unknown_entries() -> None:
    assert normalize_levels("10,abc,99,-5") == [CONTEXT_SYSTEM]
    assert normalize_levels([True, None, 50]) == [CONTEXT_COURSE]
    assert normalize_levels(None) == []
    assert normalize_levels("") == []


def test_normalize_ids_keeps_positive_unique_ids() -> None:
    assert normalize_ids("42, 43 42 x -1 0") == [42, 43]
    assert normalize_ids([5, "6", 5]) == [5, 6]
    assert normalize_ids(7) == [7]
    assert normalize_ids(None) == []


@pytest.mark.asyncio
async def test_user_scan_expands_course_assignment_into_modules() -> None:
    provider = build_memory_provider()
    provider.assign_role(USER, TEACHER, COURSE_ID)

    pairs, meta = await ScopeResolver(provider).select_pairs(None, [USER], [CONTEXT_COURSE, CONTEXT_MODULE])
    assert [pair.key for pair in pairs] == [(USER, COURSE_ID), (USER, MODULE_IDS[0]), (USER, MODULE_IDS[1])]
    assert meta == {"scope": "users", "users": 1}


@pytest.mark.asyncio
async def test_user_scan_under_root_includes_root_and_its_modules() -> None:
    provider = build_memory_provider()
    # Role held only at the category, above the requested root.
    provider.assign_role(USER, STUDENT, CATEGORY_ID)
    course = await provider.get_context(COURSE_ID)

    pairs, meta = await ScopeResolver(provider).select_pairs(course, [USER], [CONTEXT_COURSE, CONTEXT_MODULE])
    keys = [pair.key for pair in pairs]
    assert keys == [(USER, COURSE_ID), (USER, MODULE_IDS[0]), (USER, MODULE_IDS[1])]
    assert (USER, SIBLING_MODULE_ID) not in keys
    assert meta == {"scope": "users+ctx", "users": 1}


@pytest.mark.asyncio
async def test_user_scan_without_module_level_does_not_expand() -> None:
    provider = build_memory_provider()
    provider.assign_role(USER, TEACHER, COURSE_ID)

    pairs, _meta = await ScopeResolver(provider).select_pairs(None, "42", "course")
    assert [pair.key for pair in pairs] == [(USER, COURSE_ID)]


@pytest.mark.asyncio
async def test_context_scan_matches_whole_path_segments() -> None:
    provider = build_memory_provider()
    provider.assign_role(USER, TEACHER, COURSE_ID)
    provider.assign_role(OTHER_USER, TEACHER, SIBLING_COURSE_ID)
    course = await provider.get_context(COURSE_ID)

    pairs, meta = await ScopeResolver(provider).select_pairs(course, None, None)
    assert [pair.key for pair in pairs] == [(USER, COURSE_ID)]
    assert meta == {"scope": "ctx", "context_id": COURSE_ID}


@pytest.mark.asyncio
async def test_all_scan_filters_by_level_and_dedupes() -> None:
    provider = build_memory_provider()
    provider.assign_role(USER, TEACHER, MODULE_IDS[0])
    provider.assign_role(USER, STUDENT, MODULE_IDS[0])
    provider.assign_role(OTHER_USER, TEACHER, COURSE_ID)

    pairs, meta = await ScopeResolver(provider).select_pairs(None, [], [CONTEXT_MODULE])
    assert [pair.key for pair in pairs] == [(USER, MODULE_IDS[0])]
    assert meta == {"scope": "all"}


@pytest.mark.asyncio
async def test_expanded_and_root_pairs_resolve_inherited_roles() -> None:
    provider = build_memory_provider()
    provider.assign_role(USER, TEACHER, COURSE_ID)

    pairs, _meta = await ScopeResolver(provider).select_pairs(None, [USER], [CONTEXT_COURSE, CONTEXT_MODULE])
    assert [(pair.key, pair.inherit_roles) for pair in pairs] == [
        ((USER, COURSE_ID), False),
        ((USER, MODULE_IDS[0]), True),
        ((USER, MODULE_IDS[1]), True),
    ]

    course = await provider.get_context(COURSE_ID)
    pairs, _meta = await ScopeResolver(provider).select_pairs(course, [USER], [CONTEXT_COURSE])
    # Direct assignment at the root is merged with the root pair; inheritance wins.
    assert [(pair.key, pair.inherit_roles) for pair in pairs] == [((USER, COURSE_ID), True)]


@pytest.mark.asyncio
async def test_direct_module_assignment_keeps_position_but_gains_inheritance() -> None:
    provider = build_memory_provider()
    provider.assign_role(USER, STUDENT, MODULE_IDS[1])
    provider.assign_role(USER, TEACHER, COURSE_ID)

    pairs, _meta = await ScopeResolver(provider).select_pairs(None, [USER], [CONTEXT_COURSE, CONTEXT_MODULE])
    flags = {pair.key: pair.inherit_roles for pair in pairs}
    assert flags == {(USER, COURSE_ID): False, (USER, MODULE_IDS[0]): True, (USER, MODULE_IDS[1]): True}
