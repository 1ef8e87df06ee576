from __future__ import annotations

import pytest

from capaudit.core.errors import ContextNotFoundError
from capaudit.domain.rbac import (
    CAP_ALLOW,
    CAP_INHERIT,
    CAP_PREVENT,
    CAP_PROHIBIT,
    FINDING_TYPE_CONFLICT,
    FINDING_TYPE_OVERLAP,
)
from capaudit.services.scan.analyzer import PermissionMatrixAnalyzer
from capaudit.tests.utils.rbac import (
    CATEGORY_ID,
    COURSE_ID,
    MODULE_IDS,
    NON_EDITING_TEACHER,
    STUDENT,
    SYSTEM_ID,
    TEACHER,
    USER,
    build_memory_provider,
)


CAP = "mod/assign:grade"


@pytest.mark.asyncio
async def test_two_allowing_roles_produce_one_overlap() -> None:
    provider = build_memory_provider()
    provider.assign_role(USER, TEACHER, COURSE_ID)
    provider.assign_role(USER, NON_EDITING_TEACHER, COURSE_ID)
    provider.override(TEACHER, COURSE_ID, CAP, CAP_ALLOW)
    provider.override(NON_EDITING_TEACHER, COURSE_ID, CAP, CAP_ALLOW)

    result = await PermissionMatrixAnalyzer(provider).analyze(USER, COURSE_ID)
    analysis = result[COURSE_ID]
    assert analysis.overlaps == {CAP: (TEACHER, NON_EDITING_TEACHER)}
    assert CAP not in analysis.conflicts
    assert analysis.stats.as_dict() == {"roles": 2, "caps_checked": 1, "overlap_caps": 1, "conflict_caps": 0}


@pytest.mark.asyncio
async def test_allow_and_prevent_produce_one_conflict() -> None:
    provider = build_memory_provider()
    provider.assign_role(USER, TEACHER, COURSE_ID)
    provider.assign_role(USER, STUDENT, COURSE_ID)
    provider.override(TEACHER, COURSE_ID, CAP, CAP_ALLOW)
    provider.override(STUDENT, COURSE_ID, CAP, CAP_PREVENT)

    analysis = (await PermissionMatrixAnalyzer(provider).analyze(USER, COURSE_ID))[COURSE_ID]
    sets = analysis.conflicts[CAP]
    assert sets.allow == (TEACHER,)
    assert sets.prevent == (STUDENT,)
    assert sets.prohibit == ()
    assert analysis.overlaps == {}

    issues = analysis.issues()
    assert [(issue.finding_type, issue.severity) for issue in issues] == [(FINDING_TYPE_CONFLICT, 3)]


@pytest.mark.asyncio
async def test_prohibit_raises_conflict_severity() -> None:
    provider = build_memory_provider()
    provider.assign_role(USER, TEACHER, COURSE_ID)
    provider.assign_role(USER, STUDENT, COURSE_ID)
    provider.override(TEACHER, COURSE_ID, CAP, CAP_ALLOW)
    provider.override(STUDENT, COURSE_ID, CAP, CAP_PROHIBIT)

    analysis = (await PermissionMatrixAnalyzer(provider).analyze(USER, COURSE_ID))[COURSE_ID]
    assert analysis.conflicts[CAP].prohibit == (STUDENT,)
    assert analysis.issues()[0].severity == 4


@pytest.mark.asyncio
async def test_parent_prevent_does_not_conflict_with_child_allow() -> None:
    provider = build_memory_provider()
    provider.assign_role(USER, TEACHER, COURSE_ID)
    provider.assign_role(USER, STUDENT, COURSE_ID)
    module_id = MODULE_IDS[0]
    provider.override(TEACHER, module_id, CAP, CAP_ALLOW)
    provider.override(STUDENT, COURSE_ID, CAP, CAP_PREVENT)

    analyzer = PermissionMatrixAnalyzer(provider, inherit_role_assignments=True)
    result = await analyzer.analyze(USER, module_id, include_parents=True)
    assert result[module_id].conflicts == {}
    assert result[COURSE_ID].conflicts == {}
    assert result[module_id].stats.roles == 2


@pytest.mark.asyncio
async def test_context_without_roles_is_an_empty_entry() -> None:
    provider = build_memory_provider()

    result = await PermissionMatrixAnalyzer(provider).analyze(USER, COURSE_ID)
    analysis = result[COURSE_ID]
    assert analysis.context_name == "Biology 101"
    assert analysis.roles == {}
    assert analysis.overlaps == {}
    assert analysis.conflicts == {}
    assert analysis.stats.roles == 0


@pytest.mark.asyncio
async def test_role_without_overrides_still_counts() -> None:
    provider = build_memory_provider()
    provider.assign_role(USER, TEACHER, COURSE_ID)
    provider.assign_role(USER, STUDENT, COURSE_ID)
    provider.override(TEACHER, COURSE_ID, CAP, CAP_ALLOW)

    analysis = (await PermissionMatrixAnalyzer(provider).analyze(USER, COURSE_ID))[COURSE_ID]
    assert analysis.stats.roles == 2
    assert analysis.stats.caps_checked == 1


@pytest.mark.asyncio
async def test_inherit_overrides_are_ignored() -> None:
    provider = build_memory_provider()
    provider.assign_role(USER, TEACHER, COURSE_ID)
    provider.assign_role(USER, STUDENT, COURSE_ID)
    provider.override(TEACHER, COURSE_ID, CAP, CAP_ALLOW)
    provider.override(STUDENT, COURSE_ID, CAP, CAP_PREVENT)
    provider.override(STUDENT, COURSE_ID, CAP, CAP_INHERIT)

    analysis = (await PermissionMatrixAnalyzer(provider).analyze(USER, COURSE_ID))[COURSE_ID]
    assert analysis.conflicts == {}


@pytest.mark.asyncio
async def test_include_parents_analyzes_ancestors_nearest_first() -> None:
    provider = build_memory_provider()
    provider.assign_role(USER, TEACHER, COURSE_ID)

    result = await PermissionMatrixAnalyzer(provider).analyze(USER, COURSE_ID, include_parents=True)
    assert list(result) == [COURSE_ID, CATEGORY_ID, SYSTEM_ID]


@pytest.mark.asyncio
async def test_unknown_context_fails_loudly() -> None:
    provider = build_memory_provider()
    with pytest.raises(ContextNotFoundError):
        await PermissionMatrixAnalyzer(provider).analyze(USER, 9999)


@pytest.mark.asyncio
async def test_role_names_fall_back_to_ids() -> None:
    provider = build_memory_provider()
    provider.add_role(77, "")
    provider.assign_role(USER, 77, COURSE_ID)
    provider.assign_role(USER, TEACHER, COURSE_ID)

    analysis = (await PermissionMatrixAnalyzer(provider).analyze(USER, COURSE_ID))[COURSE_ID]
    assert analysis.roles == {TEACHER: "Teacher", 77: "role:77"}


@pytest.mark.asyncio
async def test_overlap_inside_conflict_is_reported_unless_suppressed() -> None:
    provider = build_memory_provider()
    for role_id in (TEACHER, NON_EDITING_TEACHER, STUDENT):
        provider.assign_role(USER, role_id, COURSE_ID)
    provider.override(TEACHER, COURSE_ID, CAP, CAP_ALLOW)
    provider.override(NON_EDITING_TEACHER, COURSE_ID, CAP, CAP_ALLOW)
    provider.override(STUDENT, COURSE_ID, CAP, CAP_PREVENT)

    analysis = (await PermissionMatrixAnalyzer(provider).analyze(USER, COURSE_ID))[COURSE_ID]
    both = [issue.finding_type for issue in analysis.issues()]
    assert both == [FINDING_TYPE_CONFLICT, FINDING_TYPE_OVERLAP]
    suppressed = [issue.finding_type for issue in analysis.issues(suppress_overlap_on_conflict=True)]
    assert suppressed == [FINDING_TYPE_CONFLICT]
    only_overlaps = [issue.finding_type for issue in analysis.issues(conflict_enabled=False)]
    assert only_overlaps == [FINDING_TYPE_OVERLAP]
