from __future__ import annotations

import pytest
from sqlalchemy import select

from capaudit.core.errors import ContextNotFoundError, RoleNotFoundError
from capaudit.domain.models import RoleCapability
from capaudit.domain.rbac import CAP_ALLOW, CAP_INHERIT, CAP_PREVENT, CONTEXT_MODULE
from capaudit.persistence.db import SessionLocal
from capaudit.providers.rbac.sql import SqlRbacProvider
from capaudit.services.scan.orchestrator import ScanConfiguration, run_full_scan
from capaudit.tests.utils.rbac import (
    CATEGORY_ID,
    COURSE_ID,
    MODULE_IDS,
    OTHER_USER,
    SIBLING_COURSE_ID,
    STUDENT,
    SYSTEM_ID,
    TEACHER,
    USER,
    seed_sql_tree,
    sql_assign,
    sql_override,
)


@pytest.mark.asyncio
async def test_tree_lookups() -> None:
    async with SessionLocal() as session:
        await seed_sql_tree(session)
        provider = SqlRbacProvider(session)

        module = await provider.get_context(MODULE_IDS[0])
        ancestors = await provider.get_ancestor_contexts(module)
        course = await provider.get_context(COURSE_ID)
        modules = await provider.get_descendant_contexts_at_level(course, CONTEXT_MODULE)
        system = await provider.get_system_context()

    assert module.path == f"/{SYSTEM_ID}/{CATEGORY_ID}/{COURSE_ID}/{MODULE_IDS[0]}"
    assert [node.id for node in ancestors] == [COURSE_ID, CATEGORY_ID, SYSTEM_ID]
    assert [node.id for node in modules] == list(MODULE_IDS)
    assert system.id == SYSTEM_ID


@pytest.mark.asyncio
async def test_missing_context_raises() -> None:
    async with SessionLocal() as session:
        await seed_sql_tree(session)
        with pytest.raises(ContextNotFoundError):
            await SqlRbacProvider(session).get_context(999)


@pytest.mark.asyncio
async def test_assignment_pairs_respect_subtree_boundaries() -> None:
    async with SessionLocal() as session:
        await seed_sql_tree(session)
        await sql_assign(session, USER, TEACHER, COURSE_ID)
        await sql_assign(session, USER, STUDENT, COURSE_ID)
        await sql_assign(session, OTHER_USER, TEACHER, SIBLING_COURSE_ID)
        provider = SqlRbacProvider(session)
        course = await provider.get_context(COURSE_ID)

        scoped = await provider.list_assignment_pairs(root_context=course)
        everything = await provider.list_assignment_pairs()
        only_other = await provider.list_assignment_pairs(user_ids=[OTHER_USER])

    assert [(user_id, node.id) for user_id, node in scoped] == [(USER, COURSE_ID)]
    assert [(user_id, node.id) for user_id, node in everything] == [(USER, COURSE_ID), (OTHER_USER, SIBLING_COURSE_ID)]
    assert [(user_id, node.id) for user_id, node in only_other] == [(OTHER_USER, SIBLING_COURSE_ID)]


@pytest.mark.asyncio
async def test_role_lookups_and_inherited_assignments() -> None:
    async with SessionLocal() as session:
        await seed_sql_tree(session)
        await sql_assign(session, USER, STUDENT, CATEGORY_ID)
        await sql_assign(session, USER, TEACHER, COURSE_ID)
        provider = SqlRbacProvider(session)
        course = await provider.get_context(COURSE_ID)

        direct = await provider.get_user_role_ids(course, USER)
        inherited = await provider.get_user_role_ids(course, USER, include_inherited=True)
        names = await provider.get_role_names([TEACHER, STUDENT, 404])

    assert direct == [TEACHER]
    assert inherited == [TEACHER, STUDENT]
    assert names == {TEACHER: "Teacher", STUDENT: "Student"}


@pytest.mark.asyncio
async def test_capability_overrides_upsert_and_reset() -> None:
    cap = "mod/quiz:attempt"
    async with SessionLocal() as session:
        await seed_sql_tree(session)
        provider = SqlRbacProvider(session)

        await provider.set_capability_override(
            role_id=STUDENT, context_id=COURSE_ID, capability=cap, permission=CAP_ALLOW, modified_by=9
        )
        first = await provider.get_direct_capability_overrides(STUDENT, COURSE_ID)
        await provider.set_capability_override(
            role_id=STUDENT, context_id=COURSE_ID, capability=cap, permission=CAP_PREVENT
        )
        second = await provider.get_direct_capability_overrides(STUDENT, COURSE_ID)
        rows = (await session.execute(select(RoleCapability))).scalars().all()
        await provider.set_capability_override(
            role_id=STUDENT, context_id=COURSE_ID, capability=cap, permission=CAP_INHERIT
        )
        third = await provider.get_direct_capability_overrides(STUDENT, COURSE_ID)

        with pytest.raises(RoleNotFoundError):
            await provider.set_capability_override(
                role_id=404, context_id=COURSE_ID, capability=cap, permission=CAP_ALLOW
            )

    assert first == {cap: CAP_ALLOW}
    assert second == {cap: CAP_PREVENT}
    assert len(rows) == 1
    assert third == {}


@pytest.mark.asyncio
async def test_full_scan_over_sql_tables() -> None:
    cap = "mod/assign:grade"
    async with SessionLocal() as session:
        await seed_sql_tree(session)
        await sql_assign(session, USER, TEACHER, COURSE_ID)
        await sql_assign(session, USER, STUDENT, COURSE_ID)
        await sql_override(session, TEACHER, COURSE_ID, cap, CAP_ALLOW)
        await sql_override(session, STUDENT, COURSE_ID, cap, CAP_PREVENT)
        # Sibling course override must not leak into the scanned course.
        await sql_override(session, STUDENT, SIBLING_COURSE_ID, "mod/quiz:grade", CAP_PREVENT)
        await session.commit()

        config = ScanConfiguration(levels=(50, 70))
        result = await run_full_scan(session, SqlRbacProvider(session), COURSE_ID, config=config)

    assert result.status == "success"
    assert result.meta["scope"] == "ctx"
    assert result.meta["context_id"] == COURSE_ID
    assert result.pairs == 1
    assert result.new == 1
