from __future__ import annotations

import asyncio
from dataclasses import dataclass

from sqlalchemy import select

from capaudit.domain.models import Context, Role, RoleAssignment, RoleCapability
from capaudit.domain.rbac import (
    CAP_ALLOW,
    CAP_PREVENT,
    CAP_PROHIBIT,
    CONTEXT_COURSE,
    CONTEXT_COURSECAT,
    CONTEXT_MODULE,
    CONTEXT_SYSTEM,
)
from capaudit.persistence.db import SessionLocal


@dataclass(frozen=True)
class DemoContext:
    id: int
    level: int
    parent_id: int | None
    name: str


DEMO_CONTEXTS = (
    DemoContext(1, CONTEXT_SYSTEM, None, "System"),
    DemoContext(3, CONTEXT_COURSECAT, 1, "Science"),
    DemoContext(15, CONTEXT_COURSE, 3, "Biology 101"),
    DemoContext(21, CONTEXT_MODULE, 15, "Lab quiz"),
    DemoContext(22, CONTEXT_MODULE, 15, "Essay assignment"),
)
DEMO_ROLES = ((3, "editingteacher", "Teacher"), (4, "teacher", "Non-editing teacher"), (5, "student", "Student"))
# (user_id, role_id, context_id)
DEMO_ASSIGNMENTS = ((42, 3, 15), (42, 4, 15), (42, 5, 15), (43, 5, 15))
# (role_id, context_id, capability, permission)
DEMO_OVERRIDES = (
    (3, 15, "mod/assign:grade", CAP_ALLOW),
    (4, 15, "mod/assign:grade", CAP_ALLOW),
    (3, 15, "moodle/course:update", CAP_ALLOW),
    (5, 15, "moodle/course:update", CAP_PREVENT),
    (3, 21, "mod/quiz:viewreports", CAP_ALLOW),
    (5, 21, "mod/quiz:viewreports", CAP_PROHIBIT),
)


async def seed() -> None:
    async with SessionLocal() as session:
        existing = await session.execute(select(Context.id).where(Context.id == DEMO_CONTEXTS[0].id))
        if existing.scalar_one_or_none() is not None:
            print("Demo RBAC data already present")
            return
        paths: dict[int, str] = {}
        for item in DEMO_CONTEXTS:
            path = f"{paths[item.parent_id]}/{item.id}" if item.parent_id else f"/{item.id}"
            paths[item.id] = path
            session.add(Context(id=item.id, contextlevel=item.level, path=path, parent_id=item.parent_id, name=item.name))
        for role_id, shortname, name in DEMO_ROLES:
            session.add(Role(id=role_id, shortname=shortname, name=name))
        await session.flush()
        for user_id, role_id, context_id in DEMO_ASSIGNMENTS:
            session.add(RoleAssignment(user_id=user_id, role_id=role_id, context_id=context_id))
        for role_id, context_id, capability, permission in DEMO_OVERRIDES:
            session.add(
                RoleCapability(role_id=role_id, context_id=context_id, capability=capability, permission=permission)
            )
        await session.commit()
    print(f"Seeded {len(DEMO_CONTEXTS)} contexts, {len(DEMO_ROLES)} roles, {len(DEMO_ASSIGNMENTS)} assignments")


if __name__ == "__main__":
    asyncio.run(seed())
