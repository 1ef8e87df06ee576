from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from capaudit.apps.api.deps import Principal, get_rbac_provider, require_admin
from capaudit.apps.api.response import success_response
from capaudit.providers.rbac.base import RbacProvider
from capaudit.services.scan.report import get_issue_report


router = APIRouter(prefix="/reports", tags=["reports"])


@router.get("/users/{user_id}")
async def get_user_issue_report(
    request: Request,
    user_id: int,
    context_id: int | None = None,
    include_parents: bool | None = None,
    principal: Principal = Depends(require_admin),
    provider: RbacProvider = Depends(get_rbac_provider),
) -> dict:
    report = await get_issue_report(provider, user_id, context_id, include_parents)
    return success_response(request=request, data=report.as_dict())
