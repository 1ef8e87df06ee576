from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from capaudit.apps.api.response import SuccessEnvelope, success_response


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload)
