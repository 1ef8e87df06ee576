from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from capaudit.core.config import get_settings
from capaudit.persistence.db import get_session
from capaudit.providers.rbac.base import RbacProvider
from capaudit.providers.rbac.sql import SqlRbacProvider
from capaudit.services.audit import get_request_id, record_event


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success and error.
    async with get_session() as session:
        yield session


async def get_rbac_provider(db: AsyncSession = Depends(get_db)) -> RbacProvider:
    return SqlRbacProvider(db)


class Principal(BaseModel):
    subject_id: str
    # Operator user id recorded as initiated_by / resolved_by when supplied.
    user_id: int | None = None


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _actor_user_id(request: Request) -> int | None:
    raw = request.headers.get("X-Actor-Id")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": "X-Actor-Id must be an integer"},
        ) from exc


async def require_admin(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    actor_user_id = _actor_user_id(request)
    if not settings.auth_enabled:
        return Principal(subject_id="anonymous", user_id=actor_user_id)

    token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    expected = settings.api_admin_token
    # An unset admin token denies every request rather than opening the API.
    if not token or not expected or not hmac.compare_digest(token, expected):
        await record_event(
            session=db,
            actor_type="anonymous",
            actor_id=None,
            event_type="auth.access.failure",
            outcome="failure",
            resource_type="auth",
            request_id=get_request_id(request),
            metadata={"path": request.url.path, "method": request.method},
            error_code="AUTH_UNAUTHORIZED",
            commit=True,
        )
        raise _auth_error("Missing or invalid bearer token")
    return Principal(subject_id="admin", user_id=actor_user_id)
