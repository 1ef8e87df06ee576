from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from capaudit.core.config import get_settings
from capaudit.core.errors import PersistenceError
from capaudit.domain.models import AuditEvent
from capaudit.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password"]
_REDACTED_VALUE = "[REDACTED]"

EVENT_SCAN_STARTED = "scan.run.started"
EVENT_SCAN_COMPLETED = "scan.run.completed"
EVENT_SCAN_FAILED = "scan.run.failed"
EVENT_FINDING_STATE_CHANGED = "finding.state.changed"
EVENT_FINDING_OVERRIDES_APPLIED = "finding.overrides.applied"

RESOURCE_SCAN_RUN = "scan_run"
RESOURCE_FINDING = "finding"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub secret-like fields while preserving structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_id(request: Request | None) -> str | None:
    if request is None:
        return None
    return request.headers.get("X-Request-Id")


def actor_for(user_id: int | None) -> tuple[str, str | None]:
    # Scheduled runs have no initiating user.
    if user_id is None:
        return "system", None
    return "user", str(user_id)


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    """Persist one audit event.

    Without a session the event is written in its own short transaction so it
    survives a rollback of the caller's work. With a session the event joins the
    caller's transaction and is committed only when ``commit`` is true.
    Failures are logged and swallowed unless ``best_effort`` is false.
    """
    if not get_settings().audit_events_enabled:
        return
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                _report_failure(event_type, request_id, exc, best_effort)
        return

    resolved_commit = commit if commit is not None else False
    try:
        session.add(event)
        if resolved_commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if resolved_commit:
            await session.rollback()
        _report_failure(event_type, request_id, exc, best_effort)


def _report_failure(event_type: str, request_id: str | None, exc: SQLAlchemyError, best_effort: bool) -> None:
    level = logger.warning if best_effort else logger.error
    level(
        "audit_event_write_failed event_type=%s request_id=%s",
        event_type,
        request_id,
        exc_info=exc,
    )
    if not best_effort:
        raise PersistenceError(f"audit event write failed: {event_type}") from exc
