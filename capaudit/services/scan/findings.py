from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Iterable
import weakref

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from capaudit.core.errors import PersistenceError
from capaudit.domain.models import Finding
from capaudit.domain.rbac import (
    ISSUE_STATE_PENDING,
    ISSUE_STATE_RESOLVED,
    LOCKED_ISSUE_STATES,
    RoleCapabilitySets,
)
from capaudit.persistence.repos import findings as findings_repo
from capaudit.services.scan.fingerprint import DEFAULT_ALGORITHM, fingerprint


logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_STATES = (ISSUE_STATE_PENDING, ISSUE_STATE_RESOLVED)
_LOCK_STRIPES = 64
_stripes: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, list[asyncio.Lock]] = weakref.WeakKeyDictionary()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _fingerprint_lock(value: str) -> asyncio.Lock:
    # Striped per-loop locks serialize create-vs-update races on one fingerprint.
    loop = asyncio.get_running_loop()
    locks = _stripes.get(loop)
    if locks is None:
        locks = [asyncio.Lock() for _ in range(_LOCK_STRIPES)]
        _stripes[loop] = locks
    return locks[int(value[:8], 16) % _LOCK_STRIPES]


def normalize_cleanup_states(states: Iterable[str] | None) -> tuple[str, ...]:
    # Ignored findings are operator suppressions and are never reconciled away.
    if states is None:
        return DEFAULT_CLEANUP_STATES
    allowed = {ISSUE_STATE_PENDING, ISSUE_STATE_RESOLVED}
    normalized: list[str] = []
    for state in states:
        value = str(state).strip().lower()
        if value in allowed and value not in normalized:
            normalized.append(value)
    return tuple(normalized)


@dataclass(frozen=True)
class UpsertResult:
    created: bool
    finding_id: int
    fingerprint: str


class FindingStore:
    """The only write path for findings: idempotent upsert and reconciliation.

    Callers own the transaction; the store flushes but never commits.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        algorithm: str = DEFAULT_ALGORITHM,
        cleanup_states: Iterable[str] | None = None,
    ) -> None:
        self._session = session
        self._algorithm = algorithm
        self._cleanup_states = normalize_cleanup_states(cleanup_states)

    def fingerprint_for(self, user_id: int, context_id: int, capability: str, sets: RoleCapabilitySets) -> str:
        return fingerprint(user_id, context_id, capability, sets, algorithm=self._algorithm)

    async def upsert(
        self,
        *,
        scan_id: int,
        user_id: int,
        context_id: int,
        capability: str,
        finding_type: str,
        severity: int,
        sets: RoleCapabilitySets,
    ) -> UpsertResult:
        # Lookup, insert and fallback all run under the fingerprint's lock stripe.
        sets = RoleCapabilitySets.from_mapping(sets)
        value = self.fingerprint_for(user_id, context_id, capability, sets)
        now = _utc_now()
        async with _fingerprint_lock(value):
            try:
                existing = await findings_repo.get_by_fingerprint(self._session, value)
                if existing is not None:
                    await self._refresh(
                        existing, scan_id=scan_id, finding_type=finding_type, severity=severity, sets=sets, now=now
                    )
                    return UpsertResult(created=False, finding_id=int(existing.id), fingerprint=value)

                finding = Finding(
                    fingerprint=value,
                    scan_id=scan_id,
                    type=finding_type,
                    severity=severity,
                    user_id=user_id,
                    context_id=context_id,
                    capability=capability,
                    issue_state=ISSUE_STATE_PENDING,
                    first_seen_at=now,
                    last_seen_at=now,
                    resolved=False,
                    details=sets.as_dict(),
                )
                try:
                    async with self._session.begin_nested():
                        self._session.add(finding)
                        await self._session.flush()
                except IntegrityError:
                    # Another writer created the fingerprint first; take the update path.
                    existing = await findings_repo.get_by_fingerprint(self._session, value)
                    if existing is None:
                        raise
                    logger.info("finding_upsert_race fingerprint=%s finding_id=%s", value, existing.id)
                    await self._refresh(
                        existing, scan_id=scan_id, finding_type=finding_type, severity=severity, sets=sets, now=now
                    )
                    return UpsertResult(created=False, finding_id=int(existing.id), fingerprint=value)

                await findings_repo.replace_details(
                    self._session,
                    finding_id=finding.id,
                    capability=capability,
                    rows=sets.labelled_roles(),
                )
                await self._session.flush()
                return UpsertResult(created=True, finding_id=int(finding.id), fingerprint=value)
            except SQLAlchemyError as exc:
                raise PersistenceError(f"finding upsert failed for fingerprint {value}") from exc

    async def _refresh(
        self,
        finding: Finding,
        *,
        scan_id: int,
        finding_type: str,
        severity: int,
        sets: RoleCapabilitySets,
        now: datetime,
    ) -> None:
        # first_seen_at and the fingerprint are never rewritten.
        finding.scan_id = scan_id
        finding.type = finding_type
        finding.severity = severity
        finding.last_seen_at = now
        finding.details = sets.as_dict()
        # Manual lock: resolved and ignored survive recurrence.
        if finding.issue_state not in LOCKED_ISSUE_STATES:
            finding.issue_state = ISSUE_STATE_PENDING
            finding.resolved = False
        await findings_repo.replace_details(
            self._session,
            finding_id=finding.id,
            capability=finding.capability,
            rows=sets.labelled_roles(),
        )
        await self._session.flush()

    async def reconcile(self, *, user_id: int, context_id: int, active_fingerprints: Iterable[str]) -> int:
        """Delete findings of one (user, context) that no longer recur; returns the count."""
        if not self._cleanup_states:
            return 0
        active = set(active_fingerprints)
        try:
            candidates = await findings_repo.list_scope_findings(
                self._session,
                user_id=user_id,
                context_id=context_id,
                states=self._cleanup_states,
            )
            stale = [int(finding.id) for finding in candidates if finding.fingerprint not in active]
            await findings_repo.delete_findings(self._session, stale)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"finding reconciliation failed for user {user_id} context {context_id}") from exc
        if stale:
            logger.debug(
                "findings_reconciled user_id=%s context_id=%s deleted=%s", user_id, context_id, len(stale)
            )
        return len(stale)
