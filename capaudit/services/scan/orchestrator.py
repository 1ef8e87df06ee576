from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
import logging
from typing import Any, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from capaudit.core.config import Settings, get_settings
from capaudit.core.errors import ConfigurationError, PersistenceError
from capaudit.domain.models import ScanRun
from capaudit.domain.rbac import ContextNode, split_list
from capaudit.persistence.repos import scans as scans_repo
from capaudit.providers.rbac.base import RbacProvider
from capaudit.services.audit import (
    EVENT_SCAN_COMPLETED,
    EVENT_SCAN_FAILED,
    EVENT_SCAN_STARTED,
    RESOURCE_SCAN_RUN,
    actor_for,
    record_event,
)
from capaudit.services.scan.analyzer import PermissionMatrixAnalyzer
from capaudit.services.scan.findings import FindingStore, normalize_cleanup_states
from capaudit.services.scan.fingerprint import SUPPORTED_ALGORITHMS
from capaudit.services.scan.scope import ScanPair, ScopeResolver, normalize_ids, normalize_levels


logger = logging.getLogger(__name__)

SCAN_STATUS_RUNNING = "running"
SCAN_STATUS_SUCCESS = "success"
SCAN_STATUS_FAILED = "failed"
SCAN_STATUS_STORED = "stored"

MODE_FULL = "full"
MODE_USERS = "adhoc-users"
MODE_OVERLAP = "adhoc-overlap"


@dataclass(frozen=True)
class ScanConfiguration:
    """Per-scan settings threaded explicitly through every scan call."""

    overlap_enabled: bool = True
    conflict_enabled: bool = True
    include_parents: bool = False
    levels: tuple[int, ...] = ()
    inherit_role_assignments: bool = False
    cleanup_states: tuple[str, ...] = ("pending", "resolved")
    suppress_overlap_on_conflict: bool = False
    overlap_only: bool = False
    fingerprint_algorithm: str = "sha256"

    @classmethod
    def from_settings(cls, settings: Settings | None = None, **overrides: Any) -> ScanConfiguration:
        settings = settings or get_settings()
        config = cls(
            overlap_enabled=settings.scan_overlap_enabled,
            conflict_enabled=settings.scan_conflict_enabled,
            include_parents=settings.scan_include_parents,
            levels=tuple(normalize_levels(settings.scan_context_levels)),
            inherit_role_assignments=settings.scan_inherit_role_assignments,
            cleanup_states=normalize_cleanup_states(split_list(settings.scan_cleanup_states)),
            suppress_overlap_on_conflict=settings.scan_suppress_overlap_on_conflict,
            fingerprint_algorithm=settings.fingerprint_algorithm.strip().lower(),
        )
        return config.with_overrides(**overrides)

    def with_overrides(self, **overrides: Any) -> ScanConfiguration:
        known = {item.name for item in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ConfigurationError(f"unknown scan configuration fields: {', '.join(unknown)}")
        # None means "keep the configured default" for per-call overrides.
        values = {key: value for key, value in overrides.items() if value is not None}
        if "levels" in values:
            values["levels"] = tuple(normalize_levels(values["levels"]))
        if "cleanup_states" in values:
            raw = values["cleanup_states"]
            values["cleanup_states"] = normalize_cleanup_states(split_list(raw) if isinstance(raw, str) else raw)
        config = replace(self, **values)
        if config.fingerprint_algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigurationError(f"unsupported fingerprint algorithm: {config.fingerprint_algorithm}")
        return config

    def as_meta(self) -> dict[str, Any]:
        return {
            "overlap": self.overlap_enabled,
            "conflict": self.conflict_enabled,
            "include_parents": self.include_parents,
            "levels": list(self.levels),
        }


@dataclass
class ScanResult:
    scan_id: int
    status: str
    mode: str
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def pairs(self) -> int:
        return int(self.meta.get("pairs", 0))

    @property
    def new(self) -> int:
        return int(self.meta.get("new", 0))

    @property
    def updated(self) -> int:
        return int(self.meta.get("updated", 0))

    @property
    def reconciled(self) -> int:
        return int(self.meta.get("reconciled", 0))


@dataclass
class _Counters:
    pairs: int = 0
    contexts: int = 0
    issues: int = 0
    new: int = 0
    updated: int = 0
    reconciled: int = 0

    def as_meta(self) -> dict[str, int]:
        return {
            "pairs": self.pairs,
            "contexts_analyzed": self.contexts,
            "issues": self.issues,
            "new": self.new,
            "updated": self.updated,
            "reconciled": self.reconciled,
        }


class ScanOrchestrator:
    """Run scan workflows and keep the scan-run record in step.

    Findings are committed pair by pair, so observations written before a
    failure stay valid. A failed run is marked ``failed`` and the original
    exception is re-raised to the caller; nothing is retried here.
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: RbacProvider,
        config: ScanConfiguration | None = None,
    ) -> None:
        self._session = session
        self._provider = provider
        # Settings are read once here; a running scan never sees later changes.
        self._config = config or ScanConfiguration.from_settings()

    async def run_full_scan(
        self,
        root_context: ContextNode | int | None = None,
        *,
        initiated_by: int | None = None,
    ) -> ScanResult:
        # No users means every assignment in scope, optionally under one root.
        return await self._execute(
            mode=MODE_FULL,
            root_context=root_context,
            user_ids=None,
            initiated_by=initiated_by,
            config=self._config,
        )

    async def run_scan_for_users(
        self,
        user_ids: Iterable[Any] | str | None,
        root_context: ContextNode | int | None = None,
        *,
        initiated_by: int | None = None,
    ) -> ScanResult | None:
        # An empty user list is a no-op, not an implicit full scan.
        users = normalize_ids(user_ids)
        if not users:
            logger.info("scan_run_skipped mode=%s reason=no_users", MODE_USERS)
            return None
        return await self._execute(
            mode=MODE_USERS,
            root_context=root_context,
            user_ids=users,
            initiated_by=initiated_by,
            config=self._config,
        )

    async def run_overlap_only_scan(
        self,
        root_context: ContextNode | int | None = None,
        user_ids: Iterable[Any] | str | None = None,
        *,
        initiated_by: int | None = None,
    ) -> ScanResult:
        # Only one issue type is observed, so reconciliation would delete unrelated conflicts.
        config = replace(self._config, overlap_enabled=True, conflict_enabled=False, overlap_only=True)
        return await self._execute(
            mode=MODE_OVERLAP,
            root_context=root_context,
            user_ids=normalize_ids(user_ids),
            initiated_by=initiated_by,
            config=config,
        )

    async def _execute(
        self,
        *,
        mode: str,
        root_context: ContextNode | int | None,
        user_ids: list[int] | None,
        initiated_by: int | None,
        config: ScanConfiguration,
    ) -> ScanResult:
        # The run row is committed before analysis starts; failures update it in place.
        scope_context_id = root_context.id if isinstance(root_context, ContextNode) else root_context
        start_meta: dict[str, Any] = {"mode": mode}
        if user_ids:
            start_meta["users"] = len(user_ids)
        try:
            run = await scans_repo.create_scan_run(
                self._session,
                status=SCAN_STATUS_RUNNING,
                initiated_by=initiated_by,
                scope_context_id=scope_context_id,
                meta=start_meta,
            )
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise PersistenceError("failed to create scan run") from exc
        scan_id = int(run.id)
        actor_type, actor_id = actor_for(initiated_by)
        logger.info(
            "scan_run_started scan_id=%s mode=%s scope_context_id=%s initiated_by=%s",
            scan_id,
            mode,
            scope_context_id,
            initiated_by,
        )
        await record_event(
            session=self._session,
            actor_type=actor_type,
            actor_id=actor_id,
            event_type=EVENT_SCAN_STARTED,
            outcome="success",
            resource_type=RESOURCE_SCAN_RUN,
            resource_id=str(scan_id),
            metadata={**start_meta, **config.as_meta()},
            commit=True,
        )

        counters = _Counters()
        try:
            root = await self._resolve_root(root_context)
            resolver = ScopeResolver(self._provider)
            pairs, scope_meta = await resolver.select_pairs(root, user_ids, config.levels)
            analyzer = PermissionMatrixAnalyzer(
                self._provider, inherit_role_assignments=config.inherit_role_assignments
            )
            store = FindingStore(
                self._session,
                algorithm=config.fingerprint_algorithm,
                cleanup_states=config.cleanup_states,
            )
            for pair in pairs:
                await self._process_pair(
                    pair, scan_id=scan_id, analyzer=analyzer, store=store, config=config, counters=counters
                )
                await self._session.commit()
                counters.pairs += 1

            meta = {"mode": mode, **scope_meta, **counters.as_meta()}
            run = await self._load_run(scan_id)
            await scans_repo.finish_scan_run(self._session, run, status=SCAN_STATUS_SUCCESS, meta=meta)
            await self._session.commit()
        except Exception as exc:
            await self._session.rollback()
            logger.exception("scan_run_failed scan_id=%s mode=%s pairs=%s", scan_id, mode, counters.pairs)
            await self._mark_failed(scan_id, mode=mode, exc=exc, counters=counters)
            await record_event(
                session=self._session,
                actor_type=actor_type,
                actor_id=actor_id,
                event_type=EVENT_SCAN_FAILED,
                outcome="failure",
                resource_type=RESOURCE_SCAN_RUN,
                resource_id=str(scan_id),
                metadata={"mode": mode, "error": str(exc), "pairs": counters.pairs},
                error_code=type(exc).__name__,
                commit=True,
            )
            raise

        logger.info(
            "scan_run_completed scan_id=%s mode=%s pairs=%s new=%s updated=%s reconciled=%s",
            scan_id,
            mode,
            counters.pairs,
            counters.new,
            counters.updated,
            counters.reconciled,
        )
        await record_event(
            session=self._session,
            actor_type=actor_type,
            actor_id=actor_id,
            event_type=EVENT_SCAN_COMPLETED,
            outcome="success",
            resource_type=RESOURCE_SCAN_RUN,
            resource_id=str(scan_id),
            metadata=meta,
            commit=True,
        )
        return ScanResult(scan_id=scan_id, status=SCAN_STATUS_SUCCESS, mode=mode, meta=meta)

    async def _process_pair(
        self,
        pair: ScanPair,
        *,
        scan_id: int,
        analyzer: PermissionMatrixAnalyzer,
        store: FindingStore,
        config: ScanConfiguration,
        counters: _Counters,
    ) -> None:
        # Expanded and root pairs always resolve ancestor roles; overrides stay context-local.
        analyses = await analyzer.analyze(
            pair.user_id,
            pair.context,
            include_parents=config.include_parents,
            include_inherited=config.inherit_role_assignments or pair.inherit_roles,
        )
        counters.contexts += len(analyses)
        # Findings are only persisted for the pair's own context; ancestors are
        # persisted when they are scanned as pairs of their own.
        analysis = analyses[pair.context.id]
        issues = analysis.issues(
            overlap_enabled=config.overlap_enabled,
            conflict_enabled=config.conflict_enabled,
            suppress_overlap_on_conflict=config.suppress_overlap_on_conflict,
        )
        active: list[str] = []
        for issue in issues:
            result = await store.upsert(
                scan_id=scan_id,
                user_id=pair.user_id,
                context_id=pair.context.id,
                capability=issue.capability,
                finding_type=issue.finding_type,
                severity=issue.severity,
                sets=issue.sets,
            )
            active.append(result.fingerprint)
            counters.issues += 1
            if result.created:
                counters.new += 1
            else:
                counters.updated += 1
        if not config.overlap_only:
            counters.reconciled += await store.reconcile(
                user_id=pair.user_id,
                context_id=pair.context.id,
                active_fingerprints=active,
            )

    async def _resolve_root(self, root_context: ContextNode | int | None) -> ContextNode | None:
        # Integer roots must exist; ContextNotFoundError fails the run.
        if root_context is None or isinstance(root_context, ContextNode):
            return root_context
        return await self._provider.get_context(int(root_context))

    async def _load_run(self, scan_id: int) -> ScanRun:
        run = await scans_repo.get_scan_run(self._session, scan_id)
        if run is None:
            raise PersistenceError(f"scan run {scan_id} disappeared while running")
        return run

    async def _mark_failed(self, scan_id: int, *, mode: str, exc: Exception, counters: _Counters) -> None:
        try:
            run = await self._load_run(scan_id)
            await scans_repo.finish_scan_run(
                self._session,
                run,
                status=SCAN_STATUS_FAILED,
                meta={
                    "mode": mode,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                    "pairs": counters.pairs,
                },
            )
            await self._session.commit()
        except (SQLAlchemyError, PersistenceError):
            # The original failure is re-raised by the caller either way.
            await self._session.rollback()
            logger.exception("scan_run_mark_failed_error scan_id=%s", scan_id)


async def record_scan_summary(
    session: AsyncSession,
    *,
    meta: dict[str, Any],
    initiated_by: int | None = None,
    scope_context_id: int | None = None,
) -> ScanRun:
    """Persist an already finished run for results computed outside the orchestrator."""
    now = datetime.now(timezone.utc)
    try:
        run = await scans_repo.create_scan_run(
            session,
            status=SCAN_STATUS_STORED,
            initiated_by=initiated_by,
            scope_context_id=scope_context_id,
            meta=meta,
            started_at=now,
            finished_at=now,
        )
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError("failed to store scan summary") from exc
    return run


async def run_full_scan(
    session: AsyncSession,
    provider: RbacProvider,
    root_context: ContextNode | int | None = None,
    *,
    initiated_by: int | None = None,
    config: ScanConfiguration | None = None,
) -> ScanResult:
    # Session-scoped convenience for scripts and the API.
    return await ScanOrchestrator(session, provider, config).run_full_scan(root_context, initiated_by=initiated_by)


async def run_scan_for_users(
    session: AsyncSession,
    provider: RbacProvider,
    user_ids: Iterable[Any] | str | None,
    root_context: ContextNode | int | None = None,
    *,
    initiated_by: int | None = None,
    config: ScanConfiguration | None = None,
) -> ScanResult | None:
    return await ScanOrchestrator(session, provider, config).run_scan_for_users(
        user_ids, root_context, initiated_by=initiated_by
    )


async def run_overlap_only_scan(
    session: AsyncSession,
    provider: RbacProvider,
    root_context: ContextNode | int | None = None,
    user_ids: Iterable[Any] | str | None = None,
    *,
    initiated_by: int | None = None,
    config: ScanConfiguration | None = None,
) -> ScanResult:
    return await ScanOrchestrator(session, provider, config).run_overlap_only_scan(
        root_context, user_ids, initiated_by=initiated_by
    )
