from __future__ import annotations

from capaudit.services.scan.analyzer import PermissionMatrixAnalyzer
from capaudit.services.scan.findings import FindingStore, UpsertResult
from capaudit.services.scan.fingerprint import fingerprint
from capaudit.services.scan.orchestrator import (
    ScanConfiguration,
    ScanOrchestrator,
    ScanResult,
    record_scan_summary,
    run_full_scan,
    run_overlap_only_scan,
    run_scan_for_users,
)
from capaudit.services.scan.report import (
    finding_stats,
    get_finding,
    get_issue_report,
    get_scan_run,
    list_findings,
    list_scan_runs,
)
from capaudit.services.scan.resolution import ResolutionResult, get_resolution_form, resolve_finding
from capaudit.services.scan.scope import ScanPair, ScopeResolver, normalize_ids, normalize_levels


__all__ = [
    "FindingStore",
    "PermissionMatrixAnalyzer",
    "ResolutionResult",
    "ScanConfiguration",
    "ScanOrchestrator",
    "ScanPair",
    "ScanResult",
    "ScopeResolver",
    "UpsertResult",
    "finding_stats",
    "fingerprint",
    "get_finding",
    "get_issue_report",
    "get_resolution_form",
    "get_scan_run",
    "list_findings",
    "list_scan_runs",
    "normalize_ids",
    "normalize_levels",
    "record_scan_summary",
    "resolve_finding",
    "run_full_scan",
    "run_overlap_only_scan",
    "run_scan_for_users",
]
