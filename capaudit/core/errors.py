from __future__ import annotations


class CapAuditError(Exception):
    """Base error for capaudit."""


class NotFoundError(CapAuditError):
    """Referenced RBAC or audit entity does not exist."""


class ContextNotFoundError(NotFoundError):
    """Context id does not resolve to a node in the context tree."""


class RoleNotFoundError(NotFoundError):
    """Role id does not resolve to a defined role."""


class FindingNotFoundError(NotFoundError):
    """Finding id does not exist (it may have been reconciled away)."""


class ScanRunNotFoundError(NotFoundError):
    """Scan run id does not exist."""


class PersistenceError(CapAuditError):
    """Finding or scan-run storage failure."""


class ConfigurationError(CapAuditError):
    """Invalid configuration that cannot be normalized."""
