from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Any, Iterable, Mapping


# Permission values stored on role capability overrides.
CAP_INHERIT = 0
CAP_ALLOW = 1
CAP_PREVENT = -1
CAP_PROHIBIT = -1000

PERMISSION_LABELS: dict[int, str] = {
    CAP_INHERIT: "inherit",
    CAP_ALLOW: "allow",
    CAP_PREVENT: "prevent",
    CAP_PROHIBIT: "prohibit",
}
LABEL_PERMISSIONS: dict[str, int] = {label: value for value, label in PERMISSION_LABELS.items()}

# Context tree levels.
CONTEXT_SYSTEM = 10
CONTEXT_USER = 30
CONTEXT_COURSECAT = 40
CONTEXT_COURSE = 50
CONTEXT_MODULE = 70
CONTEXT_BLOCK = 80

CONTEXT_LEVEL_NAMES: dict[str, int] = {
    "system": CONTEXT_SYSTEM,
    "user": CONTEXT_USER,
    "category": CONTEXT_COURSECAT,
    "coursecat": CONTEXT_COURSECAT,
    "course": CONTEXT_COURSE,
    "module": CONTEXT_MODULE,
    "block": CONTEXT_BLOCK,
}
KNOWN_CONTEXT_LEVELS = frozenset(CONTEXT_LEVEL_NAMES.values())

FINDING_TYPE_OVERLAP = "overlap"
FINDING_TYPE_CONFLICT = "conflict"

ISSUE_STATE_PENDING = "pending"
ISSUE_STATE_RESOLVED = "resolved"
ISSUE_STATE_IGNORED = "ignored"
ISSUE_STATES = (ISSUE_STATE_PENDING, ISSUE_STATE_RESOLVED, ISSUE_STATE_IGNORED)
# Manually set states survive recurrence of the same fingerprint.
LOCKED_ISSUE_STATES = frozenset({ISSUE_STATE_RESOLVED, ISSUE_STATE_IGNORED})

SEVERITY_OVERLAP = 2
SEVERITY_CONFLICT = 3
SEVERITY_CONFLICT_PROHIBIT = 4

_SPLIT_PATTERN = re.compile(r"[,\s]+")


def split_list(raw: str | None) -> list[str]:
    # Accept comma and/or whitespace separated operator input.
    if not raw:
        return []
    return [item for item in _SPLIT_PATTERN.split(raw.strip()) if item]


def normalize_role_ids(values: Iterable[Any] | None) -> tuple[int, ...]:
    # Cast, dedupe and sort so equal sets always serialize identically.
    return tuple(sorted({int(value) for value in (values or [])}))


@dataclass(frozen=True)
class ContextNode:
    id: int
    level: int
    path: str
    parent_id: int | None = None
    name: str = ""

    @property
    def path_ids(self) -> list[int]:
        return [int(part) for part in self.path.split("/") if part]

    @property
    def ancestor_ids(self) -> list[int]:
        # Nearest ancestor first.
        return list(reversed(self.path_ids[:-1]))

    def contains(self, other: ContextNode) -> bool:
        # Subtree membership by path prefix, matching whole path segments only.
        return other.path == self.path or other.path.startswith(self.path.rstrip("/") + "/")


@dataclass(frozen=True)
class RoleCapabilitySets:
    """Roles partitioned by their direct permission for one capability in one context."""

    allow: tuple[int, ...] = ()
    prevent: tuple[int, ...] = ()
    prohibit: tuple[int, ...] = ()

    @classmethod
    def from_mapping(cls, sets: Mapping[str, Iterable[Any]] | RoleCapabilitySets) -> RoleCapabilitySets:
        if isinstance(sets, RoleCapabilitySets):
            return sets
        return cls(
            allow=normalize_role_ids(sets.get("allow")),
            prevent=normalize_role_ids(sets.get("prevent")),
            prohibit=normalize_role_ids(sets.get("prohibit")),
        )

    @classmethod
    def from_role_permissions(cls, role_permissions: Mapping[int, int]) -> RoleCapabilitySets:
        allow: list[int] = []
        prevent: list[int] = []
        prohibit: list[int] = []
        for role_id, permission in role_permissions.items():
            if permission == CAP_ALLOW:
                allow.append(role_id)
            elif permission == CAP_PROHIBIT:
                prohibit.append(role_id)
            elif permission == CAP_PREVENT:
                prevent.append(role_id)
        return cls(
            allow=normalize_role_ids(allow),
            prevent=normalize_role_ids(prevent),
            prohibit=normalize_role_ids(prohibit),
        )

    @property
    def is_overlap(self) -> bool:
        return len(self.allow) > 1

    @property
    def is_conflict(self) -> bool:
        return bool(self.allow) and bool(self.prevent or self.prohibit)

    def as_dict(self) -> dict[str, list[int]]:
        return {
            "allow": list(self.allow),
            "prevent": list(self.prevent),
            "prohibit": list(self.prohibit),
        }

    def labelled_roles(self) -> list[tuple[str, int, int]]:
        # Flatten to (label, role_id, permission) rows for finding detail storage.
        rows: list[tuple[str, int, int]] = []
        for label, role_ids in (("allow", self.allow), ("prevent", self.prevent), ("prohibit", self.prohibit)):
            for role_id in role_ids:
                rows.append((label, role_id, LABEL_PERMISSIONS[label]))
        return rows


@dataclass(frozen=True)
class Issue:
    finding_type: str
    capability: str
    sets: RoleCapabilitySets

    @property
    def severity(self) -> int:
        return issue_severity(self.finding_type, self.sets)


def issue_severity(finding_type: str, sets: RoleCapabilitySets) -> int:
    if finding_type == FINDING_TYPE_OVERLAP:
        return SEVERITY_OVERLAP
    return SEVERITY_CONFLICT_PROHIBIT if sets.prohibit else SEVERITY_CONFLICT


@dataclass(frozen=True)
class ContextStats:
    roles: int = 0
    caps_checked: int = 0
    overlap_caps: int = 0
    conflict_caps: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "roles": self.roles,
            "caps_checked": self.caps_checked,
            "overlap_caps": self.overlap_caps,
            "conflict_caps": self.conflict_caps,
        }


@dataclass(frozen=True)
class ContextAnalysis:
    context_id: int
    context_name: str
    roles: dict[int, str] = field(default_factory=dict)
    matrix: dict[str, RoleCapabilitySets] = field(default_factory=dict)
    overlaps: dict[str, tuple[int, ...]] = field(default_factory=dict)
    conflicts: dict[str, RoleCapabilitySets] = field(default_factory=dict)
    stats: ContextStats = field(default_factory=ContextStats)

    def issues(
        self,
        *,
        overlap_enabled: bool = True,
        conflict_enabled: bool = True,
        suppress_overlap_on_conflict: bool = False,
    ) -> list[Issue]:
        # Conflicts first so higher severity findings are written before overlaps.
        found: list[Issue] = []
        if conflict_enabled:
            for capability in sorted(self.conflicts):
                found.append(Issue(FINDING_TYPE_CONFLICT, capability, self.conflicts[capability]))
        if overlap_enabled:
            for capability in sorted(self.overlaps):
                if suppress_overlap_on_conflict and capability in self.conflicts:
                    continue
                found.append(
                    Issue(
                        FINDING_TYPE_OVERLAP,
                        capability,
                        RoleCapabilitySets(allow=self.overlaps[capability]),
                    )
                )
        return found

    def as_dict(self) -> dict[str, Any]:
        return {
            "context_id": self.context_id,
            "context_name": self.context_name,
            "roles": {str(role_id): name for role_id, name in self.roles.items()},
            "overlaps": {capability: list(role_ids) for capability, role_ids in self.overlaps.items()},
            "conflicts": {capability: sets.as_dict() for capability, sets in self.conflicts.items()},
            "stats": self.stats.as_dict(),
        }


@dataclass(frozen=True)
class UserIssueReport:
    user_id: int
    contexts: dict[int, ContextAnalysis] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "contexts": {str(context_id): entry.as_dict() for context_id, entry in self.contexts.items()},
        }
