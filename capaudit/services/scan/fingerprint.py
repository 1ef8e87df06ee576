from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable, Mapping

from capaudit.core.errors import ConfigurationError
from capaudit.domain.rbac import RoleCapabilitySets


SUPPORTED_ALGORITHMS = ("sha256", "sha1")
DEFAULT_ALGORITHM = "sha256"


def canonical_payload(
    user_id: int,
    context_id: int,
    capability: str,
    sets: Mapping[str, Iterable[Any]] | RoleCapabilitySets,
) -> str:
    # Compact sorted JSON so the hash input is identical across processes and versions.
    normalized = RoleCapabilitySets.from_mapping(sets)
    payload = [
        int(user_id),
        int(context_id),
        str(capability),
        {"a": list(normalized.allow), "p": list(normalized.prevent), "x": list(normalized.prohibit)},
    ]
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def fingerprint(
    user_id: int,
    context_id: int,
    capability: str,
    sets: Mapping[str, Iterable[Any]] | RoleCapabilitySets,
    *,
    algorithm: str = DEFAULT_ALGORITHM,
) -> str:
    """Stable identity of one issue occurrence.

    Role id lists are cast, deduplicated and sorted before hashing, so list
    order and duplicates never change the result.
    """
    # Unknown algorithms fail loudly; a silent fallback would fork every fingerprint.
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ConfigurationError(f"unsupported fingerprint algorithm: {algorithm}")
    digest = hashlib.new(algorithm)
    digest.update(canonical_payload(user_id, context_id, capability, sets).encode("utf-8"))
    return digest.hexdigest()
