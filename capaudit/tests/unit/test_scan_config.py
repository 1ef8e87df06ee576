from __future__ import annotations

import pytest

from capaudit.core.config import Settings
from capaudit.core.errors import ConfigurationError
from capaudit.domain.rbac import CONTEXT_COURSE, CONTEXT_MODULE, CONTEXT_SYSTEM
from capaudit.services.scan.findings import normalize_cleanup_states
from capaudit.services.scan.orchestrator import ScanConfiguration


def _settings(**values) -> Settings:
    return Settings(database_url="sqlite+aiosqlite:///unused.db", **values)


def test_configuration_reads_settings() -> None:
    config = ScanConfiguration.from_settings(
        _settings(
            scan_context_levels="course, module, bogus",
            scan_include_parents=True,
            scan_cleanup_states="pending",
            fingerprint_algorithm="SHA1",
        )
    )
    assert config.levels == (CONTEXT_COURSE, CONTEXT_MODULE)
    assert config.include_parents is True
    assert config.cleanup_states == ("pending",)
    assert config.fingerprint_algorithm == "sha1"
    assert config.overlap_only is False


def test_default_levels_and_cleanup_states() -> None:
    config = ScanConfiguration.from_settings(_settings())
    assert config.levels == (CONTEXT_SYSTEM, CONTEXT_COURSE, CONTEXT_MODULE)
    assert config.cleanup_states == ("pending", "resolved")
    assert config.fingerprint_algorithm == "sha256"


def test_overrides_keep_defaults_for_none() -> None:
    config = ScanConfiguration.from_settings(_settings(), include_parents=None, levels="module", overlap_enabled=False)
    assert config.include_parents is False
    assert config.levels == (CONTEXT_MODULE,)
    assert config.overlap_enabled is False


def test_unknown_override_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        ScanConfiguration().with_overrides(colour="blue")


def test_unsupported_algorithm_is_rejected() -> None:
    with pytest.raises(ConfigurationError):
        ScanConfiguration().with_overrides(fingerprint_algorithm="md5")


def test_ignored_is_never_a_cleanup_state() -> None:
    assert normalize_cleanup_states(["ignored", "Resolved", "pending", "pending"]) == ("resolved", "pending")
    assert normalize_cleanup_states(None) == ("pending", "resolved")
    assert ScanConfiguration().with_overrides(cleanup_states="ignored").cleanup_states == ()
