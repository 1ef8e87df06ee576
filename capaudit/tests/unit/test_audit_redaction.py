from __future__ import annotations

from capaudit.services.audit import actor_for, sanitize_metadata


def test_audit_redacts_tokens_and_secrets() -> None:
    # Redact token and secret fields in audit metadata.
    payload = {
        "api_admin_token": "secret-token",
        "client_secret": "super-secret",
        "nested": {"authorization": "Bearer abc"},
        "rows": [{"password": "hunter2", "role_id": 3}],
        "mode": "full",
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["api_admin_token"] == "[REDACTED]"
    assert sanitized["client_secret"] == "[REDACTED]"
    assert sanitized["nested"]["authorization"] == "[REDACTED]"
    assert sanitized["rows"] == [{"password": "[REDACTED]", "role_id": 3}]
    assert sanitized["mode"] == "full"


def test_actor_for_scheduled_and_user_runs() -> None:
    assert actor_for(None) == ("system", None)
    assert actor_for(7) == ("user", "7")
