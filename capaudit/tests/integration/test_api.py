from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select

from capaudit.apps.api.main import create_app
from capaudit.domain.models import AuditEvent, Finding
from capaudit.domain.rbac import CAP_ALLOW, CAP_PREVENT
from capaudit.persistence.db import SessionLocal
from capaudit.tests.utils.rbac import (
    COURSE_ID,
    STUDENT,
    TEACHER,
    USER,
    seed_sql_tree,
    sql_assign,
    sql_override,
)


CAP = "mod/assign:grade"
HEADERS = {"Authorization": "Bearer test-admin-token", "X-Actor-Id": "7"}


async def _seed_conflict() -> None:
    async with SessionLocal() as session:
        await seed_sql_tree(session)
        await sql_assign(session, USER, TEACHER, COURSE_ID)
        await sql_assign(session, USER, STUDENT, COURSE_ID)
        await sql_override(session, TEACHER, COURSE_ID, CAP, CAP_ALLOW)
        await sql_override(session, STUDENT, COURSE_ID, CAP, CAP_PREVENT)
        await session.commit()


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_health_is_public() -> None:
    async with _client() as client:
        response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "ok"
    assert response.json()["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_scan_resolve_and_report_flow() -> None:
    await _seed_conflict()
    async with _client() as client:
        scan = await client.post("/v1/scans", json={"mode": "full", "levels": ["course", "module"]}, headers=HEADERS)
        assert scan.status_code == 200
        run = scan.json()["data"]["scan"]
        assert run["status"] == "success"
        assert run["initiated_by"] == 7
        assert run["meta"]["new"] == 1

        listed = await client.get("/v1/findings", params={"user_id": USER}, headers=HEADERS)
        items = listed.json()["data"]["items"]
        assert len(items) == 1
        finding = items[0]
        assert (finding["type"], finding["severity"], finding["capability"]) == ("conflict", 3, CAP)

        detail = await client.get(f"/v1/findings/{finding['id']}", headers=HEADERS)
        assert [row["label"] for row in detail.json()["data"]["roles"]] == ["allow", "prevent"]

        stats = await client.get("/v1/findings/stats", headers=HEADERS)
        assert stats.json()["data"]["total"] == 1
        assert stats.json()["data"]["unresolved"] == 1

        form = await client.get(f"/v1/findings/{finding['id']}/resolution", headers=HEADERS)
        assert [role["role_id"] for role in form.json()["data"]["roles"]] == [TEACHER, STUDENT]

        resolved = await client.post(
            f"/v1/findings/{finding['id']}/resolve",
            json={"issue_state": "resolved", "overrides": {str(STUDENT): "inherit"}},
            headers=HEADERS,
        )
        assert resolved.status_code == 200
        assert resolved.json()["data"]["removed"] is True
        assert resolved.json()["data"]["overrides_applied"] == {str(STUDENT): 0}

        report = await client.get(f"/v1/reports/users/{USER}", params={"context_id": COURSE_ID}, headers=HEADERS)
        contexts = report.json()["data"]["contexts"]
        assert contexts[str(COURSE_ID)]["conflicts"] == {}
        assert contexts[str(COURSE_ID)]["stats"]["roles"] == 2

        runs = await client.get("/v1/scans", headers=HEADERS)
        assert [item["status"] for item in runs.json()["data"]["items"]] == ["success", "success"]

        events = await client.get("/v1/audit/events", params={"event_type": "finding.state.changed"}, headers=HEADERS)
        event = events.json()["data"]["items"][0]
        assert event["actor_id"] == "7"
        assert event["metadata_json"] == {"from": "pending", "to": "resolved"}

        single = await client.get(f"/v1/audit/events/{event['id']}", headers=HEADERS)
        assert single.json()["data"]["event_type"] == "finding.state.changed"
        missing = await client.get("/v1/audit/events/99999", headers=HEADERS)
        assert missing.status_code == 404


@pytest.mark.asyncio
async def test_user_scan_without_users_is_skipped() -> None:
    await _seed_conflict()
    async with _client() as client:
        response = await client.post("/v1/scans", json={"mode": "users", "user_ids": []}, headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["data"] == {"scan": None, "skipped": True}


@pytest.mark.asyncio
async def test_missing_token_is_rejected_and_audited() -> None:
    async with _client() as client:
        response = await client.get("/v1/findings")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

    async with SessionLocal() as session:
        count = (
            await session.execute(
                select(func.count()).select_from(AuditEvent).where(AuditEvent.event_type == "auth.access.failure")
            )
        ).scalar()
    assert count == 1


@pytest.mark.asyncio
async def test_unknown_finding_returns_not_found_envelope() -> None:
    async with _client() as client:
        response = await client.get("/v1/findings/9999", headers=HEADERS)
    assert response.status_code == 404
    body = response.json()
    assert body["error"]["code"] == "NOT_FOUND"
    assert body["meta"]["request_id"]


@pytest.mark.asyncio
async def test_scan_with_unknown_root_fails_and_is_listed() -> None:
    await _seed_conflict()
    async with _client() as client:
        response = await client.post("/v1/scans", json={"mode": "full", "root_context_id": 999}, headers=HEADERS)
        assert response.status_code == 404
        runs = await client.get("/v1/scans", params={"status": "failed"}, headers=HEADERS)

    items = runs.json()["data"]["items"]
    assert len(items) == 1
    assert items[0]["scope_context_id"] == 999
    assert items[0]["meta"]["error_type"] == "ContextNotFoundError"


@pytest.mark.asyncio
async def test_invalid_issue_state_is_a_bad_request() -> None:
    await _seed_conflict()
    async with _client() as client:
        await client.post("/v1/scans", json={"mode": "full"}, headers=HEADERS)
        listed = await client.get("/v1/findings", headers=HEADERS)
        finding_id = listed.json()["data"]["items"][0]["id"]
        response = await client.post(
            f"/v1/findings/{finding_id}/resolve", json={"issue_state": "closed"}, headers=HEADERS
        )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "BAD_REQUEST"


@pytest.mark.asyncio
async def test_next_offset_is_set_only_when_another_page_exists() -> None:
    await _seed_conflict()
    async with _client() as client:
        for _ in range(2):
            await client.post("/v1/scans", json={"mode": "full"}, headers=HEADERS)
        exact = await client.get("/v1/scans", params={"limit": 2}, headers=HEADERS)

        await client.post("/v1/scans", json={"mode": "full"}, headers=HEADERS)
        first = await client.get("/v1/scans", params={"limit": 2}, headers=HEADERS)
        second = await client.get("/v1/scans", params={"limit": 2, "offset": 2}, headers=HEADERS)

        findings = await client.get("/v1/findings", params={"limit": 1}, headers=HEADERS)
        events = await client.get("/v1/audit/events", params={"family": "scan.run", "limit": 6}, headers=HEADERS)
        short = await client.get("/v1/audit/events", params={"family": "scan.run", "limit": 5}, headers=HEADERS)

    assert len(exact.json()["data"]["items"]) == 2
    assert exact.json()["data"]["next_offset"] is None
    assert len(first.json()["data"]["items"]) == 2
    assert first.json()["data"]["next_offset"] == 2
    assert len(second.json()["data"]["items"]) == 1
    assert second.json()["data"]["next_offset"] is None

    assert len(findings.json()["data"]["items"]) == 1
    assert findings.json()["data"]["next_offset"] is None
    # Three runs, each with a started and a completed event.
    assert len(events.json()["data"]["items"]) == 6
    assert events.json()["data"]["next_offset"] is None
    assert len(short.json()["data"]["items"]) == 5
    assert short.json()["data"]["next_offset"] == 5


@pytest.mark.asyncio
async def test_scan_and_finding_event_history() -> None:
    await _seed_conflict()
    async with _client() as client:
        scan = await client.post("/v1/scans", json={"mode": "full"}, headers=HEADERS)
        scan_id = scan.json()["data"]["scan"]["id"]
        listed = await client.get("/v1/findings", headers=HEADERS)
        finding_id = listed.json()["data"]["items"][0]["id"]
        await client.post(
            f"/v1/findings/{finding_id}/resolve",
            json={"issue_state": "resolved", "overrides": {str(STUDENT): "inherit"}},
            headers=HEADERS,
        )

        run_history = await client.get(f"/v1/audit/scans/{scan_id}/events", headers=HEADERS)
        finding_history = await client.get(f"/v1/audit/findings/{finding_id}/events", headers=HEADERS)
        missing_run = await client.get("/v1/audit/scans/9999/events", headers=HEADERS)

    assert [item["event_type"] for item in run_history.json()["data"]["items"]] == [
        "scan.run.started",
        "scan.run.completed",
    ]
    # The rescan removed the finding; its history is still readable.
    async with SessionLocal() as session:
        remaining = (await session.execute(select(func.count()).select_from(Finding))).scalar()
    assert remaining == 0
    assert [item["event_type"] for item in finding_history.json()["data"]["items"]] == [
        "finding.overrides.applied",
        "finding.state.changed",
    ]
    assert missing_run.status_code == 404
