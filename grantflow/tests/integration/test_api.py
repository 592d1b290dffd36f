from __future__ import annotations

import pytest

from grantflow.tests.utils.factories import (
    DEFAULT_LINES,
    DEFAULT_TOTAL,
    FINANCE_USER,
    OFFICER_USER,
    PARTNER_ID,
    PARTNER_USER,
    PROJECT_ID,
    headers,
    seed_users,
)


_BUDGET_BODY = {"project_id": PROJECT_ID, "partner_id": PARTNER_ID, "currency": "EUR", "lines": DEFAULT_LINES}


def _partner(**extra: str) -> dict[str, str]:
    return headers(PARTNER_USER, "partner", **extra)


async def _create(client, **extra_headers: str) -> dict:
    response = await client.post("/v1/budgets", json=_BUDGET_BODY, headers=_partner(**extra_headers))
    assert response.status_code == 201
    return response.json()["data"]


@pytest.mark.asyncio
async def test_health_reports_database(client) -> None:
    response = await client.get("/v1/health")

    assert response.status_code == 200
    body = response.json()
    assert body["data"]["status"] == "ok"
    assert body["data"]["database"] == "ok"
    assert body["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_missing_identity_headers_return_error_envelope(client) -> None:
    response = await client.get("/v1/budgets")

    assert response.status_code == 401
    body = response.json()
    assert body["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert body["meta"]["request_id"]


@pytest.mark.asyncio
async def test_create_budget_returns_etag_and_envelope(client) -> None:
    response = await client.post("/v1/budgets", json=_BUDGET_BODY, headers=_partner())

    assert response.status_code == 201
    assert response.headers["ETag"] == '"1"'
    body = response.json()
    assert body["data"]["status"] == "DRAFT"
    assert body["data"]["ceiling_total"] == DEFAULT_TOTAL
    assert "replayed" not in body["meta"]


@pytest.mark.asyncio
async def test_idempotency_key_replays_and_conflicts(client) -> None:
    first = await _create(client, **{"Idempotency-Key": "create-1"})

    replay = await client.post(
        "/v1/budgets", json=_BUDGET_BODY, headers=_partner(**{"Idempotency-Key": "create-1"})
    )
    assert replay.status_code == 201
    assert replay.json()["meta"]["replayed"] is True
    assert replay.json()["data"]["id"] == first["id"]

    conflict = await client.post(
        "/v1/budgets",
        json={**_BUDGET_BODY, "currency": "USD"},
        headers=_partner(**{"Idempotency-Key": "create-1"}),
    )
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "IDEMPOTENCY_KEY_CONFLICT"

    listing = await client.get("/v1/budgets", headers=_partner())
    assert len(listing.json()["data"]["items"]) == 1


@pytest.mark.asyncio
async def test_if_match_guards_updates(client) -> None:
    budget = await _create(client)
    url = f"/v1/budgets/{budget['id']}"

    stale = await client.patch(url, json={"currency": "USD"}, headers=_partner(**{"If-Match": '"7"'}))
    assert stale.status_code == 409
    assert stale.json()["error"]["code"] == "VERSION_MISMATCH"
    assert stale.json()["error"]["details"] == {"expected_version": 7, "current_version": 1}

    malformed = await client.patch(
        url, json={"currency": "USD"}, headers=_partner(**{"If-Match": "latest"})
    )
    assert malformed.status_code == 400
    assert malformed.json()["error"]["code"] == "INVALID_IF_MATCH"

    fresh = await client.patch(url, json={"currency": "USD"}, headers=_partner(**{"If-Match": '"1"'}))
    assert fresh.status_code == 200
    assert fresh.headers["ETag"] == '"2"'
    assert fresh.json()["data"]["currency"] == "USD"


@pytest.mark.asyncio
async def test_other_tenants_and_roles_are_kept_out(client) -> None:
    budget = await _create(client)

    outsider = headers("u-other", "partner", tenant_id="t-other")
    foreign = await client.get(f"/v1/budgets/{budget['id']}", headers=outsider)
    assert foreign.status_code == 404
    assert foreign.json()["error"]["code"] == "NOT_FOUND"

    forbidden = await client.post(f"/v1/budgets/{budget['id']}/approve", headers=_partner())
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "FORBIDDEN"


@pytest.mark.asyncio
async def test_direct_approval_seeds_disbursements(client) -> None:
    budget = await _create(client)
    budget_url = f"/v1/budgets/{budget['id']}"

    submitted = await client.post(f"{budget_url}/submit", headers=_partner())
    assert submitted.status_code == 200
    assert submitted.json()["data"]["partner_budget"]["status"] == "SUBMITTED"
    assert submitted.json()["data"]["approval"] is None
    assert submitted.headers["ETag"] == '"2"'

    approved = await client.post(f"{budget_url}/approve", headers=headers(OFFICER_USER, "grant_officer"))
    assert approved.status_code == 200

    detail = await client.get(budget_url, headers=_partner())
    data = detail.json()["data"]
    assert data["status"] == "APPROVED"
    assert len(data["disbursements"]) == 3


@pytest.mark.asyncio
async def test_policy_routed_decision_enforces_step_role(client) -> None:
    policy = await client.post(
        "/v1/approval-policies",
        json={"entity_type": "partner_budget", "config": {"steps": [{"assignee_role": "finance"}]}},
        headers=headers("u-admin", "admin"),
    )
    assert policy.status_code == 201
    assert policy.json()["data"]["version"] == 1

    budget = await _create(client)
    submitted = await client.post(f"/v1/budgets/{budget['id']}/submit", headers=_partner())
    approval = submitted.json()["data"]["approval"]
    assert approval["status"] == "PENDING"
    decision_url = f"/v1/approvals/{approval['id']}/decision"

    officer = headers(OFFICER_USER, "grant_officer")
    denied = await client.post(decision_url, json={"decision": "APPROVE"}, headers=officer)
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "FORBIDDEN"

    decided = await client.post(
        decision_url, json={"decision": "approve", "comment": "fits"}, headers=headers(FINANCE_USER, "finance")
    )
    assert decided.status_code == 200
    assert decided.json()["data"]["approval"]["status"] == "APPROVED"

    detail = await client.get(f"/v1/budgets/{budget['id']}", headers=headers(FINANCE_USER, "finance"))
    assert detail.json()["data"]["status"] == "APPROVED"


@pytest.mark.asyncio
async def test_audit_entries_require_auditor_role(client) -> None:
    budget = await _create(client)

    denied = await client.get("/v1/audit/entries", headers=_partner())
    assert denied.status_code == 403

    listing = await client.get(
        "/v1/audit/entries", params={"entity_id": budget["id"]}, headers=headers("u-auditor", "auditor")
    )
    assert listing.status_code == 200
    items = listing.json()["data"]["items"]
    assert [item["action_key"] for item in items] == ["budget.create"]


@pytest.mark.asyncio
async def test_notification_ops_fill_the_inbox(client, session) -> None:
    await seed_users(session)
    budget = await _create(client)
    await client.post(f"/v1/budgets/{budget['id']}/submit", headers=_partner())
    admin = headers("u-admin", "admin")

    fan_out = await client.post("/v1/notifications/ops/fan-out", json={}, headers=admin)
    assert fan_out.json()["data"] == {"processed": 1, "failed": 0, "jobs_created": 3}

    delivered = await client.post("/v1/notifications/ops/deliver", json={"limit": 10}, headers=admin)
    assert delivered.json()["data"]["sent"] == 3

    inbox = await client.get("/v1/notifications/inbox", headers=_partner())
    items = inbox.json()["data"]["items"]
    assert len(items) == 1
    assert items[0]["event_key"] == "budget.submitted"
    assert items[0]["unread"] is True

    read = await client.post(f"/v1/notifications/inbox/{items[0]['id']}/read", headers=_partner())
    assert read.status_code == 200
    unread = await client.get(
        "/v1/notifications/inbox", params={"unread_only": "true"}, headers=_partner()
    )
    assert unread.json()["data"]["items"] == []
