from __future__ import annotations

import pytest
from sqlalchemy import select

from grantflow.core.errors import ConflictError, IdempotencyKeyConflictError, ValidationError
from grantflow.domain.models import IdempotencyRecord, PartnerBudget
from grantflow.persistence.db import SessionLocal
from grantflow.services import budgets as budget_service
from grantflow.services.idempotency import build_request
from grantflow.services.lifecycles import BUDGET_LIFECYCLE
from grantflow.services.workflow import transition
from grantflow.tests.utils.factories import (
    DEFAULT_LINES,
    OFFICER_USER,
    PARTNER_ID,
    PARTNER_USER,
    PROJECT_ID,
    TENANT_ID,
    count_audit,
    count_outbox,
    create_budget,
    fetch,
)


async def _create_with_key(session, key: str, *, lines=DEFAULT_LINES):
    return await budget_service.create_draft(
        session,
        tenant_id=TENANT_ID,
        project_id=PROJECT_ID,
        partner_id=PARTNER_ID,
        currency="EUR",
        actor_id=PARTNER_USER,
        lines=lines,
        idempotency=build_request(key, payload={"lines": lines}, tenant_id=TENANT_ID),
    )


@pytest.mark.asyncio
async def test_replayed_create_returns_stored_response_without_side_effects(session) -> None:
    first = await _create_with_key(session, "create-1")
    second = await _create_with_key(session, "create-1")

    assert first.replayed is False
    assert second.replayed is True
    assert second.response == first.response
    assert await count_audit(entity_id=first.response["id"]) == 1

    async with SessionLocal() as fresh:
        budgets = (await fresh.execute(select(PartnerBudget))).scalars().all()
    assert len(budgets) == 1


@pytest.mark.asyncio
async def test_replayed_submit_enqueues_one_notification(session) -> None:
    budget = await create_budget(session)
    request = build_request("submit-1", payload={"budget_id": budget["id"]}, tenant_id=TENANT_ID)

    first = await budget_service.submit_budget(
        session, budget_id=budget["id"], actor_id=PARTNER_USER, idempotency=request
    )
    second = await budget_service.submit_budget(
        session, budget_id=budget["id"], actor_id=PARTNER_USER, idempotency=request
    )

    assert second.replayed is True
    assert second.response["partner_budget"]["version"] == first.response["partner_budget"]["version"] == 2
    assert await count_audit(entity_id=budget["id"], action_key="budget.submit") == 1
    assert await count_outbox(entity_id=budget["id"], event_key="budget.submitted") == 1


@pytest.mark.asyncio
async def test_key_reuse_with_different_payload_is_rejected(session) -> None:
    await _create_with_key(session, "create-2")

    with pytest.raises(IdempotencyKeyConflictError) as excinfo:
        await _create_with_key(session, "create-2", lines=[{"qty": "1", "unit_cost": "10"}])

    assert excinfo.value.code == "IDEMPOTENCY_KEY_CONFLICT"
    assert await count_audit(action_key="budget.create") == 1


@pytest.mark.asyncio
async def test_key_reuse_for_another_action_is_rejected(session) -> None:
    budget = await create_budget(session)
    request = build_request("shared", payload={"budget_id": budget["id"]}, tenant_id=TENANT_ID)
    await budget_service.submit_budget(session, budget_id=budget["id"], actor_id=PARTNER_USER, idempotency=request)

    with pytest.raises(IdempotencyKeyConflictError):
        await budget_service.request_revisions(
            session, budget_id=budget["id"], actor_id=OFFICER_USER, idempotency=request
        )

    stored = await fetch(PartnerBudget, budget["id"])
    assert stored.status == "SUBMITTED"


@pytest.mark.asyncio
async def test_failed_action_releases_its_key(session) -> None:
    budget = await create_budget(session, lines=[])
    request = build_request("submit-empty", payload={"budget_id": budget["id"]}, tenant_id=TENANT_ID)

    with pytest.raises(ValidationError) as excinfo:
        await budget_service.submit_budget(
            session, budget_id=budget["id"], actor_id=PARTNER_USER, idempotency=request
        )
    assert excinfo.value.code == "ZERO_BUDGET_TOTAL"

    async with SessionLocal() as fresh:
        leftover = (
            await fresh.execute(select(IdempotencyRecord).where(IdempotencyRecord.idem_key == "submit-empty"))
        ).scalar_one_or_none()
    assert leftover is None

    await budget_service.update_draft(session, budget_id=budget["id"], actor_id=PARTNER_USER, lines=DEFAULT_LINES)
    retried = await budget_service.submit_budget(
        session, budget_id=budget["id"], actor_id=PARTNER_USER, idempotency=request
    )
    assert retried.replayed is False
    assert retried.response["partner_budget"]["status"] == "SUBMITTED"


@pytest.mark.asyncio
async def test_stale_version_is_rejected_without_writes(session) -> None:
    budget = await create_budget(session)

    with pytest.raises(ConflictError) as excinfo:
        await budget_service.update_draft(
            session,
            budget_id=budget["id"],
            actor_id=PARTNER_USER,
            rules={"note": "late edit"},
            expected_version=5,
        )

    assert excinfo.value.code == "VERSION_MISMATCH"
    assert excinfo.value.details == {"expected_version": 5, "current_version": 1}
    assert await count_audit(entity_id=budget["id"], action_key="budget.update_draft") == 0


@pytest.mark.asyncio
async def test_update_with_matching_version_bumps_it(session) -> None:
    budget = await create_budget(session)

    outcome = await budget_service.update_draft(
        session,
        budget_id=budget["id"],
        actor_id=PARTNER_USER,
        lines=[{"qty": "4", "unit_cost": "25"}],
        expected_version=1,
    )

    assert outcome.response["version"] == 2
    assert outcome.response["ceiling_total"] == "100.00"
    assert outcome.response["status"] == "DRAFT"


@pytest.mark.asyncio
async def test_empty_update_is_rejected(session) -> None:
    budget = await create_budget(session)
    with pytest.raises(ValidationError) as excinfo:
        await budget_service.update_draft(session, budget_id=budget["id"], actor_id=PARTNER_USER)
    assert excinfo.value.code == "EMPTY_UPDATE"


@pytest.mark.asyncio
async def test_unknown_and_non_adjacent_targets_are_rejected(session) -> None:
    budget = await create_budget(session)

    with pytest.raises(ValidationError) as unknown:
        await transition(
            session,
            BUDGET_LIFECYCLE,
            entity_id=budget["id"],
            actor_id=PARTNER_USER,
            target_state="ARCHIVED",
            action_key="budget.archive",
        )
    assert unknown.value.code == "UNKNOWN_STATE"

    with pytest.raises(ConflictError) as skipped:
        await transition(
            session,
            BUDGET_LIFECYCLE,
            entity_id=budget["id"],
            actor_id=PARTNER_USER,
            target_state="LOCKED",
            action_key="budget.lock",
        )
    assert skipped.value.code == "INVALID_TRANSITION"

    stored = await fetch(PartnerBudget, budget["id"])
    assert stored.status == "DRAFT"
    assert stored.version == 1


@pytest.mark.asyncio
async def test_guard_failure_reports_invalid_state(session) -> None:
    budget = await create_budget(session)

    with pytest.raises(ConflictError) as excinfo:
        await budget_service.return_to_draft(session, budget_id=budget["id"], actor_id=PARTNER_USER)

    assert excinfo.value.code == "INVALID_STATE"
    assert excinfo.value.details == {"current_state": "DRAFT"}


@pytest.mark.asyncio
async def test_engine_owned_fields_cannot_be_changed(session) -> None:
    budget = await create_budget(session)

    with pytest.raises(ValidationError) as excinfo:
        await transition(
            session,
            BUDGET_LIFECYCLE,
            entity_id=budget["id"],
            actor_id=PARTNER_USER,
            target_state=None,
            action_key="budget.tamper",
            changes={"version": 42},
        )

    assert excinfo.value.code == "FIELD_NOT_WRITABLE"


@pytest.mark.asyncio
async def test_revision_round_trip_returns_to_draft(session) -> None:
    budget = await create_budget(session)
    await budget_service.submit_budget(session, budget_id=budget["id"], actor_id=PARTNER_USER)

    revised = await budget_service.request_revisions(
        session, budget_id=budget["id"], actor_id=OFFICER_USER, comment="Split travel costs"
    )
    assert revised.response["status"] == "REVISION_REQUESTED"
    assert revised.response["substatus"]["revision_comment"] == "Split travel costs"

    drafted = await budget_service.return_to_draft(session, budget_id=budget["id"], actor_id=PARTNER_USER)
    assert drafted.response["status"] == "DRAFT"
    assert drafted.response["version"] == 4
    assert await count_audit(entity_id=budget["id"]) == 4
