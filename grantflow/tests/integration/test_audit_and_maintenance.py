from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from grantflow.core.errors import ImmutableRecordError
from grantflow.domain.models import AuditLogEntry, IdempotencyRecord, NotificationJob, NotificationOutbox
from grantflow.persistence.db import SessionLocal
from grantflow.persistence.repos import audit as audit_repo
from grantflow.services import budgets as budget_service
from grantflow.services.audit import record_transition
from grantflow.services.maintenance import (
    prune_audit_entries,
    prune_idempotency,
    prune_notification_history,
    run_task,
)
from grantflow.tests.utils.factories import (
    PARTNER_USER,
    TENANT_ID,
    count_audit,
    create_budget,
)


async def _count(model) -> int:
    async with SessionLocal() as fresh:
        return int(await fresh.scalar(select(func.count()).select_from(model)) or 0)


@pytest.mark.asyncio
async def test_transition_audit_records_states_and_diff(session) -> None:
    budget = await create_budget(session)
    await budget_service.update_draft(
        session, budget_id=budget["id"], actor_id=PARTNER_USER, lines=[{"qty": "1", "unit_cost": "900"}]
    )
    await budget_service.submit_budget(session, budget_id=budget["id"], actor_id=PARTNER_USER)

    async with SessionLocal() as fresh:
        entries = await audit_repo.list_entries(fresh, tenant_id=TENANT_ID, entity_id=budget["id"])

    assert [entry.action_key for entry in entries] == ["budget.create", "budget.update_draft", "budget.submit"]
    created, updated, submitted = entries
    assert created.before_json is None
    assert (created.from_state, created.to_state) == (None, "DRAFT")
    assert (updated.from_state, updated.to_state) == ("DRAFT", "DRAFT")
    assert updated.diff_json["ceiling_total"] == {"from": "5000.00", "to": "900.00"}
    assert updated.diff_json["version"] == {"from": 1, "to": 2}
    assert "status" not in updated.diff_json
    assert (submitted.from_state, submitted.to_state) == ("DRAFT", "SUBMITTED")
    assert submitted.diff_json["status"] == {"from": "DRAFT", "to": "SUBMITTED"}
    assert submitted.actor_id == PARTNER_USER


@pytest.mark.asyncio
async def test_audit_rows_cannot_be_modified(session) -> None:
    budget = await create_budget(session)
    entry = (await session.execute(select(AuditLogEntry).where(AuditLogEntry.entity_id == budget["id"]))).scalar_one()

    entry.actor_id = "someone-else"
    with pytest.raises(ImmutableRecordError) as excinfo:
        await session.commit()
    assert excinfo.value.code == "AUDIT_IMMUTABLE"
    await session.rollback()

    entry = (await session.execute(select(AuditLogEntry).where(AuditLogEntry.entity_id == budget["id"]))).scalar_one()
    await session.delete(entry)
    with pytest.raises(ImmutableRecordError):
        await session.commit()
    await session.rollback()

    assert await count_audit(entity_id=budget["id"]) == 1


@pytest.mark.asyncio
async def test_audit_retention_prunes_only_expired_entries(session) -> None:
    for age_days in (4000, 1):
        await record_transition(
            session,
            actor_id="system",
            action_key="budget.create",
            entity_type="partner_budget",
            entity_id=f"b-{age_days}",
            before=None,
            after={"status": "DRAFT"},
            occurred_at=datetime.now(timezone.utc) - timedelta(days=age_days),
        )
    await session.commit()

    deleted = await prune_audit_entries(session)
    await session.commit()

    assert deleted == 1
    assert await count_audit(entity_id="b-4000") == 0
    assert await count_audit(entity_id="b-1") == 1


@pytest.mark.asyncio
async def test_prune_idempotency_drops_expired_records(session) -> None:
    now = datetime.now(timezone.utc)
    for key, expires_at in (("old", now - timedelta(hours=1)), ("live", now + timedelta(hours=1))):
        session.add(
            IdempotencyRecord(
                idem_key=key,
                action_key="budget.create",
                actor_id=PARTNER_USER,
                request_hash="h",
                created_at=now,
                updated_at=now,
                expires_at=expires_at,
            )
        )
    await session.commit()

    assert await run_task(session, "prune_idempotency") == 1
    await session.commit()
    assert await _count(IdempotencyRecord) == 1


def _outbox(session, outbox_id: str, *, status: str, age_days: int) -> None:
    session.add(
        NotificationOutbox(
            id=outbox_id,
            tenant_id=TENANT_ID,
            event_key="budget.approved",
            payload_json={"audience": {}, "data": {}},
            status=status,
            attempts=1,
            created_at=datetime.now(timezone.utc) - timedelta(days=age_days),
        )
    )


def _job(session, job_id: str, outbox_id: str, *, state: str) -> None:
    now = datetime.now(timezone.utc)
    session.add(
        NotificationJob(
            id=job_id,
            outbox_id=outbox_id,
            tenant_id=TENANT_ID,
            event_key="budget.approved",
            recipient_user_id=PARTNER_USER,
            channel="in_app",
            lang="en",
            state=state,
            attempts=1,
            created_at=now,
            updated_at=now,
        )
    )


@pytest.mark.asyncio
async def test_notification_history_prune_keeps_open_work(session) -> None:
    _outbox(session, "ob-done", status="DONE", age_days=200)
    _outbox(session, "ob-busy", status="DONE", age_days=200)
    _outbox(session, "ob-recent", status="DONE", age_days=1)
    _outbox(session, "ob-pending", status="PENDING", age_days=200)
    await session.flush()
    _job(session, "job-sent", "ob-done", state="SENT")
    _job(session, "job-queued", "ob-busy", state="QUEUED")
    await session.commit()

    deleted = await prune_notification_history(session)
    await session.commit()

    assert deleted == 2
    async with SessionLocal() as fresh:
        remaining = set((await fresh.execute(select(NotificationOutbox.id))).scalars().all())
        jobs = set((await fresh.execute(select(NotificationJob.id))).scalars().all())
    assert remaining == {"ob-busy", "ob-recent", "ob-pending"}
    assert jobs == {"job-queued"}


@pytest.mark.asyncio
async def test_unknown_maintenance_task_is_rejected(session) -> None:
    with pytest.raises(ValueError):
        await run_task(session, "vacuum")  # type: ignore[arg-type]
