from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from grantflow.core.config import get_settings
from grantflow.core.errors import IdempotencyInProgressError
from grantflow.domain.models import IdempotencyRecord
from grantflow.persistence.db import SessionLocal
from grantflow.services import idempotency
from grantflow.services.idempotency import build_request, reserve
from grantflow.services.workflow import execute_action
from grantflow.tests.utils.factories import OFFICER_USER, TENANT_ID


ACTION = "budget.submit"


async def _seed_record(
    key: str,
    *,
    request_hash: str,
    updated_at: datetime,
    expires_at: datetime,
    completed: bool = False,
) -> None:
    async with SessionLocal() as db:
        db.add(
            IdempotencyRecord(
                idem_key=key,
                tenant_id=TENANT_ID,
                action_key=ACTION,
                actor_id=OFFICER_USER,
                request_hash=request_hash,
                response_json={"ok": True} if completed else None,
                completed_at=updated_at if completed else None,
                created_at=updated_at,
                updated_at=updated_at,
                expires_at=expires_at,
            )
        )
        await db.commit()


async def _load_record(key: str) -> IdempotencyRecord | None:
    async with SessionLocal() as db:
        result = await db.execute(select(IdempotencyRecord).where(IdempotencyRecord.idem_key == key))
        return result.scalar_one_or_none()


def _reserve(db, key: str, request_hash: str):
    return reserve(
        db,
        key=key,
        action_key=ACTION,
        actor_id=OFFICER_USER,
        request_hash=request_hash,
        tenant_id=TENANT_ID,
    )


@pytest.fixture
def no_waiting(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("IDEMPOTENCY_WAIT_ATTEMPTS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_in_flight_key_reports_in_progress(session, no_waiting) -> None:
    now = datetime.now(timezone.utc)
    await _seed_record("busy", request_hash="h1", updated_at=now, expires_at=now + timedelta(hours=1))

    with pytest.raises(IdempotencyInProgressError) as excinfo:
        await _reserve(session, "busy", "h1")

    assert excinfo.value.code == "IDEMPOTENCY_IN_PROGRESS"
    assert excinfo.value.details == {"idempotency_key": "busy"}


@pytest.mark.asyncio
async def test_abandoned_reservation_is_taken_over(session) -> None:
    now = datetime.now(timezone.utc)
    abandoned_at = now - timedelta(seconds=get_settings().idempotency_reservation_timeout_s + 60)
    await _seed_record("abandoned", request_hash="h1", updated_at=abandoned_at, expires_at=now + timedelta(hours=1))

    result = await _reserve(session, "abandoned", "h1")

    assert result.won is True
    record = await _load_record("abandoned")
    assert record is not None
    assert record.completed_at is None
    assert record.updated_at.replace(tzinfo=timezone.utc) > abandoned_at


@pytest.mark.asyncio
async def test_expired_record_is_discarded_and_key_reused(session) -> None:
    now = datetime.now(timezone.utc)
    await _seed_record(
        "expired",
        request_hash="old-payload",
        updated_at=now - timedelta(days=2),
        expires_at=now - timedelta(hours=1),
        completed=True,
    )

    # A different payload would conflict if the expired row were still honoured.
    result = await _reserve(session, "expired", "new-payload")

    assert result.won is True
    record = await _load_record("expired")
    assert record is not None
    assert record.request_hash == "new-payload"
    assert record.completed_at is None


@pytest.mark.asyncio
async def test_losing_the_insert_race_rereads_the_winner(session, no_waiting, monkeypatch: pytest.MonkeyPatch) -> None:
    now = datetime.now(timezone.utc)
    await _seed_record("race", request_hash="h1", updated_at=now, expires_at=now + timedelta(hours=1))
    real_load = idempotency._load
    reads: list[str] = []

    async def _load_before_competitor_commit(db, key):
        reads.append(key)
        if len(reads) == 1:
            return None
        return await real_load(db, key)

    monkeypatch.setattr(idempotency, "_load", _load_before_competitor_commit)

    with pytest.raises(IdempotencyInProgressError):
        await _reserve(session, "race", "h1")

    assert reads == ["race", "race"]
    async with SessionLocal() as db:
        rows = (await db.execute(select(IdempotencyRecord).where(IdempotencyRecord.idem_key == "race"))).all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_sequential_reservations_have_one_winner(session, no_waiting) -> None:
    first = await _reserve(session, "single", "h1")
    assert first.won is True

    async with SessionLocal() as other:
        with pytest.raises(IdempotencyInProgressError):
            await _reserve(other, "single", "h1")


@pytest.mark.asyncio
async def test_cancelled_action_releases_its_key(session) -> None:
    request = build_request("cancelled", payload={"n": 1}, tenant_id=TENANT_ID)

    async def _interrupted(active):
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await execute_action(session, action_key=ACTION, actor_id=OFFICER_USER, work=_interrupted, idempotency=request)

    assert await _load_record("cancelled") is None

    async def _work(active):
        return {"done": True}

    retried = await execute_action(session, action_key=ACTION, actor_id=OFFICER_USER, work=_work, idempotency=request)
    assert retried.replayed is False
    assert retried.response == {"done": True}
