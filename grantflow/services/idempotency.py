from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import json
import logging
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.config import get_settings
from grantflow.core.errors import (
    IdempotencyInProgressError,
    IdempotencyKeyConflictError,
    ValidationError,
)
from grantflow.domain.models import IdempotencyRecord


logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"
MAX_KEY_LENGTH = 128


@dataclass(frozen=True)
class IdempotencyRequest:
    key: str
    request_hash: str
    tenant_id: str | None = None


@dataclass(frozen=True)
class ReservationResult:
    # won=False means the key already completed and response is the stored replay body.
    won: bool
    response: Any = None


def normalize_key(value: str) -> str:
    # Enforce idempotency key size constraints for storage safety.
    cleaned = value.strip()
    if not cleaned:
        raise ValidationError("Idempotency-Key is empty", code="IDEMPOTENCY_KEY_INVALID")
    if len(cleaned) > MAX_KEY_LENGTH:
        raise ValidationError(
            f"Idempotency-Key exceeds {MAX_KEY_LENGTH} characters",
            code="IDEMPOTENCY_KEY_INVALID",
        )
    return cleaned


def compute_request_hash(payload: Any) -> str:
    # Hash request payloads deterministically without persisting sensitive data.
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def build_request(
    raw_key: str | None,
    *,
    payload: Any,
    tenant_id: str | None = None,
) -> IdempotencyRequest | None:
    # A missing header or a disabled ledger runs the action without replay protection.
    if raw_key is None or not get_settings().idempotency_enabled:
        return None
    return IdempotencyRequest(
        key=normalize_key(raw_key),
        request_hash=compute_request_hash(payload),
        tenant_id=tenant_id,
    )


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive timestamps; treat them as UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def _load(session: AsyncSession, key: str) -> IdempotencyRecord | None:
    result = await session.execute(
        select(IdempotencyRecord)
        .where(IdempotencyRecord.idem_key == key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _try_insert(
    session: AsyncSession,
    *,
    key: str,
    action_key: str,
    actor_id: str,
    request_hash: str,
    tenant_id: str | None,
) -> bool:
    now = _utc_now()
    record = IdempotencyRecord(
        idem_key=key,
        tenant_id=tenant_id,
        action_key=action_key,
        actor_id=actor_id,
        request_hash=request_hash,
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(hours=get_settings().idempotency_ttl_hours),
    )
    session.add(record)
    try:
        # Commit the reservation on its own so concurrent holders see it before the transition runs.
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return False
    return True


async def _discard_expired(session: AsyncSession, record: IdempotencyRecord) -> None:
    # ORM delete drops the row from the identity map before the key is re-inserted.
    await session.delete(record)
    await session.commit()


async def _take_over(
    session: AsyncSession,
    *,
    record: IdempotencyRecord,
    actor_id: str,
    stale_before: datetime,
) -> bool:
    # Conditional update so only one retrier inherits an abandoned reservation.
    result = await session.execute(
        update(IdempotencyRecord)
        .where(
            IdempotencyRecord.id == record.id,
            IdempotencyRecord.completed_at.is_(None),
            IdempotencyRecord.updated_at <= stale_before,
        )
        .values(updated_at=_utc_now(), actor_id=actor_id)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return bool(result.rowcount)


def _assert_same_request(
    record: IdempotencyRecord,
    *,
    action_key: str,
    actor_id: str,
    request_hash: str,
) -> None:
    if record.request_hash != request_hash:
        raise IdempotencyKeyConflictError(
            "Idempotency-Key already used with different payload",
            details={"idempotency_key": record.idem_key},
        )
    if record.action_key != action_key or record.actor_id != actor_id:
        raise IdempotencyKeyConflictError(
            "Idempotency-Key already used for a different action or actor",
            details={"idempotency_key": record.idem_key},
        )


async def reserve(
    session: AsyncSession,
    *,
    key: str,
    action_key: str,
    actor_id: str,
    request_hash: str,
    tenant_id: str | None = None,
) -> ReservationResult:
    """Reserve an idempotency key for one execution of an action.

    The unique constraint on ``idem_key`` decides which of several concurrent
    callers wins. Losers re-read the winner's row: a completed row is replayed,
    an in-flight row is polled a bounded number of times and then reported as
    in progress. The session must not carry pending work, since the
    reservation commits immediately.
    """
    settings = get_settings()
    max_waits = max(0, int(settings.idempotency_wait_attempts))
    backoff_s = max(0, int(settings.idempotency_wait_backoff_ms)) / 1000.0
    timeout = timedelta(seconds=max(1, int(settings.idempotency_reservation_timeout_s)))
    waits = 0
    while True:
        record = await _load(session, key)
        if record is None:
            won = await _try_insert(
                session,
                key=key,
                action_key=action_key,
                actor_id=actor_id,
                request_hash=request_hash,
                tenant_id=tenant_id,
            )
            if won:
                logger.info("idempotency_reserved key=%s action_key=%s", key, action_key)
                return ReservationResult(won=True)
            # Lost the insert race; re-read the winner's row.
            continue

        now = _utc_now()
        if _as_utc(record.expires_at) <= now:
            logger.info("idempotency_expired_discarded key=%s", key)
            await _discard_expired(session, record)
            continue

        _assert_same_request(record, action_key=action_key, actor_id=actor_id, request_hash=request_hash)

        if record.completed_at is not None:
            logger.info("idempotency_replayed key=%s action_key=%s", key, action_key)
            return ReservationResult(won=False, response=record.response_json)

        stale_before = now - timeout
        if _as_utc(record.updated_at) <= stale_before:
            if await _take_over(session, record=record, actor_id=actor_id, stale_before=stale_before):
                logger.warning("idempotency_reservation_taken_over key=%s action_key=%s", key, action_key)
                return ReservationResult(won=True)
            continue

        if waits >= max_waits:
            raise IdempotencyInProgressError(
                "A request with this Idempotency-Key is still in progress",
                details={"idempotency_key": key},
            )
        waits += 1
        # Release any snapshot before sleeping so the next read sees the holder's commit.
        await session.rollback()
        await asyncio.sleep(backoff_s * waits)


async def mark_completed(session: AsyncSession, key: str, response: Any) -> None:
    # Runs inside the transition transaction so the replay body commits with the mutation.
    now = _utc_now()
    await session.execute(
        update(IdempotencyRecord)
        .where(IdempotencyRecord.idem_key == key)
        .values(response_json=response, completed_at=now, updated_at=now)
    )


async def release(session: AsyncSession, key: str) -> None:
    """Drop an uncompleted reservation after the owning transition failed."""
    try:
        await session.execute(
            delete(IdempotencyRecord).where(
                IdempotencyRecord.idem_key == key,
                IdempotencyRecord.completed_at.is_(None),
            )
        )
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        # The reservation ages out through the takeover timeout if this delete fails.
        logger.exception("idempotency_release_failed key=%s", key)
