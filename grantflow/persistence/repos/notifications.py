from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.domain.models import (
    NotificationInboxItem,
    NotificationJob,
    NotificationOutbox,
    NotificationPreference,
    NotificationTemplate,
)
from grantflow.domain.states import JobState, OutboxStatus


def add_outbox(session: AsyncSession, **fields: Any) -> NotificationOutbox:
    row = NotificationOutbox(**fields)
    session.add(row)
    return row


async def get_outbox(session: AsyncSession, outbox_id: str) -> NotificationOutbox | None:
    result = await session.execute(select(NotificationOutbox).where(NotificationOutbox.id == outbox_id))
    return result.scalar_one_or_none()


async def list_pending_outbox_ids(session: AsyncSession, *, limit: int) -> list[str]:
    result = await session.execute(
        select(NotificationOutbox.id)
        .where(NotificationOutbox.status == OutboxStatus.PENDING.value)
        .order_by(NotificationOutbox.created_at.asc(), NotificationOutbox.id.asc())
        .limit(limit)
    )
    return [row[0] for row in result.all()]


async def lock_pending_outbox(session: AsyncSession, outbox_id: str) -> NotificationOutbox | None:
    # Skip rows locked by another fan-out worker instead of blocking on them.
    result = await session.execute(
        select(NotificationOutbox)
        .where(NotificationOutbox.id == outbox_id, NotificationOutbox.status == OutboxStatus.PENDING.value)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_outbox(
    session: AsyncSession,
    *,
    status: str | None = None,
    tenant_id: str | None = None,
    entity_id: str | None = None,
    limit: int = 50,
) -> list[NotificationOutbox]:
    stmt = select(NotificationOutbox)
    if status:
        stmt = stmt.where(NotificationOutbox.status == status)
    if tenant_id:
        stmt = stmt.where(NotificationOutbox.tenant_id == tenant_id)
    if entity_id:
        stmt = stmt.where(NotificationOutbox.entity_id == entity_id)
    stmt = stmt.order_by(NotificationOutbox.created_at.asc(), NotificationOutbox.id.asc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_job(session: AsyncSession, job_id: str) -> NotificationJob | None:
    result = await session.execute(
        select(NotificationJob).where(NotificationJob.id == job_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def existing_job_keys(session: AsyncSession, outbox_id: str) -> set[tuple[str, str]]:
    result = await session.execute(
        select(NotificationJob.recipient_user_id, NotificationJob.channel).where(
            NotificationJob.outbox_id == outbox_id
        )
    )
    return {(row[0], row[1]) for row in result.all()}


def add_job(session: AsyncSession, **fields: Any) -> NotificationJob:
    job = NotificationJob(**fields)
    session.add(job)
    return job


async def list_jobs(
    session: AsyncSession,
    *,
    outbox_id: str | None = None,
    state: str | None = None,
    recipient_user_id: str | None = None,
    limit: int = 100,
) -> list[NotificationJob]:
    stmt = select(NotificationJob)
    if outbox_id:
        stmt = stmt.where(NotificationJob.outbox_id == outbox_id)
    if state:
        stmt = stmt.where(NotificationJob.state == state)
    if recipient_user_id:
        stmt = stmt.where(NotificationJob.recipient_user_id == recipient_user_id)
    stmt = stmt.order_by(NotificationJob.created_at.asc(), NotificationJob.id.asc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_queued_job_ids(session: AsyncSession, *, limit: int) -> list[str]:
    result = await session.execute(
        select(NotificationJob.id)
        .where(NotificationJob.state == JobState.QUEUED.value)
        .order_by(NotificationJob.created_at.asc(), NotificationJob.id.asc())
        .limit(limit)
    )
    return [row[0] for row in result.all()]


async def claim_job(session: AsyncSession, job_id: str, *, now: datetime) -> bool:
    # Compare-and-set keeps two deliverers from sending the same job.
    result = await session.execute(
        update(NotificationJob)
        .where(NotificationJob.id == job_id, NotificationJob.state == JobState.QUEUED.value)
        .values(
            state=JobState.SENDING.value,
            attempts=NotificationJob.attempts + 1,
            next_attempt_at=None,
            updated_at=now,
        )
    )
    return bool(result.rowcount)


async def requeue_due_failed_jobs(session: AsyncSession, *, now: datetime, max_attempts: int) -> int:
    result = await session.execute(
        update(NotificationJob)
        .where(
            NotificationJob.state == JobState.FAILED.value,
            NotificationJob.next_attempt_at.is_not(None),
            NotificationJob.next_attempt_at <= now,
            NotificationJob.attempts < max_attempts,
        )
        .values(state=JobState.QUEUED.value, next_attempt_at=None, updated_at=now)
    )
    return int(result.rowcount or 0)


async def recover_stale_sending_jobs(
    session: AsyncSession,
    *,
    stale_before: datetime,
    now: datetime,
    max_attempts: int,
) -> tuple[int, int]:
    """Return (requeued, failed) counts for SENDING jobs whose worker went away."""
    stale = (
        NotificationJob.state == JobState.SENDING.value,
        NotificationJob.updated_at <= stale_before,
    )
    requeued = await session.execute(
        update(NotificationJob)
        .where(*stale, NotificationJob.attempts < max_attempts)
        .values(state=JobState.QUEUED.value, updated_at=now)
    )
    exhausted = await session.execute(
        update(NotificationJob)
        .where(*stale, NotificationJob.attempts >= max_attempts)
        .values(state=JobState.FAILED.value, error="delivery timed out", next_attempt_at=None, updated_at=now)
    )
    return int(requeued.rowcount or 0), int(exhausted.rowcount or 0)


async def find_templates(
    session: AsyncSession,
    *,
    event_key: str,
    channel: str,
    tenant_id: str | None,
    langs: list[str],
) -> list[NotificationTemplate]:
    tenant_filter = NotificationTemplate.tenant_id.is_(None)
    if tenant_id is not None:
        tenant_filter = or_(NotificationTemplate.tenant_id == tenant_id, NotificationTemplate.tenant_id.is_(None))
    result = await session.execute(
        select(NotificationTemplate)
        .where(
            NotificationTemplate.event_key == event_key,
            NotificationTemplate.channel == channel,
            NotificationTemplate.active.is_(True),
            NotificationTemplate.lang.in_(langs),
            tenant_filter,
        )
        .order_by(NotificationTemplate.version.desc())
    )
    return list(result.scalars().all())


async def next_template_version(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    event_key: str,
    channel: str,
    lang: str,
) -> int:
    tenant_filter = (
        NotificationTemplate.tenant_id.is_(None) if tenant_id is None else NotificationTemplate.tenant_id == tenant_id
    )
    current = await session.scalar(
        select(func.max(NotificationTemplate.version)).where(
            tenant_filter,
            NotificationTemplate.event_key == event_key,
            NotificationTemplate.channel == channel,
            NotificationTemplate.lang == lang,
        )
    )
    return int(current or 0) + 1


def add_template(session: AsyncSession, **fields: Any) -> NotificationTemplate:
    template = NotificationTemplate(**fields)
    session.add(template)
    return template


async def list_preferences(
    session: AsyncSession,
    *,
    user_ids: list[str],
    event_key: str,
) -> list[NotificationPreference]:
    if not user_ids:
        return []
    result = await session.execute(
        select(NotificationPreference).where(
            NotificationPreference.user_id.in_(user_ids),
            NotificationPreference.event_key.in_([event_key, "*"]),
        )
    )
    return list(result.scalars().all())


async def get_preference(
    session: AsyncSession,
    *,
    user_id: str,
    event_key: str,
    channel: str,
) -> NotificationPreference | None:
    result = await session.execute(
        select(NotificationPreference).where(
            NotificationPreference.user_id == user_id,
            NotificationPreference.event_key == event_key,
            NotificationPreference.channel == channel,
        )
    )
    return result.scalar_one_or_none()


def add_preference(session: AsyncSession, **fields: Any) -> NotificationPreference:
    preference = NotificationPreference(**fields)
    session.add(preference)
    return preference


def add_inbox_item(session: AsyncSession, **fields: Any) -> NotificationInboxItem:
    item = NotificationInboxItem(**fields)
    session.add(item)
    return item


async def list_inbox(
    session: AsyncSession,
    *,
    user_id: str,
    unread_only: bool = False,
    limit: int = 50,
) -> list[NotificationInboxItem]:
    stmt = select(NotificationInboxItem).where(NotificationInboxItem.user_id == user_id)
    if unread_only:
        stmt = stmt.where(NotificationInboxItem.unread.is_(True))
    stmt = stmt.order_by(NotificationInboxItem.created_at.desc(), NotificationInboxItem.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def mark_inbox_read(session: AsyncSession, *, user_id: str, item_id: str) -> bool:
    result = await session.execute(
        update(NotificationInboxItem)
        .where(NotificationInboxItem.id == item_id, NotificationInboxItem.user_id == user_id)
        .values(unread=False)
    )
    return bool(result.rowcount)
