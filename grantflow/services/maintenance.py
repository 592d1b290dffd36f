from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Literal

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.config import get_settings
from grantflow.domain.models import IdempotencyRecord, NotificationJob, NotificationOutbox
from grantflow.domain.states import JobState, OutboxStatus
from grantflow.persistence.repos import audit as audit_repo


MaintenanceTask = Literal["prune_idempotency", "prune_audit", "prune_notifications"]


async def prune_idempotency(session: AsyncSession) -> int:
    # Remove expired idempotency records to keep storage bounded.
    result = await session.execute(
        delete(IdempotencyRecord)
        .where(IdempotencyRecord.expires_at < datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def prune_audit_entries(session: AsyncSession) -> int:
    # Remove audit entries beyond the retention window.
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(days=settings.audit_retention_days)
    return await audit_repo.delete_older_than(session, cutoff)


async def prune_notification_history(session: AsyncSession) -> int:
    # Delete only terminal rows so queued work is never lost.
    settings = get_settings()
    cutoff = datetime.now(timezone.utc) - timedelta(days=settings.notify_history_retention_days)
    outbox_ids = (
        await session.execute(
            select(NotificationOutbox.id).where(
                NotificationOutbox.status.in_((OutboxStatus.DONE.value, OutboxStatus.FAILED.value)),
                NotificationOutbox.created_at < cutoff,
            )
        )
    ).scalars().all()
    if not outbox_ids:
        return 0
    open_states = (JobState.QUEUED.value, JobState.SENDING.value)
    busy = set(
        (
            await session.execute(
                select(NotificationJob.outbox_id).where(
                    NotificationJob.outbox_id.in_(outbox_ids),
                    NotificationJob.state.in_(open_states),
                )
            )
        ).scalars().all()
    )
    prunable = [outbox_id for outbox_id in outbox_ids if outbox_id not in busy]
    if not prunable:
        return 0
    # Jobs reference the outbox row, so they go first.
    jobs_deleted = await session.execute(delete(NotificationJob).where(NotificationJob.outbox_id.in_(prunable)))
    outbox_deleted = await session.execute(delete(NotificationOutbox).where(NotificationOutbox.id.in_(prunable)))
    return int(jobs_deleted.rowcount or 0) + int(outbox_deleted.rowcount or 0)


async def run_task(session: AsyncSession, task: MaintenanceTask) -> int:
    if task == "prune_idempotency":
        return await prune_idempotency(session)
    if task == "prune_audit":
        return await prune_audit_entries(session)
    if task == "prune_notifications":
        return await prune_notification_history(session)
    raise ValueError(f"Unknown maintenance task: {task}")
