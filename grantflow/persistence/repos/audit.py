from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.domain.models import AuditLogEntry


async def list_entries(
    session: AsyncSession,
    *,
    tenant_id: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    action_key: str | None = None,
    actor_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditLogEntry]:
    stmt = select(AuditLogEntry)
    # Scope audit queries to a tenant when one is given to prevent cross-tenant leakage.
    if tenant_id:
        stmt = stmt.where(AuditLogEntry.tenant_id == tenant_id)
    if entity_type:
        stmt = stmt.where(AuditLogEntry.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(AuditLogEntry.entity_id == entity_id)
    if action_key:
        stmt = stmt.where(AuditLogEntry.action_key == action_key)
    if actor_id:
        stmt = stmt.where(AuditLogEntry.actor_id == actor_id)
    if occurred_from:
        stmt = stmt.where(AuditLogEntry.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditLogEntry.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditLogEntry.id.asc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_entry_by_id(
    session: AsyncSession, *, entry_id: int, tenant_id: str | None = None
) -> AuditLogEntry | None:
    stmt = select(AuditLogEntry).where(AuditLogEntry.id == entry_id)
    if tenant_id:
        stmt = stmt.where(AuditLogEntry.tenant_id == tenant_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def delete_older_than(session: AsyncSession, cutoff: datetime) -> int:
    # Bulk SQL delete bypasses the ORM immutability listeners.
    result = await session.execute(
        delete(AuditLogEntry)
        .where(AuditLogEntry.occurred_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)
