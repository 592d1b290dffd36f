from __future__ import annotations

from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.domain.models import GrantUser


async def get_user(session: AsyncSession, user_id: str) -> GrantUser | None:
    result = await session.execute(select(GrantUser).where(GrantUser.id == user_id))
    return result.scalar_one_or_none()


async def find_active_users(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    user_ids: list[str] | None = None,
    organization_ids: list[str] | None = None,
    roles: list[str] | None = None,
) -> list[GrantUser]:
    # Union of explicit ids, organization members and role members; empty selectors match nobody.
    clauses = []
    if user_ids:
        clauses.append(GrantUser.id.in_(user_ids))
    if organization_ids:
        clauses.append(GrantUser.organization_id.in_(organization_ids))
    if roles:
        clauses.append(GrantUser.role.in_(roles))
    if not clauses:
        return []
    stmt = select(GrantUser).where(GrantUser.is_active.is_(True), or_(*clauses))
    if tenant_id is not None:
        stmt = stmt.where(GrantUser.tenant_id == tenant_id)
    result = await session.execute(stmt.order_by(GrantUser.id))
    return list(result.scalars().all())


def create_user(session: AsyncSession, **fields: Any) -> GrantUser:
    user = GrantUser(**fields)
    session.add(user)
    return user
