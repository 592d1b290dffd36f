from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.domain.models import Disbursement, PartnerBudget


async def get_budget(session: AsyncSession, budget_id: str) -> PartnerBudget | None:
    result = await session.execute(select(PartnerBudget).where(PartnerBudget.id == budget_id))
    return result.scalar_one_or_none()


async def get_budget_for_update(session: AsyncSession, budget_id: str) -> PartnerBudget | None:
    # Row lock serializes concurrent transitions on the same budget.
    result = await session.execute(
        select(PartnerBudget)
        .where(PartnerBudget.id == budget_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_budget_for_tenant(session: AsyncSession, budget_id: str, tenant_id: str) -> PartnerBudget | None:
    result = await session.execute(
        select(PartnerBudget).where(PartnerBudget.id == budget_id, PartnerBudget.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def list_budgets(
    session: AsyncSession,
    *,
    tenant_id: str,
    status: str | None = None,
    project_id: str | None = None,
    partner_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[PartnerBudget]:
    stmt = select(PartnerBudget).where(PartnerBudget.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(PartnerBudget.status == status)
    if project_id:
        stmt = stmt.where(PartnerBudget.project_id == project_id)
    if partner_id:
        stmt = stmt.where(PartnerBudget.partner_id == partner_id)
    # Stable ordering avoids non-deterministic pages for the same filter.
    stmt = stmt.order_by(PartnerBudget.created_at, PartnerBudget.id).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


def create_budget(session: AsyncSession, **fields: Any) -> PartnerBudget:
    budget = PartnerBudget(**fields)
    session.add(budget)
    return budget


async def list_disbursements(session: AsyncSession, budget_id: str) -> list[Disbursement]:
    result = await session.execute(
        select(Disbursement)
        .where(Disbursement.budget_id == budget_id)
        .order_by(Disbursement.tranche_number)
    )
    return list(result.scalars().all())


def add_disbursements(session: AsyncSession, rows: list[Disbursement]) -> None:
    session.add_all(rows)
