from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.domain.models import Contract
from grantflow.domain.states import ContractState


async def get_contract(session: AsyncSession, contract_id: str) -> Contract | None:
    result = await session.execute(select(Contract).where(Contract.id == contract_id))
    return result.scalar_one_or_none()


async def get_contract_for_update(session: AsyncSession, contract_id: str) -> Contract | None:
    # Row lock serializes concurrent transitions on the same contract.
    result = await session.execute(
        select(Contract)
        .where(Contract.id == contract_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_contract_for_tenant(session: AsyncSession, contract_id: str, tenant_id: str) -> Contract | None:
    result = await session.execute(
        select(Contract).where(Contract.id == contract_id, Contract.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def find_latest_for_budget(session: AsyncSession, budget_id: str) -> Contract | None:
    # Cancelled contracts do not block provisioning a replacement.
    result = await session.execute(
        select(Contract)
        .where(
            Contract.partner_budget_id == budget_id,
            Contract.state != ContractState.CANCELLED.value,
        )
        .order_by(Contract.created_at.desc(), Contract.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_contracts(
    session: AsyncSession,
    *,
    tenant_id: str,
    state: str | None = None,
    partner_budget_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Contract]:
    stmt = select(Contract).where(Contract.tenant_id == tenant_id)
    if state:
        stmt = stmt.where(Contract.state == state)
    if partner_budget_id:
        stmt = stmt.where(Contract.partner_budget_id == partner_budget_id)
    stmt = stmt.order_by(Contract.created_at, Contract.id).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


def create_contract(session: AsyncSession, **fields: Any) -> Contract:
    contract = Contract(**fields)
    session.add(contract)
    return contract
