from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.domain.models import Approval, ApprovalPolicy
from grantflow.domain.states import ApprovalStatus


async def get_approval(session: AsyncSession, approval_id: str) -> Approval | None:
    result = await session.execute(select(Approval).where(Approval.id == approval_id))
    return result.scalar_one_or_none()


async def get_approval_for_update(session: AsyncSession, approval_id: str) -> Approval | None:
    result = await session.execute(
        select(Approval)
        .where(Approval.id == approval_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_pending_for_entity(session: AsyncSession, *, entity_type: str, entity_id: str) -> Approval | None:
    result = await session.execute(
        select(Approval)
        .where(
            Approval.entity_type == entity_type,
            Approval.entity_id == entity_id,
            Approval.status == ApprovalStatus.PENDING.value,
        )
        .order_by(Approval.created_at.desc(), Approval.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_approvals(
    session: AsyncSession,
    *,
    tenant_id: str,
    status: str | None = None,
    assignee_role: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Approval]:
    stmt = select(Approval).where(Approval.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(Approval.status == status)
    if assignee_role:
        stmt = stmt.where(Approval.assignee_role == assignee_role)
    if entity_type:
        stmt = stmt.where(Approval.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(Approval.entity_id == entity_id)
    stmt = stmt.order_by(Approval.created_at, Approval.id).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


def create_approval(session: AsyncSession, **fields: Any) -> Approval:
    approval = Approval(**fields)
    session.add(approval)
    return approval


async def list_active_policies(session: AsyncSession, entity_type: str) -> list[ApprovalPolicy]:
    # Highest version first so callers keep the newest row per scope.
    result = await session.execute(
        select(ApprovalPolicy)
        .where(ApprovalPolicy.entity_type == entity_type, ApprovalPolicy.is_active.is_(True))
        .order_by(ApprovalPolicy.version.desc(), ApprovalPolicy.created_at.desc())
    )
    return list(result.scalars().all())


async def get_policy(session: AsyncSession, policy_id: str) -> ApprovalPolicy | None:
    result = await session.execute(select(ApprovalPolicy).where(ApprovalPolicy.id == policy_id))
    return result.scalar_one_or_none()


async def next_policy_version(session: AsyncSession, *, entity_type: str, scope_id: str | None) -> int:
    stmt = select(func.max(ApprovalPolicy.version)).where(ApprovalPolicy.entity_type == entity_type)
    if scope_id is None:
        stmt = stmt.where(ApprovalPolicy.scope_id.is_(None))
    else:
        stmt = stmt.where(ApprovalPolicy.scope_id == scope_id)
    current = (await session.execute(stmt)).scalar_one_or_none()
    return int(current or 0) + 1


def create_policy(session: AsyncSession, **fields: Any) -> ApprovalPolicy:
    policy = ApprovalPolicy(**fields)
    session.add(policy)
    return policy
