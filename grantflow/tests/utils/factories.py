from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.domain.models import AuditLogEntry, NotificationOutbox
from grantflow.domain.states import ENTITY_CONTRACT, ENTITY_PARTNER_BUDGET
from grantflow.persistence.db import SessionLocal, unit_of_work
from grantflow.persistence.repos import users as users_repo
from grantflow.services import budgets as budget_service
from grantflow.services import contracts as contract_service
from grantflow.services.approvals.policies import PolicySnapshot, publish_policy


TENANT_ID = "t-test"
PROJECT_ID = "proj-1"
PARTNER_ID = "org-partner"
PARTNER_USER = "u-partner"
OFFICER_USER = "u-officer"
FINANCE_USER = "u-finance"

DEFAULT_LINES = [
    {"category": "staff", "description": "Coordinator", "qty": "10", "unit_cost": "400"},
    {"category": "travel", "description": "Field visits", "qty": "2", "unit_cost": "500"},
]
DEFAULT_TOTAL = "5000.00"


def headers(actor_id: str, role: str, tenant_id: str = TENANT_ID, **extra: str) -> dict[str, str]:
    return {"X-Actor-Id": actor_id, "X-Tenant-Id": tenant_id, "X-Role": role, **extra}


async def seed_users(session: AsyncSession, *, tenant_id: str = TENANT_ID) -> None:
    # Partner has email, officer does not, finance has email: channels differ per user.
    rows = [
        (PARTNER_USER, "partner", PARTNER_ID, "partner@example.org", "en"),
        (OFFICER_USER, "grant_officer", None, None, "en"),
        (FINANCE_USER, "finance", None, "finance@example.org", "fr"),
    ]
    async with unit_of_work(session):
        for user_id, role, organization_id, email, locale in rows:
            users_repo.create_user(
                session,
                id=user_id,
                tenant_id=tenant_id,
                organization_id=organization_id,
                role=role,
                email=email,
                locale=locale,
                is_active=True,
                created_at=datetime.now(timezone.utc),
            )


async def create_budget(
    session: AsyncSession,
    *,
    lines: list[dict[str, Any]] | None = None,
    rules: dict[str, Any] | None = None,
    tenant_id: str = TENANT_ID,
) -> dict[str, Any]:
    outcome = await budget_service.create_draft(
        session,
        tenant_id=tenant_id,
        project_id=PROJECT_ID,
        partner_id=PARTNER_ID,
        currency="eur",
        actor_id=PARTNER_USER,
        lines=DEFAULT_LINES if lines is None else lines,
        rules=rules,
    )
    return outcome.response


async def approved_budget(session: AsyncSession) -> dict[str, Any]:
    """Draft, submit and approve a budget with no approval policy in place."""
    budget = await create_budget(session)
    await budget_service.submit_budget(session, budget_id=budget["id"], actor_id=PARTNER_USER)
    outcome = await budget_service.decide_budget(
        session, budget_id=budget["id"], approve=True, actor_id=OFFICER_USER
    )
    return outcome.response


async def generated_contract(session: AsyncSession) -> dict[str, Any]:
    budget = await approved_budget(session)
    created = await contract_service.create_contract(
        session,
        partner_budget_id=budget["id"],
        partner_id=PARTNER_ID,
        actor_id=OFFICER_USER,
    )
    outcome = await contract_service.generate(
        session,
        contract_id=created.response["id"],
        actor_id=OFFICER_USER,
        rendered_docx_key="contracts/draft.docx",
    )
    return outcome.response


async def publish_budget_policy(
    session: AsyncSession,
    *steps: str,
    amount_lte: str | None = None,
    scope_id: str | None = None,
) -> PolicySnapshot:
    config: dict[str, Any] = {"steps": [{"assignee_role": role} for role in steps]}
    if amount_lte is not None:
        config["auto_approve_if"] = {"amount_lte": amount_lte}
    return await publish_policy(
        session, entity_type=ENTITY_PARTNER_BUDGET, scope_id=scope_id, provider="internal", config=config
    )


async def publish_contract_policy(session: AsyncSession, *steps: str) -> PolicySnapshot:
    return await publish_policy(
        session,
        entity_type=ENTITY_CONTRACT,
        scope_id=None,
        provider="internal",
        config={"steps": [{"assignee_role": role} for role in steps]},
    )


async def count_audit(*, entity_id: str | None = None, action_key: str | None = None) -> int:
    # Count through a fresh session so assertions see committed state only.
    async with SessionLocal() as session:
        stmt = select(func.count()).select_from(AuditLogEntry)
        if entity_id:
            stmt = stmt.where(AuditLogEntry.entity_id == entity_id)
        if action_key:
            stmt = stmt.where(AuditLogEntry.action_key == action_key)
        return int(await session.scalar(stmt) or 0)


async def count_outbox(*, entity_id: str | None = None, event_key: str | None = None) -> int:
    async with SessionLocal() as session:
        stmt = select(func.count()).select_from(NotificationOutbox)
        if entity_id:
            stmt = stmt.where(NotificationOutbox.entity_id == entity_id)
        if event_key:
            stmt = stmt.where(NotificationOutbox.event_key == event_key)
        return int(await session.scalar(stmt) or 0)


async def fetch(model: type, entity_id: Any) -> Any:
    async with SessionLocal() as session:
        return await session.get(model, entity_id)
