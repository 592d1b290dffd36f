from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from datetime import datetime, timezone

from grantflow.domain.models import GrantUser
from grantflow.domain.states import ENTITY_CONTRACT, ENTITY_PARTNER_BUDGET
from grantflow.persistence.db import SessionLocal, unit_of_work
from grantflow.persistence.repos import users as users_repo
from grantflow.services.approvals.policies import publish_policy, resolve_policy
from grantflow.services.budgets import create_draft


DEMO_TENANT_ID = "t1"
DEMO_PROJECT_ID = "p1"
DEMO_PARTNER_ID = "org-partner-1"


@dataclass(frozen=True)
class DemoUser:
    user_id: str
    role: str
    email: str | None
    organization_id: str | None = None


DEMO_USERS = (
    DemoUser("u-partner", "partner", "partner@example.org", DEMO_PARTNER_ID),
    DemoUser("u-officer", "grant_officer", "officer@example.org"),
    DemoUser("u-finance", "finance", "finance@example.org"),
    DemoUser("u-admin", "admin", "admin@example.org"),
    DemoUser("u-auditor", "auditor", None),
)


async def _seed_users(session) -> int:
    created = 0
    async with unit_of_work(session):
        for demo in DEMO_USERS:
            if await users_repo.get_user(session, demo.user_id) is not None:
                continue
            users_repo.create_user(
                session,
                id=demo.user_id,
                tenant_id=DEMO_TENANT_ID,
                organization_id=demo.organization_id,
                role=demo.role,
                email=demo.email,
                locale="en",
                is_active=True,
                created_at=datetime.now(timezone.utc),
            )
            created += 1
    return created


async def _seed_policies(session) -> None:
    # Budgets go officer then finance with a small-amount shortcut; contracts need one officer step.
    if await resolve_policy(session, ENTITY_PARTNER_BUDGET, None) is None:
        await publish_policy(
            session,
            entity_type=ENTITY_PARTNER_BUDGET,
            scope_id=None,
            provider="internal",
            config={
                "steps": [{"assignee_role": "grant_officer"}, {"assignee_role": "finance"}],
                "auto_approve_if": {"amount_lte": "1000"},
            },
        )
    if await resolve_policy(session, ENTITY_CONTRACT, None) is None:
        await publish_policy(
            session,
            entity_type=ENTITY_CONTRACT,
            scope_id=None,
            provider="internal",
            config={"steps": [{"assignee_role": "grant_officer"}]},
        )


async def seed_demo() -> int:
    async with SessionLocal() as session:
        created_users = await _seed_users(session)
        await _seed_policies(session)
        outcome = await create_draft(
            session,
            tenant_id=DEMO_TENANT_ID,
            project_id=DEMO_PROJECT_ID,
            partner_id=DEMO_PARTNER_ID,
            currency="EUR",
            actor_id="u-partner",
            lines=[
                {"category": "staff", "description": "Field coordinator", "qty": "12", "unit_cost": "2500"},
                {"category": "travel", "description": "Site visits", "qty": "4", "unit_cost": "750"},
            ],
            rules={
                "disbursement_plan": {
                    "tranches": [{"percentage": "40"}, {"percentage": "40"}, {"percentage": "20"}],
                }
            },
        )
        print(f"seeded_users={created_users}")
        print(f"budget_id={outcome.response['id']}")
        return 0


def main() -> int:
    # Surface clear failures and exit non-zero so CI/dev scripts can detect issues.
    try:
        return asyncio.run(seed_demo())
    except Exception as exc:  # noqa: BLE001 - surface any setup or DB errors
        print(f"seed_demo failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
