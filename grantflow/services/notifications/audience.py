from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.persistence.repos import users as users_repo


@dataclass(frozen=True)
class Recipient:
    user_id: str
    email: str | None = None
    locale: str | None = None


class AudienceResolver(Protocol):
    async def resolve(
        self,
        session: AsyncSession,
        *,
        tenant_id: str | None,
        selectors: dict[str, list[str]],
    ) -> list[Recipient]: ...


class StoreAudienceResolver:
    """Resolve selectors against active ``grant_users`` rows in the tenant."""

    async def resolve(
        self,
        session: AsyncSession,
        *,
        tenant_id: str | None,
        selectors: dict[str, list[str]],
    ) -> list[Recipient]:
        users = await users_repo.find_active_users(
            session,
            tenant_id=tenant_id,
            user_ids=selectors.get("user_ids"),
            organization_ids=selectors.get("organization_ids"),
            roles=selectors.get("roles"),
        )
        return [Recipient(user_id=user.id, email=user.email, locale=user.locale) for user in users]
