from __future__ import annotations

import copy
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from functools import lru_cache
import logging
from types import MappingProxyType
from typing import Any, Mapping
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.errors import ValidationError
from grantflow.domain.models import ApprovalPolicy
from grantflow.domain.states import ENTITY_CONTRACT, ENTITY_PARTNER_BUDGET, ProviderKind
from grantflow.persistence.db import unit_of_work
from grantflow.persistence.repos import approvals as approvals_repo


logger = logging.getLogger(__name__)

APPROVABLE_ENTITY_TYPES = frozenset({ENTITY_PARTNER_BUDGET, ENTITY_CONTRACT})


@dataclass(frozen=True)
class PolicySnapshot:
    """Immutable view of one policy version as loaded from the catalog."""

    policy_id: str
    entity_type: str
    scope_id: str | None
    version: int
    provider: ProviderKind
    steps: tuple[str, ...]
    auto_approve_amount_lte: Decimal | None
    endpoint: str | None
    config: Mapping[str, Any]

    @property
    def total_steps(self) -> int:
        return max(1, len(self.steps))

    def role_for_step(self, step: int) -> str | None:
        if 1 <= step <= len(self.steps):
            return self.steps[step - 1]
        return None

    def auto_approves(self, amount: Decimal | None) -> bool:
        # Single numeric threshold; a missing amount never auto-approves.
        if self.auto_approve_amount_lte is None or amount is None:
            return False
        return Decimal(str(amount)) <= self.auto_approve_amount_lte


def _parse_threshold(config: dict[str, Any]) -> Decimal | None:
    rule = config.get("auto_approve_if")
    if rule is None:
        return None
    if not isinstance(rule, dict) or "amount_lte" not in rule:
        raise ValidationError("auto_approve_if must be an object with amount_lte", code="INVALID_POLICY")
    try:
        return Decimal(str(rule["amount_lte"]))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError("auto_approve_if.amount_lte must be numeric", code="INVALID_POLICY") from exc


def validate_policy_config(provider: ProviderKind, config: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(config, dict):
        raise ValidationError("Policy config must be an object", code="INVALID_POLICY")
    if provider == ProviderKind.INTERNAL:
        steps = config.get("steps")
        if not isinstance(steps, list) or not steps:
            raise ValidationError("Internal policies require at least one step", code="INVALID_POLICY")
        for step in steps:
            role = step.get("assignee_role") if isinstance(step, dict) else None
            if not isinstance(role, str) or not role.strip():
                raise ValidationError("Each step requires an assignee_role", code="INVALID_POLICY")
        _parse_threshold(config)
    else:
        endpoint = config.get("endpoint")
        if not isinstance(endpoint, str) or not endpoint.startswith(("http://", "https://")):
            raise ValidationError("External policies require an http(s) endpoint", code="INVALID_POLICY")
    return config


def snapshot_from_row(row: ApprovalPolicy) -> PolicySnapshot:
    provider = ProviderKind(row.provider)
    config = copy.deepcopy(row.config_json or {})
    steps = tuple(
        str(step["assignee_role"])
        for step in config.get("steps") or []
        if isinstance(step, dict) and step.get("assignee_role")
    )
    return PolicySnapshot(
        policy_id=row.id,
        entity_type=row.entity_type,
        scope_id=row.scope_id,
        version=int(row.version),
        provider=provider,
        steps=steps,
        auto_approve_amount_lte=_parse_threshold(config) if provider == ProviderKind.INTERNAL else None,
        endpoint=config.get("endpoint"),
        config=MappingProxyType(config),
    )


class PolicyCache:
    """Per entity type catalog of active policies, keyed by a catalog version.

    ``invalidate`` bumps the version so the next lookup reloads from the
    store; snapshots already handed out stay valid for their callers.
    """

    def __init__(self) -> None:
        self._versions: dict[str, int] = {}
        self._catalogs: dict[tuple[str, int], dict[str | None, PolicySnapshot]] = {}

    def version(self, entity_type: str) -> int:
        return self._versions.get(entity_type, 0)

    def invalidate(self, entity_type: str) -> None:
        stale = self.version(entity_type)
        self._versions[entity_type] = stale + 1
        self._catalogs.pop((entity_type, stale), None)
        logger.info("approval_policy_cache_invalidated entity_type=%s version=%s", entity_type, stale + 1)

    async def catalog(self, session: AsyncSession, entity_type: str) -> dict[str | None, PolicySnapshot]:
        key = (entity_type, self.version(entity_type))
        cached = self._catalogs.get(key)
        if cached is not None:
            return cached
        rows = await approvals_repo.list_active_policies(session, entity_type)
        catalog: dict[str | None, PolicySnapshot] = {}
        for row in rows:
            # Rows arrive newest version first; keep the first one seen per scope.
            if row.scope_id not in catalog:
                catalog[row.scope_id] = snapshot_from_row(row)
        self._catalogs[key] = catalog
        return catalog

    async def resolve(self, session: AsyncSession, entity_type: str, scope_id: str | None) -> PolicySnapshot | None:
        catalog = await self.catalog(session, entity_type)
        if scope_id is not None and scope_id in catalog:
            return catalog[scope_id]
        return catalog.get(None)


@lru_cache
def get_policy_cache() -> PolicyCache:
    return PolicyCache()


async def resolve_policy(
    session: AsyncSession,
    entity_type: str,
    scope_id: str | None,
    *,
    cache: PolicyCache | None = None,
) -> PolicySnapshot | None:
    """Prefer the scoped active policy and fall back to the default one."""
    return await (cache or get_policy_cache()).resolve(session, entity_type, scope_id)


async def publish_policy(
    session: AsyncSession,
    *,
    entity_type: str,
    scope_id: str | None,
    provider: ProviderKind | str,
    config: dict[str, Any],
    cache: PolicyCache | None = None,
) -> PolicySnapshot:
    """Store a new policy version and invalidate the cached catalog."""
    if entity_type not in APPROVABLE_ENTITY_TYPES:
        raise ValidationError(f"Unsupported approval entity type {entity_type!r}", code="INVALID_POLICY")
    try:
        kind = ProviderKind(provider)
    except ValueError as exc:
        raise ValidationError(f"Unknown approval provider {provider!r}", code="INVALID_POLICY") from exc
    validate_policy_config(kind, config)
    async with unit_of_work(session):
        version = await approvals_repo.next_policy_version(session, entity_type=entity_type, scope_id=scope_id)
        row = approvals_repo.create_policy(
            session,
            id=uuid4().hex,
            entity_type=entity_type,
            scope_id=scope_id,
            version=version,
            provider=kind.value,
            config_json=copy.deepcopy(config),
            is_active=True,
            created_at=datetime.now(timezone.utc),
        )
    (cache or get_policy_cache()).invalidate(entity_type)
    logger.info(
        "approval_policy_published entity_type=%s scope_id=%s version=%s provider=%s",
        entity_type,
        scope_id,
        version,
        kind.value,
    )
    return snapshot_from_row(row)


async def list_policies(session: AsyncSession, entity_type: str) -> list[PolicySnapshot]:
    return [snapshot_from_row(row) for row in await approvals_repo.list_active_policies(session, entity_type)]


def policy_payload(policy: PolicySnapshot) -> dict[str, Any]:
    return {
        "id": policy.policy_id,
        "entity_type": policy.entity_type,
        "scope_id": policy.scope_id,
        "version": policy.version,
        "provider": policy.provider.value,
        "config": dict(policy.config),
    }
