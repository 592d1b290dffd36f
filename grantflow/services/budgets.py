from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.errors import ConflictError, NotFoundError, ValidationError
from grantflow.domain.models import PartnerBudget
from grantflow.domain.snapshots import approval_snapshot, budget_snapshot, contract_snapshot, disbursement_snapshot
from grantflow.domain.states import ENTITY_PARTNER_BUDGET, BudgetStatus
from grantflow.persistence.db import unit_of_work
from grantflow.persistence.repos import approvals as approvals_repo
from grantflow.persistence.repos import budgets as budgets_repo
from grantflow.persistence.repos import contracts as contracts_repo
from grantflow.services.approvals.appliers import approve_budget_entity, reject_budget_entity
from grantflow.services.approvals.decisions import cancel_pending_for_entity, submit_approval
from grantflow.services.approvals.policies import PolicyCache, resolve_policy
from grantflow.services.approvals.providers import ProviderRegistry, SubmissionRequest
from grantflow.services.audit import record_transition
from grantflow.services.contracts import insert_contract
from grantflow.services.disbursements import seed_disbursement_schedule
from grantflow.services.idempotency import IdempotencyRequest
from grantflow.services.lifecycles import BUDGET_LIFECYCLE
from grantflow.services.notifications.outbox import OutboxEvent, audience
from grantflow.services.workflow import (
    TransitionOutcome,
    apply_transition,
    execute_action,
    require_state,
    transition,
)


logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
REVIEWER_ROLE = "grant_officer"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _decimal(value: Any, *, field: str) -> Decimal:
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"{field} must be numeric", code="INVALID_BUDGET_LINE") from exc
    if not parsed.is_finite() or parsed < 0:
        raise ValidationError(f"{field} must be a non-negative number", code="INVALID_BUDGET_LINE")
    return parsed


def normalize_lines(lines: list[dict[str, Any]] | None) -> tuple[list[dict[str, Any]], Decimal]:
    """Validate budget lines and compute the ceiling total from ``qty * unit_cost``."""
    normalized: list[dict[str, Any]] = []
    total = Decimal("0")
    for index, line in enumerate(lines or []):
        if not isinstance(line, dict):
            raise ValidationError(f"Budget line {index + 1} must be an object", code="INVALID_BUDGET_LINE")
        qty = _decimal(line.get("qty", 0), field="qty")
        unit_cost = _decimal(line.get("unit_cost", 0), field="unit_cost")
        amount = (qty * unit_cost).quantize(_CENT, rounding=ROUND_HALF_UP)
        normalized.append(
            {
                "category": line.get("category"),
                "description": line.get("description"),
                "qty": str(qty),
                "unit_cost": str(unit_cost),
                "amount": str(amount),
            }
        )
        total += amount
    return normalized, total.quantize(_CENT, rounding=ROUND_HALF_UP)


def _normalize_currency(currency: str) -> str:
    cleaned = (currency or "").strip().upper()
    if len(cleaned) != 3 or not cleaned.isalpha():
        raise ValidationError("currency must be a 3-letter ISO code", code="INVALID_CURRENCY")
    return cleaned


async def create_draft(
    session: AsyncSession,
    *,
    tenant_id: str,
    project_id: str,
    partner_id: str,
    currency: str,
    actor_id: str,
    lines: list[dict[str, Any]] | None = None,
    rules: dict[str, Any] | None = None,
    idempotency: IdempotencyRequest | None = None,
) -> TransitionOutcome:
    normalized_currency = _normalize_currency(currency)
    normalized_lines, total = normalize_lines(lines)

    async def _work(active: AsyncSession) -> dict[str, Any]:
        now = _utc_now()
        budget = budgets_repo.create_budget(
            active,
            id=uuid4().hex,
            tenant_id=tenant_id,
            project_id=project_id,
            partner_id=partner_id,
            currency=normalized_currency,
            ceiling_total=total,
            status=BudgetStatus.DRAFT.value,
            rules_json=rules or {},
            lines_json=normalized_lines,
            substatus_json={},
            version=1,
            created_by=actor_id,
            updated_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        await active.flush()
        after = budget_snapshot(budget)
        await record_transition(
            active,
            actor_id=actor_id,
            action_key="budget.create",
            entity_type=ENTITY_PARTNER_BUDGET,
            entity_id=budget.id,
            before=None,
            after=after,
            tenant_id=tenant_id,
            from_state=None,
            to_state=budget.status,
        )
        logger.info("budget_created budget_id=%s project_id=%s partner_id=%s", budget.id, project_id, partner_id)
        return after

    return await execute_action(
        session,
        action_key="budget.create",
        actor_id=actor_id,
        work=_work,
        idempotency=idempotency,
    )


async def update_draft(
    session: AsyncSession,
    *,
    budget_id: str,
    actor_id: str,
    lines: list[dict[str, Any]] | None = None,
    rules: dict[str, Any] | None = None,
    currency: str | None = None,
    expected_version: int | None = None,
    idempotency: IdempotencyRequest | None = None,
) -> TransitionOutcome:
    """Edit a DRAFT budget in place; the status does not change."""
    changes: dict[str, Any] = {}
    if lines is not None:
        changes["lines_json"], changes["ceiling_total"] = normalize_lines(lines)
    if rules is not None:
        changes["rules_json"] = rules
    if currency is not None:
        changes["currency"] = _normalize_currency(currency)
    if not changes:
        raise ValidationError("Nothing to update", code="EMPTY_UPDATE")
    return await transition(
        session,
        BUDGET_LIFECYCLE,
        entity_id=budget_id,
        actor_id=actor_id,
        target_state=None,
        action_key="budget.update_draft",
        guard=require_state(BudgetStatus.DRAFT.value, message="Only draft budgets can be edited"),
        changes=changes,
        idempotency=idempotency,
        expected_version=expected_version,
    )


async def submit_budget(
    session: AsyncSession,
    *,
    budget_id: str,
    actor_id: str,
    expected_version: int | None = None,
    idempotency: IdempotencyRequest | None = None,
    policy_cache: PolicyCache | None = None,
    providers: ProviderRegistry | None = None,
) -> TransitionOutcome:
    """Submit a draft or revised budget for review.

    When an approval policy covers the budget's project an approval opens in
    the same transaction; an auto-approving policy leaves the budget APPROVED.
    """

    async def _work(active: AsyncSession) -> dict[str, Any]:
        budget = await BUDGET_LIFECYCLE.load_for_update(active, budget_id)
        if budget is None:
            raise NotFoundError("partner_budget not found", details={"entity_id": budget_id})
        if Decimal(str(budget.ceiling_total or 0)) <= 0:
            raise ValidationError("Cannot submit a budget with a zero total", code="ZERO_BUDGET_TOTAL")
        await apply_transition(
            active,
            BUDGET_LIFECYCLE,
            budget,
            actor_id=actor_id,
            action_key="budget.submit",
            target_state=BudgetStatus.SUBMITTED.value,
            guard=require_state(
                BudgetStatus.DRAFT.value,
                BudgetStatus.REVISION_REQUESTED.value,
                message="Only draft or revision-requested budgets can be submitted",
            ),
            notify=[
                OutboxEvent(
                    "budget.submitted",
                    audience=audience(roles=[REVIEWER_ROLE], user_ids=[budget.created_by] if budget.created_by else []),
                )
            ],
            expected_version=expected_version,
        )
        approval_payload = None
        policy = await resolve_policy(active, ENTITY_PARTNER_BUDGET, budget.project_id, cache=policy_cache)
        if policy is not None:
            approval = await submit_approval(
                active,
                policy=policy,
                request=SubmissionRequest(
                    entity_type=ENTITY_PARTNER_BUDGET,
                    entity_id=budget.id,
                    tenant_id=budget.tenant_id,
                    requested_by=actor_id,
                    amount=budget.ceiling_total,
                    payload={"project_id": budget.project_id, "currency": budget.currency},
                ),
                providers=providers,
            )
            approval_payload = approval_snapshot(approval)
        return {ENTITY_PARTNER_BUDGET: budget_snapshot(budget), "approval": approval_payload}

    return await execute_action(
        session,
        action_key="budget.submit",
        actor_id=actor_id,
        work=_work,
        idempotency=idempotency,
    )


async def request_revisions(
    session: AsyncSession,
    *,
    budget_id: str,
    actor_id: str,
    comment: str | None = None,
    expected_version: int | None = None,
    idempotency: IdempotencyRequest | None = None,
    providers: ProviderRegistry | None = None,
) -> TransitionOutcome:
    async def _withdraw_approval(active: AsyncSession, budget: PartnerBudget) -> None:
        await cancel_pending_for_entity(
            active,
            entity_type=ENTITY_PARTNER_BUDGET,
            entity_id=budget.id,
            actor_id=actor_id,
            reason="revisions requested",
            providers=providers,
        )

    return await transition(
        session,
        BUDGET_LIFECYCLE,
        entity_id=budget_id,
        actor_id=actor_id,
        target_state=BudgetStatus.REVISION_REQUESTED.value,
        action_key="budget.request_revisions",
        guard=require_state(BudgetStatus.SUBMITTED.value, message="Only submitted budgets can be sent back"),
        changes=lambda budget: {
            "substatus_json": {
                **(budget.substatus_json or {}),
                "revision_comment": comment,
                "revision_requested_by": actor_id,
                "revision_requested_at": _utc_now().isoformat(),
            }
        },
        side_effects=[_withdraw_approval],
        notify=[OutboxEvent("budget.revision_requested")],
        idempotency=idempotency,
        expected_version=expected_version,
    )


async def return_to_draft(
    session: AsyncSession,
    *,
    budget_id: str,
    actor_id: str,
    expected_version: int | None = None,
    idempotency: IdempotencyRequest | None = None,
) -> TransitionOutcome:
    return await transition(
        session,
        BUDGET_LIFECYCLE,
        entity_id=budget_id,
        actor_id=actor_id,
        target_state=BudgetStatus.DRAFT.value,
        action_key="budget.return_to_draft",
        guard=require_state(
            BudgetStatus.REVISION_REQUESTED.value,
            message="Only budgets with requested revisions can return to draft",
        ),
        notify=[OutboxEvent("budget.returned_to_draft")],
        idempotency=idempotency,
        expected_version=expected_version,
    )


async def _ensure_no_pending_approval(session: AsyncSession, budget_id: str) -> None:
    pending = await approvals_repo.find_pending_for_entity(
        session, entity_type=ENTITY_PARTNER_BUDGET, entity_id=budget_id
    )
    if pending is not None:
        raise ConflictError(
            "Budget has a pending approval; decide it through the approval instead",
            code="APPROVAL_PENDING",
            details={"approval_id": pending.id},
        )


async def decide_budget(
    session: AsyncSession,
    *,
    budget_id: str,
    approve: bool,
    actor_id: str,
    comment: str | None = None,
    expected_version: int | None = None,
    idempotency: IdempotencyRequest | None = None,
) -> TransitionOutcome:
    """Approve or reject a submitted budget that has no approval policy."""

    async def _work(active: AsyncSession) -> dict[str, Any]:
        await _ensure_no_pending_approval(active, budget_id)
        if approve:
            return await approve_budget_entity(
                active, budget_id, actor_id=actor_id, expected_version=expected_version
            )
        return await reject_budget_entity(
            active, budget_id, actor_id=actor_id, comment=comment, expected_version=expected_version
        )

    return await execute_action(
        session,
        action_key="budget.approve" if approve else "budget.reject",
        actor_id=actor_id,
        work=_work,
        idempotency=idempotency,
    )


async def seed_disbursements(
    session: AsyncSession,
    *,
    budget_id: str,
    actor_id: str,
) -> list[dict[str, Any]]:
    """Seed the tranche schedule for an approved budget if it has none yet."""
    async with unit_of_work(session):
        budget = await budgets_repo.get_budget_for_update(session, budget_id)
        if budget is None:
            raise NotFoundError("partner_budget not found", details={"entity_id": budget_id})
        if budget.status not in (BudgetStatus.APPROVED.value, BudgetStatus.LOCKED.value):
            raise ConflictError(
                "Disbursements can only be scheduled for approved budgets",
                code="INVALID_STATE",
                details={"current_state": budget.status},
            )
        rows = await seed_disbursement_schedule(session, budget, actor_id=actor_id)
        return [disbursement_snapshot(row) for row in rows]


async def provision_contract(
    session: AsyncSession,
    *,
    budget_id: str,
    actor_id: str,
    template_id: str | None = None,
    idempotency: IdempotencyRequest | None = None,
) -> TransitionOutcome:
    """Return the budget's open contract, creating a DRAFT one if none exists."""

    async def _work(active: AsyncSession) -> dict[str, Any]:
        budget = await budgets_repo.get_budget_for_update(active, budget_id)
        if budget is None:
            raise NotFoundError("partner_budget not found", details={"entity_id": budget_id})
        if budget.status not in (BudgetStatus.APPROVED.value, BudgetStatus.LOCKED.value):
            raise ValidationError(
                "Partner budget must be approved before contract creation",
                code="BUDGET_NOT_APPROVED",
                details={"budget_id": budget_id, "status": budget.status},
            )
        existing = await contracts_repo.find_latest_for_budget(active, budget.id)
        if existing is not None:
            return contract_snapshot(existing)
        description = "\n".join(
            [
                f"Partner: {budget.partner_id}",
                f"Budget ID: {budget.id}",
                f"Currency: {budget.currency}",
                f"Ceiling Total: {Decimal(str(budget.ceiling_total or 0)).quantize(_CENT)}",
            ]
        )
        contract = await insert_contract(
            active,
            budget=budget,
            actor_id=actor_id,
            template_id=template_id,
            title=f"Grant Agreement - {budget.project_id}",
            metadata={"description": description},
        )
        return contract_snapshot(contract)

    return await execute_action(
        session,
        action_key="budget.provision_contract",
        actor_id=actor_id,
        work=_work,
        idempotency=idempotency,
    )


async def get_budget_detail(session: AsyncSession, *, budget_id: str, tenant_id: str) -> dict[str, Any]:
    budget = await budgets_repo.get_budget_for_tenant(session, budget_id, tenant_id)
    if budget is None:
        raise NotFoundError("partner_budget not found", details={"entity_id": budget_id})
    payload = budget_snapshot(budget)
    payload["disbursements"] = [
        disbursement_snapshot(row) for row in await budgets_repo.list_disbursements(session, budget.id)
    ]
    return payload
