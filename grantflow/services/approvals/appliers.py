from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.errors import NotFoundError, ValidationError
from grantflow.domain.models import Approval, Contract, PartnerBudget
from grantflow.domain.states import ENTITY_CONTRACT, ENTITY_PARTNER_BUDGET, BudgetStatus, ContractState
from grantflow.persistence.repos import budgets as budgets_repo
from grantflow.persistence.repos import contracts as contracts_repo
from grantflow.services.disbursements import seed_disbursement_schedule
from grantflow.services.lifecycles import BUDGET_LIFECYCLE, CONTRACT_LIFECYCLE
from grantflow.services.notifications.outbox import OutboxEvent
from grantflow.services.workflow import apply_transition, require_state


logger = logging.getLogger(__name__)

ApplyFn = Callable[[AsyncSession, Approval, str | None], Awaitable[None]]


@dataclass(frozen=True)
class EntityApplier:
    """Domain effects of a final approval decision for one entity type."""

    approve: ApplyFn
    reject: ApplyFn


async def _lock_budget(session: AsyncSession, budget_id: str) -> PartnerBudget:
    budget = await budgets_repo.get_budget_for_update(session, budget_id)
    if budget is None:
        raise NotFoundError("partner_budget not found", details={"entity_id": budget_id})
    return budget


async def _lock_contract(session: AsyncSession, contract_id: str) -> Contract:
    contract = await contracts_repo.get_contract_for_update(session, contract_id)
    if contract is None:
        raise NotFoundError("contract not found", details={"entity_id": contract_id})
    return contract


def _merge_substatus(entity: PartnerBudget | Contract, **values: object) -> dict[str, object]:
    merged = dict(entity.substatus_json or {})
    merged.update(values)
    return merged


async def _seed_schedule(session: AsyncSession, budget: PartnerBudget) -> None:
    await seed_disbursement_schedule(session, budget, actor_id=budget.updated_by)


async def approve_budget_entity(
    session: AsyncSession,
    budget_id: str,
    *,
    actor_id: str | None,
    approval_ref: str | None = None,
    expected_version: int | None = None,
) -> dict[str, Any]:
    budget = await _lock_budget(session, budget_id)
    return await apply_transition(
        session,
        BUDGET_LIFECYCLE,
        budget,
        actor_id=actor_id,
        action_key="budget.approve",
        target_state=BudgetStatus.APPROVED.value,
        guard=require_state(BudgetStatus.SUBMITTED.value, message="Only submitted budgets can be approved"),
        changes=lambda entity: {
            "substatus_json": _merge_substatus(
                entity,
                approval_ref=approval_ref,
                approved_at=datetime.now(timezone.utc).isoformat(),
            )
        },
        side_effects=[_seed_schedule],
        notify=[OutboxEvent("budget.approved")],
        expected_version=expected_version,
    )


async def reject_budget_entity(
    session: AsyncSession,
    budget_id: str,
    *,
    actor_id: str | None,
    approval_ref: str | None = None,
    comment: str | None = None,
    expected_version: int | None = None,
) -> dict[str, Any]:
    budget = await _lock_budget(session, budget_id)
    return await apply_transition(
        session,
        BUDGET_LIFECYCLE,
        budget,
        actor_id=actor_id,
        action_key="budget.reject",
        target_state=BudgetStatus.REJECTED.value,
        guard=require_state(BudgetStatus.SUBMITTED.value, message="Only submitted budgets can be rejected"),
        changes=lambda entity: {
            "substatus_json": _merge_substatus(
                entity,
                approval_ref=approval_ref,
                rejected_at=datetime.now(timezone.utc).isoformat(),
                rejection_comment=comment,
            )
        },
        notify=[OutboxEvent("budget.rejected")],
        expected_version=expected_version,
    )


async def approve_partner_budget(session: AsyncSession, approval: Approval, actor_id: str | None) -> None:
    await approve_budget_entity(session, approval.entity_id, actor_id=actor_id, approval_ref=approval.approval_ref)


async def reject_partner_budget(session: AsyncSession, approval: Approval, actor_id: str | None) -> None:
    await reject_budget_entity(
        session,
        approval.entity_id,
        actor_id=actor_id,
        approval_ref=approval.approval_ref,
        comment=approval.comment,
    )


async def approve_contract(session: AsyncSession, approval: Approval, actor_id: str | None) -> None:
    contract = await _lock_contract(session, approval.entity_id)
    await apply_transition(
        session,
        CONTRACT_LIFECYCLE,
        contract,
        actor_id=actor_id,
        action_key="contract.approve",
        target_state=ContractState.APPROVED.value,
        guard=require_state(
            ContractState.SUBMITTED_FOR_APPROVAL.value,
            message="Only contracts awaiting approval can be approved",
        ),
        changes=lambda entity: {
            "approval_ref": approval.approval_ref,
            "approved_docx_key": entity.approved_docx_key or entity.generated_docx_key,
        },
        notify=[OutboxEvent("contract.approved")],
    )


async def reject_contract(session: AsyncSession, approval: Approval, actor_id: str | None) -> None:
    # Contracts have no rejected state; a rejected approval cancels the contract.
    contract = await _lock_contract(session, approval.entity_id)
    await apply_transition(
        session,
        CONTRACT_LIFECYCLE,
        contract,
        actor_id=actor_id,
        action_key="contract.reject",
        target_state=ContractState.CANCELLED.value,
        guard=require_state(
            ContractState.SUBMITTED_FOR_APPROVAL.value,
            message="Only contracts awaiting approval can be rejected",
        ),
        changes=lambda entity: {
            "substatus_json": _merge_substatus(
                entity,
                cancelled_at=datetime.now(timezone.utc).isoformat(),
                reason=approval.comment or "approval rejected",
                approval_ref=approval.approval_ref,
            )
        },
        notify=[OutboxEvent("contract.cancelled")],
    )


APPLIERS: dict[str, EntityApplier] = {
    ENTITY_PARTNER_BUDGET: EntityApplier(approve=approve_partner_budget, reject=reject_partner_budget),
    ENTITY_CONTRACT: EntityApplier(approve=approve_contract, reject=reject_contract),
}


def get_applier(entity_type: str) -> EntityApplier:
    applier = APPLIERS.get(entity_type)
    if applier is None:
        raise ValidationError(f"No approval applier for {entity_type!r}", code="UNSUPPORTED_ENTITY_TYPE")
    return applier
