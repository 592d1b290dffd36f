from __future__ import annotations

from datetime import datetime, timezone
import logging
import secrets
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.errors import ConflictError, NotFoundError, ValidationError
from grantflow.domain.models import Contract, PartnerBudget
from grantflow.domain.snapshots import approval_snapshot, contract_snapshot
from grantflow.domain.states import ENTITY_CONTRACT, BudgetStatus, ContractState
from grantflow.persistence.repos import approvals as approvals_repo
from grantflow.persistence.repos import budgets as budgets_repo
from grantflow.services.approvals.decisions import cancel_pending_for_entity, submit_approval
from grantflow.services.approvals.policies import PolicyCache, resolve_policy
from grantflow.services.approvals.providers import ProviderRegistry, SubmissionRequest
from grantflow.services.audit import record_transition
from grantflow.services.idempotency import IdempotencyRequest
from grantflow.services.lifecycles import BUDGET_LIFECYCLE, CONTRACT_CANCELLABLE_STATES, CONTRACT_LIFECYCLE
from grantflow.services.notifications.outbox import OutboxEvent, enqueue_event
from grantflow.services.workflow import (
    TransitionOutcome,
    apply_transition,
    execute_action,
    require_state,
    transition,
)


logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_ID = "standard-subgrant"
DEFAULT_TITLE = "Grant Agreement"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_contract_number(now: datetime | None = None) -> str:
    year = (now or _utc_now()).year
    return f"CN-{year}-{secrets.randbelow(1_000_000):06d}"


def resolve_template_id(budget: PartnerBudget) -> str:
    rules = budget.rules_json or {}
    return str(rules.get("contract_template_id") or DEFAULT_TEMPLATE_ID)


def ensure_contractable_budget(budget: PartnerBudget | None, *, partner_id: str, budget_id: str) -> PartnerBudget:
    if budget is None:
        raise NotFoundError("Partner budget not found", details={"budget_id": budget_id})
    if budget.partner_id != partner_id:
        raise ConflictError(
            "Budget does not belong to partner",
            code="BUDGET_PARTNER_MISMATCH",
            details={"budget_id": budget_id, "partner_id": partner_id},
        )
    if budget.status not in (BudgetStatus.APPROVED.value, BudgetStatus.LOCKED.value):
        raise ValidationError(
            "Partner budget must be approved before contract creation",
            code="BUDGET_NOT_APPROVED",
            details={"budget_id": budget_id, "status": budget.status},
        )
    return budget


async def insert_contract(
    session: AsyncSession,
    *,
    budget: PartnerBudget,
    actor_id: str,
    template_id: str | None = None,
    number: str | None = None,
    title: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Contract:
    """Insert a DRAFT contract for ``budget`` and audit its creation."""
    now = _utc_now()
    contract = Contract(
        id=uuid4().hex,
        tenant_id=budget.tenant_id,
        project_id=budget.project_id,
        partner_id=budget.partner_id,
        partner_budget_id=budget.id,
        template_id=template_id or resolve_template_id(budget),
        number=number or generate_contract_number(now),
        title=title or DEFAULT_TITLE,
        state=ContractState.DRAFT.value,
        substatus_json={},
        metadata_json=metadata or {},
        version=1,
        created_by=actor_id,
        updated_by=actor_id,
        created_at=now,
        updated_at=now,
    )
    session.add(contract)
    await session.flush()
    after = contract_snapshot(contract)
    await record_transition(
        session,
        actor_id=actor_id,
        action_key="contract.create",
        entity_type=ENTITY_CONTRACT,
        entity_id=contract.id,
        before=None,
        after=after,
        tenant_id=contract.tenant_id,
        from_state=None,
        to_state=contract.state,
    )
    enqueue_event(
        session,
        event_key="contract.created",
        tenant_id=contract.tenant_id,
        entity_type=ENTITY_CONTRACT,
        entity_id=contract.id,
        payload={ENTITY_CONTRACT: after},
        audience_selectors=CONTRACT_LIFECYCLE.default_audience(contract),
        created_by=actor_id,
    )
    logger.info("contract_created contract_id=%s budget_id=%s", contract.id, budget.id)
    return contract


async def create_contract(
    session: AsyncSession,
    *,
    partner_budget_id: str,
    partner_id: str,
    actor_id: str,
    project_id: str | None = None,
    template_id: str | None = None,
    number: str | None = None,
    title: str | None = None,
    idempotency: IdempotencyRequest | None = None,
) -> TransitionOutcome:
    """Create a DRAFT contract for an approved or locked partner budget."""

    async def _work(active: AsyncSession) -> dict[str, Any]:
        budget = ensure_contractable_budget(
            await budgets_repo.get_budget_for_update(active, partner_budget_id),
            partner_id=partner_id,
            budget_id=partner_budget_id,
        )
        if project_id is not None and budget.project_id != project_id:
            raise ConflictError(
                "Budget does not belong to project",
                code="BUDGET_PROJECT_MISMATCH",
                details={"budget_id": partner_budget_id, "project_id": project_id},
            )
        contract = await insert_contract(
            active,
            budget=budget,
            actor_id=actor_id,
            template_id=template_id,
            number=number,
            title=title,
        )
        return contract_snapshot(contract)

    return await execute_action(
        session,
        action_key="contract.create",
        actor_id=actor_id,
        work=_work,
        idempotency=idempotency,
    )


async def generate(
    session: AsyncSession,
    *,
    contract_id: str,
    actor_id: str,
    rendered_docx_key: str | None,
    merge_preview: dict[str, Any] | None = None,
    expected_version: int | None = None,
    idempotency: IdempotencyRequest | None = None,
) -> TransitionOutcome:
    if not rendered_docx_key:
        raise ValidationError("rendered_docx_key is required", code="RENDERED_DOCX_KEY_REQUIRED")

    def _changes(contract: Contract) -> dict[str, Any]:
        changes: dict[str, Any] = {"generated_docx_key": rendered_docx_key}
        if merge_preview:
            changes["metadata_json"] = {**(contract.metadata_json or {}), "merge_preview": merge_preview}
        return changes

    return await transition(
        session,
        CONTRACT_LIFECYCLE,
        entity_id=contract_id,
        actor_id=actor_id,
        target_state=ContractState.GENERATED.value,
        action_key="contract.generate",
        guard=require_state(ContractState.DRAFT.value, message="Only draft contracts can be generated"),
        changes=_changes,
        notify=[OutboxEvent("contract.generated")],
        idempotency=idempotency,
        expected_version=expected_version,
    )


async def submit_for_approval(
    session: AsyncSession,
    *,
    contract_id: str,
    actor_id: str,
    approval_provider: str | None = None,
    approval_ref: str | None = None,
    expected_version: int | None = None,
    idempotency: IdempotencyRequest | None = None,
    policy_cache: PolicyCache | None = None,
    providers: ProviderRegistry | None = None,
) -> TransitionOutcome:
    """Move a GENERATED contract into approval.

    An explicit provider/ref records an approval tracked elsewhere. Otherwise
    the contract's approval policy, when one exists, opens an approval; an
    auto-approving policy moves the contract straight to APPROVED.
    """

    async def _work(active: AsyncSession) -> dict[str, Any]:
        contract = await CONTRACT_LIFECYCLE.load_for_update(active, contract_id)
        if contract is None:
            raise NotFoundError("contract not found", details={"entity_id": contract_id})
        policy = None
        if approval_ref is None:
            policy = await resolve_policy(active, ENTITY_CONTRACT, contract.project_id, cache=policy_cache)
        await apply_transition(
            active,
            CONTRACT_LIFECYCLE,
            contract,
            actor_id=actor_id,
            action_key="contract.submit_for_approval",
            target_state=ContractState.SUBMITTED_FOR_APPROVAL.value,
            guard=require_state(ContractState.GENERATED.value, message="Contract must be generated first"),
            changes={
                "approval_provider": approval_provider or (policy.provider.value if policy else None),
                "approval_ref": approval_ref,
            },
            notify=[OutboxEvent("contract.submitted_for_approval")],
            expected_version=expected_version,
        )
        approval_payload = None
        if policy is not None:
            budget = await budgets_repo.get_budget(active, contract.partner_budget_id)
            approval = await submit_approval(
                active,
                policy=policy,
                request=SubmissionRequest(
                    entity_type=ENTITY_CONTRACT,
                    entity_id=contract.id,
                    tenant_id=contract.tenant_id,
                    requested_by=actor_id,
                    amount=budget.ceiling_total if budget is not None else None,
                    payload={"number": contract.number, "title": contract.title},
                ),
                providers=providers,
            )
            approval_payload = approval_snapshot(approval)
        return {ENTITY_CONTRACT: contract_snapshot(contract), "approval": approval_payload}

    return await execute_action(
        session,
        action_key="contract.submit_for_approval",
        actor_id=actor_id,
        work=_work,
        idempotency=idempotency,
    )


async def mark_approved(
    session: AsyncSession,
    *,
    contract_id: str,
    actor_id: str,
    approved_docx_key: str | None = None,
    expected_version: int | None = None,
    idempotency: IdempotencyRequest | None = None,
) -> TransitionOutcome:
    """Approve a contract directly when no approval request is pending for it."""

    async def _work(active: AsyncSession) -> dict[str, Any]:
        pending = await approvals_repo.find_pending_for_entity(
            active, entity_type=ENTITY_CONTRACT, entity_id=contract_id
        )
        if pending is not None:
            raise ConflictError(
                "Contract has a pending approval; decide it through the approval instead",
                code="APPROVAL_PENDING",
                details={"approval_id": pending.id},
            )
        contract = await CONTRACT_LIFECYCLE.load_for_update(active, contract_id)
        if contract is None:
            raise NotFoundError("contract not found", details={"entity_id": contract_id})
        return await apply_transition(
            active,
            CONTRACT_LIFECYCLE,
            contract,
            actor_id=actor_id,
            action_key="contract.mark_approved",
            target_state=ContractState.APPROVED.value,
            guard=require_state(
                ContractState.SUBMITTED_FOR_APPROVAL.value,
                message="Contract must be submitted for approval first",
            ),
            changes=lambda entity: {"approved_docx_key": approved_docx_key or entity.generated_docx_key},
            notify=[OutboxEvent("contract.approved")],
            expected_version=expected_version,
        )

    return await execute_action(
        session,
        action_key="contract.mark_approved",
        actor_id=actor_id,
        work=_work,
        idempotency=idempotency,
    )


async def send_for_sign(
    session: AsyncSession,
    *,
    contract_id: str,
    actor_id: str,
    envelope_id: str | None = None,
    substatus: dict[str, Any] | None = None,
    expected_version: int | None = None,
    idempotency: IdempotencyRequest | None = None,
) -> TransitionOutcome:
    return await transition(
        session,
        CONTRACT_LIFECYCLE,
        entity_id=contract_id,
        actor_id=actor_id,
        target_state=ContractState.SENT_FOR_SIGN.value,
        action_key="contract.send_for_sign",
        guard=require_state(
            ContractState.APPROVED.value,
            message="Contract must be approved before sending for sign",
        ),
        changes=lambda contract: {
            "envelope_id": envelope_id or contract.envelope_id,
            "substatus_json": substatus or {"signing_progress": "sent"},
        },
        notify=[OutboxEvent("contract.sent_for_sign")],
        idempotency=idempotency,
        expected_version=expected_version,
    )


async def mark_signed(
    session: AsyncSession,
    *,
    contract_id: str,
    actor_id: str,
    signed_pdf_key: str | None = None,
    substatus: dict[str, Any] | None = None,
    expected_version: int | None = None,
    idempotency: IdempotencyRequest | None = None,
) -> TransitionOutcome:
    return await transition(
        session,
        CONTRACT_LIFECYCLE,
        entity_id=contract_id,
        actor_id=actor_id,
        target_state=ContractState.SIGNED.value,
        action_key="contract.mark_signed",
        guard=require_state(ContractState.SENT_FOR_SIGN.value, message="Contract must be sent for sign first"),
        changes=lambda contract: {
            "signed_pdf_key": signed_pdf_key or contract.signed_pdf_key,
            "substatus_json": substatus or {"signing_progress": "completed"},
        },
        notify=[OutboxEvent("contract.signed")],
        idempotency=idempotency,
        expected_version=expected_version,
    )


async def _lock_budget(session: AsyncSession, contract: Contract) -> None:
    budget = await budgets_repo.get_budget_for_update(session, contract.partner_budget_id)
    if budget is None:
        raise NotFoundError("Partner budget not found", details={"budget_id": contract.partner_budget_id})
    if budget.status == BudgetStatus.LOCKED.value:
        return
    await apply_transition(
        session,
        BUDGET_LIFECYCLE,
        budget,
        actor_id=contract.updated_by,
        action_key="budget.lock",
        target_state=BudgetStatus.LOCKED.value,
        changes=lambda entity: {
            "substatus_json": {
                **(entity.substatus_json or {}),
                "locked_by_contract_id": contract.id,
                "locked_at": _utc_now().isoformat(),
            }
        },
        notify=[OutboxEvent("budget.locked")],
    )


async def activate(
    session: AsyncSession,
    *,
    contract_id: str,
    actor_id: str,
    expected_version: int | None = None,
    idempotency: IdempotencyRequest | None = None,
) -> TransitionOutcome:
    """Activate a signed contract and lock its budget in the same commit."""
    return await transition(
        session,
        CONTRACT_LIFECYCLE,
        entity_id=contract_id,
        actor_id=actor_id,
        target_state=ContractState.ACTIVE.value,
        action_key="contract.activate",
        guard=require_state(
            ContractState.SIGNED.value,
            message="Contract must be fully signed before activation",
        ),
        side_effects=[_lock_budget],
        notify=[OutboxEvent("contract.activated")],
        idempotency=idempotency,
        expected_version=expected_version,
    )


async def cancel(
    session: AsyncSession,
    *,
    contract_id: str,
    actor_id: str,
    reason: str | None = None,
    expected_version: int | None = None,
    idempotency: IdempotencyRequest | None = None,
    providers: ProviderRegistry | None = None,
) -> TransitionOutcome:
    async def _withdraw_approval(active: AsyncSession, contract: Contract) -> None:
        await cancel_pending_for_entity(
            active,
            entity_type=ENTITY_CONTRACT,
            entity_id=contract.id,
            actor_id=actor_id,
            reason=reason or "contract cancelled",
            providers=providers,
        )

    return await transition(
        session,
        CONTRACT_LIFECYCLE,
        entity_id=contract_id,
        actor_id=actor_id,
        target_state=ContractState.CANCELLED.value,
        action_key="contract.cancel",
        guard=require_state(*CONTRACT_CANCELLABLE_STATES, message="Only pre-sign contracts can be cancelled"),
        changes=lambda contract: {
            "substatus_json": {
                **(contract.substatus_json or {}),
                "cancelled_at": _utc_now().isoformat(),
                "reason": reason,
            }
        },
        side_effects=[_withdraw_approval],
        notify=[OutboxEvent("contract.cancelled")],
        idempotency=idempotency,
        expected_version=expected_version,
    )
