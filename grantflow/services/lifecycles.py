from __future__ import annotations

from typing import Any

from grantflow.domain.models import Approval, Contract, PartnerBudget
from grantflow.domain.snapshots import approval_snapshot, budget_snapshot, contract_snapshot
from grantflow.domain.states import (
    ENTITY_APPROVAL,
    ENTITY_CONTRACT,
    ENTITY_PARTNER_BUDGET,
    ApprovalStatus,
    BudgetStatus,
    ContractState,
)
from grantflow.persistence.repos import approvals as approvals_repo
from grantflow.persistence.repos import budgets as budgets_repo
from grantflow.persistence.repos import contracts as contracts_repo
from grantflow.services.notifications.outbox import audience
from grantflow.services.workflow import Lifecycle


def _targets(*states: Any) -> frozenset[str]:
    return frozenset(state.value for state in states)


BUDGET_TRANSITIONS: dict[str, frozenset[str]] = {
    BudgetStatus.DRAFT.value: _targets(BudgetStatus.SUBMITTED),
    BudgetStatus.SUBMITTED.value: _targets(
        BudgetStatus.REVISION_REQUESTED, BudgetStatus.APPROVED, BudgetStatus.REJECTED
    ),
    # Revisions may go back to the partner's draft or straight back to review.
    BudgetStatus.REVISION_REQUESTED.value: _targets(BudgetStatus.DRAFT, BudgetStatus.SUBMITTED),
    BudgetStatus.APPROVED.value: _targets(BudgetStatus.LOCKED),
    BudgetStatus.REJECTED.value: frozenset(),
    BudgetStatus.LOCKED.value: frozenset(),
}

_CONTRACT_CANCELLABLE = (
    ContractState.DRAFT,
    ContractState.GENERATED,
    ContractState.SUBMITTED_FOR_APPROVAL,
    ContractState.APPROVED,
    ContractState.SENT_FOR_SIGN,
)

CONTRACT_TRANSITIONS: dict[str, frozenset[str]] = {
    ContractState.DRAFT.value: _targets(ContractState.GENERATED, ContractState.CANCELLED),
    ContractState.GENERATED.value: _targets(ContractState.SUBMITTED_FOR_APPROVAL, ContractState.CANCELLED),
    ContractState.SUBMITTED_FOR_APPROVAL.value: _targets(ContractState.APPROVED, ContractState.CANCELLED),
    ContractState.APPROVED.value: _targets(ContractState.SENT_FOR_SIGN, ContractState.CANCELLED),
    ContractState.SENT_FOR_SIGN.value: _targets(ContractState.SIGNED, ContractState.CANCELLED),
    ContractState.SIGNED.value: _targets(ContractState.ACTIVE),
    ContractState.ACTIVE.value: frozenset(),
    ContractState.CANCELLED.value: frozenset(),
}

CONTRACT_CANCELLABLE_STATES = frozenset(state.value for state in _CONTRACT_CANCELLABLE)

APPROVAL_TRANSITIONS: dict[str, frozenset[str]] = {
    ApprovalStatus.PENDING.value: _targets(
        ApprovalStatus.APPROVED, ApprovalStatus.REJECTED, ApprovalStatus.CANCELLED
    ),
    ApprovalStatus.APPROVED.value: frozenset(),
    ApprovalStatus.REJECTED.value: frozenset(),
    ApprovalStatus.CANCELLED.value: frozenset(),
}


def _budget_audience(budget: PartnerBudget) -> dict[str, list[str]]:
    return audience(organization_ids=[budget.partner_id], user_ids=[budget.created_by] if budget.created_by else [])


def _contract_audience(contract: Contract) -> dict[str, list[str]]:
    return audience(
        organization_ids=[contract.partner_id],
        user_ids=[contract.created_by] if contract.created_by else [],
    )


def _approval_audience(approval: Approval) -> dict[str, list[str]]:
    return audience(
        roles=[approval.assignee_role] if approval.assignee_role else [],
        user_ids=[approval.requested_by] if approval.requested_by else [],
    )


BUDGET_LIFECYCLE = Lifecycle(
    entity_type=ENTITY_PARTNER_BUDGET,
    state_field="status",
    transitions=BUDGET_TRANSITIONS,
    load_for_update=budgets_repo.get_budget_for_update,
    snapshot=budget_snapshot,
    default_audience=_budget_audience,
)

CONTRACT_LIFECYCLE = Lifecycle(
    entity_type=ENTITY_CONTRACT,
    state_field="state",
    transitions=CONTRACT_TRANSITIONS,
    load_for_update=contracts_repo.get_contract_for_update,
    snapshot=contract_snapshot,
    default_audience=_contract_audience,
)

APPROVAL_LIFECYCLE = Lifecycle(
    entity_type=ENTITY_APPROVAL,
    state_field="status",
    transitions=APPROVAL_TRANSITIONS,
    load_for_update=approvals_repo.get_approval_for_update,
    snapshot=approval_snapshot,
    default_audience=_approval_audience,
)
