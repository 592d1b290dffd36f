from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from grantflow.domain.models import Approval, Contract, Disbursement, PartnerBudget


def to_jsonable(value: Any) -> Any:
    # Normalize ORM values so snapshots compare and serialize the same way on every backend.
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        # Quantize to cents so Numeric round-trips (10 vs 10.00) do not show up as diffs.
        return str(value.quantize(Decimal("0.01")))
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(item) for item in value]
    return value


def budget_snapshot(budget: PartnerBudget) -> dict[str, Any]:
    return to_jsonable(
        {
            "id": budget.id,
            "tenant_id": budget.tenant_id,
            "project_id": budget.project_id,
            "partner_id": budget.partner_id,
            "currency": budget.currency,
            "ceiling_total": budget.ceiling_total,
            "status": budget.status,
            "rules": budget.rules_json or {},
            "lines": budget.lines_json or [],
            "substatus": budget.substatus_json or {},
            "version": budget.version,
            "created_by": budget.created_by,
            "updated_by": budget.updated_by,
            "created_at": budget.created_at,
            "updated_at": budget.updated_at,
        }
    )


def contract_snapshot(contract: Contract) -> dict[str, Any]:
    return to_jsonable(
        {
            "id": contract.id,
            "tenant_id": contract.tenant_id,
            "project_id": contract.project_id,
            "partner_id": contract.partner_id,
            "partner_budget_id": contract.partner_budget_id,
            "template_id": contract.template_id,
            "number": contract.number,
            "title": contract.title,
            "state": contract.state,
            "substatus": contract.substatus_json or {},
            "metadata": contract.metadata_json or {},
            "generated_docx_key": contract.generated_docx_key,
            "approved_docx_key": contract.approved_docx_key,
            "approval_provider": contract.approval_provider,
            "approval_ref": contract.approval_ref,
            "envelope_id": contract.envelope_id,
            "signed_pdf_key": contract.signed_pdf_key,
            "version": contract.version,
            "created_by": contract.created_by,
            "updated_by": contract.updated_by,
            "created_at": contract.created_at,
            "updated_at": contract.updated_at,
        }
    )


def approval_snapshot(approval: Approval) -> dict[str, Any]:
    return to_jsonable(
        {
            "id": approval.id,
            "tenant_id": approval.tenant_id,
            "policy_id": approval.policy_id,
            "policy_version": approval.policy_version,
            "entity_type": approval.entity_type,
            "entity_id": approval.entity_id,
            "provider": approval.provider,
            "approval_ref": approval.approval_ref,
            "status": approval.status,
            "step": approval.step,
            "total_steps": approval.total_steps,
            "assignee_role": approval.assignee_role,
            "amount": approval.amount,
            "requested_by": approval.requested_by,
            "decided_by": approval.decided_by,
            "decided_at": approval.decided_at,
            "comment": approval.comment,
            "history": approval.history_json or [],
            "version": approval.version,
            "created_at": approval.created_at,
            "updated_at": approval.updated_at,
        }
    )


def disbursement_snapshot(row: Disbursement) -> dict[str, Any]:
    return to_jsonable(
        {
            "id": row.id,
            "budget_id": row.budget_id,
            "tranche_number": row.tranche_number,
            "title": row.title,
            "description": row.description,
            "amount": row.amount,
            "currency": row.currency,
            "planned_date": row.planned_date,
            "status": row.status,
        }
    )
