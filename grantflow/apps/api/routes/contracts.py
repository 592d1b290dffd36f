from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.apps.api.deps import (
    Principal,
    expected_version_header,
    get_current_principal,
    get_db,
    idempotency_key_header,
    idempotency_request,
    require_role,
)
from grantflow.apps.api.response import set_etag, success_response
from grantflow.core.errors import NotFoundError
from grantflow.domain.snapshots import contract_snapshot
from grantflow.domain.states import ENTITY_CONTRACT
from grantflow.persistence.repos import budgets as budgets_repo
from grantflow.persistence.repos import contracts as contracts_repo
from grantflow.services import contracts as contract_service
from grantflow.services.workflow import TransitionOutcome


router = APIRouter(prefix="/contracts", tags=["contracts"])

_MANAGERS = ("grant_officer",)


class ContractCreateRequest(BaseModel):
    partner_budget_id: str = Field(min_length=1)
    partner_id: str = Field(min_length=1)
    project_id: str | None = None
    template_id: str | None = None
    number: str | None = None
    title: str | None = None


class GenerateRequest(BaseModel):
    rendered_docx_key: str | None = None
    merge_preview: dict[str, Any] | None = None


class SubmitRequest(BaseModel):
    approval_provider: str | None = None
    approval_ref: str | None = None


class MarkApprovedRequest(BaseModel):
    approved_docx_key: str | None = None


class SendForSignRequest(BaseModel):
    envelope_id: str | None = None
    substatus: dict[str, Any] | None = None


class MarkSignedRequest(BaseModel):
    signed_pdf_key: str | None = None
    substatus: dict[str, Any] | None = None


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=4000)


async def _ensure_in_tenant(db: AsyncSession, contract_id: str, principal: Principal) -> None:
    if await contracts_repo.get_contract_for_tenant(db, contract_id, principal.tenant_id) is None:
        raise NotFoundError("contract not found", details={"entity_id": contract_id})


def _respond(request: Request, response: Response, outcome: TransitionOutcome, entity_key: str | None = None):
    set_etag(response, outcome.response, entity_key)
    return success_response(request=request, data=outcome.response, replayed=outcome.replayed or None)


@router.post("", status_code=201)
async def create_contract(
    payload: ContractCreateRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_MANAGERS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    if await budgets_repo.get_budget_for_tenant(db, payload.partner_budget_id, principal.tenant_id) is None:
        raise NotFoundError("partner_budget not found", details={"entity_id": payload.partner_budget_id})
    outcome = await contract_service.create_contract(
        db,
        partner_budget_id=payload.partner_budget_id,
        partner_id=payload.partner_id,
        actor_id=principal.actor_id,
        project_id=payload.project_id,
        template_id=payload.template_id,
        number=payload.number,
        title=payload.title,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
    )
    return _respond(request, response, outcome)


@router.get("")
async def list_contracts(
    request: Request,
    state: str | None = None,
    partner_budget_id: str | None = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await contracts_repo.list_contracts(
        db,
        tenant_id=principal.tenant_id,
        state=state,
        partner_budget_id=partner_budget_id,
        offset=offset,
        limit=limit + 1,
    )
    next_offset = None
    if len(rows) > limit:
        rows = rows[:limit]
        next_offset = offset + limit
    return success_response(
        request=request,
        data={"items": [contract_snapshot(row) for row in rows], "next_offset": next_offset},
    )


@router.get("/{contract_id}")
async def get_contract(
    contract_id: str,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    contract = await contracts_repo.get_contract_for_tenant(db, contract_id, principal.tenant_id)
    if contract is None:
        raise NotFoundError("contract not found", details={"entity_id": contract_id})
    data = contract_snapshot(contract)
    set_etag(response, data)
    return success_response(request=request, data=data)


@router.post("/{contract_id}/generate")
async def generate_contract(
    contract_id: str,
    payload: GenerateRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_MANAGERS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, contract_id, principal)
    outcome = await contract_service.generate(
        db,
        contract_id=contract_id,
        actor_id=principal.actor_id,
        rendered_docx_key=payload.rendered_docx_key,
        merge_preview=payload.merge_preview,
        expected_version=expected_version,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
    )
    return _respond(request, response, outcome)


@router.post("/{contract_id}/submit")
async def submit_contract(
    contract_id: str,
    payload: SubmitRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_MANAGERS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, contract_id, principal)
    outcome = await contract_service.submit_for_approval(
        db,
        contract_id=contract_id,
        actor_id=principal.actor_id,
        approval_provider=payload.approval_provider,
        approval_ref=payload.approval_ref,
        expected_version=expected_version,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
    )
    return _respond(request, response, outcome, ENTITY_CONTRACT)


@router.post("/{contract_id}/approve")
async def mark_contract_approved(
    contract_id: str,
    payload: MarkApprovedRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_MANAGERS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, contract_id, principal)
    outcome = await contract_service.mark_approved(
        db,
        contract_id=contract_id,
        actor_id=principal.actor_id,
        approved_docx_key=payload.approved_docx_key,
        expected_version=expected_version,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
    )
    return _respond(request, response, outcome)


@router.post("/{contract_id}/send-for-sign")
async def send_contract_for_sign(
    contract_id: str,
    payload: SendForSignRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_MANAGERS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, contract_id, principal)
    outcome = await contract_service.send_for_sign(
        db,
        contract_id=contract_id,
        actor_id=principal.actor_id,
        envelope_id=payload.envelope_id,
        substatus=payload.substatus,
        expected_version=expected_version,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
    )
    return _respond(request, response, outcome)


@router.post("/{contract_id}/mark-signed")
async def mark_contract_signed(
    contract_id: str,
    payload: MarkSignedRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_MANAGERS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, contract_id, principal)
    outcome = await contract_service.mark_signed(
        db,
        contract_id=contract_id,
        actor_id=principal.actor_id,
        signed_pdf_key=payload.signed_pdf_key,
        substatus=payload.substatus,
        expected_version=expected_version,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
    )
    return _respond(request, response, outcome)


@router.post("/{contract_id}/activate")
async def activate_contract(
    contract_id: str,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_MANAGERS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, contract_id, principal)
    outcome = await contract_service.activate(
        db,
        contract_id=contract_id,
        actor_id=principal.actor_id,
        expected_version=expected_version,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal),
    )
    return _respond(request, response, outcome)


@router.post("/{contract_id}/cancel")
async def cancel_contract(
    contract_id: str,
    payload: CancelRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_MANAGERS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, contract_id, principal)
    outcome = await contract_service.cancel(
        db,
        contract_id=contract_id,
        actor_id=principal.actor_id,
        reason=payload.reason,
        expected_version=expected_version,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
    )
    return _respond(request, response, outcome)
