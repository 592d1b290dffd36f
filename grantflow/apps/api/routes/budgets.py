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
from grantflow.domain.snapshots import budget_snapshot, disbursement_snapshot
from grantflow.domain.states import ENTITY_PARTNER_BUDGET
from grantflow.persistence.repos import budgets as budgets_repo
from grantflow.services import budgets as budget_service
from grantflow.services.workflow import TransitionOutcome


router = APIRouter(prefix="/budgets", tags=["budgets"])

_EDITORS = ("partner", "grant_officer")
_REVIEWERS = ("grant_officer",)


class BudgetLine(BaseModel):
    category: str | None = None
    description: str | None = None
    qty: float | str = 0
    unit_cost: float | str = 0


class BudgetCreateRequest(BaseModel):
    project_id: str = Field(min_length=1)
    partner_id: str = Field(min_length=1)
    currency: str = Field(min_length=3, max_length=3)
    lines: list[BudgetLine] = Field(default_factory=list)
    rules: dict[str, Any] = Field(default_factory=dict)


class BudgetUpdateRequest(BaseModel):
    lines: list[BudgetLine] | None = None
    rules: dict[str, Any] | None = None
    currency: str | None = Field(default=None, min_length=3, max_length=3)


class CommentRequest(BaseModel):
    comment: str | None = Field(default=None, max_length=4000)


class ProvisionContractRequest(BaseModel):
    template_id: str | None = None


def _lines(lines: list[BudgetLine] | None) -> list[dict[str, Any]] | None:
    if lines is None:
        return None
    return [line.model_dump() for line in lines]


async def _ensure_in_tenant(db: AsyncSession, budget_id: str, principal: Principal) -> None:
    # Cross-tenant ids look exactly like missing ones.
    if await budgets_repo.get_budget_for_tenant(db, budget_id, principal.tenant_id) is None:
        raise NotFoundError("partner_budget not found", details={"entity_id": budget_id})


def _respond(request: Request, response: Response, outcome: TransitionOutcome, entity_key: str | None = None):
    set_etag(response, outcome.response, entity_key)
    return success_response(request=request, data=outcome.response, replayed=outcome.replayed or None)


@router.post("", status_code=201)
async def create_budget(
    payload: BudgetCreateRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_EDITORS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    outcome = await budget_service.create_draft(
        db,
        tenant_id=principal.tenant_id,
        project_id=payload.project_id,
        partner_id=payload.partner_id,
        currency=payload.currency,
        actor_id=principal.actor_id,
        lines=_lines(payload.lines),
        rules=payload.rules,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
    )
    return _respond(request, response, outcome)


@router.get("")
async def list_budgets(
    request: Request,
    status: str | None = None,
    project_id: str | None = None,
    partner_id: str | None = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await budgets_repo.list_budgets(
        db,
        tenant_id=principal.tenant_id,
        status=status,
        project_id=project_id,
        partner_id=partner_id,
        offset=offset,
        limit=limit + 1,
    )
    next_offset = None
    if len(rows) > limit:
        rows = rows[:limit]
        next_offset = offset + limit
    return success_response(
        request=request,
        data={"items": [budget_snapshot(row) for row in rows], "next_offset": next_offset},
    )


@router.get("/{budget_id}")
async def get_budget(
    budget_id: str,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    data = await budget_service.get_budget_detail(db, budget_id=budget_id, tenant_id=principal.tenant_id)
    set_etag(response, data)
    return success_response(request=request, data=data)


@router.patch("/{budget_id}")
async def update_budget(
    budget_id: str,
    payload: BudgetUpdateRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_EDITORS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, budget_id, principal)
    outcome = await budget_service.update_draft(
        db,
        budget_id=budget_id,
        actor_id=principal.actor_id,
        lines=_lines(payload.lines),
        rules=payload.rules,
        currency=payload.currency,
        expected_version=expected_version,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
    )
    return _respond(request, response, outcome)


@router.post("/{budget_id}/submit")
async def submit_budget(
    budget_id: str,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_EDITORS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, budget_id, principal)
    outcome = await budget_service.submit_budget(
        db,
        budget_id=budget_id,
        actor_id=principal.actor_id,
        expected_version=expected_version,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal),
    )
    return _respond(request, response, outcome, ENTITY_PARTNER_BUDGET)


@router.post("/{budget_id}/request-revisions")
async def request_revisions(
    budget_id: str,
    payload: CommentRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_REVIEWERS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, budget_id, principal)
    outcome = await budget_service.request_revisions(
        db,
        budget_id=budget_id,
        actor_id=principal.actor_id,
        comment=payload.comment,
        expected_version=expected_version,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
    )
    return _respond(request, response, outcome)


@router.post("/{budget_id}/return-to-draft")
async def return_to_draft(
    budget_id: str,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_EDITORS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, budget_id, principal)
    outcome = await budget_service.return_to_draft(
        db,
        budget_id=budget_id,
        actor_id=principal.actor_id,
        expected_version=expected_version,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal),
    )
    return _respond(request, response, outcome)


@router.post("/{budget_id}/approve")
async def approve_budget(
    budget_id: str,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_REVIEWERS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, budget_id, principal)
    outcome = await budget_service.decide_budget(
        db,
        budget_id=budget_id,
        approve=True,
        actor_id=principal.actor_id,
        expected_version=expected_version,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal),
    )
    return _respond(request, response, outcome)


@router.post("/{budget_id}/reject")
async def reject_budget(
    budget_id: str,
    payload: CommentRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_REVIEWERS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, budget_id, principal)
    outcome = await budget_service.decide_budget(
        db,
        budget_id=budget_id,
        approve=False,
        actor_id=principal.actor_id,
        comment=payload.comment,
        expected_version=expected_version,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
    )
    return _respond(request, response, outcome)


@router.get("/{budget_id}/disbursements")
async def list_disbursements(
    budget_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, budget_id, principal)
    rows = await budgets_repo.list_disbursements(db, budget_id)
    return success_response(request=request, data={"items": [disbursement_snapshot(row) for row in rows]})


@router.post("/{budget_id}/disbursements")
async def seed_disbursements(
    budget_id: str,
    request: Request,
    principal: Principal = Depends(require_role(*_REVIEWERS)),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, budget_id, principal)
    items = await budget_service.seed_disbursements(db, budget_id=budget_id, actor_id=principal.actor_id)
    return success_response(request=request, data={"items": items})


@router.post("/{budget_id}/contract")
async def provision_contract(
    budget_id: str,
    payload: ProvisionContractRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_role(*_REVIEWERS)),
    idempotency_key: str | None = Depends(idempotency_key_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, budget_id, principal)
    outcome = await budget_service.provision_contract(
        db,
        budget_id=budget_id,
        actor_id=principal.actor_id,
        template_id=payload.template_id,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
    )
    return _respond(request, response, outcome)
