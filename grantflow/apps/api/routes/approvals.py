from __future__ import annotations

from typing import Any, Literal

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
from grantflow.domain.snapshots import approval_snapshot
from grantflow.persistence.repos import approvals as approvals_repo
from grantflow.services.approvals import cancel_approval_by_id, decide_approval, publish_policy
from grantflow.services.approvals.policies import list_policies, policy_payload


router = APIRouter(tags=["approvals"])


class DecisionRequest(BaseModel):
    decision: Literal["APPROVE", "REJECT", "approve", "reject"]
    comment: str | None = Field(default=None, max_length=4000)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=4000)


class PolicyRequest(BaseModel):
    entity_type: str = Field(min_length=1)
    scope_id: str | None = None
    provider: Literal["internal", "external"] = "internal"
    config: dict[str, Any] = Field(default_factory=dict)


async def _ensure_in_tenant(db: AsyncSession, approval_id: str, principal: Principal) -> None:
    approval = await approvals_repo.get_approval(db, approval_id)
    if approval is None or approval.tenant_id != principal.tenant_id:
        raise NotFoundError("Approval not found", details={"approval_id": approval_id})


@router.get("/approvals")
async def list_approvals(
    request: Request,
    status: str | None = None,
    assignee_role: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await approvals_repo.list_approvals(
        db,
        tenant_id=principal.tenant_id,
        status=status,
        assignee_role=assignee_role,
        entity_type=entity_type,
        entity_id=entity_id,
        offset=offset,
        limit=limit + 1,
    )
    next_offset = None
    if len(rows) > limit:
        rows = rows[:limit]
        next_offset = offset + limit
    return success_response(
        request=request,
        data={"items": [approval_snapshot(row) for row in rows], "next_offset": next_offset},
    )


@router.get("/approvals/{approval_id}")
async def get_approval(
    approval_id: str,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    approval = await approvals_repo.get_approval(db, approval_id)
    if approval is None or approval.tenant_id != principal.tenant_id:
        raise NotFoundError("Approval not found", details={"approval_id": approval_id})
    data = approval_snapshot(approval)
    set_etag(response, data)
    return success_response(request=request, data=data)


@router.post("/approvals/{approval_id}/decision")
async def decide(
    approval_id: str,
    payload: DecisionRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    idempotency_key: str | None = Depends(idempotency_key_header),
    expected_version: int | None = Depends(expected_version_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Step-level role checks live in the approval service, not the route.
    await _ensure_in_tenant(db, approval_id, principal)
    outcome = await decide_approval(
        db,
        approval_id=approval_id,
        decision=payload.decision,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        comment=payload.comment,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
        expected_version=expected_version,
    )
    set_etag(response, outcome.response, "approval")
    return success_response(request=request, data=outcome.response, replayed=outcome.replayed or None)


@router.post("/approvals/{approval_id}/cancel")
async def cancel(
    approval_id: str,
    payload: CancelRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    idempotency_key: str | None = Depends(idempotency_key_header),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    await _ensure_in_tenant(db, approval_id, principal)
    outcome = await cancel_approval_by_id(
        db,
        approval_id=approval_id,
        actor_id=principal.actor_id,
        actor_role=principal.role,
        reason=payload.reason,
        idempotency=idempotency_request(idempotency_key, request=request, principal=principal, body=payload),
    )
    set_etag(response, outcome.response, "approval")
    return success_response(request=request, data=outcome.response, replayed=outcome.replayed or None)


@router.get("/approval-policies")
async def get_policies(
    request: Request,
    entity_type: str = Query(min_length=1),
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    policies = await list_policies(db, entity_type)
    return success_response(request=request, data={"items": [policy_payload(policy) for policy in policies]})


@router.post("/approval-policies", status_code=201)
async def create_policy(
    payload: PolicyRequest,
    request: Request,
    _principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    policy = await publish_policy(
        db,
        entity_type=payload.entity_type,
        scope_id=payload.scope_id,
        provider=payload.provider,
        config=payload.config,
    )
    return success_response(request=request, data=policy_payload(policy))
