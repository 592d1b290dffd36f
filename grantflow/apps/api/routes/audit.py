from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.apps.api.deps import Principal, get_db, require_role
from grantflow.apps.api.response import success_response
from grantflow.persistence.repos import audit as audit_repo
from grantflow.services.audit import audit_entry_payload


router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/entries")
async def list_audit_entries(
    request: Request,
    entity_type: str | None = None,
    entity_id: str | None = None,
    action_key: str | None = None,
    actor_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_role("auditor")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        entries = await audit_repo.list_entries(
            db,
            tenant_id=principal.tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action_key=action_key,
            actor_id=actor_id,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit entries") from exc

    next_offset = None
    if len(entries) > limit:
        entries = entries[:limit]
        next_offset = offset + limit
    return success_response(
        request=request,
        data={"items": [audit_entry_payload(entry) for entry in entries], "next_offset": next_offset},
    )


@router.get("/entries/{entry_id}")
async def get_audit_entry(
    entry_id: int,
    request: Request,
    principal: Principal = Depends(require_role("auditor")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    try:
        entry = await audit_repo.get_entry_by_id(db, entry_id=entry_id, tenant_id=principal.tenant_id)
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=500, detail="Database error while fetching audit entry") from exc
    if entry is None:
        raise HTTPException(status_code=404, detail="Audit entry not found")
    return success_response(request=request, data=audit_entry_payload(entry))
