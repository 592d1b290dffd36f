from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.apps.api.deps import Principal, get_current_principal, get_db, require_role
from grantflow.apps.api.response import success_response
from grantflow.core.errors import NotFoundError
from grantflow.domain.models import NotificationInboxItem, NotificationJob, NotificationOutbox
from grantflow.domain.snapshots import to_jsonable
from grantflow.persistence.db import unit_of_work
from grantflow.persistence.repos import notifications as notif_repo
from grantflow.services.notifications.delivery import deliver_pending
from grantflow.services.notifications.fanout import fan_out_pending
from grantflow.services.notifications.preferences import publish_template, set_preference


router = APIRouter(prefix="/notifications", tags=["notifications"])


class PreferenceRequest(BaseModel):
    event_key: str = Field(default="*", min_length=1)
    channel: str
    enabled: bool


class TemplateRequest(BaseModel):
    event_key: str = Field(min_length=1)
    channel: str
    lang: str = Field(default="en", min_length=2, max_length=16)
    subject_tpl: str | None = None
    body_tpl: str = Field(min_length=1)
    # Global templates apply to every tenant that has no override.
    global_template: bool = False


class BatchRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=1000)


def _outbox_payload(row: NotificationOutbox) -> dict[str, Any]:
    return to_jsonable(
        {
            "id": row.id,
            "event_key": row.event_key,
            "entity_type": row.entity_type,
            "entity_id": row.entity_id,
            "status": row.status,
            "attempts": row.attempts,
            "last_error": row.last_error,
            "created_at": row.created_at,
            "processed_at": row.processed_at,
        }
    )


def _job_payload(job: NotificationJob) -> dict[str, Any]:
    return to_jsonable(
        {
            "id": job.id,
            "outbox_id": job.outbox_id,
            "event_key": job.event_key,
            "recipient_user_id": job.recipient_user_id,
            "channel": job.channel,
            "lang": job.lang,
            "state": job.state,
            "attempts": job.attempts,
            "error": job.error,
            "sent_at": job.sent_at,
        }
    )


def _inbox_payload(item: NotificationInboxItem) -> dict[str, Any]:
    return to_jsonable(
        {
            "id": item.id,
            "event_key": item.event_key,
            "title": item.title,
            "body": item.body,
            "link_url": item.link_url,
            "unread": item.unread,
            "created_at": item.created_at,
        }
    )


@router.get("/inbox")
async def list_inbox(
    request: Request,
    unread_only: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    items = await notif_repo.list_inbox(db, user_id=principal.actor_id, unread_only=unread_only, limit=limit)
    return success_response(request=request, data={"items": [_inbox_payload(item) for item in items]})


@router.post("/inbox/{item_id}/read")
async def mark_read(
    item_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    async with unit_of_work(db):
        updated = await notif_repo.mark_inbox_read(db, user_id=principal.actor_id, item_id=item_id)
    if not updated:
        raise NotFoundError("Inbox item not found", details={"item_id": item_id})
    return success_response(request=request, data={"id": item_id, "unread": False})


@router.put("/preferences")
async def put_preference(
    payload: PreferenceRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    preference = await set_preference(
        db,
        tenant_id=principal.tenant_id,
        user_id=principal.actor_id,
        event_key=payload.event_key,
        channel=payload.channel,
        enabled=payload.enabled,
    )
    return success_response(
        request=request,
        data={
            "user_id": preference.user_id,
            "event_key": preference.event_key,
            "channel": preference.channel,
            "enabled": preference.enabled,
        },
    )


@router.post("/templates", status_code=201)
async def create_template(
    payload: TemplateRequest,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    template = await publish_template(
        db,
        tenant_id=None if payload.global_template else principal.tenant_id,
        event_key=payload.event_key,
        channel=payload.channel,
        lang=payload.lang,
        subject_tpl=payload.subject_tpl,
        body_tpl=payload.body_tpl,
    )
    return success_response(
        request=request,
        data={
            "id": template.id,
            "tenant_id": template.tenant_id,
            "event_key": template.event_key,
            "channel": template.channel,
            "lang": template.lang,
            "version": template.version,
        },
    )


@router.get("/outbox")
async def list_outbox(
    request: Request,
    status: str | None = None,
    entity_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await notif_repo.list_outbox(
        db, status=status, tenant_id=principal.tenant_id, entity_id=entity_id, limit=limit
    )
    return success_response(request=request, data={"items": [_outbox_payload(row) for row in rows]})


@router.get("/jobs")
async def list_jobs(
    request: Request,
    outbox_id: str | None = None,
    state: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    _principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    jobs = await notif_repo.list_jobs(db, outbox_id=outbox_id, state=state, limit=limit)
    return success_response(request=request, data={"items": [_job_payload(job) for job in jobs]})


@router.post("/ops/fan-out")
async def run_fan_out(
    payload: BatchRequest,
    request: Request,
    _principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await fan_out_pending(db, limit=payload.limit)
    return success_response(
        request=request,
        data={
            "processed": result.processed,
            "failed": result.failed,
            "jobs_created": result.jobs_created,
            "jobs_enqueued": result.jobs_enqueued,
        },
    )


@router.post("/ops/deliver")
async def run_delivery(
    payload: BatchRequest,
    request: Request,
    _principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    result = await deliver_pending(db, limit=payload.limit)
    return success_response(
        request=request,
        data={
            "sent": result.sent,
            "failed": result.failed,
            "skipped": result.skipped,
            "requeued": result.requeued,
        },
    )
