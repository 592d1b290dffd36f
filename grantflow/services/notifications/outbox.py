from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.domain.models import NotificationOutbox
from grantflow.domain.snapshots import to_jsonable
from grantflow.domain.states import OutboxStatus
from grantflow.persistence.repos import notifications as notif_repo


logger = logging.getLogger(__name__)

AUDIENCE_SELECTORS = ("user_ids", "organization_ids", "roles")


@dataclass(frozen=True)
class OutboxEvent:
    """Notification intent captured alongside a state transition.

    ``audience`` selects recipients by explicit user ids, organization
    membership and role; fan-out takes the union of all three.
    """

    event_key: str
    audience: dict[str, list[str]] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)


def audience(
    *,
    user_ids: list[str] | None = None,
    organization_ids: list[str] | None = None,
    roles: list[str] | None = None,
) -> dict[str, list[str]]:
    # Drop empty selectors and None members so stored payloads stay compact.
    selectors = {
        "user_ids": [value for value in user_ids or [] if value],
        "organization_ids": [value for value in organization_ids or [] if value],
        "roles": [value for value in roles or [] if value],
    }
    return {key: value for key, value in selectors.items() if value}


def enqueue_event(
    session: AsyncSession,
    *,
    event_key: str,
    tenant_id: str | None,
    entity_type: str | None,
    entity_id: str | None,
    payload: dict[str, Any] | None = None,
    audience_selectors: dict[str, list[str]] | None = None,
    created_by: str | None = None,
) -> NotificationOutbox:
    """Add a PENDING outbox row to the caller's transaction."""
    selectors = {
        key: list(value) for key, value in (audience_selectors or {}).items() if key in AUDIENCE_SELECTORS
    }
    row = notif_repo.add_outbox(
        session,
        id=uuid4().hex,
        tenant_id=tenant_id,
        event_key=event_key,
        entity_type=entity_type,
        entity_id=entity_id,
        payload_json={"audience": selectors, "data": to_jsonable(payload or {})},
        created_by=created_by,
        status=OutboxStatus.PENDING.value,
        attempts=0,
        created_at=datetime.now(timezone.utc),
    )
    logger.info(
        "outbox_enqueued event_key=%s entity_type=%s entity_id=%s outbox_id=%s",
        event_key,
        entity_type,
        entity_id,
        row.id,
    )
    return row
