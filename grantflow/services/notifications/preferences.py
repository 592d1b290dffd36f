from __future__ import annotations

from datetime import datetime, timezone
import logging
from string import Template
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.errors import ValidationError
from grantflow.domain.models import NotificationPreference, NotificationTemplate
from grantflow.domain.states import Channel
from grantflow.persistence.db import unit_of_work
from grantflow.persistence.repos import notifications as notif_repo


logger = logging.getLogger(__name__)


def _check_channel(channel: str) -> str:
    try:
        return Channel(channel).value
    except ValueError as exc:
        raise ValidationError(f"Unknown notification channel {channel!r}", code="UNSUPPORTED_CHANNEL") from exc


async def set_preference(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    user_id: str,
    event_key: str,
    channel: str,
    enabled: bool,
) -> NotificationPreference:
    """Upsert one (user, event, channel) opt-in flag; ``event_key="*"`` covers every event."""
    resolved_channel = _check_channel(channel)
    if not event_key.strip():
        raise ValidationError("event_key is required", code="INVALID_PREFERENCE")
    async with unit_of_work(session):
        preference = await notif_repo.get_preference(
            session, user_id=user_id, event_key=event_key, channel=resolved_channel
        )
        if preference is None:
            preference = notif_repo.add_preference(
                session,
                id=uuid4().hex,
                tenant_id=tenant_id,
                user_id=user_id,
                event_key=event_key,
                channel=resolved_channel,
                enabled=enabled,
                created_at=datetime.now(timezone.utc),
            )
        else:
            preference.enabled = enabled
    logger.info(
        "notification_preference_set user_id=%s event_key=%s channel=%s enabled=%s",
        user_id,
        event_key,
        resolved_channel,
        enabled,
    )
    return preference


async def publish_template(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    event_key: str,
    channel: str,
    lang: str,
    subject_tpl: str | None,
    body_tpl: str,
) -> NotificationTemplate:
    """Add a new active template version; older versions stay for history."""
    resolved_channel = _check_channel(channel)
    for source in (subject_tpl, body_tpl):
        if source is None:
            continue
        # Reject malformed placeholders up front instead of at delivery time.
        invalid = [
            match for match in Template.pattern.finditer(source) if match.group("invalid") is not None
        ]
        if invalid:
            raise ValidationError("Template contains an invalid placeholder", code="INVALID_TEMPLATE")
    async with unit_of_work(session):
        version = await notif_repo.next_template_version(
            session, tenant_id=tenant_id, event_key=event_key, channel=resolved_channel, lang=lang
        )
        template = notif_repo.add_template(
            session,
            id=uuid4().hex,
            tenant_id=tenant_id,
            event_key=event_key,
            channel=resolved_channel,
            lang=lang,
            subject_tpl=subject_tpl,
            body_tpl=body_tpl,
            version=version,
            active=True,
            created_at=datetime.now(timezone.utc),
        )
    logger.info(
        "notification_template_published event_key=%s channel=%s lang=%s tenant_id=%s version=%s",
        event_key,
        resolved_channel,
        lang,
        tenant_id,
        version,
    )
    return template
