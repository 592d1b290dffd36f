from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.config import get_settings
from grantflow.domain.models import NotificationOutbox
from grantflow.domain.states import Channel, JobState, OutboxStatus
from grantflow.persistence.db import unit_of_work
from grantflow.persistence.repos import notifications as notif_repo
from grantflow.services.notifications.audience import AudienceResolver, Recipient, StoreAudienceResolver
from grantflow.services.notifications.queue import enqueue_delivery_jobs, queue_delivery_enabled


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FanOutResult:
    processed: int = 0
    failed: int = 0
    jobs_created: int = 0
    jobs_enqueued: int = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def configured_channels() -> list[str]:
    known = {channel.value for channel in Channel}
    raw = get_settings().notify_channels
    channels = [item.strip() for item in raw.split(",") if item.strip()]
    return [channel for channel in channels if channel in known]


async def _enabled_channels(
    session: AsyncSession,
    *,
    recipients: list[Recipient],
    event_key: str,
    channels: list[str],
) -> dict[str, list[str]]:
    preferences = await notif_repo.list_preferences(
        session, user_ids=[recipient.user_id for recipient in recipients], event_key=event_key
    )
    # An event-specific preference overrides the "*" wildcard for the same channel.
    resolved: dict[tuple[str, str], tuple[bool, bool]] = {}
    for pref in preferences:
        key = (pref.user_id, pref.channel)
        specific = pref.event_key == event_key
        current = resolved.get(key)
        if current is None or (specific and not current[1]):
            resolved[key] = (bool(pref.enabled), specific)

    enabled: dict[str, list[str]] = {}
    for recipient in recipients:
        allowed: list[str] = []
        for channel in channels:
            pref = resolved.get((recipient.user_id, channel))
            if pref is not None and not pref[0]:
                continue
            if channel == Channel.EMAIL.value and not recipient.email:
                continue
            allowed.append(channel)
        enabled[recipient.user_id] = allowed
    return enabled


async def _create_jobs(
    session: AsyncSession,
    row: NotificationOutbox,
    *,
    resolver: AudienceResolver,
    channels: list[str],
) -> list[str]:
    payload = row.payload_json if isinstance(row.payload_json, dict) else {}
    selectors = payload.get("audience") or {}
    recipients = await resolver.resolve(session, tenant_id=row.tenant_id, selectors=selectors)
    enabled = await _enabled_channels(session, recipients=recipients, event_key=row.event_key, channels=channels)
    existing = await notif_repo.existing_job_keys(session, row.id)
    default_lang = get_settings().notify_default_lang
    now = _utc_now()
    created: list[str] = []
    for recipient in recipients:
        for channel in enabled.get(recipient.user_id, []):
            if (recipient.user_id, channel) in existing:
                continue
            job = notif_repo.add_job(
                session,
                id=uuid4().hex,
                outbox_id=row.id,
                tenant_id=row.tenant_id,
                event_key=row.event_key,
                recipient_user_id=recipient.user_id,
                email_to=recipient.email if channel == Channel.EMAIL.value else None,
                channel=channel,
                lang=recipient.locale or default_lang,
                state=JobState.QUEUED.value,
                attempts=0,
                created_at=now,
                updated_at=now,
            )
            existing.add((recipient.user_id, channel))
            created.append(job.id)
    return created


async def _record_failure(session: AsyncSession, outbox_id: str, error: str) -> None:
    max_attempts = max(1, int(get_settings().notify_max_attempts))
    async with unit_of_work(session):
        row = await notif_repo.lock_pending_outbox(session, outbox_id)
        if row is None:
            return
        row.attempts = int(row.attempts or 0) + 1
        row.last_error = error[:1000]
        if row.attempts >= max_attempts:
            row.status = OutboxStatus.FAILED.value
            row.processed_at = _utc_now()
    logger.warning(
        "outbox_fanout_failed outbox_id=%s attempts=%s status=%s",
        outbox_id,
        row.attempts,
        row.status,
    )


async def _fan_out(
    session: AsyncSession,
    outbox_id: str,
    *,
    resolver: AudienceResolver,
    channels: list[str],
) -> list[str] | None:
    try:
        async with unit_of_work(session):
            row = await notif_repo.lock_pending_outbox(session, outbox_id)
            if row is None:
                return None
            created = await _create_jobs(session, row, resolver=resolver, channels=channels)
            row.status = OutboxStatus.DONE.value
            row.attempts = int(row.attempts or 0) + 1
            row.last_error = None
            row.processed_at = _utc_now()
    except Exception as exc:
        logger.exception("outbox_fanout_error outbox_id=%s", outbox_id)
        await _record_failure(session, outbox_id, str(exc) or type(exc).__name__)
        raise
    logger.info("outbox_fanned_out outbox_id=%s event_key=%s jobs=%s", outbox_id, row.event_key, len(created))
    return created


async def fan_out_outbox(
    session: AsyncSession,
    outbox_id: str,
    *,
    resolver: AudienceResolver | None = None,
    channels: list[str] | None = None,
) -> int | None:
    """Expand one PENDING outbox row into delivery jobs in its own transaction.

    Returns the number of jobs created, or None when the row was already
    handled or is locked by another worker.
    """
    created = await _fan_out(
        session,
        outbox_id,
        resolver=resolver or StoreAudienceResolver(),
        channels=configured_channels() if channels is None else channels,
    )
    return None if created is None else len(created)


async def fan_out_pending(
    session: AsyncSession,
    *,
    limit: int | None = None,
    resolver: AudienceResolver | None = None,
) -> FanOutResult:
    """Fan out a batch of PENDING outbox rows; each row commits independently.

    In queue delivery mode the new job ids are published to the worker queue
    once their row has committed.
    """
    batch = max(1, int(limit or get_settings().notify_fanout_batch_size))
    async with unit_of_work(session):
        outbox_ids = await notif_repo.list_pending_outbox_ids(session, limit=batch)
    resolver = resolver or StoreAudienceResolver()
    channels = configured_channels()
    publish = queue_delivery_enabled()
    processed = failed = jobs_created = jobs_enqueued = 0
    for outbox_id in outbox_ids:
        try:
            created = await _fan_out(session, outbox_id, resolver=resolver, channels=channels)
        except Exception:  # noqa: BLE001 - failure already recorded on the outbox row.
            failed += 1
            continue
        if created is None:
            continue
        processed += 1
        jobs_created += len(created)
        if publish:
            jobs_enqueued += await enqueue_delivery_jobs(created)
    return FanOutResult(
        processed=processed,
        failed=failed,
        jobs_created=jobs_created,
        jobs_enqueued=jobs_enqueued,
    )
