from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import logging
from typing import Any, Mapping, Protocol
from uuid import uuid4

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from grantflow.core.config import get_settings
from grantflow.core.errors import ExternalProviderError, NotFoundError, ValidationError
from grantflow.domain.models import NotificationJob
from grantflow.domain.states import Channel, JobState
from grantflow.persistence.db import unit_of_work
from grantflow.persistence.repos import notifications as notif_repo
from grantflow.services.notifications.templates import RenderedMessage, build_context, render, resolve_template


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChannelSender(Protocol):
    async def send(self, session: AsyncSession, job: NotificationJob, message: RenderedMessage) -> dict[str, Any]: ...


class InAppSender:
    """Write the rendered message to the recipient's inbox."""

    async def send(self, session: AsyncSession, job: NotificationJob, message: RenderedMessage) -> dict[str, Any]:
        item = notif_repo.add_inbox_item(
            session,
            id=uuid4().hex,
            tenant_id=job.tenant_id,
            user_id=job.recipient_user_id,
            job_id=job.id,
            event_key=job.event_key,
            title=message.subject,
            body=message.body,
            link_url=message.link_url,
            unread=True,
            created_at=_utc_now(),
        )
        return {"inbox_item_id": item.id}


class EmailSender:
    """Post the rendered message to an HTTP mail relay."""

    def __init__(self, relay_url: str | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._relay_url = relay_url
        self._transport = transport

    async def send(self, session: AsyncSession, job: NotificationJob, message: RenderedMessage) -> dict[str, Any]:
        settings = get_settings()
        relay_url = self._relay_url or settings.notify_email_relay_url
        if not job.email_to:
            raise ValidationError("Email job has no recipient address", code="EMAIL_ADDRESS_MISSING")
        if relay_url.startswith("noop://"):
            return {"status_code": 200, "relay": "noop"}
        timeout_s = max(0.2, settings.ext_call_timeout_ms / 1000.0)
        body = {
            "from": settings.notify_email_from,
            "to": job.email_to,
            "subject": message.subject,
            "text": message.body,
            "link_url": message.link_url,
            "message_id": job.id,
        }
        try:
            async with httpx.AsyncClient(timeout=timeout_s, transport=self._transport) as client:
                response = await client.post(relay_url, json=body)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise ExternalProviderError(
                f"Email relay rejected message ({exc.response.status_code})",
                code="EMAIL_RELAY_REJECTED",
            ) from exc
        except httpx.HTTPError as exc:
            raise ExternalProviderError("Email relay unreachable", code="EMAIL_RELAY_UNAVAILABLE") from exc
        return {"status_code": int(response.status_code), "body_preview": response.text[:512] if response.text else ""}


def default_senders() -> dict[str, ChannelSender]:
    return {Channel.IN_APP.value: InAppSender(), Channel.EMAIL.value: EmailSender()}


@dataclass(frozen=True)
class DeliveryResult:
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    requeued: int = 0


def retry_backoff_ms(*, job_id: str, attempt_no: int) -> int:
    # Exponential backoff with deterministic jitter so retries of a burst spread out.
    settings = get_settings()
    base = max(1, int(settings.notify_backoff_ms))
    cap = max(base, int(settings.notify_backoff_max_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    digest = hashlib.sha256(f"{job_id}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % 251
    return min(cap, backoff + jitter)


def _is_retriable(exc: Exception) -> bool:
    # Bad addresses, missing templates and unknown channels fail the same way on every attempt.
    return not isinstance(exc, (ValidationError, NotFoundError))


async def _claim(session: AsyncSession, job_id: str) -> bool:
    async with unit_of_work(session):
        return await notif_repo.claim_job(session, job_id, now=_utc_now())


async def _send(session: AsyncSession, job_id: str, senders: Mapping[str, ChannelSender]) -> NotificationJob:
    async with unit_of_work(session):
        job = await notif_repo.get_job(session, job_id)
        if job is None:
            raise NotFoundError("Notification job not found", details={"job_id": job_id})
        outbox = await notif_repo.get_outbox(session, job.outbox_id)
        if outbox is None:
            raise NotFoundError("Outbox entry not found", details={"outbox_id": job.outbox_id})
        sender = senders.get(job.channel)
        if sender is None:
            raise ValidationError(f"No sender for channel {job.channel!r}", code="UNSUPPORTED_CHANNEL")
        template = await resolve_template(
            session,
            event_key=job.event_key,
            channel=job.channel,
            tenant_id=job.tenant_id,
            lang=job.lang,
        )
        message = render(template, build_context(outbox))
        receipt = await sender.send(session, job, message)
        now = _utc_now()
        job.subject = message.subject
        job.body = message.body
        job.state = JobState.SENT.value
        job.error = None
        job.provider_response_json = receipt
        job.sent_at = now
        job.updated_at = now
    return job


async def _mark_failed(session: AsyncSession, job_id: str, error: str, *, retriable: bool) -> NotificationJob | None:
    async with unit_of_work(session):
        job = await notif_repo.get_job(session, job_id)
        if job is None:
            return None
        now = _utc_now()
        max_attempts = max(1, int(get_settings().notify_max_attempts))
        job.state = JobState.FAILED.value
        job.error = error[:1000]
        job.updated_at = now
        job.next_attempt_at = None
        if retriable and job.attempts < max_attempts:
            delay_ms = retry_backoff_ms(job_id=job.id, attempt_no=job.attempts)
            job.next_attempt_at = now + timedelta(milliseconds=delay_ms)
    return job


async def deliver_job(
    session: AsyncSession,
    job_id: str,
    *,
    senders: Mapping[str, ChannelSender] | None = None,
) -> NotificationJob | None:
    """Claim one QUEUED job, render it and hand it to its channel sender.

    Failures land on the job row as FAILED with the error string; they are
    logged and never raised. A retriable failure below the attempt limit also
    gets ``next_attempt_at`` so :func:`requeue_retryable_jobs` picks it up
    again. Returns None when another worker owns the job.
    """
    if not await _claim(session, job_id):
        return None
    try:
        job = await _send(session, job_id, senders or default_senders())
    except Exception as exc:  # noqa: BLE001 - delivery failures are isolated to job state updates.
        logger.warning("notification_delivery_failed job_id=%s error=%s", job_id, exc)
        return await _mark_failed(session, job_id, str(exc) or type(exc).__name__, retriable=_is_retriable(exc))
    logger.info(
        "notification_delivered job_id=%s channel=%s recipient=%s event_key=%s",
        job.id,
        job.channel,
        job.recipient_user_id,
        job.event_key,
    )
    return job


async def requeue_retryable_jobs(session: AsyncSession, *, now: datetime | None = None) -> int:
    """Move due FAILED jobs and abandoned SENDING jobs back to QUEUED."""
    settings = get_settings()
    current = now or _utc_now()
    max_attempts = max(1, int(settings.notify_max_attempts))
    stale_before = current - timedelta(seconds=max(1, int(settings.notify_sending_timeout_s)))
    async with unit_of_work(session):
        retried = await notif_repo.requeue_due_failed_jobs(session, now=current, max_attempts=max_attempts)
        recovered, exhausted = await notif_repo.recover_stale_sending_jobs(
            session, stale_before=stale_before, now=current, max_attempts=max_attempts
        )
    if retried or recovered or exhausted:
        logger.info(
            "notification_jobs_requeued retried=%s recovered=%s timed_out=%s",
            retried,
            recovered,
            exhausted,
        )
    return retried + recovered


async def deliver_pending(
    session: AsyncSession,
    *,
    limit: int | None = None,
    senders: Mapping[str, ChannelSender] | None = None,
) -> DeliveryResult:
    requeued = await requeue_retryable_jobs(session)
    batch = max(1, int(limit or get_settings().notify_delivery_batch_size))
    async with unit_of_work(session):
        job_ids = await notif_repo.list_queued_job_ids(session, limit=batch)
    resolved = senders or default_senders()
    sent = failed = skipped = 0
    for job_id in job_ids:
        job = await deliver_job(session, job_id, senders=resolved)
        if job is None:
            skipped += 1
        elif job.state == JobState.SENT.value:
            sent += 1
        else:
            failed += 1
    return DeliveryResult(sent=sent, failed=failed, skipped=skipped, requeued=requeued)
