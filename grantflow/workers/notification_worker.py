from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from grantflow.core.config import get_settings
from grantflow.core.logging import configure_logging
from grantflow.persistence.db import SessionLocal
from grantflow.services.notifications.delivery import deliver_job, deliver_pending
from grantflow.services.notifications.fanout import fan_out_pending


logger = logging.getLogger(__name__)


async def deliver_notification_job(ctx, job_id: str) -> str:
    # Published by fan-out in queue delivery mode; the poll loop picks up anything missed.
    async with SessionLocal() as session:
        job = await deliver_job(session, job_id)
    return job.state if job is not None else "skipped"


async def run_notification_cycle() -> dict[str, int]:
    """Run one fan-out batch followed by one delivery batch."""
    async with SessionLocal() as session:
        fanned = await fan_out_pending(session)
        delivered = await deliver_pending(session)
    logger.info(
        "notification_cycle outbox_processed=%s outbox_failed=%s jobs_created=%s jobs_enqueued=%s "
        "sent=%s failed=%s skipped=%s requeued=%s",
        fanned.processed,
        fanned.failed,
        fanned.jobs_created,
        fanned.jobs_enqueued,
        delivered.sent,
        delivered.failed,
        delivered.skipped,
        delivered.requeued,
    )
    return {
        "outbox_processed": fanned.processed,
        "outbox_failed": fanned.failed,
        "jobs_created": fanned.jobs_created,
        "sent": delivered.sent,
        "failed": delivered.failed,
        "requeued": delivered.requeued,
    }


async def run_notification_loop() -> None:
    # Outbox rows drain on the poll interval whether or not anything was enqueued on Redis.
    interval_s = max(1, int(get_settings().notify_worker_poll_interval_s))
    while True:
        try:
            await run_notification_cycle()
        except Exception:  # noqa: BLE001 - one bad cycle must not stop the loop.
            logger.exception("notification_cycle_failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["scheduler_task"] = asyncio.create_task(run_notification_loop())


async def _shutdown(ctx) -> None:
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Read by `arq grantflow.workers.notification_worker.WorkerSettings`.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.notify_queue_name
    max_tries = max(1, int(settings.notify_max_attempts))
    functions = [deliver_notification_job]
    on_startup = _startup
    on_shutdown = _shutdown
