from __future__ import annotations

import asyncio
import logging
from typing import Iterable

from arq import create_pool
from arq.connections import RedisSettings

from grantflow.core.config import get_settings


logger = logging.getLogger(__name__)

DELIVER_JOB_FUNCTION = "deliver_notification_job"

_queue_pool = None
_queue_pool_loop = None
_queue_lock = asyncio.Lock()


def queue_delivery_enabled() -> bool:
    return get_settings().notify_delivery_mode.lower() == "queue"


async def get_notification_queue_pool():
    # Cache the ARQ pool per event loop so enqueues reuse one Redis connection.
    global _queue_pool, _queue_pool_loop
    current_loop = asyncio.get_running_loop()
    if _queue_pool is not None and _queue_pool_loop == current_loop:
        return _queue_pool
    if _queue_pool is not None and _queue_pool_loop != current_loop:
        _queue_pool = None
    async with _queue_lock:
        if _queue_pool is None:
            settings = get_settings()
            _queue_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.notify_queue_name,
            )
            _queue_pool_loop = current_loop
    return _queue_pool


async def enqueue_delivery_jobs(job_ids: Iterable[str]) -> int:
    """Publish freshly created job ids to the worker queue.

    Best-effort: jobs that fail to enqueue stay QUEUED in the database and the
    worker's poll loop delivers them. Returns how many ids were published.
    """
    ids = list(job_ids)
    if not ids:
        return 0
    settings = get_settings()
    try:
        redis = await get_notification_queue_pool()
    except Exception:  # noqa: BLE001 - the poll loop covers jobs Redis never saw.
        logger.warning("notification_enqueue_unavailable jobs=%s", len(ids), exc_info=True)
        return 0
    queued = 0
    for job_id in ids:
        try:
            # A stable arq job id keeps a re-published delivery from running twice.
            await redis.enqueue_job(
                DELIVER_JOB_FUNCTION,
                job_id,
                _job_id=f"notif-job:{job_id}",
                _queue_name=settings.notify_queue_name,
            )
        except Exception:  # noqa: BLE001 - the poll loop covers jobs Redis never saw.
            logger.warning("notification_enqueue_failed job_id=%s", job_id, exc_info=True)
            continue
        queued += 1
    logger.info("notification_jobs_enqueued queued=%s total=%s", queued, len(ids))
    return queued
