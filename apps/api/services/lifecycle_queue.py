"""Lifecycle reconciliation job queue helpers (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from redis import Redis
from rq import Queue
from rq.job import Job

from config import settings
from services.lifecycle_trigger import LifecycleTrigger, build_guard

logger = logging.getLogger(__name__)

LIFECYCLE_QUEUE_NAME = "lifecycle_jobs"


class QueueConfigurationError(RuntimeError):
    """Raised when queued passes would not share the API's pass lock."""


def require_shared_guard() -> None:
    """Queued passes run in other processes, so only the Redis guard excludes them."""
    backend = (settings.LIFECYCLE_LOCK_BACKEND or "").strip().lower()
    if backend != "redis":
        raise QueueConfigurationError(
            f"Queued lifecycle passes require LIFECYCLE_LOCK_BACKEND=redis (got {backend or 'unset'})."
        )


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_lifecycle_queue() -> Queue:
    """Return the configured lifecycle queue."""
    return Queue(
        name=LIFECYCLE_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=max(int(settings.LIFECYCLE_LOCK_TTL_SECONDS), 60),
    )


def enqueue_lifecycle_pass() -> Job:
    """Enqueue one reconciliation pass.

    No retry policy: a failed or skipped pass is simply repeated by the next
    scheduled enqueue.
    """
    require_shared_guard()
    queue = get_lifecycle_queue()
    return queue.enqueue(
        "services.lifecycle_queue.process_lifecycle_pass_job",
        job_timeout=max(int(settings.LIFECYCLE_LOCK_TTL_SECONDS), 60),
        result_ttl=3600,
        failure_ttl=86400,
    )


async def process_lifecycle_pass_job_async() -> Dict[str, Any]:
    """Run one pass under the same guard backend as the API trigger."""
    require_shared_guard()
    trigger = LifecycleTrigger(build_guard())
    result = await trigger.run_once()
    if result.skipped:
        logger.info("Lifecycle job skipped: another pass holds the lock")
    return result.to_dict()


def process_lifecycle_pass_job() -> Dict[str, Any]:
    """RQ worker entrypoint for lifecycle passes."""
    return asyncio.run(process_lifecycle_pass_job_async())
