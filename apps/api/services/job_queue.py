"""Durable generation and delivery job queues (Redis/RQ)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError
from rq import Callback, Queue, Retry
from rq.job import Job

from config import settings
from database import async_session_maker
from services.errors import InvalidTransition, NotFound, QueueUnavailable
from services.generation_store import list_stale_pending, mark_failed

logger = logging.getLogger(__name__)


GENERATION_QUEUE_NAME = "generation_jobs"
DELIVERY_QUEUE_NAME = "telegram_send"
QUEUE_NAMES = (GENERATION_QUEUE_NAME, DELIVERY_QUEUE_NAME)
DEAD_LETTER_ERROR = "Generation processing failed. Credits were refunded."
STALE_ERROR = "Generation timed out"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_generation_queue(connection: Optional[Redis] = None) -> Queue:
    return Queue(
        name=GENERATION_QUEUE_NAME,
        connection=connection or get_redis_connection(),
        default_timeout=settings.GENERATION_JOB_TIMEOUT_SECONDS,
    )


def get_delivery_queue(connection: Optional[Redis] = None) -> Queue:
    return Queue(
        name=DELIVERY_QUEUE_NAME,
        connection=connection or get_redis_connection(),
        default_timeout=max(settings.RENDER_TIMEOUT_SECONDS * 4, 60),
    )


def generation_job_id(request_id: str) -> str:
    return f"generation-{request_id}"


def delivery_job_id(request_id: str) -> str:
    return f"deliver-{request_id}"


def _retry_policy(max_attempts: int, intervals) -> Optional[Retry]:
    retries = int(max_attempts) - 1
    if retries < 1:
        return None
    return Retry(max=retries, interval=list(intervals))


def enqueue_generation_job(request_id: str) -> Job:
    """Enqueue a generation job; exhausting its retries fails and refunds the request."""
    try:
        queue = get_generation_queue()
        return queue.enqueue(
            "services.generation_worker.process_generation_job",
            request_id,
            job_id=generation_job_id(request_id),
            retry=_retry_policy(settings.GENERATION_MAX_ATTEMPTS, settings.GENERATION_RETRY_INTERVALS),
            job_timeout=settings.GENERATION_JOB_TIMEOUT_SECONDS,
            result_ttl=86400,
            failure_ttl=7 * 86400,
            on_failure=Callback(on_generation_job_failure),
        )
    except RedisError as exc:
        raise QueueUnavailable("Generation queue unavailable", original_error=exc) from exc


def enqueue_delivery_job(request_id: str) -> Job:
    """Enqueue a Telegram delivery job with retry/backoff for transient send failures."""
    try:
        queue = get_delivery_queue()
        return queue.enqueue(
            "services.delivery.deliver_generation_job",
            request_id,
            job_id=delivery_job_id(request_id),
            retry=_retry_policy(settings.DELIVERY_MAX_ATTEMPTS, settings.DELIVERY_RETRY_INTERVALS),
            result_ttl=86400,
            failure_ttl=7 * 86400,
            on_failure=Callback(on_delivery_job_failure),
        )
    except RedisError as exc:
        raise QueueUnavailable("Delivery queue unavailable", original_error=exc) from exc


def schedule_delivery_retry(request_id: str, delay_seconds: int, *, deferrals: int) -> Job:
    """Schedule a fresh delivery attempt after a channel-imposed wait (e.g. Telegram flood control)."""
    try:
        queue = get_delivery_queue()
        return queue.enqueue_in(
            timedelta(seconds=max(int(delay_seconds), 1)),
            "services.delivery.deliver_generation_job",
            request_id,
            deferrals=deferrals,
            job_id=f"{delivery_job_id(request_id)}-deferred-{deferrals}",
            retry=_retry_policy(settings.DELIVERY_MAX_ATTEMPTS, settings.DELIVERY_RETRY_INTERVALS),
            result_ttl=86400,
            failure_ttl=7 * 86400,
            on_failure=Callback(on_delivery_job_failure),
        )
    except RedisError as exc:
        raise QueueUnavailable("Delivery queue unavailable", original_error=exc) from exc


def is_dead_lettered(job: Job) -> bool:
    """True on the final failure; RQ decrements ``retries_left`` only when it reschedules."""
    return not job.retries_left


async def fail_dead_lettered_generation(request_id: str) -> bool:
    async with async_session_maker() as db:
        try:
            await mark_failed(request_id, DEAD_LETTER_ERROR, db)
        except (InvalidTransition, NotFound):
            return False
    return True


def on_generation_job_failure(job: Job, connection, exc_type, exc_value, traceback) -> None:
    """RQ failure callback for generation jobs."""
    if not is_dead_lettered(job):
        logger.warning("Generation job %s failed, retry scheduled: %s", job.id, exc_value)
        return

    request_id = job.args[0] if job.args else None
    if not request_id:
        return
    logger.error("Generation job %s exhausted retries: %s", job.id, exc_value)

    from services.runtime import get_runtime

    if get_runtime().run(fail_dead_lettered_generation(request_id)):
        logger.info("Dead-lettered generation %s marked failed and refunded", request_id)


def on_delivery_job_failure(job: Job, connection, exc_type, exc_value, traceback) -> None:
    """RQ failure callback for delivery jobs. The request itself stays completed."""
    if not is_dead_lettered(job):
        logger.warning("Delivery job %s failed, retry scheduled: %s", job.id, exc_value)
        return

    request_id = job.args[0] if job.args else None
    logger.error("Delivery job %s exhausted retries: %s", job.id, exc_value)
    if not request_id:
        return

    from services.delivery import record_delivery_failure
    from services.runtime import get_runtime

    get_runtime().run(record_delivery_failure(request_id, str(exc_value or "delivery failed")))


async def recover_stalled_generations(max_age_minutes: Optional[int] = None) -> int:
    """Fail and refund pending requests that never reached a terminal state."""
    age = max_age_minutes if max_age_minutes is not None else settings.STALE_GENERATION_MINUTES
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(age, 1))
    async with async_session_maker() as db:
        stale_ids = await list_stale_pending(cutoff, db)

    recovered = 0
    for request_id in stale_ids:
        async with async_session_maker() as db:
            try:
                await mark_failed(request_id, STALE_ERROR, db)
                recovered += 1
            except (InvalidTransition, NotFound):
                # Finished while the sweep was running.
                continue
    if recovered:
        logger.warning("Recovered %s stalled generation requests", recovered)
    return recovered
