"""Background generation job: call the provider and settle the request."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from rq import get_current_job

from config import settings
from database import async_session_maker
from services.errors import InvalidTransition, NotFound, ProviderError, ProviderUnavailable
from services.generation_store import COMPLETED, PENDING, get_request, mark_completed, mark_failed, record_attempt
from services.job_queue import enqueue_delivery_job
from services.providers import GenerationProvider, normalize_result

logger = logging.getLogger(__name__)

PROVIDER_FAILURE_MESSAGE = "Generation failed. Credits were refunded."


async def _fail(request_id: str, error: str) -> bool:
    async with async_session_maker() as db:
        try:
            await mark_failed(request_id, error, db)
        except InvalidTransition:
            logger.info("Generation %s already settled, failure not recorded", request_id)
            return False
    return True


async def process_generation_job_async(
    request_id: str,
    provider: GenerationProvider,
    *,
    queue_job_id: Optional[str] = None,
) -> str:
    """Run one generation attempt and return the resulting request status.

    ProviderUnavailable propagates so the queue retries the job; any other
    provider error fails the request and refunds it. QueueUnavailable from the
    delivery enqueue also propagates: the retried job finds the request
    completed but unsent and schedules delivery again.
    """
    async with async_session_maker() as db:
        try:
            request = await get_request(request_id, db)
        except NotFound:
            logger.warning("Generation request %s not found", request_id)
            return "missing"
        if request.status != PENDING:
            logger.info("Generation %s already %s, skipping redelivered job", request_id, request.status)
            if request.status == COMPLETED and not request.sent_to_telegram:
                logger.info("Generation %s completed but not delivered, scheduling delivery", request_id)
                enqueue_delivery_job(request_id)
            return request.status
        generation_type = request.generation_type
        params = dict(request.input_params or {})
        await record_attempt(request_id, db, queue_job_id=queue_job_id)

    try:
        raw_result = await asyncio.wait_for(
            provider.generate(request_id=request_id, generation_type=generation_type, params=params),
            timeout=settings.GENERATION_PROVIDER_TIMEOUT_SECONDS,
        )
    except ProviderUnavailable as exc:
        logger.warning("Provider unavailable for generation %s: %s", request_id, exc.message)
        raise
    except asyncio.TimeoutError:
        logger.error("Provider timed out for generation %s", request_id)
        await _fail(request_id, "Generation timed out. Credits were refunded.")
        return "failed"
    except ProviderError as exc:
        logger.error("Provider failed generation %s: %s", request_id, exc.message)
        await _fail(request_id, PROVIDER_FAILURE_MESSAGE)
        return "failed"

    if raw_result is None:
        return PENDING

    async with async_session_maker() as db:
        try:
            await mark_completed(request_id, normalize_result(raw_result), db)
        except InvalidTransition as exc:
            logger.info("Generation %s finished elsewhere (%s)", request_id, exc.current_status)
            return exc.current_status

    enqueue_delivery_job(request_id)
    return COMPLETED


def process_generation_job(request_id: str) -> str:
    """RQ worker entrypoint for generation jobs."""
    from services.runtime import get_runtime

    runtime = get_runtime()
    job = get_current_job()
    return runtime.run(
        process_generation_job_async(request_id, runtime.provider, queue_job_id=job.id if job else None)
    )
