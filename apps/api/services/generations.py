"""Generation orchestration: reserve credits, persist the request, enqueue work."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional
import uuid

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from models.generation_request import GenerationRequest
from services.credits import get_operation_cost, get_or_create_subscription, reserve_credits
from services.errors import QueueUnavailable, ReservationConflict, ValidationError
from services.generation_store import (
    create_request,
    get_request,
    list_requests,
    mark_completed,
    mark_failed,
    serialize_request,
    serialize_status,
)
from services.generation_types import resolve_generation_type, validate_params
from services.job_queue import enqueue_delivery_job, enqueue_generation_job
from services.providers import extract_result

logger = logging.getLogger(__name__)

RESERVATION_ATTEMPTS = 3
QUEUE_FAILURE_MESSAGE = "Generation queue unavailable. Credits were refunded."
CALLBACK_FAILURE_MESSAGE = "Generation failed. Credits were refunded."


async def create_generation(
    user_id: str,
    raw_type: str,
    params: Optional[Dict[str, Any]],
    db: AsyncSession,
) -> GenerationRequest:
    """Validate, charge and enqueue one generation.

    The request row and its charge commit together; if the job cannot be
    enqueued afterwards the request is failed and refunded before
    QueueUnavailable propagates.
    """
    generation_type = resolve_generation_type(raw_type)
    normalized = validate_params(generation_type, params)
    cost = await get_operation_cost(generation_type, db)
    await get_or_create_subscription(user_id, db)

    request_id = str(uuid.uuid4())
    for attempt in range(1, RESERVATION_ATTEMPTS + 1):
        try:
            await create_request(
                user_id,
                generation_type,
                normalized,
                cost.credit_cost,
                db,
                request_id=request_id,
            )
            await reserve_credits(
                user_id,
                generation_type,
                db,
                generation_request_id=request_id,
                commit=False,
            )
            await db.commit()
            break
        except StaleDataError:
            await db.rollback()
            logger.warning("Concurrent credit update for user %s, attempt %s", user_id, attempt)
            if attempt == RESERVATION_ATTEMPTS:
                raise ReservationConflict("Credit balance changed concurrently. Please retry.")
        except Exception:
            await db.rollback()
            raise

    try:
        job = enqueue_generation_job(request_id)
    except QueueUnavailable:
        logger.exception("Generation %s could not be enqueued", request_id)
        await mark_failed(request_id, QUEUE_FAILURE_MESSAGE, db)
        raise

    await db.execute(
        update(GenerationRequest)
        .where(GenerationRequest.id == request_id)
        .values(queue_job_id=job.id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Generation %s (%s) enqueued for user %s", request_id, generation_type, user_id)
    return await get_request(request_id, db)


async def get_generation_status(request_id: str, user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Read-only status view for polling clients."""
    request = await get_request(request_id, db, user_id=user_id)
    return serialize_status(request)


async def get_generation_history(user_id: str, db: AsyncSession, *, limit: int = 20, offset: int = 0) -> Dict[str, Any]:
    requests, total = await list_requests(user_id, db, limit=limit, offset=offset)
    return {
        "success": True,
        "generations": [serialize_request(request) for request in requests],
        "total": total,
        "limit": limit,
        "offset": offset,
    }


def _callback_request_id(payload: Dict[str, Any]) -> str:
    for key in ("generationRequestId", "requestId", "id"):
        value = payload.get(key)
        if value:
            return str(value)
    raise ValidationError("generationRequestId is required")


async def apply_provider_callback(payload: Dict[str, Any], db: AsyncSession) -> GenerationRequest:
    """Settle a pending request from an external provider callback."""
    request_id = _callback_request_id(payload)
    succeeded = payload.get("success", not payload.get("error"))

    if not succeeded:
        logger.error("Provider reported failure for %s: %s", request_id, payload.get("error"))
        return await mark_failed(request_id, CALLBACK_FAILURE_MESSAGE, db)

    result = extract_result(payload)
    if result is None:
        raise ValidationError("Callback carries no result")
    request = await mark_completed(request_id, result, db)
    try:
        enqueue_delivery_job(request_id)
    except QueueUnavailable:
        logger.exception("Could not enqueue delivery for generation %s", request_id)
    return request
